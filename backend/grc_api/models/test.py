"""
Continuous monitoring — test definitions, runs and results.

The ``__test__ = False`` markers keep pytest from collecting these models.
"""
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id, utcnow

TEST_TYPES = (
    "configuration", "access_control", "endpoint", "vulnerability",
    "data_protection", "network", "logging", "custom",
)
TEST_SEVERITIES = ("critical", "high", "medium", "low", "informational")
TEST_STATUSES = ("draft", "active", "paused", "deprecated")

RUN_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
IN_FLIGHT_RUN_STATUSES = ("pending", "running")
TRIGGER_TYPES = ("scheduled", "manual", "on_change", "webhook")

RESULT_STATUSES = ("pass", "fail", "error", "warning", "skipped")


class Test(Base):
    __test__ = False
    __tablename__ = "tests"
    __table_args__ = (
        UniqueConstraint("org_id", "identifier", name="uq_tests_identifier"),
        Index("idx_tests_org_status", "org_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    identifier: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    test_type: Mapped[str] = mapped_column(String(30), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), default="medium", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False)
    control_id: Mapped[str] = mapped_column(ForeignKey("controls.id"), nullable=False)

    # ── Schedule: cron xor interval ──
    schedule_cron: Mapped[str | None] = mapped_column(String(100))
    schedule_interval_min: Mapped[int | None] = mapped_column(Integer)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime)

    # ── Execution ──
    test_config: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    test_script: Mapped[str | None] = mapped_column(Text)
    test_script_language: Mapped[str | None] = mapped_column(String(20))
    timeout_seconds: Mapped[int] = mapped_column(Integer, default=300, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_delay_seconds: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class TestRun(Base):
    __test__ = False
    __tablename__ = "test_runs"
    __table_args__ = (
        UniqueConstraint("org_id", "run_number", name="uq_test_runs_number"),
        # at most one pending/running run per org
        Index(
            "uq_test_runs_in_flight",
            "org_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'running')"),
            postgresql_where=text("status IN ('pending', 'running')"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    run_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(20), default="manual", nullable=False)
    trigger_metadata: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    # explicit selection; empty means every active test
    test_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # ── Counters ──
    total_tests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    passed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    warnings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    triggered_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    worker_id: Mapped[str | None] = mapped_column(String(100))
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class TestResult(Base):
    __test__ = False
    __tablename__ = "test_results"
    __table_args__ = (
        UniqueConstraint("test_run_id", "test_id", name="uq_test_results_run_test"),
        Index("idx_test_results_control", "org_id", "control_id", "created_at"),
        Index("idx_test_results_test", "org_id", "test_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    test_run_id: Mapped[str] = mapped_column(ForeignKey("test_runs.id", ondelete="CASCADE"), nullable=False)
    test_id: Mapped[str] = mapped_column(ForeignKey("tests.id"), nullable=False)
    control_id: Mapped[str] = mapped_column(ForeignKey("controls.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    output_log: Mapped[str | None] = mapped_column(Text)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    alert_generated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    alert_id: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
