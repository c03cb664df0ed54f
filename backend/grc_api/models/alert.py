from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id, utcnow

ALERT_SEVERITIES = ("critical", "high", "medium", "low")
ALERT_STATUSES = ("open", "acknowledged", "in_progress", "resolved", "suppressed", "closed")
ACTIVE_ALERT_STATUSES = ("open", "acknowledged", "in_progress")
DELIVERY_CHANNELS = ("slack", "email", "webhook", "in_app")


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        UniqueConstraint("org_id", "alert_number", name="uq_alerts_number"),
        Index("idx_alerts_org_status", "org_id", "status"),
        Index("idx_alerts_rule_control", "alert_rule_id", "control_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    alert_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="open", nullable=False)

    # ── Origin ──
    test_id: Mapped[str | None] = mapped_column(ForeignKey("tests.id"))
    test_result_id: Mapped[str | None] = mapped_column(ForeignKey("test_results.id"))
    control_id: Mapped[str] = mapped_column(ForeignKey("controls.id"), nullable=False)
    alert_rule_id: Mapped[str | None] = mapped_column(ForeignKey("alert_rules.id", ondelete="SET NULL"))

    # ── Assignment / SLA ──
    assigned_to: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime)
    assigned_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    sla_deadline: Mapped[datetime | None] = mapped_column(DateTime)
    sla_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # ── Resolution ──
    resolved_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime)
    resolution_notes: Mapped[str | None] = mapped_column(Text)

    # ── Suppression ──
    suppressed_until: Mapped[datetime | None] = mapped_column(DateTime)
    suppression_reason: Mapped[str | None] = mapped_column(Text)

    # ── Delivery ──
    delivery_channels: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    # channel -> RFC 3339 timestamp, merged on redelivery
    delivered_at: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def clear_resolution(self) -> None:
        self.resolved_by = None
        self.resolved_at = None
        self.resolution_notes = None

    def clear_suppression(self) -> None:
        self.suppressed_until = None
        self.suppression_reason = None


class AlertRule(Base):
    __tablename__ = "alert_rules"
    __table_args__ = (
        UniqueConstraint("org_id", "name", name="uq_alert_rules_name"),
        Index("idx_alert_rules_org_priority", "org_id", "enabled", "priority"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # ── Matcher (empty list = any) ──
    match_test_types: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    match_severities: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    match_result_statuses: Mapped[list] = mapped_column(JSON, default=lambda: ["fail"], nullable=False)
    match_control_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    match_tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # ── Outcome ──
    alert_severity: Mapped[str] = mapped_column(String(20), nullable=False)
    alert_title_template: Mapped[str | None] = mapped_column(String(500))
    auto_assign_to: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    sla_hours: Mapped[int | None] = mapped_column(Integer)
    delivery_channels: Mapped[list] = mapped_column(JSON, default=lambda: ["in_app"], nullable=False)
    slack_webhook_url: Mapped[str | None] = mapped_column(String(500))
    email_recipients: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    webhook_url: Mapped[str | None] = mapped_column(String(500))
    webhook_headers: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)

    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
