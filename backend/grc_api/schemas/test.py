from pydantic import BaseModel, Field

from .common import UserRef, UTCDateTime


class TestCreate(BaseModel):
    __test__ = False

    identifier: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    description: str | None = None
    test_type: str
    severity: str | None = None
    control_id: str
    schedule_cron: str | None = None
    schedule_interval_min: int | None = None
    test_config: dict | None = None
    test_script: str | None = None
    test_script_language: str | None = None
    timeout_seconds: int | None = None
    retry_count: int | None = None
    retry_delay_seconds: int | None = None
    tags: list[str] = []


class TestUpdate(BaseModel):
    __test__ = False

    title: str | None = Field(None, min_length=1)
    description: str | None = None
    severity: str | None = None
    schedule_cron: str | None = None
    schedule_interval_min: int | None = None
    test_config: dict | None = None
    test_script: str | None = None
    test_script_language: str | None = None
    timeout_seconds: int | None = None
    retry_count: int | None = None
    retry_delay_seconds: int | None = None
    tags: list[str] | None = None


class ControlBrief(BaseModel):
    id: str
    identifier: str
    title: str
    category: str | None = None
    status: str | None = None


class TestOut(BaseModel):
    __test__ = False

    id: str
    identifier: str
    title: str
    description: str | None = None
    test_type: str
    severity: str
    status: str
    control: ControlBrief | None = None
    schedule_cron: str | None = None
    schedule_interval_min: int | None = None
    next_run_at: UTCDateTime | None = None
    last_run_at: UTCDateTime | None = None
    tags: list[str] = []
    created_at: UTCDateTime
    updated_at: UTCDateTime


class TestDetailOut(TestOut):
    timeout_seconds: int
    retry_count: int
    retry_delay_seconds: int
    test_config: dict = {}
    test_script: str | None = None
    test_script_language: str | None = None
    created_by: UserRef | None = None


# ── Runs ──

class TestRunCreate(BaseModel):
    __test__ = False

    test_ids: list[str] = []
    trigger_metadata: dict | None = None


class TestRunOut(BaseModel):
    __test__ = False

    id: str
    run_number: int
    status: str
    trigger_type: str
    started_at: UTCDateTime | None = None
    completed_at: UTCDateTime | None = None
    duration_ms: int | None = None
    total_tests: int
    passed: int
    failed: int
    errors: int
    skipped: int
    warnings: int
    triggered_by: UserRef | None = None
    created_at: UTCDateTime


class TestRunDetailOut(TestRunOut):
    trigger_metadata: dict = {}
    worker_id: str | None = None
    error_message: str | None = None
    updated_at: UTCDateTime


# ── Results ──

class TestBrief(BaseModel):
    __test__ = False

    id: str
    identifier: str
    title: str
    test_type: str
    severity: str | None = None


class TestResultOut(BaseModel):
    __test__ = False

    id: str
    test_run_id: str
    run_number: int | None = None
    test: TestBrief | None = None
    control: ControlBrief | None = None
    status: str
    severity: str
    message: str | None = None
    details: dict = {}
    duration_ms: int | None = None
    alert_generated: bool = False
    alert_id: str | None = None
    started_at: UTCDateTime | None = None
    completed_at: UTCDateTime | None = None
    created_at: UTCDateTime


class TestResultDetailOut(TestResultOut):
    output_log: str | None = None
    error_message: str | None = None


class ResultReport(BaseModel):
    """One result posted by the execution engine."""

    test_id: str
    status: str
    message: str | None = None
    details: dict | None = None
    output_log: str | None = None
    error_message: str | None = None
    started_at: UTCDateTime | None = None
    completed_at: UTCDateTime | None = None
    duration_ms: int | None = Field(None, ge=0)
