from datetime import datetime

from pydantic import BaseModel, Field

from .common import UserRef, UTCDateTime


class ControlRef(BaseModel):
    id: str
    identifier: str
    title: str


class TestRef(BaseModel):
    __test__ = False

    id: str
    identifier: str
    title: str


class AlertOut(BaseModel):
    id: str
    alert_number: int
    title: str
    description: str | None = None
    severity: str
    status: str
    control: ControlRef | None = None
    test: TestRef | None = None
    assigned_to: UserRef | None = None
    sla_deadline: UTCDateTime | None = None
    sla_breached: bool = False
    hours_remaining: float | None = None
    created_at: UTCDateTime
    updated_at: UTCDateTime


class AlertDetailOut(AlertOut):
    test_result_id: str | None = None
    alert_rule: dict | None = None
    assigned_at: UTCDateTime | None = None
    assigned_by: UserRef | None = None
    resolved_by: UserRef | None = None
    resolved_at: UTCDateTime | None = None
    resolution_notes: str | None = None
    suppressed_until: UTCDateTime | None = None
    suppression_reason: str | None = None
    delivery_channels: list[str] = []
    delivered_at: dict = {}
    tags: list[str] = []
    metadata: dict = {}


class AlertAssign(BaseModel):
    assigned_to: str | None = None


class AlertResolve(BaseModel):
    resolution_notes: str | None = None


class AlertSuppress(BaseModel):
    suppressed_until: datetime | None = None
    suppression_reason: str | None = None


class AlertClose(BaseModel):
    resolution_notes: str | None = None


class AlertRedeliver(BaseModel):
    channels: list[str] = []


class TestDelivery(BaseModel):
    __test__ = False

    channel: str | None = None
    slack_webhook_url: str | None = None
    email_recipients: list[str] = []
    webhook_url: str | None = None
    webhook_headers: dict[str, str] = {}


# ── Rules ──

class AlertRuleCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str | None = None
    enabled: bool = True
    match_test_types: list[str] = []
    match_severities: list[str] = []
    match_result_statuses: list[str] = ["fail"]
    match_control_ids: list[str] = []
    match_tags: list[str] = []
    consecutive_failures: int = 1
    cooldown_minutes: int = 0
    alert_severity: str
    alert_title_template: str | None = None
    auto_assign_to: str | None = None
    sla_hours: int | None = None
    delivery_channels: list[str] = ["in_app"]
    slack_webhook_url: str | None = None
    email_recipients: list[str] = []
    webhook_url: str | None = None
    webhook_headers: dict[str, str] = {}
    priority: int = 100


class AlertRuleUpdate(BaseModel):
    name: str | None = Field(None, min_length=1)
    description: str | None = None
    enabled: bool | None = None
    match_test_types: list[str] | None = None
    match_severities: list[str] | None = None
    match_result_statuses: list[str] | None = None
    match_control_ids: list[str] | None = None
    match_tags: list[str] | None = None
    consecutive_failures: int | None = None
    cooldown_minutes: int | None = None
    alert_severity: str | None = None
    alert_title_template: str | None = None
    auto_assign_to: str | None = None
    sla_hours: int | None = None
    delivery_channels: list[str] | None = None
    slack_webhook_url: str | None = None
    email_recipients: list[str] | None = None
    webhook_url: str | None = None
    webhook_headers: dict[str, str] | None = None
    priority: int | None = None


class AlertRuleOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    enabled: bool
    match_test_types: list[str] = []
    match_severities: list[str] = []
    match_result_statuses: list[str] = []
    match_control_ids: list[str] = []
    match_tags: list[str] = []
    consecutive_failures: int
    cooldown_minutes: int
    alert_severity: str
    alert_title_template: str | None = None
    auto_assign_to: UserRef | None = None
    sla_hours: int | None = None
    delivery_channels: list[str] = []
    slack_webhook_url: str | None = None
    email_recipients: list[str] = []
    webhook_url: str | None = None
    webhook_headers: dict = {}
    priority: int
    alerts_generated: int = 0
    created_by: UserRef | None = None
    created_at: UTCDateTime
    updated_at: UTCDateTime
