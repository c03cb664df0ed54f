from datetime import date

from pydantic import BaseModel, Field

from .common import UserRef, UTCDateTime


class InitialAssessment(BaseModel):
    inherent_likelihood: str
    inherent_impact: str
    residual_likelihood: str | None = None
    residual_impact: str | None = None
    justification: str | None = None


class RiskCreate(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1)
    description: str | None = None
    category: str
    owner_id: str | None = None
    secondary_owner_id: str | None = None
    risk_appetite_threshold: int | None = None
    assessment_frequency_days: int | None = Field(None, ge=1)
    source: str | None = None
    affected_assets: list[str] = []
    tags: list[str] = []
    is_template: bool = False
    metadata: dict | None = None
    initial_assessment: InitialAssessment | None = None


class RiskUpdate(BaseModel):
    title: str | None = Field(None, min_length=1)
    description: str | None = None
    category: str | None = None
    owner_id: str | None = None
    secondary_owner_id: str | None = None
    risk_appetite_threshold: int | None = None
    assessment_frequency_days: int | None = Field(None, ge=1)
    next_assessment_at: date | None = None
    source: str | None = None
    affected_assets: list[str] | None = None
    tags: list[str] | None = None
    metadata: dict | None = None


class RiskStatusChange(BaseModel):
    status: str
    justification: str | None = None
    acceptance_expiry: date | None = None


class ScoreOut(BaseModel):
    likelihood: str
    likelihood_score: int
    impact: str
    impact_score: int
    score: int
    severity: str


class AcceptanceOut(BaseModel):
    accepted_at: UTCDateTime | None = None
    accepted_by: UserRef | None = None
    expiry: date | None = None
    justification: str | None = None


class RiskOut(BaseModel):
    id: str
    identifier: str
    title: str
    description: str | None = None
    category: str
    status: str
    owner: UserRef | None = None
    secondary_owner: UserRef | None = None
    inherent_score: ScoreOut | None = None
    residual_score: ScoreOut | None = None
    risk_appetite_threshold: int | None = None
    appetite_breached: bool = False
    assessment_frequency_days: int | None = None
    next_assessment_at: UTCDateTime | None = None
    last_assessed_at: UTCDateTime | None = None
    assessment_status: str
    source: str | None = None
    affected_assets: list[str] = []
    tags: list[str] = []
    is_template: bool = False
    linked_controls_count: int = 0
    active_treatments_count: int = 0
    created_at: UTCDateTime
    updated_at: UTCDateTime


class LinkedControlOut(BaseModel):
    id: str
    control_id: str
    identifier: str
    title: str
    status: str
    effectiveness: str
    mitigation_percentage: int | None = None


class AssessmentSummary(BaseModel):
    id: str
    assessment_date: date
    valid_until: date | None = None
    assessor: UserRef | None = None
    justification: str | None = None
    overall_score: int
    severity: str


class RiskDetailOut(RiskOut):
    acceptance: AcceptanceOut | None = None
    metadata: dict = {}
    linked_controls: list[LinkedControlOut] = []
    treatment_summary: dict[str, int] = {}
    latest_assessments: dict[str, AssessmentSummary] = {}
    archived_at: UTCDateTime | None = None


# ── Assessments ──

class AssessmentCreate(BaseModel):
    assessment_type: str
    likelihood: str
    impact: str
    scoring_formula: str | None = None
    justification: str | None = None
    assumptions: str | None = None
    data_sources: list[str] = []
    valid_until: date | None = None


class AssessmentOut(BaseModel):
    id: str
    risk_id: str
    assessment_type: str
    likelihood: str
    impact: str
    likelihood_score: int
    impact_score: int
    overall_score: int
    severity: str
    scoring_formula: str
    justification: str | None = None
    assumptions: str | None = None
    data_sources: list[str] = []
    assessed_by: UserRef | None = None
    assessment_date: date
    valid_until: date | None = None
    is_current: bool
    superseded_by: str | None = None
    created_at: UTCDateTime


# ── Treatments ──

class TreatmentCreate(BaseModel):
    treatment_type: str
    title: str = Field(..., min_length=1)
    description: str | None = None
    priority: str = "medium"
    owner_id: str | None = None
    estimated_effort_hours: float | None = Field(None, ge=0)
    due_date: date | None = None
    target_control_id: str | None = None
    expected_residual_likelihood: str | None = None
    expected_residual_impact: str | None = None
    notes: str | None = None


class TreatmentUpdate(BaseModel):
    title: str | None = Field(None, min_length=1)
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    owner_id: str | None = None
    estimated_effort_hours: float | None = Field(None, ge=0)
    actual_effort_hours: float | None = Field(None, ge=0)
    due_date: date | None = None
    notes: str | None = None


class TreatmentComplete(BaseModel):
    actual_effort_hours: float | None = Field(None, ge=0)
    effectiveness_rating: str | None = None
    effectiveness_notes: str | None = None


class TreatmentOut(BaseModel):
    id: str
    risk_id: str
    treatment_type: str
    title: str
    description: str | None = None
    status: str
    priority: str
    owner: UserRef | None = None
    estimated_effort_hours: float | None = None
    actual_effort_hours: float | None = None
    due_date: date | None = None
    started_at: UTCDateTime | None = None
    completed_at: UTCDateTime | None = None
    target_control_id: str | None = None
    expected_residual_likelihood: str | None = None
    expected_residual_impact: str | None = None
    expected_residual_score: int | None = None
    expected_residual_severity: str | None = None
    effectiveness_rating: str | None = None
    effectiveness_notes: str | None = None
    effectiveness_reviewed_at: UTCDateTime | None = None
    notes: str | None = None
    is_overdue: bool = False
    created_at: UTCDateTime
    updated_at: UTCDateTime


# ── Risk ↔ control links ──

class RiskControlLink(BaseModel):
    control_id: str
    effectiveness: str = "not_assessed"
    mitigation_percentage: int | None = None
    notes: str | None = None


class RiskControlUpdate(BaseModel):
    effectiveness: str | None = None
    mitigation_percentage: int | None = None
    notes: str | None = None


class RiskControlOut(BaseModel):
    id: str
    risk_id: str
    control: dict
    effectiveness: str
    mitigation_percentage: int | None = None
    notes: str | None = None
    linked_by: UserRef | None = None
    last_effectiveness_review: UTCDateTime | None = None
    reviewed_by: UserRef | None = None
    created_at: UTCDateTime
    updated_at: UTCDateTime
