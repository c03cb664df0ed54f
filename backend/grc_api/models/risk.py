"""
Risk register — risks, assessments, treatments and risk↔control links.

Score = likelihood_score x impact_score (1..25)
Severity:  critical >=20, high >=12, medium >=6, low <6
"""
from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id, utcnow

LIKELIHOOD_SCORES: dict[str, int] = {
    "rare": 1,
    "unlikely": 2,
    "possible": 3,
    "likely": 4,
    "almost_certain": 5,
}

IMPACT_SCORES: dict[str, int] = {
    "negligible": 1,
    "minor": 2,
    "moderate": 3,
    "major": 4,
    "severe": 5,
}

RISK_CATEGORIES = (
    "operational", "financial", "strategic", "compliance", "technology", "legal",
    "reputational", "third_party", "physical", "data_privacy", "cyber_security",
    "human_resources", "environmental", "custom",
)
RISK_STATUSES = ("identified", "open", "treating", "monitoring", "accepted", "closed", "archived")
SEVERITIES = ("critical", "high", "medium", "low")

ASSESSMENT_TYPES = ("inherent", "residual")
SCORING_FORMULA = "likelihood_x_impact"

TREATMENT_TYPES = ("mitigate", "accept", "transfer", "avoid")
TREATMENT_STATUSES = ("planned", "in_progress", "implemented", "verified", "ineffective", "cancelled")
TREATMENT_PRIORITIES = ("critical", "high", "medium", "low")
EFFECTIVENESS_RATINGS = ("highly_effective", "effective", "partially_effective", "ineffective")

CONTROL_EFFECTIVENESS = (
    "not_assessed", "ineffective", "partially_effective", "largely_effective", "fully_effective",
)


def likelihood_score(level: str | None) -> int:
    return LIKELIHOOD_SCORES.get(level or "", 0)


def impact_score(level: str | None) -> int:
    return IMPACT_SCORES.get(level or "", 0)


def compute_score(likelihood: str | None, impact: str | None) -> int | None:
    """Likelihood x impact, or None when either level is missing or unknown."""
    l_score, i_score = likelihood_score(likelihood), impact_score(impact)
    if not l_score or not i_score:
        return None
    return l_score * i_score


def score_severity(score: float | None) -> str | None:
    if score is None:
        return None
    if score >= 20:
        return "critical"
    if score >= 12:
        return "high"
    if score >= 6:
        return "medium"
    return "low"


class Risk(Base):
    __tablename__ = "risks"
    __table_args__ = (
        UniqueConstraint("org_id", "identifier", name="uq_risks_identifier"),
        Index("idx_risks_org_status", "org_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    identifier: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="identified", nullable=False)

    # ── Ownership ──
    owner_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    secondary_owner_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"))

    # ── Scoring (denormalised from the current assessments) ──
    inherent_likelihood: Mapped[str | None] = mapped_column(String(20))
    inherent_impact: Mapped[str | None] = mapped_column(String(20))
    inherent_score: Mapped[int | None] = mapped_column(Integer)
    residual_likelihood: Mapped[str | None] = mapped_column(String(20))
    residual_impact: Mapped[str | None] = mapped_column(String(20))
    residual_score: Mapped[int | None] = mapped_column(Integer)
    risk_appetite_threshold: Mapped[int | None] = mapped_column(Integer)

    # ── Acceptance ──
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime)
    accepted_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    acceptance_expiry: Mapped[date | None] = mapped_column(Date)
    acceptance_justification: Mapped[str | None] = mapped_column(Text)

    # ── Assessment cadence ──
    assessment_frequency_days: Mapped[int | None] = mapped_column(Integer)
    next_assessment_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_assessed_at: Mapped[datetime | None] = mapped_column(DateTime)

    source: Mapped[str | None] = mapped_column(String(100))
    affected_assets: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    is_template: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    archived_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def inherent_severity(self) -> str | None:
        return score_severity(self.inherent_score)

    @property
    def residual_severity(self) -> str | None:
        return score_severity(self.residual_score)

    @property
    def appetite_breached(self) -> bool:
        if self.residual_score is None or self.risk_appetite_threshold is None:
            return False
        return self.residual_score > self.risk_appetite_threshold

    def clear_acceptance(self) -> None:
        self.accepted_at = None
        self.accepted_by = None
        self.acceptance_expiry = None
        self.acceptance_justification = None


class RiskAssessment(Base):
    __tablename__ = "risk_assessments"
    __table_args__ = (
        Index("idx_risk_assessments_risk", "risk_id", "assessment_type"),
        # at most one current assessment per (risk, type)
        Index(
            "uq_risk_assessments_current",
            "risk_id", "assessment_type",
            unique=True,
            sqlite_where=text("is_current = 1"),
            postgresql_where=text("is_current"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    risk_id: Mapped[str] = mapped_column(ForeignKey("risks.id", ondelete="CASCADE"), nullable=False)
    assessment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    likelihood: Mapped[str] = mapped_column(String(20), nullable=False)
    impact: Mapped[str] = mapped_column(String(20), nullable=False)
    likelihood_score: Mapped[int] = mapped_column(Integer, nullable=False)
    impact_score: Mapped[int] = mapped_column(Integer, nullable=False)
    overall_score: Mapped[int] = mapped_column(Integer, nullable=False)
    scoring_formula: Mapped[str] = mapped_column(String(50), default=SCORING_FORMULA, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    justification: Mapped[str | None] = mapped_column(Text)
    assumptions: Mapped[str | None] = mapped_column(Text)
    data_sources: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    assessed_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    assessment_date: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[date | None] = mapped_column(Date)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    superseded_by: Mapped[str | None] = mapped_column(ForeignKey("risk_assessments.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class RiskTreatment(Base):
    __tablename__ = "risk_treatments"
    __table_args__ = (
        Index("idx_risk_treatments_risk", "risk_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    risk_id: Mapped[str] = mapped_column(ForeignKey("risks.id", ondelete="CASCADE"), nullable=False)
    treatment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="planned", nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default="medium", nullable=False)
    owner_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    estimated_effort_hours: Mapped[float | None] = mapped_column(Numeric(10, 2))
    actual_effort_hours: Mapped[float | None] = mapped_column(Numeric(10, 2))
    due_date: Mapped[date | None] = mapped_column(Date)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    target_control_id: Mapped[str | None] = mapped_column(ForeignKey("controls.id"))

    # ── Expected residual recorded at plan time ──
    expected_residual_likelihood: Mapped[str | None] = mapped_column(String(20))
    expected_residual_impact: Mapped[str | None] = mapped_column(String(20))
    expected_residual_score: Mapped[int | None] = mapped_column(Integer)

    # ── Effectiveness review ──
    effectiveness_rating: Mapped[str | None] = mapped_column(String(30))
    effectiveness_notes: Mapped[str | None] = mapped_column(Text)
    effectiveness_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime)
    effectiveness_reviewed_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))

    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class RiskControl(Base):
    __tablename__ = "risk_controls"
    __table_args__ = (
        UniqueConstraint("org_id", "risk_id", "control_id", name="uq_risk_controls_pair"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    risk_id: Mapped[str] = mapped_column(ForeignKey("risks.id", ondelete="CASCADE"), nullable=False)
    control_id: Mapped[str] = mapped_column(ForeignKey("controls.id", ondelete="CASCADE"), nullable=False)
    effectiveness: Mapped[str] = mapped_column(String(30), default="not_assessed", nullable=False)
    mitigation_percentage: Mapped[int | None] = mapped_column(Integer)
    notes: Mapped[str | None] = mapped_column(Text)
    linked_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    last_effectiveness_review: Mapped[datetime | None] = mapped_column(DateTime)
    reviewed_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
