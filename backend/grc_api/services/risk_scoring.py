"""
Risk scoring — assessment supersession, score denormalisation and the
automatic risk transitions driven by treatments.

Callers own the transaction: nothing here commits.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.middleware.audit import audit_log
from grc_api.models.base import utcnow
from grc_api.models.risk import (
    SCORING_FORMULA, Risk, RiskAssessment, RiskTreatment, compute_score, impact_score,
    likelihood_score, score_severity,
)
from grc_api.services.lifecycle import OPEN_TREATMENT_STATUSES


def assessment_status(next_assessment_at: datetime | None, now: datetime | None = None) -> str:
    """no_schedule / overdue / due_soon (< 30 days) / on_track."""
    if next_assessment_at is None:
        return "no_schedule"
    now = now or utcnow()
    if next_assessment_at < now:
        return "overdue"
    if next_assessment_at < now + timedelta(days=30):
        return "due_soon"
    return "on_track"


def _denormalise(risk: Risk, assessment_type: str, likelihood: str | None, impact: str | None) -> None:
    score = compute_score(likelihood, impact)
    if assessment_type == "inherent":
        risk.inherent_likelihood, risk.inherent_impact, risk.inherent_score = likelihood, impact, score
    else:
        risk.residual_likelihood, risk.residual_impact, risk.residual_score = likelihood, impact, score


async def record_assessment(
    s: AsyncSession,
    risk: Risk,
    assessment_type: str,
    likelihood: str,
    impact: str,
    assessed_by: str | None,
    *,
    justification: str | None = None,
    assumptions: str | None = None,
    data_sources: list[str] | None = None,
    valid_until: date | None = None,
) -> RiskAssessment:
    """
    Store a new current assessment of ``assessment_type`` for ``risk``.

    The previous current assessment of the same type is flipped to
    not-current before the insert so the one-current-per-type index holds,
    then linked to its successor. The risk's score triple and assessment
    cadence are updated in the same transaction.
    """
    now = utcnow()
    previous = (await s.execute(
        select(RiskAssessment).where(
            RiskAssessment.risk_id == risk.id,
            RiskAssessment.org_id == risk.org_id,
            RiskAssessment.assessment_type == assessment_type,
            RiskAssessment.is_current.is_(True),
        )
    )).scalar_one_or_none()
    if previous is not None:
        previous.is_current = False
        await s.flush()

    l_score, i_score = likelihood_score(likelihood), impact_score(impact)
    overall = l_score * i_score
    assessment = RiskAssessment(
        org_id=risk.org_id,
        risk_id=risk.id,
        assessment_type=assessment_type,
        likelihood=likelihood,
        impact=impact,
        likelihood_score=l_score,
        impact_score=i_score,
        overall_score=overall,
        scoring_formula=SCORING_FORMULA,
        severity=score_severity(overall),
        justification=justification,
        assumptions=assumptions,
        data_sources=data_sources or [],
        assessed_by=assessed_by,
        assessment_date=now.date(),
        valid_until=valid_until,
        is_current=True,
        created_at=now,
    )
    s.add(assessment)
    await s.flush()
    if previous is not None:
        previous.superseded_by = assessment.id

    _denormalise(risk, assessment_type, likelihood, impact)
    risk.last_assessed_at = now
    if risk.assessment_frequency_days:
        risk.next_assessment_at = now + timedelta(days=risk.assessment_frequency_days)
    await s.flush()
    return assessment


async def recalculate_scores(s: AsyncSession, risk: Risk) -> None:
    """Rebuild the denormalised score triples from the current assessments."""
    current = (await s.execute(
        select(RiskAssessment).where(
            RiskAssessment.risk_id == risk.id,
            RiskAssessment.org_id == risk.org_id,
            RiskAssessment.is_current.is_(True),
        )
    )).scalars().all()
    by_type = {a.assessment_type: a for a in current}
    for assessment_type in ("inherent", "residual"):
        a = by_type.get(assessment_type)
        if a is not None:
            _denormalise(risk, assessment_type, a.likelihood, a.impact)
        else:
            # no current assessment: keep whatever was set directly, but re-derive the score
            if assessment_type == "inherent":
                risk.inherent_score = compute_score(risk.inherent_likelihood, risk.inherent_impact)
            else:
                risk.residual_score = compute_score(risk.residual_likelihood, risk.residual_impact)
    await s.flush()


async def open_treatment_count(s: AsyncSession, risk: Risk) -> int:
    return (await s.execute(
        select(func.count(RiskTreatment.id)).where(
            RiskTreatment.risk_id == risk.id,
            RiskTreatment.org_id == risk.org_id,
            RiskTreatment.status.in_(OPEN_TREATMENT_STATUSES),
        )
    )).scalar() or 0


async def auto_transition(s: AsyncSession, risk: Risk, new_status: str, trigger: str) -> None:
    old_status = risk.status
    risk.status = new_status
    await audit_log(s, "risk.status_changed", "risk", risk.id, {
        "from": old_status, "to": new_status, "trigger": trigger,
    })


async def on_treatment_created(s: AsyncSession, risk: Risk) -> None:
    """The first treatment moves an identified/open risk to treating."""
    if risk.status not in ("identified", "open"):
        return
    total = (await s.execute(
        select(func.count(RiskTreatment.id)).where(
            RiskTreatment.risk_id == risk.id, RiskTreatment.org_id == risk.org_id,
        )
    )).scalar() or 0
    if total == 1:
        await auto_transition(s, risk, "treating", "treatment_created")


async def on_treatment_finished(s: AsyncSession, risk: Risk) -> None:
    """A treating risk with no open treatments left moves to monitoring."""
    if risk.status != "treating":
        return
    await s.flush()
    if await open_treatment_count(s, risk) == 0:
        await auto_transition(s, risk, "monitoring", "all_treatments_complete")
