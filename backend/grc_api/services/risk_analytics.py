"""
Risk analytics — heat map, gap detection and register statistics.

Every public function takes an AsyncSession and the caller's org_id.
Closed and archived risks and templates are left out of the heat map and
the gap view; stats cover every non-template risk.
"""
from __future__ import annotations

from datetime import timedelta

from sqlalchemy import and_, case, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.models.audit import AuditLog
from grc_api.models.base import utcnow
from grc_api.models.risk import (
    IMPACT_SCORES, LIKELIHOOD_SCORES, RISK_STATUSES, SEVERITIES, TREATMENT_STATUSES, Risk, RiskControl,
    RiskTreatment, score_severity,
)
from grc_api.models.user import User
from grc_api.schemas.common import iso
from grc_api.services.lifecycle import CANCELLABLE_TREATMENT_STATUSES

GAP_TYPES = ("no_treatments", "no_controls", "high_without_controls", "overdue_assessment", "expired_acceptance")
MIN_SEVERITY_SCORE = {"critical": 20, "high": 12, "medium": 6}
HIGH_SCORE = 12
RISK_RESOURCE_TYPES = ("risk", "risk_assessment", "risk_treatment", "risk_control")


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def _active(org_id: str):
    return and_(
        Risk.org_id == org_id,
        Risk.is_template.is_(False),
        Risk.status.not_in(("closed", "archived")),
    )


def _has_treatments():
    return exists().where(RiskTreatment.risk_id == Risk.id, RiskTreatment.org_id == Risk.org_id)


def _has_controls():
    return exists().where(RiskControl.risk_id == Risk.id, RiskControl.org_id == Risk.org_id)


def _gap_conditions() -> dict:
    now = utcnow()
    return {
        "no_treatments": ~_has_treatments(),
        "no_controls": ~_has_controls(),
        "high_without_controls": and_(Risk.residual_score >= HIGH_SCORE, ~_has_controls()),
        "overdue_assessment": and_(Risk.next_assessment_at.is_not(None), Risk.next_assessment_at < now),
        "expired_acceptance": and_(
            Risk.status == "accepted",
            Risk.acceptance_expiry.is_not(None),
            Risk.acceptance_expiry < now.date(),
        ),
    }


async def _count(s: AsyncSession, *where) -> int:
    return (await s.execute(select(func.count(Risk.id)).where(*where))).scalar() or 0


def _round(value, digits: int = 2) -> float:
    return round(float(value), digits) if value is not None else 0.0


def recommendation(gap_types: list[str], severity: str | None) -> str:
    """Plain-language next step for a risk with the given gaps."""
    parts: list[str] = []
    no_treatments = "no_treatments" in gap_types
    no_controls = "no_controls" in gap_types

    if no_treatments and no_controls:
        if severity in ("high", "critical"):
            lead = f"{severity.capitalize()}-severity risk with "
        else:
            lead = "Risk with "
        parts.append(lead + "no treatments or controls. Immediate action needed: "
                            "create mitigation plan and link relevant controls.")
    elif no_treatments:
        parts.append("No treatment plans exist. Create a mitigation plan.")
    elif no_controls:
        parts.append("No controls linked. Link relevant controls to track mitigation.")

    if "overdue_assessment" in gap_types:
        parts.append("Assessment is overdue; schedule reassessment.")
    if "expired_acceptance" in gap_types:
        parts.append("Risk acceptance has expired. Re-assess and either renew acceptance or create treatment plan.")

    return " ".join(parts) if parts else "Review recommended."


# ──────────────────────────────────────────────
# Heat map
# ──────────────────────────────────────────────

async def heat_map(
    s: AsyncSession,
    org_id: str,
    score_type: str = "residual",
    category: str | None = None,
    statuses: list[str] | None = None,
) -> dict:
    """5 x 5 likelihood/impact grid, highest cells first."""
    if score_type == "inherent":
        l_col, i_col = Risk.inherent_likelihood, Risk.inherent_impact
    else:
        score_type = "residual"
        l_col, i_col = Risk.residual_likelihood, Risk.residual_impact

    where = [_active(org_id)]
    if category:
        where.append(Risk.category == category)
    if statuses:
        where.append(Risk.status.in_(statuses))

    rows = (await s.execute(
        select(l_col, i_col, Risk.id, Risk.identifier, Risk.title, Risk.status)
        .where(*where, l_col.is_not(None), i_col.is_not(None))
        .order_by(Risk.identifier)
    )).all()

    cells: dict[tuple[str, str], list[dict]] = {}
    by_severity = {sev: 0 for sev in SEVERITIES}
    total_score = 0
    for likelihood, impact, risk_id, identifier, title, status in rows:
        if likelihood not in LIKELIHOOD_SCORES or impact not in IMPACT_SCORES:
            continue
        cells.setdefault((likelihood, impact), []).append({
            "id": risk_id, "identifier": identifier, "title": title, "status": status,
        })
        score = LIKELIHOOD_SCORES[likelihood] * IMPACT_SCORES[impact]
        by_severity[score_severity(score)] += 1
        total_score += score
    counted = sum(len(v) for v in cells.values())

    breaches = await _count(
        s, *where,
        Risk.residual_score.is_not(None),
        Risk.risk_appetite_threshold.is_not(None),
        Risk.residual_score > Risk.risk_appetite_threshold,
    )

    grid = []
    for likelihood, l_score in sorted(LIKELIHOOD_SCORES.items(), key=lambda kv: -kv[1]):
        for impact, i_score in sorted(IMPACT_SCORES.items(), key=lambda kv: -kv[1]):
            risks = cells.get((likelihood, impact), [])
            score = l_score * i_score
            grid.append({
                "likelihood": likelihood,
                "likelihood_score": l_score,
                "impact": impact,
                "impact_score": i_score,
                "score": score,
                "severity": score_severity(score),
                "count": len(risks),
                "risks": risks,
            })

    return {
        "score_type": score_type,
        "grid": grid,
        "summary": {
            "total_risks": counted,
            "by_severity": by_severity,
            "average_score": round(total_score / counted, 2) if counted else 0.0,
            "appetite_breaches": breaches,
        },
    }


# ──────────────────────────────────────────────
# Gaps
# ──────────────────────────────────────────────

async def gap_summary(s: AsyncSession, org_id: str) -> dict:
    cond = _gap_conditions()
    active = _active(org_id)
    return {
        "total_active_risks": await _count(s, active),
        "risks_without_treatments": await _count(s, active, cond["no_treatments"]),
        "risks_without_controls": await _count(s, active, cond["no_controls"]),
        "high_risks_without_controls": await _count(s, active, cond["high_without_controls"]),
        "overdue_assessments": await _count(s, active, cond["overdue_assessment"]),
        # accepted risks only, so the closed/archived filter is implied
        "expired_acceptances": await _count(s, Risk.org_id == org_id, cond["expired_acceptance"]),
    }


async def find_gaps(
    s: AsyncSession,
    org_id: str,
    gap_type: str = "all",
    min_severity: str | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[dict], int]:
    """Risks with at least one gap (or the requested one), worst residual score first."""
    cond = _gap_conditions()
    where = [_active(org_id)]
    if min_severity in MIN_SEVERITY_SCORE:
        where.append(Risk.residual_score >= MIN_SEVERITY_SCORE[min_severity])
    if gap_type in cond:
        where.append(cond[gap_type])
    else:
        where.append(or_(
            cond["no_treatments"], cond["no_controls"], cond["overdue_assessment"], cond["expired_acceptance"],
        ))

    total = await _count(s, *where)

    treat_count = (
        select(func.count(RiskTreatment.id))
        .where(RiskTreatment.risk_id == Risk.id, RiskTreatment.org_id == Risk.org_id)
        .correlate(Risk).scalar_subquery()
    )
    ctrl_count = (
        select(func.count(RiskControl.id))
        .where(RiskControl.risk_id == Risk.id, RiskControl.org_id == Risk.org_id)
        .correlate(Risk).scalar_subquery()
    )
    rows = (await s.execute(
        select(Risk, User, treat_count.label("treat_count"), ctrl_count.label("ctrl_count"))
        .outerjoin(User, User.id == Risk.owner_id)
        .where(*where)
        .order_by(
            case((Risk.residual_score.is_(None), 1), else_=0),
            Risk.residual_score.desc(),
            Risk.created_at.asc(),
        )
        .offset(offset)
        .limit(limit)
    )).all()

    now = utcnow()
    today = now.date()
    gaps = []
    for risk, owner, n_treat, n_ctrl in rows:
        severity = score_severity(risk.residual_score) or "low"
        types = []
        if not n_treat:
            types.append("no_treatments")
        if not n_ctrl:
            types.append("no_controls")
        if risk.residual_score is not None and risk.residual_score >= HIGH_SCORE and not n_ctrl:
            types.append("high_without_controls")
        if risk.next_assessment_at is not None and risk.next_assessment_at < now:
            types.append("overdue_assessment")
        if risk.status == "accepted" and risk.acceptance_expiry is not None and risk.acceptance_expiry < today:
            types.append("expired_acceptance")

        gap = {
            "risk": {
                "id": risk.id,
                "identifier": risk.identifier,
                "title": risk.title,
                "category": risk.category,
                "status": risk.status,
                "residual_score": risk.residual_score,
                "severity": severity,
                "owner": {"id": owner.id, "name": owner.full_name} if owner else None,
            },
            "gap_types": types,
            "days_open": (now - risk.created_at).days,
            "recommendation": recommendation(types, severity),
        }
        if risk.acceptance_expiry is not None:
            gap["acceptance_expiry"] = risk.acceptance_expiry.isoformat()
            gap["days_until_expiry"] = (risk.acceptance_expiry - today).days
        gaps.append(gap)
    return gaps, total


# ──────────────────────────────────────────────
# Stats
# ──────────────────────────────────────────────

async def risk_stats(s: AsyncSession, org_id: str) -> dict:
    org = and_(Risk.org_id == org_id, Risk.is_template.is_(False))
    active = _active(org_id)
    now = utcnow()

    by_status = {st: 0 for st in RISK_STATUSES}
    for st, n in (await s.execute(select(Risk.status, func.count()).where(org).group_by(Risk.status))).all():
        by_status[st] = n
    by_category: dict[str, int] = {}
    for cat, n in (await s.execute(
        select(Risk.category, func.count()).where(org).group_by(Risk.category).order_by(func.count().desc())
    )).all():
        by_category[cat] = n
    by_severity = {sev: 0 for sev in SEVERITIES}
    for score, n in (await s.execute(
        select(Risk.residual_score, func.count())
        .where(org, Risk.residual_score.is_not(None))
        .group_by(Risk.residual_score)
    )).all():
        by_severity[score_severity(score)] += n

    avg_inherent, avg_residual = (await s.execute(
        select(func.avg(Risk.inherent_score), func.avg(Risk.residual_score))
        .where(org, Risk.inherent_score.is_not(None))
    )).one()
    reduction = 0.0
    if avg_inherent and avg_residual is not None:
        reduction = round((1 - float(avg_residual) / float(avg_inherent)) * 100, 2)
    top = (await s.execute(
        select(Risk).where(org, Risk.residual_score.is_not(None))
        .order_by(Risk.residual_score.desc(), Risk.identifier).limit(1)
    )).scalar_one_or_none()

    treatments = {st: 0 for st in TREATMENT_STATUSES}
    for st, n in (await s.execute(
        select(RiskTreatment.status, func.count())
        .where(RiskTreatment.org_id == org_id).group_by(RiskTreatment.status)
    )).all():
        treatments[st] = n
    treatments["total"] = sum(treatments.values())
    treatments["overdue"] = (await s.execute(
        select(func.count(RiskTreatment.id)).where(
            RiskTreatment.org_id == org_id,
            RiskTreatment.due_date < now.date(),
            RiskTreatment.status.in_(CANCELLABLE_TREATMENT_STATUSES),
        )
    )).scalar() or 0

    per_risk = (
        select(func.count(RiskControl.id).label("n"))
        .join(Risk, Risk.id == RiskControl.risk_id)
        .where(RiskControl.org_id == org_id, Risk.is_template.is_(False))
        .group_by(RiskControl.risk_id)
        .subquery()
    )
    avg_controls = (await s.execute(select(func.avg(per_risk.c.n)))).scalar()

    with_threshold = and_(active, Risk.risk_appetite_threshold.is_not(None))

    activity = []
    for entry, actor in (await s.execute(
        select(AuditLog, User)
        .outerjoin(User, User.id == AuditLog.actor_id)
        .where(AuditLog.org_id == org_id, AuditLog.resource_type.in_(RISK_RESOURCE_TYPES))
        .order_by(AuditLog.created_at.desc())
        .limit(5)
    )).all():
        activity.append({
            "action": entry.action,
            "resource_type": entry.resource_type,
            "resource_id": entry.resource_id,
            "actor": actor.full_name if actor else "System",
            "timestamp": iso(entry.created_at),
        })

    return {
        "total_risks": await _count(s, org),
        "by_status": by_status,
        "by_category": by_category,
        "by_severity": by_severity,
        "scoring_summary": {
            "average_inherent_score": _round(avg_inherent),
            "average_residual_score": _round(avg_residual),
            "average_risk_reduction": reduction,
            "highest_residual": {
                "id": top.id,
                "identifier": top.identifier,
                "title": top.title,
                "score": top.residual_score,
                "severity": score_severity(top.residual_score),
            } if top else None,
        },
        "treatment_summary": treatments,
        "control_coverage": {
            "risks_with_controls": await _count(s, active, _has_controls()),
            "risks_without_controls": await _count(s, active, ~_has_controls()),
            "average_controls_per_risk": _round(avg_controls, 1),
        },
        "assessment_health": {
            "overdue_assessments": await _count(s, active, Risk.next_assessment_at < now),
            "due_within_30_days": await _count(
                s, active, Risk.next_assessment_at >= now, Risk.next_assessment_at < now + timedelta(days=30),
            ),
            "expired_acceptances": await _count(s, Risk.org_id == org_id, _gap_conditions()["expired_acceptance"]),
        },
        "appetite_summary": {
            "within_appetite": await _count(s, with_threshold, or_(
                Risk.residual_score.is_(None), Risk.residual_score <= Risk.risk_appetite_threshold,
            )),
            "breaching_appetite": await _count(
                s, with_threshold, Risk.residual_score.is_not(None),
                Risk.residual_score > Risk.risk_appetite_threshold,
            ),
            "no_threshold_set": await _count(s, active, Risk.risk_appetite_threshold.is_(None)),
        },
        "templates_available": await _count(s, Risk.org_id == org_id, Risk.is_template.is_(True)),
        "recent_activity": activity,
    }
