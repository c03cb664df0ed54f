"""
Risk register — /api/v1/risks

Lifecycle:  identified → {open, treating, accepted, archived}
            open       → {treating, accepted, closed, archived}
            treating   → {monitoring, open, accepted, archived}
            monitoring → {treating, closed, archived}
            accepted   → {open, treating, archived}
            closed     → {open, archived}
            archived   (terminal)

Scores on the risk row are copies of the current inherent / residual
assessments; they are only written through services.risk_scoring.
"""
from datetime import datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import String, cast, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api import roles
from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_current_user, get_owned, require_roles
from grc_api.errors import validation_error
from grc_api.middleware.audit import audit_log, diff_changes
from grc_api.models.base import utcnow
from grc_api.models.control import Control
from grc_api.models.risk import (
    ASSESSMENT_TYPES, IMPACT_SCORES, LIKELIHOOD_SCORES, RISK_CATEGORIES, RISK_STATUSES, SCORING_FORMULA,
    TREATMENT_STATUSES, Risk, RiskAssessment, RiskControl, RiskTreatment, impact_score, likelihood_score,
    score_severity,
)
from grc_api.models.user import User
from grc_api.pagination import Page, order_by, paginate, resolve_order, resolve_sort
from grc_api.responses import envelope, listing
from grc_api.schemas.common import iso
from grc_api.schemas.risk import (
    AcceptanceOut, AssessmentCreate, AssessmentOut, AssessmentSummary, LinkedControlOut, RiskCreate,
    RiskDetailOut, RiskOut, RiskStatusChange, RiskUpdate, ScoreOut,
)
from grc_api.services.lifecycle import CANCELLABLE_TREATMENT_STATUSES, RISK_TRANSITIONS, ensure_transition
from grc_api.services.refs import user_ref, user_refs
from grc_api.services.risk_scoring import assessment_status, recalculate_scores, record_assessment
from grc_api.validation import check_choice, check_max_length, check_metadata

router = APIRouter(prefix="/api/v1/risks", tags=["Risks"])

TITLE_MAX = 500

RISK_SORTS = {
    "identifier": Risk.identifier,
    "title": Risk.title,
    "category": Risk.category,
    "status": Risk.status,
    "inherent_score": Risk.inherent_score,
    "residual_score": Risk.residual_score,
    "next_assessment_at": Risk.next_assessment_at,
    "created_at": Risk.created_at,
    "updated_at": Risk.updated_at,
}

# residual-score band per severity, upper bound exclusive
SEVERITY_BANDS = {
    "critical": (20, None),
    "high": (12, 20),
    "medium": (6, 12),
    "low": (None, 6),
}


def _score(likelihood: str | None, impact: str | None, score: int | None) -> ScoreOut | None:
    if likelihood is None or impact is None or score is None:
        return None
    return ScoreOut(
        likelihood=likelihood,
        likelihood_score=likelihood_score(likelihood),
        impact=impact,
        impact_score=impact_score(impact),
        score=score,
        severity=score_severity(score),
    )


def _linked_controls_count():
    return (
        select(func.count(RiskControl.id))
        .where(RiskControl.risk_id == Risk.id, RiskControl.org_id == Risk.org_id)
        .correlate(Risk)
        .scalar_subquery()
    )


def _active_treatments_count():
    return (
        select(func.count(RiskTreatment.id))
        .where(
            RiskTreatment.risk_id == Risk.id,
            RiskTreatment.org_id == Risk.org_id,
            RiskTreatment.status.in_(CANCELLABLE_TREATMENT_STATUSES),
        )
        .correlate(Risk)
        .scalar_subquery()
    )


def _risk_fields(risk: Risk, refs: dict) -> dict:
    return dict(
        id=risk.id,
        identifier=risk.identifier,
        title=risk.title,
        description=risk.description,
        category=risk.category,
        status=risk.status,
        owner=refs.get(risk.owner_id),
        secondary_owner=refs.get(risk.secondary_owner_id),
        inherent_score=_score(risk.inherent_likelihood, risk.inherent_impact, risk.inherent_score),
        residual_score=_score(risk.residual_likelihood, risk.residual_impact, risk.residual_score),
        risk_appetite_threshold=risk.risk_appetite_threshold,
        appetite_breached=risk.appetite_breached,
        assessment_frequency_days=risk.assessment_frequency_days,
        next_assessment_at=risk.next_assessment_at,
        last_assessed_at=risk.last_assessed_at,
        assessment_status=assessment_status(risk.next_assessment_at),
        source=risk.source,
        affected_assets=risk.affected_assets or [],
        tags=risk.tags or [],
        is_template=risk.is_template,
        created_at=risk.created_at,
        updated_at=risk.updated_at,
    )


async def _risk_detail(s: AsyncSession, risk: Risk) -> RiskDetailOut:
    org_id = risk.org_id
    refs = await user_refs(s, org_id, [risk.owner_id, risk.secondary_owner_id, risk.accepted_by])

    links = (await s.execute(
        select(RiskControl, Control)
        .join(Control, Control.id == RiskControl.control_id)
        .where(RiskControl.risk_id == risk.id, RiskControl.org_id == org_id)
        .order_by(Control.identifier)
    )).all()
    linked = [
        LinkedControlOut(
            id=rc.id, control_id=c.id, identifier=c.identifier, title=c.title, status=c.status,
            effectiveness=rc.effectiveness, mitigation_percentage=rc.mitigation_percentage,
        )
        for rc, c in links
    ]

    summary = {st: 0 for st in TREATMENT_STATUSES}
    for st, n in (await s.execute(
        select(RiskTreatment.status, func.count())
        .where(RiskTreatment.risk_id == risk.id, RiskTreatment.org_id == org_id)
        .group_by(RiskTreatment.status)
    )).all():
        summary[st] = n
    summary["total"] = sum(summary.values())

    current = (await s.execute(
        select(RiskAssessment).where(
            RiskAssessment.risk_id == risk.id,
            RiskAssessment.org_id == org_id,
            RiskAssessment.is_current.is_(True),
        )
    )).scalars().all()
    assessors = await user_refs(s, org_id, [a.assessed_by for a in current])
    latest = {
        a.assessment_type: AssessmentSummary(
            id=a.id,
            assessment_date=a.assessment_date,
            valid_until=a.valid_until,
            assessor=assessors.get(a.assessed_by),
            justification=a.justification,
            overall_score=a.overall_score,
            severity=a.severity,
        )
        for a in current
    }

    acceptance = None
    if risk.status == "accepted" and risk.accepted_at is not None:
        acceptance = AcceptanceOut(
            accepted_at=risk.accepted_at,
            accepted_by=refs.get(risk.accepted_by),
            expiry=risk.acceptance_expiry,
            justification=risk.acceptance_justification,
        )

    return RiskDetailOut(
        **_risk_fields(risk, refs),
        linked_controls_count=len(linked),
        active_treatments_count=summary["planned"] + summary["in_progress"],
        acceptance=acceptance,
        metadata=risk.metadata_ or {},
        linked_controls=linked,
        treatment_summary=summary,
        latest_assessments=latest,
        archived_at=risk.archived_at,
    )


async def check_risk_owner(s: AsyncSession, org_id: str, user_id: str, field: str) -> None:
    """Risk owners must be active users of the caller's organization."""
    found = (await s.execute(
        select(User.id).where(User.id == user_id, User.org_id == org_id, User.status == "active")
    )).first()
    if not found:
        raise HTTPException(422, f"{field} does not exist or does not belong to this organization")


def _check_levels(likelihood: str | None, impact: str | None, prefix: str = "") -> None:
    if likelihood is not None and likelihood not in LIKELIHOOD_SCORES:
        raise validation_error(f"Invalid {prefix}likelihood value")
    if impact is not None and impact not in IMPACT_SCORES:
        raise validation_error(f"Invalid {prefix}impact value")


def _check_appetite(value: int | None) -> None:
    if value is not None and not 1 <= value <= 25:
        raise validation_error("Risk appetite threshold must be between 1 and 25")


def can_manage(user: CurrentUser, risk: Risk) -> bool:
    return user.role in roles.RISK_MANAGE or risk.owner_id == user.user_id


async def get_risk(s: AsyncSession, risk_id: str, org_id: str) -> Risk:
    return await get_owned(s, Risk, risk_id, org_id, "Risk")


async def archive_risk(s: AsyncSession, risk: Risk) -> int:
    """Archive ``risk`` and cancel its planned / in-progress treatments. Returns the cancel count."""
    now = utcnow()
    treatments = (await s.execute(
        select(RiskTreatment).where(
            RiskTreatment.risk_id == risk.id,
            RiskTreatment.org_id == risk.org_id,
            RiskTreatment.status.in_(CANCELLABLE_TREATMENT_STATUSES),
        )
    )).scalars().all()
    for t in treatments:
        t.status = "cancelled"
        t.updated_at = now
    if risk.status == "accepted":
        risk.clear_acceptance()
    risk.status = "archived"
    risk.archived_at = now
    return len(treatments)


# ═══════════════════ LIST ═══════════════════

@router.get("")
async def list_risks(
    status: str | None = Query(None),
    category: str | None = Query(None),
    owner_id: str | None = Query(None),
    severity: str | None = Query(None),
    score_min: int | None = Query(None),
    score_max: int | None = Query(None),
    score_type: str = Query("residual"),
    has_treatments: bool | None = Query(None),
    has_controls: bool | None = Query(None),
    overdue_assessment: bool = Query(False),
    tags: str | None = Query(None),
    search: str | None = Query(None),
    is_template: bool = Query(False),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(paginate(100)),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    q = select(Risk).where(Risk.org_id == user.org_id, Risk.is_template.is_(is_template))
    if status:
        q = q.where(Risk.status == status)
    if category:
        q = q.where(Risk.category == category)
    if owner_id:
        q = q.where(Risk.owner_id == owner_id)
    if severity in SEVERITY_BANDS:
        low, high = SEVERITY_BANDS[severity]
        q = q.where(Risk.residual_score.is_not(None))
        if low is not None:
            q = q.where(Risk.residual_score >= low)
        if high is not None:
            q = q.where(Risk.residual_score < high)
    score_col = Risk.inherent_score if score_type == "inherent" else Risk.residual_score
    if score_min is not None:
        q = q.where(score_col >= score_min)
    if score_max is not None:
        q = q.where(score_col <= score_max)

    has_treatment = exists().where(RiskTreatment.risk_id == Risk.id, RiskTreatment.org_id == Risk.org_id)
    if has_treatments is not None:
        q = q.where(has_treatment if has_treatments else ~has_treatment)
    has_control = exists().where(RiskControl.risk_id == Risk.id, RiskControl.org_id == Risk.org_id)
    if has_controls is not None:
        q = q.where(has_control if has_controls else ~has_control)
    if overdue_assessment:
        q = q.where(Risk.next_assessment_at.is_not(None), Risk.next_assessment_at < utcnow())
    if tags:
        # tags are a JSON array; match each requested tag as a quoted element
        for tag in (t.strip() for t in tags.split(",")):
            if tag:
                q = q.where(cast(Risk.tags, String).like(f'%"{tag}"%'))
    if search:
        pattern = f"%{search.lower()}%"
        q = q.where(or_(
            func.lower(Risk.identifier).like(pattern),
            func.lower(Risk.title).like(pattern),
            func.lower(func.coalesce(Risk.description, "")).like(pattern),
        ))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    col = resolve_sort(sort, RISK_SORTS, "residual_score")
    q = q.add_columns(
        _linked_controls_count().label("linked_controls_count"),
        _active_treatments_count().label("active_treatments_count"),
    )
    q = page.apply(q.order_by(order_by(col, resolve_order(order, "desc")), Risk.identifier))
    rows = (await s.execute(q)).all()

    refs = await user_refs(s, user.org_id, [r.owner_id for r, *_ in rows] + [r.secondary_owner_id for r, *_ in rows])
    items = [
        RiskOut(**_risk_fields(r, refs), linked_controls_count=lc or 0, active_treatments_count=at or 0)
        for r, lc, at in rows
    ]
    return listing(items, total, page.page, page.per_page)


# ═══════════════════ CRUD ═══════════════════

@router.post("", status_code=201)
async def create_risk(
    body: RiskCreate,
    user: CurrentUser = Depends(require_roles(*roles.RISK_MANAGE)),
    s: AsyncSession = Depends(get_session),
):
    check_max_length("Title", body.title, TITLE_MAX)
    check_choice("risk category", body.category, RISK_CATEGORIES)
    _check_appetite(body.risk_appetite_threshold)
    if body.metadata:
        check_metadata(body.metadata)
    initial = body.initial_assessment
    if initial is not None:
        _check_levels(initial.inherent_likelihood, initial.inherent_impact, "inherent_")
        _check_levels(initial.residual_likelihood, initial.residual_impact, "residual_")
        if (initial.residual_likelihood is None) != (initial.residual_impact is None):
            raise validation_error("residual_likelihood and residual_impact must be provided together")

    owner_id = body.owner_id or user.user_id
    if body.secondary_owner_id and body.secondary_owner_id == owner_id:
        raise validation_error("Secondary owner must be different from primary owner")

    dup = (await s.execute(
        select(Risk.id).where(Risk.org_id == user.org_id, Risk.identifier == body.identifier)
    )).first()
    if dup:
        raise HTTPException(409, "Risk identifier already exists in this organization")
    if body.owner_id:
        await check_risk_owner(s, user.org_id, body.owner_id, "owner_id")
    if body.secondary_owner_id:
        await check_risk_owner(s, user.org_id, body.secondary_owner_id, "secondary_owner_id")

    risk = Risk(
        org_id=user.org_id,
        identifier=body.identifier,
        title=body.title,
        description=body.description,
        category=body.category,
        status="identified",
        owner_id=owner_id,
        secondary_owner_id=body.secondary_owner_id,
        risk_appetite_threshold=body.risk_appetite_threshold,
        assessment_frequency_days=body.assessment_frequency_days,
        source=body.source,
        affected_assets=body.affected_assets,
        tags=body.tags,
        is_template=body.is_template,
        metadata_=body.metadata or {},
        created_by=user.user_id,
    )
    s.add(risk)
    await s.flush()
    await audit_log(s, "risk.created", "risk", risk.id, {
        "identifier": risk.identifier, "category": risk.category,
    })

    if initial is not None:
        levels = [("inherent", initial.inherent_likelihood, initial.inherent_impact)]
        if initial.residual_likelihood and initial.residual_impact:
            levels.append(("residual", initial.residual_likelihood, initial.residual_impact))
        for assessment_type, likelihood, impact in levels:
            a = await record_assessment(
                s, risk, assessment_type, likelihood, impact, user.user_id,
                justification=initial.justification,
            )
            await audit_log(s, "risk_assessment.created", "risk_assessment", a.id, {
                "risk_id": risk.id, "assessment_type": assessment_type,
                "score": a.overall_score, "severity": a.severity,
            })

    await s.commit()
    await s.refresh(risk)
    return envelope(await _risk_detail(s, risk))


@router.get("/{risk_id}")
async def get_risk_detail(
    risk_id: str,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    return envelope(await _risk_detail(s, risk))


@router.put("/{risk_id}")
async def update_risk(
    risk_id: str,
    body: RiskUpdate,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    if not can_manage(user, risk):
        raise HTTPException(403, "Not authorized to update this risk")

    data = body.model_dump(exclude_unset=True)
    if not data:
        raise validation_error("No fields to update")
    if data.get("title") is not None:
        check_max_length("Title", data["title"], TITLE_MAX)
    if "category" in data:
        check_choice("risk category", data["category"], RISK_CATEGORIES)
    if "risk_appetite_threshold" in data:
        _check_appetite(data["risk_appetite_threshold"])

    new_owner = data.get("owner_id") or risk.owner_id
    new_secondary = data["secondary_owner_id"] if "secondary_owner_id" in data else risk.secondary_owner_id
    if new_owner and new_owner == new_secondary:
        raise validation_error("Secondary owner must be different from primary owner")
    if data.get("owner_id") and data["owner_id"] != risk.owner_id:
        await check_risk_owner(s, user.org_id, data["owner_id"], "owner_id")
    if data.get("secondary_owner_id"):
        await check_risk_owner(s, user.org_id, data["secondary_owner_id"], "secondary_owner_id")

    metadata = data.pop("metadata", None)
    if metadata:
        merged = {**(risk.metadata_ or {}), **metadata}
        check_metadata(merged)
    if "next_assessment_at" in data and data["next_assessment_at"] is not None:
        data["next_assessment_at"] = datetime.combine(data["next_assessment_at"], time())

    owner_changed = data.get("owner_id") and data["owner_id"] != risk.owner_id
    old_owner = risk.owner_id
    nullable = ("description", "secondary_owner_id", "risk_appetite_threshold", "source", "next_assessment_at")
    fields = {k: v for k, v in data.items() if v is not None or k in nullable}
    old = {k: getattr(risk, k) for k in fields}
    for k, v in fields.items():
        setattr(risk, k, v)
    changes = diff_changes(old, fields)
    if metadata:
        risk.metadata_ = merged
        changes["metadata"] = {"merged_keys": sorted(metadata)}

    if owner_changed:
        await audit_log(s, "risk.owner_changed", "risk", risk.id, {
            "old_owner_id": old_owner, "new_owner_id": risk.owner_id,
        })
    if changes:
        await audit_log(s, "risk.updated", "risk", risk.id, {"changes": changes})
    await s.commit()
    await s.refresh(risk)
    return envelope(await _risk_detail(s, risk))


# ═══════════════════ STATUS / ARCHIVE / RECALCULATE ═══════════════════

@router.put("/{risk_id}/status")
async def change_status(
    risk_id: str,
    body: RiskStatusChange,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    check_choice("risk status", body.status, RISK_STATUSES)
    risk = await get_risk(s, risk_id, user.org_id)
    ensure_transition(RISK_TRANSITIONS, risk.status, body.status)

    if body.status == "accepted":
        if user.role not in roles.RISK_ACCEPT:
            raise HTTPException(403, "Only CISO or compliance manager can accept risks")
        if not body.justification or not body.justification.strip():
            raise validation_error("Justification is required when accepting a risk")
        if body.acceptance_expiry is None:
            raise validation_error("Acceptance expiry date is required when accepting a risk")
    elif body.status == "archived":
        if user.role not in roles.RISK_ARCHIVE:
            raise HTTPException(403, "Not authorized to archive risks")
    elif not can_manage(user, risk):
        raise HTTPException(403, "Not authorized to change risk status")

    old_status = risk.status
    meta: dict = {"from": old_status, "to": body.status}
    if body.status == "archived":
        meta["cancelled_treatments"] = await archive_risk(s, risk)
    elif body.status == "accepted":
        risk.status = "accepted"
        risk.accepted_at = utcnow()
        risk.accepted_by = user.user_id
        risk.acceptance_justification = body.justification.strip()
        risk.acceptance_expiry = body.acceptance_expiry
    else:
        if old_status == "accepted":
            risk.clear_acceptance()
        risk.status = body.status

    await audit_log(s, "risk.status_changed", "risk", risk.id, meta)
    await s.commit()
    await s.refresh(risk)

    data = {
        "id": risk.id,
        "identifier": risk.identifier,
        "status": risk.status,
        "previous_status": old_status,
        "updated_at": iso(risk.updated_at),
    }
    if risk.status == "accepted":
        data["acceptance"] = AcceptanceOut(
            accepted_at=risk.accepted_at,
            accepted_by=await user_ref(s, user.org_id, risk.accepted_by),
            expiry=risk.acceptance_expiry,
            justification=risk.acceptance_justification,
        )
    return envelope(data)


@router.post("/{risk_id}/archive")
async def archive(
    risk_id: str,
    user: CurrentUser = Depends(require_roles(*roles.RISK_ARCHIVE)),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    if risk.status == "archived":
        raise HTTPException(400, "Risk is already archived")

    old_status = risk.status
    cancelled = await archive_risk(s, risk)
    await audit_log(s, "risk.archived", "risk", risk.id, {
        "previous_status": old_status, "cancelled_treatments": cancelled,
    })
    await s.commit()
    return envelope({
        "id": risk.id,
        "identifier": risk.identifier,
        "status": "archived",
        "previous_status": old_status,
        "cancelled_treatments": cancelled,
        "archived_at": iso(risk.archived_at),
        "message": "Risk archived",
    })


@router.post("/{risk_id}/recalculate")
async def recalculate(
    risk_id: str,
    user: CurrentUser = Depends(require_roles(*roles.RISK_MANAGE)),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    old = {"inherent_score": risk.inherent_score, "residual_score": risk.residual_score}
    await recalculate_scores(s, risk)
    new = {"inherent_score": risk.inherent_score, "residual_score": risk.residual_score}
    await audit_log(s, "risk.score_recalculated", "risk", risk.id, {"changes": diff_changes(old, new)})
    await s.commit()
    await s.refresh(risk)
    return envelope({
        "id": risk.id,
        "identifier": risk.identifier,
        "inherent_score": _score(risk.inherent_likelihood, risk.inherent_impact, risk.inherent_score),
        "residual_score": _score(risk.residual_likelihood, risk.residual_impact, risk.residual_score),
        "appetite_breached": risk.appetite_breached,
        "updated_at": iso(risk.updated_at),
    })


# ═══════════════════ ASSESSMENTS ═══════════════════

def _assessment_out(a: RiskAssessment, refs: dict) -> AssessmentOut:
    return AssessmentOut(
        id=a.id,
        risk_id=a.risk_id,
        assessment_type=a.assessment_type,
        likelihood=a.likelihood,
        impact=a.impact,
        likelihood_score=a.likelihood_score,
        impact_score=a.impact_score,
        overall_score=a.overall_score,
        severity=a.severity,
        scoring_formula=a.scoring_formula,
        justification=a.justification,
        assumptions=a.assumptions,
        data_sources=a.data_sources or [],
        assessed_by=refs.get(a.assessed_by),
        assessment_date=a.assessment_date,
        valid_until=a.valid_until,
        is_current=a.is_current,
        superseded_by=a.superseded_by,
        created_at=a.created_at,
    )


@router.get("/{risk_id}/assessments")
async def list_assessments(
    risk_id: str,
    assessment_type: str | None = Query(None),
    current_only: bool = Query(False),
    page: Page = Depends(paginate(100)),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    q = select(RiskAssessment).where(RiskAssessment.risk_id == risk.id, RiskAssessment.org_id == user.org_id)
    if assessment_type:
        q = q.where(RiskAssessment.assessment_type == assessment_type)
    if current_only:
        q = q.where(RiskAssessment.is_current.is_(True))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    rows = (await s.execute(
        page.apply(q.order_by(RiskAssessment.created_at.desc(), RiskAssessment.id))
    )).scalars().all()
    refs = await user_refs(s, user.org_id, [a.assessed_by for a in rows])
    return listing([_assessment_out(a, refs) for a in rows], total, page.page, page.per_page)


@router.post("/{risk_id}/assessments", status_code=201)
async def create_assessment(
    risk_id: str,
    body: AssessmentCreate,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    check_choice("assessment_type", body.assessment_type, ASSESSMENT_TYPES)
    _check_levels(body.likelihood, body.impact)
    if body.scoring_formula and body.scoring_formula != SCORING_FORMULA:
        raise validation_error(f"Only '{SCORING_FORMULA}' formula is currently supported")

    risk = await get_risk(s, risk_id, user.org_id)
    if not can_manage(user, risk):
        raise HTTPException(403, "Not authorized to assess this risk")

    a = await record_assessment(
        s, risk, body.assessment_type, body.likelihood, body.impact, user.user_id,
        justification=body.justification,
        assumptions=body.assumptions,
        data_sources=body.data_sources,
        valid_until=body.valid_until,
    )
    await audit_log(s, "risk_assessment.created", "risk_assessment", a.id, {
        "risk_id": risk.id, "assessment_type": a.assessment_type,
        "score": a.overall_score, "severity": a.severity,
    })
    await s.commit()
    await s.refresh(a)
    await s.refresh(risk)

    refs = await user_refs(s, user.org_id, [a.assessed_by])
    prefix = a.assessment_type
    data = _assessment_out(a, refs).model_dump(mode="json")
    data["risk_updated"] = {
        f"{prefix}_likelihood": getattr(risk, f"{prefix}_likelihood"),
        f"{prefix}_impact": getattr(risk, f"{prefix}_impact"),
        f"{prefix}_score": getattr(risk, f"{prefix}_score"),
        "appetite_breached": risk.appetite_breached,
        "next_assessment_at": iso(risk.next_assessment_at),
    }
    return envelope(data)
