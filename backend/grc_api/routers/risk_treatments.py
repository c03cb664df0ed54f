"""
Risk treatments and risk↔control links — /api/v1/risks/{risk_id}/...

Treatment lifecycle:  planned → {in_progress, cancelled}
                      in_progress → {implemented, cancelled}
                      implemented → {verified, ineffective}
                      verified → {ineffective}
The first treatment of an identified/open risk moves it to treating; a
treating risk with no open treatments left moves to monitoring.
"""
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_current_user
from grc_api.errors import validation_error
from grc_api.middleware.audit import audit_log, diff_changes
from grc_api.models.base import utcnow
from grc_api.models.control import Control
from grc_api.models.risk import (
    CONTROL_EFFECTIVENESS, EFFECTIVENESS_RATINGS, IMPACT_SCORES, LIKELIHOOD_SCORES, TREATMENT_PRIORITIES,
    TREATMENT_STATUSES, TREATMENT_TYPES, Risk, RiskControl, RiskTreatment, compute_score, score_severity,
)
from grc_api.pagination import Page, paginate
from grc_api.responses import envelope, listing
from grc_api.routers.risks import can_manage, check_risk_owner, get_risk
from grc_api.schemas.common import iso
from grc_api.schemas.risk import (
    RiskControlLink, RiskControlOut, RiskControlUpdate, TreatmentComplete, TreatmentCreate, TreatmentOut,
    TreatmentUpdate,
)
from grc_api.services.lifecycle import (
    CANCELLABLE_TREATMENT_STATUSES, TERMINAL_TREATMENT_STATUSES, TREATMENT_TRANSITIONS, ensure_transition,
)
from grc_api.services.refs import user_refs
from grc_api.services.risk_scoring import on_treatment_created, on_treatment_finished
from grc_api.validation import check_choice, check_max_length

router = APIRouter(prefix="/api/v1/risks", tags=["Risk treatments"])

TITLE_MAX = 500


def _treatment_out(t: RiskTreatment, refs: dict, today: date | None = None) -> TreatmentOut:
    today = today or utcnow().date()
    return TreatmentOut(
        id=t.id,
        risk_id=t.risk_id,
        treatment_type=t.treatment_type,
        title=t.title,
        description=t.description,
        status=t.status,
        priority=t.priority,
        owner=refs.get(t.owner_id),
        estimated_effort_hours=float(t.estimated_effort_hours) if t.estimated_effort_hours is not None else None,
        actual_effort_hours=float(t.actual_effort_hours) if t.actual_effort_hours is not None else None,
        due_date=t.due_date,
        started_at=t.started_at,
        completed_at=t.completed_at,
        target_control_id=t.target_control_id,
        expected_residual_likelihood=t.expected_residual_likelihood,
        expected_residual_impact=t.expected_residual_impact,
        expected_residual_score=t.expected_residual_score,
        expected_residual_severity=score_severity(t.expected_residual_score),
        effectiveness_rating=t.effectiveness_rating,
        effectiveness_notes=t.effectiveness_notes,
        effectiveness_reviewed_at=t.effectiveness_reviewed_at,
        notes=t.notes,
        is_overdue=bool(t.due_date and t.due_date < today and t.status in CANCELLABLE_TREATMENT_STATUSES),
        created_at=t.created_at,
        updated_at=t.updated_at,
    )


async def _get_treatment(s: AsyncSession, risk: Risk, treatment_id: str) -> RiskTreatment:
    t = (await s.execute(
        select(RiskTreatment).where(
            RiskTreatment.id == treatment_id,
            RiskTreatment.risk_id == risk.id,
            RiskTreatment.org_id == risk.org_id,
        )
    )).scalar_one_or_none()
    if t is None:
        raise HTTPException(404, "Treatment not found")
    return t


def _can_work_on(user: CurrentUser, risk: Risk, t: RiskTreatment) -> bool:
    return can_manage(user, risk) or t.owner_id == user.user_id


# ═══════════════════ TREATMENTS ═══════════════════

@router.get("/{risk_id}/treatments")
async def list_treatments(
    risk_id: str,
    status: str | None = Query(None),
    treatment_type: str | None = Query(None),
    page: Page = Depends(paginate(100)),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    q = select(RiskTreatment).where(RiskTreatment.risk_id == risk.id, RiskTreatment.org_id == user.org_id)
    if status:
        q = q.where(RiskTreatment.status == status)
    if treatment_type:
        q = q.where(RiskTreatment.treatment_type == treatment_type)

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    rows = (await s.execute(
        page.apply(q.order_by(RiskTreatment.created_at.desc(), RiskTreatment.id))
    )).scalars().all()
    refs = await user_refs(s, user.org_id, [t.owner_id for t in rows])
    today = utcnow().date()
    return listing([_treatment_out(t, refs, today) for t in rows], total, page.page, page.per_page)


@router.post("/{risk_id}/treatments", status_code=201)
async def create_treatment(
    risk_id: str,
    body: TreatmentCreate,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    check_choice("treatment_type", body.treatment_type, TREATMENT_TYPES)
    check_max_length("Title", body.title, TITLE_MAX)
    check_choice("priority", body.priority, TREATMENT_PRIORITIES)
    if body.expected_residual_likelihood is not None and body.expected_residual_likelihood not in LIKELIHOOD_SCORES:
        raise validation_error("Invalid expected_residual_likelihood")
    if body.expected_residual_impact is not None and body.expected_residual_impact not in IMPACT_SCORES:
        raise validation_error("Invalid expected_residual_impact")

    risk = await get_risk(s, risk_id, user.org_id)
    if risk.status == "archived":
        raise HTTPException(422, "Cannot add treatments to an archived risk")
    if not can_manage(user, risk):
        raise HTTPException(403, "Not authorized to create treatments for this risk")
    if body.owner_id:
        await check_risk_owner(s, user.org_id, body.owner_id, "owner_id")
    if body.target_control_id:
        found = (await s.execute(
            select(Control.id).where(Control.id == body.target_control_id, Control.org_id == user.org_id)
        )).first()
        if not found:
            raise validation_error("Target control not found")

    t = RiskTreatment(
        org_id=user.org_id,
        risk_id=risk.id,
        treatment_type=body.treatment_type,
        title=body.title,
        description=body.description,
        status="planned",
        priority=body.priority,
        owner_id=body.owner_id,
        estimated_effort_hours=body.estimated_effort_hours,
        due_date=body.due_date,
        target_control_id=body.target_control_id,
        expected_residual_likelihood=body.expected_residual_likelihood,
        expected_residual_impact=body.expected_residual_impact,
        expected_residual_score=compute_score(body.expected_residual_likelihood, body.expected_residual_impact),
        notes=body.notes,
        created_by=user.user_id,
    )
    s.add(t)
    await s.flush()
    await on_treatment_created(s, risk)
    await audit_log(s, "risk_treatment.created", "risk_treatment", t.id, {
        "risk_id": risk.id, "treatment_type": t.treatment_type, "title": t.title,
    })
    await s.commit()
    await s.refresh(t)

    refs = await user_refs(s, user.org_id, [t.owner_id])
    data = _treatment_out(t, refs).model_dump(mode="json")
    data["risk_status"] = risk.status
    return envelope(data)


@router.put("/{risk_id}/treatments/{treatment_id}")
async def update_treatment(
    risk_id: str,
    treatment_id: str,
    body: TreatmentUpdate,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    t = await _get_treatment(s, risk, treatment_id)
    if not _can_work_on(user, risk, t):
        raise HTTPException(403, "Not authorized to update this treatment")

    data = body.model_dump(exclude_unset=True)
    if not data:
        raise validation_error("No fields to update")
    new_status = data.pop("status", None)
    if new_status is not None:
        check_choice("treatment status", new_status, TREATMENT_STATUSES)
        ensure_transition(TREATMENT_TRANSITIONS, t.status, new_status)
    if data.get("title") is not None:
        check_max_length("Title", data["title"], TITLE_MAX)
    if "priority" in data:
        check_choice("priority", data["priority"], TREATMENT_PRIORITIES)
    if data.get("owner_id"):
        await check_risk_owner(s, user.org_id, data["owner_id"], "owner_id")

    nullable = ("description", "owner_id", "due_date", "notes", "estimated_effort_hours", "actual_effort_hours")
    fields = {k: v for k, v in data.items() if v is not None or k in nullable}
    old = {k: getattr(t, k) for k in fields}
    for k, v in fields.items():
        setattr(t, k, v)
    changes = diff_changes(old, fields)

    old_status = t.status
    if new_status is not None and new_status != old_status:
        now = utcnow()
        t.status = new_status
        if new_status == "in_progress" and t.started_at is None:
            t.started_at = now
        if new_status in ("implemented", "verified") and t.completed_at is None:
            t.completed_at = now
        await audit_log(s, "risk_treatment.status_changed", "risk_treatment", t.id, {
            "from": old_status, "to": new_status,
        })
        await on_treatment_finished(s, risk)
    if changes:
        await audit_log(s, "risk_treatment.updated", "risk_treatment", t.id, {"changes": changes})
    await s.commit()
    await s.refresh(t)

    refs = await user_refs(s, user.org_id, [t.owner_id])
    return envelope(_treatment_out(t, refs))


@router.post("/{risk_id}/treatments/{treatment_id}/complete")
async def complete_treatment(
    risk_id: str,
    treatment_id: str,
    body: TreatmentComplete,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    t = await _get_treatment(s, risk, treatment_id)
    if t.status in TERMINAL_TREATMENT_STATUSES:
        raise HTTPException(400, f"Treatment is already {t.status} and cannot be completed")
    if not _can_work_on(user, risk, t):
        raise HTTPException(403, "Not authorized to complete this treatment")
    check_choice("effectiveness_rating", body.effectiveness_rating, EFFECTIVENESS_RATINGS)

    now = utcnow()
    target = "verified" if body.effectiveness_rating else "implemented"
    t.status = target
    t.completed_at = now
    if t.started_at is None:
        t.started_at = now
    if body.actual_effort_hours is not None:
        t.actual_effort_hours = body.actual_effort_hours
    if body.effectiveness_rating:
        t.effectiveness_rating = body.effectiveness_rating
        t.effectiveness_notes = body.effectiveness_notes
        t.effectiveness_reviewed_at = now
        t.effectiveness_reviewed_by = user.user_id

    await audit_log(s, "risk_treatment.completed", "risk_treatment", t.id, {
        "status": target, "effectiveness_rating": body.effectiveness_rating,
    })
    await on_treatment_finished(s, risk)
    await s.commit()
    await s.refresh(t)

    return envelope({
        "id": t.id,
        "status": t.status,
        "completed_at": iso(t.completed_at),
        "effectiveness_rating": t.effectiveness_rating,
        "effectiveness_notes": t.effectiveness_notes,
        "effectiveness_reviewed_at": iso(t.effectiveness_reviewed_at),
        "risk_status": risk.status,
    })


# ═══════════════════ RISK ↔ CONTROL LINKS ═══════════════════

def _check_link_fields(effectiveness: str | None, mitigation_percentage: int | None) -> None:
    if effectiveness is not None and effectiveness not in CONTROL_EFFECTIVENESS:
        raise validation_error("Invalid effectiveness value")
    if mitigation_percentage is not None and not 0 <= mitigation_percentage <= 100:
        raise validation_error("Mitigation percentage must be between 0 and 100")


async def _link_outs(s: AsyncSession, risk: Risk, control_id: str | None = None) -> list[RiskControlOut]:
    q = (
        select(RiskControl, Control)
        .join(Control, Control.id == RiskControl.control_id)
        .where(RiskControl.risk_id == risk.id, RiskControl.org_id == risk.org_id)
    )
    if control_id:
        q = q.where(RiskControl.control_id == control_id)
    rows = (await s.execute(q.order_by(Control.identifier))).all()
    refs = await user_refs(s, risk.org_id, [rc.linked_by for rc, _ in rows] + [rc.reviewed_by for rc, _ in rows])
    return [
        RiskControlOut(
            id=rc.id,
            risk_id=rc.risk_id,
            control={
                "id": c.id, "identifier": c.identifier, "title": c.title,
                "category": c.category, "status": c.status,
            },
            effectiveness=rc.effectiveness,
            mitigation_percentage=rc.mitigation_percentage,
            notes=rc.notes,
            linked_by=refs.get(rc.linked_by),
            last_effectiveness_review=rc.last_effectiveness_review,
            reviewed_by=refs.get(rc.reviewed_by),
            created_at=rc.created_at,
            updated_at=rc.updated_at,
        )
        for rc, c in rows
    ]


async def _get_link(s: AsyncSession, risk: Risk, control_id: str) -> RiskControl:
    rc = (await s.execute(
        select(RiskControl).where(
            RiskControl.risk_id == risk.id,
            RiskControl.control_id == control_id,
            RiskControl.org_id == risk.org_id,
        )
    )).scalar_one_or_none()
    if rc is None:
        raise HTTPException(404, "Risk-control link not found")
    return rc


@router.get("/{risk_id}/controls")
async def list_risk_controls(
    risk_id: str,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    items = await _link_outs(s, risk)
    return listing(items, len(items), 1, len(items))


@router.post("/{risk_id}/controls", status_code=201)
async def link_control(
    risk_id: str,
    body: RiskControlLink,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    if not can_manage(user, risk):
        raise HTTPException(403, "Not authorized to link controls")
    ctrl = (await s.execute(
        select(Control).where(Control.id == body.control_id, Control.org_id == user.org_id)
    )).scalar_one_or_none()
    if ctrl is None:
        raise HTTPException(404, "Control not found")
    dup = (await s.execute(
        select(RiskControl.id).where(
            RiskControl.org_id == user.org_id,
            RiskControl.risk_id == risk.id,
            RiskControl.control_id == ctrl.id,
        )
    )).first()
    if dup:
        raise HTTPException(409, "Control is already linked to this risk")
    _check_link_fields(body.effectiveness, body.mitigation_percentage)

    rc = RiskControl(
        org_id=user.org_id,
        risk_id=risk.id,
        control_id=ctrl.id,
        effectiveness=body.effectiveness,
        mitigation_percentage=body.mitigation_percentage,
        notes=body.notes,
        linked_by=user.user_id,
    )
    s.add(rc)
    await s.flush()
    await audit_log(s, "risk_control.linked", "risk_control", rc.id, {
        "risk_id": risk.id, "control_id": ctrl.id, "control": ctrl.identifier,
    })
    await s.commit()
    return envelope((await _link_outs(s, risk, ctrl.id))[0])


@router.put("/{risk_id}/controls/{control_id}")
async def update_risk_control(
    risk_id: str,
    control_id: str,
    body: RiskControlUpdate,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    rc = await _get_link(s, risk, control_id)
    if not can_manage(user, risk):
        raise HTTPException(403, "Not authorized to update risk-control effectiveness")
    _check_link_fields(body.effectiveness, body.mitigation_percentage)

    data = body.model_dump(exclude_unset=True)
    fields = {k: v for k, v in data.items() if v is not None or k in ("notes", "mitigation_percentage")}
    old = {k: getattr(rc, k) for k in fields}
    for k, v in fields.items():
        setattr(rc, k, v)
    rc.last_effectiveness_review = utcnow()
    rc.reviewed_by = user.user_id

    await audit_log(s, "risk_control.effectiveness_updated", "risk_control", rc.id, {
        "risk_id": risk.id, "control_id": control_id, "changes": diff_changes(old, fields),
    })
    await s.commit()
    return envelope((await _link_outs(s, risk, control_id))[0])


@router.delete("/{risk_id}/controls/{control_id}")
async def unlink_control(
    risk_id: str,
    control_id: str,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    risk = await get_risk(s, risk_id, user.org_id)
    rc = await _get_link(s, risk, control_id)
    if not can_manage(user, risk):
        raise HTTPException(403, "Not authorized to unlink controls")

    link_id = rc.id
    await s.delete(rc)
    await audit_log(s, "risk_control.unlinked", "risk_control", link_id, {
        "risk_id": risk.id, "control_id": control_id,
    })
    await s.commit()
    return envelope({"id": link_id, "message": "Control unlinked from risk"})
