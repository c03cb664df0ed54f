"""
Control library — /api/v1/controls

Lifecycle:  draft → {active, deprecated}
            active → {under_review, deprecated}
            under_review → {active, deprecated}
            deprecated → {draft}
Deprecation is a status change; mappings and history are kept.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api import roles
from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_current_user, get_org_user, get_owned, require_roles
from grc_api.errors import validation_error
from grc_api.middleware.audit import audit_log, diff_changes
from grc_api.models.control import (
    CONTROL_CATEGORIES, CONTROL_STATUSES, MAPPING_STRENGTHS, Control, ControlMapping,
)
from grc_api.models.framework import Framework, FrameworkVersion, OrgFramework, Requirement
from grc_api.pagination import Page, order_by, paginate, resolve_order, resolve_sort
from grc_api.responses import envelope, listing
from grc_api.schemas.common import StatusChange
from grc_api.schemas.control import (
    BulkStatusChange, ControlCreate, ControlDetailOut, ControlOut, ControlUpdate,
    MappingCreateRequest, MappingOut, OwnerChange, RequirementRef,
)
from grc_api.services.coverage import compute_coverage
from grc_api.services.lifecycle import CONTROL_TRANSITIONS, can_transition, ensure_transition
from grc_api.services.refs import user_refs
from grc_api.validation import check_metadata

router = APIRouter(prefix="/api/v1/controls", tags=["Controls"])

TITLE_MAX = 500
DESCRIPTION_MAX = 10000
BULK_STATUS_MAX = 100
BULK_MAPPING_MAX = 50

CONTROL_SORTS = {
    "identifier": Control.identifier,
    "title": Control.title,
    "category": Control.category,
    "status": Control.status,
    "created_at": Control.created_at,
    "updated_at": Control.updated_at,
}


def _mappings_count():
    return (
        select(func.count(ControlMapping.id))
        .where(ControlMapping.control_id == Control.id, ControlMapping.org_id == Control.org_id)
        .correlate(Control)
        .scalar_subquery()
    )


async def _control_out(s: AsyncSession, ctrl: Control, mappings_count: int | None = None) -> ControlOut:
    refs = await user_refs(s, ctrl.org_id, [ctrl.owner_id, ctrl.secondary_owner_id])
    if mappings_count is None:
        mappings_count = (await s.execute(
            select(func.count(ControlMapping.id)).where(
                ControlMapping.control_id == ctrl.id, ControlMapping.org_id == ctrl.org_id,
            )
        )).scalar() or 0
    return ControlOut(
        id=ctrl.id,
        identifier=ctrl.identifier,
        title=ctrl.title,
        description=ctrl.description,
        implementation_guidance=ctrl.implementation_guidance,
        category=ctrl.category,
        status=ctrl.status,
        is_custom=ctrl.is_custom,
        source_template_id=ctrl.source_template_id,
        owner=refs.get(ctrl.owner_id),
        secondary_owner=refs.get(ctrl.secondary_owner_id),
        evidence_requirements=ctrl.evidence_requirements,
        test_criteria=ctrl.test_criteria,
        metadata=ctrl.metadata_ or {},
        mappings_count=mappings_count,
        created_at=ctrl.created_at,
        updated_at=ctrl.updated_at,
    )


async def _mapping_outs(s: AsyncSession, org_id: str, control_id: str) -> list[MappingOut]:
    rows = (await s.execute(
        select(ControlMapping, Requirement, FrameworkVersion, Framework)
        .join(Requirement, Requirement.id == ControlMapping.requirement_id)
        .join(FrameworkVersion, FrameworkVersion.id == Requirement.framework_version_id)
        .join(Framework, Framework.id == FrameworkVersion.framework_id)
        .where(ControlMapping.control_id == control_id, ControlMapping.org_id == org_id)
        .order_by(Framework.name, Requirement.identifier)
    )).all()
    refs = await user_refs(s, org_id, [m.mapped_by for m, *_ in rows])
    return [
        MappingOut(
            id=m.id,
            control_id=m.control_id,
            requirement=RequirementRef(
                id=r.id, identifier=r.identifier, title=r.title,
                framework_id=fw.id, framework_identifier=fw.identifier,
                framework_name=fw.name, framework_version=fv.version,
            ),
            strength=m.strength,
            notes=m.notes,
            mapped_by=refs.get(m.mapped_by),
            created_at=m.created_at,
        )
        for m, r, fv, fw in rows
    ]


def _can_edit(user: CurrentUser, ctrl: Control) -> bool:
    return user.role in roles.CONTROL_MANAGE or ctrl.owner_id == user.user_id


# ═══════════════════ LIST / STATS ═══════════════════

@router.get("")
async def list_controls(
    status: str | None = Query(None),
    category: str | None = Query(None),
    owner_id: str | None = Query(None),
    is_custom: bool | None = Query(None),
    framework_id: str | None = Query(None),
    unmapped: bool = Query(False),
    search: str | None = Query(None),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(paginate(100)),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    q = select(Control).where(Control.org_id == user.org_id)
    if status:
        q = q.where(Control.status == status)
    if category:
        q = q.where(Control.category == category)
    if owner_id:
        q = q.where(Control.owner_id == owner_id)
    if is_custom is not None:
        q = q.where(Control.is_custom.is_(is_custom))
    if framework_id:
        q = q.where(Control.id.in_(
            select(ControlMapping.control_id)
            .join(Requirement, Requirement.id == ControlMapping.requirement_id)
            .join(FrameworkVersion, FrameworkVersion.id == Requirement.framework_version_id)
            .where(ControlMapping.org_id == user.org_id, FrameworkVersion.framework_id == framework_id)
        ))
    if unmapped:
        q = q.where(~exists().where(
            ControlMapping.control_id == Control.id, ControlMapping.org_id == Control.org_id,
        ))
    if search:
        pattern = f"%{search.lower()}%"
        q = q.where(or_(
            func.lower(Control.identifier).like(pattern),
            func.lower(Control.title).like(pattern),
            func.lower(func.coalesce(Control.description, "")).like(pattern),
        ))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    col = resolve_sort(sort, CONTROL_SORTS, "identifier")
    q = q.add_columns(_mappings_count().label("mappings_count"))
    q = page.apply(q.order_by(order_by(col, resolve_order(order, "asc")), Control.id))
    rows = (await s.execute(q)).all()
    items = [await _control_out(s, ctrl, count or 0) for ctrl, count in rows]
    return listing(items, total, page.page, page.per_page)


@router.get("/stats")
async def control_stats(
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    org = Control.org_id == user.org_id
    total = (await s.execute(select(func.count(Control.id)).where(org))).scalar() or 0

    by_status = {st: 0 for st in CONTROL_STATUSES}
    for st, n in (await s.execute(select(Control.status, func.count()).where(org).group_by(Control.status))).all():
        by_status[st] = n
    by_category = {c: 0 for c in CONTROL_CATEGORIES}
    for cat, n in (await s.execute(select(Control.category, func.count()).where(org).group_by(Control.category))).all():
        by_category[cat] = n

    custom = (await s.execute(select(func.count(Control.id)).where(org, Control.is_custom.is_(True)))).scalar() or 0
    unowned = (await s.execute(select(func.count(Control.id)).where(org, Control.owner_id.is_(None)))).scalar() or 0
    unmapped = (await s.execute(
        select(func.count(Control.id)).where(org, ~exists().where(
            ControlMapping.control_id == Control.id, ControlMapping.org_id == Control.org_id,
        ))
    )).scalar() or 0

    coverage = []
    active = (await s.execute(
        select(OrgFramework, Framework.name, FrameworkVersion.version)
        .join(Framework, Framework.id == OrgFramework.framework_id)
        .join(FrameworkVersion, FrameworkVersion.id == OrgFramework.active_version_id)
        .where(OrgFramework.org_id == user.org_id, OrgFramework.status == "active")
        .order_by(Framework.name)
    )).all()
    for of, fw_name, version in active:
        stats = await compute_coverage(s, user.org_id, of.active_version_id)
        coverage.append({
            "framework": fw_name,
            "version": version,
            "in_scope": stats.in_scope,
            "covered": stats.mapped,
            "gaps": stats.unmapped,
            "coverage_pct": stats.coverage_pct,
        })

    return envelope({
        "total": total,
        "by_status": by_status,
        "by_category": by_category,
        "custom_count": custom,
        "library_count": total - custom,
        "unowned_count": unowned,
        "unmapped_count": unmapped,
        "frameworks_coverage": coverage,
    })


# ═══════════════════ CRUD ═══════════════════

@router.post("", status_code=201)
async def create_control(
    body: ControlCreate,
    user: CurrentUser = Depends(require_roles(*roles.CONTROL_MANAGE)),
    s: AsyncSession = Depends(get_session),
):
    if len(body.title) > TITLE_MAX:
        raise validation_error(f"Title must be at most {TITLE_MAX} characters")
    if body.description and len(body.description) > DESCRIPTION_MAX:
        raise validation_error(f"Description must be at most {DESCRIPTION_MAX} characters")
    if body.category not in CONTROL_CATEGORIES:
        raise validation_error("Invalid control category")
    if body.status not in CONTROL_STATUSES:
        raise validation_error("Invalid control status")
    if body.metadata:
        check_metadata(body.metadata)
    if body.owner_id and body.owner_id == body.secondary_owner_id:
        raise validation_error("Secondary owner must be different from primary owner")

    dup = (await s.execute(
        select(Control.id).where(Control.org_id == user.org_id, Control.identifier == body.identifier)
    )).first()
    if dup:
        raise HTTPException(409, "Identifier already exists in this organization")
    if body.owner_id:
        await get_org_user(s, body.owner_id, user.org_id, label="Owner")
    if body.secondary_owner_id:
        await get_org_user(s, body.secondary_owner_id, user.org_id, label="Secondary owner")

    ctrl = Control(
        org_id=user.org_id,
        identifier=body.identifier,
        title=body.title,
        description=body.description,
        implementation_guidance=body.implementation_guidance,
        category=body.category,
        status=body.status,
        owner_id=body.owner_id,
        secondary_owner_id=body.secondary_owner_id,
        is_custom=True,
        evidence_requirements=body.evidence_requirements,
        test_criteria=body.test_criteria,
        metadata_=body.metadata or {},
        created_by=user.user_id,
    )
    s.add(ctrl)
    await s.flush()
    await audit_log(s, "control.created", "control", ctrl.id,
                    {"identifier": ctrl.identifier, "category": ctrl.category})
    await s.commit()
    await s.refresh(ctrl)
    return envelope(await _control_out(s, ctrl, 0))


@router.post("/bulk-status")
async def bulk_status(
    body: BulkStatusChange,
    user: CurrentUser = Depends(require_roles(*roles.ADMIN)),
    s: AsyncSession = Depends(get_session),
):
    if not body.control_ids or len(body.control_ids) > BULK_STATUS_MAX:
        raise validation_error(f"control_ids must have 1-{BULK_STATUS_MAX} entries")
    if body.status not in CONTROL_STATUSES:
        raise validation_error("Invalid control status")

    results, updated, failed = [], 0, 0
    for control_id in body.control_ids:
        ctrl = (await s.execute(
            select(Control).where(Control.id == control_id, Control.org_id == user.org_id)
        )).scalar_one_or_none()
        if ctrl is None:
            results.append({"id": control_id, "identifier": None, "success": False, "error": "not found"})
            failed += 1
            continue
        if not can_transition(CONTROL_TRANSITIONS, ctrl.status, body.status):
            results.append({
                "id": ctrl.id, "identifier": ctrl.identifier, "success": False,
                "error": f"Cannot transition from '{ctrl.status}' to '{body.status}'",
            })
            failed += 1
            continue

        old_status = ctrl.status
        ctrl.status = body.status
        await audit_log(s, "control.status_changed", "control", ctrl.id,
                        {"old_status": old_status, "new_status": body.status, "bulk": True})
        # each success is committed on its own
        await s.commit()
        results.append({"id": ctrl.id, "identifier": ctrl.identifier, "success": True, "error": None})
        updated += 1

    return envelope({"updated": updated, "failed": failed, "results": results})


@router.get("/{control_id}")
async def get_control(
    control_id: str,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    ctrl = await get_owned(s, Control, control_id, user.org_id, "Control")
    mappings = await _mapping_outs(s, user.org_id, ctrl.id)
    base = await _control_out(s, ctrl, len(mappings))

    frameworks: dict[str, dict] = {}
    for m in mappings:
        fw = frameworks.setdefault(m.requirement.framework_id, {
            "id": m.requirement.framework_id,
            "identifier": m.requirement.framework_identifier,
            "name": m.requirement.framework_name,
            "mappings_count": 0,
        })
        fw["mappings_count"] += 1

    return envelope(ControlDetailOut(**base.model_dump(), mappings=mappings, frameworks=list(frameworks.values())))


@router.put("/{control_id}")
async def update_control(
    control_id: str,
    body: ControlUpdate,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    ctrl = await get_owned(s, Control, control_id, user.org_id, "Control")
    if not _can_edit(user, ctrl):
        raise HTTPException(403, "Not authorized to update this control")

    data = body.model_dump(exclude_unset=True)
    if data.get("title") is not None and len(data["title"]) > TITLE_MAX:
        raise validation_error(f"Title must be at most {TITLE_MAX} characters")
    if data.get("description") and len(data["description"]) > DESCRIPTION_MAX:
        raise validation_error(f"Description must be at most {DESCRIPTION_MAX} characters")
    if "category" in data and data["category"] not in CONTROL_CATEGORIES:
        raise validation_error("Invalid control category")

    metadata = data.pop("metadata", None)
    if metadata:
        merged = {**(ctrl.metadata_ or {}), **metadata}
        check_metadata(merged)

    fields = {k: v for k, v in data.items() if v is not None or k in ("description", "implementation_guidance")}
    old = {k: getattr(ctrl, k) for k in fields}
    for k, v in fields.items():
        setattr(ctrl, k, v)
    changes = diff_changes(old, fields)
    if metadata:
        ctrl.metadata_ = merged
        changes["metadata"] = {"merged_keys": sorted(metadata)}

    if changes:
        await audit_log(s, "control.updated", "control", ctrl.id, {"changes": changes})
    await s.commit()
    await s.refresh(ctrl)
    return envelope(await _control_out(s, ctrl))


@router.put("/{control_id}/owner")
async def change_owner(
    control_id: str,
    body: OwnerChange,
    user: CurrentUser = Depends(require_roles(*roles.ADMIN)),
    s: AsyncSession = Depends(get_session),
):
    ctrl = await get_owned(s, Control, control_id, user.org_id, "Control")
    data = body.model_dump(exclude_unset=True)
    if not data.get("owner_id") and not data.get("secondary_owner_id"):
        raise validation_error("At least one of owner_id or secondary_owner_id is required")

    new_owner = data.get("owner_id") or ctrl.owner_id
    new_secondary = data["secondary_owner_id"] if "secondary_owner_id" in data else ctrl.secondary_owner_id
    if new_owner and new_owner == new_secondary:
        raise validation_error("Secondary owner must be different from primary owner")
    if data.get("owner_id"):
        await get_org_user(s, data["owner_id"], user.org_id, label="Owner")
    if data.get("secondary_owner_id"):
        await get_org_user(s, data["secondary_owner_id"], user.org_id, label="Secondary owner")

    old = {"owner_id": ctrl.owner_id, "secondary_owner_id": ctrl.secondary_owner_id}
    ctrl.owner_id = new_owner
    ctrl.secondary_owner_id = new_secondary
    await audit_log(s, "control.owner_changed", "control", ctrl.id, {
        "changes": diff_changes(old, {"owner_id": new_owner, "secondary_owner_id": new_secondary}),
    })
    await s.commit()
    await s.refresh(ctrl)
    return envelope(await _control_out(s, ctrl))


@router.put("/{control_id}/status")
async def change_status(
    control_id: str,
    body: StatusChange,
    user: CurrentUser = Depends(require_roles(*roles.CONTROL_MANAGE)),
    s: AsyncSession = Depends(get_session),
):
    if body.status not in CONTROL_STATUSES:
        raise validation_error("Invalid control status")
    ctrl = await get_owned(s, Control, control_id, user.org_id, "Control")
    ensure_transition(CONTROL_TRANSITIONS, ctrl.status, body.status)

    old_status = ctrl.status
    ctrl.status = body.status
    await audit_log(s, "control.status_changed", "control", ctrl.id,
                    {"old_status": old_status, "new_status": body.status})
    await s.commit()
    return envelope({
        "id": ctrl.id,
        "identifier": ctrl.identifier,
        "status": ctrl.status,
        "previous_status": old_status,
        "message": "Status updated",
    })


@router.delete("/{control_id}")
async def deprecate_control(
    control_id: str,
    user: CurrentUser = Depends(require_roles(*roles.ADMIN)),
    s: AsyncSession = Depends(get_session),
):
    ctrl = await get_owned(s, Control, control_id, user.org_id, "Control")
    ensure_transition(CONTROL_TRANSITIONS, ctrl.status, "deprecated")

    old_status = ctrl.status
    ctrl.status = "deprecated"
    await audit_log(s, "control.deprecated", "control", ctrl.id, {"old_status": old_status})
    await s.commit()
    return envelope({
        "id": ctrl.id,
        "identifier": ctrl.identifier,
        "status": "deprecated",
        "message": "Control deprecated. Mappings preserved for audit trail.",
    })


# ═══════════════════ MAPPINGS ═══════════════════

@router.get("/{control_id}/mappings")
async def list_mappings(
    control_id: str,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    ctrl = await get_owned(s, Control, control_id, user.org_id, "Control")
    items = await _mapping_outs(s, user.org_id, ctrl.id)
    return listing(items, len(items), 1, len(items))


async def _mappable(s: AsyncSession, org_id: str, requirement_id: str) -> Requirement | None:
    """Requirement if it is assessable and belongs to an active framework of the org."""
    return (await s.execute(
        select(Requirement)
        .join(OrgFramework, and_(
            OrgFramework.active_version_id == Requirement.framework_version_id,
            OrgFramework.org_id == org_id,
            OrgFramework.status == "active",
        ))
        .where(Requirement.id == requirement_id, Requirement.is_assessable.is_(True))
    )).scalars().first()


@router.post("/{control_id}/mappings", status_code=201)
async def create_mappings(
    control_id: str,
    body: MappingCreateRequest,
    user: CurrentUser = Depends(require_roles(*roles.CONTROL_MANAGE)),
    s: AsyncSession = Depends(get_session),
):
    ctrl = await get_owned(s, Control, control_id, user.org_id, "Control")

    entries = list(body.mappings)
    if not entries and body.requirement_id:
        entries = [body]
    if not entries:
        raise validation_error("At least one mapping required")
    if len(entries) > BULK_MAPPING_MAX:
        raise validation_error(f"Maximum {BULK_MAPPING_MAX} mappings per request")

    created: list[ControlMapping] = []
    seen: set[str] = set()
    for entry in entries:
        strength = entry.strength or "primary"
        if not entry.requirement_id or entry.requirement_id in seen or strength not in MAPPING_STRENGTHS:
            continue
        req = await _mappable(s, user.org_id, entry.requirement_id)
        if req is None:
            continue
        dup = (await s.execute(
            select(ControlMapping.id).where(
                ControlMapping.org_id == user.org_id,
                ControlMapping.control_id == ctrl.id,
                ControlMapping.requirement_id == req.id,
            )
        )).first()
        if dup:
            continue

        mapping = ControlMapping(
            org_id=user.org_id,
            control_id=ctrl.id,
            requirement_id=req.id,
            strength=strength,
            notes=entry.notes,
            mapped_by=user.user_id,
        )
        s.add(mapping)
        await s.flush()
        seen.add(req.id)
        created.append(mapping)
        await audit_log(s, "control_mapping.created", "control_mapping", mapping.id, {
            "control": ctrl.identifier, "requirement": req.identifier, "strength": strength,
        })

    await s.commit()
    return envelope({
        "created": len(created),
        "mappings": [
            {
                "id": m.id,
                "control_id": m.control_id,
                "requirement_id": m.requirement_id,
                "strength": m.strength,
                "notes": m.notes,
                "created_at": m.created_at,
            }
            for m in created
        ],
    })


@router.delete("/{control_id}/mappings/{mapping_id}")
async def delete_mapping(
    control_id: str,
    mapping_id: str,
    user: CurrentUser = Depends(require_roles(*roles.CONTROL_MANAGE)),
    s: AsyncSession = Depends(get_session),
):
    ctrl = await get_owned(s, Control, control_id, user.org_id, "Control")
    mapping = (await s.execute(
        select(ControlMapping).where(
            ControlMapping.id == mapping_id,
            ControlMapping.control_id == ctrl.id,
            ControlMapping.org_id == user.org_id,
        )
    )).scalar_one_or_none()
    if mapping is None:
        raise HTTPException(404, "Mapping not found")

    req = await s.get(Requirement, mapping.requirement_id)
    await s.delete(mapping)
    await audit_log(s, "control_mapping.deleted", "control_mapping", mapping_id, {
        "control": ctrl.identifier, "requirement": req.identifier if req else None,
    })
    await s.commit()
    return envelope({"id": mapping_id, "message": "Mapping deleted"})
