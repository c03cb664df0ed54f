"""
Framework activation, scoping and coverage — /api/v1/org-frameworks
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api import roles
from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_current_user, get_owned, require_roles
from grc_api.errors import field_error
from grc_api.middleware.audit import audit_log
from grc_api.models.base import utcnow
from grc_api.models.framework import (
    ORG_FRAMEWORK_STATUSES, Framework, FrameworkVersion, OrgFramework, Requirement, RequirementScope,
)
from grc_api.responses import envelope, listing
from grc_api.schemas.framework import (
    ActivateFramework, FrameworkRef, OrgFrameworkOut, OrgFrameworkUpdate, ScopeOut, ScopeSet, VersionRef,
)
from grc_api.services.coverage import compute_coverage, requirement_coverage

router = APIRouter(prefix="/api/v1/org-frameworks", tags=["Org Frameworks"])

JUSTIFICATION_MAX = 2000


async def _org_framework_out(s: AsyncSession, of: OrgFramework, with_stats: bool = True) -> OrgFrameworkOut:
    fw = await s.get(Framework, of.framework_id)
    fv = await s.get(FrameworkVersion, of.active_version_id)
    return OrgFrameworkOut(
        id=of.id,
        framework=FrameworkRef(id=fw.id, identifier=fw.identifier, name=fw.name, category=fw.category),
        active_version=VersionRef(
            id=fv.id, version=fv.version, display_name=fv.display_name,
            total_requirements=fv.total_requirements,
        ),
        status=of.status,
        target_date=of.target_date,
        notes=of.notes,
        activated_at=of.activated_at,
        deactivated_at=of.deactivated_at,
        stats=await compute_coverage(s, of.org_id, of.active_version_id) if with_stats else None,
        created_at=of.created_at,
        updated_at=of.updated_at,
    )


async def _active_version(s: AsyncSession, framework_id: str, version_id: str) -> FrameworkVersion:
    fv = (await s.execute(
        select(FrameworkVersion).where(
            FrameworkVersion.id == version_id,
            FrameworkVersion.framework_id == framework_id,
        )
    )).scalar_one_or_none()
    if fv is None:
        raise HTTPException(422, "Version doesn't belong to this framework")
    if fv.status != "active":
        raise HTTPException(422, "Version is not in active status")
    return fv


# ═══════════════════ ACTIVATION ═══════════════════

@router.get("")
async def list_org_frameworks(
    status: str | None = Query(None),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    q = select(OrgFramework).where(OrgFramework.org_id == user.org_id)
    if status:
        q = q.where(OrgFramework.status == status)
    rows = (await s.execute(q.order_by(OrgFramework.activated_at))).scalars().all()
    items = [await _org_framework_out(s, of) for of in rows]
    return listing(items, len(items), 1, len(items))


@router.post("", status_code=201)
async def activate_framework(
    body: ActivateFramework,
    user: CurrentUser = Depends(require_roles(*roles.ORG_FRAMEWORK)),
    s: AsyncSession = Depends(get_session),
):
    fw = await s.get(Framework, body.framework_id)
    if fw is None:
        raise HTTPException(404, "Framework not found")
    fv = (await s.execute(
        select(FrameworkVersion).where(
            FrameworkVersion.id == body.version_id,
            FrameworkVersion.framework_id == fw.id,
        )
    )).scalar_one_or_none()
    if fv is None:
        raise HTTPException(404, "Framework version not found")
    if fv.status != "active":
        raise HTTPException(422, "Version is not in active status")

    existing = (await s.execute(
        select(OrgFramework.id).where(OrgFramework.org_id == user.org_id, OrgFramework.framework_id == fw.id)
    )).first()
    if existing:
        raise HTTPException(409, "Framework already activated for this organization")

    of = OrgFramework(
        org_id=user.org_id,
        framework_id=fw.id,
        active_version_id=fv.id,
        status="active",
        target_date=body.target_date,
        notes=body.notes,
        activated_at=utcnow(),
    )
    s.add(of)
    await s.flush()
    await audit_log(s, "framework.activated", "org_framework", of.id,
                    {"framework": fw.identifier, "version": fv.version})
    await s.commit()
    await s.refresh(of)
    return envelope(await _org_framework_out(s, of))


@router.put("/{org_framework_id}")
async def update_org_framework(
    org_framework_id: str,
    body: OrgFrameworkUpdate,
    user: CurrentUser = Depends(require_roles(*roles.ORG_FRAMEWORK)),
    s: AsyncSession = Depends(get_session),
):
    of = await get_owned(s, OrgFramework, org_framework_id, user.org_id, "Org framework")
    data = body.model_dump(exclude_unset=True)

    if data.get("status") is not None and data["status"] not in ORG_FRAMEWORK_STATUSES:
        raise field_error("status", "must be active or inactive")

    if data.get("version_id") and data["version_id"] != of.active_version_id:
        fv = await _active_version(s, of.framework_id, data["version_id"])
        old_version = of.active_version_id
        of.active_version_id = fv.id
        await audit_log(s, "framework.version_changed", "org_framework", of.id,
                        {"old_version": old_version, "new_version": fv.id})

    if "target_date" in data:
        of.target_date = data["target_date"]
    if "notes" in data:
        of.notes = data["notes"]

    new_status = data.get("status")
    if new_status and new_status != of.status:
        of.status = new_status
        if new_status == "inactive":
            of.deactivated_at = utcnow()
            await audit_log(s, "framework.deactivated", "org_framework", of.id)
        else:
            of.deactivated_at = None
            of.activated_at = utcnow()
            await audit_log(s, "framework.activated", "org_framework", of.id)

    await s.commit()
    await s.refresh(of)
    return envelope(await _org_framework_out(s, of))


@router.delete("/{org_framework_id}")
async def deactivate_framework(
    org_framework_id: str,
    user: CurrentUser = Depends(require_roles(*roles.ORG_FRAMEWORK)),
    s: AsyncSession = Depends(get_session),
):
    of = await get_owned(s, OrgFramework, org_framework_id, user.org_id, "Org framework")
    of.status = "inactive"
    of.deactivated_at = utcnow()
    await audit_log(s, "framework.deactivated", "org_framework", of.id)
    await s.commit()
    return envelope({
        "id": of.id,
        "status": "inactive",
        "message": "Framework deactivated. Controls and mappings preserved.",
    })


# ═══════════════════ COVERAGE ═══════════════════

@router.get("/{org_framework_id}/coverage")
async def get_coverage(
    org_framework_id: str,
    status: str | None = Query(None, description="covered | gap"),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    of = await get_owned(s, OrgFramework, org_framework_id, user.org_id, "Org framework")
    summary = await _org_framework_out(s, of)
    requirements = await requirement_coverage(s, user.org_id, of.active_version_id, status)
    return envelope({
        "org_framework_id": of.id,
        "framework": summary.framework,
        "active_version": summary.active_version,
        "stats": summary.stats,
        "requirements": requirements,
    })


# ═══════════════════ SCOPING ═══════════════════

@router.get("/{org_framework_id}/scoping")
async def list_scoping(
    org_framework_id: str,
    in_scope: bool | None = Query(None),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    of = await get_owned(s, OrgFramework, org_framework_id, user.org_id, "Org framework")
    rows = (await s.execute(
        select(Requirement, RequirementScope)
        .outerjoin(RequirementScope, and_(
            RequirementScope.requirement_id == Requirement.id,
            RequirementScope.org_id == user.org_id,
        ))
        .where(Requirement.framework_version_id == of.active_version_id)
        .order_by(Requirement.depth, Requirement.section_order, Requirement.identifier)
    )).all()

    items = []
    for req, scope in rows:
        scoped_in = scope is None or scope.in_scope
        if in_scope is not None and scoped_in != in_scope:
            continue
        items.append(ScopeOut(
            requirement_id=req.id,
            identifier=req.identifier,
            title=req.title,
            is_assessable=req.is_assessable,
            in_scope=scoped_in,
            justification=scope.justification if scope else None,
            scoped_by=scope.scoped_by if scope else None,
            updated_at=scope.updated_at if scope else None,
        ))
    return listing(items, len(items), 1, len(items))


async def _requirement_in_version(s: AsyncSession, of: OrgFramework, requirement_id: str) -> Requirement:
    req = await s.get(Requirement, requirement_id)
    if req is None:
        raise HTTPException(404, "Requirement not found")
    if req.framework_version_id != of.active_version_id:
        raise HTTPException(422, "Requirement does not belong to this framework version")
    return req


@router.put("/{org_framework_id}/requirements/{requirement_id}/scope")
async def set_scope(
    org_framework_id: str,
    requirement_id: str,
    body: ScopeSet,
    user: CurrentUser = Depends(require_roles(*roles.ORG_FRAMEWORK)),
    s: AsyncSession = Depends(get_session),
):
    of = await get_owned(s, OrgFramework, org_framework_id, user.org_id, "Org framework")
    req = await _requirement_in_version(s, of, requirement_id)

    justification = (body.justification or "").strip() or None
    if not body.in_scope and not justification:
        raise HTTPException(422, "Justification is required when marking a requirement out of scope")
    if justification and len(justification) > JUSTIFICATION_MAX:
        raise field_error("justification", f"must be at most {JUSTIFICATION_MAX} characters")

    scope = (await s.execute(
        select(RequirementScope).where(
            RequirementScope.org_id == user.org_id,
            RequirementScope.requirement_id == req.id,
        )
    )).scalar_one_or_none()
    if scope is None:
        scope = RequirementScope(org_id=user.org_id, requirement_id=req.id)
        s.add(scope)
    scope.in_scope = body.in_scope
    scope.justification = justification
    scope.scoped_by = user.user_id
    scope.updated_at = utcnow()

    await s.flush()
    await audit_log(s, "requirement.scoped", "requirement", req.id, {
        "identifier": req.identifier, "in_scope": body.in_scope, "org_framework_id": of.id,
    })
    await s.commit()
    await s.refresh(scope)
    return envelope(ScopeOut(
        requirement_id=req.id,
        identifier=req.identifier,
        title=req.title,
        is_assessable=req.is_assessable,
        in_scope=scope.in_scope,
        justification=scope.justification,
        scoped_by=scope.scoped_by,
        updated_at=scope.updated_at,
    ))


@router.delete("/{org_framework_id}/requirements/{requirement_id}/scope")
async def reset_scope(
    org_framework_id: str,
    requirement_id: str,
    user: CurrentUser = Depends(require_roles(*roles.ORG_FRAMEWORK)),
    s: AsyncSession = Depends(get_session),
):
    of = await get_owned(s, OrgFramework, org_framework_id, user.org_id, "Org framework")
    req = await _requirement_in_version(s, of, requirement_id)
    scope = (await s.execute(
        select(RequirementScope).where(
            RequirementScope.org_id == user.org_id,
            RequirementScope.requirement_id == req.id,
        )
    )).scalar_one_or_none()
    if scope is None:
        raise HTTPException(404, "Scope override not found")

    await s.delete(scope)
    await audit_log(s, "requirement.scope_reset", "requirement", req.id,
                    {"identifier": req.identifier, "org_framework_id": of.id})
    await s.commit()
    return envelope({"requirement_id": req.id, "in_scope": True, "message": "Scope reset to default"})
