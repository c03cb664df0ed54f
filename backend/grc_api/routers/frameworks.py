"""
Framework catalog — /api/v1/frameworks

Read-only to tenants. Requirements are returned flat (paginated, ordered by
depth then section order) or nested with ``?format=tree``.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_current_user
from grc_api.models.framework import Framework, FrameworkVersion, Requirement
from grc_api.pagination import Page, paginate
from grc_api.responses import envelope, listing
from grc_api.schemas.framework import (
    FrameworkDetailOut, FrameworkOut, FrameworkVersionOut, RequirementNode, RequirementOut,
)

router = APIRouter(prefix="/api/v1/frameworks", tags=["Frameworks"])


async def _get_framework(s: AsyncSession, framework_id: str) -> Framework:
    fw = await s.get(Framework, framework_id)
    if fw is None:
        raise HTTPException(404, "Framework not found")
    return fw


async def _get_version(s: AsyncSession, framework_id: str, version_id: str) -> FrameworkVersion:
    fv = (await s.execute(
        select(FrameworkVersion).where(
            FrameworkVersion.id == version_id,
            FrameworkVersion.framework_id == framework_id,
        )
    )).scalar_one_or_none()
    if fv is None:
        raise HTTPException(404, "Framework version not found")
    return fv


def build_tree(requirements: list[Requirement]) -> list[RequirementNode]:
    """
    Assemble flat rows into nested nodes.

    Roots are rows without a parent or whose parent is not in the set.
    Input must already be ordered by (depth, section_order); that order is
    kept for roots and for each children list.
    """
    nodes = {r.id: RequirementNode.model_validate(r) for r in requirements}
    roots: list[RequirementNode] = []
    for r in requirements:
        node = nodes[r.id]
        parent = nodes.get(r.parent_id) if r.parent_id else None
        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)
    return roots


@router.get("")
async def list_frameworks(
    category: str | None = Query(None),
    search: str | None = Query(None),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    versions_count = (
        select(func.count(FrameworkVersion.id))
        .where(FrameworkVersion.framework_id == Framework.id)
        .correlate(Framework)
        .scalar_subquery()
    )
    q = select(Framework, versions_count.label("versions_count"))
    if category:
        q = q.where(Framework.category == category)
    if search:
        pattern = f"%{search.lower()}%"
        q = q.where(or_(
            func.lower(Framework.name).like(pattern),
            func.lower(Framework.identifier).like(pattern),
        ))
    rows = (await s.execute(q.order_by(Framework.name))).all()

    items = []
    for fw, count in rows:
        out = FrameworkOut.model_validate(fw)
        out.versions_count = count or 0
        items.append(out)
    return listing(items, len(items), 1, len(items))


@router.get("/{framework_id}")
async def get_framework(
    framework_id: str,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    fw = await _get_framework(s, framework_id)
    versions = (await s.execute(
        select(FrameworkVersion)
        .where(FrameworkVersion.framework_id == fw.id)
        .order_by(FrameworkVersion.created_at.desc())
    )).scalars().all()

    out = FrameworkDetailOut.model_validate(fw)
    out.versions = [FrameworkVersionOut.model_validate(v) for v in versions]
    out.versions_count = len(versions)
    return envelope(out)


@router.get("/{framework_id}/versions/{version_id}")
async def get_version(
    framework_id: str,
    version_id: str,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    await _get_framework(s, framework_id)
    return envelope(FrameworkVersionOut.model_validate(await _get_version(s, framework_id, version_id)))


@router.get("/{framework_id}/versions/{version_id}/requirements")
async def list_requirements(
    framework_id: str,
    version_id: str,
    format: str | None = Query(None, description="flat (default) or tree"),
    assessable_only: bool = Query(False),
    parent_id: str | None = Query(None),
    search: str | None = Query(None),
    page: Page = Depends(paginate(200)),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    await _get_framework(s, framework_id)
    fv = await _get_version(s, framework_id, version_id)
    ordering = (Requirement.depth, Requirement.section_order, Requirement.identifier)

    if format == "tree":
        rows = (await s.execute(
            select(Requirement)
            .where(Requirement.framework_version_id == fv.id)
            .order_by(*ordering)
        )).scalars().all()
        return envelope(build_tree(list(rows)))

    q = select(Requirement).where(Requirement.framework_version_id == fv.id)
    if assessable_only:
        q = q.where(Requirement.is_assessable.is_(True))
    if parent_id:
        q = q.where(Requirement.parent_id == parent_id)
    if search:
        pattern = f"%{search.lower()}%"
        q = q.where(or_(
            func.lower(Requirement.identifier).like(pattern),
            func.lower(Requirement.title).like(pattern),
        ))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    rows = (await s.execute(page.apply(q.order_by(*ordering)))).scalars().all()
    return listing([RequirementOut.model_validate(r) for r in rows], total, page.page, page.per_page)
