"""
Requirement coverage for one framework version within an org.

    total_requirements       = |requirements of version|
    assessable_requirements  = |assessable requirements|
    out_of_scope             = |assessable requirements scoped out|
    in_scope                 = assessable_requirements - out_of_scope
    mapped                   = |distinct assessable in-scope requirements with a mapping|
    unmapped                 = max(0, in_scope - mapped)
    coverage_pct             = mapped / in_scope * 100   (0 when in_scope = 0)
"""
from __future__ import annotations

from sqlalchemy import and_, case, distinct, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.models.control import Control, ControlMapping
from grc_api.models.framework import Requirement, RequirementScope
from grc_api.schemas.framework import CoverageStats, MappedControlRef, RequirementCoverage


def coverage_pct(mapped: int, in_scope: int) -> float:
    if in_scope <= 0:
        return 0.0
    return round(mapped / in_scope * 100, 2)


async def compute_coverage(s: AsyncSession, org_id: str, version_id: str) -> CoverageStats:
    total, assessable = (await s.execute(
        select(
            func.count(Requirement.id),
            func.coalesce(func.sum(case((Requirement.is_assessable.is_(True), 1), else_=0)), 0),
        ).where(Requirement.framework_version_id == version_id)
    )).one()

    out_of_scope = (await s.execute(
        select(func.count(RequirementScope.id))
        .join(Requirement, Requirement.id == RequirementScope.requirement_id)
        .where(
            RequirementScope.org_id == org_id,
            RequirementScope.in_scope.is_(False),
            Requirement.framework_version_id == version_id,
            Requirement.is_assessable.is_(True),
        )
    )).scalar() or 0

    mapped = (await s.execute(
        select(func.count(distinct(Requirement.id)))
        .join(ControlMapping, and_(
            ControlMapping.requirement_id == Requirement.id,
            ControlMapping.org_id == org_id,
        ))
        .outerjoin(RequirementScope, and_(
            RequirementScope.requirement_id == Requirement.id,
            RequirementScope.org_id == org_id,
        ))
        .where(
            Requirement.framework_version_id == version_id,
            Requirement.is_assessable.is_(True),
            or_(RequirementScope.id.is_(None), RequirementScope.in_scope.is_(True)),
        )
    )).scalar() or 0

    in_scope = int(assessable) - out_of_scope
    return CoverageStats(
        total_requirements=total,
        assessable_requirements=int(assessable),
        in_scope=in_scope,
        out_of_scope=out_of_scope,
        mapped=mapped,
        unmapped=max(0, in_scope - mapped),
        coverage_pct=coverage_pct(mapped, in_scope),
    )


async def requirement_coverage(
    s: AsyncSession, org_id: str, version_id: str, status: str | None = None
) -> list[RequirementCoverage]:
    """Per assessable requirement: covered, gap or out_of_scope, with mapped controls."""
    reqs = (await s.execute(
        select(Requirement, RequirementScope.in_scope)
        .outerjoin(RequirementScope, and_(
            RequirementScope.requirement_id == Requirement.id,
            RequirementScope.org_id == org_id,
        ))
        .where(Requirement.framework_version_id == version_id, Requirement.is_assessable.is_(True))
        .order_by(Requirement.depth, Requirement.section_order, Requirement.identifier)
    )).all()

    mapping_rows = (await s.execute(
        select(ControlMapping.requirement_id, ControlMapping.strength, Control)
        .join(Control, Control.id == ControlMapping.control_id)
        .join(Requirement, Requirement.id == ControlMapping.requirement_id)
        .where(ControlMapping.org_id == org_id, Requirement.framework_version_id == version_id)
        .order_by(Control.identifier)
    )).all()
    by_req: dict[str, list[MappedControlRef]] = {}
    for req_id, strength, ctrl in mapping_rows:
        by_req.setdefault(req_id, []).append(MappedControlRef(
            id=ctrl.id, identifier=ctrl.identifier, title=ctrl.title,
            status=ctrl.status, strength=strength,
        ))

    items = []
    for req, scoped_in in reqs:
        in_scope = scoped_in is None or bool(scoped_in)
        controls = by_req.get(req.id, [])
        if not in_scope:
            req_status = "out_of_scope"
        elif controls:
            req_status = "covered"
        else:
            req_status = "gap"
        if status and req_status != status:
            continue
        items.append(RequirementCoverage(
            id=req.id, identifier=req.identifier, title=req.title, depth=req.depth,
            in_scope=in_scope, status=req_status, controls=controls,
        ))
    return items
