"""
Audit trail viewer — /api/v1/audit-log
Read-only, newest first.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api import roles
from grc_api.database import get_session
from grc_api.deps import CurrentUser, require_roles
from grc_api.models.audit import AuditLog
from grc_api.models.user import User
from grc_api.pagination import Page, paginate
from grc_api.responses import listing
from grc_api.schemas.audit import AuditLogOut

router = APIRouter(prefix="/api/v1/audit-log", tags=["Audit Trail"])


@router.get("")
async def list_audit_logs(
    action: str | None = Query(None, description="Dotted action name, e.g. risk.created"),
    resource_type: str | None = Query(None),
    resource_id: str | None = Query(None),
    actor_id: str | None = Query(None),
    page: Page = Depends(paginate(100)),
    user: CurrentUser = Depends(require_roles(*roles.AUDIT_VIEW)),
    s: AsyncSession = Depends(get_session),
):
    q = select(AuditLog).where(AuditLog.org_id == user.org_id)
    if action:
        q = q.where(AuditLog.action == action)
    if resource_type:
        q = q.where(AuditLog.resource_type == resource_type)
    if resource_id:
        q = q.where(AuditLog.resource_id == resource_id)
    if actor_id:
        q = q.where(AuditLog.actor_id == actor_id)

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0

    q = (
        select(AuditLog, User.email)
        .outerjoin(User, AuditLog.actor_id == User.id)
        .where(AuditLog.id.in_(select(q.subquery().c.id)))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    )
    rows = (await s.execute(page.apply(q))).all()

    items = []
    for log, email in rows:
        out = AuditLogOut.model_validate(log)
        out.actor_email = email
        items.append(out)
    return listing(items, total, page.page, page.per_page)
