"""
Request dependencies: authenticated caller, role checks and tenant-scoped lookups.

Every tenant-owned row is fetched through ``get_owned`` (or a query that filters
on ``org_id``), so a row from another organization is indistinguishable from a
missing one.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TypeVar

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.middleware.request_context import set_audit_context
from grc_api.models.user import User
from grc_api.services.security import TokenError, decode_access_token

bearer = HTTPBearer(auto_error=False)

T = TypeVar("T")


@dataclass
class CurrentUser:
    user_id: str
    org_id: str
    email: str
    role: str


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> CurrentUser:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(401, "Missing or invalid authorization header")
    try:
        claims = decode_access_token(credentials.credentials)
    except TokenError as exc:
        raise HTTPException(401, str(exc)) from exc
    if not claims.org_id:
        raise HTTPException(401, "Invalid token")

    set_audit_context(user_id=claims.user_id, org_id=claims.org_id)
    return CurrentUser(
        user_id=claims.user_id,
        org_id=claims.org_id,
        email=claims.email,
        role=claims.role,
    )


def require_roles(*roles: str):
    """Dependency factory: ``user: CurrentUser = Depends(require_roles(*roles.ADMIN))``."""
    async def _dep(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(403, "Insufficient permissions")
        return user
    return _dep


async def get_owned(s: AsyncSession, model: type[T], obj_id: str, org_id: str, label: str) -> T:
    """Fetch a tenant-owned row by id or raise 404."""
    obj = (await s.execute(
        select(model).where(model.id == obj_id, model.org_id == org_id)
    )).scalar_one_or_none()
    if obj is None:
        raise HTTPException(404, f"{label} not found")
    return obj


async def get_org_user(
    s: AsyncSession, user_id: str, org_id: str, *, active_only: bool = False, label: str = "User"
) -> User:
    q = select(User).where(User.id == user_id, User.org_id == org_id)
    if active_only:
        q = q.where(User.status == "active")
    user = (await s.execute(q)).scalar_one_or_none()
    if user is None:
        raise HTTPException(404, f"{label} not found")
    return user
