"""Lightweight user references embedded in responses."""
from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.models.user import User
from grc_api.schemas.common import UserRef


async def user_refs(s: AsyncSession, org_id: str, ids: Iterable[str | None]) -> dict[str, UserRef]:
    wanted = {i for i in ids if i}
    if not wanted:
        return {}
    rows = (await s.execute(
        select(User).where(User.org_id == org_id, User.id.in_(wanted))
    )).scalars().all()
    return {u.id: UserRef(id=u.id, name=u.full_name, email=u.email) for u in rows}


async def user_ref(s: AsyncSession, org_id: str, user_id: str | None) -> UserRef | None:
    if not user_id:
        return None
    return (await user_refs(s, org_id, [user_id])).get(user_id)
