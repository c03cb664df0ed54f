"""
Audit trail helper — call audit_log() from routers after mutations.

Usage in a router:
    from grc_api.middleware.audit import audit_log
    await audit_log(s, "risk.created", "risk", risk.id, {"identifier": risk.identifier})

The entry is written inside a SAVEPOINT of the caller's transaction, so it
commits together with the state change it describes. The caller's pending
changes are flushed first and their errors propagate; only a failure of the
audit row itself is logged and swallowed.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.middleware.request_context import get_audit_context, get_request_id
from grc_api.models.audit import AuditLog
from grc_api.models.base import utcnow

logger = logging.getLogger(__name__)


async def audit_log(
    session: AsyncSession,
    action: str,
    resource_type: str,
    resource_id: str | None,
    metadata: dict[str, Any] | None = None,
    *,
    org_id: str | None = None,
    actor_id: str | None = None,
) -> None:
    """
    Append one audit entry.

    org_id / actor_id default to the authenticated caller; pass them
    explicitly for pre-auth actions (register, login).
    """
    ctx = get_audit_context()
    entry = AuditLog(
        org_id=org_id or ctx["org_id"],
        actor_id=actor_id or ctx["actor_id"],
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata_=_jsonable(metadata or {}),
        ip_address=ctx["ip_address"],
        user_agent=ctx["user_agent"],
        created_at=utcnow(),
    )
    # the caller's own pending changes must fail on their own, outside the guard
    await session.flush()
    try:
        async with session.begin_nested():
            session.add(entry)
    except SQLAlchemyError:
        logger.exception(
            "Failed to write audit log [action=%s request_id=%s]", action, get_request_id()
        )


def diff_changes(old: dict, new: dict) -> dict[str, dict[str, Any]]:
    """Compare two dicts and return {field: {"old": ..., "new": ...}} for changed fields."""
    changes = {}
    for key in new:
        if key in old and old[key] != new[key]:
            changes[key] = {"old": old[key], "new": new[key]}
    return changes


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
