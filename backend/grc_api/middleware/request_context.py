"""
Per-request context: request id, client address and the authenticated actor.

Stored in context variables so the audit helper and log records can read
them without threading the request through every call.
"""
from __future__ import annotations

import contextvars
import logging
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_ID_HEADER = "X-Request-ID"

_ctx_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("_ctx_request_id", default=None)
_ctx_ip_address: contextvars.ContextVar[str | None] = contextvars.ContextVar("_ctx_ip_address", default=None)
_ctx_user_agent: contextvars.ContextVar[str | None] = contextvars.ContextVar("_ctx_user_agent", default=None)
_ctx_user_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("_ctx_user_id", default=None)
_ctx_org_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("_ctx_org_id", default=None)


def get_request_id() -> str | None:
    return _ctx_request_id.get()


def set_audit_context(*, user_id: str | None = None, org_id: str | None = None) -> None:
    """Store the authenticated caller so audit entries can be attributed."""
    _ctx_user_id.set(user_id)
    _ctx_org_id.set(org_id)


def get_audit_context() -> dict[str, str | None]:
    return {
        "actor_id": _ctx_user_id.get(),
        "org_id": _ctx_org_id.get(),
        "ip_address": _ctx_ip_address.get(),
        "user_agent": _ctx_user_agent.get(),
    }


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign a request id, capture client IP / user agent, echo the id back."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        _ctx_request_id.set(request_id)
        _ctx_ip_address.set(request.client.host if request.client else None)
        _ctx_user_agent.set((request.headers.get("User-Agent") or "")[:500] or None)
        set_audit_context()

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class RequestIdLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True
