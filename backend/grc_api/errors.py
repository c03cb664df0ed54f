"""
Error envelope — ``{"error": {"code", "message", "details"?}}``.

Routers raise ``HTTPException`` as usual; the status code picks the error code.
``APIError`` is used where the code is not implied by the status
(VALIDATION_ERROR vs BAD_REQUEST both use 400) or when field details are sent.
"""
from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from grc_api.middleware.request_context import get_request_id

logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "UNPROCESSABLE",
}


class APIError(HTTPException):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: list[dict] | None = None,
    ):
        super().__init__(status_code=status_code, detail=message)
        self.code = code
        self.details = details


def validation_error(message: str, details: list[dict] | None = None) -> APIError:
    return APIError(400, "VALIDATION_ERROR", message, details)


def field_error(field: str, message: str) -> APIError:
    return APIError(400, "VALIDATION_ERROR", "Validation failed", [{"field": field, "message": message}])


def error_body(code: str, message: str, details: list[dict] | None = None) -> dict:
    err: dict = {"code": code, "message": message}
    if details:
        err["details"] = details
    return {"error": err}


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc, APIError):
        code, details = exc.code, exc.details
    else:
        code, details = _STATUS_CODES.get(exc.status_code, "INTERNAL_ERROR"), None
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, str(exc.detail), details),
        headers=getattr(exc, "headers", None),
    )


async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        details.append({"field": ".".join(loc) or "body", "message": err.get("msg", "invalid")})
    return JSONResponse(status_code=400, content=error_body("VALIDATION_ERROR", "Validation failed", details))


async def _integrity_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Integrity conflict [request_id=%s]: %s", get_request_id(), exc.orig)
    return JSONResponse(status_code=409, content=error_body("CONFLICT", "Resource conflicts with existing data"))


async def _unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error [request_id=%s] %s %s", get_request_id(), request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_body("INTERNAL_ERROR", "Internal server error"))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_handler)
    app.add_exception_handler(IntegrityError, _integrity_handler)
    app.add_exception_handler(Exception, _unhandled_handler)
