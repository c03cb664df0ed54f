"""Success envelopes: ``{"data": ..., "meta": {"request_id": ...}}``."""
from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder

from grc_api.middleware.request_context import get_request_id


def envelope(data: Any, **meta: Any) -> dict:
    return {"data": jsonable_encoder(data), "meta": {"request_id": get_request_id(), **meta}}


def listing(items: list, total: int, page: int, per_page: int, **meta: Any) -> dict:
    return envelope(items, total=total, page=page, per_page=per_page, **meta)
