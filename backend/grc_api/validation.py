"""Small field checks shared by several routers; each raises VALIDATION_ERROR."""
from __future__ import annotations

import json

from grc_api.errors import validation_error

METADATA_MAX_BYTES = 10 * 1024


def check_metadata(metadata: dict) -> None:
    if len(json.dumps(metadata).encode("utf-8")) > METADATA_MAX_BYTES:
        raise validation_error("Metadata must be at most 10KB")


def check_max_length(label: str, value: str | None, limit: int) -> None:
    if value is not None and len(value) > limit:
        raise validation_error(f"{label} must not exceed {limit} characters")


def check_choice(label: str, value: str | None, allowed) -> None:
    if value is not None and value not in allowed:
        raise validation_error(f"Invalid {label}")
