from datetime import datetime, timezone
from typing import Annotated

from pydantic import BaseModel, PlainSerializer


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# Stored naive-UTC, emitted as RFC 3339 with a Z suffix
UTCDateTime = Annotated[datetime, PlainSerializer(_rfc3339, return_type=str, when_used="json")]


class UserRef(BaseModel):
    id: str
    name: str
    email: str | None = None


class StatusChange(BaseModel):
    status: str


def iso(value: datetime | None) -> str | None:
    """RFC 3339 string for ad-hoc dict payloads that bypass a schema."""
    return _rfc3339(value) if value is not None else None
