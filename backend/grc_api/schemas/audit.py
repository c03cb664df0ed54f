from pydantic import BaseModel, Field

from .common import UTCDateTime


class AuditLogOut(BaseModel):
    model_config = {"from_attributes": True, "populate_by_name": True}

    id: str
    org_id: str | None = None
    actor_id: str | None = None
    actor_email: str | None = None
    action: str
    resource_type: str
    resource_id: str | None = None
    metadata: dict = Field(default_factory=dict, validation_alias="metadata_")
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: UTCDateTime
