from pydantic import BaseModel, Field

from .common import UserRef, UTCDateTime


class ControlCreate(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1)
    description: str | None = None
    implementation_guidance: str | None = None
    category: str
    status: str = "draft"
    owner_id: str | None = None
    secondary_owner_id: str | None = None
    evidence_requirements: str | None = None
    test_criteria: str | None = None
    metadata: dict | None = None


class ControlUpdate(BaseModel):
    title: str | None = Field(None, min_length=1)
    description: str | None = None
    implementation_guidance: str | None = None
    category: str | None = None
    evidence_requirements: str | None = None
    test_criteria: str | None = None
    metadata: dict | None = None


class OwnerChange(BaseModel):
    owner_id: str | None = None
    secondary_owner_id: str | None = None


class BulkStatusChange(BaseModel):
    control_ids: list[str]
    status: str


class ControlOut(BaseModel):
    id: str
    identifier: str
    title: str
    description: str | None = None
    implementation_guidance: str | None = None
    category: str
    status: str
    is_custom: bool
    source_template_id: str | None = None
    owner: UserRef | None = None
    secondary_owner: UserRef | None = None
    evidence_requirements: str | None = None
    test_criteria: str | None = None
    metadata: dict = {}
    mappings_count: int = 0
    created_at: UTCDateTime
    updated_at: UTCDateTime


class RequirementRef(BaseModel):
    id: str
    identifier: str
    title: str
    framework_id: str
    framework_identifier: str
    framework_name: str
    framework_version: str


class MappingOut(BaseModel):
    id: str
    control_id: str
    requirement: RequirementRef
    strength: str
    notes: str | None = None
    mapped_by: UserRef | None = None
    created_at: UTCDateTime


class ControlDetailOut(ControlOut):
    mappings: list[MappingOut] = []
    frameworks: list[dict] = []


class MappingCreate(BaseModel):
    requirement_id: str
    strength: str | None = None
    notes: str | None = None


class MappingCreateRequest(BaseModel):
    """Single mapping (top-level fields) or bulk via ``mappings``."""
    requirement_id: str | None = None
    strength: str | None = None
    notes: str | None = None
    mappings: list[MappingCreate] = []
