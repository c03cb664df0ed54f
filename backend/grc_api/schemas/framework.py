from datetime import date

from pydantic import BaseModel, Field

from .common import UTCDateTime


# ═══════════════════ CATALOG ═══════════════════

class FrameworkVersionOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    framework_id: str
    version: str
    display_name: str
    status: str
    effective_date: date | None = None
    sunset_date: date | None = None
    changelog: str | None = None
    total_requirements: int = 0
    created_at: UTCDateTime


class FrameworkOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    identifier: str
    name: str
    description: str | None = None
    category: str
    website_url: str | None = None
    is_custom: bool = False
    versions_count: int = 0
    created_at: UTCDateTime
    updated_at: UTCDateTime


class FrameworkDetailOut(FrameworkOut):
    versions: list[FrameworkVersionOut] = []


class RequirementOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    framework_version_id: str
    parent_id: str | None = None
    identifier: str
    title: str
    description: str | None = None
    guidance: str | None = None
    section_order: int
    depth: int
    is_assessable: bool


class RequirementNode(RequirementOut):
    children: list["RequirementNode"] = []


# ═══════════════════ ORG ACTIVATION ═══════════════════

class ActivateFramework(BaseModel):
    framework_id: str
    version_id: str
    target_date: date | None = None
    notes: str | None = Field(None, max_length=2000)


class OrgFrameworkUpdate(BaseModel):
    version_id: str | None = None
    status: str | None = None
    target_date: date | None = None
    notes: str | None = Field(None, max_length=2000)


class CoverageStats(BaseModel):
    total_requirements: int = 0
    assessable_requirements: int = 0
    in_scope: int = 0
    out_of_scope: int = 0
    mapped: int = 0
    unmapped: int = 0
    coverage_pct: float = 0.0


class FrameworkRef(BaseModel):
    id: str
    identifier: str
    name: str
    category: str


class VersionRef(BaseModel):
    id: str
    version: str
    display_name: str
    total_requirements: int = 0


class OrgFrameworkOut(BaseModel):
    id: str
    framework: FrameworkRef
    active_version: VersionRef
    status: str
    target_date: date | None = None
    notes: str | None = None
    activated_at: UTCDateTime
    deactivated_at: UTCDateTime | None = None
    stats: CoverageStats | None = None
    created_at: UTCDateTime
    updated_at: UTCDateTime


class ScopeSet(BaseModel):
    in_scope: bool
    justification: str | None = None


class MappedControlRef(BaseModel):
    id: str
    identifier: str
    title: str
    status: str
    strength: str


class RequirementCoverage(BaseModel):
    id: str
    identifier: str
    title: str
    depth: int
    in_scope: bool
    status: str  # covered | gap | out_of_scope
    controls: list[MappedControlRef] = []


class ScopeOut(BaseModel):
    requirement_id: str
    identifier: str
    title: str
    is_assessable: bool
    in_scope: bool
    justification: str | None = None
    scoped_by: str | None = None
    updated_at: UTCDateTime | None = None
