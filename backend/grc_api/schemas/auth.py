from pydantic import BaseModel, Field

from .common import UTCDateTime


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    org_name: str = Field(..., min_length=1)
    org_domain: str | None = None


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class UserOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    org_id: str
    email: str
    first_name: str
    last_name: str
    role: str
    status: str
    mfa_enabled: bool = False
    last_login_at: UTCDateTime | None = None
    created_at: UTCDateTime
    updated_at: UTCDateTime


class OrganizationOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    name: str
    slug: str
    domain: str | None = None
    status: str
    settings: dict = {}
    created_at: UTCDateTime
    updated_at: UTCDateTime


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class AuthResponse(TokenPair):
    user: UserOut
    organization: OrganizationOut | None = None
