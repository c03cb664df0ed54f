"""
Authentication — /api/v1/auth

Register (org + first user), login, refresh-token rotation with reuse
detection, logout and password change.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api import roles
from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_current_user
from grc_api.errors import APIError, field_error, validation_error
from grc_api.middleware.audit import audit_log
from grc_api.middleware.request_context import get_audit_context
from grc_api.models.base import utcnow
from grc_api.models.organization import Organization
from grc_api.models.user import RefreshToken, User
from grc_api.responses import envelope
from grc_api.schemas.auth import (
    AuthResponse, ChangePasswordRequest, LoginRequest, OrganizationOut,
    RefreshRequest, RegisterRequest, TokenPair, UserOut,
)
from grc_api.services import security

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["Auth"])


def _password_details(problems: list[str]) -> list[dict]:
    return [{"field": "password", "message": p} for p in problems]


async def _issue_pair(s: AsyncSession, user: User, expires_at=None) -> TokenPair:
    """Create an access token and persist a new refresh token (hash only)."""
    ctx = get_audit_context()
    raw = security.generate_refresh_token()
    s.add(RefreshToken(
        user_id=user.id,
        org_id=user.org_id,
        token_hash=security.hash_token(raw),
        user_agent=ctx["user_agent"],
        ip_address=ctx["ip_address"],
        expires_at=expires_at or security.refresh_token_expiry(utcnow()),
    ))
    access = security.create_access_token(security.TokenClaims(
        user_id=user.id, org_id=user.org_id, email=user.email, role=user.role,
    ))
    return TokenPair(
        access_token=access,
        refresh_token=raw,
        expires_in=security.access_token_ttl_seconds(),
    )


async def revoke_all_tokens(s: AsyncSession, user_id: str) -> None:
    await s.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=utcnow())
    )


# =================== REGISTER ===================

@router.post("/register", status_code=201)
async def register(body: RegisterRequest, s: AsyncSession = Depends(get_session)):
    email = body.email.strip().lower()
    if not security.is_valid_email(email):
        raise field_error("email", "must be a valid email address")
    if len(body.first_name) > 100 or len(body.last_name) > 100:
        raise validation_error("Name fields must be at most 100 characters")
    if len(body.org_name) > 255:
        raise validation_error("Organization name must be at most 255 characters")
    problems = security.validate_password(body.password)
    if problems:
        raise validation_error("Validation failed", _password_details(problems))

    exists = (await s.execute(select(User.id).where(User.email == email))).first()
    if exists:
        raise HTTPException(409, "Email already registered")

    slug = security.slugify(body.org_name)
    if not slug:
        raise field_error("org_name", "must contain at least one letter or digit")
    if (await s.execute(select(Organization.id).where(Organization.slug == slug))).first():
        raise HTTPException(409, "Organization name already taken")

    org = Organization(name=body.org_name, slug=slug, domain=body.org_domain, status="active", settings={})
    s.add(org)
    await s.flush()

    user = User(
        org_id=org.id,
        email=email,
        password_hash=security.hash_password(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
        role=roles.REGISTRATION_ROLE,
        status="active",
    )
    s.add(user)
    await s.flush()

    pair = await _issue_pair(s, user)
    await audit_log(s, "user.register", "user", user.id,
                    {"email": email, "role": user.role}, org_id=org.id, actor_id=user.id)
    await audit_log(s, "org.created", "organization", org.id,
                    {"name": org.name, "slug": org.slug}, org_id=org.id, actor_id=user.id)
    await s.commit()
    await s.refresh(user)
    await s.refresh(org)

    return envelope(AuthResponse(
        **pair.model_dump(),
        user=UserOut.model_validate(user),
        organization=OrganizationOut.model_validate(org),
    ))


# =================== LOGIN ===================

@router.post("/login")
async def login(body: LoginRequest, s: AsyncSession = Depends(get_session)):
    email = body.email.strip().lower()
    user = (await s.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if user is None:
        raise HTTPException(401, "Invalid email or password")
    if user.status != "active":
        raise HTTPException(401, "Account is not active")
    if not security.verify_password(body.password, user.password_hash):
        await audit_log(s, "user.login_failed", "user", user.id,
                        {"email": email, "reason": "invalid_password"}, org_id=user.org_id, actor_id=user.id)
        await s.commit()
        raise HTTPException(401, "Invalid email or password")

    user.last_login_at = utcnow()
    pair = await _issue_pair(s, user)
    await audit_log(s, "user.login", "user", user.id, {"email": email}, org_id=user.org_id, actor_id=user.id)
    await s.commit()
    await s.refresh(user)
    org = await s.get(Organization, user.org_id)

    return envelope(AuthResponse(
        **pair.model_dump(),
        user=UserOut.model_validate(user),
        organization=OrganizationOut.model_validate(org) if org else None,
    ))


# =================== REFRESH ===================

@router.post("/refresh")
async def refresh(body: RefreshRequest, s: AsyncSession = Depends(get_session)):
    token_hash = security.hash_token(body.refresh_token)
    stored = (await s.execute(
        select(RefreshToken).where(RefreshToken.token_hash == token_hash)
    )).scalar_one_or_none()
    if stored is None:
        raise HTTPException(401, "Invalid refresh token")

    if stored.revoked_at is not None:
        # reuse of a rotated token: treat as theft, revoke the whole family
        await revoke_all_tokens(s, stored.user_id)
        await audit_log(s, "token.reuse_detected", "user", stored.user_id,
                        org_id=stored.org_id, actor_id=stored.user_id)
        await s.commit()
        logger.warning("Refresh token reuse detected for user %s", stored.user_id)
        raise HTTPException(401, "Token has been revoked")

    if stored.expires_at <= utcnow():
        raise HTTPException(401, "Refresh token expired")

    user = await s.get(User, stored.user_id)
    if user is None or user.status != "active":
        raise HTTPException(401, "Account is not active")

    # conditional revoke: a concurrent rotation of the same token loses here
    revoked = await s.execute(
        update(RefreshToken)
        .where(RefreshToken.id == stored.id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=utcnow())
    )
    if revoked.rowcount != 1:
        await revoke_all_tokens(s, stored.user_id)
        await s.commit()
        raise HTTPException(401, "Token has been revoked")

    pair = await _issue_pair(s, user, expires_at=stored.expires_at)
    await audit_log(s, "token.refreshed", "user", user.id, org_id=user.org_id, actor_id=user.id)
    await s.commit()
    return envelope(pair)


# =================== LOGOUT ===================

@router.post("/logout")
async def logout(
    body: RefreshRequest,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    await s.execute(
        update(RefreshToken)
        .where(
            RefreshToken.token_hash == security.hash_token(body.refresh_token),
            RefreshToken.user_id == user.user_id,
            RefreshToken.revoked_at.is_(None),
        )
        .values(revoked_at=utcnow())
    )
    await audit_log(s, "user.logout", "user", user.user_id)
    await s.commit()
    return envelope({"message": "Logged out successfully"})


# =================== CHANGE PASSWORD ===================

@router.post("/change-password")
async def change_password(
    body: ChangePasswordRequest,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    db_user = (await s.execute(
        select(User).where(User.id == user.user_id, User.org_id == user.org_id)
    )).scalar_one_or_none()
    if db_user is None:
        raise HTTPException(401, "Invalid token")
    if not security.verify_password(body.current_password, db_user.password_hash):
        raise HTTPException(401, "Current password is incorrect")

    problems = security.validate_password(body.new_password)
    if problems:
        raise APIError(422, "UNPROCESSABLE", "Validation failed",
                       [{"field": "new_password", "message": p} for p in problems])
    if body.new_password == body.current_password:
        raise HTTPException(422, "New password must be different from current password")

    db_user.password_hash = security.hash_password(body.new_password)
    await revoke_all_tokens(s, db_user.id)
    await audit_log(s, "user.password_changed", "user", db_user.id)
    await s.commit()
    return envelope({"message": "Password changed successfully. Please log in again."})
