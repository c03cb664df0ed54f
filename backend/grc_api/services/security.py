"""
Credentials and tokens.

- Passwords: bcrypt with the configured cost.
- Access tokens: HS256 JWT, 15 minutes, claims sub/org/email/role/type.
- Refresh tokens: opaque random strings; only their SHA-256 digest is stored.
"""
from __future__ import annotations

import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from grc_api.config import settings

logger = logging.getLogger(__name__)

PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_BYTES = 72  # bcrypt input limit

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")
EMAIL_MAX_LENGTH = 255

JWT_ALGORITHM = "HS256"


# ═══════════════════════════════════════════════
# PASSWORDS
# ═══════════════════════════════════════════════

def validate_password(password: str) -> list[str]:
    """Return a list of rule violations; empty means the password is acceptable."""
    problems = []
    if len(password) < PASSWORD_MIN_LENGTH:
        problems.append(f"must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        problems.append(f"must be at most {PASSWORD_MAX_BYTES} bytes")
    if not any(c.isupper() for c in password):
        problems.append("must contain an uppercase letter")
    if not any(c.islower() for c in password):
        problems.append("must contain a lowercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("must contain a digit")
    if not any(not c.isalnum() and not c.isspace() for c in password):
        problems.append("must contain a symbol")
    return problems


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode("ascii")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("ascii"))
    except ValueError:
        return False


def is_valid_email(email: str) -> bool:
    return len(email) <= EMAIL_MAX_LENGTH and EMAIL_RE.match(email) is not None


def slugify(name: str) -> str:
    """Lower-case, non-alphanumeric runs collapsed to a single hyphen, trimmed."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


# ═══════════════════════════════════════════════
# TOKENS
# ═══════════════════════════════════════════════

@dataclass
class TokenClaims:
    user_id: str
    org_id: str
    email: str
    role: str


class TokenError(Exception):
    pass


def create_access_token(claims: TokenClaims) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": claims.user_id,
        "org": claims.org_id,
        "email": claims.email,
        "role": claims.role,
        "type": "access",
        "iss": settings.JWT_ISSUER,
        "iat": now,
        "exp": now + timedelta(minutes=settings.ACCESS_TOKEN_TTL_MINUTES),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> TokenClaims:
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
            options={"require": ["sub", "exp", "iat"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.debug("Rejected access token: %s", exc)
        raise TokenError("Invalid token") from exc

    if payload.get("type") != "access":
        raise TokenError("Invalid token type")
    return TokenClaims(
        user_id=payload["sub"],
        org_id=payload.get("org", ""),
        email=payload.get("email", ""),
        role=payload.get("role", ""),
    )


def access_token_ttl_seconds() -> int:
    return settings.ACCESS_TOKEN_TTL_MINUTES * 60


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def refresh_token_expiry(now: datetime) -> datetime:
    return now + timedelta(days=settings.REFRESH_TOKEN_TTL_DAYS)
