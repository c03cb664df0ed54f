"""
User administration and current organization — /api/v1/users, /api/v1/organizations
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api import roles
from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_current_user, get_org_user, require_roles
from grc_api.errors import field_error, validation_error
from grc_api.middleware.audit import audit_log, diff_changes
from grc_api.models.organization import Organization
from grc_api.models.user import User
from grc_api.pagination import Page, order_by, paginate, resolve_order, resolve_sort
from grc_api.responses import envelope, listing
from grc_api.routers.auth import revoke_all_tokens
from grc_api.schemas.auth import OrganizationOut, UserOut
from grc_api.schemas.user import OrganizationUpdate, RoleChange, UserCreate, UserUpdate
from grc_api.services import security

router = APIRouter(prefix="/api/v1/users", tags=["Users"])
org_router = APIRouter(prefix="/api/v1/organizations", tags=["Organizations"])

USER_SORTS = {
    "created_at": User.created_at,
    "email": User.email,
    "first_name": User.first_name,
    "last_name": User.last_name,
    "last_login_at": User.last_login_at,
}


async def _email_taken(s: AsyncSession, email: str, exclude_id: str | None = None) -> bool:
    # login is by email alone, so addresses are kept unique across tenants
    q = select(User.id).where(User.email == email)
    if exclude_id:
        q = q.where(User.id != exclude_id)
    return (await s.execute(q)).first() is not None


# ═══════════════════ USERS ═══════════════════

@router.get("")
async def list_users(
    status: str | None = Query(None),
    role: str | None = Query(None),
    search: str | None = Query(None),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(paginate(100)),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    q = select(User).where(User.org_id == user.org_id)
    if status:
        q = q.where(User.status == status)
    if role:
        q = q.where(User.role == role)
    if search:
        pattern = f"%{search.lower()}%"
        q = q.where(or_(
            func.lower(User.email).like(pattern),
            func.lower(User.first_name).like(pattern),
            func.lower(User.last_name).like(pattern),
        ))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
    col = resolve_sort(sort, USER_SORTS, "created_at")
    q = page.apply(q.order_by(order_by(col, resolve_order(order, "desc")), User.id))
    rows = (await s.execute(q)).scalars().all()
    return listing([UserOut.model_validate(u) for u in rows], total, page.page, page.per_page)


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    target = await get_org_user(s, user_id, user.org_id)
    return envelope(UserOut.model_validate(target))


@router.post("", status_code=201)
async def create_user(
    body: UserCreate,
    user: CurrentUser = Depends(require_roles(*roles.USER_CREATE)),
    s: AsyncSession = Depends(get_session),
):
    email = body.email.strip().lower()
    if not security.is_valid_email(email):
        raise field_error("email", "must be a valid email address")
    if body.role not in roles.ROLES:
        raise field_error("role", f"must be one of: {', '.join(roles.ROLES)}")
    problems = security.validate_password(body.password)
    if problems:
        raise validation_error("Validation failed", [{"field": "password", "message": p} for p in problems])
    if await _email_taken(s, email):
        raise HTTPException(409, "Email already registered")

    new_user = User(
        org_id=user.org_id,
        email=email,
        password_hash=security.hash_password(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
        status="active",
    )
    s.add(new_user)
    await s.flush()
    await audit_log(s, "user.created", "user", new_user.id, {"email": email, "role": body.role})
    await s.commit()
    await s.refresh(new_user)
    return envelope(UserOut.model_validate(new_user))


@router.put("/{user_id}")
async def update_user(
    user_id: str,
    body: UserUpdate,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    if user_id != user.user_id and user.role not in roles.USER_UPDATE:
        raise HTTPException(403, "Insufficient permissions")
    target = await get_org_user(s, user_id, user.org_id)

    data = body.model_dump(exclude_unset=True, exclude_none=True)
    if "email" in data:
        data["email"] = data["email"].strip().lower()
        if not security.is_valid_email(data["email"]):
            raise field_error("email", "must be a valid email address")
        if await _email_taken(s, data["email"], exclude_id=target.id):
            raise HTTPException(409, "Email already registered")

    old = {k: getattr(target, k) for k in data}
    for k, v in data.items():
        setattr(target, k, v)
    changes = diff_changes(old, data)
    if changes:
        await audit_log(s, "user.updated", "user", target.id, {"changes": changes})
    await s.commit()
    await s.refresh(target)
    return envelope(UserOut.model_validate(target))


@router.post("/{user_id}/deactivate")
async def deactivate_user(
    user_id: str,
    user: CurrentUser = Depends(require_roles(*roles.ADMIN)),
    s: AsyncSession = Depends(get_session),
):
    if user_id == user.user_id:
        raise HTTPException(422, "Cannot deactivate your own account")
    target = await get_org_user(s, user_id, user.org_id)
    if target.status == "deactivated":
        raise HTTPException(422, "User is already deactivated")

    target.status = "deactivated"
    await revoke_all_tokens(s, target.id)
    await audit_log(s, "user.deactivated", "user", target.id, {"email": target.email})
    await s.commit()
    await s.refresh(target)
    return envelope(UserOut.model_validate(target))


@router.post("/{user_id}/reactivate")
async def reactivate_user(
    user_id: str,
    user: CurrentUser = Depends(require_roles(*roles.ADMIN)),
    s: AsyncSession = Depends(get_session),
):
    target = await get_org_user(s, user_id, user.org_id)
    if target.status != "deactivated":
        raise HTTPException(422, "Only deactivated users can be reactivated")

    target.status = "active"
    await audit_log(s, "user.reactivated", "user", target.id, {"email": target.email})
    await s.commit()
    await s.refresh(target)
    return envelope(UserOut.model_validate(target))


@router.put("/{user_id}/role")
async def change_role(
    user_id: str,
    body: RoleChange,
    user: CurrentUser = Depends(require_roles(*roles.ADMIN)),
    s: AsyncSession = Depends(get_session),
):
    if body.role not in roles.ROLES:
        raise field_error("role", f"must be one of: {', '.join(roles.ROLES)}")
    if user_id == user.user_id:
        raise HTTPException(422, "Cannot change your own role")
    target = await get_org_user(s, user_id, user.org_id)
    if target.role == body.role:
        raise HTTPException(422, f"User already has role '{body.role}'")

    old_role = target.role
    target.role = body.role
    await audit_log(s, "user.role_assigned", "user", target.id, {"old_role": old_role, "new_role": body.role})
    await s.commit()
    await s.refresh(target)
    return envelope(UserOut.model_validate(target))


# ═══════════════════ ORGANIZATION ═══════════════════

async def _current_org(s: AsyncSession, org_id: str) -> Organization:
    org = await s.get(Organization, org_id)
    if org is None:
        raise HTTPException(404, "Organization not found")
    return org


@org_router.get("/current")
async def get_organization(
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    return envelope(OrganizationOut.model_validate(await _current_org(s, user.org_id)))


@org_router.put("/current")
async def update_organization(
    body: OrganizationUpdate,
    user: CurrentUser = Depends(require_roles(*roles.ADMIN)),
    s: AsyncSession = Depends(get_session),
):
    org = await _current_org(s, user.org_id)
    data = body.model_dump(exclude_unset=True)
    changes = {}
    if data.get("name") is not None and data["name"] != org.name:
        changes["name"] = {"old": org.name, "new": data["name"]}
        org.name = data["name"]
    if "domain" in data and data["domain"] != org.domain:
        changes["domain"] = {"old": org.domain, "new": data["domain"]}
        org.domain = data["domain"]
    if data.get("settings"):
        # merged key-wise, never replaced
        org.settings = {**(org.settings or {}), **data["settings"]}
        changes["settings"] = {"merged_keys": sorted(data["settings"])}

    if changes:
        await audit_log(s, "org.updated", "organization", org.id, {"changes": changes})
    await s.commit()
    await s.refresh(org)
    return envelope(OrganizationOut.model_validate(org))
