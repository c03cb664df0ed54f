"""
Alert rules — /api/v1/alert-rules

Rules are evaluated by priority (lowest first) against every recorded test
result; see services.alert_engine. Deleting a rule keeps the alerts it raised.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api import roles
from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_owned, require_roles
from grc_api.errors import validation_error
from grc_api.middleware.audit import audit_log, diff_changes
from grc_api.models.alert import ALERT_SEVERITIES, DELIVERY_CHANNELS, Alert, AlertRule
from grc_api.models.test import RESULT_STATUSES, TEST_SEVERITIES, TEST_TYPES
from grc_api.models.user import User
from grc_api.pagination import Page, order_by, paginate, resolve_order, resolve_sort
from grc_api.responses import envelope, listing
from grc_api.schemas.alert import AlertRuleCreate, AlertRuleOut, AlertRuleUpdate
from grc_api.services.notifications import ALLOWED_HEADERS_HINT, disallowed_headers, is_https
from grc_api.services.refs import user_refs
from grc_api.validation import check_max_length

router = APIRouter(prefix="/api/v1/alert-rules", tags=["Alert rules"])

NAME_MAX = 255
TITLE_TEMPLATE_MAX = 500

RULE_SORTS = {
    "priority": AlertRule.priority,
    "name": AlertRule.name,
    "alert_severity": AlertRule.alert_severity,
    "created_at": AlertRule.created_at,
}

MATCH_VALUES = {
    "match_test_types": TEST_TYPES,
    "match_severities": TEST_SEVERITIES,
    "match_result_statuses": RESULT_STATUSES,
}

LOWER_BOUNDS = {
    "consecutive_failures": 1,
    "cooldown_minutes": 0,
    "sla_hours": 1,
    "priority": 0,
}


def _check_rule(data: dict) -> None:
    """Validate the fields present in ``data`` (a full create body or a merged update)."""
    if "name" in data and len(data["name"]) > NAME_MAX:
        raise validation_error("Name must be 255 characters or less")
    if "alert_severity" in data and data["alert_severity"] not in ALERT_SEVERITIES:
        raise validation_error("Invalid alert_severity")
    check_max_length("alert_title_template", data.get("alert_title_template"), TITLE_TEMPLATE_MAX)

    for field, allowed in MATCH_VALUES.items():
        for value in data.get(field) or []:
            if value not in allowed:
                raise validation_error(f"Invalid {field} value: {value}")
    for field, low in LOWER_BOUNDS.items():
        if data.get(field) is not None and data[field] < low:
            raise validation_error(f"{field} must be at least {low}")

    if "delivery_channels" in data:
        channels = data["delivery_channels"] or []
        if not channels:
            raise validation_error("At least one delivery channel is required")
        for ch in channels:
            if ch not in DELIVERY_CHANNELS:
                raise validation_error(f"Invalid delivery channel: {ch}")

    for field in ("slack_webhook_url", "webhook_url"):
        if data.get(field) and not is_https(data[field]):
            raise validation_error(f"{field} must use HTTPS")
    bad = disallowed_headers(data.get("webhook_headers"))
    if bad:
        raise validation_error(f"Header '{bad[0]}' is not allowed. Allowed: {ALLOWED_HEADERS_HINT}")


def _check_channel_targets(rule: AlertRule) -> None:
    channels = rule.delivery_channels or []
    if "slack" in channels and not rule.slack_webhook_url:
        raise validation_error("slack_webhook_url is required for the slack channel")
    if "webhook" in channels and not rule.webhook_url:
        raise validation_error("webhook_url is required for the webhook channel")
    if "email" in channels and not rule.email_recipients:
        raise validation_error("email_recipients is required for the email channel")


async def _check_assignee(s: AsyncSession, org_id: str, user_id: str | None) -> None:
    if not user_id:
        return
    found = (await s.execute(
        select(User.id).where(User.id == user_id, User.org_id == org_id)
    )).first()
    if not found:
        raise HTTPException(404, "Auto-assign user not found in this organization")


async def _name_taken(s: AsyncSession, org_id: str, name: str, exclude_id: str | None = None) -> bool:
    q = select(AlertRule.id).where(AlertRule.org_id == org_id, AlertRule.name == name)
    if exclude_id:
        q = q.where(AlertRule.id != exclude_id)
    return (await s.execute(q)).first() is not None


def _rule_out(rule: AlertRule, refs: dict, alerts_generated: int = 0) -> AlertRuleOut:
    return AlertRuleOut(
        id=rule.id,
        name=rule.name,
        description=rule.description,
        enabled=rule.enabled,
        match_test_types=rule.match_test_types or [],
        match_severities=rule.match_severities or [],
        match_result_statuses=rule.match_result_statuses or [],
        match_control_ids=rule.match_control_ids or [],
        match_tags=rule.match_tags or [],
        consecutive_failures=rule.consecutive_failures,
        cooldown_minutes=rule.cooldown_minutes,
        alert_severity=rule.alert_severity,
        alert_title_template=rule.alert_title_template,
        auto_assign_to=refs.get(rule.auto_assign_to),
        sla_hours=rule.sla_hours,
        delivery_channels=rule.delivery_channels or [],
        slack_webhook_url=rule.slack_webhook_url,
        email_recipients=rule.email_recipients or [],
        webhook_url=rule.webhook_url,
        webhook_headers=rule.webhook_headers or {},
        priority=rule.priority,
        alerts_generated=alerts_generated,
        created_by=refs.get(rule.created_by),
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


async def _alert_counts(s: AsyncSession, rule_ids: list[str]) -> dict[str, int]:
    if not rule_ids:
        return {}
    rows = await s.execute(
        select(Alert.alert_rule_id, func.count(Alert.id))
        .where(Alert.alert_rule_id.in_(rule_ids))
        .group_by(Alert.alert_rule_id)
    )
    return dict(rows.all())


async def _rule_detail(s: AsyncSession, rule: AlertRule) -> AlertRuleOut:
    refs = await user_refs(s, rule.org_id, [rule.auto_assign_to, rule.created_by])
    counts = await _alert_counts(s, [rule.id])
    return _rule_out(rule, refs, counts.get(rule.id, 0))


# ═══════════════════ LIST / DETAIL ═══════════════════

@router.get("")
async def list_alert_rules(
    enabled: bool | None = Query(None),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(paginate(100)),
    user: CurrentUser = Depends(require_roles(*roles.ALERT_RULE_VIEW)),
    s: AsyncSession = Depends(get_session),
):
    q = select(AlertRule).where(AlertRule.org_id == user.org_id)
    if enabled is not None:
        q = q.where(AlertRule.enabled.is_(enabled))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    col = resolve_sort(sort, RULE_SORTS, "priority")
    q = page.apply(q.order_by(order_by(col, resolve_order(order, "asc")), AlertRule.created_at))
    rules = (await s.execute(q)).scalars().all()

    refs = await user_refs(s, user.org_id, [u for r in rules for u in (r.auto_assign_to, r.created_by)])
    counts = await _alert_counts(s, [r.id for r in rules])
    items = [_rule_out(r, refs, counts.get(r.id, 0)) for r in rules]
    return listing(items, total, page.page, page.per_page)


@router.get("/{rule_id}")
async def get_alert_rule(
    rule_id: str,
    user: CurrentUser = Depends(require_roles(*roles.ALERT_RULE_VIEW)),
    s: AsyncSession = Depends(get_session),
):
    rule = await get_owned(s, AlertRule, rule_id, user.org_id, "Alert rule")
    return envelope(await _rule_detail(s, rule))


# ═══════════════════ CRUD ═══════════════════

@router.post("", status_code=201)
async def create_alert_rule(
    body: AlertRuleCreate,
    user: CurrentUser = Depends(require_roles(*roles.ALERT_RULE_MANAGE)),
    s: AsyncSession = Depends(get_session),
):
    data = body.model_dump()
    if not data["match_result_statuses"]:
        data["match_result_statuses"] = ["fail"]
    _check_rule(data)
    await _check_assignee(s, user.org_id, body.auto_assign_to)
    if await _name_taken(s, user.org_id, body.name):
        raise HTTPException(409, "Alert rule name already exists in this organization")

    rule = AlertRule(org_id=user.org_id, created_by=user.user_id, **data)
    _check_channel_targets(rule)
    s.add(rule)
    await s.flush()
    await audit_log(s, "alert_rule.created", "alert_rule", rule.id, {
        "name": rule.name, "alert_severity": rule.alert_severity, "priority": rule.priority,
    })
    await s.commit()
    await s.refresh(rule)
    return envelope(await _rule_detail(s, rule))


@router.put("/{rule_id}")
async def update_alert_rule(
    rule_id: str,
    body: AlertRuleUpdate,
    user: CurrentUser = Depends(require_roles(*roles.ALERT_RULE_MANAGE)),
    s: AsyncSession = Depends(get_session),
):
    rule = await get_owned(s, AlertRule, rule_id, user.org_id, "Alert rule")
    nullable = {"description", "alert_title_template", "auto_assign_to", "sla_hours",
                "slack_webhook_url", "webhook_url"}
    data = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None or k in nullable}
    if not data:
        raise validation_error("No fields to update")
    if data.get("match_result_statuses") == []:
        data["match_result_statuses"] = ["fail"]

    _check_rule(data)
    if "auto_assign_to" in data:
        await _check_assignee(s, user.org_id, data["auto_assign_to"])
    if "name" in data and await _name_taken(s, user.org_id, data["name"], exclude_id=rule.id):
        raise HTTPException(409, "Alert rule name already exists in this organization")

    old = {k: getattr(rule, k) for k in data}
    for k, v in data.items():
        setattr(rule, k, v)
    _check_channel_targets(rule)
    changes = diff_changes(old, data)
    if changes:
        await audit_log(s, "alert_rule.updated", "alert_rule", rule.id, {"name": rule.name, "changes": changes})
    await s.commit()
    await s.refresh(rule)
    return envelope(await _rule_detail(s, rule))


@router.delete("/{rule_id}")
async def delete_alert_rule(
    rule_id: str,
    user: CurrentUser = Depends(require_roles(*roles.ALERT_RULE_MANAGE)),
    s: AsyncSession = Depends(get_session),
):
    rule = await get_owned(s, AlertRule, rule_id, user.org_id, "Alert rule")
    rule_name = rule.name
    await s.delete(rule)
    await audit_log(s, "alert_rule.deleted", "alert_rule", rule_id, {"name": rule_name})
    await s.commit()
    return envelope({
        "id": rule_id,
        "message": "Alert rule deleted. Existing alerts preserved.",
    })
