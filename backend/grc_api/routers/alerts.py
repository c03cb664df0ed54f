"""
Alerts — /api/v1/alerts

Lifecycle:  open → acknowledged → in_progress → resolved → closed
            any active state → suppressed | closed;  resolved | suppressed | closed → open

Resolution and suppression have dedicated endpoints because they carry
required fields. Reopening clears both resolution and suppression.
"""
from datetime import datetime, timedelta

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api import roles
from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_current_user, get_owned, require_roles
from grc_api.middleware.audit import audit_log
from grc_api.models.alert import ALERT_STATUSES, DELIVERY_CHANNELS, Alert, AlertRule
from grc_api.models.base import as_naive_utc, utcnow
from grc_api.models.control import Control
from grc_api.models.test import Test
from grc_api.models.user import User
from grc_api.pagination import Page, order_by, paginate, resolve_order, resolve_sort
from grc_api.responses import envelope, listing
from grc_api.schemas.alert import (
    AlertAssign, AlertClose, AlertDetailOut, AlertOut, AlertRedeliver, AlertResolve,
    AlertSuppress, ControlRef, TestDelivery, TestRef,
)
from grc_api.schemas.common import StatusChange, iso
from grc_api.services.lifecycle import ALERT_TRANSITIONS, can_transition, ensure_transition
from grc_api.services.notifications import (
    ALLOWED_HEADERS_HINT, DeliveryError, Notifier, disallowed_headers, get_notifier, is_https,
)
from grc_api.services.refs import user_refs

router = APIRouter(prefix="/api/v1/alerts", tags=["Alerts"])

RESOLUTION_NOTES_MAX = 10000
SUPPRESSION_REASON_MIN = 20
SUPPRESSION_REASON_MAX = 5000
MAX_SUPPRESSION = timedelta(days=90)
TEST_DELIVERY_CHANNELS = ("slack", "email", "webhook")
DEDICATED_ENDPOINTS = {"resolved": "resolve", "suppressed": "suppress"}

ALERT_SORTS = {
    "created_at": Alert.created_at,
    "alert_number": Alert.alert_number,
    "severity": Alert.severity,
    "status": Alert.status,
    "sla_deadline": Alert.sla_deadline,
    "updated_at": Alert.updated_at,
}


def _alert_fields(alert: Alert, control: Control | None, test: Test | None, refs: dict) -> dict:
    hours_remaining = None
    if alert.sla_deadline is not None and alert.status not in ("resolved", "closed"):
        hours_remaining = round((alert.sla_deadline - utcnow()).total_seconds() / 3600, 1)
    return dict(
        id=alert.id,
        alert_number=alert.alert_number,
        title=alert.title,
        description=alert.description,
        severity=alert.severity,
        status=alert.status,
        control=ControlRef(id=control.id, identifier=control.identifier, title=control.title) if control else None,
        test=TestRef(id=test.id, identifier=test.identifier, title=test.title) if test else None,
        assigned_to=refs.get(alert.assigned_to),
        sla_deadline=alert.sla_deadline,
        sla_breached=alert.sla_breached,
        hours_remaining=hours_remaining,
        created_at=alert.created_at,
        updated_at=alert.updated_at,
    )


async def _alert_detail(s: AsyncSession, alert: Alert) -> AlertDetailOut:
    control = await s.get(Control, alert.control_id)
    test = await s.get(Test, alert.test_id) if alert.test_id else None
    rule = await s.get(AlertRule, alert.alert_rule_id) if alert.alert_rule_id else None
    refs = await user_refs(s, alert.org_id, [alert.assigned_to, alert.assigned_by, alert.resolved_by])
    return AlertDetailOut(
        **_alert_fields(alert, control, test, refs),
        test_result_id=alert.test_result_id,
        alert_rule={"id": rule.id, "name": rule.name} if rule else None,
        assigned_at=alert.assigned_at,
        assigned_by=refs.get(alert.assigned_by),
        resolved_by=refs.get(alert.resolved_by),
        resolved_at=alert.resolved_at,
        resolution_notes=alert.resolution_notes,
        suppressed_until=alert.suppressed_until,
        suppression_reason=alert.suppression_reason,
        delivery_channels=alert.delivery_channels or [],
        delivered_at=alert.delivered_at or {},
        tags=alert.tags or [],
        metadata=alert.metadata_ or {},
    )


def _split(value: str | None) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


# ═══════════════════ LIST / DETAIL ═══════════════════

@router.get("")
async def list_alerts(
    status: str | None = Query(None, description="Comma-separated"),
    severity: str | None = Query(None, description="Comma-separated"),
    control_id: str | None = Query(None),
    test_id: str | None = Query(None),
    assigned_to: str | None = Query(None, description="User id or 'unassigned'"),
    sla_breached: bool | None = Query(None),
    search: str | None = Query(None),
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(paginate(100)),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    q = select(Alert).where(Alert.org_id == user.org_id)
    if status:
        q = q.where(Alert.status.in_(_split(status)))
    if severity:
        q = q.where(Alert.severity.in_(_split(severity)))
    if control_id:
        q = q.where(Alert.control_id == control_id)
    if test_id:
        q = q.where(Alert.test_id == test_id)
    if assigned_to == "unassigned":
        q = q.where(Alert.assigned_to.is_(None))
    elif assigned_to:
        q = q.where(Alert.assigned_to == assigned_to)
    if sla_breached is not None:
        q = q.where(Alert.sla_breached.is_(sla_breached))
    if search:
        pattern = f"%{search.lower()}%"
        q = q.where(or_(
            func.lower(Alert.title).like(pattern),
            func.lower(func.coalesce(Alert.description, "")).like(pattern),
        ))
    if date_from:
        q = q.where(Alert.created_at >= as_naive_utc(date_from))
    if date_to:
        q = q.where(Alert.created_at <= as_naive_utc(date_to))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    col = resolve_sort(sort, ALERT_SORTS, "created_at")
    q = (
        q.add_columns(Control, Test)
        .outerjoin(Control, Control.id == Alert.control_id)
        .outerjoin(Test, Test.id == Alert.test_id)
        .order_by(order_by(col, resolve_order(order, "desc")), Alert.alert_number.desc())
    )
    rows = (await s.execute(page.apply(q))).all()
    refs = await user_refs(s, user.org_id, [a.assigned_to for a, _, _ in rows])
    items = [AlertOut(**_alert_fields(a, c, t, refs)) for a, c, t in rows]
    return listing(items, total, page.page, page.per_page)


# ═══════════════════ TEST DELIVERY ═══════════════════

@router.post("/test-delivery")
async def send_test_delivery(
    body: TestDelivery,
    user: CurrentUser = Depends(require_roles(*roles.ALERT_TEST_DELIVERY)),
    notifier: Notifier = Depends(get_notifier),
    s: AsyncSession = Depends(get_session),
):
    if not body.channel:
        raise HTTPException(400, "channel is required")
    if body.channel not in TEST_DELIVERY_CHANNELS:
        raise HTTPException(400, "Invalid channel. Must be: slack, email, or webhook")

    if body.channel == "slack":
        if not body.slack_webhook_url:
            raise HTTPException(400, "slack_webhook_url is required for Slack delivery")
        if not is_https(body.slack_webhook_url):
            raise HTTPException(400, "Webhook URL must use HTTPS")
    elif body.channel == "email":
        if not body.email_recipients:
            raise HTTPException(400, "email_recipients is required for email delivery")
    else:
        if not body.webhook_url:
            raise HTTPException(400, "webhook_url is required for webhook delivery")
        if not is_https(body.webhook_url):
            raise HTTPException(400, "Webhook URL must use HTTPS")
        bad = disallowed_headers(body.webhook_headers)
        if bad:
            raise HTTPException(400, f"Header '{bad[0]}' is not allowed. Allowed: {ALLOWED_HEADERS_HINT}")

    try:
        await notifier.send_test(body.channel, body.model_dump())
    except DeliveryError as exc:
        raise HTTPException(422, f"Failed to deliver to {body.channel}: {exc}")

    await audit_log(s, "alert.test_delivery", "alert", None, {"channel": body.channel})
    await s.commit()
    return envelope({
        "channel": body.channel,
        "success": True,
        "message": "Test notification delivered successfully.",
    })


@router.get("/{alert_id}")
async def get_alert(
    alert_id: str,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    alert = await get_owned(s, Alert, alert_id, user.org_id, "Alert")
    return envelope(await _alert_detail(s, alert))


# ═══════════════════ LIFECYCLE ═══════════════════

@router.put("/{alert_id}/status")
async def change_alert_status(
    alert_id: str,
    body: StatusChange,
    user: CurrentUser = Depends(require_roles(*roles.ALERT_STATUS)),
    s: AsyncSession = Depends(get_session),
):
    if body.status not in ALERT_STATUSES:
        raise HTTPException(400, "Invalid status")
    if body.status == "closed" and user.role not in roles.ALERT_CLOSE:
        raise HTTPException(403, "Insufficient permissions")

    alert = await get_owned(s, Alert, alert_id, user.org_id, "Alert")
    ensure_transition(ALERT_TRANSITIONS, alert.status, body.status)
    if body.status in DEDICATED_ENDPOINTS:
        raise HTTPException(422, f"Use the {DEDICATED_ENDPOINTS[body.status]} endpoint to set status '{body.status}'")

    old_status = alert.status
    alert.status = body.status
    if body.status == "open":
        alert.clear_resolution()
        alert.clear_suppression()
    await audit_log(s, "alert.status_changed", "alert", alert.id, {
        "alert_number": alert.alert_number, "old_status": old_status, "new_status": body.status,
    })
    await s.commit()
    return envelope({
        "id": alert.id,
        "alert_number": alert.alert_number,
        "status": body.status,
        "previous_status": old_status,
        "message": f"Alert {body.status}.",
    })


@router.put("/{alert_id}/assign")
async def assign_alert(
    alert_id: str,
    body: AlertAssign,
    user: CurrentUser = Depends(require_roles(*roles.ALERT_ASSIGN)),
    s: AsyncSession = Depends(get_session),
):
    if not body.assigned_to:
        raise HTTPException(400, "assigned_to is required")
    alert = await get_owned(s, Alert, alert_id, user.org_id, "Alert")
    if alert.status in ("closed", "resolved"):
        raise HTTPException(422, f"Cannot assign alert in '{alert.status}' status")
    assignee = (await s.execute(
        select(User).where(User.id == body.assigned_to, User.org_id == user.org_id)
    )).scalar_one_or_none()
    if assignee is None:
        raise HTTPException(404, "User not found in this organization")

    now = utcnow()
    old_status = alert.status
    alert.assigned_to = assignee.id
    alert.assigned_at = now
    alert.assigned_by = user.user_id
    if alert.status == "open":
        alert.status = "acknowledged"
    await audit_log(s, "alert.assigned", "alert", alert.id, {
        "alert_number": alert.alert_number, "assigned_to": assignee.id, "assigned_by": user.user_id,
    })
    await s.commit()
    return envelope({
        "id": alert.id,
        "alert_number": alert.alert_number,
        "status": alert.status,
        "previous_status": old_status,
        "assigned_to": {"id": assignee.id, "name": assignee.full_name, "email": assignee.email},
        "assigned_at": iso(now),
        "assigned_by": {"id": user.user_id},
        "message": f"Alert assigned to {assignee.full_name}.",
    })


@router.put("/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    body: AlertResolve,
    user: CurrentUser = Depends(require_roles(*roles.ALERT_RESOLVE)),
    s: AsyncSession = Depends(get_session),
):
    notes = (body.resolution_notes or "").strip()
    if not notes:
        raise HTTPException(400, "resolution_notes is required")
    if len(notes) > RESOLUTION_NOTES_MAX:
        raise HTTPException(400, "Resolution notes must be 10000 characters or less")

    alert = await get_owned(s, Alert, alert_id, user.org_id, "Alert")
    if not can_transition(ALERT_TRANSITIONS, alert.status, "resolved"):
        raise HTTPException(422, f"Cannot resolve alert in '{alert.status}' status")

    now = utcnow()
    old_status = alert.status
    alert.status = "resolved"
    alert.resolved_by = user.user_id
    alert.resolved_at = now
    alert.resolution_notes = notes
    await audit_log(s, "alert.resolved", "alert", alert.id, {
        "alert_number": alert.alert_number, "resolution_notes": notes,
    })
    await s.commit()
    return envelope({
        "id": alert.id,
        "alert_number": alert.alert_number,
        "status": "resolved",
        "previous_status": old_status,
        "resolved_by": {"id": user.user_id},
        "resolved_at": iso(now),
        "resolution_notes": notes,
        "message": "Alert resolved. Will be verified on next test run.",
    })


@router.put("/{alert_id}/suppress")
async def suppress_alert(
    alert_id: str,
    body: AlertSuppress,
    user: CurrentUser = Depends(require_roles(*roles.ALERT_SUPPRESS)),
    s: AsyncSession = Depends(get_session),
):
    if body.suppressed_until is None or not body.suppression_reason:
        raise HTTPException(400, "suppressed_until and suppression_reason are required")
    until = as_naive_utc(body.suppressed_until)
    now = utcnow()
    if until <= now:
        raise HTTPException(422, "suppressed_until must be in the future")
    if until > now + MAX_SUPPRESSION:
        raise HTTPException(422, "suppressed_until cannot be more than 90 days in the future")
    reason = body.suppression_reason.strip()
    if len(reason) < SUPPRESSION_REASON_MIN:
        raise HTTPException(400, "Suppression reason must be at least 20 characters")
    if len(reason) > SUPPRESSION_REASON_MAX:
        raise HTTPException(400, "Suppression reason must be 5000 characters or less")

    alert = await get_owned(s, Alert, alert_id, user.org_id, "Alert")
    if alert.status == "closed":
        raise HTTPException(422, "Cannot suppress a closed alert")
    ensure_transition(ALERT_TRANSITIONS, alert.status, "suppressed")

    old_status = alert.status
    alert.status = "suppressed"
    alert.suppressed_until = until
    alert.suppression_reason = reason
    await audit_log(s, "alert.suppressed", "alert", alert.id, {
        "alert_number": alert.alert_number, "until": iso(until), "reason": reason,
    })
    await s.commit()
    return envelope({
        "id": alert.id,
        "alert_number": alert.alert_number,
        "status": "suppressed",
        "previous_status": old_status,
        "suppressed_until": iso(until),
        "suppression_reason": reason,
        "message": f"Alert suppressed until {until:%b %d, %Y %H:%M} UTC.",
    })


@router.put("/{alert_id}/close")
async def close_alert(
    alert_id: str,
    body: AlertClose | None = Body(None),
    user: CurrentUser = Depends(require_roles(*roles.ALERT_CLOSE)),
    s: AsyncSession = Depends(get_session),
):
    alert = await get_owned(s, Alert, alert_id, user.org_id, "Alert")
    ensure_transition(ALERT_TRANSITIONS, alert.status, "closed")
    if body and body.resolution_notes is not None and len(body.resolution_notes) > RESOLUTION_NOTES_MAX:
        raise HTTPException(400, "Resolution notes must be 10000 characters or less")

    old_status = alert.status
    alert.status = "closed"
    if body and body.resolution_notes is not None:
        alert.resolution_notes = body.resolution_notes
    await audit_log(s, "alert.closed", "alert", alert.id, {"alert_number": alert.alert_number})
    await s.commit()
    return envelope({
        "id": alert.id,
        "alert_number": alert.alert_number,
        "status": "closed",
        "previous_status": old_status,
        "message": "Alert closed.",
    })


# ═══════════════════ DELIVERY ═══════════════════

@router.post("/{alert_id}/deliver")
async def redeliver_alert(
    alert_id: str,
    body: AlertRedeliver | None = Body(None),
    user: CurrentUser = Depends(require_roles(*roles.ALERT_DELIVERY)),
    notifier: Notifier = Depends(get_notifier),
    s: AsyncSession = Depends(get_session),
):
    channels = list(dict.fromkeys(body.channels)) if body and body.channels else ["in_app"]
    for ch in channels:
        if ch not in DELIVERY_CHANNELS:
            raise HTTPException(400, f"Invalid delivery channel: {ch}")

    alert = await get_owned(s, Alert, alert_id, user.org_id, "Alert")
    rule = await s.get(AlertRule, alert.alert_rule_id) if alert.alert_rule_id else None
    outcomes = await notifier.deliver_alert(alert, rule, channels)

    stamps = {ch: o.delivered_at for ch, o in outcomes.items() if o.delivered_at}
    alert.delivered_at = {**(alert.delivered_at or {}), **stamps}
    await audit_log(s, "alert.redelivered", "alert", alert.id, {
        "alert_number": alert.alert_number, "channels": channels,
    })
    await s.commit()
    return envelope({
        "id": alert.id,
        "alert_number": alert.alert_number,
        "delivery_results": {ch: o.as_dict() for ch, o in outcomes.items()},
        "delivered_at": alert.delivered_at,
        "message": f"Alert re-delivered to {len(channels)} channels.",
    })
