"""
Alert engine — turns a test result into at most one alert.

Enabled rules of the organization are tried in priority order (lowest number
first, then oldest). A rule fires when every populated matcher agrees, the
test has failed ``consecutive_failures`` runs in a row, and the rule has no
open alert for the same control inside its cooldown window. The first rule
that fires wins; later rules are not consulted.

Callers own the transaction: nothing here commits.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.middleware.audit import audit_log
from grc_api.models.alert import ACTIVE_ALERT_STATUSES, Alert, AlertRule
from grc_api.models.base import utcnow
from grc_api.models.control import Control
from grc_api.models.test import Test, TestResult, TestRun

logger = logging.getLogger(__name__)

FAILING_RESULT_STATUSES = ("fail", "error")

TEMPLATE_FIELDS = (
    "{{test.title}}", "{{test.identifier}}", "{{control.identifier}}",
    "{{severity}}", "{{result.message}}",
)


def render_title(template: str | None, test: Test, control: Control | None, result: TestResult) -> str:
    if not template:
        return f"{test.title} failed on {test.identifier}"
    values = {
        "{{test.title}}": test.title,
        "{{test.identifier}}": test.identifier,
        "{{control.identifier}}": control.identifier if control else "",
        "{{severity}}": test.severity,
        "{{result.message}}": result.message or "",
    }
    title = template
    for placeholder in TEMPLATE_FIELDS:
        title = title.replace(placeholder, values[placeholder])
    return title[:500]


def rule_matches(rule: AlertRule, test: Test, result: TestResult) -> bool:
    """Empty matcher lists mean "any"; tags match on overlap."""
    if rule.match_test_types and test.test_type not in rule.match_test_types:
        return False
    if rule.match_severities and test.severity not in rule.match_severities:
        return False
    if rule.match_result_statuses and result.status not in rule.match_result_statuses:
        return False
    if rule.match_control_ids and test.control_id not in rule.match_control_ids:
        return False
    if rule.match_tags and not set(rule.match_tags) & set(test.tags or []):
        return False
    return True


async def _failing_streak_reached(s: AsyncSession, rule: AlertRule, result: TestResult) -> bool:
    needed = rule.consecutive_failures or 1
    if needed <= 1:
        return True
    failing = rule.match_result_statuses or list(FAILING_RESULT_STATUSES)
    recent = (await s.execute(
        select(TestResult.status)
        .join(TestRun, TestRun.id == TestResult.test_run_id)
        .where(TestResult.org_id == result.org_id, TestResult.test_id == result.test_id)
        .order_by(TestRun.run_number.desc())
        .limit(needed)
    )).scalars().all()
    return len(recent) == needed and all(st in failing for st in recent)


async def _in_cooldown(s: AsyncSession, rule: AlertRule, control_id: str, now: datetime) -> bool:
    if not rule.cooldown_minutes:
        return False
    since = now - timedelta(minutes=rule.cooldown_minutes)
    found = (await s.execute(
        select(Alert.id).where(
            Alert.org_id == rule.org_id,
            Alert.alert_rule_id == rule.id,
            Alert.control_id == control_id,
            Alert.status.in_(ACTIVE_ALERT_STATUSES),
            Alert.created_at > since,
        ).limit(1)
    )).first()
    return found is not None


def next_alert_number(org_id: str):
    """Scalar subquery evaluated inside the INSERT."""
    return (
        select(func.coalesce(func.max(Alert.alert_number), 0) + 1)
        .where(Alert.org_id == org_id)
        .scalar_subquery()
    )


async def evaluate_rules(s: AsyncSession, test: Test, result: TestResult) -> tuple[Alert, AlertRule] | None:
    """Generate the alert for ``result`` if a rule fires; returns (alert, rule) or None."""
    rules = (await s.execute(
        select(AlertRule)
        .where(AlertRule.org_id == result.org_id, AlertRule.enabled.is_(True))
        .order_by(AlertRule.priority.asc(), AlertRule.created_at.asc())
    )).scalars().all()
    if not rules:
        return None

    now = utcnow()
    for rule in rules:
        if not rule_matches(rule, test, result):
            continue
        if not await _failing_streak_reached(s, rule, result):
            continue
        if await _in_cooldown(s, rule, result.control_id, now):
            continue
        control = await s.get(Control, result.control_id)
        alert = await _create_alert(s, rule, test, control, result, now)
        return alert, rule
    return None


async def _create_alert(
    s: AsyncSession, rule: AlertRule, test: Test, control: Control | None, result: TestResult, now: datetime,
) -> Alert:
    alert = Alert(
        org_id=result.org_id,
        alert_number=next_alert_number(result.org_id),
        title=render_title(rule.alert_title_template, test, control, result),
        description=result.message,
        severity=rule.alert_severity,
        status="open",
        test_id=test.id,
        test_result_id=result.id,
        control_id=result.control_id,
        alert_rule_id=rule.id,
        sla_deadline=now + timedelta(hours=rule.sla_hours) if rule.sla_hours else None,
        delivery_channels=list(rule.delivery_channels or ["in_app"]),
        delivered_at={},
        tags=list(test.tags or []),
        metadata_={},
        created_at=now,
        updated_at=now,
    )
    if rule.auto_assign_to:
        alert.assigned_to = rule.auto_assign_to
        alert.assigned_at = now
    s.add(alert)
    await s.flush()
    await s.refresh(alert)

    result.alert_generated = True
    result.alert_id = alert.id
    await audit_log(s, "alert.created", "alert", alert.id, {
        "alert_number": alert.alert_number,
        "rule_id": rule.id,
        "test_id": test.id,
        "test_result_id": result.id,
    }, org_id=result.org_id)
    logger.info(
        "Alert #%s generated [org_id=%s rule=%s test=%s]",
        alert.alert_number, result.org_id, rule.name, test.identifier,
    )
    return alert
