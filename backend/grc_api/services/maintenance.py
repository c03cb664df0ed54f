"""
Periodic alert housekeeping, run by ``scripts/run_maintenance.py``.

    mark_sla_breaches     flag active alerts whose SLA deadline has passed
    expire_suppressions   reopen suppressed alerts whose window has ended
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.middleware.audit import audit_log
from grc_api.models.alert import ACTIVE_ALERT_STATUSES, Alert
from grc_api.models.base import utcnow

logger = logging.getLogger(__name__)


async def mark_sla_breaches(s: AsyncSession, now: datetime | None = None) -> int:
    now = now or utcnow()
    alerts = (await s.execute(
        select(Alert).where(
            Alert.status.in_(ACTIVE_ALERT_STATUSES),
            Alert.sla_breached.is_(False),
            Alert.sla_deadline.is_not(None),
            Alert.sla_deadline < now,
        )
    )).scalars().all()
    for alert in alerts:
        alert.sla_breached = True
        await audit_log(s, "alert.sla_breached", "alert", alert.id,
                        {"alert_number": alert.alert_number}, org_id=alert.org_id)
    await s.commit()
    if alerts:
        logger.info("Marked %d alert(s) as SLA-breached", len(alerts))
    return len(alerts)


async def expire_suppressions(s: AsyncSession, now: datetime | None = None) -> int:
    now = now or utcnow()
    alerts = (await s.execute(
        select(Alert).where(
            Alert.status == "suppressed",
            Alert.suppressed_until.is_not(None),
            Alert.suppressed_until <= now,
        )
    )).scalars().all()
    for alert in alerts:
        alert.status = "open"
        alert.clear_suppression()
        await audit_log(s, "alert.status_changed", "alert", alert.id, {
            "alert_number": alert.alert_number,
            "old_status": "suppressed",
            "new_status": "open",
            "trigger": "suppression_expired",
        }, org_id=alert.org_id)
    await s.commit()
    if alerts:
        logger.info("Reopened %d alert(s) after suppression expired", len(alerts))
    return len(alerts)
