"""
Monitoring analytics: control health, compliance posture, dashboard summary
and the alert work queue. Read-only.

A control's health comes from its most recent test result:
pass → healthy, fail → failing, error → error, warning → warning,
no result → untested.
"""
from __future__ import annotations

from datetime import datetime, time, timedelta

from sqlalchemy import case, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.models.alert import ACTIVE_ALERT_STATUSES, ALERT_SEVERITIES, Alert
from grc_api.models.base import utcnow
from grc_api.models.control import Control, ControlMapping
from grc_api.models.framework import Framework, FrameworkVersion, OrgFramework, Requirement
from grc_api.models.test import Test, TestResult, TestRun
from grc_api.models.user import User
from grc_api.schemas.common import iso

HEALTH_BY_RESULT = {
    "pass": "healthy",
    "fail": "failing",
    "error": "error",
    "warning": "warning",
}
HEALTH_STATES = ("healthy", "failing", "error", "warning", "untested")
# heat-map order: worst first
HEALTH_ORDER = {"failing": 0, "error": 1, "warning": 2, "untested": 3, "healthy": 4}

SEVERITY_RANK = {sev: i for i, sev in enumerate(ALERT_SEVERITIES)}
QUEUES = {
    "active": ACTIVE_ALERT_STATUSES,
    "resolved": ("resolved",),
    "suppressed": ("suppressed",),
    "closed": ("closed",),
    "all": None,
}


def health_status(result_status: str | None) -> str:
    if result_status is None:
        return "untested"
    return HEALTH_BY_RESULT.get(result_status, "untested")


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


async def latest_results(s: AsyncSession, org_id: str, control_ids: list[str] | None = None) -> dict[str, TestResult]:
    """Most recent result per control (newest ``created_at``)."""
    ranked = (
        select(
            TestResult.id.label("id"),
            func.row_number().over(
                partition_by=TestResult.control_id,
                order_by=(TestResult.created_at.desc(), TestResult.id.desc()),
            ).label("rn"),
        )
        .where(TestResult.org_id == org_id)
    )
    if control_ids is not None:
        if not control_ids:
            return {}
        ranked = ranked.where(TestResult.control_id.in_(control_ids))
    ranked = ranked.subquery()
    rows = (await s.execute(
        select(TestResult).join(ranked, ranked.c.id == TestResult.id).where(ranked.c.rn == 1)
    )).scalars().all()
    return {r.control_id: r for r in rows}


async def latest_control_health(s: AsyncSession, org_id: str, control_id: str) -> str:
    latest = await latest_results(s, org_id, [control_id])
    result = latest.get(control_id)
    return health_status(result.status if result else None)


# ──────────────────────────────────────────────
# Control heat-map
# ──────────────────────────────────────────────

async def control_heatmap(s: AsyncSession, org_id: str, category: str | None = None) -> dict:
    q = select(Control).where(Control.org_id == org_id, Control.status == "active")
    if category:
        q = q.where(Control.category == category)
    controls = (await s.execute(q)).scalars().all()
    ids = [c.id for c in controls]
    latest = await latest_results(s, org_id, ids)

    alert_counts = dict((await s.execute(
        select(Alert.control_id, func.count())
        .where(Alert.org_id == org_id, Alert.status.in_(ACTIVE_ALERT_STATUSES), Alert.control_id.in_(ids))
        .group_by(Alert.control_id)
    )).all()) if ids else {}
    test_counts = dict((await s.execute(
        select(Test.control_id, func.count())
        .where(Test.org_id == org_id, Test.status != "deprecated", Test.control_id.in_(ids))
        .group_by(Test.control_id)
    )).all()) if ids else {}

    summary = {"total_controls": len(controls), **{state: 0 for state in HEALTH_STATES}}
    items = []
    for ctrl in controls:
        result = latest.get(ctrl.id)
        health = health_status(result.status if result else None)
        summary[health] += 1
        items.append({
            "id": ctrl.id,
            "identifier": ctrl.identifier,
            "title": ctrl.title,
            "category": ctrl.category,
            "health_status": health,
            "active_alerts": alert_counts.get(ctrl.id, 0),
            "tests_count": test_counts.get(ctrl.id, 0),
            "latest_result": {
                "status": result.status,
                "severity": result.severity,
                "message": result.message,
                "tested_at": iso(result.created_at),
            } if result else None,
        })
    items.sort(key=lambda i: (HEALTH_ORDER[i["health_status"]], i["identifier"]))
    return {"summary": summary, "controls": items}


# ──────────────────────────────────────────────
# Compliance posture
# ──────────────────────────────────────────────

async def compliance_posture(s: AsyncSession, org_id: str) -> dict:
    """Per active framework: passing distinct mapped controls / all distinct mapped controls."""
    active = (await s.execute(
        select(OrgFramework, Framework, FrameworkVersion)
        .join(Framework, Framework.id == OrgFramework.framework_id)
        .join(FrameworkVersion, FrameworkVersion.id == OrgFramework.active_version_id)
        .where(OrgFramework.org_id == org_id, OrgFramework.status == "active")
        .order_by(Framework.name)
    )).all()

    mapped_by_version: dict[str, set[str]] = {}
    for of, _, _ in active:
        mapped_by_version[of.active_version_id] = set((await s.execute(
            select(distinct(ControlMapping.control_id))
            .join(Requirement, Requirement.id == ControlMapping.requirement_id)
            .where(ControlMapping.org_id == org_id, Requirement.framework_version_id == of.active_version_id)
        )).scalars().all())
    all_ids = sorted(set().union(*mapped_by_version.values())) if mapped_by_version else []
    latest = await latest_results(s, org_id, all_ids)

    frameworks, total_passing, total_mapped = [], 0, 0
    for of, fw, version in active:
        mapped = mapped_by_version[of.active_version_id]
        statuses = [latest[c].status if c in latest else None for c in mapped]
        passing = statuses.count("pass")
        failing = statuses.count("fail")
        untested = statuses.count(None)
        total_passing += passing
        total_mapped += len(mapped)
        frameworks.append({
            "framework_id": fw.id,
            "framework_name": fw.name,
            "framework_version": version.version,
            "org_framework_id": of.id,
            "total_mapped_controls": len(mapped),
            "passing": passing,
            "failing": failing,
            "untested": untested,
            "posture_score": _pct(passing, len(mapped)),
        })
    return {"overall_score": _pct(total_passing, total_mapped), "frameworks": frameworks}


# ──────────────────────────────────────────────
# Dashboard summary
# ──────────────────────────────────────────────

async def monitoring_summary(s: AsyncSession, org_id: str) -> dict:
    now = utcnow()
    heat = await control_heatmap(s, org_id)
    hs = heat["summary"]
    controls = {
        "total_active": hs["total_controls"],
        "healthy": hs["healthy"],
        "failing": hs["failing"] + hs["error"],
        "untested": hs["untested"],
        "health_rate": _pct(hs["healthy"], hs["total_controls"]),
    }

    active_tests = (await s.execute(
        select(func.count(Test.id)).where(Test.org_id == org_id, Test.status == "active")
    )).scalar() or 0
    last_run = (await s.execute(
        select(TestRun).where(TestRun.org_id == org_id).order_by(TestRun.created_at.desc(), TestRun.run_number.desc()).limit(1)
    )).scalar_one_or_none()
    passed_24h, total_24h = (await s.execute(
        select(
            func.coalesce(func.sum(case((TestResult.status == "pass", 1), else_=0)), 0),
            func.count(TestResult.id),
        ).where(TestResult.org_id == org_id, TestResult.created_at >= now - timedelta(hours=24))
    )).one()
    tests: dict = {"total_active": active_tests, "pass_rate_24h": _pct(int(passed_24h), total_24h)}
    if last_run is not None:
        tests["last_run"] = {
            "run_number": last_run.run_number,
            "status": last_run.status,
            "completed_at": iso(last_run.completed_at),
            "passed": last_run.passed,
            "failed": last_run.failed,
            "errors": last_run.errors,
        }

    by_status = dict((await s.execute(
        select(Alert.status, func.count()).where(Alert.org_id == org_id).group_by(Alert.status)
    )).all())
    by_severity = {sev: 0 for sev in ALERT_SEVERITIES}
    for sev, n in (await s.execute(
        select(Alert.severity, func.count())
        .where(Alert.org_id == org_id, Alert.status.in_(ACTIVE_ALERT_STATUSES))
        .group_by(Alert.severity)
    )).all():
        by_severity[sev] = n
    sla_breached = (await s.execute(
        select(func.count(Alert.id)).where(
            Alert.org_id == org_id, Alert.sla_breached.is_(True), Alert.status.not_in(("resolved", "closed")),
        )
    )).scalar() or 0
    resolved_today = (await s.execute(
        select(func.count(Alert.id)).where(
            Alert.org_id == org_id, Alert.status == "resolved",
            Alert.resolved_at >= datetime.combine(now.date(), time.min),
        )
    )).scalar() or 0
    alerts = {
        "open": by_status.get("open", 0),
        "acknowledged": by_status.get("acknowledged", 0),
        "in_progress": by_status.get("in_progress", 0),
        "sla_breached": sla_breached,
        "resolved_today": resolved_today,
        "by_severity": by_severity,
    }

    posture = await compliance_posture(s, org_id)
    return {
        "controls": controls,
        "tests": tests,
        "alerts": alerts,
        "recent_activity": await _recent_activity(s, org_id),
        "overall_posture_score": posture["overall_score"],
    }


async def _recent_activity(s: AsyncSession, org_id: str, limit: int = 10) -> list[dict]:
    alerts = (await s.execute(
        select(Alert).where(Alert.org_id == org_id).order_by(Alert.created_at.desc()).limit(5)
    )).scalars().all()
    runs = (await s.execute(
        select(TestRun)
        .where(TestRun.org_id == org_id, TestRun.status == "completed")
        .order_by(TestRun.completed_at.desc())
        .limit(5)
    )).scalars().all()
    events = [
        (a.created_at, {
            "type": "alert_created", "alert_number": a.alert_number, "title": a.title,
            "severity": a.severity, "timestamp": iso(a.created_at),
        })
        for a in alerts
    ] + [
        (r.completed_at, {
            "type": "test_run_completed", "run_number": r.run_number, "title": "Test run",
            "timestamp": iso(r.completed_at),
        })
        for r in runs if r.completed_at
    ]
    events.sort(key=lambda e: e[0], reverse=True)
    return [e for _, e in events[:limit]]


# ──────────────────────────────────────────────
# Alert queue
# ──────────────────────────────────────────────

async def alert_queue(s: AsyncSession, org_id: str, queue: str, offset: int, limit: int) -> tuple[dict, list[dict], int]:
    """Alerts of ``queue`` ordered by severity, then SLA deadline (none last), then age."""
    org = Alert.org_id == org_id
    counts = dict((await s.execute(
        select(Alert.status, func.count()).where(org).group_by(Alert.status)
    )).all())
    breached = (await s.execute(
        select(func.count(Alert.id)).where(
            org, Alert.sla_breached.is_(True), Alert.status.not_in(("resolved", "closed")),
        )
    )).scalar() or 0
    summary = {
        "active": sum(counts.get(st, 0) for st in ACTIVE_ALERT_STATUSES),
        "resolved": counts.get("resolved", 0),
        "suppressed": counts.get("suppressed", 0),
        "closed": counts.get("closed", 0),
        "sla_breached": breached,
    }

    statuses = QUEUES.get(queue, ACTIVE_ALERT_STATUSES)
    q = select(Alert).where(org)
    if statuses is not None:
        q = q.where(Alert.status.in_(statuses))
    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0

    severity_rank = case(SEVERITY_RANK, value=Alert.severity, else_=len(SEVERITY_RANK))
    q = (
        q.add_columns(Control.identifier, Test.identifier, User)
        .outerjoin(Control, Control.id == Alert.control_id)
        .outerjoin(Test, Test.id == Alert.test_id)
        .outerjoin(User, User.id == Alert.assigned_to)
        .order_by(
            severity_rank,
            case((Alert.sla_deadline.is_(None), 1), else_=0),
            Alert.sla_deadline.asc(),
            Alert.created_at.asc(),
        )
        .offset(offset)
        .limit(limit)
    )
    now = utcnow()
    items = []
    for alert, control_identifier, test_identifier, assignee in (await s.execute(q)).all():
        item = {
            "id": alert.id,
            "alert_number": alert.alert_number,
            "title": alert.title,
            "severity": alert.severity,
            "status": alert.status,
            "control_identifier": control_identifier,
            "test_identifier": test_identifier,
            "assigned_to_name": assignee.full_name if assignee else None,
            "sla_deadline": iso(alert.sla_deadline),
            "sla_breached": alert.sla_breached,
            "created_at": iso(alert.created_at),
        }
        if alert.sla_deadline is not None:
            item["hours_remaining"] = round((alert.sla_deadline - now).total_seconds() / 3600, 1)
        items.append(item)
    return summary, items, total
