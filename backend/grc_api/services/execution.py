"""
Execution engine API — the calls an external test worker makes.

A run is created ``pending`` (manually through the API or by
``create_scheduled_runs``), claimed by a worker (``pending → running``), fed
one result per test, and finished (``running → completed | failed``).

    run = await claim_run(s, run_id, worker_id="worker-1")
    for test in await run_tests(s, run):
        await record_result(s, run, ResultReport(test_id=test.id, status="pass"), notifier)
    await finish_run(s, run)

``start_run`` leaves the commit to its caller; ``claim_run``,
``record_result``, ``finish_run`` and ``create_scheduled_runs`` are units of
work and commit.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from croniter import croniter
from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.middleware.audit import audit_log
from grc_api.models.alert import Alert, AlertRule
from grc_api.models.base import utcnow
from grc_api.models.test import IN_FLIGHT_RUN_STATUSES, Test, TestResult, TestRun
from grc_api.schemas.test import ResultReport
from grc_api.services.alert_engine import evaluate_rules
from grc_api.services.lifecycle import RUN_TRANSITIONS, ensure_transition
from grc_api.services.notifications import Notifier

logger = logging.getLogger(__name__)

# result status -> run counter
RESULT_COUNTERS = {
    "pass": "passed",
    "fail": "failed",
    "error": "errors",
    "warning": "warnings",
    "skipped": "skipped",
}
FIRST_RUN_DELAY = timedelta(minutes=1)
DEFAULT_CRON_FALLBACK = timedelta(hours=1)
SCHEDULER_BATCH = 100


# ──────────────────────────────────────────────
# Scheduling
# ──────────────────────────────────────────────

def is_valid_cron(expression: str) -> bool:
    return croniter.is_valid(expression)


def compute_next_run(test: Test, base: datetime) -> datetime:
    if test.schedule_interval_min:
        return base + timedelta(minutes=test.schedule_interval_min)
    if test.schedule_cron and croniter.is_valid(test.schedule_cron):
        return croniter(test.schedule_cron, base).get_next(datetime)
    return base + DEFAULT_CRON_FALLBACK


def next_run_number(org_id: str):
    """Scalar subquery evaluated inside the INSERT."""
    return (
        select(func.coalesce(func.max(TestRun.run_number), 0) + 1)
        .where(TestRun.org_id == org_id)
        .scalar_subquery()
    )


async def has_run_in_flight(s: AsyncSession, org_id: str) -> bool:
    found = (await s.execute(
        select(TestRun.id).where(TestRun.org_id == org_id, TestRun.status.in_(IN_FLIGHT_RUN_STATUSES)).limit(1)
    )).first()
    return found is not None


async def start_run(
    s: AsyncSession,
    org_id: str,
    *,
    trigger_type: str,
    test_ids: list[str] | None = None,
    trigger_metadata: dict | None = None,
    triggered_by: str | None = None,
    worker_id: str | None = None,
) -> TestRun:
    """
    Insert a ``pending`` run for ``test_ids`` (or every active test).

    The in-flight check is repeated by the partial unique index on insert,
    so a concurrent run surfaces as 409 either way.
    """
    if await has_run_in_flight(s, org_id):
        raise HTTPException(409, "A test run is already in progress for this organization")

    selected = list(dict.fromkeys(test_ids or []))
    if selected:
        found = set((await s.execute(
            select(Test.id).where(Test.org_id == org_id, Test.id.in_(selected))
        )).scalars().all())
        for tid in selected:
            if tid not in found:
                raise HTTPException(422, f"Test {tid} not found")
        total = len(selected)
    else:
        total = (await s.execute(
            select(func.count(Test.id)).where(Test.org_id == org_id, Test.status == "active")
        )).scalar() or 0
    if total == 0:
        raise HTTPException(400, "No tests to run")

    run = TestRun(
        org_id=org_id,
        run_number=next_run_number(org_id),
        status="pending",
        trigger_type=trigger_type,
        trigger_metadata=trigger_metadata or {},
        test_ids=selected,
        total_tests=total,
        triggered_by=triggered_by,
        worker_id=worker_id,
    )
    try:
        async with s.begin_nested():
            s.add(run)
            await s.flush()
    except IntegrityError as exc:
        raise HTTPException(409, "A test run is already in progress for this organization") from exc
    await s.refresh(run)
    return run


async def create_scheduled_runs(s: AsyncSession, worker_id: str, now: datetime | None = None) -> list[TestRun]:
    """Open one ``scheduled`` run per organization that has active tests due."""
    now = now or utcnow()
    due = (await s.execute(
        select(Test.org_id, Test.id)
        .where(Test.status == "active", Test.next_run_at.is_not(None), Test.next_run_at <= now)
        .order_by(Test.org_id, Test.next_run_at)
        .limit(SCHEDULER_BATCH)
    )).all()

    per_org: dict[str, list[str]] = {}
    for org_id, test_id in due:
        per_org.setdefault(org_id, []).append(test_id)

    runs = []
    for org_id, ids in per_org.items():
        if await has_run_in_flight(s, org_id):
            continue
        try:
            run = await start_run(s, org_id, trigger_type="scheduled", test_ids=ids, worker_id=worker_id)
        except HTTPException as exc:
            logger.warning("Skipped scheduled run [org_id=%s]: %s", org_id, exc.detail)
            continue
        await audit_log(s, "test_run.started", "test_run", run.id, {
            "run_number": run.run_number, "trigger": "scheduled", "test_count": run.total_tests,
        }, org_id=org_id)
        await s.commit()
        runs.append(run)
    return runs


# ──────────────────────────────────────────────
# Worker calls
# ──────────────────────────────────────────────

async def _get_run(s: AsyncSession, run_id: str) -> TestRun:
    run = await s.get(TestRun, run_id)
    if run is None:
        raise HTTPException(404, "Test run not found")
    return run


async def claim_run(s: AsyncSession, run_id: str, worker_id: str) -> TestRun:
    run = await _get_run(s, run_id)
    ensure_transition(RUN_TRANSITIONS, run.status, "running")
    run.status = "running"
    run.worker_id = worker_id
    run.started_at = utcnow()
    await s.commit()
    logger.info("Run #%s claimed [org_id=%s worker=%s]", run.run_number, run.org_id, worker_id)
    return run


async def run_tests(s: AsyncSession, run: TestRun) -> list[Test]:
    q = select(Test).where(Test.org_id == run.org_id)
    if run.test_ids:
        q = q.where(Test.id.in_(run.test_ids))
    else:
        q = q.where(Test.status == "active")
    return list((await s.execute(q.order_by(Test.identifier))).scalars().all())


async def record_result(
    s: AsyncSession, run: TestRun, report: ResultReport, notifier: Notifier | None = None,
) -> TestResult:
    """
    Store the result of one test in ``run`` and evaluate alert rules for it.

    Run counters and the test's ``last_run_at`` / ``next_run_at`` are updated
    in the same transaction. Notifications for a generated alert go out after
    the commit; their failure is logged and does not undo the result.
    """
    if run.status != "running":
        raise HTTPException(422, f"Cannot record results for run in '{run.status}' status")
    if report.status not in RESULT_COUNTERS:
        raise HTTPException(422, "Invalid result status")
    test = (await s.execute(
        select(Test).where(Test.id == report.test_id, Test.org_id == run.org_id)
    )).scalar_one_or_none()
    if test is None:
        raise HTTPException(422, f"Test {report.test_id} not found")
    if run.test_ids and test.id not in run.test_ids:
        raise HTTPException(422, f"Test {test.id} is not part of this run")

    now = utcnow()
    result = TestResult(
        org_id=run.org_id,
        test_run_id=run.id,
        test_id=test.id,
        control_id=test.control_id,
        status=report.status,
        severity=test.severity,
        message=report.message,
        details=report.details or {},
        output_log=report.output_log,
        error_message=report.error_message,
        started_at=report.started_at or now,
        completed_at=report.completed_at or now,
        duration_ms=report.duration_ms,
        created_at=now,
    )
    try:
        async with s.begin_nested():
            s.add(result)
            await s.flush()
    except IntegrityError as exc:
        raise HTTPException(409, "Result already recorded for this test in this run") from exc

    counter = RESULT_COUNTERS[report.status]
    setattr(run, counter, getattr(run, counter) + 1)
    test.last_run_at = now
    test.next_run_at = compute_next_run(test, now) if test.status == "active" else None

    generated = await evaluate_rules(s, test, result)
    await s.commit()

    if generated and notifier is not None:
        await deliver(s, notifier, *generated)
    return result


async def deliver(s: AsyncSession, notifier: Notifier, alert: Alert, rule: AlertRule | None) -> None:
    """Best-effort fan-out of a freshly generated alert; merges ``delivered_at``."""
    outcomes = await notifier.deliver_alert(alert, rule, alert.delivery_channels or ["in_app"])
    stamps = {ch: o.delivered_at for ch, o in outcomes.items() if o.delivered_at}
    if stamps:
        alert.delivered_at = {**(alert.delivered_at or {}), **stamps}
        await s.commit()


async def finish_run(s: AsyncSession, run: TestRun, *, failed: bool = False, error_message: str | None = None) -> TestRun:
    target = "failed" if failed else "completed"
    ensure_transition(RUN_TRANSITIONS, run.status, target)
    now = utcnow()
    run.status = target
    run.completed_at = now
    if run.started_at:
        run.duration_ms = int((now - run.started_at).total_seconds() * 1000)
    run.error_message = error_message
    await s.commit()
    logger.info(
        "Run #%s %s [org_id=%s passed=%d failed=%d errors=%d]",
        run.run_number, target, run.org_id, run.passed, run.failed, run.errors,
    )
    return run
