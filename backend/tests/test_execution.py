"""Execution engine: scheduling, result recording and alert generation."""
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException
from httpx import AsyncClient

from conftest import TestSession, create_rule, execute_run
from grc_api.models.alert import AlertRule
from grc_api.models.base import utcnow
from grc_api.models.test import Test, TestResult, TestRun
from grc_api.schemas.test import ResultReport
from grc_api.services.alert_engine import render_title, rule_matches
from grc_api.services.execution import (
    claim_run, compute_next_run, create_scheduled_runs, finish_run, record_result,
)


# ── Pure helpers ──

def test_next_run_from_interval():
    base = datetime(2026, 3, 1, 10, 30)
    assert compute_next_run(Test(schedule_interval_min=45), base) == datetime(2026, 3, 1, 11, 15)


def test_next_run_from_cron():
    base = datetime(2026, 3, 1, 10, 30)
    assert compute_next_run(Test(schedule_cron="0 * * * *"), base) == datetime(2026, 3, 1, 11, 0)


def test_rule_matching():
    test = Test(test_type="endpoint", severity="high", control_id="c1", tags=["edr"])
    failed = TestResult(status="fail")
    assert rule_matches(AlertRule(), test, failed)
    assert rule_matches(AlertRule(match_severities=["high", "critical"], match_tags=["edr", "mdm"]), test, failed)
    assert not rule_matches(AlertRule(match_test_types=["network"]), test, failed)
    assert not rule_matches(AlertRule(match_control_ids=["c2"]), test, failed)
    assert not rule_matches(AlertRule(match_tags=["mdm"]), test, failed)
    assert not rule_matches(AlertRule(match_result_statuses=["fail"]), test, TestResult(status="warning"))


def test_title_template():
    test = Test(title="EDR agent running", identifier="TST-EDR-1", severity="critical")
    result = TestResult(message="3 hosts missing agent")
    title = render_title("[{{severity}}] {{test.identifier}}: {{result.message}}", test, None, result)
    assert title == "[critical] TST-EDR-1: 3 hosts missing agent"
    assert render_title(None, test, None, result) == "EDR agent running failed on TST-EDR-1"


# ── Scheduling ──

@pytest.mark.asyncio
async def test_scheduler_opens_one_run_per_org(client: AsyncClient, admin, monitored):
    later = utcnow() + timedelta(minutes=5)
    async with TestSession() as s:
        runs = await create_scheduled_runs(s, "scheduler-1", now=later)
    assert len(runs) == 1
    assert runs[0].trigger_type == "scheduled"
    assert runs[0].test_ids == [monitored["test"]["id"]]

    async with TestSession() as s:
        assert await create_scheduled_runs(s, "scheduler-1", now=later) == []


@pytest.mark.asyncio
async def test_scheduler_ignores_tests_not_due(client: AsyncClient, admin, monitored):
    async with TestSession() as s:
        assert await create_scheduled_runs(s, "scheduler-1") == []


# ── Recording ──

@pytest.mark.asyncio
async def test_record_updates_counters_and_schedule(client: AsyncClient, admin, monitored):
    test_id = monitored["test"]["id"]
    await execute_run(client, admin, {test_id: "warning"})

    test = (await client.get(f"/api/v1/tests/{test_id}", headers=admin["headers"])).json()["data"]
    assert test["last_run_at"] is not None
    last = datetime.fromisoformat(test["last_run_at"].rstrip("Z"))
    nxt = datetime.fromisoformat(test["next_run_at"].rstrip("Z"))
    assert nxt - last == timedelta(minutes=60)

    runs = (await client.get("/api/v1/test-runs", headers=admin["headers"])).json()["data"]
    assert runs[0]["warnings"] == 1


@pytest.mark.asyncio
async def test_record_rejects_duplicates_and_idle_runs(client: AsyncClient, admin, monitored):
    test_id = monitored["test"]["id"]
    run_id = (await client.post("/api/v1/test-runs", headers=admin["headers"])).json()["data"]["id"]

    async with TestSession() as s:
        run = await s.get(TestRun, run_id)
        with pytest.raises(HTTPException) as exc:
            await record_result(s, run, ResultReport(test_id=test_id, status="pass"))
        assert exc.value.status_code == 422

        run = await claim_run(s, run_id, worker_id="worker-1")
        await record_result(s, run, ResultReport(test_id=test_id, status="pass"))
        with pytest.raises(HTTPException) as exc:
            await record_result(s, run, ResultReport(test_id=test_id, status="fail"))
        assert exc.value.status_code == 409

        with pytest.raises(HTTPException) as exc:
            await record_result(s, run, ResultReport(test_id=test_id, status="flaky"))
        assert exc.value.status_code == 422

        run = await finish_run(s, run, failed=True, error_message="worker crashed")
        assert run.status == "failed"
        with pytest.raises(HTTPException):
            await finish_run(s, run)


# ── Alert generation ──

@pytest.mark.asyncio
async def test_failure_raises_alert(client: AsyncClient, admin, monitored):
    rule = await create_rule(client, admin, alert_title_template="{{test.identifier}} failing")
    await execute_run(client, admin, {monitored["test"]["id"]: "fail"})

    alerts = (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["data"]
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert["alert_number"] == 1
    assert alert["title"] == "TST-AC-001 failing"
    assert alert["severity"] == "high"
    assert alert["status"] == "open"
    assert alert["sla_deadline"] is not None

    detail = (await client.get(f"/api/v1/alerts/{alert['id']}", headers=admin["headers"])).json()["data"]
    assert detail["alert_rule"]["id"] == rule["id"]

    run = (await client.get("/api/v1/test-runs", headers=admin["headers"])).json()["data"][0]
    results = (await client.get(f"/api/v1/test-runs/{run['id']}/results", headers=admin["headers"])).json()
    assert results["data"]["results"][0]["alert_generated"] is True
    assert results["data"]["results"][0]["alert_id"] == alert["id"]


@pytest.mark.asyncio
async def test_passing_result_raises_nothing(client: AsyncClient, admin, monitored):
    await create_rule(client, admin)
    await execute_run(client, admin, {monitored["test"]["id"]: "pass"})
    assert (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["meta"]["total"] == 0


@pytest.mark.asyncio
async def test_consecutive_failures(client: AsyncClient, admin, monitored):
    await create_rule(client, admin, consecutive_failures=2)
    test_id = monitored["test"]["id"]

    await execute_run(client, admin, {test_id: "fail"})
    assert (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["meta"]["total"] == 0

    await execute_run(client, admin, {test_id: "fail"})
    assert (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["meta"]["total"] == 1


@pytest.mark.asyncio
async def test_streak_broken_by_pass(client: AsyncClient, admin, monitored):
    await create_rule(client, admin, consecutive_failures=2)
    test_id = monitored["test"]["id"]
    for status in ("fail", "pass", "fail"):
        await execute_run(client, admin, {test_id: status})
    assert (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["meta"]["total"] == 0


@pytest.mark.asyncio
async def test_cooldown_suppresses_repeat_alerts(client: AsyncClient, admin, monitored):
    await create_rule(client, admin, cooldown_minutes=60)
    test_id = monitored["test"]["id"]
    await execute_run(client, admin, {test_id: "fail"})
    await execute_run(client, admin, {test_id: "fail"})
    assert (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["meta"]["total"] == 1


@pytest.mark.asyncio
async def test_without_cooldown_every_failure_alerts(client: AsyncClient, admin, monitored):
    await create_rule(client, admin)
    test_id = monitored["test"]["id"]
    await execute_run(client, admin, {test_id: "fail"})
    await execute_run(client, admin, {test_id: "fail"})
    alerts = (await client.get("/api/v1/alerts?sort=alert_number&order=asc", headers=admin["headers"])).json()["data"]
    assert [a["alert_number"] for a in alerts] == [1, 2]


@pytest.mark.asyncio
async def test_lowest_priority_number_wins(client: AsyncClient, admin, monitored):
    await create_rule(client, admin, name="Catch-all", alert_severity="medium", priority=50)
    first = await create_rule(client, admin, name="Access control", alert_severity="critical", priority=10,
                              match_test_types=["access_control"])
    await execute_run(client, admin, {monitored["test"]["id"]: "fail"})

    alerts = (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["data"]
    assert len(alerts) == 1
    assert alerts[0]["severity"] == "critical"
    detail = (await client.get(f"/api/v1/alerts/{alerts[0]['id']}", headers=admin["headers"])).json()["data"]
    assert detail["alert_rule"]["name"] == first["name"]


@pytest.mark.asyncio
async def test_disabled_rules_are_skipped(client: AsyncClient, admin, monitored):
    await create_rule(client, admin, enabled=False)
    await execute_run(client, admin, {monitored["test"]["id"]: "fail"})
    assert (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["meta"]["total"] == 0


@pytest.mark.asyncio
async def test_auto_assign(client: AsyncClient, admin, monitored):
    await create_rule(client, admin, auto_assign_to=admin["user_id"])
    await execute_run(client, admin, {monitored["test"]["id"]: "fail"})
    alert = (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["data"][0]
    assert alert["assigned_to"]["id"] == admin["user_id"]


@pytest.mark.asyncio
async def test_webhook_notification(client: AsyncClient, admin, monitored, outbound):
    await create_rule(client, admin, delivery_channels=["webhook", "in_app"],
                      webhook_url="https://203.0.113.10/hook", webhook_headers={"X-API-Key": "k1"})
    await execute_run(client, admin, {monitored["test"]["id"]: "fail"}, notifier=outbound.notifier)

    assert len(outbound.requests) == 1
    sent = outbound.requests[0]
    assert sent.headers["x-api-key"] == "k1"
    assert b'"alert.created"' in sent.content

    alert = (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["data"][0]
    detail = (await client.get(f"/api/v1/alerts/{alert['id']}", headers=admin["headers"])).json()["data"]
    assert set(detail["delivered_at"]) == {"webhook", "in_app"}


@pytest.mark.asyncio
async def test_failed_notification_keeps_alert(client: AsyncClient, admin, monitored, outbound):
    outbound.status = 500
    await create_rule(client, admin, delivery_channels=["webhook"], webhook_url="https://203.0.113.10/hook")
    await execute_run(client, admin, {monitored["test"]["id"]: "fail"}, notifier=outbound.notifier)

    alert = (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["data"][0]
    detail = (await client.get(f"/api/v1/alerts/{alert['id']}", headers=admin["headers"])).json()["data"]
    assert detail["delivered_at"] == {}


@pytest.mark.asyncio
async def test_queued_email_is_not_stamped_delivered(client: AsyncClient, admin, monitored, outbound):
    await create_rule(client, admin, delivery_channels=["email", "in_app"], email_recipients=["secops@acme.io"])
    await execute_run(client, admin, {monitored["test"]["id"]: "fail"}, notifier=outbound.notifier)

    alert = (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["data"][0]
    detail = (await client.get(f"/api/v1/alerts/{alert['id']}", headers=admin["headers"])).json()["data"]
    assert set(detail["delivered_at"]) == {"in_app"}

    r = await client.post(f"/api/v1/alerts/{alert['id']}/deliver", headers=admin["headers"],
                          json={"channels": ["email"]})
    assert r.status_code == 200
    email = r.json()["data"]["delivery_results"]["email"]
    assert email["success"] is True
    assert email["queued"] is True
    assert email["delivered_at"] is None
    assert "email" not in r.json()["data"]["delivered_at"]


@pytest.mark.asyncio
async def test_alerts_follow_the_run_tenant(client: AsyncClient, admin, other_org, monitored):
    await create_rule(client, other_org)
    await execute_run(client, admin, {monitored["test"]["id"]: "fail"})
    assert (await client.get("/api/v1/alerts", headers=admin["headers"])).json()["meta"]["total"] == 0
    assert (await client.get("/api/v1/alerts", headers=other_org["headers"])).json()["meta"]["total"] == 0
