"""Monitoring dashboard: control heat map, posture, summary and alert queue."""
import pytest
from httpx import AsyncClient

from conftest import activate_catalog, activate_test, create_control, create_rule, create_test, execute_run


@pytest.mark.asyncio
async def test_heatmap_orders_worst_first(client: AsyncClient, admin, monitored):
    healthy = await create_control(client, admin, identifier="CTRL-HEALTHY")
    await create_control(client, admin, identifier="CTRL-NEW")
    ok_test = await create_test(client, admin, healthy["id"], identifier="TST-OK")

    await execute_run(client, admin, {monitored["test"]["id"]: "fail", ok_test["id"]: "pass"})

    r = await client.get("/api/v1/monitoring/heatmap", headers=admin["headers"])
    data = r.json()["data"]
    assert data["summary"]["total_controls"] == 3
    assert (data["summary"]["failing"], data["summary"]["healthy"], data["summary"]["untested"]) == (1, 1, 1)
    assert [c["health_status"] for c in data["controls"]] == ["failing", "untested", "healthy"]
    assert data["controls"][0]["latest_result"]["status"] == "fail"
    assert data["controls"][0]["tests_count"] == 1


@pytest.mark.asyncio
async def test_latest_result_wins(client: AsyncClient, admin, monitored):
    test_id = monitored["test"]["id"]
    await execute_run(client, admin, {test_id: "fail"})
    await execute_run(client, admin, {test_id: "pass"})
    data = (await client.get("/api/v1/monitoring/heatmap", headers=admin["headers"])).json()["data"]
    assert data["controls"][0]["health_status"] == "healthy"


@pytest.mark.asyncio
async def test_posture(client: AsyncClient, admin, catalog):
    _, reqs = await activate_catalog(client, admin, catalog)
    passing = await create_control(client, admin, identifier="CTRL-P")
    failing = await create_control(client, admin, identifier="CTRL-F")
    await create_control(client, admin, identifier="CTRL-U")
    for ctrl, req in ((passing, reqs[0]), (failing, reqs[1])):
        await client.post(f"/api/v1/controls/{ctrl['id']}/mappings", headers=admin["headers"],
                          json={"mappings": [{"requirement_id": req["id"]}]})
    t_pass = await create_test(client, admin, passing["id"], identifier="TST-P")
    t_fail = await create_test(client, admin, failing["id"], identifier="TST-F")
    await execute_run(client, admin, {t_pass["id"]: "pass", t_fail["id"]: "fail"})

    data = (await client.get("/api/v1/monitoring/posture", headers=admin["headers"])).json()["data"]
    fw = data["frameworks"][0]
    assert fw["framework_version"] == "2017"
    assert (fw["total_mapped_controls"], fw["passing"], fw["failing"], fw["untested"]) == (2, 1, 1, 0)
    assert fw["posture_score"] == 50.0
    assert data["overall_score"] == 50.0


@pytest.mark.asyncio
async def test_summary(client: AsyncClient, admin, monitored):
    await create_rule(client, admin)
    await execute_run(client, admin, {monitored["test"]["id"]: "fail"})

    data = (await client.get("/api/v1/monitoring/summary", headers=admin["headers"])).json()["data"]
    assert data["controls"]["total_active"] == 1
    assert data["controls"]["failing"] == 1
    assert data["tests"]["total_active"] == 1
    assert data["tests"]["pass_rate_24h"] == 0.0
    assert data["tests"]["last_run"]["status"] == "completed"
    assert data["alerts"]["open"] == 1
    assert data["alerts"]["by_severity"]["high"] == 1
    assert {e["type"] for e in data["recent_activity"]} == {"alert_created", "test_run_completed"}


@pytest.mark.asyncio
async def test_alert_queue_orders_by_severity(client: AsyncClient, admin, monitored):
    critical_ctrl = await create_control(client, admin, identifier="CTRL-CRIT")
    critical_test = await create_test(client, admin, critical_ctrl["id"], identifier="TST-CRIT", severity="critical")
    await activate_test(client, admin, critical_test["id"])
    await create_rule(client, admin, name="Critical", alert_severity="critical", priority=1,
                      match_severities=["critical"])
    await create_rule(client, admin, name="Rest", alert_severity="medium", priority=2)

    await execute_run(client, admin, {monitored["test"]["id"]: "fail", critical_test["id"]: "fail"})

    r = await client.get("/api/v1/monitoring/alert-queue", headers=admin["headers"])
    body = r.json()
    assert body["meta"]["total"] == 2
    assert body["data"]["queue_summary"]["active"] == 2
    assert [a["severity"] for a in body["data"]["alerts"]] == ["critical", "medium"]
    assert body["data"]["alerts"][0]["control_identifier"] == "CTRL-CRIT"

    r = await client.get("/api/v1/monitoring/alert-queue?queue=closed", headers=admin["headers"])
    assert r.json()["meta"]["total"] == 0
