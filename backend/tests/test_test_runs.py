"""Test runs: the one-in-flight rule, cancellation and result views."""
import pytest
from httpx import AsyncClient

from conftest import add_user, create_test, execute_run


@pytest.mark.asyncio
async def test_second_run_conflicts(client: AsyncClient, admin, monitored):
    r = await client.post("/api/v1/test-runs", headers=admin["headers"])
    assert r.status_code == 201
    first = r.json()["data"]
    assert first["status"] == "pending"
    assert first["trigger_type"] == "manual"
    assert first["total_tests"] == 1
    assert first["run_number"] == 1

    r = await client.post("/api/v1/test-runs", headers=admin["headers"])
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "CONFLICT"

    r = await client.get(f"/api/v1/test-runs/{first['id']}", headers=admin["headers"])
    assert r.json()["data"]["total_tests"] == 1
    r = await client.get("/api/v1/test-runs", headers=admin["headers"])
    assert r.json()["meta"]["total"] == 1


@pytest.mark.asyncio
async def test_runs_are_per_organization(client: AsyncClient, admin, other_org, monitored):
    await client.post("/api/v1/test-runs", headers=admin["headers"])
    r = await client.post("/api/v1/test-runs", headers=other_org["headers"])
    # the other tenant has no active tests, but is not blocked by ours
    assert r.status_code == 400
    assert r.json()["error"]["message"] == "No tests to run"


@pytest.mark.asyncio
async def test_unknown_test_id(client: AsyncClient, admin, monitored):
    r = await client.post("/api/v1/test-runs", headers=admin["headers"], json={"test_ids": ["nope"]})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_cancel_frees_the_slot(client: AsyncClient, admin, monitored):
    run = (await client.post("/api/v1/test-runs", headers=admin["headers"])).json()["data"]
    r = await client.post(f"/api/v1/test-runs/{run['id']}/cancel", headers=admin["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["previous_status"] == "pending"

    r = await client.post(f"/api/v1/test-runs/{run['id']}/cancel", headers=admin["headers"])
    assert r.status_code == 422

    r = await client.post("/api/v1/test-runs", headers=admin["headers"])
    assert r.status_code == 201
    assert r.json()["data"]["run_number"] == 2


@pytest.mark.asyncio
async def test_cancel_requires_role(client: AsyncClient, admin, monitored):
    devops = await add_user(client, admin, "devops_engineer")
    run = (await client.post("/api/v1/test-runs", headers=devops["headers"])).json()["data"]
    r = await client.post(f"/api/v1/test-runs/{run['id']}/cancel", headers=devops["headers"])
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_results_views(client: AsyncClient, admin, monitored):
    control = monitored["control"]
    other = await create_test(client, admin, control["id"], identifier="TST-AC-002")
    run_id = await execute_run(client, admin, {monitored["test"]["id"]: "pass", other["id"]: "fail"})

    run = (await client.get(f"/api/v1/test-runs/{run_id}", headers=admin["headers"])).json()["data"]
    assert run["status"] == "completed"
    assert (run["passed"], run["failed"], run["total_tests"]) == (1, 1, 2)
    assert run["worker_id"] == "worker-1"
    assert run["duration_ms"] is not None

    r = await client.get(f"/api/v1/test-runs/{run_id}/results", headers=admin["headers"])
    body = r.json()
    assert body["meta"]["total"] == 2
    assert body["data"]["run"]["run_number"] == 1
    assert [x["status"] for x in body["data"]["results"]] == ["fail", "pass"]

    result_id = body["data"]["results"][0]["id"]
    r = await client.get(f"/api/v1/test-runs/{run_id}/results/{result_id}", headers=admin["headers"])
    assert r.json()["data"]["message"] == "check fail"
    assert "output_log" in r.json()["data"]

    r = await client.get(f"/api/v1/tests/{other['id']}/results", headers=admin["headers"])
    assert r.json()["data"]["test"]["identifier"] == "TST-AC-002"
    assert r.json()["meta"]["total"] == 1

    r = await client.get(f"/api/v1/controls/{control['id']}/test-results?status=fail", headers=admin["headers"])
    data = r.json()["data"]
    assert data["tests_count"] == 2
    assert len(data["results"]) == 1
    assert data["health_status"] in ("healthy", "failing")


@pytest.mark.asyncio
async def test_unknown_result(client: AsyncClient, admin, monitored):
    run_id = await execute_run(client, admin, {monitored["test"]["id"]: "pass"})
    r = await client.get(f"/api/v1/test-runs/{run_id}/results/missing", headers=admin["headers"])
    assert r.status_code == 404
