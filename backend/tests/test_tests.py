"""Continuous-monitoring test definitions."""
import pytest
from httpx import AsyncClient

from conftest import activate_test, add_user, create_control, create_test


@pytest.mark.asyncio
async def test_create_starts_in_draft(client: AsyncClient, admin, active_control):
    test = await create_test(client, admin, active_control["id"], tags=["iam"])
    assert test["status"] == "draft"
    assert test["next_run_at"] is None
    assert test["control"]["identifier"] == active_control["identifier"]
    assert test["timeout_seconds"] == 300
    assert test["retry_count"] == 0
    assert test["created_by"]["id"] == admin["user_id"]


@pytest.mark.asyncio
async def test_control_must_be_active(client: AsyncClient, admin):
    draft = await create_control(client, admin, identifier="CTRL-DRAFT", status="draft")
    r = await client.post("/api/v1/tests", headers=admin["headers"], json={
        "identifier": "TST-1", "title": "MFA", "test_type": "access_control", "control_id": draft["id"],
    })
    assert r.status_code == 422
    assert r.json()["error"]["message"] == "Control must be in active status"


@pytest.mark.asyncio
async def test_schedule_validation(client: AsyncClient, admin, active_control):
    base = {"identifier": "TST-1", "title": "MFA", "test_type": "access_control", "control_id": active_control["id"]}

    r = await client.post("/api/v1/tests", headers=admin["headers"],
                          json={**base, "schedule_cron": "0 * * * *", "schedule_interval_min": 60})
    assert r.status_code == 400

    r = await client.post("/api/v1/tests", headers=admin["headers"], json={**base, "schedule_cron": "every hour"})
    assert r.status_code == 400

    r = await client.post("/api/v1/tests", headers=admin["headers"], json={**base, "schedule_interval_min": 0})
    assert r.status_code == 400

    r = await client.post("/api/v1/tests", headers=admin["headers"], json={**base, "schedule_cron": "*/15 * * * *"})
    assert r.status_code == 201
    assert r.json()["data"]["schedule_cron"] == "*/15 * * * *"


@pytest.mark.asyncio
async def test_invalid_type_and_retry_bounds(client: AsyncClient, admin, active_control):
    base = {"identifier": "TST-1", "title": "MFA", "control_id": active_control["id"]}
    r = await client.post("/api/v1/tests", headers=admin["headers"], json={**base, "test_type": "manual"})
    assert r.status_code == 400
    r = await client.post("/api/v1/tests", headers=admin["headers"],
                          json={**base, "test_type": "endpoint", "retry_count": 6})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_duplicate_identifier(client: AsyncClient, admin, active_control):
    await create_test(client, admin, active_control["id"])
    r = await client.post("/api/v1/tests", headers=admin["headers"], json={
        "identifier": "TST-AC-001", "title": "Again", "test_type": "endpoint", "control_id": active_control["id"],
    })
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_role_gates(client: AsyncClient, admin, active_control):
    devops = await add_user(client, admin, "devops_engineer")
    viewer = await add_user(client, admin, "viewer")
    test = await create_test(client, devops, active_control["id"])

    r = await client.post("/api/v1/tests", headers=viewer["headers"], json={
        "identifier": "TST-2", "title": "x", "test_type": "endpoint", "control_id": active_control["id"],
    })
    assert r.status_code == 403

    # devops may author tests but not change their status
    r = await client.put(f"/api/v1/tests/{test['id']}/status", headers=devops["headers"], json={"status": "active"})
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_activation_schedules_and_pause_clears(client: AsyncClient, admin, active_control):
    test = await create_test(client, admin, active_control["id"])
    url = f"/api/v1/tests/{test['id']}/status"

    r = await client.put(url, headers=admin["headers"], json={"status": "active"})
    assert r.json()["data"]["next_run_at"] is not None
    assert r.json()["data"]["previous_status"] == "draft"

    r = await client.put(url, headers=admin["headers"], json={"status": "paused"})
    assert r.json()["data"]["next_run_at"] is None

    r = await client.put(url, headers=admin["headers"], json={"status": "draft"})
    assert r.status_code == 422
    assert r.json()["error"]["message"] == "Cannot transition from 'paused' to 'draft'"


@pytest.mark.asyncio
async def test_update_switches_schedule_kind(client: AsyncClient, admin, active_control):
    test = await create_test(client, admin, active_control["id"])
    r = await client.put(f"/api/v1/tests/{test['id']}", headers=admin["headers"],
                         json={"schedule_cron": "0 6 * * *"})
    assert r.status_code == 200
    assert r.json()["data"]["schedule_cron"] == "0 6 * * *"
    assert r.json()["data"]["schedule_interval_min"] is None

    r = await client.put(f"/api/v1/tests/{test['id']}", headers=admin["headers"], json={})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_delete_deprecates(client: AsyncClient, admin, active_control):
    test = await create_test(client, admin, active_control["id"])
    await activate_test(client, admin, test["id"])

    r = await client.delete(f"/api/v1/tests/{test['id']}", headers=admin["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "deprecated"

    r = await client.get(f"/api/v1/tests/{test['id']}", headers=admin["headers"])
    assert r.json()["data"]["status"] == "deprecated"
    assert r.json()["data"]["next_run_at"] is None

    r = await client.delete(f"/api/v1/tests/{test['id']}", headers=admin["headers"])
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_list_filters(client: AsyncClient, admin, active_control):
    await create_test(client, admin, active_control["id"], identifier="TST-A", tags=["iam", "sso"])
    await create_test(client, admin, active_control["id"], identifier="TST-B", severity="low", test_type="logging")

    r = await client.get("/api/v1/tests?tags=iam,sso", headers=admin["headers"])
    assert [t["identifier"] for t in r.json()["data"]] == ["TST-A"]

    r = await client.get("/api/v1/tests?severity=low", headers=admin["headers"])
    assert [t["identifier"] for t in r.json()["data"]] == ["TST-B"]

    r = await client.get("/api/v1/tests?sort=identifier&order=desc", headers=admin["headers"])
    assert [t["identifier"] for t in r.json()["data"]] == ["TST-B", "TST-A"]


@pytest.mark.asyncio
async def test_invisible_to_other_tenant(client: AsyncClient, admin, other_org, active_control):
    test = await create_test(client, admin, active_control["id"])
    r = await client.get(f"/api/v1/tests/{test['id']}", headers=other_org["headers"])
    assert r.status_code == 404
    assert r.json()["error"]["message"] == "Test not found"
