"""Alert rule administration."""
import pytest
from httpx import AsyncClient

from conftest import add_user, create_rule


@pytest.mark.asyncio
async def test_create_defaults(client: AsyncClient, admin):
    rule = await create_rule(client, admin)
    assert rule["enabled"] is True
    assert rule["match_result_statuses"] == ["fail"]
    assert rule["delivery_channels"] == ["in_app"]
    assert rule["priority"] == 100
    assert rule["consecutive_failures"] == 1
    assert rule["alerts_generated"] == 0
    assert rule["created_by"]["id"] == admin["user_id"]


@pytest.mark.asyncio
async def test_names_unique_per_org(client: AsyncClient, admin, other_org):
    await create_rule(client, admin)
    r = await client.post("/api/v1/alert-rules", headers=admin["headers"],
                          json={"name": "Failing tests", "alert_severity": "low"})
    assert r.status_code == 409
    await create_rule(client, other_org)


@pytest.mark.asyncio
@pytest.mark.parametrize("extra", [
    {"alert_severity": "urgent"},
    {"match_test_types": ["manual"]},
    {"match_result_statuses": ["broken"]},
    {"consecutive_failures": 0},
    {"cooldown_minutes": -5},
    {"delivery_channels": []},
    {"delivery_channels": ["pager"]},
    {"delivery_channels": ["slack"]},
    {"delivery_channels": ["email"]},
    {"delivery_channels": ["webhook"], "webhook_url": "http://203.0.113.10/hook"},
    {"delivery_channels": ["webhook"], "webhook_url": "https://203.0.113.10/hook", "webhook_headers": {"Host": "x"}},
])
async def test_invalid_rules(client: AsyncClient, admin, extra):
    body = {"name": "Rule", "alert_severity": "high", **extra}
    r = await client.post("/api/v1/alert-rules", headers=admin["headers"], json=body)
    assert r.status_code == 400, extra
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_channel_with_target(client: AsyncClient, admin):
    rule = await create_rule(client, admin, delivery_channels=["slack", "email"],
                             slack_webhook_url="https://hooks.slack.com/services/T0/B0/x",
                             email_recipients=["secops@acme.io"])
    assert rule["delivery_channels"] == ["slack", "email"]


@pytest.mark.asyncio
async def test_auto_assign_must_be_member(client: AsyncClient, admin, other_org):
    r = await client.post("/api/v1/alert-rules", headers=admin["headers"],
                          json={"name": "Rule", "alert_severity": "high", "auto_assign_to": other_org["user_id"]})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_role_gates(client: AsyncClient, admin):
    engineer = await add_user(client, admin, "security_engineer")
    viewer = await add_user(client, admin, "viewer")
    await create_rule(client, admin)

    assert (await client.get("/api/v1/alert-rules", headers=engineer["headers"])).status_code == 200
    assert (await client.get("/api/v1/alert-rules", headers=viewer["headers"])).status_code == 403
    r = await client.post("/api/v1/alert-rules", headers=engineer["headers"],
                          json={"name": "Mine", "alert_severity": "low"})
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_list_sorted_by_priority(client: AsyncClient, admin):
    await create_rule(client, admin, name="Late", priority=200)
    await create_rule(client, admin, name="Early", priority=1)
    await create_rule(client, admin, name="Off", priority=50, enabled=False)

    r = await client.get("/api/v1/alert-rules", headers=admin["headers"])
    assert [x["name"] for x in r.json()["data"]] == ["Early", "Off", "Late"]

    r = await client.get("/api/v1/alert-rules?enabled=true", headers=admin["headers"])
    assert [x["name"] for x in r.json()["data"]] == ["Early", "Late"]


@pytest.mark.asyncio
async def test_update(client: AsyncClient, admin):
    rule = await create_rule(client, admin)
    await create_rule(client, admin, name="Other")
    url = f"/api/v1/alert-rules/{rule['id']}"

    r = await client.put(url, headers=admin["headers"], json={"name": "Other"})
    assert r.status_code == 409

    r = await client.put(url, headers=admin["headers"], json={"enabled": False, "sla_hours": None})
    assert r.status_code == 200
    assert r.json()["data"]["enabled"] is False
    assert r.json()["data"]["sla_hours"] is None

    # switching to webhook without a URL leaves the rule unchanged
    r = await client.put(url, headers=admin["headers"], json={"delivery_channels": ["webhook"]})
    assert r.status_code == 400
    r = await client.get(url, headers=admin["headers"])
    assert r.json()["data"]["delivery_channels"] == ["in_app"]

    r = await client.put(url, headers=admin["headers"], json={})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_delete_keeps_alerts(client: AsyncClient, admin, open_alert):
    rules = (await client.get("/api/v1/alert-rules", headers=admin["headers"])).json()["data"]
    assert rules[0]["alerts_generated"] == 1

    r = await client.delete(f"/api/v1/alert-rules/{rules[0]['id']}", headers=admin["headers"])
    assert r.status_code == 200

    detail = (await client.get(f"/api/v1/alerts/{open_alert['id']}", headers=admin["headers"])).json()["data"]
    assert detail["status"] == "open"
    assert detail["alert_rule"] is None

    r = await client.get(f"/api/v1/alert-rules/{rules[0]['id']}", headers=admin["headers"])
    assert r.status_code == 404
