"""Alert lifecycle, assignment, suppression and delivery."""
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from conftest import add_user

REASON = "Known issue tracked in change window CHG-1042"


def _in_days(days: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


async def _status(client: AsyncClient, user: dict, alert: dict, status: str):
    return await client.put(f"/api/v1/alerts/{alert['id']}/status", headers=user["headers"], json={"status": status})


@pytest.mark.asyncio
async def test_open_cannot_jump_to_resolved(client: AsyncClient, admin, open_alert):
    r = await _status(client, admin, open_alert, "resolved")
    assert r.status_code == 422
    err = r.json()["error"]
    assert err["code"] == "UNPROCESSABLE"
    assert "'open'" in err["message"] and "'resolved'" in err["message"]


@pytest.mark.asyncio
async def test_resolve_goes_through_its_endpoint(client: AsyncClient, admin, open_alert):
    assert (await _status(client, admin, open_alert, "acknowledged")).status_code == 200
    assert (await _status(client, admin, open_alert, "in_progress")).status_code == 200

    r = await _status(client, admin, open_alert, "resolved")
    assert r.status_code == 422
    assert "resolve endpoint" in r.json()["error"]["message"]

    url = f"/api/v1/alerts/{open_alert['id']}/resolve"
    r = await client.put(url, headers=admin["headers"], json={"resolution_notes": "  "})
    assert r.status_code == 400

    r = await client.put(url, headers=admin["headers"], json={"resolution_notes": "MFA re-enabled for all admins"})
    assert r.status_code == 200
    assert r.json()["data"]["previous_status"] == "in_progress"

    detail = (await client.get(f"/api/v1/alerts/{open_alert['id']}", headers=admin["headers"])).json()["data"]
    assert detail["status"] == "resolved"
    assert detail["resolved_by"]["id"] == admin["user_id"]
    assert detail["hours_remaining"] is None


@pytest.mark.asyncio
async def test_resolve_only_from_in_progress(client: AsyncClient, admin, open_alert):
    r = await client.put(f"/api/v1/alerts/{open_alert['id']}/resolve", headers=admin["headers"],
                         json={"resolution_notes": "fixed"})
    assert r.status_code == 422
    assert r.json()["error"]["message"] == "Cannot resolve alert in 'open' status"


@pytest.mark.asyncio
async def test_reopen_clears_resolution(client: AsyncClient, admin, open_alert):
    await _status(client, admin, open_alert, "in_progress")
    await client.put(f"/api/v1/alerts/{open_alert['id']}/resolve", headers=admin["headers"],
                     json={"resolution_notes": "fixed"})
    r = await _status(client, admin, open_alert, "open")
    assert r.status_code == 200

    detail = (await client.get(f"/api/v1/alerts/{open_alert['id']}", headers=admin["headers"])).json()["data"]
    assert detail["resolved_at"] is None
    assert detail["resolution_notes"] is None


@pytest.mark.asyncio
async def test_suppression_window_limit(client: AsyncClient, admin, open_alert):
    url = f"/api/v1/alerts/{open_alert['id']}/suppress"
    r = await client.put(url, headers=admin["headers"],
                         json={"suppressed_until": _in_days(91), "suppression_reason": REASON})
    assert r.status_code == 422

    r = await client.put(url, headers=admin["headers"],
                         json={"suppressed_until": _in_days(-1), "suppression_reason": REASON})
    assert r.status_code == 422

    r = await client.put(url, headers=admin["headers"],
                         json={"suppressed_until": _in_days(7), "suppression_reason": "too short"})
    assert r.status_code == 400

    r = await client.put(url, headers=admin["headers"],
                         json={"suppressed_until": _in_days(90), "suppression_reason": REASON})
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "suppressed"
    assert r.json()["data"]["suppressed_until"].endswith("Z")


@pytest.mark.asyncio
async def test_suppress_close_reopen(client: AsyncClient, admin, open_alert):
    await client.put(f"/api/v1/alerts/{open_alert['id']}/suppress", headers=admin["headers"],
                     json={"suppressed_until": _in_days(30), "suppression_reason": REASON})

    r = await client.put(f"/api/v1/alerts/{open_alert['id']}/close", headers=admin["headers"],
                         json={"resolution_notes": "Accepted"})
    assert r.status_code == 200
    assert r.json()["data"]["previous_status"] == "suppressed"

    r = await _status(client, admin, open_alert, "open")
    assert r.status_code == 200

    detail = (await client.get(f"/api/v1/alerts/{open_alert['id']}", headers=admin["headers"])).json()["data"]
    assert detail["status"] == "open"
    assert detail["suppressed_until"] is None
    assert detail["suppression_reason"] is None


@pytest.mark.asyncio
async def test_cannot_suppress_closed(client: AsyncClient, admin, open_alert):
    await _status(client, admin, open_alert, "closed")
    r = await client.put(f"/api/v1/alerts/{open_alert['id']}/suppress", headers=admin["headers"],
                         json={"suppressed_until": _in_days(3), "suppression_reason": REASON})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_only_admins_close_or_suppress(client: AsyncClient, admin, open_alert):
    it_admin = await add_user(client, admin, "it_admin")
    assert (await _status(client, it_admin, open_alert, "acknowledged")).status_code == 200
    assert (await _status(client, it_admin, open_alert, "closed")).status_code == 403
    r = await client.put(f"/api/v1/alerts/{open_alert['id']}/suppress", headers=it_admin["headers"],
                         json={"suppressed_until": _in_days(3), "suppression_reason": REASON})
    assert r.status_code == 403

    viewer = await add_user(client, admin, "viewer")
    assert (await _status(client, viewer, open_alert, "in_progress")).status_code == 403


@pytest.mark.asyncio
async def test_assign_acknowledges(client: AsyncClient, admin, open_alert):
    engineer = await add_user(client, admin, "security_engineer")
    r = await client.put(f"/api/v1/alerts/{open_alert['id']}/assign", headers=admin["headers"],
                         json={"assigned_to": engineer["user_id"]})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "acknowledged"
    assert data["assigned_to"]["id"] == engineer["user_id"]

    r = await client.get(f"/api/v1/alerts?assigned_to={engineer['user_id']}", headers=admin["headers"])
    assert r.json()["meta"]["total"] == 1
    r = await client.get("/api/v1/alerts?assigned_to=unassigned", headers=admin["headers"])
    assert r.json()["meta"]["total"] == 0


@pytest.mark.asyncio
async def test_assign_rejects_foreign_user(client: AsyncClient, admin, other_org, open_alert):
    r = await client.put(f"/api/v1/alerts/{open_alert['id']}/assign", headers=admin["headers"],
                         json={"assigned_to": other_org["user_id"]})
    assert r.status_code == 404

    r = await client.put(f"/api/v1/alerts/{open_alert['id']}/assign", headers=admin["headers"], json={})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_list_filters(client: AsyncClient, admin, open_alert):
    r = await client.get("/api/v1/alerts?status=open,acknowledged&severity=high", headers=admin["headers"])
    assert r.json()["meta"]["total"] == 1
    r = await client.get("/api/v1/alerts?severity=critical", headers=admin["headers"])
    assert r.json()["meta"]["total"] == 0
    r = await client.get("/api/v1/alerts?search=tst-ac", headers=admin["headers"])
    assert r.json()["meta"]["total"] == 1


@pytest.mark.asyncio
async def test_alert_invisible_to_other_tenant(client: AsyncClient, other_org, open_alert):
    r = await client.get(f"/api/v1/alerts/{open_alert['id']}", headers=other_org["headers"])
    assert r.status_code == 404
    r = await _status(client, other_org, open_alert, "acknowledged")
    assert r.status_code == 404


# ── Delivery ──

@pytest.mark.asyncio
async def test_redeliver(client: AsyncClient, admin, open_alert, outbound):
    url = f"/api/v1/alerts/{open_alert['id']}/deliver"
    r = await client.post(url, headers=admin["headers"], json={"channels": ["in_app", "webhook"]})
    assert r.status_code == 200
    results = r.json()["data"]["delivery_results"]
    assert results["in_app"]["success"] is True
    # the rule has no webhook target
    assert results["webhook"]["success"] is False
    assert "in_app" in r.json()["data"]["delivered_at"]
    assert outbound.requests == []

    r = await client.post(url, headers=admin["headers"], json={"channels": ["pager"]})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_test_delivery_webhook(client: AsyncClient, admin, outbound):
    r = await client.post("/api/v1/alerts/test-delivery", headers=admin["headers"], json={
        "channel": "webhook",
        "webhook_url": "https://203.0.113.10/hook",
        "webhook_headers": {"X-Custom-Team": "secops"},
    })
    assert r.status_code == 200
    assert r.json()["data"]["success"] is True
    assert len(outbound.requests) == 1
    assert outbound.requests[0].headers["x-custom-team"] == "secops"
    assert b"test_delivery" in outbound.requests[0].content


@pytest.mark.asyncio
async def test_test_delivery_validation(client: AsyncClient, admin, outbound):
    url = "/api/v1/alerts/test-delivery"
    r = await client.post(url, headers=admin["headers"], json={"channel": "webhook", "webhook_url": "http://203.0.113.10/hook"})
    assert r.status_code == 400
    assert r.json()["error"]["message"] == "Webhook URL must use HTTPS"

    r = await client.post(url, headers=admin["headers"], json={
        "channel": "webhook", "webhook_url": "https://203.0.113.10/hook", "webhook_headers": {"Cookie": "a=b"},
    })
    assert r.status_code == 400

    r = await client.post(url, headers=admin["headers"], json={"channel": "sms"})
    assert r.status_code == 400

    r = await client.post(url, headers=admin["headers"], json={"channel": "email"})
    assert r.status_code == 400
    assert outbound.requests == []


@pytest.mark.asyncio
async def test_test_delivery_failures(client: AsyncClient, admin, outbound):
    url = "/api/v1/alerts/test-delivery"
    r = await client.post(url, headers=admin["headers"],
                          json={"channel": "slack", "slack_webhook_url": "https://10.0.0.5/services/x"})
    assert r.status_code == 422
    assert "private IP" in r.json()["error"]["message"]

    outbound.status = 500
    r = await client.post(url, headers=admin["headers"],
                          json={"channel": "slack", "slack_webhook_url": "https://203.0.113.10/services/x"})
    assert r.status_code == 422
    assert r.json()["error"]["message"] == "Failed to deliver to slack: Slack returned status 500"

    outbound.status = 200
    outbound.raise_timeout = True
    r = await client.post(url, headers=admin["headers"],
                          json={"channel": "webhook", "webhook_url": "https://203.0.113.10/hook"})
    assert r.status_code == 422
    assert "timed out" in r.json()["error"]["message"]


@pytest.mark.asyncio
async def test_test_delivery_email_and_role(client: AsyncClient, admin, outbound):
    r = await client.post("/api/v1/alerts/test-delivery", headers=admin["headers"],
                          json={"channel": "email", "email_recipients": ["secops@acme.io"]})
    assert r.status_code == 200

    engineer = await add_user(client, admin, "security_engineer")
    r = await client.post("/api/v1/alerts/test-delivery", headers=engineer["headers"],
                          json={"channel": "email", "email_recipients": ["secops@acme.io"]})
    assert r.status_code == 403
