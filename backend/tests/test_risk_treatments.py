"""Treatments and the automatic risk transitions they drive."""
import pytest
from httpx import AsyncClient

from conftest import add_user


async def _risk(client: AsyncClient, admin: dict, identifier: str = "RISK-001") -> dict:
    r = await client.post("/api/v1/risks", headers=admin["headers"], json={
        "identifier": identifier, "title": "Laptop theft", "category": "physical",
    })
    return r.json()["data"]


async def _treatment(client: AsyncClient, admin: dict, risk_id: str, **overrides) -> dict:
    body = {"treatment_type": "mitigate", "title": "Full-disk encryption"}
    body.update(overrides)
    r = await client.post(f"/api/v1/risks/{risk_id}/treatments", headers=admin["headers"], json=body)
    assert r.status_code == 201, r.text
    return r.json()["data"]


@pytest.mark.asyncio
async def test_first_treatment_moves_risk_to_treating(client: AsyncClient, admin):
    risk = await _risk(client, admin)
    t = await _treatment(client, admin, risk["id"])
    assert t["status"] == "planned"
    assert t["risk_status"] == "treating"

    r = await client.get(
        f"/api/v1/audit-log?action=risk.status_changed&resource_id={risk['id']}", headers=admin["headers"],
    )
    entries = r.json()["data"]
    assert len(entries) == 1
    assert entries[0]["metadata"]["trigger"] == "treatment_created"
    assert entries[0]["metadata"]["to"] == "treating"


@pytest.mark.asyncio
async def test_second_treatment_does_not_retrigger(client: AsyncClient, admin):
    risk = await _risk(client, admin)
    await _treatment(client, admin, risk["id"])
    t2 = await _treatment(client, admin, risk["id"], title="Remote wipe")
    assert t2["risk_status"] == "treating"
    r = await client.get("/api/v1/audit-log?action=risk.status_changed", headers=admin["headers"])
    assert r.json()["meta"]["total"] == 1


@pytest.mark.asyncio
async def test_completing_last_treatment_moves_to_monitoring(client: AsyncClient, admin):
    risk = await _risk(client, admin)
    t1 = await _treatment(client, admin, risk["id"])
    t2 = await _treatment(client, admin, risk["id"], title="Remote wipe")

    r = await client.post(f"/api/v1/risks/{risk['id']}/treatments/{t1['id']}/complete",
                          headers=admin["headers"], json={"effectiveness_rating": "effective"})
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "verified"
    assert r.json()["data"]["risk_status"] == "treating"

    r = await client.put(f"/api/v1/risks/{risk['id']}/treatments/{t2['id']}", headers=admin["headers"],
                         json={"status": "cancelled"})
    assert r.status_code == 200

    detail = (await client.get(f"/api/v1/risks/{risk['id']}", headers=admin["headers"])).json()["data"]
    assert detail["status"] == "monitoring"
    assert detail["treatment_summary"]["verified"] == 1
    assert detail["treatment_summary"]["cancelled"] == 1
    assert detail["treatment_summary"]["total"] == 2


@pytest.mark.asyncio
async def test_complete_without_rating_is_implemented(client: AsyncClient, admin):
    risk = await _risk(client, admin)
    t = await _treatment(client, admin, risk["id"])
    r = await client.post(f"/api/v1/risks/{risk['id']}/treatments/{t['id']}/complete",
                          headers=admin["headers"], json={"actual_effort_hours": 6.5})
    data = r.json()["data"]
    assert data["status"] == "implemented"
    # implemented still counts as open work
    assert data["risk_status"] == "treating"

    r = await client.post(f"/api/v1/risks/{risk['id']}/treatments/{t['id']}/complete",
                          headers=admin["headers"], json={"effectiveness_rating": "effective"})
    assert r.json()["data"]["status"] == "verified"
    assert r.json()["data"]["risk_status"] == "monitoring"

    r = await client.post(f"/api/v1/risks/{risk['id']}/treatments/{t['id']}/complete",
                          headers=admin["headers"], json={})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_treatment_status_transitions_enforced(client: AsyncClient, admin):
    risk = await _risk(client, admin)
    t = await _treatment(client, admin, risk["id"])
    url = f"/api/v1/risks/{risk['id']}/treatments/{t['id']}"

    r = await client.put(url, headers=admin["headers"], json={"status": "verified"})
    assert r.status_code == 422

    r = await client.put(url, headers=admin["headers"], json={"status": "in_progress"})
    assert r.status_code == 200
    assert r.json()["data"]["started_at"] is not None


@pytest.mark.asyncio
async def test_expected_residual_score(client: AsyncClient, admin):
    risk = await _risk(client, admin)
    t = await _treatment(client, admin, risk["id"],
                         expected_residual_likelihood="rare", expected_residual_impact="major")
    assert t["expected_residual_score"] == 4
    assert t["expected_residual_severity"] == "low"


@pytest.mark.asyncio
async def test_overdue_flag(client: AsyncClient, admin):
    risk = await _risk(client, admin)
    t = await _treatment(client, admin, risk["id"], due_date="2000-01-01")
    assert t["is_overdue"] is True


@pytest.mark.asyncio
async def test_cannot_treat_archived_risk(client: AsyncClient, admin):
    risk = await _risk(client, admin)
    await client.post(f"/api/v1/risks/{risk['id']}/archive", headers=admin["headers"])
    r = await client.post(f"/api/v1/risks/{risk['id']}/treatments", headers=admin["headers"],
                          json={"treatment_type": "avoid", "title": "Stop using laptops"})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_treatment_owner_may_update(client: AsyncClient, admin):
    it_admin = await add_user(client, admin, "it_admin")
    risk = await _risk(client, admin)
    t = await _treatment(client, admin, risk["id"], owner_id=it_admin["user_id"])
    r = await client.put(f"/api/v1/risks/{risk['id']}/treatments/{t['id']}", headers=it_admin["headers"],
                         json={"notes": "Vendor contacted"})
    assert r.status_code == 200
    assert r.json()["data"]["notes"] == "Vendor contacted"

    viewer = await add_user(client, admin, "viewer")
    r = await client.put(f"/api/v1/risks/{risk['id']}/treatments/{t['id']}", headers=viewer["headers"],
                         json={"notes": "nope"})
    assert r.status_code == 403
