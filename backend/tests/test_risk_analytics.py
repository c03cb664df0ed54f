"""Heat map, gap analysis and register statistics."""
import pytest
from httpx import AsyncClient

from conftest import add_user


async def _risk(client: AsyncClient, admin: dict, identifier: str, likelihood: str, impact: str, **extra) -> dict:
    body = {
        "identifier": identifier,
        "title": f"Risk {identifier}",
        "category": "operational",
        "initial_assessment": {
            "inherent_likelihood": likelihood, "inherent_impact": impact,
            "residual_likelihood": likelihood, "residual_impact": impact,
        },
    }
    body.update(extra)
    r = await client.post("/api/v1/risks", headers=admin["headers"], json=body)
    assert r.status_code == 201, r.text
    return r.json()["data"]


@pytest.mark.asyncio
async def test_heat_map_grid(client: AsyncClient, admin):
    await _risk(client, admin, "RISK-1", "almost_certain", "severe", risk_appetite_threshold=10)
    await _risk(client, admin, "RISK-2", "almost_certain", "severe")
    await _risk(client, admin, "RISK-3", "rare", "minor")

    r = await client.get("/api/v1/risks/heat-map", headers=admin["headers"])
    assert r.status_code == 200
    data = r.json()["data"]
    assert len(data["grid"]) == 25
    top = data["grid"][0]
    assert (top["likelihood"], top["impact"], top["score"]) == ("almost_certain", "severe", 25)
    assert top["count"] == 2
    assert [x["identifier"] for x in top["risks"]] == ["RISK-1", "RISK-2"]

    summary = data["summary"]
    assert summary["total_risks"] == 3
    assert summary["by_severity"]["critical"] == 2
    assert summary["by_severity"]["low"] == 1
    assert summary["average_score"] == 17.33
    assert summary["appetite_breaches"] == 1


@pytest.mark.asyncio
async def test_heat_map_skips_archived_and_unscored(client: AsyncClient, admin):
    risk = await _risk(client, admin, "RISK-1", "likely", "major")
    await client.post("/api/v1/risks", headers=admin["headers"],
                      json={"identifier": "RISK-2", "title": "Unscored", "category": "operational"})
    await client.post(f"/api/v1/risks/{risk['id']}/archive", headers=admin["headers"])

    r = await client.get("/api/v1/risks/heat-map", headers=admin["headers"])
    assert r.json()["data"]["summary"]["total_risks"] == 0
    assert r.json()["data"]["summary"]["average_score"] == 0.0


@pytest.mark.asyncio
async def test_gaps(client: AsyncClient, admin, active_control):
    high = await _risk(client, admin, "RISK-HIGH", "likely", "major")
    covered = await _risk(client, admin, "RISK-COVERED", "possible", "minor")
    await client.post(f"/api/v1/risks/{covered['id']}/treatments", headers=admin["headers"],
                      json={"treatment_type": "mitigate", "title": "Patch"})
    await client.post(f"/api/v1/risks/{covered['id']}/controls", headers=admin["headers"],
                      json={"control_id": active_control["id"]})

    r = await client.get("/api/v1/risks/gaps", headers=admin["headers"])
    assert r.status_code == 200
    body = r.json()
    assert body["meta"]["total_gaps"] == 1
    assert body["data"]["summary"]["total_active_risks"] == 2
    assert body["data"]["summary"]["high_risks_without_controls"] == 1

    gap = body["data"]["gaps"][0]
    assert gap["risk"]["id"] == high["id"]
    assert gap["risk"]["severity"] == "high"
    assert set(gap["gap_types"]) == {"no_treatments", "no_controls", "high_without_controls"}
    assert gap["recommendation"]

    r = await client.get("/api/v1/risks/gaps?min_severity=critical", headers=admin["headers"])
    assert r.json()["meta"]["total_gaps"] == 0


@pytest.mark.asyncio
async def test_gaps_restricted_to_reviewers(client: AsyncClient, admin):
    auditor = await add_user(client, admin, "auditor")
    viewer = await add_user(client, admin, "viewer")
    assert (await client.get("/api/v1/risks/gaps", headers=auditor["headers"])).status_code == 200
    assert (await client.get("/api/v1/risks/gaps", headers=viewer["headers"])).status_code == 403


@pytest.mark.asyncio
async def test_stats(client: AsyncClient, admin):
    await _risk(client, admin, "RISK-1", "likely", "major")
    await _risk(client, admin, "RISK-2", "unlikely", "minor")

    r = await client.get("/api/v1/risks/stats", headers=admin["headers"])
    data = r.json()["data"]
    assert data["total_risks"] == 2
    assert data["by_status"]["identified"] == 2
    assert data["by_category"] == {"operational": 2}
    assert data["by_severity"]["high"] == 1
    assert data["by_severity"]["low"] == 1
    assert data["scoring_summary"]["average_residual_score"] == 10.0
    assert data["scoring_summary"]["highest_residual"]["score"] == 16
    assert data["control_coverage"]["risks_without_controls"] == 2
    assert any(e["action"] == "risk.created" for e in data["recent_activity"])


@pytest.mark.asyncio
async def test_analytics_are_tenant_scoped(client: AsyncClient, admin, other_org):
    await _risk(client, admin, "RISK-1", "likely", "major")
    r = await client.get("/api/v1/risks/stats", headers=other_org["headers"])
    assert r.json()["data"]["total_risks"] == 0
    r = await client.get("/api/v1/risks/heat-map", headers=other_org["headers"])
    assert r.json()["data"]["summary"]["total_risks"] == 0
