"""Control library: CRUD, lifecycle, bulk status, ownership and mappings."""
import pytest
from httpx import AsyncClient

from conftest import activate_catalog, add_user, create_control


@pytest.mark.asyncio
async def test_create_control_defaults_to_draft(client: AsyncClient, admin):
    r = await client.post("/api/v1/controls", headers=admin["headers"], json={
        "identifier": "CTRL-AC-010", "title": "MFA for admins", "category": "technical",
    })
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["status"] == "draft"
    assert data["is_custom"] is True
    assert data["mappings_count"] == 0
    assert data["created_at"].endswith("Z")


@pytest.mark.asyncio
async def test_create_control_validation(client: AsyncClient, admin):
    r = await client.post("/api/v1/controls", headers=admin["headers"], json={
        "identifier": "CTRL-1", "title": "X", "category": "magical",
    })
    assert r.status_code == 400
    assert r.json()["error"]["message"] == "Invalid control category"

    r = await client.post("/api/v1/controls", headers=admin["headers"], json={
        "identifier": "CTRL-1", "title": "X", "category": "technical", "metadata": {"blob": "x" * 11000},
    })
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_duplicate_identifier_conflicts_per_org(client: AsyncClient, admin, other_org):
    await create_control(client, admin, identifier="CTRL-DUP")
    r = await client.post("/api/v1/controls", headers=admin["headers"], json={
        "identifier": "CTRL-DUP", "title": "Again", "category": "physical",
    })
    assert r.status_code == 409
    # same identifier in another tenant is fine
    await create_control(client, other_org, identifier="CTRL-DUP")


@pytest.mark.asyncio
async def test_viewer_cannot_create(client: AsyncClient, admin):
    viewer = await add_user(client, admin, "viewer")
    r = await client.post("/api/v1/controls", headers=viewer["headers"], json={
        "identifier": "CTRL-1", "title": "X", "category": "technical",
    })
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_other_tenant_control_is_404(client: AsyncClient, admin, other_org, active_control):
    r = await client.get(f"/api/v1/controls/{active_control['id']}", headers=other_org["headers"])
    assert r.status_code == 404
    assert r.json()["error"]["message"] == "Control not found"


@pytest.mark.asyncio
async def test_list_filters_and_search(client: AsyncClient, admin):
    await create_control(client, admin, identifier="CTRL-A", title="Encrypt backups")
    await create_control(client, admin, identifier="CTRL-B", title="Badge access", category="physical")
    r = await client.get("/api/v1/controls?category=physical", headers=admin["headers"])
    assert [c["identifier"] for c in r.json()["data"]] == ["CTRL-B"]

    r = await client.get("/api/v1/controls?search=backup", headers=admin["headers"])
    assert [c["identifier"] for c in r.json()["data"]] == ["CTRL-A"]

    r = await client.get("/api/v1/controls?sort=identifier&order=desc", headers=admin["headers"])
    assert [c["identifier"] for c in r.json()["data"]] == ["CTRL-B", "CTRL-A"]


@pytest.mark.asyncio
async def test_status_transitions(client: AsyncClient, admin, active_control):
    url = f"/api/v1/controls/{active_control['id']}/status"
    r = await client.put(url, headers=admin["headers"], json={"status": "draft"})
    assert r.status_code == 422
    assert r.json()["error"]["message"] == "Cannot transition from 'active' to 'draft'"

    r = await client.put(url, headers=admin["headers"], json={"status": "under_review"})
    assert r.status_code == 200
    assert r.json()["data"]["previous_status"] == "active"


@pytest.mark.asyncio
async def test_delete_deprecates(client: AsyncClient, admin, active_control):
    r = await client.delete(f"/api/v1/controls/{active_control['id']}", headers=admin["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "deprecated"

    r = await client.delete(f"/api/v1/controls/{active_control['id']}", headers=admin["headers"])
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_bulk_status_reports_each_item(client: AsyncClient, admin):
    draft = await create_control(client, admin, identifier="CTRL-D", status="draft")
    deprecated = await create_control(client, admin, identifier="CTRL-X", status="deprecated")
    r = await client.post("/api/v1/controls/bulk-status", headers=admin["headers"], json={
        "control_ids": [draft["id"], deprecated["id"], "missing-id"],
        "status": "active",
    })
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["updated"] == 1
    assert data["failed"] == 2
    assert [x["success"] for x in data["results"]] == [True, False, False]


@pytest.mark.asyncio
async def test_owner_may_edit_and_metadata_merges(client: AsyncClient, admin):
    owner = await add_user(client, admin, "it_admin")
    ctrl = await create_control(client, admin, owner_id=owner["user_id"], metadata={"a": 1})
    r = await client.put(f"/api/v1/controls/{ctrl['id']}", headers=owner["headers"],
                         json={"title": "Renamed", "metadata": {"b": 2}})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["title"] == "Renamed"
    assert data["metadata"] == {"a": 1, "b": 2}
    assert data["owner"]["id"] == owner["user_id"]

    stranger = await add_user(client, admin, "vendor_manager")
    r = await client.put(f"/api/v1/controls/{ctrl['id']}", headers=stranger["headers"], json={"title": "Nope"})
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_change_owner_rejects_same_primary_and_secondary(client: AsyncClient, admin, active_control):
    r = await client.put(f"/api/v1/controls/{active_control['id']}/owner", headers=admin["headers"],
                         json={"owner_id": admin["user_id"], "secondary_owner_id": admin["user_id"]})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_mappings_skip_invalid_and_duplicates(client: AsyncClient, admin, catalog, active_control):
    _, reqs = await activate_catalog(client, admin, catalog)
    url = f"/api/v1/controls/{active_control['id']}/mappings"
    r = await client.post(url, headers=admin["headers"], json={"mappings": [
        {"requirement_id": reqs[0]["id"]},
        {"requirement_id": reqs[0]["id"]},
        {"requirement_id": reqs[1]["id"], "strength": "bogus"},
        {"requirement_id": "not-a-requirement"},
        {"requirement_id": reqs[2]["id"], "strength": "compensating"},
    ]})
    assert r.status_code == 201
    assert r.json()["data"]["created"] == 2

    r = await client.get(f"/api/v1/controls/{active_control['id']}", headers=admin["headers"])
    detail = r.json()["data"]
    assert detail["mappings_count"] == 2
    assert detail["frameworks"][0]["identifier"] == "soc2"
    assert detail["frameworks"][0]["mappings_count"] == 2


@pytest.mark.asyncio
async def test_mapping_requires_activated_framework(client: AsyncClient, admin, catalog, active_control, db):
    from sqlalchemy import select

    from grc_api.models.framework import Requirement

    req_id = (await db.execute(select(Requirement.id).limit(1))).scalar_one()
    await db.rollback()  # release the shared StaticPool connection before the app begins its own transaction
    r = await client.post(f"/api/v1/controls/{active_control['id']}/mappings", headers=admin["headers"],
                          json={"requirement_id": req_id})
    assert r.json()["data"]["created"] == 0


@pytest.mark.asyncio
async def test_stats(client: AsyncClient, admin, catalog):
    await activate_catalog(client, admin, catalog)
    await create_control(client, admin, identifier="CTRL-1")
    await create_control(client, admin, identifier="CTRL-2", status="draft", category="physical")
    r = await client.get("/api/v1/controls/stats", headers=admin["headers"])
    data = r.json()["data"]
    assert data["total"] == 2
    assert data["by_status"]["active"] == 1
    assert data["by_category"]["physical"] == 1
    assert data["unmapped_count"] == 2
    assert data["frameworks_coverage"][0]["gaps"] == 10
