"""Framework catalog, activation, scoping and coverage."""
import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import activate_catalog, create_control
from grc_api.services.catalog_import import CatalogImportError, import_from_yaml

TREE_DOC = """
framework:
  identifier: iso27001
  name: ISO 27001
  category: security_privacy
version:
  version: "2022"
  status: active
requirements:
  - identifier: A.5
    title: Organizational controls
    children:
      - identifier: A.5.1
        title: Policies for information security
      - identifier: A.5.2
        title: Information security roles
  - identifier: A.8
    title: Technological controls
    children:
      - identifier: A.8.1
        title: User endpoint devices
"""


async def _coverage(client: AsyncClient, admin: dict, org_framework_id: str) -> dict:
    r = await client.get(f"/api/v1/org-frameworks/{org_framework_id}/coverage", headers=admin["headers"])
    assert r.status_code == 200
    return r.json()["data"]["stats"]


# ═══════════════════ CATALOG ═══════════════════

@pytest.mark.asyncio
async def test_list_and_get_framework(client: AsyncClient, admin, catalog):
    r = await client.get("/api/v1/frameworks", headers=admin["headers"])
    assert r.status_code == 200
    items = r.json()["data"]
    assert len(items) == 1
    assert items[0]["identifier"] == "soc2"
    assert items[0]["versions_count"] == 1

    r = await client.get(f"/api/v1/frameworks/{catalog['framework_id']}", headers=admin["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["versions"][0]["total_requirements"] == 10


@pytest.mark.asyncio
async def test_unknown_framework_404(client: AsyncClient, admin):
    r = await client.get("/api/v1/frameworks/00000000-0000-0000-0000-000000000000", headers=admin["headers"])
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_requirements_tree_and_flat(client: AsyncClient, admin, db: AsyncSession):
    fv = await import_from_yaml(db, TREE_DOC)
    await db.commit()
    base = f"/api/v1/frameworks/{fv.framework_id}/versions/{fv.id}/requirements"

    r = await client.get(f"{base}?format=tree", headers=admin["headers"])
    tree = r.json()["data"]
    assert [n["identifier"] for n in tree] == ["A.5", "A.8"]
    assert [c["identifier"] for c in tree[0]["children"]] == ["A.5.1", "A.5.2"]
    assert tree[0]["is_assessable"] is False

    r = await client.get(f"{base}?assessable_only=true", headers=admin["headers"])
    assert r.json()["meta"]["total"] == 3
    assert [x["identifier"] for x in r.json()["data"]] == ["A.5.1", "A.5.2", "A.8.1"]


@pytest.mark.asyncio
async def test_import_rejects_duplicate_version(db: AsyncSession):
    await import_from_yaml(db, TREE_DOC)
    await db.commit()
    with pytest.raises(CatalogImportError):
        await import_from_yaml(db, TREE_DOC)


@pytest.mark.asyncio
async def test_import_rejects_unknown_category(db: AsyncSession):
    with pytest.raises(CatalogImportError):
        await import_from_yaml(db, TREE_DOC.replace("security_privacy", "astrology"))


# ═══════════════════ ACTIVATION ═══════════════════

@pytest.mark.asyncio
async def test_activate_framework_twice_conflicts(client: AsyncClient, admin, catalog):
    of, _ = await activate_catalog(client, admin, catalog)
    assert of["status"] == "active"
    assert of["stats"]["in_scope"] == 10

    r = await client.post("/api/v1/org-frameworks", headers=admin["headers"], json={
        "framework_id": catalog["framework_id"], "version_id": catalog["version_id"],
    })
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_activation_is_per_tenant(client: AsyncClient, admin, other_org, catalog):
    await activate_catalog(client, admin, catalog)
    r = await client.get("/api/v1/org-frameworks", headers=other_org["headers"])
    assert r.json()["data"] == []


@pytest.mark.asyncio
async def test_deactivate_preserves_row(client: AsyncClient, admin, catalog):
    of, _ = await activate_catalog(client, admin, catalog)
    r = await client.delete(f"/api/v1/org-frameworks/{of['id']}", headers=admin["headers"])
    assert r.status_code == 200
    r = await client.get("/api/v1/org-frameworks?status=inactive", headers=admin["headers"])
    assert len(r.json()["data"]) == 1


# ═══════════════════ COVERAGE / SCOPING ═══════════════════

@pytest.mark.asyncio
async def test_coverage_with_mappings_and_scoping(client: AsyncClient, admin, catalog):
    of, reqs = await activate_catalog(client, admin, catalog)

    for i in range(4):
        ctrl = await create_control(client, admin, identifier=f"CTRL-{i}")
        r = await client.post(f"/api/v1/controls/{ctrl['id']}/mappings", headers=admin["headers"],
                              json={"requirement_id": reqs[i]["id"]})
        assert r.json()["data"]["created"] == 1

    for req in reqs[8:10]:
        r = await client.put(
            f"/api/v1/org-frameworks/{of['id']}/requirements/{req['id']}/scope",
            headers=admin["headers"],
            json={"in_scope": False, "justification": "No cardholder data"},
        )
        assert r.status_code == 200

    stats = await _coverage(client, admin, of["id"])
    assert stats["total_requirements"] == 10
    assert stats["in_scope"] == 8
    assert stats["mapped"] == 4
    assert stats["unmapped"] == 4
    assert stats["coverage_pct"] == 50.0

    r = await client.get(f"/api/v1/org-frameworks/{of['id']}/coverage?status=out_of_scope",
                         headers=admin["headers"])
    assert len(r.json()["data"]["requirements"]) == 2


@pytest.mark.asyncio
async def test_mapping_create_then_delete_restores_coverage(client: AsyncClient, admin, catalog, active_control):
    of, reqs = await activate_catalog(client, admin, catalog)
    before = await _coverage(client, admin, of["id"])

    r = await client.post(f"/api/v1/controls/{active_control['id']}/mappings", headers=admin["headers"],
                          json={"requirement_id": reqs[0]["id"], "strength": "supporting"})
    mapping_id = r.json()["data"]["mappings"][0]["id"]
    assert (await _coverage(client, admin, of["id"]))["mapped"] == 1

    r = await client.delete(f"/api/v1/controls/{active_control['id']}/mappings/{mapping_id}",
                            headers=admin["headers"])
    assert r.status_code == 200
    assert await _coverage(client, admin, of["id"]) == before


@pytest.mark.asyncio
async def test_scope_out_then_reset_restores_pct(client: AsyncClient, admin, catalog, active_control):
    of, reqs = await activate_catalog(client, admin, catalog)
    await client.post(f"/api/v1/controls/{active_control['id']}/mappings", headers=admin["headers"],
                      json={"requirement_id": reqs[0]["id"]})
    before = (await _coverage(client, admin, of["id"]))["coverage_pct"]
    assert before == 10.0

    url = f"/api/v1/org-frameworks/{of['id']}/requirements/{reqs[5]['id']}/scope"
    await client.put(url, headers=admin["headers"], json={"in_scope": False, "justification": "N/A"})
    assert (await _coverage(client, admin, of["id"]))["coverage_pct"] == 11.11

    r = await client.delete(url, headers=admin["headers"])
    assert r.status_code == 200
    assert (await _coverage(client, admin, of["id"]))["coverage_pct"] == before

    r = await client.delete(url, headers=admin["headers"])
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_scope_out_requires_justification(client: AsyncClient, admin, catalog):
    of, reqs = await activate_catalog(client, admin, catalog)
    r = await client.put(f"/api/v1/org-frameworks/{of['id']}/requirements/{reqs[0]['id']}/scope",
                         headers=admin["headers"], json={"in_scope": False, "justification": "   "})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_scoping_list_filters(client: AsyncClient, admin, catalog):
    of, reqs = await activate_catalog(client, admin, catalog)
    await client.put(f"/api/v1/org-frameworks/{of['id']}/requirements/{reqs[0]['id']}/scope",
                     headers=admin["headers"], json={"in_scope": False, "justification": "Out"})
    r = await client.get(f"/api/v1/org-frameworks/{of['id']}/scoping?in_scope=false", headers=admin["headers"])
    data = r.json()["data"]
    assert len(data) == 1
    assert data[0]["justification"] == "Out"
