"""
Shared test fixtures — in-memory SQLite async database + httpx AsyncClient.

Strategy:
1. Set DATABASE_URL (and a cheap bcrypt cost) before grc_api loads its settings
2. One StaticPool engine so every session sees the same in-memory database
3. Routers get our session through a dependency override; outbound
   notifications go through an httpx.MockTransport
"""
import os
from collections.abc import AsyncGenerator

# ── 1. Environment ──
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DEBUG"] = "false"
os.environ["TESTING"] = "true"
os.environ["BCRYPT_COST"] = "4"

import httpx  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from grc_api.database import get_session, install_sqlite_listeners  # noqa: E402
from grc_api.main import app as fastapi_app  # noqa: E402
from grc_api.models import Base  # noqa: E402
from grc_api.services.notifications import Notifier, get_notifier  # noqa: E402

# ── 2. Test engine (SQLite in-memory) ──
TEST_ENGINE = create_async_engine(
    "sqlite+aiosqlite://",
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSession = async_sessionmaker(
    TEST_ENGINE,
    class_=AsyncSession,
    expire_on_commit=False,
)


install_sqlite_listeners(TEST_ENGINE)


# ── 3. Dependency overrides ──
async def _test_get_session() -> AsyncGenerator[AsyncSession, None]:
    async with TestSession() as session:
        yield session


fastapi_app.dependency_overrides[get_session] = _test_get_session

PASSWORD = "Str0ng!Passw0rd"


class OutboundRecorder:
    """Captures outbound notification requests; ``status`` is the reply code."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status = 200
        self.raise_timeout = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(self.status, text="ok")


# ── Fixtures ──

@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Create all tables before each test, drop after."""
    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSession() as session:
        yield session


@pytest_asyncio.fixture
async def outbound():
    recorder = OutboundRecorder()
    notifier = Notifier(transport=httpx.MockTransport(recorder.handler))
    fastapi_app.dependency_overrides[get_notifier] = lambda: notifier
    recorder.notifier = notifier
    yield recorder
    fastapi_app.dependency_overrides.pop(get_notifier, None)


# ── Seed data helpers ──

async def register(client: AsyncClient, org_name: str = "Acme Corp", email: str = "owner@acme.io") -> dict:
    resp = await client.post("/api/v1/auth/register", json={
        "email": email,
        "password": PASSWORD,
        "first_name": "Olivia",
        "last_name": "Owner",
        "org_name": org_name,
    })
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    return {
        "user_id": data["user"]["id"],
        "org_id": data["organization"]["id"],
        "access_token": data["access_token"],
        "refresh_token": data["refresh_token"],
        "headers": {"Authorization": f"Bearer {data['access_token']}"},
    }


async def add_user(client: AsyncClient, admin: dict, role: str, email: str | None = None) -> dict:
    email = email or f"{role}@acme.io"
    resp = await client.post("/api/v1/users", headers=admin["headers"], json={
        "email": email,
        "password": PASSWORD,
        "first_name": role.replace("_", " ").title(),
        "last_name": "User",
        "role": role,
    })
    assert resp.status_code == 201, resp.text
    user_id = resp.json()["data"]["id"]
    login = await client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
    assert login.status_code == 200, login.text
    token = login.json()["data"]["access_token"]
    return {"user_id": user_id, "headers": {"Authorization": f"Bearer {token}"}}


async def create_control(client: AsyncClient, admin: dict, identifier: str = "CTRL-AC-001", **extra) -> dict:
    body = {"identifier": identifier, "title": f"Control {identifier}", "category": "technical", "status": "active"}
    body.update(extra)
    resp = await client.post("/api/v1/controls", headers=admin["headers"], json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


async def create_test(client: AsyncClient, admin: dict, control_id: str, identifier: str = "TST-AC-001", **extra) -> dict:
    body = {
        "identifier": identifier,
        "title": f"Test {identifier}",
        "test_type": "access_control",
        "severity": "high",
        "control_id": control_id,
        "schedule_interval_min": 60,
    }
    body.update(extra)
    resp = await client.post("/api/v1/tests", headers=admin["headers"], json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


async def activate_test(client: AsyncClient, admin: dict, test_id: str) -> None:
    resp = await client.put(f"/api/v1/tests/{test_id}/status", headers=admin["headers"], json={"status": "active"})
    assert resp.status_code == 200, resp.text


@pytest_asyncio.fixture
async def admin(client: AsyncClient) -> dict:
    return await register(client)


@pytest_asyncio.fixture
async def other_org(client: AsyncClient) -> dict:
    return await register(client, org_name="Globex", email="owner@globex.io")


@pytest_asyncio.fixture
async def active_control(client: AsyncClient, admin: dict) -> dict:
    return await create_control(client, admin)


@pytest_asyncio.fixture
async def catalog(db: AsyncSession) -> dict:
    """SOC 2 style framework with one active version of 10 assessable requirements."""
    from grc_api.services.catalog_import import import_from_yaml

    reqs = "\n".join(
        f"  - identifier: CC{i}\n    title: Requirement CC{i}" for i in range(1, 11)
    )
    doc = f"""
framework:
  identifier: soc2
  name: SOC 2
  category: security_privacy
version:
  version: "2017"
  display_name: SOC 2 (2017)
  status: active
requirements:
{reqs}
"""
    fv = await import_from_yaml(db, doc)
    await db.commit()
    return {"framework_id": fv.framework_id, "version_id": fv.id}


async def activate_catalog(client: AsyncClient, admin: dict, catalog: dict) -> tuple[dict, list[dict]]:
    """Activate the catalog framework; returns (org_framework, requirements ordered by identifier)."""
    resp = await client.post("/api/v1/org-frameworks", headers=admin["headers"], json={
        "framework_id": catalog["framework_id"],
        "version_id": catalog["version_id"],
    })
    assert resp.status_code == 201, resp.text
    reqs = await client.get(
        f"/api/v1/frameworks/{catalog['framework_id']}/versions/{catalog['version_id']}/requirements",
        headers=admin["headers"],
    )
    return resp.json()["data"], reqs.json()["data"]


async def create_rule(client: AsyncClient, admin: dict, name: str = "Failing tests", **extra) -> dict:
    body = {"name": name, "alert_severity": "high", "sla_hours": 24}
    body.update(extra)
    resp = await client.post("/api/v1/alert-rules", headers=admin["headers"], json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


async def execute_run(
    client: AsyncClient, admin: dict, outcomes: dict[str, str], notifier: Notifier | None = None,
) -> str:
    """Start a manual run for ``outcomes`` (test id -> result status) and drive it as a worker would."""
    from grc_api.schemas.test import ResultReport
    from grc_api.services.execution import claim_run, finish_run, record_result

    resp = await client.post("/api/v1/test-runs", headers=admin["headers"], json={"test_ids": list(outcomes)})
    assert resp.status_code == 201, resp.text
    run_id = resp.json()["data"]["id"]

    async with TestSession() as s:
        run = await claim_run(s, run_id, worker_id="worker-1")
        for test_id, status in outcomes.items():
            await record_result(s, run, ResultReport(test_id=test_id, status=status, message=f"check {status}"), notifier)
        await finish_run(s, run)
    return run_id


@pytest_asyncio.fixture
async def monitored(client: AsyncClient, admin: dict, active_control: dict) -> dict:
    """An active test on ``active_control``."""
    test = await create_test(client, admin, active_control["id"])
    await activate_test(client, admin, test["id"])
    return {"control": active_control, "test": test}


@pytest_asyncio.fixture
async def open_alert(client: AsyncClient, admin: dict, monitored: dict) -> dict:
    """One ``open`` alert raised by a failing result."""
    await create_rule(client, admin)
    await execute_run(client, admin, {monitored["test"]["id"]: "fail"})
    resp = await client.get("/api/v1/alerts", headers=admin["headers"])
    assert resp.json()["meta"]["total"] == 1, resp.text
    return resp.json()["data"][0]
