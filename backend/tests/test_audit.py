"""Audit helper: caller errors propagate, a failed audit row does not; SQLite savepoints."""
import pytest
from httpx import AsyncClient
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from conftest import TestSession, add_user
from grc_api.database import install_sqlite_listeners
from grc_api.middleware.audit import audit_log
from grc_api.models.audit import AuditLog
from grc_api.models.user import User


@pytest.mark.asyncio
async def test_pending_conflict_surfaces_as_integrity_error(client: AsyncClient, admin):
    viewer = await add_user(client, admin, "viewer")

    async with TestSession() as s:
        user = await s.get(User, viewer["user_id"])
        user.email = "owner@acme.io"
        with pytest.raises(IntegrityError):
            await audit_log(s, "user.updated", "user", user.id, {"email": user.email},
                            org_id=admin["org_id"], actor_id=admin["user_id"])
            await s.commit()
        await s.rollback()

    async with TestSession() as s:
        user = await s.get(User, viewer["user_id"])
        assert user.email == "viewer@acme.io"
        written = (await s.execute(
            select(func.count(AuditLog.id)).where(AuditLog.action == "user.updated")
        )).scalar()
        assert written == 0


@pytest.mark.asyncio
async def test_failed_audit_row_keeps_the_change(client: AsyncClient, admin):
    viewer = await add_user(client, admin, "viewer")

    async with TestSession() as s:
        user = await s.get(User, viewer["user_id"])
        user.first_name = "Renamed"
        # resource_type is NOT NULL
        await audit_log(s, "user.updated", None, user.id, org_id=admin["org_id"])
        await s.commit()

    async with TestSession() as s:
        user = await s.get(User, viewer["user_id"])
        assert user.first_name == "Renamed"


@pytest.mark.asyncio
async def test_sqlite_engine_nests_savepoints():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    install_sqlite_listeners(engine)
    try:
        async with engine.connect() as conn:
            assert (await conn.execute(text("PRAGMA foreign_keys"))).scalar() == 1
            await conn.execute(text("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT NOT NULL)"))
            await conn.commit()

            await conn.execute(text("INSERT INTO notes (body) VALUES ('kept')"))
            with pytest.raises(IntegrityError):
                async with conn.begin_nested():
                    await conn.execute(text("INSERT INTO notes (body) VALUES (NULL)"))
            await conn.commit()

            rows = (await conn.execute(text("SELECT body FROM notes"))).scalars().all()
            assert rows == ["kept"]
    finally:
        await engine.dispose()
