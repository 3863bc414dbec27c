"""
Shared pytest fixtures for the equipment backend test suite.

Provides:
    - engine / session_factory: fresh SQLite (aiosqlite) file DB per test
    - source: in-memory stand-in for the MSSQL feed
    - sync_engine: ReconciliationEngine wired to both
    - users: admin / dispatcher / programmer rows
    - app_client: httpx AsyncClient on the FastAPI app with DB overrides
    - token(): mint a bearer token for a role
"""

import os

# До импорта config: локальная БД, без фоновых задач
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SYNC_ENABLED"] = "false"
os.environ["RETENTION_ENABLED"] = "false"
os.environ["DEBUG"] = "false"
os.environ["JWT_SECRET"] = "test-secret"

from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest

from core.errors import SourceUnavailable
from models import Base, User, UserRole, get_session, get_session_factory, make_session_factory
from services.reconciliation import ReconciliationEngine
from services.source_feed import ExternalRecord
from sqlalchemy.ext.asyncio import create_async_engine

DOWN, READY, STANDBY, DELAY = 331, 332, 333, 334


def make_record(equipment_id, status_id=DOWN, reason_code="ENGINE", **kw):
    kw.setdefault("equipment_name", f"EX{equipment_id}")
    kw.setdefault("equipment_type", "Shovel")
    kw.setdefault("model", "PC4000")
    kw.setdefault("started_at", datetime(2026, 10, 18, 2, 0, tzinfo=timezone.utc))
    return ExternalRecord(
        equipment_id=equipment_id,
        status_id=status_id,
        reason_code=reason_code,
        **kw,
    )


class FakeSource:
    """Stands in for SourceFeedAdapter: returns whatever ``records`` holds."""

    def __init__(self):
        self.records: list[ExternalRecord] = []
        self.fail = False
        self.calls = 0

    async def fetch_active_downtime_records(self):
        self.calls += 1
        if self.fail:
            raise SourceUnavailable("MSSQL unavailable: connection refused")
        return list(self.records)

    async def close(self):
        pass


@pytest.fixture()
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'equipment.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def source():
    return FakeSource()


@pytest.fixture()
def sync_engine(source, session_factory):
    return ReconciliationEngine(source, session_factory, interval=0.01)


@pytest.fixture()
async def users(session_factory):
    async with session_factory() as session:
        async with session.begin():
            rows = {
                "admin": User(id=1, username="admin", full_name="Администратор", role=UserRole.admin),
                "dispatcher": User(id=2, username="disp", full_name="Диспетчер Смены", role=UserRole.dispatcher),
                "programmer": User(id=3, username="dev", full_name="Программист", role=UserRole.programmer),
                "user": User(id=4, username="viewer", full_name="Наблюдатель", role=UserRole.user),
            }
            session.add_all(rows.values())
    return rows


def make_token(role: str, user_id: int = 1, *, expires_in: int = 3600, secret: str = "test-secret") -> str:
    payload = {
        "sub": str(user_id),
        "username": role,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture()
def token():
    ids = {"admin": 1, "dispatcher": 2, "programmer": 3, "user": 4}

    def _auth(role: str) -> dict:
        return {"Authorization": f"Bearer {make_token(role, ids.get(role, 99))}"}

    return _auth


@pytest.fixture()
async def app_client(session_factory, users):
    from main import app

    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.state.redis = None
    app.state.sync_engine = None

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    app.state.sync_engine = None
