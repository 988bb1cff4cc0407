# tests/conftest.py — Shared test fixtures
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import List

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from jose import jwt

# Each test gets its own SQLite file; this URL only feeds the module-level engine in database.py
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("STORE_RETRY_BACKOFF", "0.01")

from database import build_engine, build_session_factory, init_db, close_db
from dependencies import build_services
from events import ChannelFanout, DomainEvent
from models import User, utcnow
from main import app


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'workhub.db'}", echo=False)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def services(session_factory):
    return build_services(session_factory, ChannelFanout())


@pytest_asyncio.fixture(scope="function")
async def client(services):
    """HTTP test client bound to the per-test services"""
    previous = app.state.services
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.services = previous


async def create_user(session_factory, email: str, display_name: str) -> User:
    user = User(id=str(uuid.uuid4()), email=email, display_name=display_name, created_at=utcnow())
    async with session_factory() as session:
        async with session.begin():
            session.add(user)
    return user


@pytest_asyncio.fixture
async def owner(session_factory):
    """U1: creates workspaces and projects"""
    return await create_user(session_factory, "owner@workhub.dev", "Owner")


@pytest_asyncio.fixture
async def teammate(session_factory):
    """U2: joins as a plain member"""
    return await create_user(session_factory, "teammate@workhub.dev", "Teammate")


@pytest_asyncio.fixture
async def outsider(session_factory):
    """U3: belongs to nothing"""
    return await create_user(session_factory, "outsider@workhub.dev", "Outsider")


@pytest_asyncio.fixture
async def workspace(services, owner):
    return await services.workspaces.create_workspace(
        {"name": "Acme", "slug": "acme"}, owner.id,
    )


@pytest_asyncio.fixture
async def project(services, owner, workspace):
    return await services.projects.create_project(
        {"workspace_id": workspace.id, "name": "Engineering", "key": "ENG"}, owner.id,
    )


class EventRecorder:
    """Subscribes to channels and keeps every event it is handed"""

    def __init__(self, fanout: ChannelFanout):
        self.fanout = fanout
        self.events: List[DomainEvent] = []

    async def _handle(self, event: DomainEvent) -> None:
        self.events.append(event)

    def listen(self, *channels: str) -> "EventRecorder":
        for channel in channels:
            self.fanout.subscribe(channel, self._handle)
        return self

    def types(self) -> List[str]:
        return [e.type.value for e in self.events]

    def of_type(self, event_type: str) -> List[DomainEvent]:
        return [e for e in self.events if e.type.value == event_type]


@pytest.fixture
def recorder(services):
    return EventRecorder(services.fanout)


async def activity_for(services, **filters):
    """Audit rows matching filters, oldest first"""
    async def _run(tx):
        return await tx.list_activity(limit=1000, **filters)

    rows = await services.store.read(_run)
    return list(reversed(rows))


def make_token(user: User, expires_in: timedelta = timedelta(minutes=30), **extra) -> str:
    claims = {
        "sub": user.id,
        "email": user.email,
        "name": user.display_name,
        "type": "access",
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    claims.update(extra)
    return jwt.encode(claims, os.environ["JWT_SECRET_KEY"], algorithm="HS256")


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    return {"Authorization": f"Bearer {make_token(user)}"}
