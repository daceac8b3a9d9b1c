"""
Pytest configuration and shared fixtures.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Sequence
from uuid import UUID

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import calldesk.calls.models  # noqa: F401
from calldesk.auth.jwt import JWTHandler
from calldesk.calls.models import Call, CallLog, CallStatus
from calldesk.calls.service import CallLifecycleService
from calldesk.config import Settings, get_settings
from calldesk.shared.database import Base, get_db_session
from calldesk.shared.locks import KeyedLock
from calldesk.telephony.config import ProviderType, TelephonyConfig
from calldesk.telephony.factory import get_telephony_config, get_telephony_provider
from calldesk.telephony.mock_adapter import MockTelephonyAdapter

TEST_JWT_SECRET = "test-secret-key-for-calldesk-tests-only"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------


class FakeCallStore:
    """Dict-backed call store."""

    def __init__(self) -> None:
        self.calls: dict[UUID, Call] = {}
        self.commits = 0

    async def add(self, call: Call) -> Call:
        self.calls[call.id] = call
        return call

    async def get(self, call_id: UUID, *, for_update: bool = False) -> Call | None:
        return self.calls.get(call_id)

    async def get_by_provider_call_id(
        self,
        provider_call_id: str,
        *,
        for_update: bool = False,
    ) -> Call | None:
        for call in self.calls.values():
            if call.provider_call_id == provider_call_id:
                return call
        return None

    async def save(self, call: Call) -> Call:
        return call

    async def list_for_user(
        self,
        user_id: str | None,
        *,
        status: CallStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[Sequence[Call], int]:
        items = [
            c
            for c in self.calls.values()
            if (user_id is None or c.user_id == user_id)
            and (status is None or c.status == status)
            and (start_date is None or _aware(c.start_time) >= start_date)
            and (end_date is None or _aware(c.start_time) <= end_date)
        ]
        items.sort(key=lambda c: c.start_time, reverse=True)
        return items[offset : offset + limit], len(items)

    async def commit(self) -> None:
        self.commits += 1


class FakeCallLogStore:
    """List-backed action log."""

    def __init__(self) -> None:
        self.entries: list[CallLog] = []

    async def append(self, entry: CallLog) -> CallLog:
        self.entries.append(entry)
        return entry

    async def list_for_call(self, call_id: UUID) -> Sequence[CallLog]:
        return [e for e in self.entries if e.call_id == call_id]

    def actions(self, call_id: UUID) -> list[str]:
        return [e.action for e in self.entries if e.call_id == call_id]


# ---------------------------------------------------------------------------
# Service-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def telephony_config() -> TelephonyConfig:
    return TelephonyConfig(
        provider_type=ProviderType.MOCK,
        enabled=True,
        twilio_account_sid="",
        twilio_auth_token="",
        twilio_from_number="+15550000001",
        webhook_base_url="https://hooks.example.com",
        validate_signatures=False,
        record_calls=True,
        agent_phone_number="+15550009999",
    )


@pytest.fixture
def mock_adapter() -> MockTelephonyAdapter:
    return MockTelephonyAdapter()


@pytest.fixture
def call_store() -> FakeCallStore:
    return FakeCallStore()


@pytest.fixture
def log_store() -> FakeCallLogStore:
    return FakeCallLogStore()


@pytest.fixture
def service(
    call_store: FakeCallStore,
    log_store: FakeCallLogStore,
    mock_adapter: MockTelephonyAdapter,
    telephony_config: TelephonyConfig,
) -> CallLifecycleService:
    return CallLifecycleService(
        store=call_store,
        log_store=log_store,
        gateway=mock_adapter,
        telephony_config=telephony_config,
        locks=KeyedLock(),
    )


# ---------------------------------------------------------------------------
# Database fixtures (aiosqlite)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        jwt_secret_key=TEST_JWT_SECRET,
        jwt_algorithm="HS256",
        database_url="sqlite+aiosqlite:///:memory:",
    )


@pytest.fixture
def jwt_handler(test_settings: Settings) -> JWTHandler:
    return JWTHandler(test_settings)


@pytest.fixture
def agent_token(jwt_handler: JWTHandler) -> str:
    return jwt_handler.create_access_token(user_id="agent-1", email="agent1@example.com", role="agent")


@pytest.fixture
def other_agent_token(jwt_handler: JWTHandler) -> str:
    return jwt_handler.create_access_token(user_id="agent-2", email="agent2@example.com", role="agent")


@pytest.fixture
def admin_token(jwt_handler: JWTHandler) -> str:
    return jwt_handler.create_access_token(user_id="admin-1", email="admin@example.com", role="admin")


@pytest.fixture
def expired_token(jwt_handler: JWTHandler) -> str:
    return jwt_handler.create_access_token(
        user_id="agent-1",
        email="agent1@example.com",
        role="agent",
        expires_delta=timedelta(minutes=-5),
    )


@pytest_asyncio.fixture
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
    mock_adapter: MockTelephonyAdapter,
    telephony_config: TelephonyConfig,
    test_settings: Settings,
) -> AsyncGenerator[AsyncClient, None]:
    from calldesk.main import app

    async def _override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = _override_get_db_session
    app.dependency_overrides[get_telephony_provider] = lambda: mock_adapter
    app.dependency_overrides[get_telephony_config] = lambda: telephony_config
    app.dependency_overrides[get_settings] = lambda: test_settings

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
