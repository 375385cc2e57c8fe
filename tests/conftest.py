"""
Test configuration and fixtures.
Uses a throwaway SQLite file database so the worker's per-item sessions and the
test's own session see the same data. Mocks all external services.
"""
import itertools
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import NullPool

from revive.config import Settings
from revive.database import Base, create_engine_for, make_session_factory
import revive.models  # noqa: F401  register all tables on Base.metadata
from revive.models.account import Account
from revive.models.lead import Lead
from revive.models.outbound import SENT, OutboundMessage
from revive.services.sms import ProviderError, SendResult

# Tuesday 2026-03-10 15:00 UTC = 11:00 America/New_York (EDT)
DEFAULT_NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


class FakeClock:
    """Deterministic clock; call it to read, advance() to move forward."""

    def __init__(self, now: datetime = DEFAULT_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class FakeProvider:
    """
    Records every send. Queue exceptions in `failures` to make the next
    sends fail in order.
    """

    name = "fake"

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.failures: list[Exception] = []
        self._ids = itertools.count(1)

    async def send(self, to: str, body: str) -> SendResult:
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append((to, body))
        return SendResult(provider_ref=f"SM{next(self._ids):08d}", status="queued", provider=self.name)


@pytest.fixture
async def session_factory(tmp_path):
    """SQLite file database shared by every session in a test."""
    engine = create_engine_for(
        f"sqlite+aiosqlite:///{tmp_path / 'revive_test.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = make_session_factory(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def settings():
    return Settings(
        app_env="test",
        cron_secret="test-cron-secret",
        twilio_auth_token="",
        queue_concurrency=1,
        pause_is_opt_out=True,
    )


@pytest.fixture
def make_account(db):
    """Create and commit an Account. Defaults: New York, 09:00-19:00, no gap limits."""
    async def _make(**overrides) -> Account:
        fields = {
            "name": "Acme Roofing",
            "brand": "Acme",
            "timezone": "America/New_York",
            "quiet_start": "09:00",
            "quiet_end": "19:00",
            "daily_cap": 2,
            "weekly_cap": 5,
            "min_gap_minutes": 0,
            "footer_refresh_days": 30,
            "autopilot_enabled": True,
            "consent_attested": True,
        }
        fields.update(overrides)
        account = Account(**fields)
        db.add(account)
        await db.commit()
        return account
    return _make


@pytest.fixture
def make_lead(db):
    phones = itertools.count(100)

    async def _make(account: Account, **overrides) -> Lead:
        fields = {
            "account_id": account.id,
            "phone": f"+1512555{next(phones):04d}",
            "name": "Jamie Rivera",
            "consent_state": "granted",
        }
        fields.update(overrides)
        lead = Lead(**fields)
        db.add(lead)
        await db.commit()
        return lead
    return _make


@pytest.fixture
def make_sent(db):
    """Insert an already-sent outbound row for a lead."""
    async def _make(lead: Lead, sent_at: datetime, **overrides) -> OutboundMessage:
        fields = {
            "account_id": lead.account_id,
            "lead_id": lead.id,
            "body": "Hi there",
            "category": "manual",
            "sent_by": "ai",
            "status": SENT,
            "to_phone": lead.phone,
            "run_after": sent_at,
            "sent_at": sent_at,
            "created_at": sent_at,
            "updated_at": sent_at,
        }
        fields.update(overrides)
        message = OutboundMessage(**fields)
        db.add(message)
        await db.commit()
        return message
    return _make


@pytest.fixture
def mock_redis():
    """Mock for async Redis. Prevents real Redis calls in tests."""
    with patch("revive.utils.redis.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def transient_error():
    return ProviderError("Unknown error", retryable=True, error_code="30008")


@pytest.fixture
def sample_account_id():
    return uuid.UUID("11111111-1111-1111-1111-111111111111")
