"""
Pytest configuration and fixtures for async database testing.

Every test gets its own SQLite database file (aiosqlite) with a fresh
schema, so tests never share state. STRICT_INVARIANTS is on: a waitlist
line that loses its dense ordering fails the test instead of being
silently tolerated.
"""
import os

# Settings are cached on first use, so the environment is fixed before app imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRICT_INVARIANTS"] = "true"
os.environ["TOKEN_SECRET"] = "test-token-secret"
os.environ["IDENTITY_JWT_SECRET"] = "test-identity-secret"
os.environ["CRON_SECRET"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""

from datetime import datetime, time, timedelta, timezone

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.db import Base, get_session
from app.models import Business, ClientProfile, Service
from app.notifications import Notification, NotificationKind, get_notifier
from app.rate_limiter import get_rate_limiter

# A Wednesday, well clear of any DST change in America/New_York (UTC-5)
NOW = datetime(2030, 1, 16, 15, 0, tzinfo=timezone.utc)
TZ = "America/New_York"


def local(day_offset: int, hour: int, minute: int = 0) -> datetime:
    """UTC instant for HH:MM New York time, day_offset days after NOW's local date."""
    return datetime(2030, 1, 16 + day_offset, hour + 5, minute, tzinfo=timezone.utc)


class RecordingSender:
    """Captures notifications instead of delivering them."""

    def __init__(self):
        self.sent: list[Notification] = []
        self.fail_with: Exception | None = None

    async def send(self, notification: Notification) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(notification)

    def of_kind(self, kind: NotificationKind) -> list[Notification]:
        return [n for n in self.sent if n.kind == kind]


@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    """
    Create a file-backed SQLite engine for this test.

    A file (not :memory:) lets concurrent sessions use separate connections.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
async def business(session):
    business = Business(
        owner_user_id="owner-1",
        name="Luxury Salon",
        timezone=TZ,
        opens_at=time(9, 0),
        closes_at=time(18, 0),
    )
    session.add(business)
    await session.commit()
    return business


@pytest.fixture
async def service(session, business):
    """60-minute service."""
    service = Service(business_id=business.id, name="Haircut", duration_minutes=60, price_cents=6500)
    session.add(service)
    await session.commit()
    return service


@pytest.fixture
def make_client(session):
    counter = {"n": 0}

    async def _make(**fields) -> ClientProfile:
        counter["n"] += 1
        n = counter["n"]
        fields.setdefault("user_id", f"user-{n}")
        fields.setdefault("name", f"Client {n}")
        fields.setdefault("email", f"client{n}@example.com")
        client = ClientProfile(**fields)
        session.add(client)
        await session.commit()
        return client

    return _make


# ────────────────────────────────────────────────────────────────
# HTTP
# ────────────────────────────────────────────────────────────────

def identity_token(user_id: str, role: str, **claims) -> str:
    payload = {
        "sub": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        **claims,
    }
    return jwt.encode(payload, "test-identity-secret", algorithm="HS256")


def auth_headers(user_id: str, role: str = "client", **claims) -> dict:
    return {"Authorization": f"Bearer {identity_token(user_id, role, **claims)}"}


@pytest.fixture
async def api(session_maker, sender):
    """httpx client against the app with the test database and recording sender."""
    from app.main import app

    async def override_session():
        async with session_maker() as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_notifier] = lambda: sender
    get_rate_limiter().clear()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    get_rate_limiter().clear()
