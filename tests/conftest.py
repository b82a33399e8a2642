"""
Test fixtures for the Fiesta Escrow test suite.

This module provides shared fixtures used across all test files:

  - db_engine / db_session: Fresh in-memory SQLite database for each test
  - provider / gateway: In-memory fake payment provider behind the real
    card gateway adapter, so no test ever reaches the network
  - client: Async HTTP test client (unauthenticated)
  - make_user: Registers a member through /auth/signup and returns its ids
    and auth headers
  - authenticated_client / admin_client: Clients carrying a member / admin JWT
  - make_experience / fund_wallet: Direct database setup helpers

Key design decisions:
  - In-memory SQLite (sqlite+aiosqlite://) is used for speed and isolation.
    Each test gets a completely fresh database — no state leaks between tests.
  - We override get_db and both gateway dependencies so the application
    code works exactly as it does in production, only against the fakes.
  - Users are always created through the real signup endpoint, so every
    test exercises the wallet-opening path.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
# 32 zero bytes, url-safe base64: a valid Fernet key for tests only
os.environ.setdefault("SECRET_ENCRYPTION_KEY", "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import itertools
import uuid
from collections import Counter
from dataclasses import dataclass

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from fiesta_escrow.database import Base, get_db
from fiesta_escrow.dependencies import get_payment_gateway, get_topup_gateway
from fiesta_escrow.events import event_bus
from fiesta_escrow.exceptions import EscrowAPIError, ProviderError
from fiesta_escrow.main import app
from fiesta_escrow.models.experience import Experience, GroupPricingTier
from fiesta_escrow.models.transaction import TransactionType
from fiesta_escrow.models.user import User, UserType
from fiesta_escrow.payments.base import PaymentProviderClient, ProviderPayment
from fiesta_escrow.payments.gateway import CardPaymentGateway
from fiesta_escrow.services import wallet_service


# In-memory SQLite for fast, isolated tests
TEST_DATABASE_URL = "sqlite+aiosqlite://"


# ---------------------------------------------------------------------------
# Fake payment provider
# ---------------------------------------------------------------------------

class FakeProviderClient(PaymentProviderClient):
    """
    In-memory card provider speaking the raw card status vocabulary.

    Payments start in "requires_payment_method". Tests move them along with
    set_status() to simulate the payer acting client-side. Every call is
    counted in .calls; names added to .fail_on raise ProviderError. Like the
    real API, capture needs "requires_capture" and a cancelled or succeeded
    payment cannot be cancelled again.
    """

    def __init__(self, name: str = "card"):
        self.name = name
        self.payments: dict[str, dict] = {}
        self.calls: Counter = Counter()
        self.fail_on: set[str] = set()
        self.next_ids: list[str] = []
        self._ids = itertools.count(1)

    def _check(self, operation: str) -> None:
        self.calls[operation] += 1
        if operation in self.fail_on:
            raise ProviderError(self.name, f"{operation} failed")

    def set_status(self, external_id: str, status: str) -> None:
        self.payments[external_id]["status"] = status

    def _snapshot(self, external_id: str) -> ProviderPayment:
        payment = self.payments[external_id]
        return ProviderPayment(
            external_id=external_id,
            status=payment["status"],
            amount_cents=payment["amount_cents"],
            client_secret=payment["client_secret"],
            authorization_id=external_id if payment["status"] == "requires_capture" else None,
            capture_id=payment.get("capture_id"),
        )

    async def create(self, amount_cents, currency, *, reference_id, description=None,
                     manual_capture=True, return_url=None, cancel_url=None, metadata=None):
        self._check("create")
        external_id = self.next_ids.pop(0) if self.next_ids else f"pi_{next(self._ids)}"
        self.payments[external_id] = {
            "status": "requires_payment_method",
            "amount_cents": amount_cents,
            "client_secret": f"{external_id}_secret",
            "manual_capture": manual_capture,
            "reference_id": reference_id,
            "refunds": [],
        }
        return self._snapshot(external_id)

    async def retrieve(self, external_id):
        self._check("retrieve")
        return self._snapshot(external_id)

    async def authorize(self, external_id):
        self._check("authorize")
        return self._snapshot(external_id)

    async def capture(self, external_id, authorization_id=None):
        self._check("capture")
        payment = self.payments[external_id]
        if payment["status"] != "requires_capture":
            raise ProviderError(self.name, f"cannot capture a payment in status {payment['status']}")
        payment["status"] = "succeeded"
        payment["capture_id"] = f"ch_{external_id}"
        return self._snapshot(external_id)

    async def void(self, external_id, authorization_id=None):
        self._check("void")
        payment = self.payments[external_id]
        if payment["status"] in ("canceled", "succeeded"):
            raise ProviderError(self.name, f"cannot cancel a payment in status {payment['status']}")
        payment["status"] = "canceled"

    async def refund(self, external_id, amount_cents, currency, *, capture_id=None, idempotency_key=None):
        self._check("refund")
        refunds = self.payments[external_id]["refunds"]
        refunds.append(amount_cents)
        return f"re_{external_id}_{len(refunds)}"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh async engine with all tables for each test."""
    engine = create_async_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """
    Sessions on a file database, one connection per session.

    The in-memory database shares a single connection between sessions,
    which cannot model two requests racing on the same rows.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide an async session bound to the test engine."""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def clean_event_bus():
    event_bus.clear()
    yield
    event_bus.clear()


@pytest.fixture
def recorded_events():
    """Every published domain event, in order."""
    events = []
    event_bus.subscribe("*", events.append)
    return events


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@pytest.fixture
def provider():
    return FakeProviderClient()


@pytest.fixture
def gateway(provider):
    return CardPaymentGateway(provider, currency="EUR")


# ---------------------------------------------------------------------------
# HTTP clients
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(session_factory, gateway):
    """
    Async HTTP test client with the test database and fake gateway injected.

    This overrides the get_db dependency so all requests hit the
    in-memory test database instead of the real one.
    """

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except EscrowAPIError:
                await session.commit()
                raise
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_topup_gateway] = lambda: gateway

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@dataclass
class Member:
    id: uuid.UUID
    email: str
    wallet_id: uuid.UUID
    referral_code: str
    token: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture
def make_user(client):
    """Sign a member up through the API; returns a Member."""
    counter = itertools.count(1)

    async def _make_user(email: str | None = None, referral_code: str | None = None) -> Member:
        email = email or f"member{next(counter)}@example.com"
        payload = {
            "email": email,
            "password": "SecurePass123!",
            "display_name": email.split("@")[0],
        }
        if referral_code:
            payload["referral_code"] = referral_code
        response = await client.post("/auth/signup", json=payload)
        assert response.status_code == 201, f"Signup failed: {response.text}"
        data = response.json()
        return Member(
            id=uuid.UUID(data["user_id"]),
            email=email,
            wallet_id=uuid.UUID(data["wallet_id"]),
            referral_code=data["referral_code"],
            token=data["token"],
        )

    return _make_user


@pytest_asyncio.fixture
async def authenticated_client(client, make_user):
    """Test client carrying a freshly registered member's JWT."""
    user = await make_user("testuser@example.com")
    client.headers.update(user.headers)
    return client


@pytest_asyncio.fixture
async def admin_user(client, make_user, session_factory):
    """
    A user promoted to ADMIN directly in the database.

    Simulates the enterprise pattern where admin accounts are provisioned
    by a system operator (not self-service).
    """
    user = await make_user("admin@example.com")
    async with session_factory() as session:
        await session.execute(
            update(User).where(User.id == user.id).values(user_type=UserType.ADMIN)
        )
        await session.commit()
    return user


@pytest_asyncio.fixture
async def admin_client(client, admin_user):
    client.headers.update(admin_user.headers)
    return client


# ---------------------------------------------------------------------------
# Domain setup helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def make_experience(session_factory):
    """Insert a published experience hosted by host_id."""

    async def _make_experience(host_id: uuid.UUID, price_cents: int | None = 2500, tiers=(), **fields) -> Experience:
        async with session_factory() as session:
            experience = Experience(
                host_id=host_id,
                title=fields.pop("title", "Sunset sailing"),
                price_cents=price_cents,
                **fields,
            )
            session.add(experience)
            await session.flush()
            for min_people, max_people, per_person in tiers:
                session.add(
                    GroupPricingTier(
                        experience_id=experience.id,
                        min_people=min_people,
                        max_people=max_people,
                        price_per_person_cents=per_person,
                    )
                )
            await session.commit()
            return experience

    return _make_experience


@pytest.fixture
def fund_wallet(session_factory):
    """Credit a wallet as if a top-up had settled."""

    async def _fund_wallet(wallet_id: uuid.UUID, amount_cents: int) -> None:
        async with session_factory() as session:
            await wallet_service.credit(
                session,
                wallet_id,
                amount_cents,
                TransactionType.WALLET_TOPUP,
                external_ref=f"seed-{uuid.uuid4()}",
                description="Test funding",
            )
            await session.commit()

    return _fund_wallet
