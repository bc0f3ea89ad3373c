"""Shared test fixtures.

Tests run against a throwaway SQLite database. The environment is set before
anything from `bookrent` is imported, because the engine and settings are
created at import time.
"""

import os
import tempfile
from decimal import Decimal
from unittest.mock import AsyncMock, patch

_workdir = tempfile.mkdtemp(prefix="bookrent-tests-")
os.environ["BR_DATABASE_URL"] = f"sqlite+aiosqlite:///{_workdir}/test.db"
os.environ["BR_RECEIPT_DIR"] = f"{_workdir}/receipts"
os.environ["BR_STRIPE_SECRET_KEY"] = ""
os.environ["BR_STRIPE_WEBHOOK_SECRET"] = ""

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from bookrent.core.auth import create_access_token  # noqa: E402
from bookrent.core.config import settings  # noqa: E402
from bookrent.core.database import async_session_factory, engine  # noqa: E402
from bookrent.main import app  # noqa: E402
from bookrent.models import (  # noqa: E402
    Base,
    Booking,
    Payment,
    PaymentIntent,
    PaymentLinkStatus,
    PaymentMethodType,
    User,
    UserRole,
)
from bookrent.services.gateway import PaymentLinkGateway  # noqa: E402
from scripts.seed import seed_payment_methods  # noqa: E402


@pytest.fixture(autouse=True)
async def _fresh_database():
    """Dispose stale pool connections and rebuild the schema before each test.

    The global engine is created at import time. When pytest-asyncio creates a new
    event loop for tests, any existing pooled connections are bound to the old loop
    and will fail with 'Future attached to a different loop'.
    """
    await engine.dispose()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with async_session_factory() as db:
        await seed_payment_methods(db)
        await db.commit()
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def smtp_send():
    """No test talks to a real SMTP server. Returns the mock so tests can inspect sent mail."""
    with patch("bookrent.services.email.aiosmtplib.send", new_callable=AsyncMock) as send:
        yield send


@pytest.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def app_settings():
    return settings


@pytest.fixture
def gateway(app_settings):
    return PaymentLinkGateway(app_settings)


async def _create_user(email: str, role: UserRole) -> User:
    async with async_session_factory() as db:
        user = User(email=email, first_name="Test", last_name=role.value.title(), role=role)
        db.add(user)
        await db.commit()
        return user


@pytest.fixture
async def staff_user():
    return await _create_user("staff@test.example", UserRole.STAFF)


@pytest.fixture
async def viewer_user():
    return await _create_user("viewer@test.example", UserRole.VIEWER)


@pytest.fixture
def staff_headers(staff_user):
    return {"Authorization": f"Bearer {create_access_token(str(staff_user.id))}"}


@pytest.fixture
def viewer_headers(viewer_user):
    return {"Authorization": f"Bearer {create_access_token(str(viewer_user.id))}"}


@pytest.fixture
def make_booking():
    """Factory: insert a booking and return it (detached, attributes loaded)."""
    counter = {"n": 0}

    async def _make(**overrides) -> Booking:
        counter["n"] += 1
        values = {
            "reference_code": f"KR-{counter['n']:04d}",
            "client_name": "Ana Client",
            "client_email": "ana@client.example",
            "car_model": "Fiat 500",
            "currency": "EUR",
            "amount_total": Decimal("1000.00"),
            "payment_amount_percent": 30,
            "security_deposit_amount": Decimal("0"),
        }
        values.update(overrides)
        async with async_session_factory() as db:
            booking = Booking(**values)
            db.add(booking)
            await db.commit()
            return booking

    return _make


@pytest.fixture
def make_payment():
    """Factory: insert a payment for a booking. Defaults to an active card link for the down payment."""
    counter = {"n": 0}

    async def _make(booking: Booking, **overrides) -> Payment:
        counter["n"] += 1
        amount = overrides.pop("amount", Decimal("300.00"))
        values = {
            "booking_id": booking.id,
            "payment_intent": PaymentIntent.DOWN_PAYMENT,
            "payment_method_type": PaymentMethodType.VISA_MASTERCARD,
            "amount": amount,
            "total_amount": amount,
            "currency": booking.currency,
            "gateway_session_id": f"cs_test_{booking.id}_{counter['n']}",
            "payment_link_status": PaymentLinkStatus.ACTIVE,
        }
        values.update(overrides)
        async with async_session_factory() as db:
            payment = Payment(**values)
            db.add(payment)
            await db.commit()
            return payment

    return _make
