import os
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("JWT_SECRET", "test-secret-for-unit-tests-minimum-32-chars")
os.environ.setdefault("OTP_HMAC_KEY", "test-otp-hmac-key-for-unit-tests")
os.environ["STRIPE_SECRET_KEY"] = ""  # Force mock mode in tests

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from agrirent.auth.service import create_access_token
from agrirent.database import Base, get_db
from agrirent.dependencies import get_event_emitter, get_otp_authority
from agrirent.main import app
from agrirent.models.booking import Booking
from agrirent.models.enums import (
    BillingScheme,
    BillingUnit,
    BookingStatus,
    MachineType,
    UserRole,
)
from agrirent.models.machine import Machine
from agrirent.models.user import User
from agrirent.services.events import EventEmitter
from agrirent.services.otp import OTPAuthority

# Use SQLite for tests (in-memory)
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(TEST_DB_URL, echo=False)
test_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with test_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def otp() -> OTPAuthority:
    return OTPAuthority(hmac_key="test-otp-hmac-key-for-unit-tests", max_attempts=3)


@pytest_asyncio.fixture
async def emitter() -> EventEmitter:
    return EventEmitter()


@pytest_asyncio.fixture
async def client(db: AsyncSession, otp: OTPAuthority, emitter: EventEmitter) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_otp_authority] = lambda: otp
    app.dependency_overrides[get_event_emitter] = lambda: emitter

    # Reset rate limiter storage between tests to avoid 429 errors
    from agrirent.utils.rate_limit import limiter
    if hasattr(limiter, "_limiter") and hasattr(limiter._limiter, "_storage"):
        limiter._limiter._storage.reset()
    elif hasattr(limiter, "reset"):
        limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def farmer_user(db: AsyncSession) -> User:
    user = User(
        id=uuid.uuid4(),
        name="Ramesh",
        phone="+919800000001",
        role=UserRole.FARMER,
        is_verified=True,
    )
    db.add(user)
    await db.flush()
    return user


@pytest_asyncio.fixture
async def owner_user(db: AsyncSession) -> User:
    user = User(
        id=uuid.uuid4(),
        name="Suresh",
        phone="+919800000002",
        role=UserRole.OWNER,
        is_verified=True,
    )
    db.add(user)
    await db.flush()
    return user


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    user = User(
        id=uuid.uuid4(),
        name="Admin",
        phone="+919800000099",
        role=UserRole.ADMIN,
        is_verified=True,
    )
    db.add(user)
    await db.flush()
    return user


@pytest_asyncio.fixture
async def machine(db: AsyncSession, owner_user: User) -> Machine:
    tractor = Machine(
        id=uuid.uuid4(),
        owner_id=owner_user.id,
        name="Mahindra 575",
        machine_type=MachineType.TRACTOR.value,
        billing_scheme=BillingScheme.TIME.value,
        rate=Decimal("600.00"),
        unit=BillingUnit.HOUR.value,
        is_available=True,
    )
    db.add(tractor)
    await db.flush()
    return tractor


async def make_booking(
    db: AsyncSession,
    machine: Machine,
    farmer: User,
    status: BookingStatus = BookingStatus.REQUESTED,
    **fields,
) -> Booking:
    """Insert a booking directly in ``status`` with the machine's pricing."""
    values = {
        "farmer_id": farmer.id,
        "owner_id": machine.owner_id,
        "machine_id": machine.id,
        "status": status.value,
        "requested_start_at": datetime.now(timezone.utc) + timedelta(hours=2),
        "billing_scheme": machine.billing_scheme,
        "billing_rate": machine.rate,
        "billing_unit": machine.unit,
    }
    values.update(fields)
    booking = Booking(**values)
    db.add(booking)
    await db.flush()
    return booking


def token_for(user: User) -> str:
    return create_access_token(str(user.id))


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
