"""
E2E test fixtures for the Appointly backend.

Provides:
- A file-backed SQLite database per test (separate connections per session,
  so concurrent requests behave like they would against a server database)
- Pre-populated seed data: customers, providers with services, an admin
- Service wiring with a recording push/email/SMS transport and payment
  gateway in place of FCM and Stripe
- An httpx AsyncClient wired to the real application via ASGI transport
- Helpers for tokens, appointment times and draining queues

Queue workers and the maintenance loop are disabled; tests drive them with
``JobQueue.run_once`` and ``run_maintenance`` so every step is deterministic.
"""

from __future__ import annotations

import uuid
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from appointly.core.config import Settings, settings as global_settings
from appointly.domain.availability import WeeklyAvailability
from appointly.integrations.transport import OutboundMessage
from appointly.models import (
    Base,
    Booking,
    NotificationJob,
    Provider,
    ProviderService,
    User,
    UserRole,
)
from appointly.queues.jobQueue import JobQueue
from appointly.services.registry import AppServices, build_services

# ---------------------------------------------------------------------------
# Test IDs (stable across tests so cross-references work)
# ---------------------------------------------------------------------------

CUSTOMER_USER_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
OTHER_CUSTOMER_USER_ID = uuid.UUID("aaaaaaaa-bbbb-aaaa-aaaa-aaaaaaaaaaaa")
PROVIDER_USER_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
FAR_PROVIDER_USER_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")
OFFLINE_PROVIDER_USER_ID = uuid.UUID("eeeeeeee-eeee-eeee-eeee-eeeeeeeeeeee")
ADMIN_USER_ID = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")

PROVIDER_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
FAR_PROVIDER_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
OFFLINE_PROVIDER_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")

HAIRCUT_SERVICE_ID = uuid.UUID("44444444-4444-4444-4444-444444444444")
BEARD_SERVICE_ID = uuid.UUID("55555555-5555-5555-5555-555555555555")
RETIRED_SERVICE_ID = uuid.UUID("66666666-6666-6666-6666-666666666666")

# Downtown Toronto
TORONTO_LAT = 43.6532168
TORONTO_LON = -79.3831523
# Montreal, ~500 km away
MONTREAL_LAT = 45.5017
MONTREAL_LON = -73.5673


# ---------------------------------------------------------------------------
# Recording collaborators
# ---------------------------------------------------------------------------

class FakeTransport:
    """Records every send. ``fail_with`` makes every send raise."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, OutboundMessage]] = []
        self.fail_with: Optional[Exception] = None

    async def _send(self, channel: str, message: OutboundMessage) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((channel, message))

    async def send_push(self, db: AsyncSession, message: OutboundMessage) -> None:
        await self._send("push", message)

    async def send_email(self, db: AsyncSession, message: OutboundMessage) -> None:
        await self._send("email", message)

    async def send_sms(self, db: AsyncSession, message: OutboundMessage) -> None:
        await self._send("sms", message)


class FakeGateway:
    """Payment gateway that records calls and returns predictable references."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, uuid.UUID, str]] = []
        self.fail_with: Optional[Exception] = None

    def _record(self, operation: str, booking: Booking, idempotency_key: str) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append((operation, booking.id, idempotency_key))
        return f"{operation}_{len(self.calls)}"

    async def charge(self, booking: Booking, *, idempotency_key: str) -> str:
        return self._record("charge", booking, idempotency_key)

    async def refund(self, booking: Booking, amount: Optional[Decimal], *, idempotency_key: str) -> str:
        return self._record("refund", booking, idempotency_key)

    async def payout(self, booking: Booking, *, idempotency_key: str) -> str:
        return self._record("payout", booking, idempotency_key)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def e2e_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'appointly.db'}",
        ws_use_redis=False,
        queue_workers_enabled=False,
        maintenance_enabled=False,
        stripe_secret_key="",
        firebase_credentials_json="",
        firebase_service_account_path="",
        jwt_secret=global_settings.jwt_secret,
    )


@pytest_asyncio.fixture
async def engine(e2e_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(e2e_settings.database_url, echo=False)

    # SQLite does not enforce foreign keys by default
    @event.listens_for(engine.sync_engine, "connect")
    def _enable_fk(dbapi_conn, _):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        await _seed_data(session)
        await session.commit()
    return factory


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

async def _seed_data(db: AsyncSession) -> None:
    """Insert minimum seed data for E2E tests."""
    weekly = WeeklyAvailability.default().to_dict()

    db.add_all([
        User(
            id=CUSTOMER_USER_ID,
            display_name="Jane D.",
            email="customer@test.appointly.io",
            phone="+14165551111",
            role=UserRole.CUSTOMER,
            email_notifications=True,
        ),
        User(
            id=OTHER_CUSTOMER_USER_ID,
            display_name="Sam K.",
            email=None,
            phone="+14165555555",
            role=UserRole.CUSTOMER,
            email_notifications=False,
        ),
        User(
            id=PROVIDER_USER_ID,
            display_name="John S.",
            email="provider@test.appointly.io",
            phone="+14165552222",
            role=UserRole.PROVIDER,
            email_notifications=False,
        ),
        User(
            id=FAR_PROVIDER_USER_ID,
            display_name="Marie L.",
            email="far@test.appointly.io",
            role=UserRole.PROVIDER,
        ),
        User(
            id=OFFLINE_PROVIDER_USER_ID,
            display_name="Omar B.",
            email="offline@test.appointly.io",
            role=UserRole.PROVIDER,
        ),
        User(
            id=ADMIN_USER_ID,
            display_name="Admin",
            email="admin@test.appointly.io",
            role=UserRole.ADMIN,
        ),
    ])
    await db.flush()

    db.add_all([
        Provider(
            id=PROVIDER_ID,
            user_id=PROVIDER_USER_ID,
            display_name="John's Barbershop",
            latitude=Decimal("43.6500000"),
            longitude=Decimal("-79.3800000"),
            service_radius_km=Decimal("25.00"),
            availability_json=weekly,
            is_active=True,
            is_online=True,
            commission_rate=Decimal("0.1500"),
            rating=Decimal("4.50"),
            reviews_count=12,
            stripe_account_id="acct_test_john",
        ),
        Provider(
            id=FAR_PROVIDER_ID,
            user_id=FAR_PROVIDER_USER_ID,
            display_name="Salon Marie",
            latitude=Decimal(str(MONTREAL_LAT)),
            longitude=Decimal(str(MONTREAL_LON)),
            service_radius_km=Decimal("20.00"),
            availability_json=weekly,
            is_active=True,
            is_online=True,
            commission_rate=Decimal("0.1000"),
            rating=Decimal("4.90"),
            reviews_count=40,
        ),
        Provider(
            id=OFFLINE_PROVIDER_ID,
            user_id=OFFLINE_PROVIDER_USER_ID,
            display_name="Omar's Cuts",
            latitude=Decimal("43.6600000"),
            longitude=Decimal("-79.4000000"),
            service_radius_km=Decimal("15.00"),
            availability_json=weekly,
            is_active=True,
            is_online=False,
            commission_rate=Decimal("0.1000"),
            rating=Decimal("3.00"),
            reviews_count=3,
        ),
    ])
    await db.flush()

    db.add_all([
        ProviderService(
            provider_id=PROVIDER_ID,
            service_id=HAIRCUT_SERVICE_ID,
            name="Haircut",
            price=Decimal("50.00"),
            duration_min=30,
        ),
        ProviderService(
            provider_id=PROVIDER_ID,
            service_id=BEARD_SERVICE_ID,
            name="Beard Trim",
            price=Decimal("25.00"),
            duration_min=15,
        ),
        ProviderService(
            provider_id=PROVIDER_ID,
            service_id=RETIRED_SERVICE_ID,
            name="Hot Towel Shave",
            price=Decimal("35.00"),
            duration_min=20,
            is_active=False,
        ),
        ProviderService(
            provider_id=FAR_PROVIDER_ID,
            service_id=HAIRCUT_SERVICE_ID,
            name="Coupe",
            price=Decimal("45.00"),
            duration_min=30,
        ),
        ProviderService(
            provider_id=OFFLINE_PROVIDER_ID,
            service_id=HAIRCUT_SERVICE_ID,
            name="Haircut",
            price=Decimal("40.00"),
            duration_min=30,
        ),
    ])
    await db.flush()


# ---------------------------------------------------------------------------
# Services and app
# ---------------------------------------------------------------------------

@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def services(
    e2e_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    transport: FakeTransport,
    gateway: FakeGateway,
) -> AppServices:
    return build_services(e2e_settings, session_factory, transport=transport, gateway=gateway)


def _create_test_app(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    services: AppServices,
):
    """Build the real application with the DB dependency bound to the test
    database."""
    from appointly.api.deps import get_db
    from appointly.main import create_app

    app = create_app(settings, session_factory=session_factory, services=services)

    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db
    return app


@pytest_asyncio.fixture
async def client(
    e2e_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    services: AppServices,
) -> AsyncGenerator[AsyncClient, None]:
    """httpx AsyncClient connected to the test app via ASGI transport."""
    app = _create_test_app(e2e_settings, session_factory, services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def auth_headers(user_id: uuid.UUID, role: str) -> dict[str, str]:
    token = jwt.encode(
        {"sub": str(user_id), "role": role},
        global_settings.jwt_secret,
        algorithm=global_settings.jwt_algorithm,
    )
    return {"Authorization": f"Bearer {token}"}


CUSTOMER = auth_headers(CUSTOMER_USER_ID, "customer")
OTHER_CUSTOMER = auth_headers(OTHER_CUSTOMER_USER_ID, "customer")
PROVIDER = auth_headers(PROVIDER_USER_ID, "provider")
FAR_PROVIDER = auth_headers(FAR_PROVIDER_USER_ID, "provider")
ADMIN = auth_headers(ADMIN_USER_ID, "admin")


def next_monday(hour: int, minute: int = 0, *, weeks_ahead: int = 1) -> datetime:
    """A Monday at least ``weeks_ahead`` weeks from today, at ``hour:minute`` UTC."""
    today = datetime.now(timezone.utc).date() + timedelta(weeks=weeks_ahead)
    monday = today + timedelta(days=(7 - today.weekday()) % 7)
    return datetime.combine(monday, time(hour, minute), tzinfo=timezone.utc)


def booking_payload(
    scheduled_at: datetime,
    *,
    provider_id: uuid.UUID = PROVIDER_ID,
    service_ids: Optional[list[uuid.UUID]] = None,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "providerId": str(provider_id),
        "serviceIds": [str(s) for s in (service_ids or [HAIRCUT_SERVICE_ID])],
        "scheduledAt": scheduled_at.isoformat(),
        "paymentMethodId": "pm_card_visa",
        **extra,
    }


async def create_booking_via_api(
    client: AsyncClient,
    scheduled_at: datetime,
    headers: Optional[dict[str, str]] = None,
    **kwargs: Any,
) -> dict[str, Any]:
    resp = await client.post(
        "/api/v1/bookings",
        json=booking_payload(scheduled_at, **kwargs),
        headers=headers or CUSTOMER,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


async def transition_booking(
    client: AsyncClient,
    booking_id: str,
    action: str,
    headers: Optional[dict[str, str]] = None,
    json: Optional[dict[str, Any]] = None,
):
    return await client.patch(
        f"/api/v1/bookings/{booking_id}/{action}",
        headers=headers or PROVIDER,
        json=json,
    )


async def drain_queue(queue: JobQueue, limit: int = 50) -> int:
    """Run ready jobs one at a time until none is claimable."""
    ran = 0
    while ran < limit and await queue.run_once():
        ran += 1
    return ran


async def jobs_for_booking(
    session_factory: async_sessionmaker[AsyncSession],
    booking_id: uuid.UUID | str,
    queue: Optional[str] = None,
) -> list[NotificationJob]:
    async with session_factory() as db:
        stmt = select(NotificationJob).where(NotificationJob.booking_id == uuid.UUID(str(booking_id)))
        if queue is not None:
            stmt = stmt.where(NotificationJob.queue == queue)
        result = await db.execute(stmt.order_by(NotificationJob.created_at))
        return list(result.scalars().all())


async def load_booking(
    session_factory: async_sessionmaker[AsyncSession],
    booking_id: uuid.UUID | str,
) -> Booking:
    async with session_factory() as db:
        booking = await db.get(Booking, uuid.UUID(str(booking_id)))
        assert booking is not None
        return booking
