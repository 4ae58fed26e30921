"""
Shared pytest fixtures for Appointly unit tests.

Provides mock database sessions and sample domain objects that mirror
production ORM models without requiring a live database connection.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from appointly.core.config import Settings
from appointly.core.guards import Actor, ActorType
from appointly.domain.availability import WeeklyAvailability
from appointly.models.booking import Booking, BookingStatus, BookingType, PaymentStatus
from appointly.models.notification import (
    NotificationChannel,
    NotificationJob,
    NotificationStatus,
    NotificationType,
)
from appointly.models.provider import Provider, ProviderService
from appointly.models.user import User, UserRole


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment, with background work off."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        ws_use_redis=False,
        queue_workers_enabled=False,
        maintenance_enabled=False,
        stripe_secret_key="",
        firebase_credentials_json="",
        firebase_service_account_path="",
    )


# ---------------------------------------------------------------------------
# Database session mock
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db() -> AsyncMock:
    """Async mock of ``AsyncSession``.

    Supports ``db.execute()``, ``db.add()``, ``db.flush()`` and
    ``db.commit()`` out of the box. Individual tests configure
    ``mock_db.execute.return_value`` or ``mock_db.get`` to control results.
    """
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


@pytest.fixture
def customer_actor(sample_customer: User) -> Actor:
    return Actor(user_id=sample_customer.id, actor_type=ActorType.CUSTOMER)


@pytest.fixture
def provider_actor(sample_provider_user: User) -> Actor:
    return Actor(user_id=sample_provider_user.id, actor_type=ActorType.PROVIDER)


@pytest.fixture
def admin_actor() -> Actor:
    return Actor(user_id=uuid.uuid4(), actor_type=ActorType.ADMIN)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_customer() -> User:
    """An active customer who opted in to email notifications."""
    user = MagicMock(spec=User)
    user.id = uuid.uuid4()
    user.display_name = "Jane D."
    user.email = "customer@example.com"
    user.phone = "+14165551234"
    user.role = UserRole.CUSTOMER
    user.is_active = True
    user.email_notifications = True
    return user


@pytest.fixture
def sample_provider_user() -> User:
    user = MagicMock(spec=User)
    user.id = uuid.uuid4()
    user.display_name = "John S."
    user.email = "provider@example.com"
    user.phone = "+14165559876"
    user.role = UserRole.PROVIDER
    user.is_active = True
    user.email_notifications = False
    return user


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_provider(sample_provider_user: User) -> Provider:
    """An active, online provider in downtown Toronto with the default week."""
    provider = MagicMock(spec=Provider)
    provider.id = uuid.uuid4()
    provider.user_id = sample_provider_user.id
    provider.display_name = "John's Barbershop"
    provider.latitude = Decimal("43.6532168")
    provider.longitude = Decimal("-79.3831523")
    provider.service_radius_km = Decimal("25.00")
    provider.availability_json = WeeklyAvailability.default().to_dict()
    provider.is_active = True
    provider.is_online = True
    provider.commission_rate = Decimal("0.1500")
    provider.rating = Decimal("4.50")
    provider.reviews_count = 12
    provider.stripe_account_id = "acct_test_provider_1"

    haircut = MagicMock(spec=ProviderService)
    haircut.service_id = uuid.uuid4()
    haircut.name = "Haircut"
    haircut.price = Decimal("50.00")
    haircut.duration_min = 30
    haircut.is_active = True
    provider.services = [haircut]
    return provider


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_booking(sample_customer: User, sample_provider: Provider) -> Booking:
    """A requested booking for one 30-minute haircut."""
    booking = MagicMock(spec=Booking)
    booking.id = uuid.uuid4()
    booking.customer_id = sample_customer.id
    booking.provider_id = sample_provider.id
    booking.provider = sample_provider
    booking.line_items = [
        {
            "service_id": str(sample_provider.services[0].service_id),
            "name": "Haircut",
            "price": "50.00",
            "duration_min": 30,
        }
    ]
    booking.scheduled_at = datetime(2030, 6, 3, 10, 0, tzinfo=timezone.utc)
    booking.total_duration_min = 30
    booking.status = BookingStatus.REQUESTED
    booking.booking_type = BookingType.SCHEDULED
    booking.payment_status = PaymentStatus.PENDING
    booking.currency = "USD"
    booking.gross_amount = Decimal("50.00")
    booking.commission_amount = Decimal("7.50")
    booking.payout_amount = Decimal("42.50")
    booking.discount_amount = Decimal("0.00")
    booking.refund_amount = None
    booking.refund_reason = None
    booking.payment_method_id = "pm_card_visa"
    booking.payment_reference = None
    booking.payout_reference = None
    booking.cancellation_reason = None
    booking.cancelled_by = None
    return booking


# ---------------------------------------------------------------------------
# Notification job
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_push_job(sample_customer: User) -> NotificationJob:
    job = MagicMock(spec=NotificationJob)
    job.id = uuid.uuid4()
    job.queue = "notifications"
    job.name = "send-notification"
    job.user_id = sample_customer.id
    job.channel = NotificationChannel.PUSH
    job.notification_type = NotificationType.BOOKING_ACCEPTED
    job.title = "Booking Accepted"
    job.body = "John's Barbershop accepted your appointment"
    job.payload = {"event_type": "booking.accepted"}
    job.is_urgent = False
    job.status = NotificationStatus.PENDING
    job.attempts = 0
    job.max_attempts = 3
    job.booking_id = uuid.uuid4()
    job.created_at = datetime(2030, 6, 1, 9, 0, tzinfo=timezone.utc)
    return job
