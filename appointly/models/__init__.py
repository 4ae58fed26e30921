"""
Appointly SQLAlchemy Models
===========================

Central import point for all ORM models. Import ``Base`` from here for the
``create_all`` convenience in tests.

Usage::

    from appointly.models import Base, Booking, Provider
"""

# -- Base & Mixins --
from .base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin

# -- Users --
from .user import User, UserRole

# -- Providers --
from .provider import Provider, ProviderService

# -- Bookings --
from .booking import (
    ACTIVE_BOOKING_STATUSES,
    TERMINAL_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    BookingType,
    PaymentStatus,
)

# -- Notifications --
from .notification import (
    URGENT_NOTIFICATION_TYPES,
    DevicePlatform,
    DeviceToken,
    NotificationChannel,
    NotificationJob,
    NotificationStatus,
    NotificationType,
)

__all__ = [
    # Base
    "Base",
    "JSONType",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDPrimaryKeyMixin",
    # Users
    "User",
    "UserRole",
    # Providers
    "Provider",
    "ProviderService",
    # Bookings
    "ACTIVE_BOOKING_STATUSES",
    "TERMINAL_BOOKING_STATUSES",
    "Booking",
    "BookingStatus",
    "BookingType",
    "PaymentStatus",
    # Notifications
    "URGENT_NOTIFICATION_TYPES",
    "DevicePlatform",
    "DeviceToken",
    "NotificationChannel",
    "NotificationJob",
    "NotificationStatus",
    "NotificationType",
]
