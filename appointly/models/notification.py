"""
SQLAlchemy models for device_tokens and notification_jobs.

``notification_jobs`` is the durable queue behind the dispatcher: every row is
one unit of work on a named queue. Rows with a channel are user-facing
notifications and double as the user's notification inbox; rows without a
channel are internal jobs such as payment triggers.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DevicePlatform(str, enum.Enum):
    """Supported mobile platforms for push notifications."""
    IOS = "ios"
    ANDROID = "android"


class NotificationChannel(str, enum.Enum):
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    READ = "read"


TERMINAL_JOB_STATUSES: frozenset[NotificationStatus] = frozenset({
    NotificationStatus.SENT,
    NotificationStatus.FAILED,
    NotificationStatus.READ,
})


class NotificationType(str, enum.Enum):
    """Classification of notification events."""
    BOOKING_CREATED = "booking_created"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_NO_SHOW = "booking_no_show"
    BOOKING_REMINDER = "booking_reminder"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    MESSAGE_RECEIVED = "message_received"
    REVIEW_REQUEST = "review_request"
    SYSTEM_UPDATE = "system_update"
    PAYMENT_JOB = "payment_job"


# Types that jump the queue
URGENT_NOTIFICATION_TYPES: frozenset[NotificationType] = frozenset({
    NotificationType.BOOKING_CANCELLED,
    NotificationType.PAYMENT_FAILED,
    NotificationType.SYSTEM_UPDATE,
})


# ---------------------------------------------------------------------------
# DeviceToken
# ---------------------------------------------------------------------------

class DeviceToken(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """FCM device token for a user/device pair.

    Tokens are deactivated when FCM reports them as invalid.
    """
    __tablename__ = "device_tokens"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    device_token: Mapped[str] = mapped_column(String(512), nullable=False)
    platform: Mapped[DevicePlatform] = mapped_column(
        Enum(DevicePlatform, name="device_platform"),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("uq_device_tokens_user_token", "user_id", "device_token", unique=True),
        Index("ix_device_tokens_active", "user_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<DeviceToken(id={self.id}, user_id={self.user_id}, "
            f"platform={self.platform}, active={self.is_active})>"
        )


# ---------------------------------------------------------------------------
# NotificationJob
# ---------------------------------------------------------------------------

class NotificationJob(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "notification_jobs"

    queue: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Recipient and content
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
    )
    channel: Mapped[Optional[NotificationChannel]] = mapped_column(
        Enum(NotificationChannel, name="notification_channel"),
        nullable=True,
    )
    notification_type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, name="notification_type"),
        nullable=False,
    )
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    is_urgent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Delivery state
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus, name="notification_status"),
        nullable=False,
        default=NotificationStatus.PENDING,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=2000)
    timeout_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=30_000)
    next_attempt_at: Mapped[datetime] = mapped_column(nullable=False)
    locked_until: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Correlation
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("bookings.id", ondelete="SET NULL"),
        nullable=True,
    )
    conversation_id: Mapped[Optional[uuid.UUID]] = mapped_column(nullable=True)
    from_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(nullable=True)
    source_event: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("attempts >= 0 AND attempts <= max_attempts", name="ck_notification_jobs_attempts"),
        Index("ix_notification_jobs_claim", "queue", "status", "next_attempt_at"),
        Index("ix_notification_jobs_user_status", "user_id", "status"),
        Index("ix_notification_jobs_booking", "booking_id"),
        Index("uq_notification_jobs_dedupe_key", "dedupe_key", unique=True),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationJob(id={self.id}, queue={self.queue}, name={self.name}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})>"
        )
