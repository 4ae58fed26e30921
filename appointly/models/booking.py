"""
SQLAlchemy model for bookings.

A booking is created by a customer, mutated only by the booking lifecycle
service and never deleted. The payment summary is embedded as plain columns;
the amounts are fixed when the booking is created.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin
from .provider import Provider


class BookingStatus(str, enum.Enum):
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


ACTIVE_BOOKING_STATUSES: frozenset[BookingStatus] = frozenset({
    BookingStatus.REQUESTED,
    BookingStatus.ACCEPTED,
    BookingStatus.IN_PROGRESS,
})

TERMINAL_BOOKING_STATUSES: frozenset[BookingStatus] = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
    BookingStatus.NO_SHOW,
})


class BookingType(str, enum.Enum):
    INSTANT = "instant"
    SCHEDULED = "scheduled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Booking(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "bookings"

    # Parties
    customer_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("providers.id", ondelete="RESTRICT"),
        nullable=False,
    )

    # Line items: [{"service_id", "name", "price", "duration_min"}]
    line_items: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)

    # Scheduling
    scheduled_at: Mapped[datetime] = mapped_column(nullable=False)
    total_duration_min: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status"),
        nullable=False,
        default=BookingStatus.REQUESTED,
    )
    booking_type: Mapped[BookingType] = mapped_column(
        Enum(BookingType, name="booking_type"),
        nullable=False,
        default=BookingType.SCHEDULED,
    )

    # On-site location (optional)
    latitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 7), nullable=True)
    longitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 7), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)

    # Notes
    special_requests: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    customer_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    promo_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Payment summary (amounts immutable after creation)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payout_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    payment_method_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payout_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Lifecycle timestamps
    accepted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    no_show_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    source: Mapped[str] = mapped_column(String(30), nullable=False, default="mobile_app")

    # Relationships
    provider: Mapped[Provider] = relationship(lazy="joined")

    __table_args__ = (
        CheckConstraint("gross_amount >= 0", name="ck_bookings_gross_amount"),
        CheckConstraint("total_duration_min > 0", name="ck_bookings_total_duration"),
        Index("ix_bookings_provider_scheduled", "provider_id", "scheduled_at"),
        Index("ix_bookings_customer_scheduled", "customer_id", "scheduled_at"),
        Index("ix_bookings_status", "status"),
        # Storage backstop for two requests racing on the same slot
        Index(
            "uq_bookings_provider_slot_active",
            "provider_id",
            "scheduled_at",
            unique=True,
            postgresql_where=text("status IN ('REQUESTED', 'ACCEPTED', 'IN_PROGRESS')"),
            sqlite_where=text("status IN ('REQUESTED', 'ACCEPTED', 'IN_PROGRESS')"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, provider_id={self.provider_id}, "
            f"status={self.status}, scheduled_at={self.scheduled_at})>"
        )
