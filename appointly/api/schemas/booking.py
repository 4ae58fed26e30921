"""
Pydantic v2 schemas for the Booking API
=======================================

Request/response schemas for booking creation, updates, lifecycle actions
and listing. All fields serialise to camelCase and accept either spelling on
input.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field, field_validator

from appointly.api.schemas.common import CamelModel
from appointly.models.booking import Booking, BookingStatus, BookingType, PaymentStatus
from appointly.services.bookingService import BookingRequest
from appointly.services.bookingStateManager import get_valid_actions


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class BookingCreateRequest(CamelModel):
    """Request body for creating a booking."""

    provider_id: uuid.UUID
    service_ids: list[uuid.UUID] = Field(min_length=1)
    scheduled_at: datetime
    booking_type: BookingType = BookingType.SCHEDULED
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    address: Optional[str] = Field(default=None, max_length=500)
    city: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=20)
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    special_requests: Optional[str] = Field(default=None, max_length=2000)
    customer_notes: Optional[str] = Field(default=None, max_length=2000)
    promo_code: Optional[str] = Field(default=None, max_length=50)
    payment_method_id: Optional[str] = Field(default=None, max_length=255)
    source: str = Field(default="mobile_app", max_length=30)

    @field_validator("service_ids")
    @classmethod
    def unique_services(cls, v: list[uuid.UUID]) -> list[uuid.UUID]:
        if len(set(v)) != len(v):
            raise ValueError("serviceIds must not contain duplicates")
        return v

    def to_request(self) -> BookingRequest:
        return BookingRequest(**self.model_dump())


class BookingUpdateRequest(CamelModel):
    """Partial update; only the fields sent are changed."""

    customer_notes: Optional[str] = Field(default=None, max_length=2000)
    provider_notes: Optional[str] = Field(default=None, max_length=2000)
    special_requests: Optional[str] = Field(default=None, max_length=2000)
    address: Optional[str] = Field(default=None, max_length=500)
    city: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=20)
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)


class BookingCompleteRequest(CamelModel):
    provider_notes: Optional[str] = Field(default=None, max_length=2000)


class BookingCancelRequest(CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class BookingRefundRequest(CamelModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    reason: Optional[str] = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class LineItemOut(CamelModel):
    service_id: uuid.UUID
    name: str
    price: Decimal
    duration_min: int


class BookingOut(CamelModel):
    """Full booking representation."""

    id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    line_items: list[LineItemOut]
    scheduled_at: datetime
    total_duration_min: int
    status: BookingStatus
    booking_type: BookingType

    longitude: Optional[Decimal] = None
    latitude: Optional[Decimal] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    special_requests: Optional[str] = None
    customer_notes: Optional[str] = None
    provider_notes: Optional[str] = None
    promo_code: Optional[str] = None

    payment_status: PaymentStatus
    currency: str
    gross_amount: Decimal
    commission_amount: Decimal
    payout_amount: Decimal
    discount_amount: Decimal
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None

    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None

    source: str
    created_at: datetime
    updated_at: datetime
    available_actions: list[str] = Field(default_factory=list)

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingOut":
        out = cls.model_validate(booking)
        out.available_actions = [a.value for a in get_valid_actions(booking.status)]
        return out
