"""
Booking API Routes
==================

REST endpoints for the booking lifecycle.

Routes:
  POST   /api/v1/bookings                     -- Create a booking (customer)
  GET    /api/v1/bookings                     -- List bookings visible to the caller
  GET    /api/v1/bookings/{id}                -- Booking detail (parties or admin)
  PATCH  /api/v1/bookings/{id}                -- Update notes / location
  PATCH  /api/v1/bookings/{id}/accept         -- Provider accepts
  PATCH  /api/v1/bookings/{id}/start          -- Provider starts the service
  PATCH  /api/v1/bookings/{id}/complete       -- Provider completes
  PATCH  /api/v1/bookings/{id}/cancel         -- Either party or admin cancels
  PATCH  /api/v1/bookings/{id}/no-show        -- Provider records a no-show
  POST   /api/v1/bookings/{id}/refund         -- Admin refund of a completed booking
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Annotated, Optional

from fastapi import APIRouter, Body, Query, status

from appointly.api.deps import CurrentActor, DBSession, Services
from appointly.api.schemas.booking import (
    BookingCancelRequest,
    BookingCompleteRequest,
    BookingCreateRequest,
    BookingOut,
    BookingRefundRequest,
    BookingUpdateRequest,
)
from appointly.api.schemas.common import PaginatedResponse, PaginationMeta
from appointly.core.exceptions import ValidationError
from appointly.models.booking import BookingStatus, BookingType
from appointly.services.bookingService import BookingFilters, BookingSortBy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ---------------------------------------------------------------------------
# POST /api/v1/bookings
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=BookingOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a booking",
    description=(
        "Creates a booking request for the authenticated customer. Prices "
        "come from the provider's service catalogue and the financial "
        "snapshot is fixed at this point. Returns 400 when the slot is "
        "taken or outside the provider's hours or service area."
    ),
)
async def create_booking(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    body: BookingCreateRequest,
) -> BookingOut:
    booking = await services.bookings.create_booking(db, actor, body.to_request())
    return BookingOut.from_booking(booking)


# ---------------------------------------------------------------------------
# GET /api/v1/bookings
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=PaginatedResponse[BookingOut],
    summary="List bookings",
)
async def list_bookings(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    status_filter: Annotated[Optional[BookingStatus], Query(alias="status")] = None,
    booking_type: Annotated[Optional[BookingType], Query(alias="type")] = None,
    provider_id: Annotated[Optional[uuid.UUID], Query(alias="providerId")] = None,
    barber_id: Annotated[
        Optional[uuid.UUID],
        Query(alias="barberId", description="Older name for ``providerId``."),
    ] = None,
    customer_id: Annotated[Optional[uuid.UUID], Query(alias="customerId")] = None,
    start_date: Annotated[Optional[date], Query(alias="startDate")] = None,
    end_date: Annotated[Optional[date], Query(alias="endDate")] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    sort_by: Annotated[BookingSortBy, Query(alias="sortBy")] = BookingSortBy.SCHEDULED_AT,
    sort_order: Annotated[str, Query(alias="sortOrder", pattern="^(asc|desc)$")] = "asc",
) -> PaginatedResponse[BookingOut]:
    if provider_id and barber_id and provider_id != barber_id:
        raise ValidationError("providerId and barberId must match when both are given.")
    result = await services.bookings.list_bookings(
        db,
        actor,
        BookingFilters(
            status=status_filter,
            booking_type=booking_type,
            provider_id=provider_id or barber_id,
            customer_id=customer_id,
            start_date=start_date,
            end_date=end_date,
            page=page,
            page_size=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        ),
    )
    return PaginatedResponse[BookingOut](
        data=[BookingOut.from_booking(b) for b in result.items],
        meta=PaginationMeta.from_result(result),
    )


# ---------------------------------------------------------------------------
# GET / PATCH /api/v1/bookings/{booking_id}
# ---------------------------------------------------------------------------

@router.get("/{booking_id}", response_model=BookingOut, summary="Get booking detail")
async def get_booking(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    booking_id: uuid.UUID,
) -> BookingOut:
    booking = await services.bookings.get_booking(db, actor, booking_id)
    return BookingOut.from_booking(booking)


@router.patch(
    "/{booking_id}",
    response_model=BookingOut,
    summary="Update booking notes or location",
    description=(
        "Customers may change their notes and the on-site location, "
        "providers their own notes. Terminal bookings cannot be updated."
    ),
)
async def update_booking(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    booking_id: uuid.UUID,
    body: BookingUpdateRequest,
) -> BookingOut:
    booking = await services.bookings.update_booking(
        db, actor, booking_id, body.model_dump(exclude_unset=True),
    )
    return BookingOut.from_booking(booking)


# ---------------------------------------------------------------------------
# Lifecycle actions
# ---------------------------------------------------------------------------

@router.patch("/{booking_id}/accept", response_model=BookingOut, summary="Accept a booking")
async def accept_booking(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    booking_id: uuid.UUID,
) -> BookingOut:
    booking = await services.bookings.accept(db, actor, booking_id)
    return BookingOut.from_booking(booking)


@router.patch("/{booking_id}/start", response_model=BookingOut, summary="Start the service")
async def start_booking(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    booking_id: uuid.UUID,
) -> BookingOut:
    booking = await services.bookings.start(db, actor, booking_id)
    return BookingOut.from_booking(booking)


@router.patch("/{booking_id}/complete", response_model=BookingOut, summary="Complete a booking")
async def complete_booking(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    booking_id: uuid.UUID,
    body: Annotated[Optional[BookingCompleteRequest], Body()] = None,
) -> BookingOut:
    booking = await services.bookings.complete(
        db, actor, booking_id, provider_notes=body.provider_notes if body else None,
    )
    return BookingOut.from_booking(booking)


@router.patch("/{booking_id}/cancel", response_model=BookingOut, summary="Cancel a booking")
async def cancel_booking(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    booking_id: uuid.UUID,
    body: Annotated[Optional[BookingCancelRequest], Body()] = None,
) -> BookingOut:
    booking = await services.bookings.cancel(
        db, actor, booking_id, reason=body.reason if body else None,
    )
    return BookingOut.from_booking(booking)


@router.patch("/{booking_id}/no-show", response_model=BookingOut, summary="Record a no-show")
async def no_show_booking(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    booking_id: uuid.UUID,
) -> BookingOut:
    booking = await services.bookings.mark_no_show(db, actor, booking_id)
    return BookingOut.from_booking(booking)


@router.post("/{booking_id}/refund", response_model=BookingOut, summary="Refund a completed booking")
async def refund_booking(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    booking_id: uuid.UUID,
    body: Annotated[Optional[BookingRefundRequest], Body()] = None,
) -> BookingOut:
    booking = await services.bookings.refund_booking(
        db,
        actor,
        booking_id,
        amount=body.amount if body else None,
        reason=body.reason if body else None,
    )
    return BookingOut.from_booking(booking)
