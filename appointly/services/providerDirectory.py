"""
Provider Directory
==================

Reads and updates the provider facts the booking engine depends on:
location, weekly working hours, online status and active bookings. Also
answers "which start times are still free on this date".

Key functions:
  - get_provider / get_provider_by_user -- lookups (NotFoundError if missing)
  - update_location / set_online / set_availability -- validated updates
  - is_within_working_hours -- does a requested interval fit the template
  - active_bookings -- non-terminal bookings in a time window
  - available_slots -- free start times for a given date
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from appointly.core.exceptions import NotFoundError, ValidationError
from appointly.domain.availability import WeeklyAvailability
from appointly.domain.geo import GeoPoint
from appointly.models.booking import ACTIVE_BOOKING_STATUSES, Booking
from appointly.models.provider import Provider

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def get_provider(
    db: AsyncSession,
    provider_id: uuid.UUID,
    *,
    require_active: bool = True,
) -> Provider:
    """Load a provider, optionally requiring it to be active."""
    stmt = select(Provider).where(Provider.id == provider_id)
    result = await db.execute(stmt)
    provider = result.scalar_one_or_none()

    if provider is None or (require_active and not provider.is_active):
        raise NotFoundError("Provider", provider_id)
    return provider


async def get_provider_by_user(db: AsyncSession, user_id: uuid.UUID) -> Provider:
    stmt = select(Provider).where(Provider.user_id == user_id)
    result = await db.execute(stmt)
    provider = result.scalar_one_or_none()
    if provider is None:
        raise NotFoundError("Provider", f"user:{user_id}")
    return provider


def availability_of(provider: Provider) -> WeeklyAvailability:
    return WeeklyAvailability.from_dict(provider.availability_json)


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------

async def update_location(
    db: AsyncSession,
    provider_id: uuid.UUID,
    longitude: float,
    latitude: float,
) -> Provider:
    point = GeoPoint.of(longitude, latitude)
    provider = await get_provider(db, provider_id, require_active=False)
    provider.longitude, provider.latitude = point.as_decimals()
    await db.flush()
    logger.info("Provider %s moved to (%.5f, %.5f)", provider_id, point.longitude, point.latitude)
    return provider


async def set_online(db: AsyncSession, provider_id: uuid.UUID, is_online: bool) -> Provider:
    provider = await get_provider(db, provider_id, require_active=False)
    provider.is_online = is_online
    provider.last_seen_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Provider %s is now %s", provider_id, "online" if is_online else "offline")
    return provider


async def set_availability(
    db: AsyncSession,
    provider_id: uuid.UUID,
    template: Mapping[str, Any],
) -> WeeklyAvailability:
    """Validate and store a weekly template. Raises ValidationError on
    overlapping breaks or breaks outside open hours."""
    weekly = WeeklyAvailability.from_dict(template)
    provider = await get_provider(db, provider_id, require_active=False)
    provider.availability_json = weekly.to_dict()
    await db.flush()
    return weekly


# ---------------------------------------------------------------------------
# Availability queries
# ---------------------------------------------------------------------------

def is_within_working_hours(provider: Provider, start: datetime, duration_min: int) -> bool:
    return availability_of(provider).fits(start, duration_min)


async def active_bookings(
    db: AsyncSession,
    provider_id: uuid.UUID,
    window_start: datetime,
    window_end: datetime,
) -> Sequence[Booking]:
    """Non-terminal bookings whose start lies in ``[window_start, window_end]``.

    Backed by the ``(provider_id, scheduled_at)`` index.
    """
    stmt = (
        select(Booking)
        .where(
            Booking.provider_id == provider_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            Booking.scheduled_at >= window_start,
            Booking.scheduled_at <= window_end,
        )
        .order_by(Booking.scheduled_at)
    )
    result = await db.execute(stmt)
    return result.scalars().all()


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime


async def available_slots(
    db: AsyncSession,
    provider_id: uuid.UUID,
    day: date,
    duration_min: int,
    *,
    not_before: Optional[datetime] = None,
    buffer_minutes: int = 0,
) -> list[Slot]:
    """Free start times on ``day`` for a service of ``duration_min`` minutes.

    Slots step by ``duration_min`` through each open window, skipping breaks
    and any interval occupied by an active booking (using the booking's own
    total duration). A start within ``buffer_minutes`` of an active booking's
    start is also skipped, since booking creation would reject it. Returns an
    empty list when the provider is off that day.
    """
    if duration_min <= 0:
        raise ValidationError("Duration must be positive.")

    provider = await get_provider(db, provider_id)
    template = availability_of(provider).for_date(day)
    windows = template.open_windows()
    if not windows:
        return []

    day_start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    day_end = day_start + timedelta(days=1)
    # Bookings that start up to a day earlier can still spill into this day
    booked = await active_bookings(db, provider_id, day_start - timedelta(days=1), day_end)
    occupied = [
        (b.scheduled_at, b.scheduled_at + timedelta(minutes=b.total_duration_min))
        for b in booked
    ]

    buffer = timedelta(minutes=buffer_minutes)
    step = timedelta(minutes=duration_min)
    slots: list[Slot] = []
    for window in windows:
        cursor = datetime.combine(day, window.start, tzinfo=timezone.utc)
        window_end = datetime.combine(day, window.end, tzinfo=timezone.utc)
        while cursor + step <= window_end:
            slot_end = cursor + step
            clash = any(start < slot_end and cursor < end for start, end in occupied)
            too_close = any(abs(cursor - b.scheduled_at) <= buffer for b in booked)
            if not (clash or too_close) and (not_before is None or cursor >= not_before):
                slots.append(Slot(start=cursor, end=slot_end))
            cursor = slot_end

    return slots
