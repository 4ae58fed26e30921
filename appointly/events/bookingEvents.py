"""
Booking Event Emission
======================

Event emitters for booking lifecycle state changes. Each emitter builds a
standard event payload and enqueues one push notification per interested
party (customer and provider) on the ``bookings`` queue, inside the caller's
transaction. The jobs therefore commit or roll back together with the state
change that produced them.

Events emitted:
  - booking.created
  - booking.accepted
  - booking.started   (logged only, no notification)
  - booking.completed
  - booking.cancelled
  - booking.no_show
  - booking.reminder
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from appointly.models.booking import Booking
from appointly.models.notification import NotificationType
from appointly.models.user import User
from appointly.services.notificationService import NotificationService

logger = logging.getLogger(__name__)


def _build_event(
    event_type: str,
    booking_id: uuid.UUID,
    *,
    data: dict[str, Any] | None = None,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Construct a standardised event payload."""
    return {
        "event_type": event_type,
        "booking_id": str(booking_id),
        "actor_id": str(actor_id) if actor_id else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data or {},
    }


def _when(booking: Booking) -> str:
    return booking.scheduled_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


async def _names(db: AsyncSession, booking: Booking) -> tuple[str, str]:
    """(customer name, provider name) for message rendering."""
    customer = await db.get(User, booking.customer_id)
    customer_name = customer.display_name if customer is not None else "A customer"
    provider_name = booking.provider.display_name if booking.provider is not None else "your provider"
    return customer_name, provider_name


async def _notify_parties(
    db: AsyncSession,
    notifications: NotificationService,
    event: dict[str, Any],
    booking: Booking,
    notification_type: NotificationType,
    customer_text: tuple[str, str],
    provider_text: tuple[str, str],
    *,
    delay_ms: int = 0,
    dedupe_prefix: Optional[str] = None,
) -> list[uuid.UUID]:
    parties = (
        ("customer", booking.customer_id, customer_text),
        ("provider", booking.provider.user_id, provider_text),
    )
    job_ids = []
    for role, user_id, (title, body) in parties:
        job_ids.append(
            await notifications.send_booking_notification(
                db,
                user_id=user_id,
                notification_type=notification_type,
                booking_id=booking.id,
                title=title,
                body=body,
                data={**event, "recipient_role": role},
                source_event=event["event_type"],
                delay_ms=delay_ms,
                dedupe_key=f"{dedupe_prefix}:{role}" if dedupe_prefix else None,
            )
        )
    logger.info(
        "Event emitted: %s for booking %s (%d notification(s))",
        event["event_type"],
        booking.id,
        len(job_ids),
    )
    return job_ids


async def emit_booking_created(
    db: AsyncSession,
    notifications: NotificationService,
    booking: Booking,
) -> dict[str, Any]:
    """Emit event when a customer creates a booking request."""
    customer_name, provider_name = await _names(db, booking)
    when = _when(booking)
    event = _build_event(
        "booking.created",
        booking.id,
        actor_id=booking.customer_id,
        data={
            "scheduled_at": booking.scheduled_at.isoformat(),
            "services": [item.get("name") for item in booking.line_items],
        },
    )
    await _notify_parties(
        db,
        notifications,
        event,
        booking,
        NotificationType.BOOKING_CREATED,
        ("Booking Requested", f"Your appointment request with {provider_name} for {when} is awaiting confirmation"),
        ("New Booking Request", f"{customer_name} has requested an appointment for {when}"),
    )
    return event


async def emit_booking_accepted(
    db: AsyncSession,
    notifications: NotificationService,
    booking: Booking,
    actor_id: uuid.UUID,
) -> dict[str, Any]:
    """Emit event when the provider accepts a booking."""
    customer_name, provider_name = await _names(db, booking)
    when = _when(booking)
    event = _build_event("booking.accepted", booking.id, actor_id=actor_id)
    await _notify_parties(
        db,
        notifications,
        event,
        booking,
        NotificationType.BOOKING_ACCEPTED,
        ("Booking Accepted", f"{provider_name} accepted your appointment for {when}"),
        ("Booking Accepted", f"You accepted {customer_name}'s appointment for {when}"),
    )
    return event


def emit_booking_started(booking: Booking, actor_id: uuid.UUID) -> dict[str, Any]:
    """Emit event when service starts. No one is notified."""
    event = _build_event("booking.started", booking.id, actor_id=actor_id)
    logger.info("Event emitted: %s for booking %s", event["event_type"], booking.id)
    return event


async def emit_booking_completed(
    db: AsyncSession,
    notifications: NotificationService,
    booking: Booking,
    actor_id: uuid.UUID,
) -> dict[str, Any]:
    """Emit event when a booking reaches the completed state."""
    customer_name, provider_name = await _names(db, booking)
    event = _build_event(
        "booking.completed",
        booking.id,
        actor_id=actor_id,
        data={"gross_amount": str(booking.gross_amount), "currency": booking.currency},
    )
    await _notify_parties(
        db,
        notifications,
        event,
        booking,
        NotificationType.BOOKING_COMPLETED,
        (
            "Service Completed",
            f"Your appointment with {provider_name} has been completed. Please rate your experience!",
        ),
        (
            "Service Completed",
            f"Your appointment with {customer_name} has been completed. Great job!",
        ),
    )
    return event


async def emit_booking_cancelled(
    db: AsyncSession,
    notifications: NotificationService,
    booking: Booking,
    actor_id: Optional[uuid.UUID],
) -> dict[str, Any]:
    """Emit event when a booking is cancelled (by a party, an admin or expiry)."""
    reason = booking.cancellation_reason
    event = _build_event(
        "booking.cancelled",
        booking.id,
        actor_id=actor_id,
        data={"reason": reason, "cancelled_by": booking.cancelled_by},
    )
    text = ("Booking Cancelled", f"Your appointment has been cancelled{f': {reason}' if reason else ''}")
    await _notify_parties(
        db,
        notifications,
        event,
        booking,
        NotificationType.BOOKING_CANCELLED,
        text,
        text,
    )
    return event


async def emit_booking_no_show(
    db: AsyncSession,
    notifications: NotificationService,
    booking: Booking,
    actor_id: uuid.UUID,
) -> dict[str, Any]:
    """Emit event when the customer did not show up."""
    customer_name, provider_name = await _names(db, booking)
    when = _when(booking)
    event = _build_event("booking.no_show", booking.id, actor_id=actor_id)
    await _notify_parties(
        db,
        notifications,
        event,
        booking,
        NotificationType.BOOKING_NO_SHOW,
        (
            "Missed Appointment",
            f"You were marked as a no-show for your appointment with {provider_name} at {when}",
        ),
        ("No-Show Recorded", f"{customer_name} was marked as a no-show for {when}"),
    )
    return event


def _lead_time(offset_minutes: int) -> str:
    if offset_minutes == 24 * 60:
        return "tomorrow"
    if offset_minutes % 60 == 0:
        hours = offset_minutes // 60
        return f"in {hours} hour{'s' if hours != 1 else ''}"
    return f"in {offset_minutes} minutes"


async def emit_booking_reminder(
    db: AsyncSession,
    notifications: NotificationService,
    booking: Booking,
    offset_minutes: int,
    delay_ms: int,
) -> dict[str, Any]:
    """Schedule reminders ``offset_minutes`` before the appointment.

    Dedupe keys make this safe to call repeatedly for the same offset.
    """
    customer_name, provider_name = await _names(db, booking)
    when = _when(booking)
    lead = _lead_time(offset_minutes)
    event = _build_event(
        "booking.reminder",
        booking.id,
        data={"scheduled_at": booking.scheduled_at.isoformat(), "offset_minutes": offset_minutes},
    )
    await _notify_parties(
        db,
        notifications,
        event,
        booking,
        NotificationType.BOOKING_REMINDER,
        ("Booking Reminder", f"Your appointment with {provider_name} is {lead} at {when}"),
        ("Booking Reminder", f"You have an appointment with {customer_name} {lead} at {when}"),
        delay_ms=delay_ms,
        dedupe_prefix=reminder_dedupe_prefix(booking.id, offset_minutes),
    )
    return event


def reminder_dedupe_prefix(booking_id: uuid.UUID, offset_minutes: int) -> str:
    return f"booking.reminder:{booking_id}:{offset_minutes}"
