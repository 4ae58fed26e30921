"""
Booking Service
===============

Business logic for the booking lifecycle. All operations use async
SQLAlchemy sessions and enforce business rules including:

  - No double-booking: availability check and insert run as one unit under
    the provider lock; the partial unique index is the storage backstop
  - Financial snapshot (gross / commission / payout) fixed at creation
  - State machine enforcement via bookingStateManager
  - Guard chains for who may perform each transition (checked before state)
  - Notification and payment jobs enqueued in the same transaction as the
    state change

Key methods on ``BookingLifecycle``:
  - create_booking                   -- availability-checked insert
  - accept / start / complete / cancel / mark_no_show -- transitions
  - update_booking                   -- notes / location patch
  - refund_booking                   -- admin refund of a completed booking
  - get_booking / list_bookings      -- reads, scoped to the actor
  - expire_stale_requests            -- periodic: unanswered past requests
  - schedule_reminders               -- periodic: reminder jobs
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from appointly.core.config import Settings
from appointly.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from appointly.core.guards import (
    Actor,
    ActorType,
    Guard,
    compose_guards,
    require_owner,
    require_role,
)
from appointly.core.pagination import PaginatedResult, check_page
from appointly.domain.geo import GeoPoint
from appointly.domain.payment import (
    LineItem,
    compute_financials,
    to_money,
    total_duration,
    validate_line_items,
)
from appointly.events import bookingEvents, paymentEvents
from appointly.models.base import utcnow
from appointly.models.booking import (
    Booking,
    BookingStatus,
    BookingType,
    PaymentStatus,
)
from appointly.models.notification import NotificationJob
from appointly.models.provider import Provider, ProviderService
from appointly.models.user import User
from appointly.queues.queueManager import QueueManager
from appointly.services import providerDirectory
from appointly.services.bookingStateManager import BookingAction, apply_action, is_terminal
from appointly.services.conflictResolver import ConflictResolver
from appointly.services.geoService import haversine_distance
from appointly.services.notificationService import NotificationService

logger = logging.getLogger(__name__)

EXPIRED_REASON: str = "expired"


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def _customer_of(booking: Booking) -> uuid.UUID:
    return booking.customer_id


def _provider_user_of(booking: Booking) -> uuid.UUID:
    return booking.provider.user_id


PROVIDER_ACTION_GUARD: Guard = compose_guards(
    require_role(ActorType.PROVIDER, ActorType.ADMIN),
    require_owner(provider=_provider_user_of),
)

NO_SHOW_GUARD: Guard = compose_guards(
    require_role(ActorType.PROVIDER, ActorType.ADMIN, ActorType.SYSTEM),
    require_owner(provider=_provider_user_of),
)

PARTY_GUARD: Guard = compose_guards(
    require_role(ActorType.CUSTOMER, ActorType.PROVIDER, ActorType.ADMIN, ActorType.SYSTEM),
    require_owner(customer=_customer_of, provider=_provider_user_of),
)

ADMIN_GUARD: Guard = require_role(ActorType.ADMIN)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass
class BookingRequest:
    provider_id: uuid.UUID
    service_ids: list[uuid.UUID]
    scheduled_at: datetime
    booking_type: BookingType = BookingType.SCHEDULED
    longitude: Optional[float] = None
    latitude: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    special_requests: Optional[str] = None
    customer_notes: Optional[str] = None
    promo_code: Optional[str] = None
    payment_method_id: Optional[str] = None
    source: str = "mobile_app"


CUSTOMER_FIELDS: frozenset[str] = frozenset({
    "customer_notes",
    "special_requests",
    "address",
    "city",
    "postal_code",
    "country",
    "longitude",
    "latitude",
})
PROVIDER_FIELDS: frozenset[str] = frozenset({"provider_notes"})


class BookingSortBy(str, enum.Enum):
    SCHEDULED_AT = "scheduled_at"
    CREATED_AT = "created_at"
    STATUS = "status"


@dataclass
class BookingFilters:
    status: Optional[BookingStatus] = None
    booking_type: Optional[BookingType] = None
    provider_id: Optional[uuid.UUID] = None
    customer_id: Optional[uuid.UUID] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    page: int = 1
    page_size: int = 10
    sort_by: BookingSortBy = BookingSortBy.SCHEDULED_AT
    sort_order: str = "asc"
    statuses: Sequence[BookingStatus] = field(default_factory=tuple)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class BookingLifecycle:

    def __init__(
        self,
        settings: Settings,
        conflicts: ConflictResolver,
        queues: QueueManager,
        notifications: NotificationService,
    ) -> None:
        self.settings = settings
        self.conflicts = conflicts
        self.queues = queues
        self.notifications = notifications

    # -- loading ------------------------------------------------------------

    async def _load(self, db: AsyncSession, booking_id: uuid.UUID, *, for_update: bool = False) -> Booking:
        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update(of=Booking)
        result = await db.execute(stmt)
        booking = result.unique().scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        return booking

    async def _line_items(
        self,
        db: AsyncSession,
        provider: Provider,
        service_ids: Sequence[uuid.UUID],
    ) -> list[LineItem]:
        """Resolve requested services against the provider's catalogue, keeping order."""
        if not service_ids:
            raise ValidationError("A booking needs at least one service line item.")

        result = await db.execute(
            select(ProviderService).where(
                ProviderService.provider_id == provider.id,
                ProviderService.service_id.in_(list(service_ids)),
                ProviderService.is_active.is_(True),
            )
        )
        offered = {s.service_id: s for s in result.scalars().all()}
        missing = [str(sid) for sid in service_ids if sid not in offered]
        if missing:
            raise ValidationError(
                "Provider does not offer the requested service(s).",
                details={"service_ids": missing},
            )
        return validate_line_items(
            LineItem(
                service_id=sid,
                name=offered[sid].name,
                price=to_money(offered[sid].price),
                duration_min=offered[sid].duration_min,
            )
            for sid in service_ids
        )

    # -- create -------------------------------------------------------------

    async def create_booking(
        self,
        db: AsyncSession,
        actor: Actor,
        request: BookingRequest,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Create a REQUESTED booking and commit it.

        Everything from the first read to the commit runs under the
        provider lock, so two requests for overlapping slots serialise and
        the second one sees the first one's row.

        Raises:
            ForbiddenError: Actor is not a customer.
            NotFoundError: Customer or provider missing or inactive.
            ValidationError: Bad services, past time or bad location.
            ConflictError: Slot taken, outside working hours or outside
                the provider's service radius.
        """
        require_role(ActorType.CUSTOMER)(actor, None)
        now = now or utcnow()
        scheduled_at = _as_utc(request.scheduled_at)
        if scheduled_at <= now:
            raise ValidationError("Booking time must be in the future.")

        point: Optional[GeoPoint] = None
        if request.longitude is not None or request.latitude is not None:
            if request.longitude is None or request.latitude is None:
                raise ValidationError("Both longitude and latitude are required for a location.")
            point = GeoPoint.of(request.longitude, request.latitude)

        async with self.conflicts.provider_booking_lock(db, request.provider_id):
            provider = await providerDirectory.get_provider(db, request.provider_id)

            customer = await db.get(User, actor.user_id)
            if customer is None or not customer.is_active:
                raise NotFoundError("Customer", actor.user_id)

            items = await self._line_items(db, provider, request.service_ids)
            duration = total_duration(items)

            conflict = await self.conflicts.find_conflict(db, provider.id, scheduled_at)
            if conflict is not None:
                raise ConflictError(
                    "Provider is not available at the requested time.",
                    details={"conflicting_time": conflict.scheduled_at.isoformat()},
                )

            if not providerDirectory.is_within_working_hours(provider, scheduled_at, duration):
                raise ConflictError("Requested time is outside the provider's working hours.")

            if point is not None:
                distance = haversine_distance(
                    float(provider.latitude), float(provider.longitude),
                    point.latitude, point.longitude,
                )
                if distance > float(provider.service_radius_km):
                    raise ConflictError(
                        "Location is outside the provider's service area.",
                        details={
                            "distance_km": round(distance, 2),
                            "service_radius_km": float(provider.service_radius_km),
                        },
                    )

            financials = compute_financials(items, provider.commission_rate)
            longitude, latitude = point.as_decimals() if point is not None else (None, None)

            booking = Booking(
                id=uuid.uuid4(),
                customer_id=customer.id,
                provider_id=provider.id,
                provider=provider,
                line_items=[item.to_dict() for item in items],
                scheduled_at=scheduled_at,
                total_duration_min=duration,
                status=BookingStatus.REQUESTED,
                booking_type=request.booking_type,
                longitude=longitude,
                latitude=latitude,
                address=request.address,
                city=request.city,
                postal_code=request.postal_code,
                country=request.country,
                special_requests=request.special_requests,
                customer_notes=request.customer_notes,
                promo_code=request.promo_code,
                payment_status=PaymentStatus.PENDING,
                currency=self.settings.default_currency,
                gross_amount=financials.gross,
                commission_amount=financials.commission,
                payout_amount=financials.payout,
                discount_amount=financials.discount,
                payment_method_id=request.payment_method_id,
                source=request.source,
            )
            db.add(booking)
            try:
                await db.flush()
                await bookingEvents.emit_booking_created(db, self.notifications, booking)
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                logger.warning(
                    "Booking insert for provider %s at %s lost a race: %s",
                    provider.id,
                    scheduled_at.isoformat(),
                    exc.orig,
                )
                raise ConflictError("Provider is not available at the requested time.") from exc

        logger.info(
            "Booking %s created: customer=%s provider=%s at %s gross=%s",
            booking.id,
            booking.customer_id,
            booking.provider_id,
            scheduled_at.isoformat(),
            booking.gross_amount,
        )
        return booking

    # -- transitions --------------------------------------------------------

    async def _transition(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: uuid.UUID,
        action: BookingAction,
        guard: Guard,
    ) -> tuple[Booking, BookingStatus]:
        booking = await self._load(db, booking_id, for_update=True)
        guard(actor, booking)
        old_status = booking.status
        booking.status = apply_action(old_status, action)
        return booking, old_status

    def _log_transition(self, booking: Booking, old: BookingStatus, actor: Actor) -> None:
        logger.info(
            "Booking %s: %s -> %s by %s %s",
            booking.id,
            old.value,
            booking.status.value,
            actor.actor_type.value,
            actor.user_id,
        )

    async def accept(self, db: AsyncSession, actor: Actor, booking_id: uuid.UUID) -> Booking:
        booking, old = await self._transition(
            db, actor, booking_id, BookingAction.ACCEPT, PROVIDER_ACTION_GUARD,
        )
        booking.accepted_at = utcnow()
        await db.flush()
        await bookingEvents.emit_booking_accepted(db, self.notifications, booking, actor.user_id)
        self._log_transition(booking, old, actor)
        return booking

    async def start(self, db: AsyncSession, actor: Actor, booking_id: uuid.UUID) -> Booking:
        booking, old = await self._transition(
            db, actor, booking_id, BookingAction.START, PROVIDER_ACTION_GUARD,
        )
        booking.started_at = utcnow()
        await db.flush()
        bookingEvents.emit_booking_started(booking, actor.user_id)
        self._log_transition(booking, old, actor)
        return booking

    async def complete(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: uuid.UUID,
        provider_notes: Optional[str] = None,
    ) -> Booking:
        """Finish the service and trigger the charge and the delayed payout.

        Amounts are not recomputed.
        """
        booking, old = await self._transition(
            db, actor, booking_id, BookingAction.COMPLETE, PROVIDER_ACTION_GUARD,
        )
        booking.completed_at = utcnow()
        if provider_notes is not None:
            booking.provider_notes = provider_notes
        booking.payment_status = PaymentStatus.COMPLETED
        await db.flush()

        await bookingEvents.emit_booking_completed(db, self.notifications, booking, actor.user_id)
        await paymentEvents.enqueue_charge(db, self.queues, booking)
        await paymentEvents.enqueue_payout(db, self.queues, booking, self.settings.payout_delay_hours)
        self._log_transition(booking, old, actor)
        return booking

    async def cancel(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> Booking:
        booking, old = await self._transition(
            db, actor, booking_id, BookingAction.CANCEL, PARTY_GUARD,
        )
        booking.cancelled_at = utcnow()
        booking.cancellation_reason = (reason or "").strip() or f"Cancelled by {actor.actor_type.value}"
        booking.cancelled_by = actor.actor_type.value
        # Payment is only charged on COMPLETE, so a cancellable booking has
        # nothing to refund.
        await db.flush()

        await bookingEvents.emit_booking_cancelled(db, self.notifications, booking, actor.user_id)
        self._log_transition(booking, old, actor)
        return booking

    async def mark_no_show(self, db: AsyncSession, actor: Actor, booking_id: uuid.UUID) -> Booking:
        booking, old = await self._transition(
            db, actor, booking_id, BookingAction.NO_SHOW, NO_SHOW_GUARD,
        )
        booking.no_show_at = utcnow()
        await db.flush()
        await bookingEvents.emit_booking_no_show(db, self.notifications, booking, actor.user_id)
        self._log_transition(booking, old, actor)
        return booking

    # -- non-state operations -----------------------------------------------

    async def update_booking(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: uuid.UUID,
        changes: dict[str, Any],
    ) -> Booking:
        """Field-level patch of notes and on-site location.

        Customers may change their notes and the location, providers their
        own notes, admins anything in both sets.
        """
        booking = await self._load(db, booking_id, for_update=True)
        PARTY_GUARD(actor, booking)
        if is_terminal(booking.status):
            raise InvalidStateTransitionError(
                f"Booking in '{booking.status.value}' state can no longer be updated.",
                current=booking.status.value,
            )

        if actor.is_privileged:
            allowed = CUSTOMER_FIELDS | PROVIDER_FIELDS
        elif actor.actor_type == ActorType.CUSTOMER:
            allowed = CUSTOMER_FIELDS
        else:
            allowed = PROVIDER_FIELDS

        unknown = set(changes) - (CUSTOMER_FIELDS | PROVIDER_FIELDS)
        if unknown:
            raise ValidationError("Unknown field(s) in update.", details={"fields": sorted(unknown)})
        forbidden = set(changes) - allowed
        if forbidden:
            raise ForbiddenError(
                "You may not change these fields.",
                details={"fields": sorted(forbidden)},
            )

        if "longitude" in changes or "latitude" in changes:
            longitude = changes.pop("longitude", booking.longitude)
            latitude = changes.pop("latitude", booking.latitude)
            if longitude is None or latitude is None:
                booking.longitude, booking.latitude = None, None
            else:
                booking.longitude, booking.latitude = GeoPoint.of(longitude, latitude).as_decimals()

        for name, value in changes.items():
            setattr(booking, name, value)

        await db.flush()
        logger.info("Booking %s updated by %s: %s", booking.id, actor.actor_type.value, sorted(changes))
        return booking

    async def refund_booking(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: uuid.UUID,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        """Admin refund of a completed, paid booking. Full refund by default."""
        ADMIN_GUARD(actor, None)
        booking = await self._load(db, booking_id, for_update=True)

        if booking.status != BookingStatus.COMPLETED or booking.payment_status != PaymentStatus.COMPLETED:
            raise InvalidStateTransitionError(
                "Only completed, paid bookings can be refunded.",
                current=booking.payment_status.value,
                target=PaymentStatus.REFUNDED.value,
            )

        paid = booking.gross_amount - booking.discount_amount
        refund = to_money(amount) if amount is not None else paid
        if refund <= 0 or refund > paid:
            raise ValidationError(f"Refund amount must be between 0.01 and {paid}.")

        booking.refund_amount = refund
        booking.refund_reason = reason
        booking.refunded_at = utcnow()
        booking.payment_status = PaymentStatus.REFUNDED
        await db.flush()
        await paymentEvents.enqueue_refund(db, self.queues, booking)

        logger.info("Booking %s refunded %s by admin %s", booking.id, refund, actor.user_id)
        return booking

    # -- reads --------------------------------------------------------------

    async def get_booking(self, db: AsyncSession, actor: Actor, booking_id: uuid.UUID) -> Booking:
        booking = await self._load(db, booking_id)
        PARTY_GUARD(actor, booking)
        return booking

    async def list_bookings(
        self,
        db: AsyncSession,
        actor: Actor,
        filters: BookingFilters,
    ) -> PaginatedResult[Booking]:
        """Bookings visible to ``actor``, filtered, sorted and paginated.

        Customers only see their own bookings and providers the ones made
        with them; admins may filter by either party.
        """
        check_page(filters.page, filters.page_size, self.settings.max_page_size)

        conditions: list[Any] = []
        if actor.actor_type == ActorType.CUSTOMER:
            conditions.append(Booking.customer_id == actor.user_id)
        elif actor.actor_type == ActorType.PROVIDER:
            conditions.append(
                Booking.provider_id.in_(select(Provider.id).where(Provider.user_id == actor.user_id))
            )
        else:
            if filters.customer_id is not None:
                conditions.append(Booking.customer_id == filters.customer_id)
            if filters.provider_id is not None:
                conditions.append(Booking.provider_id == filters.provider_id)

        if actor.actor_type == ActorType.CUSTOMER and filters.provider_id is not None:
            conditions.append(Booking.provider_id == filters.provider_id)

        if filters.status is not None:
            conditions.append(Booking.status == filters.status)
        elif filters.statuses:
            conditions.append(Booking.status.in_(list(filters.statuses)))
        if filters.booking_type is not None:
            conditions.append(Booking.booking_type == filters.booking_type)
        if filters.start_date is not None:
            conditions.append(
                Booking.scheduled_at >= datetime.combine(filters.start_date, time.min, tzinfo=timezone.utc)
            )
        if filters.end_date is not None:
            conditions.append(
                Booking.scheduled_at
                < datetime.combine(filters.end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
            )
        if (
            filters.start_date is not None
            and filters.end_date is not None
            and filters.start_date > filters.end_date
        ):
            raise ValidationError("startDate must not be after endDate.")

        sort_column = {
            BookingSortBy.SCHEDULED_AT: Booking.scheduled_at,
            BookingSortBy.CREATED_AT: Booking.created_at,
            BookingSortBy.STATUS: Booking.status,
        }[filters.sort_by]
        ordering = sort_column.desc() if filters.sort_order == "desc" else sort_column.asc()

        total = await db.scalar(select(func.count(Booking.id)).where(*conditions)) or 0
        result = await db.execute(
            select(Booking)
            .where(*conditions)
            .order_by(ordering, Booking.id)
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
        )
        return PaginatedResult(
            items=list(result.unique().scalars().all()),
            total_items=total,
            page=filters.page,
            page_size=filters.page_size,
        )

    # -- periodic -----------------------------------------------------------

    async def expire_stale_requests(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """Cancel REQUESTED bookings whose scheduled time has passed."""
        now = now or utcnow()
        result = await db.execute(
            select(Booking)
            .where(
                Booking.status == BookingStatus.REQUESTED,
                Booking.scheduled_at < now,
            )
            .with_for_update(of=Booking, skip_locked=True)
        )
        stale = result.unique().scalars().all()

        system = Actor.system()
        for booking in stale:
            booking.status = apply_action(booking.status, BookingAction.CANCEL)
            booking.cancelled_at = now
            booking.cancellation_reason = EXPIRED_REASON
            booking.cancelled_by = ActorType.SYSTEM.value
            await db.flush()
            await bookingEvents.emit_booking_cancelled(db, self.notifications, booking, system.user_id)

        if stale:
            logger.info("Expired %d stale booking request(s)", len(stale))
        return len(stale)

    async def schedule_reminders(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """Enqueue delayed reminders for accepted bookings.

        For each configured offset (24h and 1h before by default) whose
        reminder time has not passed yet, both parties get a reminder job
        delayed until that time. Each (booking, offset) is scheduled once.
        """
        now = now or utcnow()
        offsets = sorted(set(self.settings.reminder_offsets_minutes), reverse=True)
        if not offsets:
            return 0
        horizon = now + timedelta(minutes=offsets[0])

        result = await db.execute(
            select(Booking).where(
                Booking.status == BookingStatus.ACCEPTED,
                Booking.scheduled_at > now,
                Booking.scheduled_at <= horizon,
            )
        )
        bookings = result.unique().scalars().all()

        scheduled = 0
        for booking in bookings:
            for offset in offsets:
                remind_at = booking.scheduled_at - timedelta(minutes=offset)
                if remind_at < now:
                    continue
                prefix = bookingEvents.reminder_dedupe_prefix(booking.id, offset)
                existing = await db.scalar(
                    select(func.count(NotificationJob.id)).where(
                        NotificationJob.dedupe_key.in_([f"{prefix}:customer", f"{prefix}:provider"])
                    )
                )
                if existing:
                    continue
                delay_ms = int((remind_at - now).total_seconds() * 1000)
                await bookingEvents.emit_booking_reminder(
                    db, self.notifications, booking, offset, delay_ms,
                )
                scheduled += 1

        if scheduled:
            logger.info("Scheduled %d booking reminder(s)", scheduled)
        return scheduled
