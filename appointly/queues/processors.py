"""
Queue Processors
================

Handlers the workers run for each claimed job.

  - ``DeliveryProcessor`` (``bookings`` and ``notifications`` queues):
    renders the job into an ``OutboundMessage`` and hands it to the
    channel's transport. IN_APP goes through the connection registry; other
    channels also get a best-effort in-app copy.
  - ``PaymentProcessor`` (``payments`` queue): ``process-payment``,
    ``process-refund`` and ``process-payout`` call the payment gateway and
    record the provider-side reference on the booking. A dead-lettered
    charge marks the booking's payment FAILED and sends an urgent
    ``payment_failed`` notification.
  - ``JobRouter`` dispatches on job name; an unknown name is permanent.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from appointly.core.exceptions import (
    AppointlyError,
    PermanentDeliveryFailure,
    TransientDeliveryFailure,
)
from appointly.integrations.transport import OutboundMessage, PaymentGateway, Transport
from appointly.models.base import utcnow
from appointly.models.booking import Booking, PaymentStatus
from appointly.models.notification import NotificationChannel, NotificationJob, NotificationType
from appointly.queues.jobQueue import Handler, JobContext
from appointly.realtime.connectionRegistry import ConnectionRegistry
from appointly.services.notificationService import NotificationService

logger = logging.getLogger(__name__)

PROCESS_PAYMENT_JOB: str = "process-payment"
PROCESS_REFUND_JOB: str = "process-refund"
PROCESS_PAYOUT_JOB: str = "process-payout"

IN_APP_EVENT: str = "notification"


class JobRouter:
    """Callable handler that dispatches on ``job.name``."""

    def __init__(self, handlers: dict[str, Handler]) -> None:
        self._handlers = dict(handlers)

    @property
    def names(self) -> list[str]:
        return list(self._handlers)

    async def __call__(self, ctx: JobContext) -> None:
        handler = self._handlers.get(ctx.job.name)
        if handler is None:
            raise PermanentDeliveryFailure(
                f"No handler for job '{ctx.job.name}' on queue '{ctx.queue}'"
            )
        await handler(ctx)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

def in_app_payload(job: NotificationJob) -> dict[str, Any]:
    return {
        "id": str(job.id),
        "type": job.notification_type.value,
        "title": job.title,
        "body": job.body,
        "data": job.payload,
        "bookingId": str(job.booking_id) if job.booking_id else None,
        "isUrgent": job.is_urgent,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
    }


class DeliveryProcessor:

    def __init__(self, transport: Transport, registry: Optional[ConnectionRegistry] = None) -> None:
        self.transport = transport
        self.registry = registry

    async def __call__(self, ctx: JobContext) -> None:
        job = ctx.job
        if job.user_id is None or job.channel is None:
            raise PermanentDeliveryFailure(f"Job {job.id} has no recipient or channel")

        data = {
            **job.payload,
            "notification_id": str(job.id),
            "notification_type": job.notification_type.value,
        }
        if job.booking_id:
            data["booking_id"] = str(job.booking_id)

        message = OutboundMessage(
            user_id=job.user_id,
            title=job.title or "",
            body=job.body or "",
            data=data,
            is_urgent=job.is_urgent,
        )

        if job.channel == NotificationChannel.IN_APP:
            if self.registry is None:
                raise PermanentDeliveryFailure("In-app delivery is not available")
            try:
                await self.registry.notify(job.user_id, IN_APP_EVENT, in_app_payload(job))
            except Exception as exc:
                raise TransientDeliveryFailure(f"In-app delivery failed: {exc}") from exc
            return

        if job.channel == NotificationChannel.PUSH:
            await self.transport.send_push(ctx.db, message)
        elif job.channel == NotificationChannel.EMAIL:
            await self.transport.send_email(ctx.db, message)
        elif job.channel == NotificationChannel.SMS:
            await self.transport.send_sms(ctx.db, message)

        # In-app copy for connected clients; the channel above is what counts
        if self.registry is not None:
            try:
                await self.registry.notify(job.user_id, IN_APP_EVENT, in_app_payload(job))
            except Exception as exc:
                logger.warning("In-app copy of job %s not delivered: %s", job.id, exc)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def _idempotency_key(job: NotificationJob) -> str:
    return f"{job.name}:{job.id}"


class PaymentProcessor:

    def __init__(self, gateway: PaymentGateway, notifications: NotificationService) -> None:
        self.gateway = gateway
        self.notifications = notifications

    def router(self) -> JobRouter:
        return JobRouter({
            PROCESS_PAYMENT_JOB: self.process_payment,
            PROCESS_REFUND_JOB: self.process_refund,
            PROCESS_PAYOUT_JOB: self.process_payout,
        })

    async def _booking(self, db: AsyncSession, job: NotificationJob) -> Booking:
        if job.booking_id is None:
            raise PermanentDeliveryFailure(f"Payment job {job.id} has no booking")
        booking = await db.get(Booking, job.booking_id)
        if booking is None:
            raise PermanentDeliveryFailure(f"Booking {job.booking_id} not found")
        return booking

    async def process_payment(self, ctx: JobContext) -> None:
        booking = await self._booking(ctx.db, ctx.job)
        if booking.payment_reference:
            logger.info("Booking %s already charged (%s)", booking.id, booking.payment_reference)
            return

        booking.payment_reference = await self.gateway.charge(
            booking, idempotency_key=_idempotency_key(ctx.job),
        )
        await self.notifications.send_payment_notification(
            ctx.db,
            user_id=booking.customer_id,
            notification_type=NotificationType.PAYMENT_SUCCESS,
            booking_id=booking.id,
            amount=booking.gross_amount - booking.discount_amount,
            currency=booking.currency,
        )
        logger.info("Payment processed successfully for booking %s", booking.id)

    async def process_refund(self, ctx: JobContext) -> None:
        booking = await self._booking(ctx.db, ctx.job)
        await self.gateway.refund(
            booking, booking.refund_amount, idempotency_key=_idempotency_key(ctx.job),
        )
        await self.notifications.send_payment_notification(
            ctx.db,
            user_id=booking.customer_id,
            notification_type=NotificationType.PAYMENT_REFUNDED,
            booking_id=booking.id,
            amount=booking.refund_amount or booking.gross_amount,
            currency=booking.currency,
        )
        logger.info("Refund processed successfully for booking %s", booking.id)

    async def process_payout(self, ctx: JobContext) -> None:
        booking = await self._booking(ctx.db, ctx.job)
        if booking.payout_reference:
            logger.info("Booking %s already paid out (%s)", booking.id, booking.payout_reference)
            return

        booking.payout_reference = await self.gateway.payout(
            booking, idempotency_key=_idempotency_key(ctx.job),
        )
        logger.info(
            "Payout processed successfully for provider %s, booking %s",
            booking.provider_id,
            booking.id,
        )

    async def on_failed(self, db: AsyncSession, job: NotificationJob, exc: BaseException) -> None:
        """Dead-letter hook for the payments queue."""
        if job.name != PROCESS_PAYMENT_JOB or job.booking_id is None:
            logger.error("Payment job %s (%s) dead-lettered: %s", job.id, job.name, exc)
            return

        booking = await db.get(Booking, job.booking_id)
        if booking is None:
            return
        booking.payment_status = PaymentStatus.FAILED
        booking.updated_at = utcnow()
        try:
            await self.notifications.send_payment_notification(
                db,
                user_id=booking.customer_id,
                notification_type=NotificationType.PAYMENT_FAILED,
                booking_id=booking.id,
                amount=booking.gross_amount - booking.discount_amount,
                currency=booking.currency,
            )
        except AppointlyError as err:
            logger.warning("Payment failure for booking %s not notified: %s", booking.id, err)
        logger.error("Payment for booking %s failed permanently: %s", booking.id, exc)
