"""
Payment trigger events.

Booking transitions never move money themselves; they enqueue jobs on the
``payments`` queue in the same transaction, and ``PaymentProcessor``
executes them against the gateway.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from appointly.models.booking import Booking
from appointly.models.notification import NotificationType
from appointly.queues.jobQueue import NewJob
from appointly.queues.processors import (
    PROCESS_PAYMENT_JOB,
    PROCESS_PAYOUT_JOB,
    PROCESS_REFUND_JOB,
)
from appointly.queues.queueConfig import PRIORITY_PAYMENT, PRIORITY_REFUND
from appointly.queues.queueManager import QueueManager

logger = logging.getLogger(__name__)


def _job(name: str, booking: Booking, **payload: object) -> NewJob:
    return NewJob(
        name=name,
        notification_type=NotificationType.PAYMENT_JOB,
        payload={"booking_id": str(booking.id), **payload},
        booking_id=booking.id,
        source_event=f"payment.{name}",
    )


async def enqueue_charge(db: AsyncSession, queues: QueueManager, booking: Booking) -> uuid.UUID:
    queue = queues.payments
    job_id = await queue.enqueue(
        db,
        _job(
            PROCESS_PAYMENT_JOB,
            booking,
            amount=str(booking.gross_amount - booking.discount_amount),
            currency=booking.currency,
        ),
        queue.config.default_options.merged(priority=PRIORITY_PAYMENT),
    )
    logger.info("Charge queued for booking %s (job %s)", booking.id, job_id)
    return job_id


async def enqueue_payout(
    db: AsyncSession,
    queues: QueueManager,
    booking: Booking,
    delay_hours: int,
) -> uuid.UUID:
    queue = queues.payments
    job_id = await queue.enqueue(
        db,
        _job(PROCESS_PAYOUT_JOB, booking, amount=str(booking.payout_amount)),
        queue.config.default_options.merged(delay_ms=delay_hours * 3600 * 1000),
    )
    logger.info(
        "Payout queued for booking %s in %dh (job %s)", booking.id, delay_hours, job_id,
    )
    return job_id


async def enqueue_refund(db: AsyncSession, queues: QueueManager, booking: Booking) -> uuid.UUID:
    queue = queues.payments
    job_id = await queue.enqueue(
        db,
        _job(
            PROCESS_REFUND_JOB,
            booking,
            amount=str(booking.refund_amount) if booking.refund_amount is not None else None,
            reason=booking.refund_reason,
        ),
        queue.config.default_options.merged(priority=PRIORITY_REFUND),
    )
    logger.info("Refund queued for booking %s (job %s)", booking.id, job_id)
    return job_id
