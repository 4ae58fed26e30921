"""
Notification Service
====================

High-level notification layer between business logic (booking lifecycle,
payment processors, chat, admin broadcasts) and the dispatcher queues.
Each creator:

  1. Validates the recipient exists and is active.
  2. Derives urgency from the notification type (urgent types get a higher
     dispatch priority).
  3. Enqueues one job per channel in the caller's transaction; delivery
     happens asynchronously on the queue's workers.

The second half of the module is the user's inbox: delivered jobs with a
channel, listed newest first, which the user can mark read or delete.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from appointly.core.exceptions import NotFoundError, ValidationError
from appointly.core.pagination import PaginatedResult, check_page
from appointly.models.base import utcnow
from appointly.models.notification import (
    URGENT_NOTIFICATION_TYPES,
    NotificationChannel,
    NotificationJob,
    NotificationStatus,
    NotificationType,
)
from appointly.models.user import User
from appointly.queues.jobQueue import NewJob
from appointly.queues.queueConfig import PRIORITY_ROUTINE, PRIORITY_URGENT, QueueName
from appointly.queues.queueManager import QueueManager

logger = logging.getLogger(__name__)

SEND_NOTIFICATION_JOB: str = "send-notification"

_PAYMENT_TEXT: dict[NotificationType, tuple[str, str]] = {
    NotificationType.PAYMENT_SUCCESS: (
        "Payment Successful",
        "Your payment of {amount} {currency} was successful",
    ),
    NotificationType.PAYMENT_FAILED: (
        "Payment Failed",
        "Your payment of {amount} {currency} failed. Please try again",
    ),
    NotificationType.PAYMENT_REFUNDED: (
        "Refund Processed",
        "A refund of {amount} {currency} is on its way",
    ),
}


def is_urgent(notification_type: NotificationType) -> bool:
    return notification_type in URGENT_NOTIFICATION_TYPES


class NotificationService:

    def __init__(self, queues: QueueManager) -> None:
        self.queues = queues

    # -----------------------------------------------------------------------
    # Creators
    # -----------------------------------------------------------------------

    async def _active_user(self, db: AsyncSession, user_id: uuid.UUID) -> User:
        user = await db.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User", user_id)
        return user

    async def create_notification(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        notification_type: NotificationType,
        title: str,
        body: str,
        *,
        channel: NotificationChannel = NotificationChannel.PUSH,
        data: Optional[dict[str, Any]] = None,
        queue: str = QueueName.NOTIFICATIONS.value,
        booking_id: Optional[uuid.UUID] = None,
        conversation_id: Optional[uuid.UUID] = None,
        from_user_id: Optional[uuid.UUID] = None,
        source_event: Optional[str] = None,
        delay_ms: int = 0,
        dedupe_key: Optional[str] = None,
        check_user: bool = True,
    ) -> uuid.UUID:
        """Enqueue one notification for one user on one channel.

        Args:
            db: Session of the caller's transaction; nothing is committed here.
            user_id: Recipient.
            notification_type: Drives urgency and therefore priority.
            title: Rendered title.
            body: Rendered body.
            channel: Delivery channel.
            data: Opaque payload forwarded to the client.
            queue: Target queue name.
            booking_id: Correlated booking.
            conversation_id: Correlated chat conversation.
            from_user_id: Sender, for chat messages.
            source_event: Domain event that produced the notification.
            delay_ms: Delay before the first attempt.
            dedupe_key: Unique key for at-most-once scheduling.
            check_user: Validate that the recipient exists and is active.

        Returns:
            The new job id.

        Raises:
            NotFoundError: If the recipient does not exist or is inactive.
        """
        if check_user:
            await self._active_user(db, user_id)

        urgent = is_urgent(notification_type)
        target = self.queues.get_queue(queue)
        opts = target.config.default_options.merged(
            priority=PRIORITY_URGENT if urgent else PRIORITY_ROUTINE,
            delay_ms=max(delay_ms, 0),
        )
        job_id = await target.enqueue(
            db,
            NewJob(
                name=SEND_NOTIFICATION_JOB,
                notification_type=notification_type,
                payload=data or {},
                user_id=user_id,
                channel=channel,
                title=title,
                body=body,
                is_urgent=urgent,
                booking_id=booking_id,
                conversation_id=conversation_id,
                from_user_id=from_user_id,
                source_event=source_event,
                dedupe_key=dedupe_key,
            ),
            opts,
        )
        logger.info(
            "Notification %s queued: type=%s channel=%s user=%s queue=%s urgent=%s",
            job_id,
            notification_type.value,
            channel.value,
            user_id,
            queue,
            urgent,
        )
        return job_id

    async def send_booking_notification(
        self,
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        notification_type: NotificationType,
        booking_id: uuid.UUID,
        title: str,
        body: str,
        data: dict[str, Any],
        source_event: str,
        delay_ms: int = 0,
        dedupe_key: Optional[str] = None,
    ) -> uuid.UUID:
        """One push notification on the ``bookings`` queue."""
        return await self.create_notification(
            db,
            user_id,
            notification_type,
            title,
            body,
            channel=NotificationChannel.PUSH,
            data=data,
            queue=QueueName.BOOKINGS.value,
            booking_id=booking_id,
            source_event=source_event,
            delay_ms=delay_ms,
            dedupe_key=dedupe_key,
            check_user=False,
        )

    async def send_payment_notification(
        self,
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        notification_type: NotificationType,
        booking_id: uuid.UUID,
        amount: Decimal,
        currency: str,
    ) -> list[uuid.UUID]:
        """Push, plus email when the user opted in."""
        if notification_type not in _PAYMENT_TEXT:
            raise ValidationError(f"'{notification_type.value}' is not a payment notification.")

        user = await self._active_user(db, user_id)
        title, template = _PAYMENT_TEXT[notification_type]
        body = template.format(amount=f"{amount:.2f}", currency=currency)
        data = {"booking_id": str(booking_id), "amount": f"{amount:.2f}", "currency": currency}

        channels = [NotificationChannel.PUSH]
        if user.email_notifications and user.email:
            channels.append(NotificationChannel.EMAIL)

        return [
            await self.create_notification(
                db,
                user_id,
                notification_type,
                title,
                body,
                channel=channel,
                data=data,
                booking_id=booking_id,
                source_event=f"payment.{notification_type.value}",
                check_user=False,
            )
            for channel in channels
        ]

    async def notify_new_message(
        self,
        db: AsyncSession,
        *,
        recipient_id: uuid.UUID,
        sender_id: uuid.UUID,
        conversation_id: uuid.UUID,
        text: Optional[str],
    ) -> list[uuid.UUID]:
        """Chat message notification: push, plus email when the recipient opted in.

        An unknown recipient is skipped rather than raised; chat delivery
        must not fail because of a notification.
        """
        recipient = await db.get(User, recipient_id)
        if recipient is None or not recipient.is_active:
            logger.warning("Message notification skipped: recipient %s not found", recipient_id)
            return []

        sender = await db.get(User, sender_id)
        sender_name = sender.display_name if sender is not None else "Unknown User"
        title = f"New message from {sender_name}"
        body = text or "Sent an attachment"

        channels = [NotificationChannel.PUSH]
        if recipient.email_notifications and recipient.email:
            channels.append(NotificationChannel.EMAIL)

        return [
            await self.create_notification(
                db,
                recipient_id,
                NotificationType.MESSAGE_RECEIVED,
                title,
                body,
                channel=channel,
                data={"conversation_id": str(conversation_id)},
                conversation_id=conversation_id,
                from_user_id=sender_id,
                source_event="chat.message_received",
                check_user=False,
            )
            for channel in channels
        ]

    async def send_system_notification(
        self,
        db: AsyncSession,
        *,
        user_ids: Sequence[uuid.UUID],
        notification_type: NotificationType,
        title: str,
        body: str,
        data: Optional[dict[str, Any]] = None,
        channel: NotificationChannel = NotificationChannel.PUSH,
    ) -> list[uuid.UUID]:
        """Broadcast to a list of users. Unknown or inactive users are skipped."""
        if not user_ids:
            raise ValidationError("At least one recipient is required.")

        result = await db.execute(
            select(User.id).where(User.id.in_(list(user_ids)), User.is_active.is_(True))
        )
        recipients = set(result.scalars().all())
        skipped = len(set(user_ids) - recipients)
        if skipped:
            logger.warning("System notification skipped %d unknown/inactive user(s)", skipped)

        job_ids = [
            await self.create_notification(
                db,
                user_id,
                notification_type,
                title,
                body,
                channel=channel,
                data=data,
                source_event="system.broadcast",
                check_user=False,
            )
            for user_id in user_ids
            if user_id in recipients
        ]
        logger.info("System notification queued for %d user(s)", len(job_ids))
        return job_ids

    # -----------------------------------------------------------------------
    # Inbox
    # -----------------------------------------------------------------------

    async def list_notifications(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        page: int = 1,
        page_size: int = 20,
        unread_only: bool = False,
        max_page_size: Optional[int] = None,
    ) -> PaginatedResult[NotificationJob]:
        check_page(page, page_size, max_page_size)

        conditions = [
            NotificationJob.user_id == user_id,
            NotificationJob.channel.is_not(None),
        ]
        if unread_only:
            conditions.append(NotificationJob.status == NotificationStatus.SENT)
        else:
            conditions.append(
                NotificationJob.status.in_([NotificationStatus.SENT, NotificationStatus.READ])
            )

        total = await db.scalar(select(func.count(NotificationJob.id)).where(*conditions)) or 0
        result = await db.execute(
            select(NotificationJob)
            .where(*conditions)
            .order_by(NotificationJob.created_at.desc(), NotificationJob.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return PaginatedResult(
            items=list(result.scalars().all()),
            total_items=total,
            page=page,
            page_size=page_size,
        )

    async def unread_count(self, db: AsyncSession, user_id: uuid.UUID) -> int:
        count = await db.scalar(
            select(func.count(NotificationJob.id)).where(
                NotificationJob.user_id == user_id,
                NotificationJob.channel.is_not(None),
                NotificationJob.status == NotificationStatus.SENT,
            )
        )
        return count or 0

    async def mark_as_read(
        self,
        db: AsyncSession,
        notification_id: uuid.UUID,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> NotificationJob:
        """Mark one delivered notification as read. Idempotent for READ."""
        job = await db.get(NotificationJob, notification_id)
        if job is None or job.user_id != user_id or job.channel is None:
            raise NotFoundError("Notification", notification_id)

        if job.status == NotificationStatus.SENT:
            job.status = NotificationStatus.READ
            job.read_at = now or utcnow()
            await db.flush()
        elif job.status != NotificationStatus.READ:
            raise ValidationError("Only delivered notifications can be marked as read.")
        return job

    async def mark_all_as_read(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> int:
        result = await db.execute(
            update(NotificationJob)
            .where(
                NotificationJob.user_id == user_id,
                NotificationJob.channel.is_not(None),
                NotificationJob.status == NotificationStatus.SENT,
            )
            .values(status=NotificationStatus.READ, read_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def delete_notification(
        self,
        db: AsyncSession,
        notification_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> None:
        """Delete a delivered notification from the user's inbox.

        Jobs still owned by the dispatcher (PENDING) or dead-lettered
        (FAILED) are not part of the inbox.
        """
        result = await db.execute(
            delete(NotificationJob)
            .where(
                NotificationJob.id == notification_id,
                NotificationJob.user_id == user_id,
                NotificationJob.channel.is_not(None),
                NotificationJob.status.in_([NotificationStatus.SENT, NotificationStatus.READ]),
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise NotFoundError("Notification", notification_id)
