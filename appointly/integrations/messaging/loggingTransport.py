"""
Logging transport for email, SMS and (when FCM is not configured) push.

Raw email/SMS delivery belongs to an external service; this transport
resolves and validates the recipient address and records the hand-off in
the log. A recipient without an address can never be reached, so that case
is a permanent failure.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from appointly.core.exceptions import PermanentDeliveryFailure
from appointly.integrations.transport import OutboundMessage
from appointly.models.notification import DeviceToken
from appointly.models.user import User

logger = logging.getLogger(__name__)


class LoggingTransport:

    async def _recipient(self, db: AsyncSession, message: OutboundMessage) -> User:
        user = await db.get(User, message.user_id)
        if user is None or not user.is_active:
            raise PermanentDeliveryFailure(f"Recipient {message.user_id} not found or inactive")
        return user

    async def send_email(self, db: AsyncSession, message: OutboundMessage) -> None:
        user = await self._recipient(db, message)
        if not user.email:
            raise PermanentDeliveryFailure(f"User {user.id} has no email address")
        logger.info("Email to %s: %s", user.email, message.title)

    async def send_sms(self, db: AsyncSession, message: OutboundMessage) -> None:
        user = await self._recipient(db, message)
        if not user.phone:
            raise PermanentDeliveryFailure(f"User {user.id} has no phone number")
        logger.info("SMS to %s: %s", user.phone, message.body)

    async def send_push(self, db: AsyncSession, message: OutboundMessage) -> None:
        tokens = await db.scalar(
            select(func.count(DeviceToken.id)).where(
                DeviceToken.user_id == message.user_id,
                DeviceToken.is_active.is_(True),
            )
        )
        logger.info(
            "Push to user %s (%d device(s)): %s",
            message.user_id,
            tokens or 0,
            message.title,
        )
