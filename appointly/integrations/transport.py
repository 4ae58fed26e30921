"""
Delivery and payment collaborator interfaces.

The dispatcher only knows these protocols. Concrete implementations live in
the ``fcm``, ``messaging`` and ``stripe`` subpackages; tests pass fakes.

Implementations signal failures with ``TransientDeliveryFailure`` (retry
with backoff) or ``PermanentDeliveryFailure`` (dead-letter now).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from appointly.models.booking import Booking


@dataclass(frozen=True)
class OutboundMessage:
    """Rendered notification addressed to one user."""
    user_id: uuid.UUID
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    is_urgent: bool = False


class PushSender(Protocol):
    async def send_push(self, db: AsyncSession, message: OutboundMessage) -> None: ...


class EmailSender(Protocol):
    async def send_email(self, db: AsyncSession, message: OutboundMessage) -> None: ...


class SmsSender(Protocol):
    async def send_sms(self, db: AsyncSession, message: OutboundMessage) -> None: ...


class Transport(PushSender, EmailSender, SmsSender, Protocol):
    """Everything the delivery processor needs for out-of-app channels."""


class CompositeTransport:
    """Routes each channel to its own sender."""

    def __init__(self, push: PushSender, email: EmailSender, sms: SmsSender) -> None:
        self.push = push
        self.email = email
        self.sms = sms

    async def send_push(self, db: AsyncSession, message: OutboundMessage) -> None:
        await self.push.send_push(db, message)

    async def send_email(self, db: AsyncSession, message: OutboundMessage) -> None:
        await self.email.send_email(db, message)

    async def send_sms(self, db: AsyncSession, message: OutboundMessage) -> None:
        await self.sms.send_sms(db, message)


class PaymentGateway(Protocol):
    """Executes the money movement a booking transition triggered.

    Each call returns the provider-side reference. ``idempotency_key`` is
    stable across retries of the same job.
    """

    async def charge(self, booking: Booking, *, idempotency_key: str) -> str: ...

    async def refund(
        self,
        booking: Booking,
        amount: Optional[Decimal],
        *,
        idempotency_key: str,
    ) -> str: ...

    async def payout(self, booking: Booking, *, idempotency_key: str) -> str: ...
