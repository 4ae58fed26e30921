"""
Stripe Payment Gateway
======================

Executes the charge, refund and payout that booking transitions enqueue on
the ``payments`` queue.

All monetary amounts go to Stripe in cents. Every call carries the job's
idempotency key, so a retried job never moves money twice.

Error mapping:
  - CardError, InvalidRequestError, AuthenticationError, PermissionError
      -> PermanentDeliveryFailure (retrying cannot help)
  - APIConnectionError, RateLimitError, APIError and other StripeErrors
      -> TransientDeliveryFailure (the queue retries with backoff)
"""

from __future__ import annotations

import asyncio
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional

import stripe

from appointly.core.config import Settings
from appointly.core.exceptions import (
    DeliveryFailure,
    PermanentDeliveryFailure,
    TransientDeliveryFailure,
)
from appointly.models.booking import Booking

logger = logging.getLogger(__name__)

_PERMANENT_ERRORS: tuple[type[stripe.StripeError], ...] = (
    stripe.CardError,
    stripe.InvalidRequestError,
    stripe.AuthenticationError,
    stripe.PermissionError,
)


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _handle_stripe_error(exc: stripe.StripeError, operation: str) -> DeliveryFailure:
    """Convert a Stripe SDK exception into a delivery failure."""
    error_body = getattr(exc, "error", None)
    code = getattr(error_body, "code", None) if error_body else None
    decline_code = getattr(error_body, "decline_code", None) if error_body else None

    logger.error(
        "Stripe %s failed: %s (code=%s, decline_code=%s)",
        operation,
        str(exc),
        code,
        decline_code,
    )
    if isinstance(exc, _PERMANENT_ERRORS):
        return PermanentDeliveryFailure(f"Stripe {operation} rejected: {exc}")
    return TransientDeliveryFailure(f"Stripe {operation} failed: {exc}")


class StripePaymentGateway:

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def _call(self, operation: str, fn: Callable[..., Any], **params: Any) -> Any:
        if not self.settings.stripe_secret_key:
            raise PermanentDeliveryFailure("Stripe secret key not configured.")
        try:
            return await asyncio.to_thread(
                fn,
                api_key=self.settings.stripe_secret_key,
                stripe_version=self.settings.stripe_api_version,
                **params,
            )
        except stripe.StripeError as exc:
            raise _handle_stripe_error(exc, operation) from exc

    async def charge(self, booking: Booking, *, idempotency_key: str) -> str:
        if not booking.payment_method_id:
            raise PermanentDeliveryFailure(f"Booking {booking.id} has no payment method")

        amount_cents = to_cents(booking.gross_amount - booking.discount_amount)
        intent = await self._call(
            "charge",
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=booking.currency.lower(),
            payment_method=booking.payment_method_id,
            confirm=True,
            off_session=True,
            metadata={"booking_id": str(booking.id), "platform": "appointly"},
            idempotency_key=idempotency_key,
        )
        logger.info(
            "PaymentIntent created: id=%s, booking_id=%s, amount=%d %s, status=%s",
            intent.id,
            booking.id,
            amount_cents,
            booking.currency,
            intent.status,
        )
        return intent.id

    async def refund(
        self,
        booking: Booking,
        amount: Optional[Decimal],
        *,
        idempotency_key: str,
    ) -> str:
        if not booking.payment_reference:
            raise PermanentDeliveryFailure(f"Booking {booking.id} has no captured payment")

        params: dict[str, Any] = {
            "payment_intent": booking.payment_reference,
            "metadata": {
                "booking_id": str(booking.id),
                "reason": (booking.refund_reason or "")[:500],
                "platform": "appointly",
            },
            "idempotency_key": idempotency_key,
        }
        if amount is not None and amount > 0:
            params["amount"] = to_cents(amount)

        refund = await self._call("refund", stripe.Refund.create, **params)
        logger.info(
            "Refund created: id=%s, booking_id=%s, amount=%d, status=%s",
            refund.id,
            booking.id,
            refund.amount,
            refund.status,
        )
        return refund.id

    async def payout(self, booking: Booking, *, idempotency_key: str) -> str:
        account_id = booking.provider.stripe_account_id
        if not account_id:
            raise PermanentDeliveryFailure(
                f"Provider {booking.provider_id} has no connected Stripe account"
            )

        amount_cents = to_cents(booking.payout_amount)
        transfer = await self._call(
            "payout",
            stripe.Transfer.create,
            amount=amount_cents,
            currency=booking.currency.lower(),
            destination=account_id,
            metadata={"booking_id": str(booking.id), "platform": "appointly"},
            idempotency_key=idempotency_key,
        )
        logger.info(
            "Transfer created: id=%s, booking_id=%s, account=%s, amount=%d %s",
            transfer.id,
            booking.id,
            account_id,
            amount_cents,
            booking.currency,
        )
        return transfer.id
