"""
Stripe integration: charges, refunds and provider payouts.
"""

from .paymentGateway import StripePaymentGateway, to_cents

__all__ = ["StripePaymentGateway", "to_cents"]
