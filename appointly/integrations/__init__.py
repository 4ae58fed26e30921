"""
External collaborators: push, email/SMS and payment transports.
"""

from .transport import (
    CompositeTransport,
    EmailSender,
    OutboundMessage,
    PaymentGateway,
    PushSender,
    SmsSender,
    Transport,
)

__all__ = [
    "CompositeTransport",
    "EmailSender",
    "OutboundMessage",
    "PaymentGateway",
    "PushSender",
    "SmsSender",
    "Transport",
]
