"""
Service wiring.

Builds the long-lived objects the API and the workers share: the queue
manager with its processors registered, the notification service, the
conflict resolver and the booking lifecycle. Collaborators (transport,
payment gateway, connection registry) can be injected, which is how the
tests swap in fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appointly.core.config import Settings
from appointly.integrations.fcm import FcmPushTransport
from appointly.integrations.messaging import LoggingTransport
from appointly.integrations.stripe import StripePaymentGateway
from appointly.integrations.transport import (
    CompositeTransport,
    PaymentGateway,
    PushSender,
    Transport,
)
from appointly.queues.processors import DeliveryProcessor, PaymentProcessor
from appointly.queues.queueConfig import QueueName
from appointly.queues.queueManager import QueueManager
from appointly.realtime.connectionRegistry import ConnectionRegistry
from appointly.services.bookingService import BookingLifecycle
from appointly.services.conflictResolver import ConflictResolver
from appointly.services.notificationService import NotificationService

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    settings: Settings
    queues: QueueManager
    notifications: NotificationService
    conflicts: ConflictResolver
    bookings: BookingLifecycle
    registry: Optional[ConnectionRegistry]


def default_transport(settings: Settings) -> Transport:
    """FCM for push when Firebase credentials are configured; log hand-off otherwise."""
    fallback = LoggingTransport()
    push: PushSender = fallback
    if settings.firebase_credentials_json or settings.firebase_service_account_path:
        push = FcmPushTransport(settings)
    else:
        logger.warning("Firebase credentials not configured; push notifications will be logged only")
    return CompositeTransport(push=push, email=fallback, sms=fallback)


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    registry: Optional[ConnectionRegistry] = None,
    transport: Optional[Transport] = None,
    gateway: Optional[PaymentGateway] = None,
) -> AppServices:
    queues = QueueManager(settings, session_factory)
    notifications = NotificationService(queues)
    conflicts = ConflictResolver(settings.booking_buffer_minutes)
    bookings = BookingLifecycle(settings, conflicts, queues, notifications)

    delivery = DeliveryProcessor(transport or default_transport(settings), registry)
    queues.register(QueueName.BOOKINGS.value, delivery)
    queues.register(QueueName.NOTIFICATIONS.value, delivery)

    payments = PaymentProcessor(gateway or StripePaymentGateway(settings), notifications)
    queues.register(QueueName.PAYMENTS.value, payments.router(), on_failed=payments.on_failed)

    return AppServices(
        settings=settings,
        queues=queues,
        notifications=notifications,
        conflicts=conflicts,
        bookings=bookings,
        registry=registry,
    )
