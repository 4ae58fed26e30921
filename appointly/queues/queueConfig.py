"""
Queue configuration.

Job options (attempts, backoff, priority, delay, timeout) and per-queue
settings (concurrency, retention) are explicit values built from ``Settings``
at startup, so every default is visible in one place.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Optional

from appointly.core.config import Settings


class QueueName(str, enum.Enum):
    BOOKINGS = "bookings"
    NOTIFICATIONS = "notifications"
    PAYMENTS = "payments"


# Dispatch priorities (higher runs first)
PRIORITY_ROUTINE: int = 1
PRIORITY_URGENT: int = 10
PRIORITY_PAYMENT: int = 10
PRIORITY_REFUND: int = 8


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff_delay_ms: int = 2_000
    priority: int = PRIORITY_ROUTINE
    delay_ms: int = 0
    timeout_ms: int = 30_000

    def merged(self, override: Optional["JobOptions"] = None, **changes: int) -> "JobOptions":
        """Return these options with ``override`` (if any) and ``changes`` applied."""
        base = override if override is not None else self
        return replace(base, **changes) if changes else base


@dataclass(frozen=True)
class QueueConfig:
    name: str
    concurrency: int
    default_options: JobOptions
    keep_completed: int
    keep_failed: int
    retention: timedelta
    poll_interval_seconds: float = 1.0
    lease: timedelta = timedelta(seconds=120)


def compute_backoff_ms(attempts: int, base_delay_ms: int) -> int:
    """Delay before the next try after ``attempts`` failed attempts: ``2^attempts * base``."""
    return (2 ** attempts) * base_delay_ms


def build_queue_configs(settings: Settings) -> dict[str, QueueConfig]:
    retention = timedelta(hours=settings.queue_retention_hours)
    lease = timedelta(seconds=settings.queue_lease_seconds)
    poll = settings.queue_poll_interval_seconds
    timeout = settings.queue_job_timeout_ms

    return {
        QueueName.BOOKINGS.value: QueueConfig(
            name=QueueName.BOOKINGS.value,
            concurrency=settings.bookings_queue_concurrency,
            default_options=JobOptions(
                attempts=settings.bookings_queue_attempts,
                backoff_delay_ms=settings.bookings_queue_backoff_ms,
                timeout_ms=timeout,
            ),
            keep_completed=settings.bookings_queue_keep_completed,
            keep_failed=settings.bookings_queue_keep_failed,
            retention=retention,
            poll_interval_seconds=poll,
            lease=lease,
        ),
        QueueName.NOTIFICATIONS.value: QueueConfig(
            name=QueueName.NOTIFICATIONS.value,
            concurrency=settings.notifications_queue_concurrency,
            default_options=JobOptions(
                attempts=settings.notifications_queue_attempts,
                backoff_delay_ms=settings.notifications_queue_backoff_ms,
                timeout_ms=timeout,
            ),
            keep_completed=settings.notifications_queue_keep_completed,
            keep_failed=settings.notifications_queue_keep_failed,
            retention=retention,
            poll_interval_seconds=poll,
            lease=lease,
        ),
        QueueName.PAYMENTS.value: QueueConfig(
            name=QueueName.PAYMENTS.value,
            concurrency=settings.payments_queue_concurrency,
            default_options=JobOptions(
                attempts=settings.payments_queue_attempts,
                backoff_delay_ms=settings.payments_queue_backoff_ms,
                timeout_ms=timeout,
            ),
            keep_completed=settings.payments_queue_keep_completed,
            keep_failed=settings.payments_queue_keep_failed,
            retention=retention,
            poll_interval_seconds=poll,
            lease=lease,
        ),
    }
