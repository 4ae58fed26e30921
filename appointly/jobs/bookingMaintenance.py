"""
Booking Maintenance -- Periodic Job.

This module provides the periodic sweep that:

1. Cancels booking requests whose scheduled time passed without an answer.
2. Schedules delayed reminder notifications for accepted bookings.
3. Removes terminal queue jobs past their retention window or count cap.

Each step runs in its own transaction so one failing step does not undo
the others. The API process runs it every ``maintenance_interval_seconds``
through ``MaintenanceLoop``; it can also be run once from the command line::

    python -m appointly.jobs.bookingMaintenance
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appointly.models.base import utcnow
from appointly.services.registry import AppServices

logger = logging.getLogger(__name__)

Step = Callable[[AsyncSession, datetime], Awaitable[int]]


async def _run_step(
    session_factory: async_sessionmaker[AsyncSession],
    name: str,
    step: Step,
    now: datetime,
) -> Optional[int]:
    async with session_factory() as session:
        try:
            count = await step(session, now)
            await session.commit()
            return count
        except Exception:
            await session.rollback()
            logger.exception("Maintenance step '%s' failed", name)
            return None


async def run_maintenance(
    services: AppServices,
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
) -> dict[str, Optional[int]]:
    """Execute one full sweep.

    Returns:
        Count per step; ``None`` for a step that failed.
    """
    now = now or utcnow()
    steps: dict[str, Step] = {
        "expired_requests": services.bookings.expire_stale_requests,
        "reminders_scheduled": services.bookings.schedule_reminders,
        "jobs_purged": services.queues.purge_terminal_jobs,
    }

    counts: dict[str, Optional[int]] = {}
    for name, step in steps.items():
        counts[name] = await _run_step(session_factory, name, step, now)

    logger.info(
        "Maintenance sweep at %s: expired=%s reminders=%s purged=%s",
        now.isoformat(),
        counts["expired_requests"],
        counts["reminders_scheduled"],
        counts["jobs_purged"],
    )
    return counts


class MaintenanceLoop:
    """Runs ``run_maintenance`` every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        services: AppServices,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float,
    ) -> None:
        self.services = services
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="booking-maintenance")
        logger.info("Maintenance loop started (every %ss)", self.interval_seconds)

    async def _run(self) -> None:
        while True:
            await run_maintenance(self.services, self.session_factory)
            await asyncio.sleep(self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Maintenance loop stopped")


# ---------------------------------------------------------------------------
# CLI entry point (for manual runs / simple cron)
# ---------------------------------------------------------------------------

async def _cli_main() -> None:
    from appointly.api.deps import async_session_factory
    from appointly.core.config import settings
    from appointly.services.registry import build_services

    services = build_services(settings, async_session_factory)
    result = await run_maintenance(services, async_session_factory)
    print(f"Maintenance completed: {result}")  # noqa: T201


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_cli_main())
