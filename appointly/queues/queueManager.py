"""
Queue Manager
=============

Owns the three named queues, wires their processors and exposes the
operator surface (stats, health, pause/resume, retry, clean) used by the
admin routes and the maintenance loop.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appointly.core.config import Settings
from appointly.core.exceptions import NotFoundError
from appointly.queues.jobQueue import FailedHook, Handler, JobQueue, QueueStats
from appointly.queues.queueConfig import QueueName, build_queue_configs

logger = logging.getLogger(__name__)


class QueueManager:

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.settings = settings
        self._session_factory = session_factory
        self._queues: dict[str, JobQueue] = {
            name: JobQueue(config, session_factory)
            for name, config in build_queue_configs(settings).items()
        }

    # -- lookup -------------------------------------------------------------

    def get_queue(self, name: str) -> JobQueue:
        queue = self._queues.get(name)
        if queue is None:
            raise NotFoundError("Queue", name)
        return queue

    @property
    def bookings(self) -> JobQueue:
        return self._queues[QueueName.BOOKINGS.value]

    @property
    def notifications(self) -> JobQueue:
        return self._queues[QueueName.NOTIFICATIONS.value]

    @property
    def payments(self) -> JobQueue:
        return self._queues[QueueName.PAYMENTS.value]

    @property
    def names(self) -> list[str]:
        return list(self._queues)

    # -- lifecycle ----------------------------------------------------------

    def register(self, name: str, handler: Handler, on_failed: Optional[FailedHook] = None) -> None:
        self.get_queue(name).use(handler, on_failed)

    def start_all(self) -> None:
        for queue in self._queues.values():
            queue.process()
        logger.info("Started workers for queues: %s", ", ".join(self._queues))

    async def shutdown(self) -> None:
        for queue in self._queues.values():
            await queue.close()
        logger.info("All queues shut down")

    # -- operator surface ---------------------------------------------------

    async def stats(self, db: AsyncSession) -> list[QueueStats]:
        return [await queue.stats(db) for queue in self._queues.values()]

    async def health(self, db: AsyncSession) -> dict[str, Any]:
        """Per-queue worker state plus an overall status.

        ``degraded`` when any queue is paused or has stopped workers while
        workers are enabled.
        """
        queues: dict[str, Any] = {}
        healthy = True
        for name, queue in self._queues.items():
            stats = await queue.stats(db)
            workers_ok = queue.is_running or not self.settings.queue_workers_enabled
            if queue.is_paused or not workers_ok:
                healthy = False
            queues[name] = {
                "running": queue.is_running,
                "paused": queue.is_paused,
                "waiting": stats.waiting,
                "failed": stats.failed,
            }
        return {"status": "healthy" if healthy else "degraded", "queues": queues}

    async def purge_terminal_jobs(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        removed = 0
        for queue in self._queues.values():
            removed += await queue.clean(db, now)
        return removed
