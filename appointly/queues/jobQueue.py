"""
Job Queue
=========

Durable named queue backed by the ``notification_jobs`` table.

Producers call ``enqueue`` inside their own transaction, so a job becomes
visible to workers only when the state change that produced it commits.
Workers are plain asyncio tasks; each one repeatedly:

  1. claims the best eligible job (PENDING, due, lease free) ordered by
     priority desc, next_attempt_at asc, with a compare-and-set lease update
     so no two workers run the same job;
  2. runs the handler under ``asyncio.wait_for`` with the job's timeout;
  3. records the outcome:
       - success                  -> SENT
       - PermanentDeliveryFailure -> FAILED immediately
       - anything else            -> attempts += 1, then PENDING with
                                     exponential backoff, or FAILED once
                                     attempts reach max_attempts.

FAILED jobs are dead letters: they are only picked up again through
``retry_failed``. A job whose worker dies mid-run keeps its lease until it
expires and is then claimed again.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appointly.core.exceptions import DeliveryFailure, PermanentDeliveryFailure
from appointly.models.base import utcnow
from appointly.models.notification import (
    NotificationChannel,
    NotificationJob,
    NotificationStatus,
    NotificationType,
)
from appointly.queues.queueConfig import JobOptions, QueueConfig, compute_backoff_ms

logger = logging.getLogger(__name__)

# Candidates fetched per claim attempt; losing a CAS race moves on to the next
CLAIM_BATCH: int = 5
MAX_ERROR_LENGTH: int = 2000


# ---------------------------------------------------------------------------
# Job input and handler types
# ---------------------------------------------------------------------------

@dataclass
class NewJob:
    """Fields of a job to enqueue. Delivery state comes from ``JobOptions``."""
    name: str
    notification_type: NotificationType
    payload: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[uuid.UUID] = None
    channel: Optional[NotificationChannel] = None
    title: Optional[str] = None
    body: Optional[str] = None
    is_urgent: bool = False
    booking_id: Optional[uuid.UUID] = None
    conversation_id: Optional[uuid.UUID] = None
    from_user_id: Optional[uuid.UUID] = None
    source_event: Optional[str] = None
    dedupe_key: Optional[str] = None


@dataclass
class JobContext:
    """What a handler gets: the claimed job and the session it runs in.

    Writes made through ``db`` commit together with the SENT outcome and are
    rolled back when the handler fails.
    """
    db: AsyncSession
    job: NotificationJob
    queue: str

    @property
    def attempt(self) -> int:
        """1-based number of the attempt being made."""
        return self.job.attempts + 1


Handler = Callable[[JobContext], Awaitable[None]]
FailedHook = Callable[[AsyncSession, NotificationJob, BaseException], Awaitable[None]]


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueueStats:
    name: str
    waiting: int
    active: int
    delayed: int
    completed: int
    failed: int
    paused: bool
    workers: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "waiting": self.waiting,
            "active": self.active,
            "delayed": self.delayed,
            "completed": self.completed,
            "failed": self.failed,
            "paused": self.paused,
            "workers": self.workers,
        }


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class JobQueue:
    """One named queue: producer API, worker pool and operator actions."""

    def __init__(
        self,
        config: QueueConfig,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.config = config
        self.name = config.name
        self._session_factory = session_factory
        self._handler: Optional[Handler] = None
        self._on_failed: Optional[FailedHook] = None
        self._workers: list[asyncio.Task[None]] = []
        self._paused = False
        self._closing = False
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # -- producer -----------------------------------------------------------

    async def enqueue(
        self,
        db: AsyncSession,
        job: NewJob,
        opts: Optional[JobOptions] = None,
    ) -> uuid.UUID:
        """Add a PENDING job to ``db``'s transaction and return its id.

        The caller owns the transaction; nothing is committed here.
        """
        options = opts or self.config.default_options
        now = utcnow()
        row = NotificationJob(
            id=uuid.uuid4(),
            queue=self.name,
            name=job.name,
            user_id=job.user_id,
            channel=job.channel,
            notification_type=job.notification_type,
            title=job.title,
            body=job.body,
            payload=job.payload,
            is_urgent=job.is_urgent,
            status=NotificationStatus.PENDING,
            priority=options.priority,
            attempts=0,
            max_attempts=options.attempts,
            backoff_delay_ms=options.backoff_delay_ms,
            timeout_ms=options.timeout_ms,
            next_attempt_at=now + timedelta(milliseconds=options.delay_ms),
            booking_id=job.booking_id,
            conversation_id=job.conversation_id,
            from_user_id=job.from_user_id,
            source_event=job.source_event,
            dedupe_key=job.dedupe_key,
        )
        db.add(row)
        await db.flush()

        logger.debug(
            "Enqueued job %s (%s) on %s: priority=%d delay=%dms",
            row.id,
            job.name,
            self.name,
            options.priority,
            options.delay_ms,
        )
        return row.id

    # -- consumer -----------------------------------------------------------

    def use(self, handler: Handler, on_failed: Optional[FailedHook] = None) -> None:
        """Register the handler (and optional dead-letter hook) without starting workers."""
        self._handler = handler
        if on_failed is not None:
            self._on_failed = on_failed

    def process(
        self,
        handler: Optional[Handler] = None,
        concurrency: Optional[int] = None,
        on_failed: Optional[FailedHook] = None,
    ) -> None:
        """Start ``concurrency`` worker tasks on the running loop."""
        if handler is not None:
            self.use(handler, on_failed)
        if self._handler is None:
            raise RuntimeError(f"Queue '{self.name}' has no handler registered.")
        if self._workers:
            logger.warning("Queue %s already has %d workers", self.name, len(self._workers))
            return

        self._closing = False
        count = concurrency or self.config.concurrency
        for index in range(count):
            task = asyncio.create_task(self._worker(index), name=f"queue:{self.name}:{index}")
            self._workers.append(task)
        logger.info("Queue %s started with %d workers", self.name, count)

    async def _worker(self, index: int) -> None:
        poll = self.config.poll_interval_seconds
        while not self._closing:
            try:
                ran = await self.run_once()
            except Exception:
                logger.exception("Worker %s:%d crashed while processing a job", self.name, index)
                ran = False
            if not ran:
                await asyncio.sleep(poll)

    async def run_once(self) -> bool:
        """Claim and execute at most one job. Returns ``True`` if one ran."""
        if self._handler is None:
            raise RuntimeError(f"Queue '{self.name}' has no handler registered.")

        self._in_flight += 1
        self._idle.clear()
        try:
            if self._paused or self._closing:
                return False
            job_id = await self._claim()
            if job_id is None:
                return False
            await self._execute(job_id)
            return True
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    async def _claim(self) -> Optional[uuid.UUID]:
        now = utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                select(NotificationJob.id)
                .where(
                    NotificationJob.queue == self.name,
                    NotificationJob.status == NotificationStatus.PENDING,
                    NotificationJob.next_attempt_at <= now,
                    or_(
                        NotificationJob.locked_until.is_(None),
                        NotificationJob.locked_until <= now,
                    ),
                )
                .order_by(
                    NotificationJob.priority.desc(),
                    NotificationJob.next_attempt_at.asc(),
                    NotificationJob.created_at.asc(),
                )
                .limit(CLAIM_BATCH)
            )
            candidates = list(result.scalars().all())

            for job_id in candidates:
                claimed = await db.execute(
                    update(NotificationJob)
                    .where(
                        NotificationJob.id == job_id,
                        NotificationJob.status == NotificationStatus.PENDING,
                        or_(
                            NotificationJob.locked_until.is_(None),
                            NotificationJob.locked_until <= now,
                        ),
                    )
                    .values(locked_until=now + self.config.lease)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:
                    await db.commit()
                    return job_id
            return None

    async def _execute(self, job_id: uuid.UUID) -> None:
        assert self._handler is not None

        async with self._session_factory() as db:
            job = await db.get(NotificationJob, job_id)
            if job is None:
                return

            ctx = JobContext(db=db, job=job, queue=self.name)
            timeout = job.timeout_ms / 1000
            try:
                await asyncio.wait_for(self._handler(ctx), timeout=timeout)
            except asyncio.TimeoutError:
                await self._record_failure(
                    db, job_id, TimeoutError(f"Job timed out after {job.timeout_ms}ms"),
                )
                return
            except Exception as exc:
                await self._record_failure(db, job_id, exc)
                return

            now = utcnow()
            job.status = NotificationStatus.SENT
            job.attempts += 1
            job.sent_at = now
            job.locked_until = None
            job.last_error = None
            await db.commit()
            logger.info(
                "Job %s (%s) on %s sent after %d attempt(s)",
                job_id,
                job.name,
                self.name,
                job.attempts,
            )

    async def _record_failure(
        self,
        db: AsyncSession,
        job_id: uuid.UUID,
        exc: BaseException,
    ) -> None:
        await db.rollback()
        job = await db.get(NotificationJob, job_id, populate_existing=True)
        if job is None:
            return

        now = utcnow()
        permanent = isinstance(exc, PermanentDeliveryFailure) or (
            isinstance(exc, DeliveryFailure) and not exc.retryable
        )
        job.attempts = min(job.attempts + 1, job.max_attempts)
        job.last_error = f"{exc.__class__.__name__}: {exc}"[:MAX_ERROR_LENGTH]
        job.locked_until = None

        if permanent or job.attempts >= job.max_attempts:
            job.status = NotificationStatus.FAILED
            job.failed_at = now
            logger.error(
                "Job %s (%s) on %s failed permanently after %d/%d attempts: %s",
                job_id,
                job.name,
                self.name,
                job.attempts,
                job.max_attempts,
                job.last_error,
            )
            if self._on_failed is not None:
                try:
                    await self._on_failed(db, job, exc)
                except Exception:
                    logger.exception("Dead-letter hook failed for job %s on %s", job_id, self.name)
        else:
            delay_ms = compute_backoff_ms(job.attempts, job.backoff_delay_ms)
            job.next_attempt_at = now + timedelta(milliseconds=delay_ms)
            logger.warning(
                "Job %s (%s) on %s attempt %d/%d failed, retrying in %dms: %s",
                job_id,
                job.name,
                self.name,
                job.attempts,
                job.max_attempts,
                delay_ms,
                job.last_error,
            )
        await db.commit()

    # -- operator actions ---------------------------------------------------

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._workers)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def pause(self) -> None:
        """Stop claiming new jobs; jobs already running finish normally."""
        self._paused = True
        logger.info("Queue %s paused", self.name)

    def resume(self) -> None:
        self._paused = False
        logger.info("Queue %s resumed", self.name)

    async def drain(self) -> None:
        """Pause and wait until every in-flight job has been recorded."""
        self.pause()
        await self._idle.wait()
        logger.info("Queue %s drained", self.name)

    async def close(self) -> None:
        """Drain, then stop the worker tasks."""
        await self.drain()
        self._closing = True
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("Queue %s closed", self.name)

    async def retry_failed(self, db: AsyncSession) -> int:
        """Move every FAILED job back to PENDING with its attempt count reset."""
        result = await db.execute(
            update(NotificationJob)
            .where(
                NotificationJob.queue == self.name,
                NotificationJob.status == NotificationStatus.FAILED,
            )
            .values(
                status=NotificationStatus.PENDING,
                attempts=0,
                next_attempt_at=utcnow(),
                locked_until=None,
                failed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        logger.info("Queue %s: %d failed job(s) re-queued", self.name, count)
        return count

    async def clear(self, db: AsyncSession) -> int:
        """Delete PENDING jobs that no worker currently holds."""
        now = utcnow()
        result = await db.execute(
            delete(NotificationJob)
            .where(
                NotificationJob.queue == self.name,
                NotificationJob.status == NotificationStatus.PENDING,
                or_(
                    NotificationJob.locked_until.is_(None),
                    NotificationJob.locked_until <= now,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        logger.info("Queue %s: %d pending job(s) cleared", self.name, count)
        return count

    async def clean(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """Apply retention to terminal jobs.

        Terminal jobs older than the retention window are deleted. Beyond
        that, each recipient keeps at most ``keep_completed`` SENT/READ jobs
        and ``keep_failed`` FAILED jobs, newest first.
        """
        now = now or utcnow()
        removed = 0

        aged = await db.execute(
            delete(NotificationJob)
            .where(
                NotificationJob.queue == self.name,
                NotificationJob.status.in_([
                    NotificationStatus.SENT,
                    NotificationStatus.READ,
                    NotificationStatus.FAILED,
                ]),
                NotificationJob.updated_at < now - self.config.retention,
            )
            .execution_options(synchronize_session=False)
        )
        removed += aged.rowcount or 0

        caps = (
            ([NotificationStatus.SENT, NotificationStatus.READ], self.config.keep_completed),
            ([NotificationStatus.FAILED], self.config.keep_failed),
        )
        for statuses, keep in caps:
            ranked = (
                select(
                    NotificationJob.id.label("id"),
                    func.row_number()
                    .over(
                        partition_by=NotificationJob.user_id,
                        order_by=(
                            NotificationJob.updated_at.desc(),
                            NotificationJob.created_at.desc(),
                        ),
                    )
                    .label("rn"),
                )
                .where(
                    NotificationJob.queue == self.name,
                    NotificationJob.status.in_(statuses),
                )
                .subquery()
            )
            capped = await db.execute(
                delete(NotificationJob)
                .where(NotificationJob.id.in_(select(ranked.c.id).where(ranked.c.rn > keep)))
                .execution_options(synchronize_session=False)
            )
            removed += capped.rowcount or 0

        if removed:
            logger.info("Queue %s: cleaned %d terminal job(s)", self.name, removed)
        return removed

    async def stats(self, db: AsyncSession) -> QueueStats:
        now = utcnow()
        pending = NotificationJob.status == NotificationStatus.PENDING
        leased = NotificationJob.locked_until > now

        def count_where(*conditions: Any) -> Any:
            return func.coalesce(func.sum(case((and_(*conditions), 1), else_=0)), 0)

        row = (
            await db.execute(
                select(
                    count_where(pending, NotificationJob.next_attempt_at <= now, or_(
                        NotificationJob.locked_until.is_(None),
                        NotificationJob.locked_until <= now,
                    )),
                    count_where(pending, leased),
                    count_where(pending, NotificationJob.next_attempt_at > now),
                    count_where(NotificationJob.status.in_([
                        NotificationStatus.SENT,
                        NotificationStatus.READ,
                    ])),
                    count_where(NotificationJob.status == NotificationStatus.FAILED),
                ).where(NotificationJob.queue == self.name)
            )
        ).one()

        return QueueStats(
            name=self.name,
            waiting=int(row[0]),
            active=int(row[1]),
            delayed=int(row[2]),
            completed=int(row[3]),
            failed=int(row[4]),
            paused=self._paused,
            workers=len(self._workers),
        )
