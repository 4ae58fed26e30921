"""
Conflict Resolver
=================

Decides whether a provider can take a booking at a requested time.

Rule: a request at ``t`` is rejected when the provider already has a booking
in REQUESTED, ACCEPTED or IN_PROGRESS whose scheduled time falls inside
``[t - B, t + B]`` (bounds inclusive), where ``B`` is the configured buffer.
The rule compares start times only, so it is a single indexed range query.

The check is read-only. Callers must run it and the booking insert inside
``provider_booking_lock`` so two requests cannot both pass the check.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from appointly.models.booking import Booking
from appointly.services import providerDirectory

logger = logging.getLogger(__name__)


def _advisory_key(provider_id: uuid.UUID) -> int:
    """Signed 64-bit key for ``pg_advisory_xact_lock``."""
    key = provider_id.int & 0xFFFF_FFFF_FFFF_FFFF
    return key - (1 << 64) if key >= (1 << 63) else key


class ConflictResolver:
    """Buffer-window availability check plus the per-provider critical section."""

    def __init__(self, buffer_minutes: int = 30) -> None:
        self.buffer = timedelta(minutes=buffer_minutes)
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        # Holders plus waiters per provider; the lock is dropped at zero
        self._users: Counter[uuid.UUID] = Counter()

    # -- critical section ---------------------------------------------------

    @asynccontextmanager
    async def provider_booking_lock(
        self,
        db: AsyncSession,
        provider_id: uuid.UUID,
    ) -> AsyncIterator[None]:
        """Serialise check-then-insert for one provider.

        Holds an in-process lock for the whole block. On PostgreSQL it also
        takes a transaction-scoped advisory lock, so other API instances
        wait until this transaction commits or rolls back. The block must
        end with the commit.
        """
        lock = self._locks.setdefault(provider_id, asyncio.Lock())
        self._users[provider_id] += 1
        try:
            async with lock:
                if db.get_bind().dialect.name == "postgresql":
                    await db.execute(select(func.pg_advisory_xact_lock(_advisory_key(provider_id))))
                yield
        finally:
            self._users[provider_id] -= 1
            if not self._users[provider_id]:
                del self._users[provider_id]
                del self._locks[provider_id]

    # -- checks -------------------------------------------------------------

    async def find_conflict(
        self,
        db: AsyncSession,
        provider_id: uuid.UUID,
        requested_start: datetime,
    ) -> Optional[Booking]:
        """Return the first active booking inside the buffer window, if any."""
        start = requested_start.astimezone(timezone.utc)
        bookings = await providerDirectory.active_bookings(
            db,
            provider_id,
            start - self.buffer,
            start + self.buffer,
        )
        return bookings[0] if bookings else None

    async def is_available(
        self,
        db: AsyncSession,
        provider_id: uuid.UUID,
        requested_start: datetime,
        duration_min: int,
    ) -> bool:
        """True when no active booking sits within the buffer of ``requested_start``.

        ``duration_min`` is part of the contract but the symmetric buffer
        rule does not use it.
        """
        conflict = await self.find_conflict(db, provider_id, requested_start)
        if conflict is not None:
            logger.info(
                "Slot %s for provider %s conflicts with booking %s at %s",
                requested_start.isoformat(),
                provider_id,
                conflict.id,
                conflict.scheduled_at.isoformat(),
            )
            return False
        return True
