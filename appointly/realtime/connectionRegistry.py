"""
Connection Registry
===================

Tracks which Socket.IO sessions belong to which user (one user, many
devices) and delivers in-app events to a user.

Every authenticated session joins the personal room ``user_<id>``. Emitting
to that room reaches the user's sessions on every API instance when the
server runs with the Redis client manager, so ``notify`` does not depend on
the local session map.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional, Union

import socketio

logger = logging.getLogger(__name__)

UserId = Union[str, uuid.UUID]


def personal_room(user_id: UserId) -> str:
    return f"user_{user_id}"


class ConnectionRegistry:

    def __init__(self, sio: socketio.AsyncServer) -> None:
        self.sio = sio
        self._user_sids: dict[str, set[str]] = {}
        self._sid_meta: dict[str, dict[str, Any]] = {}

    # -- local session map --------------------------------------------------

    def register(self, sid: str, user_id: UserId, meta: Optional[dict[str, Any]] = None) -> None:
        key = str(user_id)
        self._user_sids.setdefault(key, set()).add(sid)
        self._sid_meta[sid] = {**(meta or {}), "user_id": key}

    def unregister(self, sid: str) -> Optional[str]:
        """Forget a session. Returns the user id it belonged to, if any."""
        meta = self._sid_meta.pop(sid, None)
        if meta is None:
            return None
        user_id: str = meta["user_id"]
        sids = self._user_sids.get(user_id)
        if sids:
            sids.discard(sid)
            if not sids:
                del self._user_sids[user_id]
        return user_id

    # -- delivery -----------------------------------------------------------

    async def notify(self, user_id: UserId, event: str, payload: dict[str, Any]) -> None:
        """Emit ``event`` to all of a user's sessions."""
        await self.sio.emit(event, payload, room=personal_room(user_id))
        logger.debug("Sent %s to %s", event, personal_room(user_id))
