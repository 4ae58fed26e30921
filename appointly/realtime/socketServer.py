"""
WebSocket Server
================

Socket.IO server used for in-app notification delivery.

Architecture:
  - python-socketio AsyncServer mounted as an ASGI app on FastAPI at ``/ws``
  - Redis client manager for fan-out across API instances (optional)
  - JWT authentication on connect, extracting user_id and role

Connection lifecycle:
  1. Client connects with ``auth: { token: "<jwt>" }``
  2. Server validates the JWT and joins the session to ``user_<id>``
  3. On disconnect the session is dropped from the registry
"""

from __future__ import annotations

import logging
from typing import Any

import jwt
import socketio

from appointly.core.config import Settings
from appointly.realtime.connectionRegistry import ConnectionRegistry, personal_room

logger = logging.getLogger(__name__)


def authenticate_token(token: str | None, settings: Settings) -> dict[str, Any] | None:
    """Validate a JWT and return the decoded payload, or None on failure.

    Expected payload fields:
      - sub: str  (user_id as UUID string)
      - role: str (customer | provider | admin)
    """
    if not token:
        return None
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token expired")
        return None
    except jwt.InvalidTokenError as exc:
        logger.warning("Invalid JWT token: %s", exc)
        return None

    if "sub" not in payload or "role" not in payload:
        logger.warning("JWT missing required claims (sub, role)")
        return None
    return payload


def create_socket_server(settings: Settings) -> socketio.AsyncServer:
    client_manager = None
    if settings.ws_use_redis:
        client_manager = socketio.AsyncRedisManager(settings.redis_url, write_only=False)

    origins: Any = settings.ws_cors_allowed_origins
    if origins != "*":
        origins = [o.strip() for o in origins.split(",") if o.strip()]

    return socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=origins,
        client_manager=client_manager,
        logger=False,
        engineio_logger=False,
        ping_timeout=settings.ws_ping_timeout,
        ping_interval=settings.ws_ping_interval,
        max_http_buffer_size=1_000_000,
    )


def register_handlers(
    sio: socketio.AsyncServer,
    registry: ConnectionRegistry,
    settings: Settings,
) -> None:
    """Attach connect/disconnect handlers that maintain ``registry``."""

    async def connect(sid: str, environ: dict[str, Any], auth: dict[str, Any] | None = None) -> bool:
        payload = authenticate_token((auth or {}).get("token"), settings)
        if payload is None:
            logger.info("Connection rejected for sid=%s -- authentication failed", sid)
            return False

        user_id: str = payload["sub"]
        registry.register(sid, user_id, {"role": payload["role"]})
        await sio.enter_room(sid, personal_room(user_id))
        logger.info("Connected: sid=%s user_id=%s role=%s", sid, user_id, payload["role"])
        return True

    async def disconnect(sid: str) -> None:
        user_id = registry.unregister(sid)
        logger.info("Disconnected: sid=%s user_id=%s", sid, user_id)

    sio.on("connect", connect)
    sio.on("disconnect", disconnect)


def create_socket_app(sio: socketio.AsyncServer) -> socketio.ASGIApp:
    """ASGI app to mount at ``/ws`` (clients use path ``/ws/socket.io``)."""
    return socketio.ASGIApp(socketio_server=sio, socketio_path="socket.io")
