"""
Appointly Real-time Module
==========================

Socket.IO server and connection registry for in-app delivery.

Usage in FastAPI app startup::

    sio = create_socket_server(settings)
    registry = ConnectionRegistry(sio)
    register_handlers(sio, registry, settings)
    app.mount("/ws", create_socket_app(sio))
"""

from __future__ import annotations

from .connectionRegistry import ConnectionRegistry, personal_room
from .socketServer import (
    authenticate_token,
    create_socket_app,
    create_socket_server,
    register_handlers,
)

__all__ = [
    "ConnectionRegistry",
    "authenticate_token",
    "create_socket_app",
    "create_socket_server",
    "personal_room",
    "register_handlers",
]
