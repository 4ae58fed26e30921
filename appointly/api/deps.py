"""
Shared FastAPI dependencies for the Appointly backend.

Provides the async database session dependency used by all route handlers,
the service container stored on ``app.state``, and authentication
dependencies that turn a JWT Bearer token into an ``Actor``.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from typing import Annotated, Any

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from appointly.core.config import settings
from appointly.core.guards import Actor, ActorType
from appointly.services.registry import AppServices

# ---------------------------------------------------------------------------
# Async engine & session factory
# ---------------------------------------------------------------------------
# The engine is created once at module import time. Pool sizing only applies
# to server databases; SQLite (local runs) keeps SQLAlchemy's default pool.
# ---------------------------------------------------------------------------

_engine_kwargs: dict[str, Any] = {"echo": settings.sql_echo, "pool_pre_ping": True}
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs.update(pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow)

engine = create_async_engine(settings.database_url, **_engine_kwargs)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session that commits when the request
    succeeds and rolls back when it raises.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


DBSession = Annotated[AsyncSession, Depends(get_db)]


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

def get_services(request: Request) -> AppServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services are not initialised.",
        )
    return services


Services = Annotated[AppServices, Depends(get_services)]


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=False)

_TOKEN_ROLES = {
    ActorType.CUSTOMER.value: ActorType.CUSTOMER,
    ActorType.PROVIDER.value: ActorType.PROVIDER,
    ActorType.ADMIN.value: ActorType.ADMIN,
}


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> Actor:
    """Validate a Bearer token and build the acting user.

    Tokens are issued elsewhere; they must carry ``sub`` (user UUID) and
    ``role`` (customer | provider | admin).

    Raises:
        HTTPException 401 for expired, malformed or incomplete tokens.
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Access token has expired.")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid access token.")

    sub = payload.get("sub")
    role = _TOKEN_ROLES.get(str(payload.get("role", "")).lower())
    if not sub or role is None:
        raise _unauthorized("Invalid token: missing subject or role.")
    try:
        user_id = uuid.UUID(str(sub))
    except ValueError:
        raise _unauthorized("Invalid token: malformed subject.")
    return Actor(user_id=user_id, actor_type=role)


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> Actor:
    if credentials is None:
        raise _unauthorized("Not authenticated.")
    return decode_access_token(credentials.credentials)


async def require_admin(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
    if actor.actor_type != ActorType.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required.",
        )
    return actor


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
AdminActor = Annotated[Actor, Depends(require_admin)]
