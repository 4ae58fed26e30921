"""
Notification API Routes
=======================

The authenticated user's inbox and push device registration:

  GET    /api/v1/notifications                    -- Delivered notifications (paginated)
  GET    /api/v1/notifications/unread-count       -- Unread count
  PATCH  /api/v1/notifications/read-all           -- Mark all as read
  PATCH  /api/v1/notifications/{id}/read          -- Mark one as read
  DELETE /api/v1/notifications/{id}               -- Remove from the inbox
  POST   /api/v1/notifications/devices            -- Register device token
  DELETE /api/v1/notifications/devices            -- Deactivate device token
"""

from __future__ import annotations

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import select

from appointly.api.deps import CurrentActor, DBSession, Services
from appointly.api.schemas.notification import (
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    DeviceUnregisterRequest,
    NotificationListResponse,
    NotificationOut,
    NotificationReadResponse,
    PaginationMeta,
    UnreadCountResponse,
)
from appointly.core.config import settings
from appointly.core.guards import Actor
from appointly.models.notification import DeviceToken

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


def _user_id(actor: Actor) -> uuid.UUID:
    if actor.user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated.")
    return actor.user_id


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=NotificationListResponse,
    summary="Get notification inbox",
    description=(
        "Delivered notifications for the authenticated user, newest first. "
        "Pending and failed deliveries are not listed."
    ),
)
async def list_notifications(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    unread_only: Annotated[bool, Query(alias="unreadOnly")] = False,
) -> NotificationListResponse:
    user_id = _user_id(actor)
    result = await services.notifications.list_notifications(
        db,
        user_id,
        page=page,
        page_size=limit,
        unread_only=unread_only,
        max_page_size=settings.max_page_size,
    )
    unread = await services.notifications.unread_count(db, user_id)
    return NotificationListResponse(
        items=[NotificationOut.model_validate(job) for job in result.items],
        meta=PaginationMeta(
            page=result.page,
            limit=result.page_size,
            total_items=result.total_items,
            total_pages=result.total_pages,
        ),
        unread_count=unread,
    )


@router.get("/unread-count", response_model=UnreadCountResponse, summary="Get unread count")
async def unread_count(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
) -> UnreadCountResponse:
    count = await services.notifications.unread_count(db, _user_id(actor))
    return UnreadCountResponse(unread_count=count)


@router.patch("/read-all", response_model=NotificationReadResponse, summary="Mark all as read")
async def mark_all_read(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
) -> NotificationReadResponse:
    count = await services.notifications.mark_all_as_read(db, _user_id(actor))
    return NotificationReadResponse(
        updated_count=count,
        message=f"{count} notification(s) marked as read",
    )


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------
# Declared before the ``/{notification_id}`` routes so ``/devices`` is not
# parsed as a notification id.

@router.post(
    "/devices",
    response_model=DeviceRegisterResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register device for push notifications",
    description=(
        "Registers an FCM device token for the authenticated user. An "
        "existing user/token pair is re-activated."
    ),
)
async def register_device(
    db: DBSession,
    actor: CurrentActor,
    body: DeviceRegisterRequest,
) -> DeviceRegisterResponse:
    user_id = _user_id(actor)
    result = await db.execute(
        select(DeviceToken).where(
            DeviceToken.user_id == user_id,
            DeviceToken.device_token == body.device_token,
        )
    )
    device = result.scalar_one_or_none()
    if device is None:
        device = DeviceToken(user_id=user_id, device_token=body.device_token, platform=body.platform)
        db.add(device)
    else:
        device.platform = body.platform
        device.is_active = True
    await db.flush()

    logger.info("Device registered for user %s (%s)", user_id, body.platform.value)
    return DeviceRegisterResponse.model_validate(device)


@router.delete(
    "/devices",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Unregister device",
)
async def unregister_device(
    db: DBSession,
    actor: CurrentActor,
    body: DeviceUnregisterRequest,
) -> None:
    user_id = _user_id(actor)
    result = await db.execute(
        select(DeviceToken).where(
            DeviceToken.user_id == user_id,
            DeviceToken.device_token == body.device_token,
        )
    )
    device = result.scalar_one_or_none()
    if device is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device token not found.")
    device.is_active = False
    logger.info("Device unregistered for user %s", user_id)


@router.patch("/{notification_id}/read", response_model=NotificationOut, summary="Mark as read")
async def mark_read(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    notification_id: uuid.UUID,
) -> NotificationOut:
    job = await services.notifications.mark_as_read(db, notification_id, _user_id(actor))
    return NotificationOut.model_validate(job)


@router.delete(
    "/{notification_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a notification",
)
async def delete_notification(
    db: DBSession,
    actor: CurrentActor,
    services: Services,
    notification_id: uuid.UUID,
) -> None:
    await services.notifications.delete_notification(db, notification_id, _user_id(actor))
