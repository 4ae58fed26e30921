"""
Pydantic v2 schemas for the Notifications API
=============================================

Request/response schemas for the user inbox and device registration.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from appointly.models.notification import (
    DevicePlatform,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
)


# ---------------------------------------------------------------------------
# Device registration
# ---------------------------------------------------------------------------

class DeviceRegisterRequest(BaseModel):
    """Request body for registering a device token for push notifications."""

    device_token: str = Field(
        min_length=1,
        max_length=512,
        description="FCM registration token from the device",
    )
    platform: DevicePlatform


class DeviceUnregisterRequest(BaseModel):
    device_token: str = Field(min_length=1, max_length=512)


class DeviceRegisterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    device_token: str
    platform: DevicePlatform
    is_active: bool
    created_at: datetime


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

class NotificationOut(BaseModel):
    """Single delivered notification."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    type: NotificationType = Field(validation_alias="notification_type")
    channel: NotificationChannel
    status: NotificationStatus
    title: Optional[str] = None
    body: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict, validation_alias="payload")
    booking_id: Optional[uuid.UUID] = None
    is_urgent: bool
    created_at: datetime
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total_items: int
    total_pages: int


class NotificationListResponse(BaseModel):
    items: list[NotificationOut]
    meta: PaginationMeta
    unread_count: int


class UnreadCountResponse(BaseModel):
    unread_count: int


class NotificationReadResponse(BaseModel):
    updated_count: int
    message: str
