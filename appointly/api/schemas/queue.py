"""
Schemas for the admin queue endpoints.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

from pydantic import BaseModel, Field

from appointly.models.notification import NotificationChannel, NotificationType


class QueueStatsOut(BaseModel):
    name: str
    waiting: int
    active: int
    delayed: int
    completed: int
    failed: int
    paused: bool
    workers: int


class QueueHealthOut(BaseModel):
    status: str
    queues: dict[str, dict[str, Any]]


class QueueActionResponse(BaseModel):
    queue: str
    action: str
    count: Optional[int] = None


class SystemNotificationRequest(BaseModel):
    """Broadcast a notification to a list of users."""

    user_ids: list[uuid.UUID] = Field(min_length=1, max_length=1000)
    notification_type: NotificationType = NotificationType.SYSTEM_UPDATE
    title: str = Field(min_length=1, max_length=255)
    body: str = Field(min_length=1, max_length=2000)
    data: dict[str, Any] = Field(default_factory=dict)
    channel: NotificationChannel = NotificationChannel.PUSH


class SystemNotificationResponse(BaseModel):
    queued: int
    job_ids: list[uuid.UUID]
