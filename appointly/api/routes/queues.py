"""
Queue Admin Routes
==================

Operator surface for the notification dispatcher. All routes require the
``admin`` role.

  GET    /api/v1/queues/stats                     -- Job counts per queue
  GET    /api/v1/queues/health                    -- Worker state per queue
  PATCH  /api/v1/queues/{name}/pause              -- Stop claiming new jobs
  PATCH  /api/v1/queues/{name}/resume             -- Resume claiming
  POST   /api/v1/queues/{name}/retry-failed       -- FAILED jobs back to PENDING
  DELETE /api/v1/queues/{name}/clean              -- Apply retention now
  POST   /api/v1/queues/notifications/send        -- Broadcast a system notification
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status

from appointly.api.deps import AdminActor, DBSession, Services
from appointly.api.schemas.queue import (
    QueueActionResponse,
    QueueHealthOut,
    QueueStatsOut,
    SystemNotificationRequest,
    SystemNotificationResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queues", tags=["Queues"])


@router.get("/stats", response_model=list[QueueStatsOut], summary="Queue statistics")
async def queue_stats(db: DBSession, admin: AdminActor, services: Services) -> list[QueueStatsOut]:
    stats = await services.queues.stats(db)
    return [QueueStatsOut(**s.to_dict()) for s in stats]


@router.get("/health", response_model=QueueHealthOut, summary="Queue health")
async def queue_health(db: DBSession, admin: AdminActor, services: Services) -> QueueHealthOut:
    return QueueHealthOut(**await services.queues.health(db))


@router.post(
    "/notifications/send",
    response_model=SystemNotificationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Broadcast a system notification",
)
async def send_system_notification(
    db: DBSession,
    admin: AdminActor,
    services: Services,
    body: SystemNotificationRequest,
) -> SystemNotificationResponse:
    job_ids = await services.notifications.send_system_notification(
        db,
        user_ids=body.user_ids,
        notification_type=body.notification_type,
        title=body.title,
        body=body.body,
        data=body.data,
        channel=body.channel,
    )
    logger.info("Admin %s broadcast '%s' to %d user(s)", admin.user_id, body.title, len(job_ids))
    return SystemNotificationResponse(queued=len(job_ids), job_ids=job_ids)


@router.patch("/{name}/pause", response_model=QueueActionResponse, summary="Pause a queue")
async def pause_queue(name: str, admin: AdminActor, services: Services) -> QueueActionResponse:
    services.queues.get_queue(name).pause()
    logger.info("Queue %s paused by admin %s", name, admin.user_id)
    return QueueActionResponse(queue=name, action="paused")


@router.patch("/{name}/resume", response_model=QueueActionResponse, summary="Resume a queue")
async def resume_queue(name: str, admin: AdminActor, services: Services) -> QueueActionResponse:
    services.queues.get_queue(name).resume()
    logger.info("Queue %s resumed by admin %s", name, admin.user_id)
    return QueueActionResponse(queue=name, action="resumed")


@router.post(
    "/{name}/retry-failed",
    response_model=QueueActionResponse,
    summary="Retry all failed jobs",
)
async def retry_failed(
    db: DBSession,
    name: str,
    admin: AdminActor,
    services: Services,
) -> QueueActionResponse:
    count = await services.queues.get_queue(name).retry_failed(db)
    return QueueActionResponse(queue=name, action="retried", count=count)


@router.delete("/{name}/clean", response_model=QueueActionResponse, summary="Clean terminal jobs")
async def clean_queue(
    db: DBSession,
    name: str,
    admin: AdminActor,
    services: Services,
) -> QueueActionResponse:
    count = await services.queues.get_queue(name).clean(db)
    return QueueActionResponse(queue=name, action="cleaned", count=count)
