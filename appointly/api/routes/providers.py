"""
Provider API Routes
===================

Routes:
  GET    /api/v1/providers/nearby                 -- Online providers near a point (public)
  GET    /api/v1/providers/search                 -- Active providers, filtered and sorted
  GET    /api/v1/providers/{id}                   -- Provider profile
  GET    /api/v1/providers/{id}/availability      -- Free slots on a date
  PATCH  /api/v1/providers/me/status              -- Go online / offline
  PATCH  /api/v1/providers/me/location            -- Update current location
  PUT    /api/v1/providers/me/availability        -- Replace the weekly template
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Annotated, Optional

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from appointly.api.deps import CurrentActor, DBSession, Services
from appointly.api.schemas.common import PaginatedResponse, PaginationMeta
from appointly.api.schemas.provider import (
    AvailabilityOut,
    ProviderAvailabilityRequest,
    ProviderLocationUpdateRequest,
    ProviderMatchOut,
    ProviderOut,
    ProviderStatusUpdateRequest,
    SlotOut,
)
from appointly.core.config import settings
from appointly.core.guards import Actor, ActorType
from appointly.models.base import utcnow
from appointly.models.provider import Provider
from appointly.services import geoMatcher, providerDirectory
from appointly.services.geoMatcher import SortBy, SortOrder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/providers", tags=["Providers"])


async def _own_provider(db: AsyncSession, actor: Actor) -> Provider:
    if actor.actor_type != ActorType.PROVIDER or actor.user_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only providers can update their own profile.",
        )
    return await providerDirectory.get_provider_by_user(db, actor.user_id)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

@router.get(
    "/nearby",
    response_model=PaginatedResponse[ProviderMatchOut],
    summary="Online providers near a location",
)
async def nearby_providers(
    db: DBSession,
    latitude: Annotated[float, Query(ge=-90, le=90)],
    longitude: Annotated[float, Query(ge=-180, le=180)],
    radius: Annotated[Optional[float], Query(gt=0)] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> PaginatedResponse[ProviderMatchOut]:
    result = await geoMatcher.find_nearby(
        db,
        longitude,
        latitude,
        radius or settings.default_search_radius_km,
        online_only=True,
        page=page,
        page_size=limit,
        max_radius_km=settings.max_search_radius_km,
    )
    return PaginatedResponse[ProviderMatchOut](
        data=[ProviderMatchOut.from_match(m) for m in result.items],
        meta=PaginationMeta.from_result(result),
    )


@router.get(
    "/search",
    response_model=PaginatedResponse[ProviderMatchOut],
    summary="Search providers",
    description=(
        "Active providers within the radius, optionally offering a given "
        "service and above a minimum rating. Sorted by distance, rating or "
        "price; distance breaks ties."
    ),
)
async def search_providers(
    db: DBSession,
    latitude: Annotated[float, Query(ge=-90, le=90)],
    longitude: Annotated[float, Query(ge=-180, le=180)],
    radius: Annotated[Optional[float], Query(gt=0)] = None,
    service_id: Annotated[Optional[uuid.UUID], Query(alias="serviceId")] = None,
    min_rating: Annotated[float, Query(alias="minRating", ge=0, le=5)] = 0.0,
    sort_by: Annotated[SortBy, Query(alias="sortBy")] = SortBy.DISTANCE,
    sort_order: Annotated[Optional[SortOrder], Query(alias="sortOrder")] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> PaginatedResponse[ProviderMatchOut]:
    result = await geoMatcher.find_nearby(
        db,
        longitude,
        latitude,
        radius or settings.default_search_radius_km,
        service_id=service_id,
        online_only=False,
        min_rating=min_rating,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        page_size=limit,
        max_radius_km=settings.max_search_radius_km,
    )
    return PaginatedResponse[ProviderMatchOut](
        data=[ProviderMatchOut.from_match(m) for m in result.items],
        meta=PaginationMeta.from_result(result),
    )


# ---------------------------------------------------------------------------
# Provider's own profile
# ---------------------------------------------------------------------------

@router.patch("/me/status", response_model=ProviderOut, summary="Go online or offline")
async def update_my_status(
    db: DBSession,
    actor: CurrentActor,
    body: ProviderStatusUpdateRequest,
) -> ProviderOut:
    provider = await _own_provider(db, actor)
    provider = await providerDirectory.set_online(db, provider.id, body.is_online)
    return ProviderOut.from_provider(provider)


@router.patch("/me/location", response_model=ProviderOut, summary="Update current location")
async def update_my_location(
    db: DBSession,
    actor: CurrentActor,
    body: ProviderLocationUpdateRequest,
) -> ProviderOut:
    provider = await _own_provider(db, actor)
    provider = await providerDirectory.update_location(db, provider.id, body.longitude, body.latitude)
    return ProviderOut.from_provider(provider)


@router.put("/me/availability", summary="Replace the weekly availability template")
async def update_my_availability(
    db: DBSession,
    actor: CurrentActor,
    body: ProviderAvailabilityRequest,
) -> dict[str, object]:
    provider = await _own_provider(db, actor)
    weekly = await providerDirectory.set_availability(db, provider.id, body.schedule)
    return {"providerId": str(provider.id), "schedule": weekly.to_dict()}


# ---------------------------------------------------------------------------
# Public profile and slots
# ---------------------------------------------------------------------------

@router.get("/{provider_id}", response_model=ProviderOut, summary="Provider profile")
async def get_provider(db: DBSession, provider_id: uuid.UUID) -> ProviderOut:
    provider = await providerDirectory.get_provider(db, provider_id)
    return ProviderOut.from_provider(provider)


@router.get(
    "/{provider_id}/availability",
    response_model=AvailabilityOut,
    summary="Free slots on a date",
    description=(
        "Start times on the given date (UTC) where a service of the given "
        "duration fits inside working hours, skips breaks, does not overlap "
        "existing bookings and keeps the booking buffer around them. Past "
        "start times are omitted."
    ),
)
async def provider_availability(
    db: DBSession,
    services: Services,
    provider_id: uuid.UUID,
    day: Annotated[date, Query(alias="date")],
    duration: Annotated[int, Query(ge=5, le=24 * 60)] = 60,
) -> AvailabilityOut:
    slots = await providerDirectory.available_slots(
        db,
        provider_id,
        day,
        duration,
        not_before=utcnow(),
        buffer_minutes=services.settings.booking_buffer_minutes,
    )
    return AvailabilityOut(
        provider_id=provider_id,
        day=day,
        duration_min=duration,
        slots=[SlotOut(start=s.start, end=s.end) for s in slots],
    )
