"""
Pydantic v2 schemas for the Provider API
========================================

Provider search results, availability slots and the provider's own
status / location / schedule updates. camelCase on the wire.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import Field

from appointly.api.schemas.common import CamelModel
from appointly.models.provider import Provider
from appointly.services.geoMatcher import ProviderMatch


class ProviderServiceOut(CamelModel):
    service_id: uuid.UUID
    name: str
    price: Decimal
    duration_min: int


class ProviderOut(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID
    display_name: str
    longitude: Decimal
    latitude: Decimal
    service_radius_km: Decimal
    is_online: bool
    rating: Decimal
    reviews_count: int
    services: list[ProviderServiceOut] = Field(default_factory=list)

    @classmethod
    def from_provider(cls, provider: Provider) -> "ProviderOut":
        out = cls.model_validate(provider)
        active = {s.service_id for s in provider.services if s.is_active}
        out.services = [s for s in out.services if s.service_id in active]
        return out


class ProviderMatchOut(CamelModel):
    provider: ProviderOut
    distance_km: float
    price: Optional[Decimal] = None

    @classmethod
    def from_match(cls, match: ProviderMatch) -> "ProviderMatchOut":
        return cls(
            provider=ProviderOut.from_provider(match.provider),
            distance_km=match.distance_km,
            price=match.price,
        )


class SlotOut(CamelModel):
    start: datetime
    end: datetime


class AvailabilityOut(CamelModel):
    provider_id: uuid.UUID
    day: date
    duration_min: int
    slots: list[SlotOut]


class ProviderStatusUpdateRequest(CamelModel):
    is_online: bool


class ProviderLocationUpdateRequest(CamelModel):
    longitude: float = Field(ge=-180, le=180)
    latitude: float = Field(ge=-90, le=90)


class ProviderAvailabilityRequest(CamelModel):
    """Weekly template keyed by lowercase day name.

    Example::

        {"schedule": {"monday": {"is_available": true, "start_time": "09:00",
                                 "end_time": "18:00", "breaks": []}}}
    """

    schedule: dict[str, Any]
