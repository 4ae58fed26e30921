"""
Geo Matcher
===========

Finds providers around a customer location.

Pipeline:
  1. SQL prefilter: active (and optionally online) providers inside the
     bounding box of the search circle, optionally offering a service id.
  2. Haversine filter: drop anything whose great-circle distance exceeds
     the radius.
  3. Sort: distance ascending by default, or rating / price with distance
     as the tiebreak.
  4. Page/limit slicing.

An empty result is a valid answer, never an error.
"""

from __future__ import annotations

import enum
import logging
import math
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from appointly.core.exceptions import ValidationError
from appointly.core.pagination import PaginatedResult, check_page
from appointly.domain.geo import GeoPoint
from appointly.models.provider import Provider, ProviderService
from appointly.services.geoService import bounding_box, filter_by_radius

logger = logging.getLogger(__name__)


class SortBy(str, enum.Enum):
    DISTANCE = "distance"
    RATING = "rating"
    PRICE = "price"


class SortOrder(str, enum.Enum):
    ASC = "asc"
    DESC = "desc"


# Natural direction per sort key when the caller gives none
_DEFAULT_ORDER: dict[SortBy, SortOrder] = {
    SortBy.DISTANCE: SortOrder.ASC,
    SortBy.RATING: SortOrder.DESC,
    SortBy.PRICE: SortOrder.ASC,
}


@dataclass(frozen=True)
class ProviderMatch:
    provider: Provider
    distance_km: float
    price: Optional[Decimal] = None


def _provider_price(provider: Provider, service_id: Optional[uuid.UUID]) -> Optional[Decimal]:
    """Price of the requested service, or the cheapest active service."""
    prices = [
        s.price
        for s in provider.services
        if s.is_active and (service_id is None or s.service_id == service_id)
    ]
    return min(prices) if prices else None


def _sort_matches(
    matches: list[ProviderMatch],
    sort_by: SortBy,
    sort_order: SortOrder,
) -> list[ProviderMatch]:
    if sort_by == SortBy.DISTANCE:
        return sorted(
            matches,
            key=lambda m: m.distance_km,
            reverse=sort_order == SortOrder.DESC,
        )

    if sort_by == SortBy.RATING:
        def primary(m: ProviderMatch) -> Decimal:
            return Decimal(m.provider.rating or 0)
    else:
        # Providers without a price sort last either way
        def primary(m: ProviderMatch) -> Decimal:
            return m.price if m.price is not None else Decimal("Infinity")

    # Two stable passes: distance tiebreak first, then the primary key
    by_distance = sorted(matches, key=lambda m: m.distance_km)
    if sort_by == SortBy.PRICE and sort_order == SortOrder.DESC:
        priced = [m for m in by_distance if m.price is not None]
        unpriced = [m for m in by_distance if m.price is None]
        return sorted(priced, key=primary, reverse=True) + unpriced
    return sorted(by_distance, key=primary, reverse=sort_order == SortOrder.DESC)


async def find_nearby(
    db: AsyncSession,
    longitude: float,
    latitude: float,
    radius_km: float,
    *,
    service_id: Optional[uuid.UUID] = None,
    online_only: bool = True,
    min_rating: float = 0.0,
    sort_by: SortBy = SortBy.DISTANCE,
    sort_order: Optional[SortOrder] = None,
    page: int = 1,
    page_size: int = 10,
    max_radius_km: Optional[float] = None,
) -> PaginatedResult[ProviderMatch]:
    """Return providers within ``radius_km`` of ``(longitude, latitude)``.

    Args:
        db: Async database session.
        longitude: Search center longitude.
        latitude: Search center latitude.
        radius_km: Search radius in km; must be positive.
        service_id: Only providers offering this service.
        online_only: ``True`` requires ``is_online`` as well as ``is_active``.
        min_rating: Minimum provider rating.
        sort_by: Primary sort key; distance is always the tiebreak.
        sort_order: ``asc``/``desc``; defaults to the key's natural order.
        page: 1-indexed page number.
        page_size: Items per page.
        max_radius_km: Upper bound for ``radius_km`` when set.

    Raises:
        ValidationError: On invalid coordinates, radius or paging.
    """
    center = GeoPoint.of(longitude, latitude)
    if not math.isfinite(radius_km) or radius_km <= 0:
        raise ValidationError("Radius must be a positive number of kilometres.")
    if max_radius_km is not None and radius_km > max_radius_km:
        raise ValidationError(f"Radius must not exceed {max_radius_km} km.")
    check_page(page, page_size)

    order = sort_order or _DEFAULT_ORDER[sort_by]

    # 1. SQL prefilter
    box = bounding_box(center.latitude, center.longitude, radius_km)
    stmt = select(Provider).where(
        Provider.is_active.is_(True),
        Provider.latitude >= box.min_lat,
        Provider.latitude <= box.max_lat,
    )
    if box.min_lon is not None and box.max_lon is not None:
        stmt = stmt.where(
            Provider.longitude >= box.min_lon,
            Provider.longitude <= box.max_lon,
        )
    if online_only:
        stmt = stmt.where(Provider.is_online.is_(True))
    if min_rating > 0:
        stmt = stmt.where(Provider.rating >= min_rating)
    if service_id is not None:
        stmt = stmt.where(
            Provider.id.in_(
                select(ProviderService.provider_id).where(
                    ProviderService.service_id == service_id,
                    ProviderService.is_active.is_(True),
                )
            )
        )

    result = await db.execute(stmt)
    candidates = result.scalars().all()

    # 2. Authoritative distance filter
    within = filter_by_radius(candidates, center.latitude, center.longitude, radius_km)
    matches = [
        ProviderMatch(
            provider=pd.provider,
            distance_km=round(pd.distance_km, 3),
            price=_provider_price(pd.provider, service_id),
        )
        for pd in within
    ]

    # 3. Sort, 4. paginate
    ordered = _sort_matches(matches, sort_by, order)
    offset = (page - 1) * page_size
    page_items = ordered[offset:offset + page_size]

    logger.debug(
        "find_nearby(%.5f, %.5f, r=%.1fkm): %d candidates, %d within radius",
        center.longitude,
        center.latitude,
        radius_km,
        len(candidates),
        len(matches),
    )

    return PaginatedResult(
        items=page_items,
        total_items=len(ordered),
        page=page,
        page_size=page_size,
    )
