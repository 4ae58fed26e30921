"""
Geographic point value type.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from appointly.core.exceptions import ValidationError

Number = Union[int, float, Decimal]


@dataclass(frozen=True)
class GeoPoint:
    """A validated WGS84 point. Longitude first, matching GeoJSON order."""

    longitude: float
    latitude: float

    def __post_init__(self) -> None:
        lon, lat = self.longitude, self.latitude
        if not (math.isfinite(lon) and math.isfinite(lat)):
            raise ValidationError("Coordinates must be finite numbers.")
        if not -180.0 <= lon <= 180.0:
            raise ValidationError(f"Longitude {lon} is outside [-180, 180].")
        if not -90.0 <= lat <= 90.0:
            raise ValidationError(f"Latitude {lat} is outside [-90, 90].")

    @classmethod
    def of(cls, longitude: Number, latitude: Number) -> "GeoPoint":
        try:
            return cls(longitude=float(longitude), latitude=float(latitude))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid coordinates: {exc}") from exc

    def as_decimals(self) -> tuple[Decimal, Decimal]:
        """Return ``(longitude, latitude)`` as 7-place decimals for storage."""
        quantum = Decimal("0.0000001")
        return (
            Decimal(str(self.longitude)).quantize(quantum),
            Decimal(str(self.latitude)).quantize(quantum),
        )
