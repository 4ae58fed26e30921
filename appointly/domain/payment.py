"""
Booking line items and the financial snapshot taken at creation time.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Sequence

from appointly.core.exceptions import ValidationError

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineItem:
    service_id: uuid.UUID
    name: str
    price: Decimal
    duration_min: int

    def __post_init__(self) -> None:
        if self.price <= 0:
            raise ValidationError(f"Line item '{self.name}' must have a positive price.")
        if self.duration_min <= 0:
            raise ValidationError(f"Line item '{self.name}' must have a positive duration.")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LineItem":
        return cls(
            service_id=uuid.UUID(str(data["service_id"])),
            name=str(data["name"]),
            price=to_money(data["price"]),
            duration_min=int(data["duration_min"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": str(self.service_id),
            "name": self.name,
            "price": str(self.price),
            "duration_min": self.duration_min,
        }


def validate_line_items(items: Iterable[LineItem]) -> list[LineItem]:
    result = list(items)
    if not result:
        raise ValidationError("A booking needs at least one service line item.")
    return result


def total_duration(items: Sequence[LineItem]) -> int:
    return sum(item.duration_min for item in items)


@dataclass(frozen=True)
class FinancialSnapshot:
    """Amounts fixed at booking creation. ``commission + payout == gross``."""

    gross: Decimal
    commission: Decimal
    payout: Decimal
    discount: Decimal = Decimal("0.00")


def compute_financials(
    items: Sequence[LineItem],
    commission_rate: Decimal,
    *,
    discount: Decimal = Decimal("0"),
) -> FinancialSnapshot:
    """Gross is the sum of line prices; commission is rounded half-up to the
    cent and the payout takes the remainder so the split is exact."""
    rate = Decimal(str(commission_rate))
    if not Decimal("0") <= rate <= Decimal("1"):
        raise ValidationError(f"Commission rate {rate} is outside [0, 1].")

    gross = to_money(sum((item.price for item in items), Decimal("0")))
    commission = to_money(gross * rate)
    payout = gross - commission
    return FinancialSnapshot(
        gross=gross,
        commission=commission,
        payout=payout,
        discount=to_money(discount),
    )
