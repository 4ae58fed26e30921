"""
SQLAlchemy models for providers and the services they offer.

The weekly availability template is stored as JSON and converted to the
``WeeklyAvailability`` value type by the provider directory; the ORM record
holds no scheduling behaviour of its own.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class Provider(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "providers"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False,
    )
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Current position
    latitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    longitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    service_radius_km: Mapped[Decimal] = mapped_column(
        Numeric(6, 2), nullable=False, default=Decimal("10")
    )

    # Weekly template: {"monday": {"is_available": ..., "start_time": "09:00", ...}, ...}
    availability_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Commercials
    commission_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 4), nullable=False, default=Decimal("0.10")
    )
    rating: Mapped[Decimal] = mapped_column(Numeric(3, 2), nullable=False, default=Decimal("0"))
    reviews_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stripe_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Relationships
    services: Mapped[list["ProviderService"]] = relationship(
        back_populates="provider",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("latitude >= -90 AND latitude <= 90", name="ck_providers_latitude"),
        CheckConstraint("longitude >= -180 AND longitude <= 180", name="ck_providers_longitude"),
        CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 1",
            name="ck_providers_commission_rate",
        ),
        CheckConstraint(
            "service_radius_km >= 1 AND service_radius_km <= 100",
            name="ck_providers_service_radius",
        ),
        Index("ix_providers_lat_lon", "latitude", "longitude"),
        Index("ix_providers_active_online", "is_active", "is_online"),
    )

    def __repr__(self) -> str:
        return (
            f"<Provider(id={self.id}, user_id={self.user_id}, "
            f"active={self.is_active}, online={self.is_online})>"
        )


class ProviderService(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A service offered by a provider at the provider's own price."""

    __tablename__ = "provider_services"

    provider_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("providers.id", ondelete="CASCADE"),
        nullable=False,
    )
    service_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    duration_min: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    provider: Mapped[Provider] = relationship(back_populates="services")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_provider_services_price"),
        CheckConstraint("duration_min > 0", name="ck_provider_services_duration"),
        Index("uq_provider_services_provider_service", "provider_id", "service_id", unique=True),
        Index("ix_provider_services_service_id", "service_id"),
    )
