# src/shared/models/presence.py
"""
Модели присутствия механиков.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.common.constants import Skill, VehicleType
from src.shared.models.geo import GeoPoint


class MechanicProfile(BaseModel):
    """Профиль механика: возможности и ограничения (задаётся администратором)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    mechanic_id: str
    vehicle_types: frozenset[VehicleType] = frozenset()
    skills: frozenset[Skill] = frozenset()
    max_concurrent_jobs: int = Field(default=1, ge=1)
    service_radius_m: int = Field(default=10000, ge=1000, le=50000)
    verified: bool = False


class MechanicPresence(BaseModel):
    """
    Запись индекса присутствия.

    Неизменяемая: каждое изменение создаёт новую запись, поэтому читатели
    получают согласованный снимок без блокировок.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    mechanic_id: str
    available: bool = False
    position: GeoPoint | None = None
    position_at: datetime | None = None
    max_concurrent_jobs: int = 1
    active_jobs: int = 0
    vehicle_types: frozenset[VehicleType] = frozenset()
    skills: frozenset[Skill] = frozenset()
    service_radius_m: int = 10000
    verified: bool = False
    rating: float = 5.0
    total_ratings: int = 0

    @property
    def capacity_remaining(self) -> int:
        return max(self.max_concurrent_jobs - self.active_jobs, 0)

    def is_fresh(self, now: datetime, ttl_seconds: float) -> bool:
        """Позиция известна и не старше TTL."""
        if self.position is None or self.position_at is None:
            return False
        return now - self.position_at <= timedelta(seconds=ttl_seconds)


class PresenceFilter(BaseModel):
    """Фильтр сканирования индекса."""

    model_config = ConfigDict(frozen=True)

    vehicle_type: VehicleType | None = None
    skill: Skill | None = None
    include_unavailable: bool = False


class NearbyMechanic(BaseModel):
    """Кандидат из гео-поиска."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    mechanic_id: str
    distance_m: int
    available: bool
    rating: float
    capacity_remaining: int
    score: float
