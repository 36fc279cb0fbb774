# tests/helpers.py
"""
Вспомогательные объекты для тестов: управляемые часы, формы заявок, заведение механиков.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any

from src.common.constants import Priority, ProblemType, Role, Skill, VehicleType
from src.core.runtime import DispatchRuntime
from src.shared.models.common import Principal
from src.shared.models.geo import GeoPoint
from src.shared.models.presence import MechanicProfile
from src.shared.models.request import PickupLocation, ServiceRequestCreate

# Место подачи по умолчанию (Дакка)
PICKUP = GeoPoint(longitude=90.4125, latitude=23.8103)

START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Управляемые часы: время двигается только через advance()."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or START

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now


def offset(point: GeoPoint, north_m: float = 0.0, east_m: float = 0.0) -> GeoPoint:
    """Точка, смещённая на заданное число метров к северу и востоку."""
    lat = point.latitude + north_m / 111_320.0
    lon = point.longitude + east_m / (111_320.0 * math.cos(math.radians(point.latitude)))
    return GeoPoint(longitude=lon, latitude=lat)


def mechanic(mechanic_id: str) -> Principal:
    return Principal(user_id=mechanic_id, role=Role.MECHANIC)


def customer(user_id: str = "U1") -> Principal:
    return Principal(user_id=user_id, role=Role.USER)


def request_payload(
    pickup: GeoPoint = PICKUP,
    vehicle_type: VehicleType = VehicleType.CAR,
    problem_type: ProblemType = ProblemType.BATTERY_JUMP,
    priority: Priority = Priority.MEDIUM,
    **overrides: Any,
) -> ServiceRequestCreate:
    """Форма создания заявки с разумными значениями по умолчанию."""
    return ServiceRequestCreate(
        vehicle_type=vehicle_type,
        problem_type=problem_type,
        description="Не заводится",
        pickup_location=PickupLocation(coordinates=pickup, address="Gulshan Avenue 1"),
        priority=priority,
        **overrides,
    )


async def register_mechanic(
    rt: DispatchRuntime,
    mechanic_id: str,
    position: GeoPoint,
    *,
    vehicle_types: tuple[VehicleType, ...] = (VehicleType.CAR,),
    skills: tuple[Skill, ...] = (Skill.BATTERY_JUMP,),
    max_concurrent_jobs: int = 1,
    service_radius_m: int = 50000,
    available: bool = True,
) -> None:
    """Заводит верифицированного механика и отмечает его позицию."""
    await rt.presence.upsert_profile(
        MechanicProfile(
            mechanic_id=mechanic_id,
            vehicle_types=frozenset(vehicle_types),
            skills=frozenset(skills),
            max_concurrent_jobs=max_concurrent_jobs,
            service_radius_m=service_radius_m,
            verified=True,
        )
    )
    await rt.presence.check_in(mechanic_id, position, availability=available)
