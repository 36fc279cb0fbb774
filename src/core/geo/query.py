# src/core/geo/query.py
"""
Гео-поиск механиков.
Читает снимки индекса присутствия, фильтрует и ранжирует кандидатов.
"""

from __future__ import annotations

import math

from src.common.constants import TypeMsg
from src.common.errors import InvalidInput, InvalidOrigin, RadiusTooLarge
from src.common.logger import log_info
from src.core.geo.distance import bounding_box, distance_m
from src.core.presence.index import PresenceIndex
from src.shared.models.geo import GeoPoint, validate_coordinates
from src.shared.models.presence import MechanicPresence, NearbyMechanic, PresenceFilter

MAX_LIMIT = 50

# Веса ранжирования
DISTANCE_WEIGHT = 0.5
RATING_WEIGHT = 0.3
AVAILABILITY_WEIGHT = 0.2


def score_candidate(distance: int, radius_m: int, presence: MechanicPresence) -> float:
    """
    Балл кандидата (меньше — лучше).

    score = 0.5·(distance/radius) + 0.3·(1 − rating/5) + 0.2·(1 − boost),
    где boost = 1 для свободного механика с остатком ёмкости.
    """
    boost = 1.0 if presence.available and presence.capacity_remaining > 0 else 0.0
    return (
        DISTANCE_WEIGHT * (distance / radius_m)
        + RATING_WEIGHT * (1.0 - presence.rating / 5.0)
        + AVAILABILITY_WEIGHT * (1.0 - boost)
    )


class GeoQueryEngine:
    """
    Поиск ближайших механиков.

    Фильтры применяются по порядку: верификация, свежесть позиции, тип транспорта,
    навык, расстояние до min(радиус, радиус обслуживания механика), доступность.
    """

    def __init__(self, presence: PresenceIndex, max_radius_m: int | None = None) -> None:
        if max_radius_m is None:
            from src.config import settings
            max_radius_m = settings.dispatch.MAX_RADIUS_M

        self._presence = presence
        self._max_radius_m = max_radius_m

    def _validate(self, origin: GeoPoint, radius_m: int, limit: int) -> None:
        try:
            validate_coordinates(origin.longitude, origin.latitude)
        except InvalidInput as e:
            raise InvalidOrigin(e.message, **e.details) from e

        if not isinstance(radius_m, (int, float)) or not math.isfinite(radius_m) or radius_m <= 0:
            raise InvalidInput("Радиус поиска должен быть положительным", radius_m=radius_m)
        if radius_m > self._max_radius_m:
            raise RadiusTooLarge(
                "Радиус поиска превышает допустимый",
                radius_m=radius_m,
                max_radius_m=self._max_radius_m,
            )
        if not 1 <= limit <= MAX_LIMIT:
            raise InvalidInput(f"limit должен быть в диапазоне 1..{MAX_LIMIT}", limit=limit)

    async def nearest(
        self,
        origin: GeoPoint,
        radius_m: int,
        filter: PresenceFilter | None = None,
        limit: int = 10,
    ) -> list[NearbyMechanic]:
        """
        Ищет механиков вокруг точки.

        Args:
            origin: Точка поиска
            radius_m: Радиус поиска (м)
            filter: Тип транспорта, навык, включение недоступных
            limit: Максимальное количество результатов (1..50)

        Returns:
            Кандидаты, отсортированные по (score, mechanic_id)

        Raises:
            InvalidOrigin: некорректная точка поиска
            RadiusTooLarge: радиус больше MAX_RADIUS_M
            InvalidInput: некорректный радиус или limit
        """
        self._validate(origin, radius_m, limit)
        filter = filter or PresenceFilter()

        results: list[NearbyMechanic] = []
        for presence in self._presence.scan(bounding_box(origin, radius_m)):
            if not presence.verified:
                continue
            if filter.vehicle_type is not None and filter.vehicle_type not in presence.vehicle_types:
                continue
            if filter.skill is not None and filter.skill not in presence.skills:
                continue

            distance = distance_m(origin, presence.position)
            if distance > min(radius_m, presence.service_radius_m):
                continue

            if not filter.include_unavailable and (
                not presence.available or presence.capacity_remaining <= 0
            ):
                continue

            results.append(
                NearbyMechanic(
                    mechanic_id=presence.mechanic_id,
                    distance_m=distance,
                    available=presence.available,
                    rating=presence.rating,
                    capacity_remaining=presence.capacity_remaining,
                    score=score_candidate(distance, radius_m, presence),
                )
            )

        results.sort(key=lambda item: (item.score, item.mechanic_id))

        await log_info(
            f"Гео-поиск: найдено {len(results)} механиков в радиусе {radius_m} м",
            type_msg=TypeMsg.DEBUG,
        )
        return results[:limit]
