# src/shared/models/geo.py
"""
Гео-примитивы. Все координаты хранятся как [долгота, широта] в WGS-84.
"""

from __future__ import annotations

import math

from pydantic import BaseModel, ConfigDict, model_serializer, model_validator

from src.common.errors import InvalidInput


def validate_coordinates(longitude: float, latitude: float) -> None:
    """
    Проверяет координаты: конечные, в допустимом диапазоне, не «нулевой остров».

    Raises:
        InvalidInput: если координаты недопустимы
    """
    if not (math.isfinite(longitude) and math.isfinite(latitude)):
        raise InvalidInput("Координаты должны быть конечными числами")
    if not -180.0 <= longitude <= 180.0:
        raise InvalidInput("Долгота вне диапазона [-180, 180]", longitude=longitude)
    if not -90.0 <= latitude <= 90.0:
        raise InvalidInput("Широта вне диапазона [-90, 90]", latitude=latitude)
    if longitude == 0.0 and latitude == 0.0:
        raise InvalidInput("Координаты (0,0) запрещены")


class GeoPoint(BaseModel):
    """Точка на карте."""

    model_config = ConfigDict(frozen=True)

    longitude: float
    latitude: float

    @model_validator(mode="before")
    @classmethod
    def from_pair(cls, value):
        """Принимает как {longitude, latitude}, так и [lon, lat]."""
        if isinstance(value, (list, tuple)):
            if len(value) != 2:
                raise ValueError("coordinates должны быть парой [longitude, latitude]")
            return {"longitude": value[0], "latitude": value[1]}
        return value

    @model_serializer
    def _as_pair(self) -> list[float]:
        """Сериализуется как [lon, lat]."""
        return [self.longitude, self.latitude]

    @classmethod
    def of(cls, longitude: float, latitude: float) -> "GeoPoint":
        """Создаёт точку с проверкой (InvalidInput при ошибке)."""
        validate_coordinates(longitude, latitude)
        return cls(longitude=longitude, latitude=latitude)

    def to_list(self) -> list[float]:
        """Представление [lon, lat]."""
        return [self.longitude, self.latitude]


class BoundingBox(BaseModel):
    """Прямоугольник поиска в градусах."""

    model_config = ConfigDict(frozen=True)

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def contains(self, point: GeoPoint) -> bool:
        return (
            self.min_lon <= point.longitude <= self.max_lon
            and self.min_lat <= point.latitude <= self.max_lat
        )
