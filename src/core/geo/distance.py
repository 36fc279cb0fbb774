# src/core/geo/distance.py
"""
Расстояния на сфере и ограничивающие прямоугольники для поиска.
"""

from __future__ import annotations

import math

from src.shared.models.geo import BoundingBox, GeoPoint

EARTH_RADIUS_M = 6_371_000.0

# Длина одного градуса широты (м)
METERS_PER_DEGREE = 111_320.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Вычисляет расстояние между двумя точками (в метрах) по формуле Haversine.
    """
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def distance_m(origin: GeoPoint, target: GeoPoint) -> int:
    """Расстояние между точками, округлённое до метра."""
    return round(haversine_distance(origin.latitude, origin.longitude, target.latitude, target.longitude))


def bounding_box(origin: GeoPoint, radius_m: float) -> BoundingBox:
    """
    Прямоугольник, гарантированно покрывающий круг радиуса radius_m.

    У полюсов и при переходе через антимеридиан долгота берётся целиком.
    """
    dlat = radius_m / METERS_PER_DEGREE
    min_lat = max(origin.latitude - dlat, -90.0)
    max_lat = min(origin.latitude + dlat, 90.0)

    cos_lat = math.cos(math.radians(origin.latitude))
    if min_lat <= -90.0 or max_lat >= 90.0 or cos_lat <= 1e-9:
        return BoundingBox(min_lon=-180.0, min_lat=min_lat, max_lon=180.0, max_lat=max_lat)

    dlon = radius_m / (METERS_PER_DEGREE * cos_lat)
    min_lon = origin.longitude - dlon
    max_lon = origin.longitude + dlon
    if min_lon < -180.0 or max_lon > 180.0:
        min_lon, max_lon = -180.0, 180.0

    return BoundingBox(min_lon=min_lon, min_lat=min_lat, max_lon=max_lon, max_lat=max_lat)
