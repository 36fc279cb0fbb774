# src/core/geo/__init__.py
"""
Гео-домен: расстояния и поиск ближайших механиков.
"""

from src.core.geo.distance import bounding_box, distance_m, haversine_distance
from src.core.geo.query import GeoQueryEngine

__all__ = [
    "GeoQueryEngine",
    "bounding_box",
    "distance_m",
    "haversine_distance",
]
