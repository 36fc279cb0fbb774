# src/core/dispatch/__init__.py
"""
Диспетчер: волны предложений механикам.
"""

from src.core.dispatch.dispatcher import Dispatcher
from src.core.dispatch.offers import offer_id_for, radius_schedule, wave_size_for

__all__ = [
    "Dispatcher",
    "offer_id_for",
    "radius_schedule",
    "wave_size_for",
]
