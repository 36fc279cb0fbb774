# src/core/presence/__init__.py
"""
Домен присутствия механиков.
"""

from src.core.presence.index import PresenceIndex

__all__ = [
    "PresenceIndex",
]
