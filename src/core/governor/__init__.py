# src/core/governor/__init__.py
"""
Регулятор ёмкости и частоты.
"""

from src.core.governor.service import CapacityGovernor, LeakyBucket

__all__ = [
    "CapacityGovernor",
    "LeakyBucket",
]
