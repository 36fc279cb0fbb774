# src/worker/__init__.py
"""
Фоновые воркеры ядра диспетчеризации.
"""

from src.worker.base import BaseWorker
from src.worker.ticker import DispatchTicker

__all__ = ["BaseWorker", "DispatchTicker"]
