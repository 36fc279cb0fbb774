# src/common/clock.py
"""
Источник времени.
Компоненты получают часы через конструктор, чтобы таймеры оставались логическими
и проверялись в тестах без реального ожидания.
"""

from __future__ import annotations

from datetime import datetime, timezone


class Clock:
    """Системные часы (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

