# src/worker/base.py
"""
Базовый класс для периодических воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info


class BaseWorker(ABC):
    """
    Базовый класс для всех воркеров.
    Запускает фоновую задачу, которая вызывает run_once() с заданным интервалом.
    """

    def __init__(self, interval: float) -> None:
        """
        Инициализирует воркер.

        Args:
            interval: Интервал между запусками (секунды)
        """
        self.interval = interval
        self._running = False
        self._task: asyncio.Task | None = None
        self.iterations = 0

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""

    @abstractmethod
    async def run_once(self) -> None:
        """Одна итерация работы воркера."""

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Запускает воркер."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"worker:{self.name}")
        await log_info(f"Воркер {self.name} запущен (интервал {self.interval} с)", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Останавливает воркер."""
        if not self._running:
            return

        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                self.iterations += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await log_error(f"Ошибка в воркере {self.name}: {e}", exc_info=True)
            await asyncio.sleep(self.interval)
