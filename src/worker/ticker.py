# src/worker/ticker.py
"""
Периодический тик диспетчера.
Будит все заявки в поиске, чтобы оценить таймеры предложений и общий срок,
и подчищает вспомогательные таблицы (вёдра геокодера, отметки позиций).
"""

from __future__ import annotations

from typing import Callable, Sequence

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.core.dispatch.dispatcher import Dispatcher
from src.worker.base import BaseWorker

Sweeper = Callable[[], int]


class DispatchTicker(BaseWorker):
    """Воркер тика диспетчера (по умолчанию раз в секунду)."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        interval: float | None = None,
        sweepers: Sequence[Sweeper] = (),
    ) -> None:
        if interval is None:
            from src.config import settings
            interval = settings.dispatch.DISPATCH_TICK_INTERVAL

        super().__init__(interval)
        self._dispatcher = dispatcher
        self._sweepers = list(sweepers)

    @property
    def name(self) -> str:
        return "dispatch_ticker"

    async def run_once(self) -> None:
        evaluated = await self._dispatcher.tick()
        if evaluated:
            await log_info(f"Тик диспетчера: заявок в поиске {evaluated}", type_msg=TypeMsg.DEBUG)

        swept = sum(sweep() for sweep in self._sweepers)
        if swept:
            await log_info(f"Тик диспетчера: удалено устаревших записей {swept}", type_msg=TypeMsg.DEBUG)
