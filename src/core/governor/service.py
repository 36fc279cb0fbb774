# src/core/governor/service.py
"""
Регулятор ёмкости и частоты.

Единственное место, которое отвечает на вопросы:
- может ли механик принять ещё одну работу (may_accept)
- может ли пользователь создать ещё одну заявку (may_create_request)
- можно ли сделать исходящий вызов геокодера (may_geocode)

Проверка и резервирование выполняются без точек приостановки между ними,
поэтому в пределах цикла событий они атомарны.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any, Iterable

from src.common.clock import Clock
from src.common.constants import ASSIGNED_STATES, TypeMsg
from src.common.errors import CapacityExceeded, NotFound
from src.common.logger import log_info, log_warning
from src.core.presence.index import PresenceIndex
from src.shared.models.request import ServiceRequest


class LeakyBucket:
    """Протекающее ведро: rate запросов в секунду, не более burst подряд."""

    def __init__(self, rate: float, burst: int) -> None:
        self.rate = rate
        self.burst = burst
        self._level = 0.0
        self._last: datetime | None = None

    def allow(self, now: datetime) -> bool:
        if self._last is not None:
            elapsed = max((now - self._last).total_seconds(), 0.0)
            self._level = max(0.0, self._level - elapsed * self.rate)
        self._last = now

        if self._level + 1.0 > self.burst:
            return False
        self._level += 1.0
        return True

    def drained(self, now: datetime) -> bool:
        """Ведро опустело: клиента можно забыть без потери лимита."""
        if self._last is None:
            return True
        elapsed = max((now - self._last).total_seconds(), 0.0)
        return self._level - elapsed * self.rate <= 0.0


class CapacityGovernor:
    """
    Регулятор ёмкости.

    Держит счётчик активных заявок на пользователя, множество пар
    (пользователь, механик) с незавершённой работой и вёдра геокодера.
    Счётчик активных работ механика хранится в индексе присутствия.
    """

    def __init__(
        self,
        presence: PresenceIndex,
        clock: Clock | None = None,
        user_active_cap: int | None = None,
        geocode_rps: float | None = None,
        geocode_burst: int | None = None,
    ) -> None:
        from src.config import settings

        self._presence = presence
        self._clock = clock or Clock()
        self._user_active_cap = (
            user_active_cap if user_active_cap is not None else settings.dispatch.USER_ACTIVE_CAP
        )
        self._geocode_rps = geocode_rps if geocode_rps is not None else settings.governor.GEOCODE_RPS
        self._geocode_burst = (
            geocode_burst if geocode_burst is not None else settings.governor.GEOCODE_BURST
        )

        self._user_active: Counter[str] = Counter()
        self._pairs: set[tuple[str, str]] = set()
        self._buckets: dict[str, LeakyBucket] = {}

    # =========================================================================
    # ПРОВЕРКИ
    # =========================================================================

    def may_accept(self, mechanic_id: str) -> bool:
        """Запись механика существует и active_jobs < max_concurrent_jobs."""
        record = self._presence.snapshot(mechanic_id, include_stale=True)
        return record is not None and record.active_jobs < record.max_concurrent_jobs

    def may_create_request(self, user_id: str) -> bool:
        """У пользователя меньше USER_ACTIVE_CAP незавершённых заявок."""
        return self._user_active[user_id] < self._user_active_cap

    def may_geocode(self, client_key: str) -> bool:
        """Забирает токен из ведра клиента; False, если лимит исчерпан."""
        bucket = self._buckets.get(client_key)
        if bucket is None:
            bucket = self._buckets[client_key] = LeakyBucket(self._geocode_rps, self._geocode_burst)
        return bucket.allow(self._clock.now())

    def pair_active(self, user_id: str, mechanic_id: str) -> bool:
        """Есть ли незавершённая назначенная заявка у этой пары."""
        return (user_id, mechanic_id) in self._pairs

    def active_requests(self, user_id: str) -> int:
        return self._user_active[user_id]

    # =========================================================================
    # РЕЗЕРВИРОВАНИЕ
    # =========================================================================

    def reserve_request(self, user_id: str) -> None:
        """
        Резервирует слот заявки пользователя.

        Raises:
            CapacityExceeded: достигнут USER_ACTIVE_CAP
        """
        if not self.may_create_request(user_id):
            raise CapacityExceeded(
                "Превышено число активных заявок пользователя",
                user_id=user_id,
                limit=self._user_active_cap,
            )
        self._user_active[user_id] += 1

    def release_request(self, user_id: str) -> None:
        if self._user_active[user_id] > 0:
            self._user_active[user_id] -= 1
        if self._user_active[user_id] == 0:
            del self._user_active[user_id]

    async def reserve_mechanic(self, mechanic_id: str, user_id: str) -> None:
        """
        Резервирует ёмкость механика под заявку пользователя.

        Raises:
            CapacityExceeded: пара уже занята или механик на пределе
        """
        if self.pair_active(user_id, mechanic_id):
            raise CapacityExceeded(
                "У пользователя уже есть активная работа с этим механиком",
                user_id=user_id,
                mechanic_id=mechanic_id,
            )
        if not self.may_accept(mechanic_id):
            raise CapacityExceeded(
                "Механик достиг лимита одновременных работ",
                mechanic_id=mechanic_id,
            )

        self._pairs.add((user_id, mechanic_id))
        try:
            await self._presence.adjust_active_jobs(mechanic_id, +1)
        except (CapacityExceeded, NotFound):
            self._pairs.discard((user_id, mechanic_id))
            raise

        await log_info(
            f"Ёмкость механика {mechanic_id} зарезервирована",
            type_msg=TypeMsg.DEBUG,
            extra={"mechanic_id": mechanic_id, "user_id": user_id},
        )

    async def release_mechanic(self, mechanic_id: str, user_id: str) -> None:
        """Освобождает ёмкость механика и пару (пользователь, механик)."""
        self._pairs.discard((user_id, mechanic_id))
        try:
            await self._presence.adjust_active_jobs(mechanic_id, -1)
        except NotFound:
            await log_warning(
                f"Освобождение ёмкости: механик {mechanic_id} не найден",
                extra={"mechanic_id": mechanic_id},
            )

    # =========================================================================
    # ВОССТАНОВЛЕНИЕ
    # =========================================================================

    async def seed(self, projections: Iterable[ServiceRequest]) -> None:
        """Пересчитывает счётчики по проекциям незавершённых заявок."""
        self._user_active.clear()
        self._pairs.clear()
        mechanic_jobs: Counter[str] = Counter()

        for projection in projections:
            if projection.is_terminal:
                continue
            self._user_active[projection.user_id] += 1
            if projection.mechanic_id and projection.state in ASSIGNED_STATES:
                self._pairs.add((projection.user_id, projection.mechanic_id))
                mechanic_jobs[projection.mechanic_id] += 1

        for mechanic_id in self._presence.mechanic_ids():
            await self._presence.set_active_jobs(mechanic_id, mechanic_jobs.get(mechanic_id, 0))

        await log_info(
            f"Регулятор восстановлен: {sum(self._user_active.values())} активных заявок, "
            f"{len(self._pairs)} назначений",
            type_msg=TypeMsg.INFO,
        )

    def prune(self) -> int:
        """
        Удаляет опустевшие вёдра геокодера.

        Returns:
            Количество удалённых вёдер
        """
        now = self._clock.now()
        drained = [key for key, bucket in self._buckets.items() if bucket.drained(now)]
        for key in drained:
            del self._buckets[key]
        return len(drained)

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_requests": sum(self._user_active.values()),
            "active_users": len(self._user_active),
            "active_assignments": len(self._pairs),
            "geocode_clients": len(self._buckets),
        }
