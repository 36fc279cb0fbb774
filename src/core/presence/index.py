# src/core/presence/index.py
"""
Индекс присутствия механиков.

Хранит последнюю позицию, доступность и профиль каждого механика в памяти.
Записи неизменяемы: читатели получают снимки без блокировок. Устаревшие записи
(старше PRESENCE_TTL) скрыты от чтения, но остаются для восстановления.
При включённом зеркалировании каждое изменение дублируется в Redis.
"""

from __future__ import annotations

from datetime import datetime

from src.common.clock import Clock
from src.common.constants import TypeMsg
from src.common.errors import CapacityExceeded, InvalidInput, NotFound, StalePresence
from src.common.logger import log_error, log_info, log_warning
from src.infra.redis_client import RedisClient
from src.shared.models.geo import BoundingBox, GeoPoint, validate_coordinates
from src.shared.models.presence import MechanicPresence, MechanicProfile, PresenceFilter

# Ключи зеркала в Redis
MECHANICS_SET_KEY = "mechanics"


def _record_key(mechanic_id: str) -> str:
    return f"mechanic:{mechanic_id}"


def _matches(record: MechanicPresence, filter: PresenceFilter | None) -> bool:
    if filter is None:
        return True
    if filter.vehicle_type is not None and filter.vehicle_type not in record.vehicle_types:
        return False
    if filter.skill is not None and filter.skill not in record.skills:
        return False
    if not filter.include_unavailable and (not record.available or record.capacity_remaining <= 0):
        return False
    return True


class PresenceIndex:
    """
    Индекс присутствия.

    Единственный писатель для каждого механика — его собственная сессия;
    изменения выполняются без точек приостановки до записи в словарь.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        ttl_seconds: float | None = None,
        redis: RedisClient | None = None,
    ) -> None:
        if ttl_seconds is None:
            from src.config import settings
            ttl_seconds = settings.dispatch.PRESENCE_TTL

        self._clock = clock or Clock()
        self._ttl = ttl_seconds
        self._redis = redis
        self._records: dict[str, MechanicPresence] = {}
        self._running = False

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================

    async def start(self) -> None:
        """Запускает индекс; при наличии Redis загружает зеркало."""
        if self._running:
            return
        self._running = True

        if self._redis is None:
            return

        members = await self._redis.smembers(MECHANICS_SET_KEY)
        for mechanic_id in members:
            record = await self._redis.get_model(_record_key(mechanic_id), MechanicPresence)
            if record is not None:
                self._records[mechanic_id] = record

        await log_info(
            f"Индекс присутствия восстановлен из Redis: {len(self._records)} механиков",
            type_msg=TypeMsg.INFO,
        )

    async def stop(self) -> None:
        """Останавливает индекс (данные в памяти сохраняются)."""
        self._running = False

    # =========================================================================
    # ЗАПИСЬ
    # =========================================================================

    async def check_in(
        self,
        mechanic_id: str,
        position: GeoPoint,
        availability: bool | None = None,
        recorded_at: datetime | None = None,
    ) -> MechanicPresence:
        """
        Принимает heartbeat механика.

        Позиция с меткой не новее последней игнорируется, но явная смена
        доступности применяется (как toggle_availability). Метка из будущего
        обрезается до текущего времени.

        Raises:
            InvalidInput: некорректные координаты или (0,0)
            StalePresence: включение доступности при устаревшей позиции
        """
        validate_coordinates(position.longitude, position.latitude)

        now = self._clock.now()
        at = now if recorded_at is None or recorded_at > now else recorded_at

        current = self._records.get(mechanic_id)
        if current is not None and current.position_at is not None and at <= current.position_at:
            await log_info(
                f"Устаревшая позиция механика {mechanic_id} проигнорирована",
                type_msg=TypeMsg.DEBUG,
                extra={"mechanic_id": mechanic_id},
            )
            if availability is not None and availability != current.available:
                return await self.toggle_availability(mechanic_id, availability)
            return current

        if current is None:
            record = MechanicPresence(
                mechanic_id=mechanic_id,
                available=bool(availability),
                position=position,
                position_at=at,
            )
        else:
            update: dict = {"position": position, "position_at": at}
            if availability is not None:
                update["available"] = availability
            record = current.model_copy(update=update)

        self._records[mechanic_id] = record
        await self._mirror(record)
        return record

    async def toggle_availability(self, mechanic_id: str, available: bool) -> MechanicPresence:
        """
        Переключает доступность.

        Raises:
            StalePresence: нет записи или (для available=True) нет свежей позиции
        """
        current = self._records.get(mechanic_id)
        if current is None:
            raise StalePresence("Механик не отметился в системе", mechanic_id=mechanic_id)
        if available and not current.is_fresh(self._clock.now(), self._ttl):
            raise StalePresence("Нет свежей позиции механика", mechanic_id=mechanic_id)

        record = current.model_copy(update={"available": available})
        self._records[mechanic_id] = record
        await self._mirror(record)

        await log_info(
            f"Механик {mechanic_id}: доступность = {available}",
            type_msg=TypeMsg.INFO,
            extra={"mechanic_id": mechanic_id},
        )
        return record

    async def upsert_profile(self, profile: MechanicProfile) -> MechanicPresence:
        """
        Создаёт или обновляет профиль механика (возможности, лимиты, верификация).

        Raises:
            InvalidInput: новый лимит меньше текущего числа активных работ
        """
        current = self._records.get(profile.mechanic_id)
        fields = {
            "vehicle_types": profile.vehicle_types,
            "skills": profile.skills,
            "max_concurrent_jobs": profile.max_concurrent_jobs,
            "service_radius_m": profile.service_radius_m,
            "verified": profile.verified,
        }

        if current is None:
            record = MechanicPresence(mechanic_id=profile.mechanic_id, **fields)
        else:
            if profile.max_concurrent_jobs < current.active_jobs:
                raise InvalidInput(
                    "Лимит одновременных работ меньше числа активных",
                    mechanic_id=profile.mechanic_id,
                    active_jobs=current.active_jobs,
                )
            record = current.model_copy(update=fields)

        self._records[profile.mechanic_id] = record
        await self._mirror(record)
        return record

    async def deactivate(self, mechanic_id: str) -> None:
        """
        Удаляет запись механика (деактивация аккаунта).

        Raises:
            NotFound: механик неизвестен
        """
        if self._records.pop(mechanic_id, None) is None:
            raise NotFound("Механик не найден", mechanic_id=mechanic_id)

        if self._redis is not None:
            try:
                await self._redis.delete(_record_key(mechanic_id))
                await self._redis.srem(MECHANICS_SET_KEY, mechanic_id)
            except Exception as e:
                await log_error(f"Ошибка удаления механика {mechanic_id} из Redis: {e}")

        await log_info(
            f"Механик {mechanic_id} деактивирован",
            type_msg=TypeMsg.INFO,
            extra={"mechanic_id": mechanic_id},
        )

    async def adjust_active_jobs(self, mechanic_id: str, delta: int) -> MechanicPresence:
        """
        Изменяет число активных работ.

        Raises:
            NotFound: механик неизвестен
            CapacityExceeded: превышение max_concurrent_jobs
        """
        current = self._records.get(mechanic_id)
        if current is None:
            raise NotFound("Механик не найден", mechanic_id=mechanic_id)

        active = current.active_jobs + delta
        if active > current.max_concurrent_jobs:
            raise CapacityExceeded(
                "Механик достиг лимита одновременных работ",
                mechanic_id=mechanic_id,
                max_concurrent_jobs=current.max_concurrent_jobs,
            )
        if active < 0:
            await log_warning(
                f"Счётчик работ механика {mechanic_id} ушёл бы в минус",
                extra={"mechanic_id": mechanic_id},
            )
            active = 0

        record = current.model_copy(update={"active_jobs": active})
        self._records[mechanic_id] = record
        await self._mirror(record)
        return record

    async def set_active_jobs(self, mechanic_id: str, count: int) -> None:
        """Устанавливает счётчик работ при восстановлении."""
        current = self._records.get(mechanic_id)
        if current is None:
            return
        record = current.model_copy(
            update={"active_jobs": max(0, min(count, current.max_concurrent_jobs))}
        )
        self._records[mechanic_id] = record
        await self._mirror(record)

    async def apply_rating(self, mechanic_id: str, score: int) -> MechanicPresence | None:
        """Обновляет скользящее среднее рейтинга механика."""
        current = self._records.get(mechanic_id)
        if current is None:
            return None

        total = current.total_ratings
        rating = round((current.rating * total + score) / (total + 1), 1)
        record = current.model_copy(update={"rating": rating, "total_ratings": total + 1})
        self._records[mechanic_id] = record
        await self._mirror(record)
        return record

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    def snapshot(self, mechanic_id: str, include_stale: bool = False) -> MechanicPresence | None:
        """Снимок записи (None, если нет записи или позиция устарела)."""
        record = self._records.get(mechanic_id)
        if record is None:
            return None
        if not include_stale and not record.is_fresh(self._clock.now(), self._ttl):
            return None
        return record

    def scan(self, bbox: BoundingBox, filter: PresenceFilter | None = None) -> list[MechanicPresence]:
        """Свежие записи внутри прямоугольника, подходящие под фильтр."""
        now = self._clock.now()
        return [
            record
            for record in list(self._records.values())
            if record.is_fresh(now, self._ttl)
            and bbox.contains(record.position)
            and _matches(record, filter)
        ]

    def mechanic_ids(self) -> list[str]:
        return list(self._records)

    def get_stats(self) -> dict[str, int]:
        now = self._clock.now()
        records = list(self._records.values())
        return {
            "total": len(records),
            "fresh": sum(1 for r in records if r.is_fresh(now, self._ttl)),
            "available": sum(1 for r in records if r.available and r.is_fresh(now, self._ttl)),
        }

    # =========================================================================
    # ЗЕРКАЛО В REDIS
    # =========================================================================

    async def _mirror(self, record: MechanicPresence) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set_model(_record_key(record.mechanic_id), record)
            await self._redis.sadd(MECHANICS_SET_KEY, record.mechanic_id)
        except Exception as e:
            await log_error(
                f"Ошибка зеркалирования присутствия в Redis: {e}",
                extra={"mechanic_id": record.mechanic_id},
            )
