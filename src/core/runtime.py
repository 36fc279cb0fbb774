# src/core/runtime.py
"""
Сборка ядра диспетчеризации с явным жизненным циклом (start / stop).

Компоненты не используют глобальных синглтонов: индекс присутствия, регулятор,
движок заявок, диспетчер и маршрутизатор сессий создаются здесь и передаются
друг другу через конструкторы.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from src.common.clock import Clock
from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.config.loader import DispatchSettings, GovernorSettings
from src.core.dispatch.dispatcher import Dispatcher
from src.core.geo.query import GeoQueryEngine
from src.core.governor.service import CapacityGovernor
from src.core.presence.index import PresenceIndex
from src.core.requests.engine import RequestLifecycleEngine
from src.core.requests.repository import RequestRepository
from src.infra.event_bus import EventBus
from src.infra.event_store import EventStore, InMemoryEventStore, PostgresEventStore
from src.infra.redis_client import RedisClient
from src.services.realtime_ws.session_router import SessionRouter
from src.shared.models.geo import GeoPoint
from src.shared.models.presence import MechanicPresence
from src.worker.ticker import DispatchTicker


class DispatchRuntime:
    """
    Ядро диспетчеризации в сборе.

    Attributes:
        presence: Индекс присутствия
        governor: Регулятор ёмкости
        geo: Гео-поиск
        engine: Движок жизненного цикла заявок
        router: Маршрутизатор живых сессий
        dispatcher: Диспетчер волн
        ticker: Периодический тик диспетчера
    """

    def __init__(
        self,
        store: EventStore,
        clock: Clock | None = None,
        config: DispatchSettings | None = None,
        governor_config: GovernorSettings | None = None,
        redis: RedisClient | None = None,
        repository: RequestRepository | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        if config is None or governor_config is None:
            from src.config import settings
            config = config or settings.dispatch
            governor_config = governor_config or settings.governor

        self.clock = clock or Clock()
        self.config = config
        self.store = store
        self.event_bus = event_bus

        self.presence = PresenceIndex(self.clock, ttl_seconds=config.PRESENCE_TTL, redis=redis)
        self.governor = CapacityGovernor(
            self.presence,
            self.clock,
            user_active_cap=config.USER_ACTIVE_CAP,
            geocode_rps=governor_config.GEOCODE_RPS,
            geocode_burst=governor_config.GEOCODE_BURST,
        )
        self.geo = GeoQueryEngine(self.presence, max_radius_m=config.MAX_RADIUS_M)
        self.engine = RequestLifecycleEngine(
            store,
            self.governor,
            self.presence,
            clock=self.clock,
            repository=repository,
            event_bus=event_bus,
            retry_backoff_ms=config.STALE_RETRY_BACKOFF_MS,
            rating_grace_seconds=config.RATING_GRACE_PERIOD,
            closed_cache_size=config.CLOSED_CACHE_SIZE,
        )
        self.router = SessionRouter(
            store,
            self.clock,
            position_min_interval=config.POSITION_BROADCAST_MIN_INTERVAL,
        )
        self.dispatcher = Dispatcher(
            self.engine,
            self.geo,
            self.governor,
            self.presence,
            router=self.router,
            clock=self.clock,
            config=config,
        )
        self.ticker = DispatchTicker(
            self.dispatcher,
            interval=config.DISPATCH_TICK_INTERVAL,
            sweepers=(self.governor.prune, self.router.prune),
        )

        self.engine.router = self.router
        self.engine.dispatcher = self.dispatcher
        self.router.bind_requests(self.engine.find)

        self._started = False

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================

    async def start(self, run_ticker: bool = True) -> None:
        """Восстанавливает состояние из журнала и запускает тик."""
        if self._started:
            return

        await self.presence.start()
        await self.engine.recover()
        if run_ticker:
            await self.ticker.start()
        self._started = True

        await log_info("Ядро диспетчеризации запущено", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Останавливает тик, закрывает сессии и индекс присутствия."""
        if not self._started:
            return

        await self.ticker.stop()
        await self.router.close()
        await self.presence.stop()
        self._started = False

        await log_info("Ядро диспетчеризации остановлено", type_msg=TypeMsg.INFO)

    @property
    def is_started(self) -> bool:
        return self._started

    # =========================================================================
    # ОПЕРАЦИИ, ЗАТРАГИВАЮЩИЕ НЕСКОЛЬКО КОМПОНЕНТОВ
    # =========================================================================

    async def heartbeat(
        self,
        mechanic_id: str,
        position: GeoPoint,
        recorded_at: datetime | None = None,
        availability: bool | None = None,
        eta: Mapping[str, float] | None = None,
    ) -> MechanicPresence:
        """
        Принимает позицию механика и транслирует её в комнаты его заявок
        вместе с оценкой прибытия, если клиент механика её прислал.
        """
        record = await self.presence.check_in(
            mechanic_id,
            position,
            availability=availability,
            recorded_at=recorded_at,
        )
        if record.position is not None and record.position_at is not None:
            await self.router.publish_position(
                mechanic_id,
                record.position,
                record.position_at,
                self.engine.streaming_requests_for_mechanic(mechanic_id),
                eta=eta,
            )
        return record

    def get_stats(self) -> dict[str, Any]:
        return {
            "presence": self.presence.get_stats(),
            "governor": self.governor.get_stats(),
            "requests": self.engine.get_stats(),
            "sessions": self.router.get_stats(),
            "ticker_iterations": self.ticker.iterations,
        }


# =============================================================================
# СБОРКА ПО КОНФИГУРАЦИИ
# =============================================================================

async def build_runtime() -> DispatchRuntime:
    """
    Создаёт ядро по настройкам: журнал в памяти или в PostgreSQL,
    зеркало присутствия в Redis, публикация расчётов в RabbitMQ.
    """
    from src.config import settings

    clock = Clock()
    repository: RequestRepository | None = None
    redis: RedisClient | None = None
    event_bus: EventBus | None = None

    if settings.storage.STORAGE_BACKEND == "postgres":
        from src.infra.database import init_db

        db = await init_db()
        store: EventStore = PostgresEventStore(db, clock)
        repository = RequestRepository(db)
    else:
        store = InMemoryEventStore(clock)

    if settings.storage.PRESENCE_MIRROR_REDIS:
        from src.infra.redis_client import init_redis

        redis = await init_redis()

    if settings.storage.SETTLEMENT_EVENTS_ENABLED:
        from src.infra.event_bus import init_event_bus

        event_bus = await init_event_bus()

    await log_info(
        f"Сборка ядра: журнал={settings.storage.STORAGE_BACKEND}, "
        f"redis={redis is not None}, rabbitmq={event_bus is not None}",
        type_msg=TypeMsg.INFO,
    )

    return DispatchRuntime(
        store,
        clock=clock,
        redis=redis,
        repository=repository,
        event_bus=event_bus,
    )


async def close_runtime_infra() -> None:
    """Закрывает инфраструктуру, открытую build_runtime()."""
    from src.config import settings

    if settings.storage.SETTLEMENT_EVENTS_ENABLED:
        from src.infra.event_bus import close_event_bus

        await close_event_bus()
    if settings.storage.PRESENCE_MIRROR_REDIS:
        from src.infra.redis_client import close_redis

        await close_redis()
    if settings.storage.STORAGE_BACKEND == "postgres":
        from src.infra.database import close_db

        await close_db()
