# tests/core/test_runtime.py
"""
Тесты сборки ядра (src/core/runtime.py).
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

from helpers import PICKUP, FakeClock, offset, register_mechanic
from src.config.loader import DispatchSettings, GovernorSettings
from src.core.runtime import DispatchRuntime, build_runtime, close_runtime_infra
from src.infra.event_store import InMemoryEventStore


class TestDispatchRuntime:
    """Тесты DispatchRuntime."""

    async def test_wiring(self, runtime: DispatchRuntime) -> None:
        """Проверяет связывание компонентов."""
        assert runtime.is_started is True
        assert runtime.engine.router is runtime.router
        assert runtime.engine.dispatcher is runtime.dispatcher
        assert runtime.ticker.is_running is False

    async def test_start_and_stop_with_ticker(
        self,
        store: InMemoryEventStore,
        clock: FakeClock,
        dispatch_config: DispatchSettings,
    ) -> None:
        """Проверяет запуск тика и идемпотентность start/stop."""
        rt = DispatchRuntime(store, clock=clock, config=dispatch_config, governor_config=GovernorSettings())

        await rt.start()
        await rt.start()
        assert rt.ticker.is_running is True

        await rt.stop()
        await rt.stop()
        assert rt.is_started is False
        assert rt.ticker.is_running is False

    async def test_heartbeat_updates_presence(self, runtime: DispatchRuntime, clock: FakeClock) -> None:
        """Проверяет, что heartbeat обновляет присутствие."""
        await register_mechanic(runtime, "M1", PICKUP, available=False)
        clock.advance(5)

        record = await runtime.heartbeat("M1", offset(PICKUP, north_m=50), availability=True)

        assert record.available is True
        assert record.position_at == clock.now()

    async def test_get_stats(self, runtime: DispatchRuntime) -> None:
        await register_mechanic(runtime, "M1", PICKUP)

        stats = runtime.get_stats()

        assert stats["presence"]["total"] == 1
        assert stats["requests"]["total"] == 0
        assert stats["sessions"]["active_sessions"] == 0
        assert stats["ticker_iterations"] == 0


class TestBuildRuntime:
    """Тесты сборки по настройкам."""

    async def test_memory_backend(self) -> None:
        """Проверяет сборку на журнале в памяти без внешней инфраструктуры."""
        with patch("src.core.runtime.log_info", new_callable=AsyncMock):
            rt = await build_runtime()

        assert isinstance(rt.store, InMemoryEventStore)
        assert rt.event_bus is None

    async def test_close_without_infra(self) -> None:
        with patch("src.infra.database.close_db", new_callable=AsyncMock) as mock_close:
            await close_runtime_infra()

        mock_close.assert_not_awaited()
