# tests/worker/test_ticker.py
"""
Unit тесты для тика диспетчера (src/worker/ticker.py).
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.worker.ticker import DispatchTicker


@pytest.fixture
def dispatcher() -> MagicMock:
    """Мок диспетчера."""
    mock = MagicMock()
    mock.tick = AsyncMock(return_value=0)
    return mock


class TestDispatchTicker:
    """Тесты DispatchTicker."""

    def test_name_and_interval(self, dispatcher: MagicMock) -> None:
        ticker = DispatchTicker(dispatcher, interval=0.5)

        assert ticker.name == "dispatch_ticker"
        assert ticker.interval == 0.5

    def test_interval_from_settings(self, dispatcher: MagicMock) -> None:
        """Тест интервала по умолчанию из настроек."""
        from src.config import settings

        ticker = DispatchTicker(dispatcher)

        assert ticker.interval == settings.dispatch.DISPATCH_TICK_INTERVAL

    @pytest.mark.asyncio
    async def test_run_once_ticks_dispatcher(self, dispatcher: MagicMock) -> None:
        """Тест: одна итерация будит диспетчер."""
        dispatcher.tick.return_value = 3
        ticker = DispatchTicker(dispatcher, interval=1)

        with patch("src.worker.ticker.log_info", new_callable=AsyncMock) as mock_log:
            await ticker.run_once()

        dispatcher.tick.assert_awaited_once()
        mock_log.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_idle_tick_is_silent(self, dispatcher: MagicMock) -> None:
        ticker = DispatchTicker(dispatcher, interval=1)

        with patch("src.worker.ticker.log_info", new_callable=AsyncMock) as mock_log:
            await ticker.run_once()

        mock_log.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sweepers_run_each_tick(self, dispatcher: MagicMock) -> None:
        """Тест: подчистка вызывается на каждом тике, лог только если что-то удалено."""
        governor_prune = MagicMock(return_value=2)
        router_prune = MagicMock(return_value=0)
        ticker = DispatchTicker(dispatcher, interval=1, sweepers=(governor_prune, router_prune))

        with patch("src.worker.ticker.log_info", new_callable=AsyncMock) as mock_log:
            await ticker.run_once()

        governor_prune.assert_called_once_with()
        router_prune.assert_called_once_with()
        mock_log.assert_awaited_once()
        assert "2" in mock_log.await_args.args[0]
