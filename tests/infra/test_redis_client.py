# tests/infra/test_redis_client.py
"""
Тесты клиента Redis (src/infra/redis_client.py).
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from helpers import PICKUP, START
from src.infra.redis_client import RedisClient
from src.shared.models.presence import MechanicPresence


@pytest.fixture
def redis_client() -> RedisClient:
    """Свежий RedisClient (синглтон сбрасывается)."""
    RedisClient._instance = None
    return RedisClient()


@pytest.fixture
def connected(redis_client: RedisClient) -> AsyncMock:
    """Подменяет низкоуровневый клиент."""
    raw = AsyncMock()
    redis_client._client = raw
    return raw


class TestRedisClientLifecycle:
    """Тесты подключения."""

    def test_singleton(self, redis_client: RedisClient) -> None:
        assert RedisClient() is redis_client

    def test_client_not_initialized(self, redis_client: RedisClient) -> None:
        with pytest.raises(RuntimeError, match="Redis клиент не инициализирован"):
            _ = redis_client.client

    def test_make_key_uses_namespace(self, redis_client: RedisClient) -> None:
        """Проверяет префикс ключей."""
        assert redis_client._make_key("mechanic:M1") == "dispatch:mechanic:M1"

    @pytest.mark.asyncio
    async def test_connect_sets_namespace(self, redis_client: RedisClient) -> None:
        raw = AsyncMock()
        raw.ping = AsyncMock(return_value=True)

        with patch("redis.asyncio.from_url", return_value=raw) as mock_from_url:
            await redis_client.connect(url="redis://localhost:6379/0", namespace="staging")
            await redis_client.connect(url="redis://localhost:6379/0")

        mock_from_url.assert_called_once()
        raw.ping.assert_awaited_once()
        assert redis_client._make_key("x") == "staging:x"

    @pytest.mark.asyncio
    async def test_disconnect(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        await redis_client.disconnect()

        connected.aclose.assert_awaited_once()
        assert redis_client._client is None


class TestRedisClientOperations:
    """Тесты операций зеркала присутствия."""

    @pytest.mark.asyncio
    async def test_set_and_get_model(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        """Проверяет сериализацию записи присутствия."""
        record = MechanicPresence(mechanic_id="M1", available=True, position=PICKUP, position_at=START)

        await redis_client.set_model("mechanic:M1", record, ttl=300)

        key, payload = connected.set.await_args.args
        assert key == "dispatch:mechanic:M1"
        assert connected.set.await_args.kwargs == {"ex": 300}

        connected.get.return_value = payload
        assert await redis_client.get_model("mechanic:M1", MechanicPresence) == record

    @pytest.mark.asyncio
    async def test_get_model_missing(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        connected.get.return_value = None

        assert await redis_client.get_model("mechanic:M1", MechanicPresence) is None

    @pytest.mark.asyncio
    async def test_get_model_corrupted(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        """Проверяет, что повреждённые данные дают None."""
        connected.get.return_value = "{not json"

        assert await redis_client.get_model("mechanic:M1", MechanicPresence) is None

    @pytest.mark.asyncio
    async def test_set_operations(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        connected.smembers.return_value = {"M1", "M2"}

        await redis_client.sadd("mechanics", "M1")
        await redis_client.srem("mechanics", "M2")

        assert await redis_client.smembers("mechanics") == {"M1", "M2"}
        connected.sadd.assert_awaited_once_with("dispatch:mechanics", "M1")
        connected.srem.assert_awaited_once_with("dispatch:mechanics", "M2")

    @pytest.mark.asyncio
    async def test_delete(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        connected.delete.return_value = 1

        assert await redis_client.delete("mechanic:M1") == 1
        connected.delete.assert_awaited_once_with("dispatch:mechanic:M1")

    @pytest.mark.asyncio
    async def test_health_check(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        connected.ping.return_value = True
        assert await redis_client.health_check() is True

        connected.ping.side_effect = ConnectionError("down")
        assert await redis_client.health_check() is False
