# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("STORAGE_BACKEND", "memory")

from helpers import FakeClock, customer
from src.config.loader import DispatchSettings, GovernorSettings
from src.core.runtime import DispatchRuntime
from src.infra.event_store import InMemoryEventStore
from src.shared.models.common import Principal
from src.common.constants import Role


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def dispatch_config() -> DispatchSettings:
    """Параметры диспетчеризации без пауз между повторами."""
    return DispatchSettings(STALE_RETRY_BACKOFF_MS=[0, 0, 0])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.get_model = AsyncMock(return_value=None)
    redis.set_model = AsyncMock(return_value=True)
    redis.sadd = AsyncMock(return_value=1)
    redis.srem = AsyncMock(return_value=1)
    redis.smembers = AsyncMock(return_value=set())
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=True)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ФИКСТУРЫ ЯДРА
# =============================================================================

@pytest.fixture
def store(clock: FakeClock) -> InMemoryEventStore:
    return InMemoryEventStore(clock)


@pytest.fixture
async def runtime(
    store: InMemoryEventStore,
    clock: FakeClock,
    dispatch_config: DispatchSettings,
) -> AsyncGenerator[DispatchRuntime, None]:
    """Ядро в сборе на журнале в памяти; тик вызывается тестами вручную."""
    rt = DispatchRuntime(
        store,
        clock=clock,
        config=dispatch_config,
        governor_config=GovernorSettings(),
    )
    await rt.start(run_ticker=False)
    yield rt
    await rt.stop()


@pytest.fixture
def user() -> Principal:
    return customer("U1")


@pytest.fixture
def admin() -> Principal:
    return Principal(user_id="A1", role=Role.ADMIN)
