# src/services/dispatch_api/app.py
"""
FastAPI приложение ядра диспетчеризации.

REST API (/api/v1), живой канал (/ws) и проверка здоровья (/health).
Ядро создаётся при старте по конфигурации либо передаётся в create_app() готовым.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.common.constants import TypeMsg
from src.common.errors import DispatchError, InvalidInput
from src.common.logger import log_info, log_warning
from src.core.runtime import DispatchRuntime, build_runtime, close_runtime_infra
from src.services.dispatch_api.routes import router as api_router
from src.services.realtime_ws.routes import router as ws_router
from src.shared.models.common import ErrorResponse, HealthStatus


# === ERROR HANDLERS ===

async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    """Доменная ошибка → ErrorResponse со статусом её вида."""
    if exc.http_status >= 500:
        await log_warning(f"{request.method} {request.url.path}: {exc.kind} {exc.message}")
    body = ErrorResponse(**exc.to_dict())
    return JSONResponse(status_code=exc.http_status, content=body.model_dump(mode="json", exclude_none=True))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Ошибка валидации pydantic → InvalidInput 400."""
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return await dispatch_error_handler(request, InvalidInput("Некорректный запрос", errors=errors))


# === APP ===

def create_app(runtime: DispatchRuntime | None = None) -> FastAPI:
    """
    Создаёт приложение.

    Args:
        runtime: Готовое ядро (тесты). Если None, ядро и инфраструктура
            создаются в lifespan по настройкам.
    """
    from src.config import settings

    owns_runtime = runtime is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Жизненный цикл приложения."""
        if owns_runtime:
            app.state.runtime = await build_runtime()
        await app.state.runtime.start()
        app.state.started_at = time.monotonic()
        await log_info(
            f"{settings.system.PROJECT_NAME} API запущен на порту {settings.api.API_PORT}",
            type_msg=TypeMsg.INFO,
        )

        yield

        await app.state.runtime.stop()
        if owns_runtime:
            await close_runtime_infra()

    app = FastAPI(
        title=f"{settings.system.PROJECT_NAME} Dispatch API",
        description="Ядро диспетчеризации помощи на дороге: заявки, предложения, живой канал.",
        version=settings.system.VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.runtime = runtime
    app.state.started_at = time.monotonic()

    app.add_exception_handler(DispatchError, dispatch_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.include_router(api_router, prefix="/api/v1")
    app.include_router(ws_router)

    @app.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check(request: Request) -> HealthStatus:
        """Проверка здоровья сервиса и его зависимостей."""
        return await _health(request.app, settings)

    return app


async def _health(app: FastAPI, settings) -> HealthStatus:
    runtime: DispatchRuntime | None = app.state.runtime
    dependencies: dict[str, str] = {}

    if settings.storage.STORAGE_BACKEND == "postgres":
        from src.infra.database import get_db
        dependencies["postgres"] = "ok" if await get_db().health_check() else "down"
    else:
        dependencies["event_store"] = "memory"

    if settings.storage.PRESENCE_MIRROR_REDIS:
        from src.infra.redis_client import get_redis
        dependencies["redis"] = "ok" if await get_redis().health_check() else "down"

    if settings.storage.SETTLEMENT_EVENTS_ENABLED:
        from src.infra.event_bus import get_event_bus
        dependencies["rabbitmq"] = "ok" if await get_event_bus().health_check() else "down"

    if runtime is None or not runtime.is_started:
        overall = "unhealthy"
    elif any(value == "down" for value in dependencies.values()):
        overall = "degraded"
    else:
        overall = "healthy"

    return HealthStatus(
        service="dispatch_api",
        status=overall,
        version=settings.system.VERSION,
        uptime_seconds=round(time.monotonic() - app.state.started_at, 3),
        dependencies=dependencies,
    )


app = create_app()
