#!/usr/bin/env python3
# main.py
"""
Главная точка входа ядра диспетчеризации.
Запускает REST API и живой канал (uvicorn), тик диспетчера работает внутри приложения.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg


# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []

VALID_MODES = ("dispatch_api",)


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def run_dispatch_api() -> None:
    """Запускает Dispatch API (REST + WebSocket)."""
    import uvicorn

    await log_info(
        f"Запуск Dispatch API на {settings.api.API_HOST}:{settings.api.API_PORT}...",
        type_msg=TypeMsg.INFO,
    )

    config = uvicorn.Config(
        "src.services.dispatch_api.app:app",
        host=settings.api.API_HOST,
        port=settings.api.API_PORT,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Dispatch API: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def main(mode: str = "dispatch_api") -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (сейчас только dispatch_api)
    """
    setup_logging()
    setup_signal_handlers()

    if mode not in VALID_MODES:
        await log_error(f"Неизвестный режим запуска '{mode}', допустимо: {', '.join(VALID_MODES)}")
        sys.exit(2)

    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION}: запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    task = asyncio.create_task(run_dispatch_api())
    _running_tasks.append(task)
    try:
        await task
    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.DEBUG)
    finally:
        await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)


if __name__ == "__main__":
    try:
        asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "dispatch_api"))
    except KeyboardInterrupt:
        pass
