#!/usr/bin/env python3
"""
Entrypoint для Dispatch API (REST + живой канал).

Запуск:
    python entrypoint_dispatch_api.py

Порт по умолчанию: 8095
"""

import sys
from pathlib import Path

# Добавляем корневую директорию проекта в путь
project_root = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(project_root))

import uvicorn

from src.config import settings


def main() -> None:
    """Запустить Dispatch API."""
    uvicorn.run(
        "src.services.dispatch_api.app:app",
        host=settings.api.API_HOST,
        port=settings.api.API_PORT,
        reload=settings.system.DEBUG,
        log_level=settings.system.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
