# src/services/__init__.py
"""
Сервисы приложения.

- dispatch_api: REST API ядра диспетчеризации (FastAPI)
- realtime_ws: живой канал (WebSocket) и маршрутизатор сессий
"""

__all__: list[str] = []
