# src/shared/__init__.py
"""
Общий код между микросервисами.

Модули:
- events: схемы событий RabbitMQ
- models: общие DTO и Pydantic-модели
- utils: утилиты (логирование, валидация)
- contracts: OpenAPI-схемы для inter-service communication
"""

__all__: list[str] = []
