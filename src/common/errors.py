# src/common/errors.py
"""
Иерархия доменных ошибок диспетчерского ядра.

Каждая ошибка несёт машинный код (kind), который REST-слой отдаёт как error_code,
и HTTP-статус для ответа.
"""

from __future__ import annotations

from typing import Any


class DispatchError(Exception):
    """Базовая доменная ошибка."""

    kind: str = "DispatchError"
    http_status: int = 500

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details: dict[str, Any] = details

    def to_dict(self) -> dict[str, Any]:
        """Представление для ответа API / WS-кадра ошибки."""
        return {
            "error_code": self.kind,
            "message": self.message,
            "details": self.details or None,
        }


class InvalidInput(DispatchError):
    """Ошибка валидации входных данных."""
    kind = "InvalidInput"
    http_status = 400


class InvalidOrigin(InvalidInput):
    """Некорректная точка поиска (вне диапазона, NaN или (0,0))."""


class RadiusTooLarge(InvalidInput):
    """Радиус поиска превышает MAX_RADIUS_M."""


class StatePrecondition(DispatchError):
    """Переход недопустим из текущего состояния."""
    kind = "StatePrecondition"
    http_status = 409


class AuthorizationDenied(DispatchError):
    """Участник не имеет права на операцию."""
    kind = "AuthorizationDenied"
    http_status = 403


class StaleConflict(DispatchError):
    """Проигранный compare-and-append (журнал ушёл вперёд)."""
    kind = "StaleConflict"
    http_status = 409


class CapacityExceeded(DispatchError):
    """Отказ регулятора ёмкости."""
    kind = "CapacityExceeded"
    http_status = 409


class Unavailable(DispatchError):
    """Зависимость недоступна или присутствие устарело."""
    kind = "Unavailable"
    http_status = 503


class StalePresence(Unavailable):
    """Нет свежей позиции механика."""
    http_status = 400


class TerminalState(DispatchError):
    """Операция над заявкой в терминальном состоянии."""
    kind = "Terminal"
    http_status = 409


class NotFound(DispatchError):
    """Сущность не найдена."""
    kind = "NotFound"
    http_status = 404


class EventStoreUnavailable(Exception):
    """Инфраструктурный сбой журнала событий (не конфликт версий)."""
