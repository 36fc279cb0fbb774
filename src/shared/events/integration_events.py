# src/shared/events/integration_events.py
"""
Интеграционные события заявок для внешних потребителей
(приёмник расчётов, аналитика).
"""

from __future__ import annotations

from typing import Literal

from src.shared.events.base import DomainEvent


class RequestSettlementDue(DomainEvent):
    """Событие: работа завершена, требуется расчёт."""

    event_type: Literal["request.completed"] = "request.completed"

    request_id: str
    user_id: str
    mechanic_id: str
    actual_cost: float
    estimated_cost: float
    completed_at: str


class RequestClosed(DomainEvent):
    """Событие: заявка закрыта без выполнения (отмена, истечение, сбой)."""

    event_type: Literal["request.cancelled", "request.expired", "request.failed"]

    request_id: str
    user_id: str
    mechanic_id: str | None = None
    reason: str | None = None
