# src/shared/events/__init__.py
"""
Схемы событий.

- dispatch_events: события журнала заявки (источник истины) и живого канала
- integration_events: события для RabbitMQ (расчёты, закрытие заявок)
"""

from src.shared.events.base import DomainEvent, EventMetadata
from src.shared.events.dispatch_events import (
    DispatchEvent,
    DispatchEventBase,
    DispatchPlanned,
    EventRecord,
    LiveEvent,
    OfferAccepted,
    OfferMade,
    OfferRejected,
    OfferTimedOut,
    OfferWithdrawn,
    RatingAttached,
    RequestCancelled,
    RequestCompleted,
    RequestCreated,
    RequestExpired,
    RequestFailed,
    RequestRequeued,
    RequestStatusChanged,
    dump_event,
    parse_event,
)
from src.shared.events.integration_events import RequestClosed, RequestSettlementDue

__all__ = [
    # Base
    "DomainEvent",
    "EventMetadata",
    # Журнал заявки
    "DispatchEvent",
    "DispatchEventBase",
    "DispatchPlanned",
    "EventRecord",
    "LiveEvent",
    "OfferAccepted",
    "OfferMade",
    "OfferRejected",
    "OfferTimedOut",
    "OfferWithdrawn",
    "RatingAttached",
    "RequestCancelled",
    "RequestCompleted",
    "RequestCreated",
    "RequestExpired",
    "RequestFailed",
    "RequestRequeued",
    "RequestStatusChanged",
    "dump_event",
    "parse_event",
    # Интеграция
    "RequestClosed",
    "RequestSettlementDue",
]
