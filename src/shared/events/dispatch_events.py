# src/shared/events/dispatch_events.py
"""
События журнала заявки.

Журнал является единственным источником истины о заявке. Каждое событие есть вариант
размеченного объединения по полю `type`; проекция строится чистой свёрткой
(см. core.requests.projection).
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from src.common.constants import Actor, Priority, ProblemType, RequestState, VehicleType
from src.shared.models.request import PickupLocation


class DispatchEventBase(BaseModel):
    """Базовый класс событий журнала."""

    model_config = ConfigDict(frozen=True)


# =============================================================================
# СОЗДАНИЕ И ПЛАНИРОВАНИЕ
# =============================================================================

class RequestCreated(DispatchEventBase):
    """Заявка создана пользователем."""
    type: Literal["RequestCreated"] = "RequestCreated"
    request_id: str
    user_id: str
    vehicle_type: VehicleType
    problem_type: ProblemType
    description: str = ""
    pickup: PickupLocation
    priority: Priority = Priority.MEDIUM
    estimated_cost: float = 0.0
    target_mechanic_id: str | None = None


class DispatchPlanned(DispatchEventBase):
    """Диспетчер сохранил ранжированный список кандидатов для шага радиуса."""
    type: Literal["DispatchPlanned"] = "DispatchPlanned"
    step: int
    radius_m: int
    candidates: list[str]
    distances: dict[str, int] = Field(default_factory=dict)
    wave_size: int


# =============================================================================
# ПРЕДЛОЖЕНИЯ
# =============================================================================

class OfferMade(DispatchEventBase):
    """Механику отправлено предложение."""
    type: Literal["OfferMade"] = "OfferMade"
    offer_id: str
    mechanic_id: str
    wave: int
    rank: int
    distance_m: int | None = None
    expires_at: datetime


class OfferAccepted(DispatchEventBase):
    """Механик принял предложение; заявка переходит в ACCEPTED."""
    type: Literal["OfferAccepted"] = "OfferAccepted"
    offer_id: str
    mechanic_id: str


class OfferRejected(DispatchEventBase):
    """Механик отклонил предложение (или отказ регулятора ёмкости)."""
    type: Literal["OfferRejected"] = "OfferRejected"
    offer_id: str
    mechanic_id: str
    reason: str | None = None


class OfferTimedOut(DispatchEventBase):
    """Предложение истекло (early=True: доставка не удалась)."""
    type: Literal["OfferTimedOut"] = "OfferTimedOut"
    offer_id: str
    mechanic_id: str
    early: bool = False


class OfferWithdrawn(DispatchEventBase):
    """Предложение отозвано (принято другим, отмена, истечение заявки)."""
    type: Literal["OfferWithdrawn"] = "OfferWithdrawn"
    offer_id: str
    mechanic_id: str
    reason: str


class RequestRequeued(DispatchEventBase):
    """Волна исчерпана без принятия, заявка возвращается в OPEN."""
    type: Literal["RequestRequeued"] = "RequestRequeued"
    reason: str = "wave_exhausted"


# =============================================================================
# ЖИЗНЕННЫЙ ЦИКЛ
# =============================================================================

class RequestStatusChanged(DispatchEventBase):
    """Назначенный механик продвинул заявку (EN_ROUTE, ARRIVED, WORKING)."""
    type: Literal["RequestStatusChanged"] = "RequestStatusChanged"
    from_state: RequestState
    to_state: RequestState
    mechanic_id: str


class RequestCompleted(DispatchEventBase):
    """Работа завершена."""
    type: Literal["RequestCompleted"] = "RequestCompleted"
    mechanic_id: str
    actual_cost: float


class RequestCancelled(DispatchEventBase):
    """Заявка отменена."""
    type: Literal["RequestCancelled"] = "RequestCancelled"
    reason: str
    cancelled_by: Actor
    by_id: str | None = None


class RequestExpired(DispatchEventBase):
    """Механик не найден."""
    type: Literal["RequestExpired"] = "RequestExpired"
    reason: str


class RequestFailed(DispatchEventBase):
    """Неустранимая ошибка после повторов."""
    type: Literal["RequestFailed"] = "RequestFailed"
    reason: str


class RatingAttached(DispatchEventBase):
    """Пользователь оценил выполненную работу."""
    type: Literal["RatingAttached"] = "RatingAttached"
    score: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=300)
    mechanic_id: str


DispatchEvent = Annotated[
    Union[
        RequestCreated,
        DispatchPlanned,
        OfferMade,
        OfferAccepted,
        OfferRejected,
        OfferTimedOut,
        OfferWithdrawn,
        RequestRequeued,
        RequestStatusChanged,
        RequestCompleted,
        RequestCancelled,
        RequestExpired,
        RequestFailed,
        RatingAttached,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[DispatchEvent] = TypeAdapter(DispatchEvent)


def parse_event(payload: dict[str, Any] | str | bytes) -> DispatchEventBase:
    """Восстанавливает вариант события из словаря или JSON (по полю type)."""
    if isinstance(payload, (str, bytes)):
        return _event_adapter.validate_json(payload)
    return _event_adapter.validate_python(payload)


def dump_event(event: DispatchEventBase) -> dict[str, Any]:
    """JSON-совместимое представление события (вместе с type)."""
    return event.model_dump(mode="json")


# =============================================================================
# ЗАПИСЬ ЖУРНАЛА И ЖИВОЕ СОБЫТИЕ
# =============================================================================

class EventRecord(BaseModel):
    """Запись журнала: событие с присвоенной последовательностью."""

    model_config = ConfigDict(frozen=True)

    seq: int
    request_id: str
    actor: Actor
    ts: datetime
    event: DispatchEvent

    @property
    def type(self) -> str:
        return self.event.type


LiveEventType = Literal[
    "OfferMade",
    "OfferWithdrawn",
    "RequestStatusChanged",
    "MechanicPositionUpdate",
    "RequestCancelled",
    "RequestCompleted",
    "RequestExpired",
]


class LiveEvent(BaseModel):
    """Событие живого канала: {requestId, seq, type, payload, ts}."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    request_id: str
    seq: int
    type: LiveEventType
    payload: dict[str, Any] = Field(default_factory=dict)
    ts: datetime

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
