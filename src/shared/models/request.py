# src/shared/models/request.py
"""
Модели заявки на помощь и предложений механикам.

ServiceRequest: проекция журнала событий заявки (см. core.requests.projection).
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.common.constants import (
    ASSIGNED_STATES,
    TERMINAL_STATES,
    Actor,
    OfferStatus,
    Priority,
    ProblemType,
    RequestState,
    VehicleType,
)
from src.shared.models.geo import GeoPoint


_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PickupLocation(BaseModel):
    """Место подачи: координаты и снимок адреса."""

    model_config = _CAMEL

    coordinates: GeoPoint
    address: str = Field(default="", max_length=300)
    landmark: str | None = Field(default=None, max_length=200)


class TimelineEntry(BaseModel):
    """Запись хронологии состояний."""

    model_config = _CAMEL

    state: RequestState
    at: datetime


class Cancellation(BaseModel):
    """Сведения об отмене."""

    model_config = _CAMEL

    reason: str
    cancelled_by: Actor
    by_id: str | None = None
    at: datetime


class Rating(BaseModel):
    """Оценка работы механика пользователем."""

    model_config = _CAMEL

    score: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=300)
    at: datetime


class Offer(BaseModel):
    """Предложение заявки конкретному механику."""

    model_config = _CAMEL

    offer_id: str
    request_id: str
    mechanic_id: str
    wave: int
    rank: int
    distance_m: int | None = None
    made_at: datetime
    expires_at: datetime
    status: OfferStatus = OfferStatus.PENDING
    reason: str | None = None
    resolved_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == OfferStatus.PENDING


class DispatchPlan(BaseModel):
    """Ранжированный список кандидатов для одного шага радиуса."""

    model_config = _CAMEL

    step: int
    radius_m: int
    candidates: list[str]
    distances: dict[str, int] = Field(default_factory=dict)
    wave_size: int
    first_wave: int = 1
    planned_at: datetime

    @property
    def wave_count(self) -> int:
        if not self.candidates:
            return 0
        return (len(self.candidates) + self.wave_size - 1) // self.wave_size

    @property
    def last_wave(self) -> int:
        """Глобальный номер последней волны плана."""
        return self.first_wave + self.wave_count - 1

    def wave_members(self, wave: int) -> list[str]:
        """Кандидаты волны по её глобальному номеру (нумерация волн с 1)."""
        local = wave - self.first_wave
        if local < 0:
            return []
        start = local * self.wave_size
        return self.candidates[start:start + self.wave_size]


class ServiceRequest(BaseModel):
    """Текущее состояние заявки (свёртка журнала)."""

    model_config = _CAMEL

    id: str
    user_id: str
    mechanic_id: str | None = None
    target_mechanic_id: str | None = None
    vehicle_type: VehicleType
    problem_type: ProblemType
    description: str = ""
    pickup: PickupLocation
    priority: Priority = Priority.MEDIUM
    estimated_cost: float = 0.0
    actual_cost: float | None = None
    state: RequestState = RequestState.OPEN
    timeline: list[TimelineEntry] = Field(default_factory=list)
    cancellation: Cancellation | None = None
    rating: Rating | None = None
    failure_reason: str | None = None
    offers: dict[str, Offer] = Field(default_factory=dict)
    plans: list[DispatchPlan] = Field(default_factory=list)
    current_wave: int = 0
    seq: int = 0
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_assigned(self) -> bool:
        return self.state in ASSIGNED_STATES

    def pending_offers(self) -> list[Offer]:
        return [offer for offer in self.offers.values() if offer.is_pending]

    def pending_offer_for(self, mechanic_id: str) -> Offer | None:
        for offer in self.offers.values():
            if offer.mechanic_id == mechanic_id and offer.is_pending:
                return offer
        return None

    def latest_offer_for(self, mechanic_id: str) -> Offer | None:
        offers = [o for o in self.offers.values() if o.mechanic_id == mechanic_id]
        return max(offers, key=lambda o: o.wave) if offers else None

    @property
    def offered_mechanics(self) -> set[str]:
        return {offer.mechanic_id for offer in self.offers.values()}

    @property
    def current_plan(self) -> DispatchPlan | None:
        return self.plans[-1] if self.plans else None

    def entered_at(self, state: RequestState) -> datetime | None:
        """Момент последнего входа в состояние."""
        for entry in reversed(self.timeline):
            if entry.state == state:
                return entry.at
        return None


class ServiceRequestCreate(BaseModel):
    """Входные данные для создания заявки (форма REST)."""

    model_config = _CAMEL

    vehicle_type: VehicleType
    problem_type: ProblemType
    description: str = Field(default="", max_length=500)
    pickup_location: PickupLocation
    priority: Priority = Priority.MEDIUM
    mechanic_id: str | None = None
    estimated_cost: float | None = Field(default=None, ge=0)
