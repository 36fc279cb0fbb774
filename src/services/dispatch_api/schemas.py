# src/services/dispatch_api/schemas.py
"""
Модели запросов и ответов REST API (camelCase на проводе).
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.common.constants import RequestState, Skill, VehicleType
from src.shared.models.geo import GeoPoint
from src.shared.models.presence import MechanicProfile
from src.shared.models.request import Offer, ServiceRequest, ServiceRequestCreate

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# === REQUESTS ===

CreateRequestBody = ServiceRequestCreate


class StatusUpdateBody(BaseModel):
    """Смена статуса назначенным механиком."""
    model_config = _CAMEL

    status: RequestState
    actual_cost: float | None = None


class CancelBody(BaseModel):
    model_config = _CAMEL

    reason: str = Field(min_length=1, max_length=200)


class RejectBody(BaseModel):
    model_config = _CAMEL

    reason: str | None = Field(default=None, max_length=200)


class RateBody(BaseModel):
    model_config = _CAMEL

    rating: int
    comment: str | None = None


class RequestListResponse(BaseModel):
    model_config = _CAMEL

    requests: list[ServiceRequest]
    total: int


# === MECHANICS ===

class LocationPayload(BaseModel):
    coordinates: GeoPoint


class AvailabilityBody(BaseModel):
    """Переключение доступности, опционально с отметкой позиции."""
    model_config = _CAMEL

    is_available: bool
    current_location: LocationPayload | None = None


class ArrivalEstimate(BaseModel):
    """Оценка прибытия, которую считает клиент назначенного механика."""
    model_config = _CAMEL

    eta_minutes: float | None = Field(default=None, ge=0)
    distance_km: float | None = Field(default=None, ge=0)
    speed_kph: float | None = Field(default=None, ge=0)

    def to_payload(self) -> dict[str, float]:
        """Заданные поля в camelCase для MechanicPositionUpdate."""
        return self.model_dump(include={"eta_minutes", "distance_km", "speed_kph"}, by_alias=True, exclude_none=True)


class LocationBody(ArrivalEstimate):
    """Heartbeat позиции механика, опционально с оценкой прибытия."""

    coordinates: GeoPoint
    recorded_at: datetime | None = None


class MechanicStats(BaseModel):
    """Статистика работ механика."""
    model_config = _CAMEL

    total_jobs: int
    completed_jobs: int
    active_jobs: int
    completion_rate: int


class MechanicProfileBody(BaseModel):
    """Профиль механика, задаваемый администратором (id берётся из пути)."""
    model_config = _CAMEL

    vehicle_types: list[VehicleType] = Field(default_factory=list)
    skills: list[Skill] = Field(default_factory=list)
    max_concurrent_jobs: int = Field(default=1, ge=1)
    service_radius_m: int = Field(default=10000, ge=1000, le=50000)
    verified: bool = False

    def to_profile(self, mechanic_id: str) -> MechanicProfile:
        return MechanicProfile(
            mechanic_id=mechanic_id,
            vehicle_types=frozenset(self.vehicle_types),
            skills=frozenset(self.skills),
            max_concurrent_jobs=self.max_concurrent_jobs,
            service_radius_m=self.service_radius_m,
            verified=self.verified,
        )


class PendingOffer(BaseModel):
    """Ожидающее предложение вместе с кратким описанием заявки."""
    model_config = _CAMEL

    offer: Offer
    request_id: str
    vehicle_type: VehicleType
    problem_type: str
    priority: str
    pickup: GeoPoint
    address: str
    estimated_cost: float

    @classmethod
    def build(cls, request: ServiceRequest, offer: Offer) -> "PendingOffer":
        return cls(
            offer=offer,
            request_id=request.id,
            vehicle_type=request.vehicle_type,
            problem_type=request.problem_type.value,
            priority=request.priority.value,
            pickup=request.pickup.coordinates,
            address=request.pickup.address,
            estimated_cost=request.estimated_cost,
        )
