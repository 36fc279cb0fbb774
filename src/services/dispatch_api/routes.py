# src/services/dispatch_api/routes.py
"""
REST endpoints ядра диспетчеризации (префикс /api/v1).

Заявки:
- POST /requests - создать заявку
- GET /requests - заявки участника
- GET /requests/{id} - проекция заявки
- PUT /requests/{id}/accept | reject | status | cancel | rate

Механики:
- GET /mechanics/nearby - гео-поиск
- GET /mechanics/offers - ожидающие предложения механика
- PUT /mechanics/availability - доступность (+ отметка позиции)
- PUT /mechanics/location - heartbeat позиции (+ оценка прибытия)
- GET /mechanics/stats - статистика работ механика

Администрирование:
- PUT /admin/mechanics/{id} - профиль механика
- DELETE /admin/mechanics/{id} - деактивация
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Query, Response, status

from src.common.constants import Skill, VehicleType
from src.services.dispatch_api.dependencies import (
    CurrentAdmin,
    CurrentMechanic,
    CurrentPrincipal,
    Runtime,
)
from src.services.dispatch_api.schemas import (
    AvailabilityBody,
    CancelBody,
    CreateRequestBody,
    LocationBody,
    MechanicProfileBody,
    MechanicStats,
    PendingOffer,
    RateBody,
    RejectBody,
    RequestListResponse,
    StatusUpdateBody,
)
from src.shared.models.geo import GeoPoint
from src.shared.models.presence import MechanicPresence, NearbyMechanic, PresenceFilter
from src.shared.models.request import ServiceRequest

router = APIRouter()


# === REQUESTS ===

@router.post("/requests", response_model=ServiceRequest, status_code=status.HTTP_201_CREATED, tags=["Requests"])
async def create_request(
    body: CreateRequestBody,
    principal: CurrentPrincipal,
    runtime: Runtime,
) -> ServiceRequest:
    return await runtime.engine.create_request(principal, body)


@router.get("/requests", response_model=RequestListResponse, tags=["Requests"])
async def list_requests(principal: CurrentPrincipal, runtime: Runtime) -> RequestListResponse:
    requests = await runtime.engine.list_for(principal)
    return RequestListResponse(requests=requests, total=len(requests))


@router.get("/requests/{request_id}", response_model=ServiceRequest, tags=["Requests"])
async def get_request(request_id: str, principal: CurrentPrincipal, runtime: Runtime) -> ServiceRequest:
    return await runtime.engine.get_for(principal, request_id)


@router.put("/requests/{request_id}/accept", response_model=ServiceRequest, tags=["Requests"])
async def accept_request(request_id: str, principal: CurrentPrincipal, runtime: Runtime) -> ServiceRequest:
    return await runtime.dispatcher.accept(principal, request_id)


@router.put("/requests/{request_id}/reject", response_model=ServiceRequest, tags=["Requests"])
async def reject_request(
    request_id: str,
    principal: CurrentPrincipal,
    runtime: Runtime,
    body: RejectBody | None = None,
) -> ServiceRequest:
    reason = body.reason if body is not None else None
    return await runtime.dispatcher.reject(principal, request_id, reason)


@router.put("/requests/{request_id}/status", response_model=ServiceRequest, tags=["Requests"])
async def update_status(
    request_id: str,
    body: StatusUpdateBody,
    principal: CurrentPrincipal,
    runtime: Runtime,
) -> ServiceRequest:
    return await runtime.engine.update_status(principal, request_id, body.status, body.actual_cost)


@router.put("/requests/{request_id}/cancel", response_model=ServiceRequest, tags=["Requests"])
async def cancel_request(
    request_id: str,
    body: CancelBody,
    principal: CurrentPrincipal,
    runtime: Runtime,
) -> ServiceRequest:
    return await runtime.engine.cancel(principal, request_id, body.reason)


@router.put("/requests/{request_id}/rate", response_model=ServiceRequest, tags=["Requests"])
async def rate_request(
    request_id: str,
    body: RateBody,
    principal: CurrentPrincipal,
    runtime: Runtime,
) -> ServiceRequest:
    return await runtime.engine.attach_rating(principal, request_id, body.rating, body.comment)


# === MECHANICS ===

@router.get("/mechanics/nearby", response_model=list[NearbyMechanic], tags=["Mechanics"])
async def nearby_mechanics(
    principal: CurrentPrincipal,
    runtime: Runtime,
    longitude: float,
    latitude: float,
    vehicle_type: Annotated[VehicleType | None, Query(alias="vehicleType")] = None,
    skill: Skill | None = None,
    max_distance: Annotated[int | None, Query(alias="maxDistance")] = None,
    include_unavailable: Annotated[bool, Query(alias="includeUnavailable")] = False,
    limit: int = 10,
) -> list[NearbyMechanic]:
    """Механики вокруг точки, по возрастанию score."""
    radius = max_distance if max_distance is not None else runtime.config.DEFAULT_RADIUS_M
    return await runtime.geo.nearest(
        GeoPoint(longitude=longitude, latitude=latitude),
        radius,
        PresenceFilter(vehicle_type=vehicle_type, skill=skill, include_unavailable=include_unavailable),
        limit=limit,
    )


@router.get("/mechanics/offers", response_model=list[PendingOffer], tags=["Mechanics"])
async def pending_offers(mechanic: CurrentMechanic, runtime: Runtime) -> list[PendingOffer]:
    return [
        PendingOffer.build(request, offer)
        for request, offer in runtime.dispatcher.pending_offers_for(mechanic.user_id)
    ]


@router.put("/mechanics/availability", response_model=MechanicPresence, tags=["Mechanics"])
async def set_availability(
    body: AvailabilityBody,
    mechanic: CurrentMechanic,
    runtime: Runtime,
) -> MechanicPresence:
    if body.current_location is not None:
        return await runtime.heartbeat(
            mechanic.user_id,
            body.current_location.coordinates,
            availability=body.is_available,
        )
    return await runtime.presence.toggle_availability(mechanic.user_id, body.is_available)


@router.put("/mechanics/location", response_model=MechanicPresence, tags=["Mechanics"])
async def update_location(
    body: LocationBody,
    mechanic: CurrentMechanic,
    runtime: Runtime,
) -> MechanicPresence:
    return await runtime.heartbeat(
        mechanic.user_id,
        body.coordinates,
        recorded_at=body.recorded_at,
        eta=body.to_payload(),
    )


@router.get("/mechanics/stats", response_model=MechanicStats, tags=["Mechanics"])
async def mechanic_stats(mechanic: CurrentMechanic, runtime: Runtime) -> MechanicStats:
    return MechanicStats(**runtime.engine.mechanic_stats(mechanic.user_id))


# === ADMIN ===

@router.put("/admin/mechanics/{mechanic_id}", response_model=MechanicPresence, tags=["Admin"])
async def upsert_mechanic(
    mechanic_id: str,
    body: MechanicProfileBody,
    admin: CurrentAdmin,
    runtime: Runtime,
) -> MechanicPresence:
    return await runtime.presence.upsert_profile(body.to_profile(mechanic_id))


@router.delete("/admin/mechanics/{mechanic_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Admin"])
async def deactivate_mechanic(mechanic_id: str, admin: CurrentAdmin, runtime: Runtime) -> Response:
    await runtime.presence.deactivate(mechanic_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
