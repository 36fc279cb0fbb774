# src/core/requests/projection.py
"""
Проекция заявки — чистая свёртка журнала событий.

apply() никогда не изменяет переданную проекцию: каждое событие применяется
к глубокой копии, поэтому неудачный переход не затрагивает закэшированное состояние.
"""

from __future__ import annotations

from typing import Iterable

from src.common.constants import OfferStatus, RequestState
from src.shared.events.dispatch_events import (
    DispatchPlanned,
    EventRecord,
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
)
from src.shared.models.request import (
    Cancellation,
    DispatchPlan,
    Offer,
    Rating,
    ServiceRequest,
    TimelineEntry,
)


class ProjectionError(ValueError):
    """Журнал не сворачивается (событие до RequestCreated или повторное создание)."""


def _enter(projection: ServiceRequest, state: RequestState, record: EventRecord) -> None:
    projection.state = state
    projection.timeline.append(TimelineEntry(state=state, at=record.ts))


def _resolve_offer(
    projection: ServiceRequest,
    offer_id: str,
    status: OfferStatus,
    record: EventRecord,
    reason: str | None = None,
) -> None:
    offer = projection.offers.get(offer_id)
    if offer is None:
        raise ProjectionError(f"Неизвестное предложение {offer_id}")
    offer.status = status
    offer.reason = reason
    offer.resolved_at = record.ts


def _created(record: EventRecord, event: RequestCreated) -> ServiceRequest:
    return ServiceRequest(
        id=event.request_id,
        user_id=event.user_id,
        target_mechanic_id=event.target_mechanic_id,
        vehicle_type=event.vehicle_type,
        problem_type=event.problem_type,
        description=event.description,
        pickup=event.pickup,
        priority=event.priority,
        estimated_cost=event.estimated_cost,
        state=RequestState.OPEN,
        timeline=[TimelineEntry(state=RequestState.OPEN, at=record.ts)],
        seq=record.seq,
        created_at=record.ts,
        updated_at=record.ts,
    )


def apply(projection: ServiceRequest | None, record: EventRecord) -> ServiceRequest:
    """Применяет одну запись журнала и возвращает новую проекцию."""
    event = record.event

    if isinstance(event, RequestCreated):
        if projection is not None:
            raise ProjectionError(f"Повторное создание заявки {record.request_id}")
        return _created(record, event)

    if projection is None:
        raise ProjectionError(f"Событие {record.type} до создания заявки {record.request_id}")

    result = projection.model_copy(deep=True)

    match event:
        case DispatchPlanned():
            result.plans.append(
                DispatchPlan(
                    step=event.step,
                    radius_m=event.radius_m,
                    candidates=list(event.candidates),
                    distances=dict(event.distances),
                    wave_size=event.wave_size,
                    first_wave=result.current_wave + 1,
                    planned_at=record.ts,
                )
            )
        case OfferMade():
            result.offers[event.offer_id] = Offer(
                offer_id=event.offer_id,
                request_id=record.request_id,
                mechanic_id=event.mechanic_id,
                wave=event.wave,
                rank=event.rank,
                distance_m=event.distance_m,
                made_at=record.ts,
                expires_at=event.expires_at,
            )
            result.current_wave = max(result.current_wave, event.wave)
            if result.state == RequestState.OPEN:
                _enter(result, RequestState.OFFERED, record)
        case OfferAccepted():
            _resolve_offer(result, event.offer_id, OfferStatus.ACCEPTED, record)
            result.mechanic_id = event.mechanic_id
            _enter(result, RequestState.ACCEPTED, record)
        case OfferRejected():
            _resolve_offer(result, event.offer_id, OfferStatus.REJECTED, record, event.reason)
        case OfferTimedOut():
            _resolve_offer(
                result,
                event.offer_id,
                OfferStatus.TIMED_OUT,
                record,
                "delivery_failed" if event.early else None,
            )
        case OfferWithdrawn():
            _resolve_offer(result, event.offer_id, OfferStatus.SUPERSEDED, record, event.reason)
        case RequestRequeued():
            _enter(result, RequestState.OPEN, record)
        case RequestStatusChanged():
            _enter(result, event.to_state, record)
        case RequestCompleted():
            result.actual_cost = event.actual_cost
            _enter(result, RequestState.COMPLETED, record)
        case RequestCancelled():
            result.cancellation = Cancellation(
                reason=event.reason,
                cancelled_by=event.cancelled_by,
                by_id=event.by_id,
                at=record.ts,
            )
            _enter(result, RequestState.CANCELLED, record)
        case RequestExpired():
            _enter(result, RequestState.EXPIRED, record)
        case RequestFailed():
            result.failure_reason = event.reason
            _enter(result, RequestState.FAILED, record)
        case RatingAttached():
            result.rating = Rating(score=event.score, comment=event.comment, at=record.ts)

    result.seq = record.seq
    result.updated_at = record.ts
    return result


def fold(records: Iterable[EventRecord], initial: ServiceRequest | None = None) -> ServiceRequest | None:
    """Сворачивает записи журнала в проекцию (None, если журнал пуст)."""
    projection = initial
    for record in records:
        projection = apply(projection, record)
    return projection
