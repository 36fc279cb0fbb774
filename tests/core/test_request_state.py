# tests/core/test_request_state.py
"""
Тесты машины состояний и проекции заявки (src/core/requests).
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from helpers import PICKUP, START
from src.common.constants import Actor, OfferStatus, ProblemType, RequestState, VehicleType
from src.common.errors import StatePrecondition, TerminalState
from src.core.requests.projection import ProjectionError, apply, fold
from src.core.requests.state_machine import RequestStateMachine
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
    RequestRequeued,
    RequestStatusChanged,
)
from src.shared.models.request import PickupLocation


def created() -> RequestCreated:
    return RequestCreated(
        request_id="R1",
        user_id="U1",
        vehicle_type=VehicleType.CAR,
        problem_type=ProblemType.TIRE_CHANGE,
        pickup=PickupLocation(coordinates=PICKUP, address="Gulshan"),
        estimated_cost=500.0,
    )


def records(*events, actor: Actor = Actor.SYSTEM) -> list[EventRecord]:
    return [
        EventRecord(
            seq=index,
            request_id="R1",
            actor=actor,
            ts=START + timedelta(seconds=index),
            event=event,
        )
        for index, event in enumerate(events, start=1)
    ]


def offer(mechanic_id: str, wave: int = 1, rank: int = 0) -> OfferMade:
    return OfferMade(
        offer_id=f"O-{mechanic_id}-{wave}",
        mechanic_id=mechanic_id,
        wave=wave,
        rank=rank,
        distance_m=150,
        expires_at=START + timedelta(seconds=30),
    )


class TestRequestStateMachine:
    """Тесты допустимых переходов."""

    @pytest.mark.parametrize(
        "current, new",
        [
            (RequestState.OPEN, RequestState.OFFERED),
            (RequestState.OFFERED, RequestState.ACCEPTED),
            (RequestState.OFFERED, RequestState.OPEN),
            (RequestState.ACCEPTED, RequestState.EN_ROUTE),
            (RequestState.EN_ROUTE, RequestState.ARRIVED),
            (RequestState.ARRIVED, RequestState.WORKING),
            (RequestState.WORKING, RequestState.COMPLETED),
            (RequestState.EN_ROUTE, RequestState.CANCELLED),
        ],
    )
    def test_allowed(self, current: RequestState, new: RequestState) -> None:
        assert RequestStateMachine.can_transition(current, new) is True

    @pytest.mark.parametrize(
        "current, new",
        [
            (RequestState.OPEN, RequestState.ACCEPTED),
            (RequestState.ACCEPTED, RequestState.ARRIVED),
            (RequestState.ACCEPTED, RequestState.COMPLETED),
            (RequestState.WORKING, RequestState.EXPIRED),
        ],
    )
    def test_forbidden(self, current: RequestState, new: RequestState) -> None:
        """Проверяет, что пропуск состояний недопустим."""
        assert RequestStateMachine.can_transition(current, new) is False
        with pytest.raises(StatePrecondition):
            RequestStateMachine.ensure_transition(current, new)

    @pytest.mark.parametrize(
        "state",
        [RequestState.COMPLETED, RequestState.CANCELLED, RequestState.EXPIRED, RequestState.FAILED],
    )
    def test_terminal_states_are_final(self, state: RequestState) -> None:
        """Проверяет, что из терминального состояния переходов нет."""
        with pytest.raises(TerminalState):
            RequestStateMachine.ensure_transition(state, RequestState.CANCELLED)


class TestProjection:
    """Тесты свёртки журнала."""

    def test_created(self) -> None:
        """Проверяет проекцию после создания."""
        projection = fold(records(created()))

        assert projection.id == "R1"
        assert projection.state == RequestState.OPEN
        assert projection.seq == 1
        assert projection.created_at == START + timedelta(seconds=1)
        assert [entry.state for entry in projection.timeline] == [RequestState.OPEN]

    def test_empty_log(self) -> None:
        assert fold([]) is None

    def test_event_before_creation_rejected(self) -> None:
        with pytest.raises(ProjectionError):
            fold(records(RequestRequeued(reason="x")))

    def test_duplicate_creation_rejected(self) -> None:
        with pytest.raises(ProjectionError):
            fold(records(created(), created()))

    def test_full_lifecycle(self) -> None:
        """Проверяет полный цикл с волной, отказом и принятием."""
        projection = fold(records(
            created(),
            DispatchPlanned(step=0, radius_m=10000, candidates=["M1", "M2"], distances={"M1": 150}, wave_size=3),
            offer("M1"),
            offer("M2", rank=1),
            OfferRejected(offer_id="O-M2-1", mechanic_id="M2", reason="busy"),
            OfferAccepted(offer_id="O-M1-1", mechanic_id="M1"),
            RequestStatusChanged(from_state=RequestState.ACCEPTED, to_state=RequestState.EN_ROUTE, mechanic_id="M1"),
            RequestStatusChanged(from_state=RequestState.EN_ROUTE, to_state=RequestState.ARRIVED, mechanic_id="M1"),
            RequestStatusChanged(from_state=RequestState.ARRIVED, to_state=RequestState.WORKING, mechanic_id="M1"),
            RequestCompleted(mechanic_id="M1", actual_cost=650.0),
            RatingAttached(score=5, comment="Быстро", mechanic_id="M1"),
        ))

        assert projection.state == RequestState.COMPLETED
        assert projection.mechanic_id == "M1"
        assert projection.actual_cost == 650.0
        assert projection.rating.score == 5
        assert projection.seq == 11
        assert projection.current_wave == 1
        assert projection.plans[0].first_wave == 1
        assert projection.offers["O-M1-1"].status == OfferStatus.ACCEPTED
        assert projection.offers["O-M2-1"].status == OfferStatus.REJECTED
        assert projection.offers["O-M2-1"].reason == "busy"
        assert [entry.state for entry in projection.timeline] == [
            RequestState.OPEN,
            RequestState.OFFERED,
            RequestState.ACCEPTED,
            RequestState.EN_ROUTE,
            RequestState.ARRIVED,
            RequestState.WORKING,
            RequestState.COMPLETED,
        ]

    def test_requeue_and_second_plan_continues_wave_numbering(self) -> None:
        """Проверяет, что волны нумеруются глобально между шагами радиуса."""
        projection = fold(records(
            created(),
            DispatchPlanned(step=0, radius_m=10000, candidates=["M1"], wave_size=3),
            offer("M1"),
            OfferTimedOut(offer_id="O-M1-1", mechanic_id="M1"),
            RequestRequeued(reason="wave_exhausted"),
            DispatchPlanned(step=1, radius_m=20000, candidates=["M2"], wave_size=3),
        ))

        assert projection.state == RequestState.OPEN
        assert projection.offers["O-M1-1"].status == OfferStatus.TIMED_OUT
        assert projection.current_plan.first_wave == 2
        assert projection.current_plan.wave_members(2) == ["M2"]
        assert projection.current_plan.last_wave == 2

    def test_early_timeout_marks_delivery_failure(self) -> None:
        projection = fold(records(created(), offer("M1"), OfferTimedOut(offer_id="O-M1-1", mechanic_id="M1", early=True)))

        assert projection.offers["O-M1-1"].reason == "delivery_failed"

    def test_cancel_withdraws_offers(self) -> None:
        """Проверяет отмену с отзывом предложений."""
        projection = fold(records(
            created(),
            offer("M1"),
            RequestCancelled(reason="problem resolved", cancelled_by=Actor.USER, by_id="U1"),
            OfferWithdrawn(offer_id="O-M1-1", mechanic_id="M1", reason="request_cancelled"),
        ))

        assert projection.state == RequestState.CANCELLED
        assert projection.cancellation.reason == "problem resolved"
        assert projection.offers["O-M1-1"].status == OfferStatus.SUPERSEDED

    def test_unknown_offer_rejected(self) -> None:
        with pytest.raises(ProjectionError):
            fold(records(created(), OfferAccepted(offer_id="missing", mechanic_id="M1")))

    def test_apply_does_not_mutate_input(self) -> None:
        """Проверяет, что apply работает с копией."""
        log = records(created(), offer("M1"))
        before = fold(log[:1])
        snapshot = before.model_copy(deep=True)

        after = apply(before, log[1])

        assert before == snapshot
        assert after.state == RequestState.OFFERED

    def test_incremental_fold_equals_full_fold(self) -> None:
        """Проверяет, что дозагрузка журнала даёт ту же проекцию."""
        log = records(
            created(),
            DispatchPlanned(step=0, radius_m=10000, candidates=["M1"], wave_size=1),
            offer("M1"),
            OfferAccepted(offer_id="O-M1-1", mechanic_id="M1"),
        )

        assert fold(log[2:], fold(log[:2])) == fold(log)
