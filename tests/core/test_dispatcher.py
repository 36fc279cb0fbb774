# tests/core/test_dispatcher.py
"""
Тесты диспетчера волн (src/core/dispatch/dispatcher.py).
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from helpers import PICKUP, FakeClock, customer, mechanic, offset, register_mechanic, request_payload
from src.common.constants import OfferStatus, Priority, RequestState
from src.common.errors import AuthorizationDenied, NotFound, StatePrecondition, TerminalState
from src.config.loader import DispatchSettings, GovernorSettings
from src.core.runtime import DispatchRuntime
from src.infra.event_store import InMemoryEventStore
from src.services.realtime_ws.session_router import mechanic_topic
from src.shared.events.dispatch_events import OfferWithdrawn, RequestExpired, RequestRequeued
from src.shared.models.common import Principal


async def log_events(store: InMemoryEventStore, request_id: str) -> list:
    return [record.event for record in await store.read_all(request_id)]


async def expiry_reason(store: InMemoryEventStore, request_id: str) -> str | None:
    for event in await log_events(store, request_id):
        if isinstance(event, RequestExpired):
            return event.reason
    return None


class TestWaves:
    """Тесты формирования волн."""

    async def test_wave_size_limits_first_wave(self, runtime: DispatchRuntime, user: Principal) -> None:
        """Проверяет, что первая волна содержит WAVE_SIZE ближайших кандидатов."""
        for index in range(5):
            await register_mechanic(runtime, f"M{index + 1}", offset(PICKUP, north_m=500 * (index + 1)))

        request = await runtime.engine.create_request(user, request_payload())

        assert [o.mechanic_id for o in request.pending_offers()] == ["M1", "M2", "M3"]
        assert [o.rank for o in request.pending_offers()] == [0, 1, 2]
        assert request.current_wave == 1
        assert request.plans[0].candidates == ["M1", "M2", "M3", "M4", "M5"]

    async def test_emergency_offers_everyone(self, runtime: DispatchRuntime, user: Principal) -> None:
        for index in range(5):
            await register_mechanic(runtime, f"M{index + 1}", offset(PICKUP, north_m=500 * (index + 1)))

        request = await runtime.engine.create_request(user, request_payload(priority=Priority.EMERGENCY))

        assert len(request.pending_offers()) == 5

    async def test_low_priority_offers_one_at_a_time(
        self,
        runtime: DispatchRuntime,
        user: Principal,
        store: InMemoryEventStore,
    ) -> None:
        """Проверяет, что после отказа предлагается следующему кандидату."""
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        await register_mechanic(runtime, "M2", offset(PICKUP, north_m=1000))

        request = await runtime.engine.create_request(user, request_payload(priority=Priority.LOW))
        assert [o.mechanic_id for o in request.pending_offers()] == ["M1"]

        after = await runtime.dispatcher.reject(mechanic("M1"), request.id, "далеко")

        assert after.state == RequestState.OFFERED
        assert after.current_wave == 2
        assert [o.mechanic_id for o in after.pending_offers()] == ["M2"]
        assert any(isinstance(e, RequestRequeued) for e in await log_events(store, request.id))

    async def test_radius_expansion_finds_new_mechanic(
        self,
        runtime: DispatchRuntime,
        user: Principal,
        clock: FakeClock,
    ) -> None:
        """Проверяет, что после истечения волны следующий шаг радиуса продолжает нумерацию волн."""
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        request = await runtime.engine.create_request(user, request_payload())

        clock.advance(25)
        await register_mechanic(runtime, "M3", offset(PICKUP, north_m=15000))
        assert await runtime.dispatcher.tick() == 1

        after = await runtime.engine.get(request.id)
        assert after.state == RequestState.OFFERED
        assert [plan.radius_m for plan in after.plans] == [10000, 20000]
        assert after.plans[1].first_wave == 2
        assert [o.mechanic_id for o in after.pending_offers()] == ["M3"]
        assert after.pending_offers()[0].wave == 2

    async def test_sole_rejection_expires(
        self,
        runtime: DispatchRuntime,
        user: Principal,
        store: InMemoryEventStore,
    ) -> None:
        """Проверяет EXPIRED, когда кандидаты на всех шагах радиуса исчерпаны."""
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        request = await runtime.engine.create_request(user, request_payload())

        after = await runtime.dispatcher.reject(mechanic("M1"), request.id)

        assert after.state == RequestState.EXPIRED
        assert await expiry_reason(store, request.id) == "no_candidates"
        assert runtime.governor.active_requests("U1") == 0


class TestTimers:
    """Тесты логических таймеров."""

    async def test_offer_times_out_on_tick(self, runtime: DispatchRuntime, user: Principal, clock: FakeClock) -> None:
        """Проверяет, что предложение истекает ровно через OFFER_ACK_T."""
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        request = await runtime.engine.create_request(user, request_payload())
        offer_id = request.pending_offers()[0].offer_id

        clock.advance(24)
        await runtime.dispatcher.tick()
        assert (await runtime.engine.get(request.id)).offers[offer_id].is_pending

        clock.advance(1)
        await runtime.dispatcher.tick()
        assert (await runtime.engine.get(request.id)).offers[offer_id].status == OfferStatus.TIMED_OUT

    async def test_dispatch_deadline(
        self,
        runtime: DispatchRuntime,
        user: Principal,
        clock: FakeClock,
        store: InMemoryEventStore,
    ) -> None:
        """Проверяет истечение заявки по общему сроку поиска с отзывом предложений."""
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        request = await runtime.engine.create_request(user, request_payload())

        clock.advance(181)
        after = await runtime.dispatcher.evaluate(request.id)

        assert after.state == RequestState.EXPIRED
        assert await expiry_reason(store, request.id) == "dispatch_timeout"
        withdrawn = [e for e in await log_events(store, request.id) if isinstance(e, OfferWithdrawn)]
        assert [e.reason for e in withdrawn] == ["request_expired"]

    async def test_direct_offer_unanswered(
        self,
        runtime: DispatchRuntime,
        user: Principal,
        clock: FakeClock,
        store: InMemoryEventStore,
    ) -> None:
        """Проверяет, что неотвеченная прямая заявка истекает без расширения радиуса."""
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        await register_mechanic(runtime, "M2", offset(PICKUP, north_m=400))
        request = await runtime.engine.create_request(user, request_payload(mechanic_id="M1"))

        clock.advance(25)
        await runtime.dispatcher.tick()

        after = await runtime.engine.get(request.id)
        assert after.state == RequestState.EXPIRED
        assert after.offered_mechanics == {"M1"}
        assert await expiry_reason(store, request.id) == "direct_offer_unanswered"

    async def test_tick_skips_settled_requests(self, runtime: DispatchRuntime, user: Principal) -> None:
        await runtime.engine.create_request(user, request_payload())

        assert await runtime.dispatcher.tick() == 0


class TestAccept:
    """Тесты принятия предложения."""

    async def test_accept_withdraws_siblings(self, runtime: DispatchRuntime, user: Principal) -> None:
        """Проверяет отзыв остальных предложений волны при принятии."""
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        await register_mechanic(runtime, "M2", offset(PICKUP, north_m=900))
        request = await runtime.engine.create_request(user, request_payload())

        accepted = await runtime.dispatcher.accept(mechanic("M2"), request.id)

        assert accepted.state == RequestState.ACCEPTED
        assert accepted.mechanic_id == "M2"
        m1_offer = accepted.latest_offer_for("M1")
        assert m1_offer.status == OfferStatus.SUPERSEDED
        assert m1_offer.reason == "accepted_by_other"
        assert runtime.presence.snapshot("M2").active_jobs == 1
        assert runtime.governor.pair_active("U1", "M2") is True

    async def test_only_mechanic_accepts(self, runtime: DispatchRuntime, user: Principal) -> None:
        with pytest.raises(AuthorizationDenied):
            await runtime.dispatcher.accept(user, "R1")

    async def test_not_offered_mechanic(self, runtime: DispatchRuntime, user: Principal) -> None:
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        request = await runtime.engine.create_request(user, request_payload())

        with pytest.raises(AuthorizationDenied):
            await runtime.dispatcher.accept(mechanic("M9"), request.id)

    async def test_unknown_request(self, runtime: DispatchRuntime) -> None:
        with pytest.raises(NotFound):
            await runtime.dispatcher.accept(mechanic("M1"), "missing")

    async def test_expired_offer(self, runtime: DispatchRuntime, user: Principal, clock: FakeClock) -> None:
        """Проверяет отказ в принятии после срока предложения, даже до тика."""
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        request = await runtime.engine.create_request(user, request_payload())
        clock.advance(25)

        with pytest.raises(StatePrecondition):
            await runtime.dispatcher.accept(mechanic("M1"), request.id)
        assert runtime.presence.snapshot("M1").active_jobs == 0

    async def test_accept_after_reject(self, runtime: DispatchRuntime, user: Principal) -> None:
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        await register_mechanic(runtime, "M2", offset(PICKUP, north_m=900))
        request = await runtime.engine.create_request(user, request_payload())
        await runtime.dispatcher.reject(mechanic("M1"), request.id)

        with pytest.raises(StatePrecondition):
            await runtime.dispatcher.accept(mechanic("M1"), request.id)

    async def test_accept_on_terminal_request(self, runtime: DispatchRuntime, user: Principal) -> None:
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        request = await runtime.engine.create_request(user, request_payload())
        await runtime.engine.cancel(user, request.id, "передумал")

        with pytest.raises(TerminalState):
            await runtime.dispatcher.accept(mechanic("M1"), request.id)

    async def test_pending_offers_for(self, runtime: DispatchRuntime, user: Principal) -> None:
        """Проверяет список живых предложений механика."""
        await register_mechanic(runtime, "M1", offset(PICKUP, north_m=500))
        first = await runtime.engine.create_request(user, request_payload())
        second = await runtime.engine.create_request(customer("U2"), request_payload())

        pending = runtime.dispatcher.pending_offers_for("M1")

        assert [projection.id for projection, _ in pending] == [first.id, second.id]
        assert runtime.dispatcher.pending_offers_for("M2") == []


class TestDelivery:
    """Тесты доставки предложений в живой канал."""

    @pytest.fixture
    async def strict_runtime(self, store: InMemoryEventStore, clock: FakeClock):
        config = DispatchSettings(STALE_RETRY_BACKOFF_MS=[0, 0, 0], OFFER_REQUIRES_ONLINE_SESSION=True)
        rt = DispatchRuntime(store, clock=clock, config=config, governor_config=GovernorSettings())
        await rt.start(run_ticker=False)
        yield rt
        await rt.stop()

    async def test_offer_without_session_times_out_early(
        self,
        strict_runtime: DispatchRuntime,
        user: Principal,
    ) -> None:
        """Проверяет досрочное истечение предложения без сессии механика."""
        await register_mechanic(strict_runtime, "M1", offset(PICKUP, north_m=500))

        request = await strict_runtime.engine.create_request(user, request_payload())

        offer = request.latest_offer_for("M1")
        assert offer.status == OfferStatus.TIMED_OUT
        assert offer.reason == "delivery_failed"
        assert request.state == RequestState.EXPIRED

    async def test_offer_delivered_to_session(
        self,
        strict_runtime: DispatchRuntime,
        user: Principal,
    ) -> None:
        """Проверяет доставку OfferMade в сессию механика."""
        await register_mechanic(strict_runtime, "M1", offset(PICKUP, north_m=500))
        websocket = AsyncMock()
        session = await strict_runtime.router.connect(websocket, mechanic("M1"))
        await strict_runtime.router.subscribe(session, mechanic_topic("M1"))

        request = await strict_runtime.engine.create_request(user, request_payload())
        await session.queue.join()

        assert request.state == RequestState.OFFERED
        frame = websocket.send_json.await_args_list[0].args[0]
        assert frame["type"] == "OfferMade"
        assert frame["requestId"] == request.id
        assert frame["payload"]["offerId"] == request.pending_offers()[0].offer_id
