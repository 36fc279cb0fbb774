# src/core/dispatch/dispatcher.py
"""
Диспетчер: поиск кандидатов, волны предложений, принятие и отказы.

Алгоритм для новой заявки:
1. Кандидаты берутся из гео-поиска по шагам радиуса (базовый, ×2, максимум).
2. Ранжированный список сохраняется в журнал событием DispatchPlanned.
3. Кандидаты делятся на волны; следующая волна ждёт разрешения всех
   предложений текущей (принятие, отказ, истечение).
4. Первое авторизованное принятие переводит заявку в ACCEPTED, остальные
   ожидающие предложения отзываются той же записью.
5. Если волны и шаги радиуса исчерпаны — заявка истекает (EXPIRED).

Таймеры логические: оцениваются при каждом пробуждении партиции
(после записи и на периодическом тике).
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from src.common.clock import Clock
from src.common.constants import DISPATCHING_STATES, Actor, RequestState, Role, TypeMsg, required_skill
from src.common.errors import (
    AuthorizationDenied,
    CapacityExceeded,
    DispatchError,
    StatePrecondition,
    TerminalState,
    Unavailable,
)
from src.common.logger import log_error, log_info, log_warning
from src.config.loader import DispatchSettings
from src.core.dispatch.offers import offer_id_for, radius_schedule, wave_size_for
from src.core.geo.distance import distance_m
from src.core.geo.query import GeoQueryEngine
from src.core.governor.service import CapacityGovernor
from src.core.presence.index import PresenceIndex
from src.core.requests.engine import RequestLifecycleEngine
from src.services.realtime_ws.session_router import SessionRouter, live_event_for_offer, mechanic_topic
from src.shared.events.dispatch_events import (
    DispatchPlanned,
    EventRecord,
    OfferAccepted,
    OfferMade,
    OfferRejected,
    OfferTimedOut,
    OfferWithdrawn,
    RequestExpired,
    RequestRequeued,
)
from src.shared.models.common import Principal
from src.shared.models.presence import PresenceFilter
from src.shared.models.request import DispatchPlan, Offer, ServiceRequest


class Dispatcher:
    """
    Диспетчер заявок.

    Все действия над заявкой выполняются внутри её партиции, поэтому
    волны одной заявки не пересекаются, а разные заявки обрабатываются параллельно.
    """

    def __init__(
        self,
        engine: RequestLifecycleEngine,
        geo: GeoQueryEngine,
        governor: CapacityGovernor,
        presence: PresenceIndex,
        router: SessionRouter | None = None,
        clock: Clock | None = None,
        config: DispatchSettings | None = None,
    ) -> None:
        if config is None:
            from src.config import settings
            config = settings.dispatch

        self._engine = engine
        self._geo = geo
        self._governor = governor
        self._presence = presence
        self._router = router
        self._clock = clock or engine.clock
        self._config = config

        self._schedule = radius_schedule(config.DEFAULT_RADIUS_M, config.MAX_RADIUS_M)
        self._offer_ttl = timedelta(seconds=config.OFFER_ACK_T)
        self._dispatch_ttl = timedelta(seconds=config.OFFER_EXHAUSTED_T)

    # =========================================================================
    # ПРОБУЖДЕНИЕ ПАРТИЦИИ
    # =========================================================================

    async def on_request_created(self, request_id: str) -> ServiceRequest | None:
        """Планирует и делает первую волну предложений."""
        return await self.evaluate(request_id)

    async def evaluate(self, request_id: str) -> ServiceRequest | None:
        """
        Оценивает таймеры заявки и продвигает диспетчеризацию.

        Порядок: истечение заявки по общему сроку, истечение предложений,
        следующая волна / расширение радиуса / EXPIRED.
        """
        async with self._engine.partition(request_id):
            projection = await self._engine.find(request_id)
            if projection is None or projection.state not in DISPATCHING_STATES:
                return projection

            now = self._clock.now()
            if now >= self._deadline(projection):
                await self._expire(request_id, "dispatch_timeout")
                return await self._engine.find(request_id)

            await self._time_out_offers(request_id, now)
            await self._advance(request_id)
            return await self._engine.find(request_id)

    async def tick(self) -> int:
        """
        Оценивает все заявки в поиске.

        Returns:
            Количество оценённых заявок
        """
        request_ids = [projection.id for projection in self._engine.dispatching_requests()]
        if request_ids:
            await asyncio.gather(*(self._evaluate_safely(request_id) for request_id in request_ids))
        return len(request_ids)

    async def _evaluate_safely(self, request_id: str) -> None:
        try:
            await self.evaluate(request_id)
        except DispatchError as e:
            await log_warning(
                f"Оценка заявки {request_id} прервана: {e.kind}: {e.message}",
                extra={"request_id": request_id},
            )
        except Exception as e:
            await log_error(
                f"Ошибка оценки заявки {request_id}: {e}",
                extra={"request_id": request_id},
                exc_info=True,
            )

    def _deadline(self, projection: ServiceRequest) -> datetime:
        return projection.created_at + self._dispatch_ttl

    # =========================================================================
    # ТАЙМЕРЫ
    # =========================================================================

    async def _time_out_offers(self, request_id: str, now: datetime) -> None:
        def decide(projection: ServiceRequest | None) -> list:
            if projection is None or projection.state not in DISPATCHING_STATES:
                return []
            return [
                OfferTimedOut(offer_id=offer.offer_id, mechanic_id=offer.mechanic_id)
                for offer in projection.pending_offers()
                if now >= offer.expires_at
            ]

        result = await self._engine.transition(request_id, Actor.SYSTEM, decide)
        for record in result.records:
            await log_info(
                f"Предложение механику {record.event.mechanic_id} истекло",
                type_msg=TypeMsg.INFO,
                extra={"request_id": request_id, "mechanic_id": record.event.mechanic_id, "seq": record.seq},
            )

    async def _expire(self, request_id: str, reason: str) -> None:
        def decide(projection: ServiceRequest | None) -> list:
            if projection is None or projection.state not in DISPATCHING_STATES:
                return []
            items: list = [RequestExpired(reason=reason)]
            items.extend(
                OfferWithdrawn(
                    offer_id=offer.offer_id,
                    mechanic_id=offer.mechanic_id,
                    reason="request_expired",
                )
                for offer in projection.pending_offers()
            )
            return items

        result = await self._engine.transition(request_id, Actor.SYSTEM, decide)
        if result.changed:
            await log_info(
                f"Заявка {request_id} истекла: {reason}",
                type_msg=TypeMsg.WARNING,
                extra={"request_id": request_id},
            )

    # =========================================================================
    # ВОЛНЫ
    # =========================================================================

    async def _advance(self, request_id: str) -> None:
        """Делает следующую волну, расширяет радиус или закрывает заявку."""
        async with self._engine.partition(request_id):
            while True:
                projection = await self._engine.find(request_id)
                if projection is None or projection.state not in DISPATCHING_STATES:
                    return
                if projection.pending_offers():
                    return
                if self._clock.now() >= self._deadline(projection):
                    await self._expire(request_id, "dispatch_timeout")
                    return

                plan = projection.current_plan
                if plan is not None and projection.current_wave < plan.last_wave:
                    await self._make_wave(projection, plan, projection.current_wave + 1)
                    continue

                step = len(projection.plans)
                if projection.target_mechanic_id is not None and step >= 1:
                    await self._expire(request_id, "direct_offer_unanswered")
                    return
                if step >= len(self._schedule):
                    await self._expire(request_id, "no_candidates")
                    return

                await self._plan(projection, step)

    async def _plan(self, projection: ServiceRequest, step: int) -> None:
        """Сохраняет ранжированный список кандидатов для шага радиуса."""
        radius_m = self._schedule[step]
        candidates, distances = await self._candidates(projection, radius_m)
        wave_size = wave_size_for(projection.priority, len(candidates), self._config.WAVE_SIZE)

        def decide(current: ServiceRequest | None) -> list:
            if current is None or current.state not in DISPATCHING_STATES:
                return []
            if len(current.plans) != step:
                return []
            return [
                DispatchPlanned(
                    step=step,
                    radius_m=radius_m,
                    candidates=candidates,
                    distances=distances,
                    wave_size=wave_size,
                )
            ]

        await self._engine.transition(projection.id, Actor.SYSTEM, decide)
        await log_info(
            f"План диспетчеризации: шаг {step}, радиус {radius_m} м, кандидатов {len(candidates)}",
            type_msg=TypeMsg.INFO,
            extra={"request_id": projection.id},
        )

    async def _candidates(
        self,
        projection: ServiceRequest,
        radius_m: int,
    ) -> tuple[list[str], dict[str, int]]:
        offered = projection.offered_mechanics

        target = projection.target_mechanic_id
        if target is not None:
            if target in offered:
                return [], {}
            distances: dict[str, int] = {}
            record = self._presence.snapshot(target, include_stale=True)
            if record is not None and record.position is not None:
                distances[target] = distance_m(projection.pickup.coordinates, record.position)
            return [target], distances

        nearby = await self._geo.nearest(
            projection.pickup.coordinates,
            radius_m,
            PresenceFilter(
                vehicle_type=projection.vehicle_type,
                skill=required_skill(projection.problem_type),
            ),
            limit=self._config.CANDIDATE_LIMIT,
        )
        selected = [
            item for item in nearby
            if item.mechanic_id not in offered
            and not self._governor.pair_active(projection.user_id, item.mechanic_id)
        ]
        return (
            [item.mechanic_id for item in selected],
            {item.mechanic_id: item.distance_m for item in selected},
        )

    async def _make_wave(self, projection: ServiceRequest, plan: DispatchPlan, wave: int) -> None:
        """Создаёт предложения волны и доставляет их механикам."""
        members = plan.wave_members(wave)
        expires_at = self._clock.now() + self._offer_ttl
        base_rank = (wave - plan.first_wave) * plan.wave_size

        def decide(current: ServiceRequest | None) -> list:
            if current is None or current.state not in DISPATCHING_STATES:
                return []
            if current.pending_offers() or current.current_wave >= wave:
                return []

            items: list = []
            if current.state == RequestState.OFFERED:
                items.append(RequestRequeued(reason="wave_exhausted"))
            for offset, mechanic_id in enumerate(members):
                offer_id = offer_id_for(current.id, mechanic_id, wave)
                if offer_id in current.offers:
                    continue
                items.append(
                    OfferMade(
                        offer_id=offer_id,
                        mechanic_id=mechanic_id,
                        wave=wave,
                        rank=base_rank + offset,
                        distance_m=plan.distances.get(mechanic_id),
                        expires_at=expires_at,
                    )
                )
            return items

        result = await self._engine.transition(projection.id, Actor.SYSTEM, decide)
        for record in result.records:
            if isinstance(record.event, OfferMade):
                await log_info(
                    f"Предложение механику {record.event.mechanic_id} (волна {wave})",
                    type_msg=TypeMsg.INFO,
                    extra={
                        "request_id": projection.id,
                        "mechanic_id": record.event.mechanic_id,
                        "offer_id": record.event.offer_id,
                        "seq": record.seq,
                    },
                )
                await self._deliver_offer(result.projection, record)

    async def _deliver_offer(self, projection: ServiceRequest, record: EventRecord) -> None:
        """Доставляет предложение; при неудаче предложение истекает досрочно."""
        if self._router is None:
            return

        event = record.event
        try:
            await self._router.deliver(
                mechanic_topic(event.mechanic_id),
                live_event_for_offer(projection, record),
                require_subscriber=self._config.OFFER_REQUIRES_ONLINE_SESSION,
            )
            return
        except Unavailable as e:
            await log_warning(
                f"Предложение механику {event.mechanic_id} не доставлено: {e.message}",
                extra={"request_id": projection.id, "mechanic_id": event.mechanic_id},
            )

        def decide(current: ServiceRequest | None) -> list:
            if current is None:
                return []
            offer = current.offers.get(event.offer_id)
            if offer is None or not offer.is_pending:
                return []
            return [OfferTimedOut(offer_id=offer.offer_id, mechanic_id=offer.mechanic_id, early=True)]

        await self._engine.transition(projection.id, Actor.SYSTEM, decide)

    # =========================================================================
    # ОТВЕТЫ МЕХАНИКОВ
    # =========================================================================

    def _pending_offer(self, projection: ServiceRequest, mechanic_id: str, now: datetime) -> Offer:
        """
        Проверяет, что у механика есть живое предложение по заявке.

        Raises:
            TerminalState, AuthorizationDenied, StatePrecondition
        """
        if projection.is_terminal:
            raise TerminalState(
                f"Заявка уже в терминальном состоянии {projection.state.value}",
                request_id=projection.id,
            )
        offer = projection.latest_offer_for(mechanic_id)
        if offer is None:
            raise AuthorizationDenied("Заявка не предлагалась механику", request_id=projection.id)
        if projection.state != RequestState.OFFERED:
            raise StatePrecondition(
                f"Заявка в состоянии {projection.state.value}, а не OFFERED",
                request_id=projection.id,
            )
        if not offer.is_pending:
            raise StatePrecondition(
                f"Предложение уже разрешено ({offer.status.value})",
                request_id=projection.id,
                offer_id=offer.offer_id,
            )
        if now >= offer.expires_at:
            raise StatePrecondition(
                "Срок предложения истёк",
                request_id=projection.id,
                offer_id=offer.offer_id,
            )
        return offer

    async def accept(self, principal: Principal, request_id: str) -> ServiceRequest:
        """
        Механик принимает предложение.

        Ёмкость резервируется до записи и освобождается, если запись не удалась.

        Raises:
            AuthorizationDenied, NotFound, TerminalState, StatePrecondition, CapacityExceeded
        """
        if principal.role != Role.MECHANIC:
            raise AuthorizationDenied("Принимать предложения может только механик")
        mechanic_id = principal.user_id

        async with self._engine.partition(request_id):
            projection = await self._engine.get(request_id)
            now = self._clock.now()
            offer = self._pending_offer(projection, mechanic_id, now)

            if not self._governor.may_accept(mechanic_id):
                await self._reject_for_capacity(request_id, offer)
                await self._advance(request_id)
                raise CapacityExceeded(
                    "Механик достиг лимита одновременных работ",
                    mechanic_id=mechanic_id,
                    request_id=request_id,
                )
            if self._governor.pair_active(projection.user_id, mechanic_id):
                raise CapacityExceeded(
                    "У пользователя уже есть активная работа с этим механиком",
                    mechanic_id=mechanic_id,
                    request_id=request_id,
                )

            def decide(current: ServiceRequest | None) -> list:
                if current is None:
                    return []
                accepted = self._pending_offer(current, mechanic_id, now)
                items: list = [OfferAccepted(offer_id=accepted.offer_id, mechanic_id=mechanic_id)]
                items.extend(
                    (Actor.SYSTEM, OfferWithdrawn(
                        offer_id=sibling.offer_id,
                        mechanic_id=sibling.mechanic_id,
                        reason="accepted_by_other",
                    ))
                    for sibling in current.pending_offers()
                    if sibling.offer_id != accepted.offer_id
                )
                return items

            await self._governor.reserve_mechanic(mechanic_id, projection.user_id)
            try:
                result = await self._engine.transition(request_id, Actor.MECHANIC, decide)
            except Exception:
                await self._governor.release_mechanic(mechanic_id, projection.user_id)
                raise

        await log_info(
            f"Механик {mechanic_id} принял заявку {request_id}",
            type_msg=TypeMsg.INFO,
            extra={"request_id": request_id, "mechanic_id": mechanic_id, "seq": result.projection.seq},
        )
        return result.projection

    async def _reject_for_capacity(self, request_id: str, offer: Offer) -> None:
        def decide(current: ServiceRequest | None) -> list:
            if current is None:
                return []
            pending = current.offers.get(offer.offer_id)
            if pending is None or not pending.is_pending:
                return []
            return [
                OfferRejected(
                    offer_id=offer.offer_id,
                    mechanic_id=offer.mechanic_id,
                    reason="capacity_exceeded",
                )
            ]

        await self._engine.transition(request_id, Actor.SYSTEM, decide)
        await log_warning(
            f"Механик {offer.mechanic_id} на пределе ёмкости, предложение отклонено",
            extra={"request_id": request_id, "mechanic_id": offer.mechanic_id},
        )

    async def reject(self, principal: Principal, request_id: str, reason: str | None = None) -> ServiceRequest:
        """
        Механик отклоняет предложение; диспетчер продвигает волну.

        Raises:
            AuthorizationDenied, NotFound, TerminalState, StatePrecondition
        """
        if principal.role != Role.MECHANIC:
            raise AuthorizationDenied("Отклонять предложения может только механик")
        mechanic_id = principal.user_id

        async with self._engine.partition(request_id):
            now = self._clock.now()

            def decide(current: ServiceRequest | None) -> list:
                if current is None:
                    return []
                offer = self._pending_offer(current, mechanic_id, now)
                return [OfferRejected(offer_id=offer.offer_id, mechanic_id=mechanic_id, reason=reason)]

            await self._engine.get(request_id)
            await self._engine.transition(request_id, Actor.MECHANIC, decide)
            await log_info(
                f"Механик {mechanic_id} отклонил заявку {request_id}",
                type_msg=TypeMsg.INFO,
                extra={"request_id": request_id, "mechanic_id": mechanic_id},
            )
            await self._advance(request_id)
            return await self._engine.get(request_id)

    def pending_offers_for(self, mechanic_id: str) -> list[tuple[ServiceRequest, Offer]]:
        """Живые предложения механика по всем заявкам в поиске."""
        now = self._clock.now()
        result: list[tuple[ServiceRequest, Offer]] = []
        for projection in self._engine.dispatching_requests():
            offer = projection.pending_offer_for(mechanic_id)
            if offer is not None and now < offer.expires_at:
                result.append((projection, offer))
        return sorted(result, key=lambda item: item[1].made_at)
