# src/core/requests/engine.py
"""
Движок жизненного цикла заявок.

Все изменения заявки проходят через transition(): партиция заявки удерживается,
проекция загружается, решение (decide) проверяет права и предусловия и возвращает
события, которые дописываются в журнал через compare-and-append. После записи
выполняются побочные эффекты: освобождение ёмкости, рассылка в живой канал,
публикация расчёта, обновление рейтинга механика.
"""

from __future__ import annotations

import asyncio
from collections import Counter, OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, AsyncIterator, Callable, Sequence, Union
from uuid import uuid4

from src.common.clock import Clock
from src.common.constants import (
    ASSIGNED_STATES,
    BASE_SERVICE_COST,
    DISPATCHING_STATES,
    VEHICLE_COST_MULTIPLIERS,
    Actor,
    RequestState,
    Role,
    TypeMsg,
)
from src.common.errors import (
    AuthorizationDenied,
    CapacityExceeded,
    DispatchError,
    EventStoreUnavailable,
    InvalidInput,
    NotFound,
    StaleConflict,
    StatePrecondition,
    TerminalState,
    Unavailable,
)
from src.common.logger import log_error, log_info, log_warning
from src.core.governor.service import CapacityGovernor
from src.core.presence.index import PresenceIndex
from src.core.requests.projection import fold
from src.core.requests.repository import RequestRepository
from src.core.requests.state_machine import (
    MECHANIC_DRIVEN_STATES,
    POSITION_STREAMING_STATES,
    RequestStateMachine,
)
from src.infra.event_bus import EventBus, EventTypes
from src.infra.event_store import EventStore
from src.shared.events.dispatch_events import (
    DispatchEventBase,
    EventRecord,
    OfferAccepted,
    OfferWithdrawn,
    RatingAttached,
    RequestCancelled,
    RequestCompleted,
    RequestCreated,
    RequestFailed,
    RequestStatusChanged,
)
from src.shared.events.integration_events import RequestClosed, RequestSettlementDue
from src.shared.models.common import Principal
from src.shared.models.geo import validate_coordinates
from src.shared.models.request import ServiceRequest, ServiceRequestCreate

if TYPE_CHECKING:
    from src.core.dispatch.dispatcher import Dispatcher
    from src.services.realtime_ws.session_router import SessionRouter

DecisionItem = Union[DispatchEventBase, tuple[Actor, DispatchEventBase]]
Decide = Callable[[ServiceRequest | None], Sequence[DecisionItem]]

MAX_CANCEL_REASON = 200
MAX_RATING_COMMENT = 300

_CLOSED_EVENT_TYPES = {
    RequestState.CANCELLED: EventTypes.REQUEST_CANCELLED,
    RequestState.EXPIRED: EventTypes.REQUEST_EXPIRED,
    RequestState.FAILED: EventTypes.REQUEST_FAILED,
}


@dataclass
class TransitionResult:
    """Результат перехода: новая проекция и дописанные записи."""
    projection: ServiceRequest | None
    records: list[EventRecord] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.records)


def actor_for(principal: Principal) -> Actor:
    return Actor(principal.role.value)


def estimate_cost(payload: ServiceRequestCreate) -> float:
    """Оценка стоимости: переданная клиентом или база × множитель транспорта."""
    if payload.estimated_cost is not None:
        return payload.estimated_cost
    return BASE_SERVICE_COST * VEHICLE_COST_MULTIPLIERS.get(payload.vehicle_type, 1.0)


# =============================================================================
# ПАРТИЦИИ
# =============================================================================

class _PartitionLock:
    """Реентерабельная блокировка партиции с владельцем-задачей asyncio."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None
        self._depth = 0

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def acquire(self) -> None:
        task = asyncio.current_task()
        if self._owner is task and task is not None:
            self._depth += 1
            return
        await self._lock.acquire()
        self._owner = task
        self._depth = 1

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
            self._lock.release()


class PartitionLocks:
    """Блокировки партиций по request_id."""

    def __init__(self) -> None:
        self._locks: dict[str, _PartitionLock] = {}
        self._finished: set[str] = set()

    @asynccontextmanager
    async def hold(self, request_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(request_id)
        if lock is None:
            lock = self._locks[request_id] = _PartitionLock()
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            if request_id in self._finished and not lock.locked:
                self._locks.pop(request_id, None)
                self._finished.discard(request_id)

    def discard(self, request_id: str) -> None:
        """Помечает партицию завершённой: блокировка забывается после освобождения."""
        self._finished.add(request_id)

    def __len__(self) -> int:
        return len(self._locks)


# =============================================================================
# ДВИЖОК
# =============================================================================

class RequestLifecycleEngine:
    """
    Движок жизненного цикла заявок.

    Проекции кэшируются в памяти, но источником истины остаётся журнал:
    при конфликте версий проекция перечитывается из журнала.

    Незавершённые заявки держатся в памяти целиком вместе с индексами
    (в поиске, по механику). Завершённые попадают в ограниченный кэш
    и при вытеснении читаются из журнала заново.
    """

    def __init__(
        self,
        store: EventStore,
        governor: CapacityGovernor,
        presence: PresenceIndex,
        clock: Clock | None = None,
        repository: RequestRepository | None = None,
        event_bus: EventBus | None = None,
        retry_backoff_ms: Sequence[int] | None = None,
        rating_grace_seconds: float | None = None,
        closed_cache_size: int | None = None,
    ) -> None:
        from src.config import settings

        self._store = store
        self._governor = governor
        self._presence = presence
        self._clock = clock or Clock()
        self._repository = repository
        self._event_bus = event_bus
        self._backoff_ms = list(
            retry_backoff_ms if retry_backoff_ms is not None else settings.dispatch.STALE_RETRY_BACKOFF_MS
        )
        self._rating_grace = timedelta(
            seconds=rating_grace_seconds
            if rating_grace_seconds is not None
            else settings.dispatch.RATING_GRACE_PERIOD
        )

        self._active: dict[str, ServiceRequest] = {}
        self._dispatching: set[str] = set()
        self._by_mechanic: dict[str, set[str]] = {}
        self._closed: OrderedDict[str, ServiceRequest] = OrderedDict()
        self._closed_cache_size = (
            closed_cache_size if closed_cache_size is not None else settings.dispatch.CLOSED_CACHE_SIZE
        )
        self._mechanic_jobs: dict[str, Counter[str]] = {}
        self._locks = PartitionLocks()
        self.router: SessionRouter | None = None
        self.dispatcher: Dispatcher | None = None

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def store(self) -> EventStore:
        return self._store

    def partition(self, request_id: str):
        """Удерживает партицию заявки (реентерабельно)."""
        return self._locks.hold(request_id)

    # =========================================================================
    # АВТОРИТЕТНЫЙ ПЕРЕХОД
    # =========================================================================

    async def transition(self, request_id: str, actor: Actor, decide: Decide) -> TransitionResult:
        """
        Выполняет переход заявки.

        Args:
            request_id: ID заявки
            actor: Инициатор событий (если decide не указал иного)
            decide: Чистая функция проекции → события; может бросить доменную ошибку

        Raises:
            DispatchError: отказ decide, StaleConflict после повторов,
                Unavailable при недоступном журнале
        """
        async with self._locks.hold(request_id):
            attempt = 0
            while True:
                projection = await self._load(request_id, refresh=attempt > 0)
                items = self._normalize(actor, decide(projection))
                if not items:
                    return TransitionResult(projection)

                expected_seq = projection.seq if projection is not None else 0
                try:
                    records = await self._store.append_many(request_id, expected_seq, items)
                    break
                except StaleConflict:
                    if attempt >= len(self._backoff_ms):
                        await log_warning(
                            f"Конфликт версий заявки {request_id} не разрешён после повторов",
                            extra={"request_id": request_id, "seq": expected_seq},
                        )
                        raise
                except EventStoreUnavailable as e:
                    if attempt >= len(self._backoff_ms):
                        await self._fail_best_effort(request_id, f"event_store_unavailable: {e}")
                        raise Unavailable("Журнал событий недоступен", request_id=request_id) from e

                await asyncio.sleep(self._backoff_ms[attempt] / 1000)
                attempt += 1

            after = fold(records, projection)
            self._remember(after)

            for record in records:
                await log_info(
                    f"Заявка {request_id}: {record.type} (state={after.state.value})",
                    type_msg=TypeMsg.INFO,
                    extra={"request_id": request_id, "seq": record.seq, "actor": record.actor.value},
                )

            await self._after_commit(projection, after, records)
            return TransitionResult(after, records)

    @staticmethod
    def _normalize(actor: Actor, items: Sequence[DecisionItem]) -> list[tuple[Actor, DispatchEventBase]]:
        return [item if isinstance(item, tuple) else (actor, item) for item in items]

    async def _load(self, request_id: str, refresh: bool = False) -> ServiceRequest | None:
        cached = self._cached(request_id)
        if cached is not None and not refresh:
            if cached.is_terminal:
                self._closed.move_to_end(request_id)
            return cached

        since = cached.seq if cached is not None else 0
        records = await self._store.read_all(request_id, since)
        projection = fold(records, cached)
        if projection is not None:
            self._remember(projection)
        return projection

    # =========================================================================
    # КЭШ ПРОЕКЦИЙ
    # =========================================================================

    def _cached(self, request_id: str) -> ServiceRequest | None:
        projection = self._active.get(request_id)
        if projection is None:
            projection = self._closed.get(request_id)
        return projection

    def _remember(self, projection: ServiceRequest) -> None:
        """Кладёт проекцию в кэш и обновляет индексы."""
        request_id = projection.id
        self._forget_active(request_id)

        if projection.is_terminal:
            self._closed[request_id] = projection
            self._closed.move_to_end(request_id)
            while len(self._closed) > self._closed_cache_size:
                self._closed.popitem(last=False)
            return

        self._active[request_id] = projection
        if projection.state in DISPATCHING_STATES:
            self._dispatching.add(request_id)
        if projection.mechanic_id and projection.is_assigned:
            self._by_mechanic.setdefault(projection.mechanic_id, set()).add(request_id)

    def _forget_active(self, request_id: str) -> None:
        previous = self._active.pop(request_id, None)
        if previous is None:
            return
        self._dispatching.discard(request_id)
        if previous.mechanic_id:
            assigned = self._by_mechanic.get(previous.mechanic_id)
            if assigned is not None:
                assigned.discard(request_id)
                if not assigned:
                    del self._by_mechanic[previous.mechanic_id]

    def _count_jobs(self, records: Sequence[EventRecord]) -> None:
        for record in records:
            event = record.event
            if isinstance(event, OfferAccepted):
                self._mechanic_jobs.setdefault(event.mechanic_id, Counter())["total"] += 1
            elif isinstance(event, RequestCompleted):
                self._mechanic_jobs.setdefault(event.mechanic_id, Counter())["completed"] += 1

    async def _fail_best_effort(self, request_id: str, reason: str) -> None:
        """Попытка перевести заявку в FAILED после исчерпания повторов."""
        try:
            projection = await self._load(request_id, refresh=True)
            if projection is None or projection.is_terminal:
                return
            records = await self._store.append_many(
                request_id,
                projection.seq,
                [(Actor.SYSTEM, RequestFailed(reason=reason))],
            )
        except (DispatchError, EventStoreUnavailable) as e:
            await log_error(
                f"Не удалось перевести заявку {request_id} в FAILED: {e}",
                extra={"request_id": request_id},
            )
            return

        after = fold(records, projection)
        self._remember(after)
        await self._after_commit(projection, after, records)

    # =========================================================================
    # ПОБОЧНЫЕ ЭФФЕКТЫ
    # =========================================================================

    async def _after_commit(
        self,
        before: ServiceRequest | None,
        after: ServiceRequest,
        records: list[EventRecord],
    ) -> None:
        self._count_jobs(records)

        if after.is_terminal and (before is None or not before.is_terminal):
            await self._release_capacity(before, after)

        if self._repository is not None:
            await self._repository.save(after)

        if self.router is not None:
            try:
                await self.router.publish_records(after, records)
            except Exception as e:
                await log_error(
                    f"Ошибка рассылки событий заявки {after.id}: {e}",
                    extra={"request_id": after.id},
                )

        for record in records:
            if isinstance(record.event, RatingAttached):
                await self._presence.apply_rating(record.event.mechanic_id, record.event.score)

        if after.is_terminal and (before is None or not before.is_terminal):
            await self._publish_closure(after)
            self._locks.discard(after.id)

    async def _release_capacity(self, before: ServiceRequest | None, after: ServiceRequest) -> None:
        self._governor.release_request(after.user_id)
        if before is not None and before.mechanic_id and before.state in ASSIGNED_STATES:
            await self._governor.release_mechanic(before.mechanic_id, after.user_id)

    async def _publish_closure(self, projection: ServiceRequest) -> None:
        if self._event_bus is None:
            return

        if projection.state == RequestState.COMPLETED:
            event = RequestSettlementDue(
                request_id=projection.id,
                user_id=projection.user_id,
                mechanic_id=projection.mechanic_id or "",
                actual_cost=projection.actual_cost or 0.0,
                estimated_cost=projection.estimated_cost,
                completed_at=projection.updated_at.isoformat(),
            )
        else:
            reason = projection.failure_reason
            if projection.cancellation is not None:
                reason = projection.cancellation.reason
            event = RequestClosed(
                event_type=_CLOSED_EVENT_TYPES[projection.state],
                request_id=projection.id,
                user_id=projection.user_id,
                mechanic_id=projection.mechanic_id,
                reason=reason,
            )

        await self._event_bus.publish(event)

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def find(self, request_id: str) -> ServiceRequest | None:
        """Проекция заявки или None."""
        return await self._load(request_id)

    async def get(self, request_id: str) -> ServiceRequest:
        """
        Raises:
            NotFound: заявки нет
        """
        projection = await self._load(request_id)
        if projection is None:
            raise NotFound("Заявка не найдена", request_id=request_id)
        return projection

    async def get_for(self, principal: Principal, request_id: str) -> ServiceRequest:
        """
        Заявка, видимая участнику: заявителю, назначенному механику,
        механику с предложением или администратору.

        Raises:
            NotFound, AuthorizationDenied
        """
        projection = await self.get(request_id)
        if not self.can_view(principal, projection):
            raise AuthorizationDenied("Нет доступа к заявке", request_id=request_id)
        return projection

    @staticmethod
    def can_view(principal: Principal, projection: ServiceRequest) -> bool:
        if principal.is_admin:
            return True
        if principal.role == Role.USER:
            return projection.user_id == principal.user_id
        return (
            projection.mechanic_id == principal.user_id
            or principal.user_id in projection.offered_mechanics
        )

    async def list_for(self, principal: Principal) -> list[ServiceRequest]:
        """Заявки участника, новые первыми."""
        if self._repository is not None:
            if principal.is_admin:
                return await self._repository.list_recent()
            if principal.role == Role.MECHANIC:
                return await self._repository.list_for_mechanic(principal.user_id)
            return await self._repository.list_for_user(principal.user_id)

        items: list[ServiceRequest] = []
        for request_id in await self._store.request_ids():
            projection = self._cached(request_id) or fold(await self._store.read_all(request_id))
            if projection is None:
                continue
            if principal.is_admin:
                items.append(projection)
            elif principal.role == Role.MECHANIC:
                if projection.mechanic_id == principal.user_id:
                    items.append(projection)
            elif projection.user_id == principal.user_id:
                items.append(projection)
        return sorted(items, key=lambda p: p.created_at, reverse=True)

    def active_requests_for_mechanic(self, mechanic_id: str) -> list[ServiceRequest]:
        """Незавершённые заявки, назначенные механику."""
        return [self._active[request_id] for request_id in self._by_mechanic.get(mechanic_id, ())]

    def streaming_requests_for_mechanic(self, mechanic_id: str) -> list[ServiceRequest]:
        """Заявки механика, в комнаты которых транслируется его позиция."""
        return [
            p for p in self.active_requests_for_mechanic(mechanic_id)
            if p.state in POSITION_STREAMING_STATES
        ]

    def dispatching_requests(self) -> list[ServiceRequest]:
        """Заявки в поиске механика (OPEN/OFFERED), старые первыми."""
        items = [self._active[request_id] for request_id in self._dispatching]
        return sorted(items, key=lambda p: p.created_at)

    def mechanic_stats(self, mechanic_id: str) -> dict[str, int]:
        """
        Статистика работ механика: принятые, выполненные, текущие
        и доля выполненных в процентах.
        """
        jobs = self._mechanic_jobs.get(mechanic_id, Counter())
        total = jobs["total"]
        completed = jobs["completed"]
        return {
            "total_jobs": total,
            "completed_jobs": completed,
            "active_jobs": len(self._by_mechanic.get(mechanic_id, ())),
            "completion_rate": round(completed / total * 100) if total else 0,
        }

    def get_stats(self) -> dict[str, int]:
        by_state: dict[str, int] = {}
        for projection in [*self._active.values(), *self._closed.values()]:
            by_state[projection.state.value] = by_state.get(projection.state.value, 0) + 1
        return {
            "total": len(self._active) + len(self._closed),
            "active": len(self._active),
            "dispatching": len(self._dispatching),
            "partitions_locked": len(self._locks),
            **by_state,
        }

    # =========================================================================
    # ОПЕРАЦИИ
    # =========================================================================

    async def create_request(self, principal: Principal, payload: ServiceRequestCreate) -> ServiceRequest:
        """
        Создаёт заявку в OPEN и будит диспетчера.

        Raises:
            AuthorizationDenied: создавать заявки может только пользователь
            InvalidInput: некорректное место подачи
            NotFound: механик прямой заявки неизвестен
            CapacityExceeded: лимит активных заявок или пара занята
        """
        if principal.role != Role.USER:
            raise AuthorizationDenied("Создавать заявки может только пользователь")

        coordinates = payload.pickup_location.coordinates
        validate_coordinates(coordinates.longitude, coordinates.latitude)

        target = payload.mechanic_id
        if target is not None:
            if self._presence.snapshot(target, include_stale=True) is None:
                raise NotFound("Механик не найден", mechanic_id=target)
            if self._governor.pair_active(principal.user_id, target):
                raise CapacityExceeded(
                    "У пользователя уже есть активная работа с этим механиком",
                    mechanic_id=target,
                )

        request_id = uuid4().hex
        created = RequestCreated(
            request_id=request_id,
            user_id=principal.user_id,
            vehicle_type=payload.vehicle_type,
            problem_type=payload.problem_type,
            description=payload.description,
            pickup=payload.pickup_location,
            priority=payload.priority,
            estimated_cost=estimate_cost(payload),
            target_mechanic_id=target,
        )

        def decide(projection: ServiceRequest | None) -> list[DecisionItem]:
            if projection is not None:
                raise StatePrecondition("Заявка уже существует", request_id=request_id)
            return [created]

        self._governor.reserve_request(principal.user_id)
        try:
            await self.transition(request_id, Actor.USER, decide)
        except Exception:
            self._governor.release_request(principal.user_id)
            raise

        if self.dispatcher is not None:
            try:
                await self.dispatcher.on_request_created(request_id)
            except DispatchError as e:
                await log_error(
                    f"Ошибка первичной диспетчеризации заявки {request_id}: {e}",
                    extra={"request_id": request_id},
                )

        return await self.get(request_id)

    async def update_status(
        self,
        principal: Principal,
        request_id: str,
        status: RequestState,
        actual_cost: float | None = None,
    ) -> ServiceRequest:
        """
        Назначенный механик продвигает заявку: EN_ROUTE → ARRIVED → WORKING → COMPLETED.

        Raises:
            InvalidInput, NotFound, TerminalState, AuthorizationDenied, StatePrecondition
        """
        if status not in MECHANIC_DRIVEN_STATES:
            raise InvalidInput(
                "Недопустимый статус",
                status=status.value,
                allowed=[s.value for s in MECHANIC_DRIVEN_STATES],
            )
        if actual_cost is not None and actual_cost < 0:
            raise InvalidInput("Стоимость не может быть отрицательной", actual_cost=actual_cost)

        def decide(projection: ServiceRequest | None) -> list[DecisionItem]:
            if projection is None:
                raise NotFound("Заявка не найдена", request_id=request_id)
            if projection.is_terminal:
                raise TerminalState(
                    f"Заявка уже в терминальном состоянии {projection.state.value}",
                    request_id=request_id,
                )
            if principal.role != Role.MECHANIC or projection.mechanic_id != principal.user_id:
                raise AuthorizationDenied(
                    "Статус меняет только назначенный механик",
                    request_id=request_id,
                )
            RequestStateMachine.ensure_transition(projection.state, status)

            if status == RequestState.COMPLETED:
                if actual_cost is None:
                    raise StatePrecondition("Для завершения нужна фактическая стоимость")
                return [RequestCompleted(mechanic_id=principal.user_id, actual_cost=actual_cost)]

            return [
                RequestStatusChanged(
                    from_state=projection.state,
                    to_state=status,
                    mechanic_id=principal.user_id,
                )
            ]

        result = await self.transition(request_id, Actor.MECHANIC, decide)
        return result.projection

    async def cancel(self, principal: Principal, request_id: str, reason: str) -> ServiceRequest:
        """
        Отменяет незавершённую заявку; ожидающие предложения отзываются той же записью.

        Raises:
            InvalidInput, NotFound, TerminalState, AuthorizationDenied
        """
        reason = (reason or "").strip()
        if not reason:
            raise InvalidInput("Нужна причина отмены")
        if len(reason) > MAX_CANCEL_REASON:
            raise InvalidInput("Причина отмены слишком длинная", max_length=MAX_CANCEL_REASON)

        actor = actor_for(principal)

        def decide(projection: ServiceRequest | None) -> list[DecisionItem]:
            if projection is None:
                raise NotFound("Заявка не найдена", request_id=request_id)
            if projection.is_terminal:
                raise TerminalState(
                    f"Заявка уже в терминальном состоянии {projection.state.value}",
                    request_id=request_id,
                )
            allowed = (
                principal.is_admin
                or (principal.role == Role.USER and projection.user_id == principal.user_id)
                or (principal.role == Role.MECHANIC and projection.mechanic_id == principal.user_id)
            )
            if not allowed:
                raise AuthorizationDenied("Нет права отменить заявку", request_id=request_id)
            RequestStateMachine.ensure_transition(projection.state, RequestState.CANCELLED)

            items: list[DecisionItem] = [
                RequestCancelled(reason=reason, cancelled_by=actor, by_id=principal.user_id)
            ]
            items.extend(
                (Actor.SYSTEM, OfferWithdrawn(
                    offer_id=offer.offer_id,
                    mechanic_id=offer.mechanic_id,
                    reason="request_cancelled",
                ))
                for offer in projection.pending_offers()
            )
            return items

        result = await self.transition(request_id, actor, decide)
        return result.projection

    async def attach_rating(
        self,
        principal: Principal,
        request_id: str,
        score: int,
        comment: str | None = None,
    ) -> ServiceRequest:
        """
        Пользователь оценивает выполненную работу (однократно, в пределах окна).

        Raises:
            InvalidInput, NotFound, AuthorizationDenied, StatePrecondition, TerminalState
        """
        if not 1 <= score <= 5:
            raise InvalidInput("Оценка должна быть от 1 до 5", score=score)
        if comment is not None and len(comment) > MAX_RATING_COMMENT:
            raise InvalidInput("Комментарий слишком длинный", max_length=MAX_RATING_COMMENT)

        now = self._clock.now()

        def decide(projection: ServiceRequest | None) -> list[DecisionItem]:
            if projection is None:
                raise NotFound("Заявка не найдена", request_id=request_id)
            if principal.role != Role.USER or projection.user_id != principal.user_id:
                raise AuthorizationDenied("Оценить может только заявитель", request_id=request_id)
            if projection.state != RequestState.COMPLETED:
                raise StatePrecondition("Оценить можно только выполненную заявку", request_id=request_id)
            if projection.rating is not None:
                raise StatePrecondition("Заявка уже оценена", request_id=request_id)
            completed_at = projection.entered_at(RequestState.COMPLETED) or projection.updated_at
            if now - completed_at > self._rating_grace:
                raise TerminalState("Срок для оценки истёк", request_id=request_id)
            return [RatingAttached(score=score, comment=comment, mechanic_id=projection.mechanic_id)]

        result = await self.transition(request_id, Actor.USER, decide)
        return result.projection

    async def fail(self, request_id: str, reason: str) -> ServiceRequest:
        """
        Система переводит незавершённую заявку в FAILED.

        Raises:
            NotFound, TerminalState
        """
        def decide(projection: ServiceRequest | None) -> list[DecisionItem]:
            if projection is None:
                raise NotFound("Заявка не найдена", request_id=request_id)
            RequestStateMachine.ensure_transition(projection.state, RequestState.FAILED)
            return [RequestFailed(reason=reason)]

        result = await self.transition(request_id, Actor.SYSTEM, decide)
        return result.projection

    # =========================================================================
    # ВОССТАНОВЛЕНИЕ
    # =========================================================================

    async def recover(self) -> int:
        """
        Сворачивает партиции журнала, держит в памяти только незавершённые
        заявки и восстанавливает счётчики регулятора и статистику механиков.

        Returns:
            Количество восстановленных незавершённых заявок
        """
        self._active.clear()
        self._dispatching.clear()
        self._by_mechanic.clear()
        self._closed.clear()
        self._mechanic_jobs.clear()

        closed = 0
        for request_id in await self._store.request_ids():
            projection = fold(await self._store.read_all(request_id))
            if projection is None:
                continue
            if projection.mechanic_id:
                jobs = self._mechanic_jobs.setdefault(projection.mechanic_id, Counter())
                jobs["total"] += 1
                if projection.state == RequestState.COMPLETED:
                    jobs["completed"] += 1
            if projection.is_terminal:
                closed += 1
                continue
            self._remember(projection)

        await self._governor.seed(self._active.values())

        await log_info(
            f"Восстановлено заявок: {len(self._active)} "
            f"(в поиске: {len(self._dispatching)}, завершённых пропущено: {closed})",
            type_msg=TypeMsg.INFO,
        )
        return len(self._active)
