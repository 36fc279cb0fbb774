# src/services/realtime_ws/session_router.py
"""
Маршрутизатор живых сессий.

Топики:
- mechanic:{id}: входящие механика (предложения и их отзыв)
- request:{id}: комната заявки (статусы и позиция механика)
- user:{id}: входящие пользователя (уведомления по его заявкам)

Доставка at-least-once: каждое событие несёт seq заявки, клиенты
дедуплицируют по нему. У каждой сессии своя упорядоченная очередь,
которую разбирает одна задача-отправитель.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence
from uuid import uuid4

from src.common.clock import Clock
from src.common.constants import Role, TypeMsg
from src.common.errors import AuthorizationDenied, InvalidInput, NotFound, Unavailable
from src.common.logger import log_error, log_info, log_warning
from src.core.requests.state_machine import POSITION_STREAMING_STATES
from src.infra.event_store import EventStore
from src.shared.events.dispatch_events import (
    EventRecord,
    LiveEvent,
    OfferAccepted,
    OfferMade,
    OfferTimedOut,
    OfferWithdrawn,
    RequestCancelled,
    RequestCompleted,
    RequestCreated,
    RequestExpired,
    RequestFailed,
    RequestRequeued,
    RequestStatusChanged,
)
from src.shared.models.common import Principal
from src.shared.models.geo import GeoPoint
from src.shared.models.request import ServiceRequest

RequestLookup = Callable[[str], Awaitable[ServiceRequest | None]]

DEFAULT_QUEUE_SIZE = 1000

# RFC 6455: 1013 Try Again Later; клиент переподключается и подписывается с lastSeen
SLOW_CONSUMER_CLOSE_CODE = 1013


def mechanic_topic(mechanic_id: str) -> str:
    return f"mechanic:{mechanic_id}"


def room_topic(request_id: str) -> str:
    return f"request:{request_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def parse_topic(topic: str) -> tuple[str, str]:
    """
    Разбирает топик на (вид, id).

    Raises:
        InvalidInput: неизвестный формат
    """
    kind, _, ident = (topic or "").partition(":")
    if kind not in ("mechanic", "request", "user") or not ident:
        raise InvalidInput("Неизвестный топик", topic=topic)
    return kind, ident


# =============================================================================
# ОТОБРАЖЕНИЕ ЗАПИСЕЙ ЖУРНАЛА В ЖИВЫЕ СОБЫТИЯ
# =============================================================================

def _state_after(record: EventRecord) -> str | None:
    match record.event:
        case RequestCreated() | RequestRequeued():
            return "OPEN"
        case OfferAccepted():
            return "ACCEPTED"
        case RequestStatusChanged():
            return record.event.to_state.value
        case RequestFailed():
            return "FAILED"
    return None


def live_event_for_offer(projection: ServiceRequest, record: EventRecord) -> LiveEvent:
    """Живое событие OfferMade для входящих механика (со сводкой заявки)."""
    event = record.event
    return LiveEvent(
        request_id=record.request_id,
        seq=record.seq,
        type="OfferMade",
        payload={
            "offerId": event.offer_id,
            "mechanicId": event.mechanic_id,
            "wave": event.wave,
            "rank": event.rank,
            "distanceM": event.distance_m,
            "expiresAt": event.expires_at.isoformat(),
            "vehicleType": projection.vehicle_type.value,
            "problemType": projection.problem_type.value,
            "priority": projection.priority.value,
            "pickupLocation": projection.pickup.model_dump(mode="json", by_alias=True),
            "estimatedCost": projection.estimated_cost,
        },
        ts=record.ts,
    )


def live_events_for(projection: ServiceRequest, record: EventRecord) -> list[tuple[str, LiveEvent]]:
    """
    Живые события записи журнала с их топиками.

    DispatchPlanned, OfferRejected и RatingAttached не доставляются.
    """
    event = record.event
    room = room_topic(record.request_id)
    inbox = user_topic(projection.user_id)

    def live(type_: str, payload: dict[str, Any]) -> LiveEvent:
        return LiveEvent(request_id=record.request_id, seq=record.seq, type=type_, payload=payload, ts=record.ts)

    match event:
        case OfferMade():
            return [(mechanic_topic(event.mechanic_id), live_event_for_offer(projection, record))]
        case OfferWithdrawn() | OfferTimedOut():
            reason = event.reason if isinstance(event, OfferWithdrawn) else "timed_out"
            withdrawn = live("OfferWithdrawn", {
                "offerId": event.offer_id,
                "mechanicId": event.mechanic_id,
                "reason": reason,
            })
            return [(mechanic_topic(event.mechanic_id), withdrawn)]
        case RequestCreated() | OfferAccepted() | RequestRequeued() | RequestStatusChanged() | RequestFailed():
            payload: dict[str, Any] = {"state": _state_after(record), "event": record.type}
            if isinstance(event, (OfferAccepted, RequestStatusChanged)):
                payload["mechanicId"] = event.mechanic_id
            if isinstance(event, RequestStatusChanged):
                payload["fromState"] = event.from_state.value
            if isinstance(event, RequestFailed):
                payload["reason"] = event.reason
            status = live("RequestStatusChanged", payload)
            targets = [(room, status), (inbox, status)]
            if isinstance(event, OfferAccepted):
                targets.append((mechanic_topic(event.mechanic_id), status))
            return targets
        case RequestCancelled():
            cancelled = live("RequestCancelled", {
                "reason": event.reason,
                "cancelledBy": event.cancelled_by.value,
            })
            targets = [(room, cancelled), (inbox, cancelled)]
            if projection.mechanic_id:
                targets.append((mechanic_topic(projection.mechanic_id), cancelled))
            return targets
        case RequestCompleted():
            completed = live("RequestCompleted", {
                "mechanicId": event.mechanic_id,
                "actualCost": event.actual_cost,
            })
            return [(room, completed), (inbox, completed)]
        case RequestExpired():
            expired = live("RequestExpired", {"reason": event.reason})
            return [(room, expired), (inbox, expired)]
    return []


# =============================================================================
# СЕССИИ
# =============================================================================

class WireSocket(Protocol):
    """Транспорт сессии (WebSocket FastAPI или его заменитель)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass
class Session:
    """Подключение клиента: очередь, подписки, буферы переигрывания."""
    session_id: str
    principal: Principal
    websocket: WireSocket
    queue: asyncio.Queue
    connected_at: datetime
    topics: set[str] = field(default_factory=set)
    replaying: dict[str, list[LiveEvent]] = field(default_factory=dict)
    sender: asyncio.Task | None = None
    sent: int = 0

    def push(self, topic: str, event: LiveEvent) -> None:
        """Ставит событие в очередь или в буфер, если по топику идёт переигрывание."""
        buffer = self.replaying.get(topic)
        if buffer is not None:
            buffer.append(event)
            return
        self.queue.put_nowait(event.to_wire())


class SessionRouter:
    """
    Маршрутизатор сессий.

    Поддерживает:
    - Подключение/отключение сессий
    - Подписку с переигрыванием журнала по last_seen
    - Рассылку записей журнала по топикам
    - Трансляцию позиции механика с ограничением частоты
    """

    def __init__(
        self,
        store: EventStore,
        clock: Clock | None = None,
        position_min_interval: float | None = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        if position_min_interval is None:
            from src.config import settings
            position_min_interval = settings.dispatch.POSITION_BROADCAST_MIN_INTERVAL

        self._store = store
        self._clock = clock or Clock()
        self._position_interval = position_min_interval
        self._queue_size = queue_size
        self._request_lookup: RequestLookup | None = None

        self._sessions: dict[str, Session] = {}
        self._subscribers: dict[str, set[str]] = {}
        self._last_position: dict[str, datetime] = {}

        self._total_sessions = 0
        self._total_delivered = 0
        self._positions_dropped = 0
        self._slow_dropped = 0

    def bind_requests(self, lookup: RequestLookup) -> None:
        """Источник проекций заявок (проверка доступа к комнатам, маршрутизация)."""
        self._request_lookup = lookup

    # =========================================================================
    # ПОДКЛЮЧЕНИЯ
    # =========================================================================

    async def connect(self, websocket: WireSocket, principal: Principal) -> Session:
        """Регистрирует сессию и запускает её отправителя."""
        session = Session(
            session_id=uuid4().hex,
            principal=principal,
            websocket=websocket,
            queue=asyncio.Queue(maxsize=self._queue_size),
            connected_at=self._clock.now(),
        )
        session.sender = asyncio.create_task(self._sender(session))
        self._sessions[session.session_id] = session
        self._total_sessions += 1

        await log_info(
            f"Сессия {session.session_id} подключена ({principal.role.value} {principal.user_id})",
            type_msg=TypeMsg.DEBUG,
            extra={"user_id": principal.user_id},
        )
        return session

    async def disconnect(self, session: Session) -> None:
        """Отписывает сессию от всех топиков и останавливает отправителя."""
        for topic in list(session.topics):
            self._remove_subscriber(session, topic)
        self._sessions.pop(session.session_id, None)

        sender = session.sender
        if sender is not None and sender is not asyncio.current_task() and not sender.done():
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass

    async def _sender(self, session: Session) -> None:
        while True:
            message = await session.queue.get()
            try:
                await session.websocket.send_json(message)
                session.sent += 1
                self._total_delivered += 1
            except Exception as e:
                await log_warning(
                    f"Сессия {session.session_id} разорвана при отправке: {e}",
                    extra={"user_id": session.principal.user_id},
                )
                session.queue.task_done()
                await self.disconnect(session)
                return
            session.queue.task_done()

    async def send_control(self, session: Session, message: dict[str, Any]) -> None:
        """Служебный кадр сессии (подтверждения, ошибки) в общей очереди."""
        if session.session_id not in self._sessions:
            return
        try:
            session.queue.put_nowait(message)
        except asyncio.QueueFull:
            await self._drop_slow(session)

    async def _drop_slow(self, session: Session) -> None:
        """
        Закрывает сессию, чья очередь переполнена.

        Пропуск события нарушил бы порядок seq, поэтому сессия закрывается
        целиком: клиент переподключается и добирает пропущенное по lastSeen.
        """
        if session.session_id not in self._sessions:
            return
        self._slow_dropped += 1

        await log_warning(
            f"Очередь сессии {session.session_id} переполнена, сессия закрыта",
            extra={"user_id": session.principal.user_id},
        )
        await self.disconnect(session)
        try:
            await session.websocket.close(code=SLOW_CONSUMER_CLOSE_CODE)
        except Exception as e:
            await log_warning(f"Не удалось закрыть сессию {session.session_id}: {e}")

    # =========================================================================
    # ПОДПИСКИ
    # =========================================================================

    async def _authorize(self, principal: Principal, topic: str) -> None:
        kind, ident = parse_topic(topic)

        if kind == "user":
            if principal.is_admin or (principal.role == Role.USER and principal.user_id == ident):
                return
            raise AuthorizationDenied("Можно подписаться только на свои входящие", topic=topic)

        if kind == "mechanic":
            if principal.is_admin or (principal.role == Role.MECHANIC and principal.user_id == ident):
                return
            raise AuthorizationDenied("Можно подписаться только на свои входящие", topic=topic)

        projection = await self._lookup(ident)
        if projection is None:
            raise NotFound("Заявка не найдена", request_id=ident)
        allowed = (
            principal.is_admin
            or (principal.role == Role.USER and projection.user_id == principal.user_id)
            or (principal.role == Role.MECHANIC and projection.mechanic_id == principal.user_id)
        )
        if not allowed:
            raise AuthorizationDenied("Нет доступа к комнате заявки", topic=topic)

    async def _lookup(self, request_id: str) -> ServiceRequest | None:
        if self._request_lookup is None:
            return None
        return await self._request_lookup(request_id)

    async def subscribe(
        self,
        session: Session,
        topic: str,
        last_seen: Mapping[str, int] | None = None,
    ) -> int:
        """
        Подписывает сессию на топик и переигрывает пропущенные события.

        Для комнаты заявки last_seen по умолчанию {request_id: 0}, то есть вся история.
        Живые события, пришедшие во время переигрывания, буферизуются и
        досылаются после него без повторов.

        Returns:
            Количество переигранных событий

        Raises:
            InvalidInput, AuthorizationDenied, NotFound
            Unavailable: очередь сессии переполнилась, сессия закрыта
        """
        await self._authorize(session.principal, topic)
        kind, ident = parse_topic(topic)

        since: dict[str, int] = dict(last_seen or {})
        if kind == "request" and not since:
            since = {ident: 0}

        session.replaying[topic] = []
        session.topics.add(topic)
        self._subscribers.setdefault(topic, set()).add(session.session_id)

        replayed = 0
        high_water = dict(since)
        try:
            try:
                for request_id, seq in since.items():
                    projection = await self._lookup(request_id)
                    if projection is None:
                        continue
                    async for record in self._store.read(request_id, seq):
                        for target, event in live_events_for(projection, record):
                            if target == topic:
                                session.queue.put_nowait(event.to_wire())
                                replayed += 1
                        high_water[request_id] = record.seq
            finally:
                buffered = session.replaying.pop(topic, [])

            for event in buffered:
                if event.type != "MechanicPositionUpdate" and event.seq <= high_water.get(event.request_id, -1):
                    continue
                session.queue.put_nowait(event.to_wire())
        except asyncio.QueueFull:
            await self._drop_slow(session)
            raise Unavailable("Сессия не успевает принимать события", topic=topic)

        await log_info(
            f"Сессия {session.session_id} подписана на {topic} (переиграно {replayed})",
            type_msg=TypeMsg.DEBUG,
            extra={"user_id": session.principal.user_id},
        )
        return replayed

    async def unsubscribe(self, session: Session, topic: str) -> None:
        self._remove_subscriber(session, topic)

    def _remove_subscriber(self, session: Session, topic: str) -> None:
        session.topics.discard(topic)
        session.replaying.pop(topic, None)
        subscribers = self._subscribers.get(topic)
        if subscribers is not None:
            subscribers.discard(session.session_id)
            if not subscribers:
                del self._subscribers[topic]

    # =========================================================================
    # РАССЫЛКА
    # =========================================================================

    async def deliver(self, topic: str, event: LiveEvent, require_subscriber: bool = False) -> int:
        """
        Доставляет событие подписчикам топика.

        Returns:
            Количество сессий, получивших событие

        Raises:
            Unavailable: require_subscriber=True, а доставить некому
        """
        delivered = 0
        for session_id in list(self._subscribers.get(topic, ())):
            session = self._sessions.get(session_id)
            if session is None:
                continue
            try:
                session.push(topic, event)
                delivered += 1
            except asyncio.QueueFull:
                await self._drop_slow(session)

        if require_subscriber and delivered == 0:
            raise Unavailable("Нет активной сессии получателя", topic=topic)
        return delivered

    async def publish_records(self, projection: ServiceRequest, records: Sequence[EventRecord]) -> int:
        """
        Рассылает записи журнала по топикам.

        OfferMade сюда не входит: его доставляет диспетчер, которому нужен
        результат доставки.
        """
        delivered = 0
        for record in records:
            if isinstance(record.event, OfferMade):
                continue
            for topic, event in live_events_for(projection, record):
                try:
                    delivered += await self.deliver(topic, event)
                except Unavailable as e:
                    await log_error(f"Ошибка доставки {event.type} в {topic}: {e}")
        return delivered

    async def publish_position(
        self,
        mechanic_id: str,
        position: GeoPoint,
        at: datetime,
        requests: Sequence[ServiceRequest],
        eta: Mapping[str, float] | None = None,
    ) -> bool:
        """
        Транслирует позицию механика в комнаты его заявок (ACCEPTED, EN_ROUTE).

        Не чаще одного раза за POSITION_BROADCAST_MIN_INTERVAL; лишние
        обновления отбрасываются. Позиция в журнал не пишется.

        Args:
            eta: Оценка прибытия от клиента механика (etaMinutes, distanceKm, speedKph)

        Returns:
            True если позиция разослана
        """
        streaming = [r for r in requests if r.state in POSITION_STREAMING_STATES and r.mechanic_id == mechanic_id]
        if not streaming:
            return False

        now = self._clock.now()
        last = self._last_position.get(mechanic_id)
        if last is not None and (now - last).total_seconds() < self._position_interval:
            self._positions_dropped += 1
            return False
        self._last_position[mechanic_id] = now

        payload: dict[str, Any] = {
            "mechanicId": mechanic_id,
            "coordinates": position.to_list(),
            "recordedAt": at.isoformat(),
        }
        if eta:
            payload.update({key: value for key, value in eta.items() if value is not None})

        for projection in streaming:
            await self.deliver(
                room_topic(projection.id),
                LiveEvent(
                    request_id=projection.id,
                    seq=projection.seq,
                    type="MechanicPositionUpdate",
                    payload=payload,
                    ts=now,
                ),
            )
        return True

    def prune(self) -> int:
        """
        Забывает отметки трансляции позиций старше интервала.

        Returns:
            Количество удалённых отметок
        """
        now = self._clock.now()
        stale = [
            mechanic_id
            for mechanic_id, last in self._last_position.items()
            if (now - last).total_seconds() >= self._position_interval
        ]
        for mechanic_id in stale:
            del self._last_position[mechanic_id]
        return len(stale)

    # =========================================================================
    # СТАТИСТИКА
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_sessions": len(self._sessions),
            "total_topics": len(self._subscribers),
            "total_sessions_ever": self._total_sessions,
            "total_messages_sent": self._total_delivered,
            "positions_dropped": self._positions_dropped,
            "positions_tracked": len(self._last_position),
            "slow_sessions_dropped": self._slow_dropped,
        }

    async def close(self) -> None:
        """Отключает все сессии."""
        for session in list(self._sessions.values()):
            await self.disconnect(session)
