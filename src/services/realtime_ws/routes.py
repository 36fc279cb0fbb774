# src/services/realtime_ws/routes.py
"""
WebSocket endpoint живого канала.

Подключение: /ws, участник из заголовков X-User-Id / X-User-Role
или из query-параметров user_id / role.

Входящие сообщения:
- {"action": "subscribe", "topic": "request:xxx", "lastSeen": {"xxx": 12}}
- {"action": "unsubscribe", "topic": "request:xxx"}
- {"action": "location", "coordinates": [lon, lat], "etaMinutes": 7, "distanceKm": 2.5, "speedKph": 30}
  (только механик; поля оценки прибытия необязательны)
- {"action": "ping"}

Ответы: subscribed, unsubscribed, pong, error {error_code, message}.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from src.common.constants import Role, TypeMsg
from src.common.errors import AuthorizationDenied, DispatchError, InvalidInput
from src.common.logger import log_error, log_info
from src.services.dispatch_api.dependencies import resolve_principal
from src.services.dispatch_api.schemas import ArrivalEstimate
from src.services.realtime_ws.session_router import Session
from src.shared.models.geo import GeoPoint

router = APIRouter()


def _parse_last_seen(raw: Any) -> dict[str, int] | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise InvalidInput("lastSeen должен быть объектом {requestId: seq}")
    last_seen: dict[str, int] = {}
    for request_id, seq in raw.items():
        if not isinstance(seq, int) or isinstance(seq, bool) or seq < 0:
            raise InvalidInput("seq в lastSeen должен быть неотрицательным целым", request_id=request_id)
        last_seen[str(request_id)] = seq
    return last_seen


def _parse_coordinates(raw: Any) -> GeoPoint:
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise InvalidInput("coordinates должны быть парой [longitude, latitude]")
    longitude, latitude = raw
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (longitude, latitude)):
        raise InvalidInput("coordinates должны быть числами")
    return GeoPoint.of(float(longitude), float(latitude))


def _parse_eta(data: dict[str, Any]) -> dict[str, float]:
    try:
        estimate = ArrivalEstimate.model_validate(data)
    except ValidationError as e:
        raise InvalidInput("Некорректная оценка прибытия", errors=e.error_count()) from e
    return estimate.to_payload()


def _require_topic(data: dict[str, Any]) -> str:
    topic = data.get("topic")
    if not isinstance(topic, str) or not topic:
        raise InvalidInput("Не указан topic")
    return topic


@router.websocket("/ws")
async def live_channel(websocket: WebSocket) -> None:
    """Сессия живого канала."""
    try:
        principal = resolve_principal(
            websocket.headers.get("x-user-id") or websocket.query_params.get("user_id"),
            websocket.headers.get("x-user-role") or websocket.query_params.get("role"),
        )
    except AuthorizationDenied:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    runtime = websocket.app.state.runtime
    await websocket.accept()
    session = await runtime.router.connect(websocket, principal)

    try:
        while True:
            data = await websocket.receive_json()
            await _handle_client_message(runtime, session, data)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        await log_error(f"Ошибка сессии {session.session_id}: {e}", exc_info=True)
    finally:
        await runtime.router.disconnect(session)
        await log_info(
            f"Сессия {session.session_id} закрыта",
            type_msg=TypeMsg.DEBUG,
            extra={"user_id": principal.user_id},
        )


async def _handle_client_message(runtime, session: Session, data: Any) -> None:
    """Обработать сообщение от клиента; доменные ошибки уходят кадром error."""
    live = runtime.router
    try:
        if not isinstance(data, dict):
            raise InvalidInput("Сообщение должно быть JSON-объектом")

        match data.get("action"):
            case "subscribe":
                topic = _require_topic(data)
                replayed = await live.subscribe(session, topic, _parse_last_seen(data.get("lastSeen")))
                await live.send_control(session, {"type": "subscribed", "topic": topic, "replayed": replayed})
            case "unsubscribe":
                topic = _require_topic(data)
                await live.unsubscribe(session, topic)
                await live.send_control(session, {"type": "unsubscribed", "topic": topic})
            case "location":
                if session.principal.role != Role.MECHANIC:
                    raise AuthorizationDenied("Позицию передаёт только механик")
                await runtime.heartbeat(
                    session.principal.user_id,
                    _parse_coordinates(data.get("coordinates")),
                    eta=_parse_eta(data),
                )
            case "ping":
                await live.send_control(session, {"type": "pong"})
            case other:
                raise InvalidInput("Неизвестное действие", action=other)
    except DispatchError as e:
        await live.send_control(session, {"type": "error", "error_code": e.kind, "message": e.message})
