# src/core/requests/state_machine.py
"""
Машина состояний заявки: допустимые переходы.
Инициатор каждого перехода проверяется в decide-функциях сервиса заявок.
"""

from __future__ import annotations

from src.common.constants import TERMINAL_STATES, RequestState
from src.common.errors import StatePrecondition, TerminalState

# Состояния, которые выставляет назначенный механик
MECHANIC_DRIVEN_STATES = (
    RequestState.EN_ROUTE,
    RequestState.ARRIVED,
    RequestState.WORKING,
    RequestState.COMPLETED,
)

# Состояния, в которых позиция механика транслируется в комнату заявки
POSITION_STREAMING_STATES = frozenset({RequestState.ACCEPTED, RequestState.EN_ROUTE})


class RequestStateMachine:
    ALLOWED_TRANSITIONS: dict[RequestState, list[RequestState]] = {
        RequestState.OPEN: [
            RequestState.OFFERED,
            RequestState.EXPIRED,
            RequestState.CANCELLED,
            RequestState.FAILED,
        ],
        RequestState.OFFERED: [
            RequestState.ACCEPTED,
            RequestState.OPEN,
            RequestState.EXPIRED,
            RequestState.CANCELLED,
            RequestState.FAILED,
        ],
        RequestState.ACCEPTED: [RequestState.EN_ROUTE, RequestState.CANCELLED, RequestState.FAILED],
        RequestState.EN_ROUTE: [RequestState.ARRIVED, RequestState.CANCELLED, RequestState.FAILED],
        RequestState.ARRIVED: [RequestState.WORKING, RequestState.CANCELLED, RequestState.FAILED],
        RequestState.WORKING: [RequestState.COMPLETED, RequestState.CANCELLED, RequestState.FAILED],
        RequestState.COMPLETED: [],
        RequestState.CANCELLED: [],
        RequestState.EXPIRED: [],
        RequestState.FAILED: [],
    }

    @staticmethod
    def can_transition(current: RequestState, new: RequestState) -> bool:
        return new in RequestStateMachine.ALLOWED_TRANSITIONS.get(current, [])

    @staticmethod
    def ensure_transition(current: RequestState, new: RequestState) -> None:
        """
        Raises:
            TerminalState: заявка уже в терминальном состоянии
            StatePrecondition: переход недопустим
        """
        if current in TERMINAL_STATES:
            raise TerminalState(
                f"Заявка уже в терминальном состоянии {current.value}",
                state=current.value,
            )
        if not RequestStateMachine.can_transition(current, new):
            raise StatePrecondition(
                f"Переход {current.value} → {new.value} недопустим",
                state=current.value,
                target=new.value,
            )

