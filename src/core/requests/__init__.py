# src/core/requests/__init__.py
"""
Домен заявок: машина состояний, проекция журнала, движок жизненного цикла.
"""

from src.core.requests.engine import RequestLifecycleEngine, TransitionResult
from src.core.requests.projection import apply, fold
from src.core.requests.repository import RequestRepository
from src.core.requests.state_machine import RequestStateMachine

__all__ = [
    "RequestLifecycleEngine",
    "RequestRepository",
    "RequestStateMachine",
    "TransitionResult",
    "apply",
    "fold",
]
