# src/core/dispatch/offers.py
"""
Правила волн и предложений: идентификаторы, размер волны, шаги радиуса.
"""

from __future__ import annotations

from uuid import UUID, uuid5

from src.common.constants import Priority

# Пространство имён для детерминированных идентификаторов предложений
OFFER_NAMESPACE = UUID("6f1c1d3e-8a53-4b8e-9d55-0c2f7b8e4a10")


def offer_id_for(request_id: str, mechanic_id: str, wave: int) -> str:
    """Один и тот же (заявка, механик, волна) всегда даёт один и тот же ID."""
    return str(uuid5(OFFER_NAMESPACE, f"{request_id}:{mechanic_id}:{wave}"))


def wave_size_for(priority: Priority, candidates: int, default: int) -> int:
    """
    Размер волны: emergency — все кандидаты сразу, low — по одному.
    """
    if priority == Priority.EMERGENCY:
        return max(candidates, 1)
    if priority == Priority.LOW:
        return 1
    return max(default, 1)


def radius_schedule(default_radius_m: int, max_radius_m: int) -> list[int]:
    """
    Шаги радиуса поиска: базовый, удвоенный, максимальный.

    Последний шаг всегда равен максимуму; повторы отбрасываются.
    """
    steps = [
        min(default_radius_m, max_radius_m),
        min(default_radius_m * 2, max_radius_m),
        max_radius_m,
    ]
    schedule: list[int] = []
    for radius in steps:
        if radius not in schedule:
            schedule.append(radius)
    return schedule
