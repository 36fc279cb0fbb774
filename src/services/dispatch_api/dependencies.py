# src/services/dispatch_api/dependencies.py
"""
Зависимости FastAPI для REST API диспетчеризации.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, Request

from src.common.constants import Role
from src.common.errors import AuthorizationDenied
from src.core.runtime import DispatchRuntime
from src.shared.models.common import Principal


def resolve_principal(user_id: str | None, role: str | None) -> Principal:
    """
    Собирает участника из идентификатора и роли, переданных внешним провайдером.

    Raises:
        AuthorizationDenied: нет идентификатора или неизвестная роль
    """
    if not user_id or not role:
        raise AuthorizationDenied("Требуется аутентификация")
    try:
        parsed = Role(role.lower())
    except ValueError:
        raise AuthorizationDenied("Неизвестная роль", role=role) from None
    return Principal(user_id=user_id, role=parsed)


async def get_principal(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
    x_user_role: Annotated[str | None, Header(alias="X-User-Role")] = None,
) -> Principal:
    return resolve_principal(x_user_id, x_user_role)


async def get_mechanic(principal: Annotated[Principal, Depends(get_principal)]) -> Principal:
    if principal.role != Role.MECHANIC:
        raise AuthorizationDenied("Операция доступна только механику")
    return principal


async def get_admin(principal: Annotated[Principal, Depends(get_principal)]) -> Principal:
    if not principal.is_admin:
        raise AuthorizationDenied("Операция доступна только администратору")
    return principal


def get_runtime(request: Request) -> DispatchRuntime:
    """Ядро, созданное при старте приложения."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Ядро диспетчеризации не инициализировано")
    return runtime


CurrentPrincipal = Annotated[Principal, Depends(get_principal)]
CurrentMechanic = Annotated[Principal, Depends(get_mechanic)]
CurrentAdmin = Annotated[Principal, Depends(get_admin)]
Runtime = Annotated[DispatchRuntime, Depends(get_runtime)]
