# src/core/requests/repository.py
"""
Репозиторий материализованной проекции заявок (таблица service_requests).

Проекция не является источником истины: её всегда можно пересобрать из журнала.
Запись идёт upsert'ом с условием по seq, чтобы запоздалое сохранение
не затёрло более свежую версию.
"""

from __future__ import annotations

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.infra.database import DatabaseManager
from src.shared.models.request import ServiceRequest


class RequestRepository:
    """Репозиторий проекций заявок."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Инициализация репозитория.

        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    async def save(self, projection: ServiceRequest) -> bool:
        """
        Сохраняет проекцию заявки.

        Returns:
            True при успехе
        """
        try:
            await self._db.execute(
                """
                INSERT INTO service_requests (
                    id, user_id, mechanic_id, state, priority, vehicle_type,
                    problem_type, seq, data, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11)
                ON CONFLICT (id) DO UPDATE SET
                    mechanic_id = EXCLUDED.mechanic_id,
                    state = EXCLUDED.state,
                    seq = EXCLUDED.seq,
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
                WHERE service_requests.seq < EXCLUDED.seq
                """,
                projection.id,
                projection.user_id,
                projection.mechanic_id,
                projection.state.value,
                projection.priority.value,
                projection.vehicle_type.value,
                projection.problem_type.value,
                projection.seq,
                projection.model_dump_json(),
                projection.created_at,
                projection.updated_at,
            )
            await log_info(
                f"Проекция заявки {projection.id} сохранена (seq={projection.seq})",
                type_msg=TypeMsg.DEBUG,
                extra={"request_id": projection.id, "seq": projection.seq},
            )
            return True
        except Exception as e:
            await log_error(
                f"Ошибка сохранения проекции заявки {projection.id}: {e}",
                extra={"request_id": projection.id},
            )
            return False

    async def get_by_id(self, request_id: str) -> ServiceRequest | None:
        """Получает проекцию по ID."""
        row = await self._db.fetchrow(
            "SELECT data FROM service_requests WHERE id = $1",
            request_id,
        )
        if row is None:
            return None
        return ServiceRequest.model_validate_json(row["data"])

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[ServiceRequest]:
        """Заявки пользователя, новые первыми."""
        rows = await self._db.fetch(
            """
            SELECT data FROM service_requests
            WHERE user_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            user_id,
            limit,
        )
        return [ServiceRequest.model_validate_json(row["data"]) for row in rows]

    async def list_for_mechanic(self, mechanic_id: str, limit: int = 50) -> list[ServiceRequest]:
        """Заявки, назначенные механику, новые первыми."""
        rows = await self._db.fetch(
            """
            SELECT data FROM service_requests
            WHERE mechanic_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            mechanic_id,
            limit,
        )
        return [ServiceRequest.model_validate_json(row["data"]) for row in rows]

    async def list_recent(self, limit: int = 50) -> list[ServiceRequest]:
        """Последние заявки (для администратора)."""
        rows = await self._db.fetch(
            "SELECT data FROM service_requests ORDER BY created_at DESC LIMIT $1",
            limit,
        )
        return [ServiceRequest.model_validate_json(row["data"]) for row in rows]
