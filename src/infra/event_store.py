# src/infra/event_store.py
"""
Журнал событий заявок (append-only, партиционирован по request_id).

Запись идёт через compare-and-append: вызывающий передаёт последнюю известную
последовательность (expected_seq); если журнал ушёл вперёд — StaleConflict.
Серверная метка времени строго монотонна в пределах партиции.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import AsyncIterator, Sequence

import asyncpg

from src.common.clock import Clock
from src.common.constants import Actor, TypeMsg
from src.common.errors import EventStoreUnavailable, StaleConflict
from src.common.logger import log_error, log_info
from src.infra.database import DatabaseManager
from src.shared.events.dispatch_events import (
    DispatchEventBase,
    EventRecord,
    parse_event,
)

_TICK = timedelta(microseconds=1)

AppendItem = tuple[Actor, DispatchEventBase]


class EventStore(ABC):
    """Абстрактный журнал событий."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or Clock()

    async def append(
        self,
        request_id: str,
        expected_seq: int,
        event: DispatchEventBase,
        actor: Actor = Actor.SYSTEM,
    ) -> EventRecord:
        """
        Дописывает одно событие.

        Returns:
            Запись с присвоенной последовательностью

        Raises:
            StaleConflict: expected_seq не совпал с последней последовательностью
        """
        records = await self.append_many(request_id, expected_seq, [(actor, event)])
        return records[0]

    @abstractmethod
    async def append_many(
        self,
        request_id: str,
        expected_seq: int,
        items: Sequence[AppendItem],
    ) -> list[EventRecord]:
        """Атомарно дописывает пачку событий (все или ни одного)."""

    @abstractmethod
    def read(self, request_id: str, since_seq: int = 0) -> AsyncIterator[EventRecord]:
        """Итерирует записи с seq > since_seq в порядке добавления."""

    @abstractmethod
    async def last_seq(self, request_id: str) -> int:
        """Последняя последовательность партиции (0, если журнал пуст)."""

    @abstractmethod
    async def request_ids(self) -> list[str]:
        """Идентификаторы всех партиций."""

    async def read_all(self, request_id: str, since_seq: int = 0) -> list[EventRecord]:
        """Читает записи в список."""
        return [record async for record in self.read(request_id, since_seq)]

    def _stamp(
        self,
        request_id: str,
        expected_seq: int,
        last_ts: datetime | None,
        items: Sequence[AppendItem],
    ) -> list[EventRecord]:
        """Присваивает последовательности и монотонные метки времени."""
        if not items:
            raise ValueError("Пустая пачка событий")

        now = self._clock.now()
        records: list[EventRecord] = []
        for offset, (actor, event) in enumerate(items, start=1):
            ts = now if last_ts is None or now > last_ts else last_ts + _TICK
            records.append(
                EventRecord(
                    seq=expected_seq + offset,
                    request_id=request_id,
                    actor=actor,
                    ts=ts,
                    event=event,
                )
            )
            last_ts = ts
        return records


class InMemoryEventStore(EventStore):
    """Журнал в памяти процесса (разработка, тесты)."""

    def __init__(self, clock: Clock | None = None) -> None:
        super().__init__(clock)
        self._logs: dict[str, list[EventRecord]] = {}

    async def append_many(
        self,
        request_id: str,
        expected_seq: int,
        items: Sequence[AppendItem],
    ) -> list[EventRecord]:
        log = self._logs.setdefault(request_id, [])
        current = log[-1].seq if log else 0
        if current != expected_seq:
            raise StaleConflict(
                "Журнал заявки изменился",
                request_id=request_id,
                expected_seq=expected_seq,
                actual_seq=current,
            )

        records = self._stamp(request_id, expected_seq, log[-1].ts if log else None, items)
        log.extend(records)
        return records

    async def read(self, request_id: str, since_seq: int = 0) -> AsyncIterator[EventRecord]:
        for record in list(self._logs.get(request_id, [])):
            if record.seq > since_seq:
                yield record

    async def last_seq(self, request_id: str) -> int:
        log = self._logs.get(request_id)
        return log[-1].seq if log else 0

    async def request_ids(self) -> list[str]:
        return [request_id for request_id, log in self._logs.items() if log]


class PostgresEventStore(EventStore):
    """
    Журнал в PostgreSQL (таблица request_events, PK (request_id, seq)).

    Гонка двух писателей решается уникальным ключом: проигравший получает
    UniqueViolationError, который превращается в StaleConflict.
    """

    def __init__(self, db: DatabaseManager, clock: Clock | None = None) -> None:
        super().__init__(clock)
        self._db = db

    async def append_many(
        self,
        request_id: str,
        expected_seq: int,
        items: Sequence[AppendItem],
    ) -> list[EventRecord]:
        try:
            async with self._db.transaction() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT seq, ts FROM request_events
                    WHERE request_id = $1
                    ORDER BY seq DESC
                    LIMIT 1
                    """,
                    request_id,
                )
                current = row["seq"] if row else 0
                if current != expected_seq:
                    raise StaleConflict(
                        "Журнал заявки изменился",
                        request_id=request_id,
                        expected_seq=expected_seq,
                        actual_seq=current,
                    )

                records = self._stamp(request_id, expected_seq, row["ts"] if row else None, items)
                await conn.executemany(
                    """
                    INSERT INTO request_events (request_id, seq, actor, type, payload, ts)
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                    """,
                    [
                        (
                            r.request_id,
                            r.seq,
                            r.actor.value,
                            r.type,
                            r.event.model_dump_json(),
                            r.ts,
                        )
                        for r in records
                    ],
                )
        except asyncpg.UniqueViolationError as e:
            await log_info(
                f"Конкурентная запись в журнал заявки {request_id}",
                type_msg=TypeMsg.DEBUG,
                extra={"request_id": request_id, "seq": expected_seq},
            )
            raise StaleConflict(
                "Журнал заявки изменился",
                request_id=request_id,
                expected_seq=expected_seq,
            ) from e
        except (asyncpg.PostgresConnectionError, asyncpg.InterfaceError, OSError) as e:
            await log_error(
                f"Журнал событий недоступен: {e}",
                extra={"request_id": request_id},
            )
            raise EventStoreUnavailable(str(e)) from e

        return records

    async def read(self, request_id: str, since_seq: int = 0) -> AsyncIterator[EventRecord]:
        rows = await self._db.fetch(
            """
            SELECT request_id, seq, actor, payload, ts
            FROM request_events
            WHERE request_id = $1 AND seq > $2
            ORDER BY seq
            """,
            request_id,
            since_seq,
        )
        for row in rows:
            yield EventRecord(
                seq=row["seq"],
                request_id=row["request_id"],
                actor=Actor(row["actor"]),
                ts=row["ts"],
                event=parse_event(row["payload"]),
            )

    async def last_seq(self, request_id: str) -> int:
        value = await self._db.fetchval(
            "SELECT COALESCE(MAX(seq), 0) FROM request_events WHERE request_id = $1",
            request_id,
        )
        return int(value or 0)

    async def request_ids(self) -> list[str]:
        rows = await self._db.fetch("SELECT DISTINCT request_id FROM request_events")
        return [row["request_id"] for row in rows]


__all__ = [
    "EventStore",
    "InMemoryEventStore",
    "PostgresEventStore",
]
