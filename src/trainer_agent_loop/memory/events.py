from __future__ import annotations

import asyncio
import json
import random
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from uuid import uuid4

from loguru import logger

from trainer_agent_loop.memory.models import EventKind, EventRecord
from trainer_agent_loop.memory.store import MemoryStore

MAX_APPEND_ATTEMPTS = 5


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class EventStoreError(Exception):
    """Base class for event log failures."""


class EventStoreUnavailableError(EventStoreError):
    """The backing database could not be read or written."""


class SequenceConflictError(EventStoreError):
    """Sequence allocation kept colliding with concurrent writers."""


class UnknownSessionError(EventStoreError):
    """An append referenced a session that does not exist."""


class EventStore:
    """Append-only, per-session ordered event log.

    Sequence numbers start at 1 and are allocated as ``max + 1``. Two writers
    racing for the same number are resolved by the ``(session_id,
    sequence_number)`` unique constraint: the loser rolls back, sleeps for a
    short random interval and reads the new maximum.

    Database work runs on worker threads with one connection per call, so a
    writer waiting on the SQLite lock never stalls the event loop.
    """

    def __init__(
        self,
        store: MemoryStore,
        *,
        max_attempts: int = MAX_APPEND_ATTEMPTS,
        max_backoff_seconds: float = 0.05,
    ):
        self._store = store
        self._max_attempts = max(1, max_attempts)
        self._max_backoff_seconds = max(0.0, max_backoff_seconds)

    async def append(
        self,
        session_id: str,
        kind: EventKind | str,
        payload: dict,
        *,
        duration_ms: int | None = None,
        model_id: str | None = None,
    ) -> EventRecord:
        kind = EventKind(kind)
        payload_json = json.dumps(payload, ensure_ascii=True, default=str)
        last_error: sqlite3.IntegrityError | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                return await asyncio.to_thread(
                    self._append_once, session_id, kind, payload_json, duration_ms, model_id
                )
            except sqlite3.IntegrityError as ex:
                if "UNIQUE" not in str(ex).upper():
                    raise UnknownSessionError(f"Cannot append to unknown session: {session_id}") from ex
                last_error = ex
                logger.debug(
                    f"Sequence conflict on session {session_id[:8]} "
                    f"(attempt {attempt}/{self._max_attempts})"
                )
                await asyncio.sleep(random.uniform(0, self._max_backoff_seconds))
            except sqlite3.Error as ex:
                raise EventStoreUnavailableError(f"Event store unavailable: {ex}") from ex

        raise SequenceConflictError(
            f"Could not allocate a sequence number for session {session_id} "
            f"after {self._max_attempts} attempts"
        ) from last_error

    async def read(
        self,
        session_id: str,
        kinds: Iterable[EventKind | str] | None = None,
        *,
        from_sequence: int = 0,
    ) -> list[EventRecord]:
        query = "SELECT * FROM events WHERE session_id = ? AND sequence_number >= ?"
        params: list = [session_id, from_sequence]
        if kinds is not None:
            kind_values = [EventKind(k).value for k in kinds]
            if not kind_values:
                return []
            query += f" AND kind IN ({', '.join('?' for _ in kind_values)})"
            params.extend(kind_values)
        query += " ORDER BY sequence_number ASC"
        return await self._select(query, tuple(params))

    async def timeline(self, session_id: str) -> list[EventRecord]:
        return await self.read(session_id)

    async def latest(self, session_id: str, *, limit: int = 20) -> list[EventRecord]:
        return await self._select(
            """
            SELECT * FROM (
                SELECT * FROM events
                WHERE session_id = ?
                ORDER BY sequence_number DESC
                LIMIT ?
            )
            ORDER BY sequence_number ASC
            """,
            (session_id, max(1, limit)),
        )

    async def max_sequence(self, session_id: str) -> int:
        def _max() -> int:
            with self._store.connect() as connection:
                return self._next_sequence(connection, session_id) - 1

        try:
            return await asyncio.to_thread(_max)
        except sqlite3.Error as ex:
            raise EventStoreUnavailableError(f"Event store unavailable: {ex}") from ex

    async def _select(self, query: str, params: tuple) -> list[EventRecord]:
        def _fetch() -> list[sqlite3.Row]:
            with self._store.connect() as connection:
                return connection.execute(query, params).fetchall()

        try:
            rows = await asyncio.to_thread(_fetch)
        except sqlite3.Error as ex:
            raise EventStoreUnavailableError(f"Event store unavailable: {ex}") from ex
        return [_row_to_event(row) for row in rows]

    def _append_once(
        self,
        session_id: str,
        kind: EventKind,
        payload_json: str,
        duration_ms: int | None,
        model_id: str | None,
    ) -> EventRecord:
        """Read the current maximum and insert at ``max + 1`` on one connection.

        Runs on a worker thread. The write lock is taken before the read, so
        writers going through this method never pick the same number; one
        that allocated elsewhere surfaces as a unique-constraint
        ``IntegrityError``.
        """
        with self._store.connect() as connection:
            connection.execute("BEGIN IMMEDIATE")
            record = EventRecord(
                id=str(uuid4()),
                session_id=session_id,
                sequence_number=self._next_sequence(connection, session_id),
                kind=kind.value,
                payload_json=payload_json,
                created_at=utc_now(),
                duration_ms=duration_ms,
                model_id=model_id,
            )
            connection.execute(
                """
                INSERT INTO events (
                    id, session_id, sequence_number, kind, payload_json, created_at, duration_ms, model_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.session_id,
                    record.sequence_number,
                    record.kind,
                    record.payload_json,
                    record.created_at,
                    record.duration_ms,
                    record.model_id,
                ),
            )
            connection.execute(
                "UPDATE sessions SET updated_at = ? WHERE id = ?",
                (record.created_at, record.session_id),
            )
        return record

    def _next_sequence(self, connection: sqlite3.Connection, session_id: str) -> int:
        rows = connection.execute(
            "SELECT COALESCE(MAX(sequence_number), 0) AS max_seq FROM events WHERE session_id = ?",
            (session_id,),
        ).fetchall()
        return int(rows[0]["max_seq"]) + 1


def _row_to_event(row: sqlite3.Row) -> EventRecord:
    return EventRecord(
        id=row["id"],
        session_id=row["session_id"],
        sequence_number=int(row["sequence_number"]),
        kind=row["kind"],
        payload_json=row["payload_json"],
        created_at=row["created_at"],
        duration_ms=row["duration_ms"],
        model_id=row["model_id"],
    )
