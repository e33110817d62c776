from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from uuid import uuid4

BUSY_TIMEOUT_SECONDS = 5.0


class MemoryStore:
    """SQLite database shared by the event log and the session table.

    Each unit of work opens its own connection through :meth:`connect`, so
    blocking calls can run on worker threads without sharing transaction
    state. The connection opened here creates the schema and, for
    ``:memory:`` stores, keeps the shared in-memory database alive.
    """

    def __init__(self, db_path: str):
        if db_path != ":memory:":
            self._db_path = Path(db_path)
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._target = str(self._db_path)
        else:
            self._db_path = None
            self._target = f"file:trainer-agent-{uuid4().hex}?mode=memory&cache=shared"
        self._closed = False
        self._conn = self._open()
        self._initialize_schema()

    @property
    def db_path(self) -> str:
        return str(self._db_path) if self._db_path is not None else ":memory:"

    def close(self) -> None:
        self._closed = True
        self._conn.close()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a fresh connection; commit on success, roll back on error."""
        if self._closed:
            raise sqlite3.ProgrammingError("Cannot operate on a closed database.")
        connection = self._open()
        try:
            yield connection
            connection.commit()
        except BaseException:
            connection.rollback()
            raise
        finally:
            connection.close()

    def _open(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._target,
            check_same_thread=False,
            timeout=BUSY_TIMEOUT_SECONDS,
            uri=self._db_path is None,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                context_start_sequence INTEGER NOT NULL DEFAULT 0,
                total_tokens INTEGER NOT NULL DEFAULT 0,
                cached_tokens INTEGER NOT NULL DEFAULT 0,
                total_cost_cents REAL NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'completed', 'error')),
                metadata_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id),
                sequence_number INTEGER NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN (
                    'user_message',
                    'llm_request',
                    'llm_response',
                    'tool_call',
                    'tool_result',
                    'knowledge',
                    'artifact',
                    'error'
                )),
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                duration_ms INTEGER NULL,
                model_id TEXT NULL,
                UNIQUE(session_id, sequence_number)
            );

            CREATE TRIGGER IF NOT EXISTS trg_events_immutable_update
            BEFORE UPDATE ON events
            BEGIN
                SELECT RAISE(ABORT, 'events are immutable');
            END;

            CREATE TRIGGER IF NOT EXISTS trg_events_immutable_delete
            BEFORE DELETE ON events
            BEGIN
                SELECT RAISE(ABORT, 'events are immutable');
            END;

            CREATE INDEX IF NOT EXISTS idx_sessions_owner_updated
                ON sessions(owner_id, updated_at);
            CREATE INDEX IF NOT EXISTS idx_sessions_status
                ON sessions(status);
            CREATE INDEX IF NOT EXISTS idx_events_session_kind
                ON events(session_id, sequence_number, kind);
            """
        )
        self._conn.commit()
