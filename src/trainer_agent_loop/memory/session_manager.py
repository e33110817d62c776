from __future__ import annotations

import json
import sqlite3
from uuid import uuid4

from loguru import logger

from trainer_agent_loop.memory.events import EventStoreUnavailableError, utc_now
from trainer_agent_loop.memory.models import EventKind, SessionRecord, SessionStatus
from trainer_agent_loop.memory.store import MemoryStore

MAX_SESSION_LIST_LIMIT = 50


class SessionNotFoundError(Exception):
    """The session does not exist or belongs to another owner."""


class SessionManager:
    """Owner-scoped session lifecycle on top of the ``sessions`` table.

    Every read path filters by ``owner_id`` when one is given, so a caller can
    never observe another caller's sessions. Usage aggregates are recomputed
    from ``llm_response`` events in :meth:`end_session`.

    Methods are blocking and open their own connection; coroutines call them
    through ``asyncio.to_thread``.
    """

    def __init__(self, store: MemoryStore):
        self._store = store

    def create_session(
        self,
        owner_id: str,
        session_id: str | None = None,
        *,
        metadata: dict | None = None,
    ) -> SessionRecord:
        sid = session_id or str(uuid4())
        now = utc_now()
        try:
            with self._store.connect() as connection:
                connection.execute(
                    """
                    INSERT INTO sessions (id, owner_id, created_at, updated_at, status, metadata_json)
                    VALUES (?, ?, ?, ?, 'active', ?)
                    """,
                    (sid, owner_id, now, now, json.dumps(metadata or {}, ensure_ascii=True)),
                )
        except sqlite3.Error as ex:
            raise EventStoreUnavailableError(f"Could not create session: {ex}") from ex
        logger.info(f"[{sid[:8]}] Session created for owner {owner_id}")
        return self.get_session(sid, owner_id)

    def get_session(self, session_id: str, owner_id: str | None = None) -> SessionRecord:
        query = "SELECT * FROM sessions WHERE id = ?"
        params: tuple = (session_id,)
        if owner_id is not None:
            query += " AND owner_id = ?"
            params = (session_id, owner_id)
        with self._store.connect() as connection:
            row = connection.execute(query + " LIMIT 1", params).fetchone()
        if row is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return _row_to_session(row)

    def find_session(self, session_id: str, owner_id: str | None = None) -> SessionRecord | None:
        try:
            return self.get_session(session_id, owner_id)
        except SessionNotFoundError:
            return None

    def get_or_create_session(self, owner_id: str, session_id: str | None = None) -> SessionRecord:
        """Resolve the session a new turn should run in.

        An explicit id must belong to ``owner_id``. Without one, the owner's
        most recently updated active session is resumed, or a new one created.
        """
        if session_id:
            return self.get_session(session_id, owner_id)

        with self._store.connect() as connection:
            row = connection.execute(
                """
                SELECT * FROM sessions
                WHERE owner_id = ? AND status = 'active'
                ORDER BY updated_at DESC, created_at DESC
                LIMIT 1
                """,
                (owner_id,),
            ).fetchone()
        if row is not None:
            return _row_to_session(row)
        return self.create_session(owner_id)

    def list_sessions(self, owner_id: str, *, limit: int = 10) -> list[SessionRecord]:
        limit = min(max(1, limit), MAX_SESSION_LIST_LIMIT)
        with self._store.connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM sessions
                WHERE owner_id = ?
                ORDER BY updated_at DESC, created_at DESC
                LIMIT ?
                """,
                (owner_id, limit),
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    def mark_active(self, session_id: str) -> None:
        self._set_status(session_id, SessionStatus.ACTIVE)

    def update_context_start(self, session_id: str, sequence_number: int) -> None:
        with self._store.connect() as connection:
            connection.execute(
                "UPDATE sessions SET context_start_sequence = ?, updated_at = ? WHERE id = ?",
                (max(0, sequence_number), utc_now(), session_id),
            )

    def end_session(
        self,
        session_id: str,
        status: SessionStatus | str,
        *,
        error_message: str | None = None,
    ) -> SessionRecord:
        status = SessionStatus(status)
        session = self.get_session(session_id)

        prompt_tokens = 0
        total_tokens = 0
        cached_tokens = 0
        cache_write_tokens = 0
        cost_cents = 0.0
        with self._store.connect() as connection:
            rows = connection.execute(
                "SELECT payload_json FROM events WHERE session_id = ? AND kind = ? ORDER BY sequence_number ASC",
                (session_id, EventKind.LLM_RESPONSE.value),
            ).fetchall()
        for row in rows:
            payload = json.loads(row["payload_json"])
            tokens = payload.get("tokens") or {}
            prompt_tokens += int(tokens.get("prompt", 0))
            total_tokens += int(tokens.get("total", 0))
            cached_tokens += int(tokens.get("cached", 0))
            cache_write_tokens += int(tokens.get("cache_write", 0))
            cost_cents += float(payload.get("cost_cents", 0.0))

        metadata = session.metadata
        all_input = prompt_tokens + cached_tokens + cache_write_tokens
        metadata["cache_hit_rate"] = round(cached_tokens / all_input, 4) if all_input else 0.0
        metadata["cache_write_tokens"] = cache_write_tokens
        if error_message:
            metadata["last_error"] = error_message
        else:
            metadata.pop("last_error", None)

        with self._store.connect() as connection:
            connection.execute(
                """
                UPDATE sessions
                SET status = ?, total_tokens = ?, cached_tokens = ?, total_cost_cents = ?,
                    metadata_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    total_tokens,
                    cached_tokens,
                    round(cost_cents, 6),
                    json.dumps(metadata, ensure_ascii=True),
                    utc_now(),
                    session_id,
                ),
            )
        logger.info(
            f"[{session_id[:8]}] Session {status.value}: "
            f"tokens={total_tokens} cached={cached_tokens} "
            f"hit_rate={metadata['cache_hit_rate']:.0%} cost={cost_cents:.4f}c"
        )
        return self.get_session(session_id)

    def build_session_summary(
        self,
        session_id: str,
        owner_id: str,
        *,
        recent_limit: int = 20,
        recent_tool_limit: int = 10,
    ) -> dict:
        session = self.get_session(session_id, owner_id)

        with self._store.connect() as connection:
            count_rows = connection.execute(
                "SELECT kind, COUNT(*) AS c FROM events WHERE session_id = ? GROUP BY kind",
                (session_id,),
            ).fetchall()
            tool_rows = connection.execute(
                """
                SELECT payload_json, created_at, sequence_number FROM events
                WHERE session_id = ? AND kind = ?
                ORDER BY sequence_number DESC
                LIMIT ?
                """,
                (session_id, EventKind.TOOL_RESULT.value, max(1, recent_tool_limit)),
            ).fetchall()
            event_rows = connection.execute(
                """
                SELECT sequence_number, kind, created_at, duration_ms, model_id FROM events
                WHERE session_id = ?
                ORDER BY sequence_number DESC
                LIMIT ?
                """,
                (session_id, max(1, recent_limit)),
            ).fetchall()

        counts = {kind.value: 0 for kind in EventKind}
        for row in count_rows:
            counts[row["kind"]] = int(row["c"])

        recent_tools = []
        for row in reversed(tool_rows):
            payload = json.loads(row["payload_json"])
            recent_tools.append(
                {
                    "sequence_number": int(row["sequence_number"]),
                    "tool_name": payload.get("tool_name"),
                    "success": bool(payload.get("success", False)),
                    "created_at": row["created_at"],
                }
            )
        recent_events = [dict(row) for row in reversed(event_rows)]

        return {
            "session": session.to_dict(),
            "event_count": sum(counts.values()),
            "counts": counts,
            "recent_tool_actions": recent_tools,
            "recent_events": recent_events,
        }

    def _set_status(self, session_id: str, status: SessionStatus) -> None:
        with self._store.connect() as connection:
            connection.execute(
                "UPDATE sessions SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, utc_now(), session_id),
            )


def _row_to_session(row: sqlite3.Row) -> SessionRecord:
    return SessionRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        context_start_sequence=int(row["context_start_sequence"]),
        total_tokens=int(row["total_tokens"]),
        cached_tokens=int(row["cached_tokens"]),
        total_cost_cents=float(row["total_cost_cents"]),
        status=row["status"],
        metadata_json=row["metadata_json"],
    )
