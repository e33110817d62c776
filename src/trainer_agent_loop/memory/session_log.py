from __future__ import annotations

import json
import secrets
import string
from typing import Any

from loguru import logger

from trainer_agent_loop.memory.events import EventStore
from trainer_agent_loop.memory.models import EventKind, EventRecord
from trainer_agent_loop.pricing import calculate_cost_cents, format_cost, format_tokens
from trainer_agent_loop.providers.common import Usage

_ARTIFACT_ID_ALPHABET = string.ascii_lowercase + string.digits
ARTIFACT_ID_LENGTH = 8


def generate_artifact_id() -> str:
    return "art_" + "".join(secrets.choice(_ARTIFACT_ID_ALPHABET) for _ in range(ARTIFACT_ID_LENGTH))


def _truncate(text: str, max_chars: int = 60) -> str:
    text = " ".join(str(text).split())
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."


class SessionLog:
    """Typed writers and readers over the event log for one process.

    Every write also prints a one-line, session-prefixed trace so a turn can be
    followed in the console.
    """

    def __init__(self, events: EventStore):
        self._events = events

    @property
    def events(self) -> EventStore:
        return self._events

    async def log_user_message(self, session_id: str, message: str) -> EventRecord:
        _trace(session_id, f"User → {_truncate(message)}")
        return await self._events.append(session_id, EventKind.USER_MESSAGE, {"message": message})

    async def log_llm_request(
        self,
        session_id: str,
        model: str,
        *,
        purpose: str,
        estimated_tokens: int,
        message_count: int = 0,
        event_count: int = 0,
    ) -> EventRecord:
        _trace(session_id, f"LLM Request → {model} ({purpose}) est. {format_tokens(estimated_tokens)} tokens")
        return await self._events.append(
            session_id,
            EventKind.LLM_REQUEST,
            {
                "model": model,
                "purpose": purpose,
                "estimated_tokens": estimated_tokens,
                "message_count": message_count,
                "event_count": event_count,
            },
            model_id=model,
        )

    async def log_llm_response(
        self,
        session_id: str,
        model: str,
        usage: Usage,
        *,
        purpose: str,
        stop_reason: str,
        tool_names: list[str],
        duration_ms: int | None = None,
    ) -> EventRecord:
        cost_cents = calculate_cost_cents(
            model,
            usage.input_tokens,
            usage.output_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            cache_write_tokens=usage.cache_write_tokens,
        )
        tokens = {
            "prompt": usage.input_tokens,
            "completion": usage.output_tokens,
            "cached": usage.cache_read_tokens,
            "cache_write": usage.cache_write_tokens,
            "total": usage.total_tokens,
        }
        token_info = f"{format_tokens(usage.total_tokens)} tokens"
        if usage.cache_read_tokens or usage.cache_write_tokens:
            token_info += (
                f" ({format_tokens(usage.cache_read_tokens)} cached, "
                f"{format_tokens(usage.cache_write_tokens)} cache write)"
            )
        _trace(
            session_id,
            f"LLM Response ← {', '.join(tool_names) or '(no tool)'} | {token_info} | "
            f"{format_cost(cost_cents)} | {duration_ms or 0}ms",
        )
        return await self._events.append(
            session_id,
            EventKind.LLM_RESPONSE,
            {
                "model": model,
                "purpose": purpose,
                "stop_reason": stop_reason,
                "tool_names": list(tool_names),
                "tokens": tokens,
                "cost_cents": cost_cents,
            },
            duration_ms=duration_ms,
            model_id=model,
        )

    async def log_tool_call(
        self, session_id: str, tool_name: str, arguments: dict[str, Any], call_id: str
    ) -> EventRecord:
        _trace(session_id, f"Tool Call → {tool_name} {_truncate(json.dumps(arguments, default=str), 50)}")
        return await self._events.append(
            session_id,
            EventKind.TOOL_CALL,
            {"tool_name": tool_name, "arguments": arguments, "call_id": call_id},
        )

    async def log_tool_result(
        self,
        session_id: str,
        tool_name: str,
        call_id: str,
        result: str,
        *,
        success: bool,
        data: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> EventRecord:
        _trace(session_id, f"Tool Result ← {tool_name}: {'ok' if success else 'failed'} ({duration_ms or 0}ms)")
        return await self._events.append(
            session_id,
            EventKind.TOOL_RESULT,
            {
                "tool_name": tool_name,
                "call_id": call_id,
                "result": result,
                "success": success,
                "data": data or {},
            },
            duration_ms=duration_ms,
        )

    async def log_error(
        self,
        session_id: str,
        error: BaseException | str,
        context: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> EventRecord:
        message = str(error) if not isinstance(error, BaseException) else (str(error) or type(error).__name__)
        logger.error(f"[{session_id[:8]}] Error: {message}{f' ({context})' if context else ''}")
        payload_details = dict(details or {})
        if isinstance(error, BaseException):
            payload_details.setdefault("type", type(error).__name__)
        return await self._events.append(
            session_id,
            EventKind.ERROR,
            {"message": message, "context": context, "details": payload_details},
        )

    async def log_knowledge(
        self,
        session_id: str,
        source: str,
        data: str,
        params: dict[str, Any] | None = None,
    ) -> EventRecord:
        _trace(session_id, f"Knowledge ← {source} {_truncate(data, 40)}")
        return await self._events.append(
            session_id,
            EventKind.KNOWLEDGE,
            {"source": source, "data": data, "params": params or {}},
        )

    async def log_artifact(
        self,
        session_id: str,
        *,
        artifact_type: str,
        title: str,
        summary: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        auto_start: bool = False,
        schema_version: str = "1.0",
    ) -> tuple[str, EventRecord]:
        artifact_id = generate_artifact_id()
        _trace(session_id, f"Artifact ← {artifact_type} \"{_truncate(title, 40)}\" ({artifact_id})")
        record = await self._events.append(
            session_id,
            EventKind.ARTIFACT,
            {
                "artifact_id": artifact_id,
                "type": artifact_type,
                "schema_version": schema_version,
                "title": title,
                "summary": summary or {},
                "auto_start": auto_start,
                "payload": payload or {},
            },
        )
        return artifact_id, record

    async def get_artifact(self, session_id: str, artifact_id: str) -> dict[str, Any] | None:
        """Look up an artifact created earlier in ``session_id``; other sessions are never searched."""
        for event in reversed(await self._events.read(session_id, [EventKind.ARTIFACT])):
            payload = event.payload
            if payload.get("artifact_id") == artifact_id:
                return payload
        return None

    async def knowledge_sources(self, session_id: str, *, from_sequence: int = 0) -> list[dict[str, Any]]:
        """Names and scope params of the knowledge already loaded, never the contents."""
        loaded = []
        for event in await self._events.read(session_id, [EventKind.KNOWLEDGE], from_sequence=from_sequence):
            payload = event.payload
            loaded.append({"source": payload.get("source", ""), "params": payload.get("params") or {}})
        return loaded


def _trace(session_id: str, message: str) -> None:
    logger.info(f"[{session_id[:8]}] {message}")


class SessionArtifacts:
    """Artifact access bound to one session, handed to tools via ``ToolContext``."""

    def __init__(self, log: SessionLog, session_id: str):
        self._log = log
        self._session_id = session_id

    async def create(
        self,
        artifact_type: str,
        title: str,
        *,
        summary: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        auto_start: bool = False,
    ) -> str:
        artifact_id, _ = await self._log.log_artifact(
            self._session_id,
            artifact_type=artifact_type,
            title=title,
            summary=summary,
            payload=payload,
            auto_start=auto_start,
        )
        return artifact_id

    async def get(self, artifact_id: str) -> dict[str, Any] | None:
        return await self._log.get_artifact(self._session_id, artifact_id)
