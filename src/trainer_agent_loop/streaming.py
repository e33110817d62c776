from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from trainer_agent_loop.memory.events import utc_now


@runtime_checkable
class StreamSink(Protocol):
    def emit(self, event: dict[str, Any]) -> None: ...

    def close(self) -> None: ...


class NullStreamSink:
    def emit(self, event: dict[str, Any]) -> None:
        pass

    def close(self) -> None:
        pass


class CollectingStreamSink:
    """Keeps every event in memory; used by the blocking chat endpoint."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.closed = False

    def emit(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def close(self) -> None:
        self.closed = True


_CLOSE = object()


class QueueStreamSink:
    """Best-effort bridge from a running turn to one streaming client.

    ``emit`` never blocks and never raises. Once the client disconnects,
    further events are dropped so the turn can run to completion on its own.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._disconnected = False
        self._dropped = 0

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, event: dict[str, Any]) -> None:
        if self._closed or self._disconnected:
            self._dropped += 1
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    def disconnect(self) -> None:
        if not self._disconnected:
            logger.debug("Stream client disconnected; dropping further events")
        self._disconnected = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            yield item


def safe_emit(sink: StreamSink, event: dict[str, Any]) -> None:
    try:
        sink.emit(event)
    except Exception as ex:
        logger.warning(f"Stream sink raised {type(ex).__name__}: {ex}; event {event.get('type')} dropped")


def to_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"


def _event(event_type: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"type": event_type, "data": data, "timestamp": utc_now()}


def status_event(message: str, tool: str, phase: str) -> dict[str, Any]:
    return _event("status", {"message": message, "tool": tool, "phase": phase})


def tool_start_event(tool_name: str, call_id: str, arguments: dict[str, Any]) -> dict[str, Any]:
    return _event(tool_name, {"status": "running", "call_id": call_id, "args": arguments})


def tool_result_event(
    tool_name: str,
    call_id: str,
    *,
    success: bool,
    formatted: str,
    result: dict[str, Any] | None = None,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "status": "done" if success else "failed",
        "call_id": call_id,
        "formatted": formatted,
    }
    result = result or {}
    for key in ("message", "question", "options", "reason", "warning", "error"):
        if key in result:
            data[key] = result[key]
    if result.get("artifact") is not None:
        data["artifact_id"] = result.get("artifact_id")
        data["artifact"] = result["artifact"]
    return _event(tool_name, data)


def knowledge_event(source: str, display_name: str | None = None) -> dict[str, Any]:
    return _event("knowledge", {"source": source, "display_name": display_name or f"Loading {source.replace('_', ' ')}"})


def done_event(session_id: str, state: str, iterations: int) -> dict[str, Any]:
    return _event("done", {"session_id": session_id, "state": state, "iterations": iterations})


def error_event(message: str, session_id: str | None = None) -> dict[str, Any]:
    return _event("error", {"message": message, "session_id": session_id})
