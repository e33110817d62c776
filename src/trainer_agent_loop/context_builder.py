from __future__ import annotations

import asyncio
import copy
import json
import math
from dataclasses import dataclass
from typing import Any

from loguru import logger

from trainer_agent_loop.data_sources import ReferenceDataProvider, format_user_data
from trainer_agent_loop.memory.events import EventStore
from trainer_agent_loop.memory.models import CONTEXT_EVENT_KINDS, EventKind, EventRecord
from trainer_agent_loop.memory.session_manager import SessionManager
from trainer_agent_loop.tool_registry import ToolRegistry

CACHE_CONTROL = {"type": "ephemeral"}

INTERRUPTED_RESULT_TEXT = (
    '<result error="true">\n'
    "This tool call was interrupted before a result was recorded. It did not complete.\n"
    "</result>"
)


class EmptyContextError(Exception):
    """The session has no context events to build a prompt from."""


@dataclass
class AgentContext:
    stable_instructions: str
    stable_reference_data: str
    system_blocks: list[dict[str, Any]]
    tools: list[dict[str, Any]]
    messages: list[dict[str, Any]]
    event_count: int
    estimated_tokens: int = 0


def knowledge_text(payload: dict[str, Any]) -> str:
    return f'<knowledge source="{payload.get("source", "")}">\n{payload.get("data", "")}\n</knowledge>'


def artifact_text(payload: dict[str, Any]) -> str:
    summary = json.dumps(payload.get("summary") or {}, ensure_ascii=False, sort_keys=True)
    return f'<artifact type="{payload.get("type", "")}" id="{payload.get("artifact_id", "")}">\n{summary}\n</artifact>'


def _text_block(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


class _MessageFolder:
    """Folds context events into an alternating user/assistant message list.

    A tool call opens an assistant message and stays pending until its result
    arrives; anything else seen while pending is buffered and placed after the
    ``tool_result`` block, which must come first in the next user message.
    """

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []
        self._pending_call_id: str | None = None
        self._buffered: list[dict[str, Any]] = []

    def add(self, event: EventRecord) -> None:
        payload = event.payload
        kind = event.kind

        if kind == EventKind.USER_MESSAGE:
            self._add_text(str(payload.get("message", "")))
        elif kind == EventKind.KNOWLEDGE:
            self._add_text(knowledge_text(payload))
        elif kind == EventKind.ARTIFACT:
            self._add_text(artifact_text(payload))
        elif kind == EventKind.TOOL_CALL:
            if self._pending_call_id is not None:
                self._close_pending(INTERRUPTED_RESULT_TEXT, is_error=True)
            call_id = str(payload.get("call_id", ""))
            self.messages.append(
                {
                    "role": "assistant",
                    "content": [
                        {
                            "type": "tool_use",
                            "id": call_id,
                            "name": payload.get("tool_name", ""),
                            "input": payload.get("arguments") or {},
                        }
                    ],
                }
            )
            self._pending_call_id = call_id
            self._buffered = []
        elif kind == EventKind.TOOL_RESULT:
            call_id = str(payload.get("call_id", ""))
            if self._pending_call_id is None:
                logger.warning(f"Dropping tool result {call_id} with no pending tool call (seq {event.sequence_number})")
                return
            if call_id != self._pending_call_id:
                logger.warning(
                    f"Tool result {call_id} does not match pending call {self._pending_call_id} "
                    f"(seq {event.sequence_number}); closing the pending call as interrupted"
                )
                self._close_pending(INTERRUPTED_RESULT_TEXT, is_error=True)
                return
            result = payload.get("result", "")
            if not isinstance(result, str):
                result = json.dumps(result, ensure_ascii=False)
            self._close_pending(result, is_error=not payload.get("success", False))

    def finish(self) -> list[dict[str, Any]]:
        if self._pending_call_id is not None:
            self._close_pending(INTERRUPTED_RESULT_TEXT, is_error=True)
        return self.messages

    def _add_text(self, text: str) -> None:
        block = _text_block(text)
        if self._pending_call_id is not None:
            self._buffered.append(block)
            return
        if self.messages and self.messages[-1]["role"] == "user":
            self.messages[-1]["content"].append(block)
        else:
            self.messages.append({"role": "user", "content": [block]})

    def _close_pending(self, result_text: str, *, is_error: bool) -> None:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self._pending_call_id,
            "content": result_text,
        }
        if is_error:
            block["is_error"] = True
        self.messages.append({"role": "user", "content": [block, *self._buffered]})
        self._pending_call_id = None
        self._buffered = []


def events_to_messages(events: list[EventRecord]) -> list[dict[str, Any]]:
    folder = _MessageFolder()
    for event in events:
        folder.add(event)
    return folder.finish()


def add_cache_breakpoints(
    tools: list[dict[str, Any]],
    system_blocks: list[dict[str, Any]],
    messages: list[dict[str, Any]],
) -> None:
    """Mark the last tool, every system block and the last message block as cacheable (in place)."""
    if tools:
        tools[-1]["cache_control"] = dict(CACHE_CONTROL)
    for block in system_blocks:
        block["cache_control"] = dict(CACHE_CONTROL)
    if messages:
        content = messages[-1]["content"]
        if isinstance(content, str):
            content = [_text_block(content)]
            messages[-1]["content"] = content
        if content:
            content[-1]["cache_control"] = dict(CACHE_CONTROL)


def estimate_tokens(context: AgentContext) -> int:
    total_chars = len(context.stable_instructions) + len(context.stable_reference_data)
    for message in context.messages:
        content = message.get("content")
        if isinstance(content, str):
            total_chars += len(content)
            continue
        for block in content or []:
            if "text" in block:
                total_chars += len(block["text"])
            if isinstance(block.get("content"), str):
                total_chars += len(block["content"])
            if "input" in block:
                total_chars += len(json.dumps(block["input"], default=str))
    return math.ceil(total_chars / 4)


class ContextAssembler:
    def __init__(
        self,
        sessions: SessionManager,
        events: EventStore,
        tools: ToolRegistry,
        instructions: str,
        reference_data: ReferenceDataProvider | None = None,
    ):
        self._sessions = sessions
        self._events = events
        self._tools = tools
        self._instructions = instructions
        self._reference_data = reference_data

    async def build(self, session_id: str) -> AgentContext:
        session = await asyncio.to_thread(self._sessions.get_session, session_id)
        events = await self._events.read(
            session_id,
            CONTEXT_EVENT_KINDS,
            from_sequence=session.context_start_sequence,
        )
        messages = events_to_messages(events)
        if not messages:
            raise EmptyContextError(f"Cannot build context: no events in session {session_id}")

        if self._reference_data is not None:
            reference = await self._reference_data.load(session.owner_id)
        else:
            reference = format_user_data([])

        system_blocks = [_text_block(self._instructions), _text_block(reference)]
        tools = copy.deepcopy(self._tools.definitions())
        add_cache_breakpoints(tools, system_blocks, messages)

        context = AgentContext(
            stable_instructions=self._instructions,
            stable_reference_data=reference,
            system_blocks=system_blocks,
            tools=tools,
            messages=messages,
            event_count=len(events),
        )
        context.estimated_tokens = estimate_tokens(context)
        return context
