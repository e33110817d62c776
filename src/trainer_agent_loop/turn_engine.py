from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from uuid import uuid4

from loguru import logger

from trainer_agent_loop.context_builder import ContextAssembler
from trainer_agent_loop.data_sources import DataSourceRegistry
from trainer_agent_loop.initializer import ContextInitializer
from trainer_agent_loop.memory.models import SessionStatus
from trainer_agent_loop.memory.scratch import SessionScratch
from trainer_agent_loop.memory.session_log import SessionArtifacts, SessionLog
from trainer_agent_loop.memory.session_manager import SessionManager
from trainer_agent_loop.provider import LLMProvider
from trainer_agent_loop.streaming import (
    StreamSink,
    done_event,
    error_event,
    knowledge_event,
    safe_emit,
    status_event,
    tool_result_event,
    tool_start_event,
)
from trainer_agent_loop.tool import ToolContext
from trainer_agent_loop.tool_registry import TERMINAL_TOOLS, ControlTool, DispatchResult, ToolRegistry

MAX_ITERATIONS = 10
AGENT_LOOP_PURPOSE = "agent_loop"


class TurnState(StrEnum):
    RUNNING = "running"
    AWAITING_USER = "awaiting_user"
    DONE = "done"
    ERROR = "error"


class MaxIterationsError(Exception):
    """The turn used up its iteration budget without reaching idle or a question."""


@dataclass
class TurnResult:
    session_id: str
    state: TurnState = TurnState.RUNNING
    iterations: int = 0
    actions: list[dict[str, Any]] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    question: dict[str, Any] | None = None
    artifact: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "iterations": self.iterations,
            "actions": self.actions,
            "messages": self.messages,
            "question": self.question,
            "artifact": self.artifact,
            "error": self.error,
        }


class TurnEngine:
    """Runs one user turn: one model call and one tool dispatch per iteration.

    Every step is appended to the session's event log before the next one
    starts, so an interrupted turn leaves a replayable prefix behind. Fatal
    failures are recorded, end the session in ``error`` and are reported in
    the returned :class:`TurnResult`; they are not raised.
    """

    def __init__(
        self,
        *,
        provider: LLMProvider,
        model: str,
        max_tokens: int,
        temperature: float,
        sessions: SessionManager,
        log: SessionLog,
        assembler: ContextAssembler,
        tools: ToolRegistry,
        data_sources: DataSourceRegistry,
        scratch: SessionScratch,
        initializer: ContextInitializer | None = None,
        max_iterations: int = MAX_ITERATIONS,
    ) -> None:
        self._provider = provider
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._sessions = sessions
        self._log = log
        self._assembler = assembler
        self._tools = tools
        self._data_sources = data_sources
        self._scratch = scratch
        self._initializer = initializer
        self._max_iterations = max(1, max_iterations)

    async def run(
        self,
        session_id: str,
        owner_id: str,
        user_message: str,
        sink: StreamSink,
        *,
        client_knowledge: dict[str, str] | None = None,
    ) -> TurnResult:
        result = TurnResult(session_id=session_id)
        stage = "user_message"
        try:
            await asyncio.to_thread(self._sessions.mark_active, session_id)
            await self._log.log_user_message(session_id, user_message)

            stage = "client_knowledge"
            for source, data in (client_knowledge or {}).items():
                await self._log.log_knowledge(session_id, source, data, {"client_provided": True})
                safe_emit(sink, knowledge_event(source))

            if self._initializer is not None:
                session = await asyncio.to_thread(self._sessions.get_session, session_id)
                await self._initializer.initialize(
                    session_id, owner_id, user_message, sink, context_start=session.context_start_sequence
                )

            context = self._tool_context(session_id, owner_id)
            iteration = 0
            while result.state == TurnState.RUNNING:
                iteration += 1
                if iteration > self._max_iterations:
                    stage = AGENT_LOOP_PURPOSE
                    raise MaxIterationsError(f"Max iterations ({self._max_iterations}) reached")
                result.iterations = iteration

                stage = "build_context"
                agent_context = await self._assembler.build(session_id)
                await self._log.log_llm_request(
                    session_id,
                    self._model,
                    purpose=AGENT_LOOP_PURPOSE,
                    estimated_tokens=agent_context.estimated_tokens,
                    message_count=len(agent_context.messages),
                    event_count=agent_context.event_count,
                )

                stage = "llm_call"
                response = await self._provider.call_tool(
                    self._model,
                    self._max_tokens,
                    self._temperature,
                    agent_context.system_blocks,
                    agent_context.messages,
                    agent_context.tools,
                )
                await self._log.log_llm_response(
                    session_id,
                    response.model or self._model,
                    response.usage,
                    purpose=AGENT_LOOP_PURPOSE,
                    stop_reason=response.stop_reason,
                    tool_names=response.tool_names,
                    duration_ms=response.duration_ms,
                )

                stage = "parse_response"
                call = response.require_single_tool_call(self._tools.names())
                call_id = call.id or f"call_{uuid4().hex[:12]}"

                stage = f"tool_execution:{call.name}"
                await self._log.log_tool_call(session_id, call.name, call.input, call_id)
                status = self._tools.status_message(call.name)
                safe_emit(sink, tool_start_event(call.name, call_id, call.input))
                if status is not None and status.start:
                    safe_emit(sink, status_event(status.start, call.name, "start"))

                dispatch = await self._tools.dispatch(call.name, call.input, context)
                await self._log.log_tool_result(
                    session_id,
                    call.name,
                    call_id,
                    dispatch.formatted,
                    success=dispatch.success,
                    data=_result_data(dispatch.result),
                    duration_ms=dispatch.duration_ms,
                )

                if status is not None:
                    if dispatch.success and status.done:
                        safe_emit(sink, status_event(status.done, call.name, "done"))
                    elif not dispatch.success and status.start:
                        safe_emit(sink, status_event("Something went wrong", call.name, "error"))
                safe_emit(
                    sink,
                    tool_result_event(
                        call.name,
                        call_id,
                        success=dispatch.success,
                        formatted=dispatch.formatted,
                        result=dispatch.result,
                    ),
                )
                self._record_action(result, call.name, call.input, dispatch)

                if call.name in TERMINAL_TOOLS:
                    result.state = TurnState.AWAITING_USER if call.name == ControlTool.ASK_USER else TurnState.DONE
        except Exception as ex:
            result.state = TurnState.ERROR
            result.error = str(ex) or type(ex).__name__
            logger.error(f"[{session_id[:8]}] Turn failed at {stage}: {result.error}")
            try:
                await self._log.log_error(session_id, ex, stage)
            except Exception as log_ex:
                logger.error(f"[{session_id[:8]}] Could not record turn failure: {log_ex}")

        await self._finish(result, sink)
        return result

    async def _finish(self, result: TurnResult, sink: StreamSink) -> None:
        status = SessionStatus.ERROR if result.state == TurnState.ERROR else SessionStatus.COMPLETED
        try:
            await asyncio.to_thread(
                self._sessions.end_session, result.session_id, status, error_message=result.error
            )
        except Exception as ex:
            logger.error(f"[{result.session_id[:8]}] Could not end session: {ex}")

        if result.state == TurnState.ERROR:
            safe_emit(sink, error_event(result.error or "Unknown error", result.session_id))
        else:
            safe_emit(sink, done_event(result.session_id, result.state.value, result.iterations))

    def _tool_context(self, session_id: str, owner_id: str) -> ToolContext:
        return ToolContext(
            owner_id=owner_id,
            session_id=session_id,
            artifacts=SessionArtifacts(self._log, session_id),
            scratch=self._scratch.view(session_id),
            data_sources=self._data_sources,
        )

    @staticmethod
    def _record_action(result: TurnResult, tool_name: str, arguments: dict[str, Any], dispatch: DispatchResult) -> None:
        result.actions.append(
            {
                "tool": tool_name,
                "args": arguments,
                "success": dispatch.success,
                "result": dispatch.result,
                "formatted": dispatch.formatted,
                "duration_ms": dispatch.duration_ms,
            }
        )
        if not dispatch.success:
            return
        if tool_name == ControlTool.NOTIFY_USER:
            message = dispatch.result.get("message")
            if message:
                result.messages.append(message)
            artifact = dispatch.result.get("artifact")
            if artifact is not None:
                result.artifact = artifact
        elif tool_name == ControlTool.ASK_USER:
            result.question = {
                "question": dispatch.result.get("question", ""),
                "options": dispatch.result.get("options", []),
            }


def _result_data(result: dict[str, Any]) -> dict[str, Any]:
    # Artifact payloads already live in their own event; keep only the reference.
    return {k: v for k, v in result.items() if k != "artifact"}
