from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from loguru import logger

from trainer_agent_loop.agent import Agent
from trainer_agent_loop.memory.models import SessionRecord
from trainer_agent_loop.memory.session_manager import SessionNotFoundError
from trainer_agent_loop.streaming import QueueStreamSink, error_event, safe_emit, to_sse
from trainer_agent_loop.turn_engine import TurnState

from .dependencies import get_agent, get_owner_id
from .schemas import (
    ChatRequest,
    ChatResponse,
    SessionCreateRequest,
    SessionListResponse,
    SessionStateResponse,
    SessionSummary,
)

router = APIRouter(prefix="/agent", tags=["agent"])


@router.post("/chat", response_model=ChatResponse)
async def chat(
    payload: ChatRequest,
    owner_id: str = Depends(get_owner_id),
    agent: Agent = Depends(get_agent),
) -> ChatResponse:
    await _require_session(agent, owner_id, payload.session_id)
    result = await agent.run_turn(
        owner_id,
        payload.message,
        session_id=payload.session_id,
        client_knowledge=payload.context,
    )
    if result.state == TurnState.ERROR:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error or "Turn failed")
    return ChatResponse(
        session_id=result.session_id,
        state=result.state.value,
        iterations=result.iterations,
        messages=result.messages,
        question=result.question,
        artifact=result.artifact,
        error=result.error,
    )


@router.post("/stream")
async def stream(
    payload: ChatRequest,
    request: Request,
    owner_id: str = Depends(get_owner_id),
    agent: Agent = Depends(get_agent),
) -> StreamingResponse:
    await _require_session(agent, owner_id, payload.session_id)
    sink = QueueStreamSink()
    task = asyncio.create_task(_run_streamed_turn(agent, owner_id, payload, sink))
    # The turn outlives the response if the client goes away mid-stream.
    turns: set[asyncio.Task] = request.app.state.background_turns
    turns.add(task)
    task.add_done_callback(turns.discard)

    async def event_stream():
        try:
            async for event in sink.events():
                yield to_sse(event)
        finally:
            if not task.done():
                sink.disconnect()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    limit: int = Query(default=10, ge=1, le=50, description="Maximum number of sessions to return."),
    owner_id: str = Depends(get_owner_id),
    agent: Agent = Depends(get_agent),
) -> SessionListResponse:
    records = await agent.list_sessions(owner_id, limit=limit)
    return SessionListResponse(sessions=[_to_summary(record) for record in records])


@router.post("/sessions", status_code=status.HTTP_201_CREATED, response_model=SessionSummary)
async def create_session(
    payload: Optional[SessionCreateRequest] = None,
    owner_id: str = Depends(get_owner_id),
    agent: Agent = Depends(get_agent),
) -> SessionSummary:
    metadata = payload.metadata if payload is not None else None
    return _to_summary(await agent.start_session(owner_id, metadata))


@router.get("/sessions/{session_id}", response_model=SessionStateResponse)
async def get_session(
    session_id: str,
    owner_id: str = Depends(get_owner_id),
    agent: Agent = Depends(get_agent),
) -> SessionStateResponse:
    try:
        state = await agent.get_session_state(owner_id, session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return SessionStateResponse(
        session=SessionSummary(**state["session"]),
        event_count=state["event_count"],
        counts=state["counts"],
        recent_tool_actions=state["recent_tool_actions"],
        recent_events=state["recent_events"],
    )


async def _require_session(agent: Agent, owner_id: str, session_id: Optional[str]) -> None:
    if session_id is None:
        return
    if await agent.find_session(owner_id, session_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")


async def _run_streamed_turn(agent: Agent, owner_id: str, payload: ChatRequest, sink: QueueStreamSink) -> None:
    try:
        await agent.run_turn(
            owner_id,
            payload.message,
            session_id=payload.session_id,
            sink=sink,
            client_knowledge=payload.context,
        )
    except SessionNotFoundError as ex:
        safe_emit(sink, error_event(str(ex), payload.session_id))
    except Exception as ex:
        # Nothing awaits this task, so the failure has to be reported here.
        logger.exception(f"Streamed turn failed for owner {owner_id}: {ex}")
        safe_emit(sink, error_event(str(ex) or type(ex).__name__, payload.session_id))
    finally:
        sink.close()


def _to_summary(record: SessionRecord) -> SessionSummary:
    return SessionSummary(**record.to_dict())
