from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class ChatRequest(BaseModel):
    message: str = Field(description="The user's message for this turn.")
    session_id: Optional[str] = Field(
        default=None,
        description="Session to continue. Omit to resume the most recent active session or start one.",
    )
    context: Optional[dict[str, str]] = Field(
        default=None,
        description="Client-supplied knowledge keyed by source name, recorded before the loop starts.",
    )

    @field_validator("message")
    @classmethod
    def validate_message(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message must not be empty")
        return value


class ChatResponse(BaseModel):
    session_id: str
    state: str
    iterations: int
    messages: list[str] = Field(default_factory=list)
    question: Optional[dict[str, Any]] = None
    artifact: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class SessionCreateRequest(BaseModel):
    metadata: Optional[dict[str, Any]] = None


class SessionSummary(BaseModel):
    id: str
    owner_id: str
    status: str
    created_at: str
    updated_at: str
    context_start_sequence: int
    total_tokens: int
    cached_tokens: int
    total_cost_cents: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionListResponse(BaseModel):
    sessions: list[SessionSummary]


class SessionStateResponse(BaseModel):
    session: SessionSummary
    event_count: int
    counts: dict[str, int]
    recent_tool_actions: list[dict[str, Any]]
    recent_events: list[dict[str, Any]]
