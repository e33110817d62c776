from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class EventKind(StrEnum):
    USER_MESSAGE = "user_message"
    LLM_REQUEST = "llm_request"
    LLM_RESPONSE = "llm_response"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    KNOWLEDGE = "knowledge"
    ARTIFACT = "artifact"
    ERROR = "error"


# Kinds that feed prompt reconstruction; the rest are observability only.
CONTEXT_EVENT_KINDS: tuple[EventKind, ...] = (
    EventKind.USER_MESSAGE,
    EventKind.TOOL_CALL,
    EventKind.TOOL_RESULT,
    EventKind.KNOWLEDGE,
    EventKind.ARTIFACT,
)


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class SessionRecord:
    id: str
    owner_id: str
    created_at: str
    updated_at: str
    context_start_sequence: int
    total_tokens: int
    cached_tokens: int
    total_cost_cents: float
    status: str
    metadata_json: str

    @property
    def metadata(self) -> dict[str, Any]:
        try:
            parsed = json.loads(self.metadata_json)
        except (TypeError, ValueError):
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "context_start_sequence": self.context_start_sequence,
            "total_tokens": self.total_tokens,
            "cached_tokens": self.cached_tokens,
            "total_cost_cents": self.total_cost_cents,
            "status": self.status,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class EventRecord:
    id: str
    session_id: str
    sequence_number: int
    kind: str
    payload_json: str
    created_at: str
    duration_ms: int | None
    model_id: str | None

    @property
    def payload(self) -> dict[str, Any]:
        parsed = json.loads(self.payload_json)
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "sequence_number": self.sequence_number,
            "kind": self.kind,
            "payload": self.payload,
            "created_at": self.created_at,
            "duration_ms": self.duration_ms,
            "model_id": self.model_id,
        }
