from trainer_agent_loop.memory.events import (
    EventStore,
    EventStoreError,
    EventStoreUnavailableError,
    SequenceConflictError,
    UnknownSessionError,
)
from trainer_agent_loop.memory.models import CONTEXT_EVENT_KINDS, EventKind, EventRecord, SessionRecord, SessionStatus
from trainer_agent_loop.memory.scratch import ScratchView, SessionScratch
from trainer_agent_loop.memory.session_log import SessionArtifacts, SessionLog, generate_artifact_id
from trainer_agent_loop.memory.session_manager import SessionManager, SessionNotFoundError
from trainer_agent_loop.memory.store import MemoryStore

__all__ = [
    "CONTEXT_EVENT_KINDS",
    "EventKind",
    "EventRecord",
    "EventStore",
    "EventStoreError",
    "EventStoreUnavailableError",
    "MemoryStore",
    "ScratchView",
    "SequenceConflictError",
    "SessionArtifacts",
    "SessionLog",
    "SessionManager",
    "SessionNotFoundError",
    "SessionRecord",
    "SessionScratch",
    "SessionStatus",
    "UnknownSessionError",
    "generate_artifact_id",
]
