from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from trainer_agent_loop.agent_config import AgentConfig
from trainer_agent_loop.context_builder import ContextAssembler
from trainer_agent_loop.initializer import ContextInitializer
from trainer_agent_loop.memory.events import EventStore
from trainer_agent_loop.memory.models import SessionRecord
from trainer_agent_loop.memory.scratch import SessionScratch
from trainer_agent_loop.memory.session_log import SessionLog
from trainer_agent_loop.memory.session_manager import SessionManager
from trainer_agent_loop.provider import LLMProvider, create_provider
from trainer_agent_loop.streaming import NullStreamSink, StreamSink
from trainer_agent_loop.system_prompt import build_system_prompt
from trainer_agent_loop.tool_registry import build_registry
from trainer_agent_loop.turn_engine import TurnEngine, TurnResult


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class Agent:
    """Entry point used by the HTTP layer.

    Owns the per-session locks: two turns for the same session never overlap
    inside this process, while turns for different sessions run concurrently.
    """

    def __init__(self, config: AgentConfig):
        self._store = config.store
        self._events = EventStore(config.store)
        self._sessions = SessionManager(config.store)
        self._log = SessionLog(self._events)
        self._scratch = SessionScratch()
        self._knowledge = config.knowledge
        self._locks: dict[str, _SessionLock] = {}

        provider = config.provider or create_provider(config.provider_name, config.api_key)
        self._tools = build_registry(
            knowledge_sources=self._knowledge.names(),
            extra_tools=config.tools,
            max_result_chars=config.max_tool_result_chars,
        )
        self._assembler = ContextAssembler(
            self._sessions,
            self._events,
            self._tools,
            config.system_prompt or build_system_prompt(),
            config.reference_data,
        )

        initializer: ContextInitializer | None = None
        if config.initializer_enabled and self._knowledge.names():
            initializer = ContextInitializer(
                self._initializer_provider(config, provider),
                config.initializer_model,
                self._log,
                self._knowledge,
                max_tokens=config.initializer_max_tokens,
            )

        self._turn_engine = TurnEngine(
            provider=provider,
            model=config.model,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            sessions=self._sessions,
            log=self._log,
            assembler=self._assembler,
            tools=self._tools,
            data_sources=self._knowledge,
            scratch=self._scratch,
            initializer=initializer,
            max_iterations=config.max_iterations,
        )
        logger.info(
            f"Agent ready: model={config.model}, tools={len(self._tools.names())}, "
            f"knowledge_sources={len(self._knowledge.names())}, initializer={'on' if initializer else 'off'}"
        )

    async def run_turn(
        self,
        owner_id: str,
        message: str,
        *,
        session_id: str | None = None,
        sink: StreamSink | None = None,
        client_knowledge: dict[str, str] | None = None,
    ) -> TurnResult:
        session = await asyncio.to_thread(self._sessions.get_or_create_session, owner_id, session_id)
        entry = self._locks.get(session.id)
        if entry is None:
            entry = self._locks[session.id] = _SessionLock()
        elif entry.lock.locked():
            logger.info(f"[{session.id[:8]}] Waiting for the previous turn in this session to finish")
        entry.users += 1
        try:
            async with entry.lock:
                return await self._turn_engine.run(
                    session.id,
                    owner_id,
                    message,
                    sink or NullStreamSink(),
                    client_knowledge=client_knowledge,
                )
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[session.id]

    @property
    def locked_sessions(self) -> int:
        """Sessions with a turn running or queued."""
        return len(self._locks)

    async def start_session(self, owner_id: str, metadata: dict[str, Any] | None = None) -> SessionRecord:
        return await asyncio.to_thread(self._sessions.create_session, owner_id, metadata=metadata)

    async def list_sessions(self, owner_id: str, limit: int = 10) -> list[SessionRecord]:
        return await asyncio.to_thread(self._sessions.list_sessions, owner_id, limit=limit)

    async def get_session_state(self, owner_id: str, session_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._sessions.build_session_summary, session_id, owner_id)

    async def find_session(self, owner_id: str, session_id: str) -> SessionRecord | None:
        return await asyncio.to_thread(self._sessions.find_session, session_id, owner_id)

    def close(self) -> None:
        self._store.close()

    @staticmethod
    def _initializer_provider(config: AgentConfig, default: LLMProvider) -> LLMProvider:
        if config.initializer_provider is not None:
            return config.initializer_provider
        name = config.initializer_provider_name.strip()
        if not name or name.lower() == config.provider_name.strip().lower():
            return default
        return create_provider(name, config.initializer_api_key)
