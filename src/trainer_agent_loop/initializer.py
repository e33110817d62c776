from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from loguru import logger

from trainer_agent_loop.data_sources import DataSourceRegistry
from trainer_agent_loop.memory.session_log import SessionLog
from trainer_agent_loop.provider import LLMProvider
from trainer_agent_loop.streaming import StreamSink, knowledge_event, safe_emit
from trainer_agent_loop.system_prompt import build_initializer_prompt

SELECT_CONTEXT_TOOL = "select_context"
INITIALIZER_PURPOSE = "context_initializer"


class KnowledgeReason(StrEnum):
    NOT_IN_CONTEXT = "not_in_context"
    EXPAND_RANGE = "expand_range"
    REFRESH_STATE = "refresh_state"


@dataclass(frozen=True)
class KnowledgeRequest:
    source: str
    reason: KnowledgeReason = KnowledgeReason.NOT_IN_CONTEXT
    limit: int | None = None

    @property
    def params(self) -> dict[str, Any]:
        return {"limit": self.limit} if self.limit is not None else {}


@dataclass
class InitializationResult:
    requests: list[KnowledgeRequest] = field(default_factory=list)
    loaded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    reasoning: str = ""


def _select_context_tool(source_names: list[str]) -> dict[str, Any]:
    return {
        "name": SELECT_CONTEXT_TOOL,
        "description": "Report which data sources should be appended to the agent's context.",
        "input_schema": {
            "type": "object",
            "properties": {
                "reasoning": {
                    "type": "string",
                    "description": "Brief explanation of what data is needed and why",
                },
                "append_knowledge": {
                    "type": "array",
                    "description": "Data sources to append; empty when nothing new is needed",
                    "items": {
                        "type": "object",
                        "properties": {
                            "source": {"type": "string", "enum": source_names},
                            "limit": {
                                "type": ["integer", "null"],
                                "description": "Optional maximum number of records to load",
                            },
                            "reason": {"type": "string", "enum": [r.value for r in KnowledgeReason]},
                        },
                        "required": ["source", "reason"],
                    },
                },
                "use_existing": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Already-loaded sources that cover the request",
                },
            },
            "required": ["reasoning", "append_knowledge"],
        },
    }


class ContextInitializer:
    """Cheap pre-pass that appends the knowledge a turn is likely to need.

    Knowledge is only ever appended. Every failure here is logged and
    swallowed so the main loop can still run with what is already loaded.
    """

    def __init__(
        self,
        provider: LLMProvider,
        model: str,
        log: SessionLog,
        knowledge: DataSourceRegistry,
        *,
        max_tokens: int = 1024,
        enabled: bool = True,
    ):
        self._provider = provider
        self._model = model
        self._log = log
        self._knowledge = knowledge
        self._max_tokens = max_tokens
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled and bool(self._knowledge.names())

    async def select(
        self,
        session_id: str,
        user_text: str,
        *,
        context_start: int = 0,
    ) -> tuple[list[KnowledgeRequest], str]:
        """Ask the model which knowledge to append. Returns the requests and its reasoning."""
        source_names = self._knowledge.names()
        loaded = await self._log.knowledge_sources(session_id, from_sequence=context_start)
        loaded_text = ", ".join(
            f"{item['source']} {json.dumps(item['params'], sort_keys=True)}" if item["params"] else item["source"]
            for item in loaded
        )
        system_text = build_initializer_prompt(self._knowledge.describe())
        user_message = f'User message: "{user_text}"\n\nAlready loaded data sources: {loaded_text or "none"}'

        await self._log.log_llm_request(
            session_id,
            self._model,
            purpose=INITIALIZER_PURPOSE,
            estimated_tokens=math.ceil((len(system_text) + len(user_message)) / 4),
            message_count=1,
        )
        response = await self._provider.call_tool(
            self._model,
            self._max_tokens,
            0.0,
            [{"type": "text", "text": system_text}],
            [{"role": "user", "content": [{"type": "text", "text": user_message}]}],
            [_select_context_tool(source_names)],
            force_tool=SELECT_CONTEXT_TOOL,
        )
        await self._log.log_llm_response(
            session_id,
            response.model or self._model,
            response.usage,
            purpose=INITIALIZER_PURPOSE,
            stop_reason=response.stop_reason,
            tool_names=response.tool_names,
            duration_ms=response.duration_ms,
        )
        call = response.require_single_tool_call({SELECT_CONTEXT_TOOL})
        reasoning = str(call.input.get("reasoning", ""))
        return self._parse_requests(session_id, call.input.get("append_knowledge")), reasoning

    async def initialize(
        self,
        session_id: str,
        owner_id: str,
        user_text: str,
        sink: StreamSink,
        *,
        context_start: int = 0,
    ) -> InitializationResult:
        result = InitializationResult()
        if not self.enabled:
            return result

        try:
            result.requests, result.reasoning = await self.select(
                session_id, user_text, context_start=context_start
            )
            if not result.requests:
                logger.info(f"[{session_id[:8]}] Context init: all needed data already in context")
                return result

            params_by_source = {r.source: r.params for r in result.requests}
            fetched = await self._knowledge.fetch_many(
                [r.source for r in result.requests],
                owner_id,
                params_by_source,
            )
            for item in fetched:
                if item.ok:
                    await self._log.log_knowledge(session_id, item.source, item.formatted, params_by_source.get(item.source))
                    safe_emit(sink, knowledge_event(item.source))
                    result.loaded.append(item.source)
                else:
                    await self._log.log_error(session_id, item.error or "fetch failed", f"fetch_data:{item.source}")
                    result.failed.append(item.source)
            logger.info(
                f"[{session_id[:8]}] Context init: added {len(result.loaded)} data sources"
                + (f" ({result.reasoning[:60]})" if result.reasoning else "")
            )
        except Exception as ex:
            logger.warning(f"[{session_id[:8]}] Context initializer failed, continuing without it: {ex}")
            try:
                await self._log.log_error(session_id, ex, INITIALIZER_PURPOSE)
            except Exception as log_ex:
                logger.error(f"[{session_id[:8]}] Could not record initializer failure: {log_ex}")
        return result

    def _parse_requests(self, session_id: str, raw: Any) -> list[KnowledgeRequest]:
        if not isinstance(raw, list):
            return []
        requests: list[KnowledgeRequest] = []
        seen: set[str] = set()
        for item in raw:
            if not isinstance(item, dict):
                continue
            source = str(item.get("source", ""))
            if not self._knowledge.has(source):
                logger.warning(f"[{session_id[:8]}] Initializer selected unknown source {source!r}; ignoring")
                continue
            if source in seen:
                continue
            seen.add(source)
            try:
                reason = KnowledgeReason(item.get("reason", KnowledgeReason.NOT_IN_CONTEXT))
            except ValueError:
                reason = KnowledgeReason.NOT_IN_CONTEXT
            limit = item.get("limit")
            if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
                limit = None
            requests.append(KnowledgeRequest(source=source, reason=reason, limit=limit))
        return requests
