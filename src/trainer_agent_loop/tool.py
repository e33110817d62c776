from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from trainer_agent_loop.data_sources import DataSourceRegistry
from trainer_agent_loop.memory.scratch import ScratchView
from trainer_agent_loop.memory.session_log import SessionArtifacts


@dataclass(frozen=True)
class ToolStatusMessage:
    start: str | None = None
    done: str | None = None


@dataclass
class ToolContext:
    owner_id: str
    session_id: str
    artifacts: SessionArtifacts
    scratch: ScratchView
    data_sources: DataSourceRegistry


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    @property
    def status_message(self) -> ToolStatusMessage | None: ...

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> dict[str, Any]: ...

    def format_result(self, result: dict[str, Any]) -> str: ...
