from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Callable

from loguru import logger

from trainer_agent_loop.tool import Tool, ToolContext, ToolStatusMessage

DEFAULT_MAX_TOOL_RESULT_CHARS = 40_000

_TOOL_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


class ControlTool(StrEnum):
    """Tools that steer the loop rather than do work. The set is closed."""

    NOTIFY_USER = "message_notify_user"
    ASK_USER = "message_ask_user"
    IDLE = "idle"


TERMINAL_TOOLS = frozenset({ControlTool.ASK_USER.value, ControlTool.IDLE.value})


class ToolRegistrationError(Exception):
    """A tool failed validation when it was registered."""


class UnknownToolError(Exception):
    """Dispatch was asked for a tool that is not registered."""


@dataclass
class DispatchResult:
    result: dict[str, Any]
    formatted: str
    success: bool
    duration_ms: int


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None, *, max_result_chars: int = DEFAULT_MAX_TOOL_RESULT_CHARS):
        self._tools: dict[str, Tool] = {}
        self._max_result_chars = max_result_chars
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if not isinstance(tool, Tool):
            raise ToolRegistrationError(f"Object does not implement the Tool protocol: {tool!r}")
        name = tool.name
        if not isinstance(name, str) or not _TOOL_NAME_RE.match(name):
            raise ToolRegistrationError(f"Invalid tool name {name!r}: must match {_TOOL_NAME_RE.pattern}")
        if name in self._tools:
            raise ToolRegistrationError(f"Duplicate tool name: {name}")
        schema = tool.input_schema
        if not isinstance(schema, dict) or schema.get("type") != "object":
            raise ToolRegistrationError(f"Tool {name} input_schema must be a JSON schema of type 'object'")
        if "properties" in schema and not isinstance(schema["properties"], dict):
            raise ToolRegistrationError(f"Tool {name} input_schema.properties must be an object")
        if not isinstance(tool.description, str) or not tool.description.strip():
            raise ToolRegistrationError(f"Tool {name} needs a description")
        self._tools[name] = tool

    def require_control_tools(self) -> None:
        missing = [c.value for c in ControlTool if c.value not in self._tools]
        if missing:
            raise ToolRegistrationError(f"Missing control tools: {', '.join(missing)}")

    def get(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(f"Unknown tool: {name}") from None

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> frozenset[str]:
        return frozenset(self._tools)

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def definitions(self) -> list[dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "input_schema": t.input_schema}
            for t in self._tools.values()
        ]

    def status_message(self, name: str) -> ToolStatusMessage | None:
        tool = self._tools.get(name)
        return tool.status_message if tool is not None else None

    async def dispatch(self, name: str, arguments: dict[str, Any], context: ToolContext) -> DispatchResult:
        tool = self.get(name)
        started = time.monotonic()
        try:
            result = await tool.execute(arguments, context)
            if not isinstance(result, dict):
                result = {"success": True, "value": result}
            success = result.get("success", True) is not False
            formatted = tool.format_result(result)
        except Exception as ex:
            logger.warning(f"[{context.session_id[:8]}] Tool {name} raised {type(ex).__name__}: {ex}")
            result = {"success": False, "error": str(ex) or type(ex).__name__}
            success = False
            formatted = f"Error: {result['error']}"
        duration_ms = int((time.monotonic() - started) * 1000)

        formatted = self._truncate(name, formatted)
        wrapped = f"<result>\n{formatted}\n</result>" if success else f'<result error="true">\n{formatted}\n</result>'
        return DispatchResult(result=result, formatted=wrapped, success=success, duration_ms=duration_ms)

    def _truncate(self, name: str, text: str) -> str:
        if self._max_result_chars <= 0 or len(text) <= self._max_result_chars:
            return text
        original_length = len(text)
        logger.warning(f"{name} output truncated from {original_length:,} to {self._max_result_chars:,} chars")
        return (
            text[: self._max_result_chars]
            + f"\n\n[OUTPUT TRUNCATED: Showing {self._max_result_chars:,} of {original_length:,} characters from {name}]"
        )


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[dict], bool]
    build: Callable[[dict], list[Tool]]


def _always(_: dict) -> bool:
    return True


def _control_tools(_: dict) -> list[Tool]:
    from trainer_agent_loop.tools.communication import AskUserTool, IdleTool, NotifyUserTool

    return [NotifyUserTool(), AskUserTool(), IdleTool()]


def _data_enabled(ctx: dict) -> bool:
    return bool(ctx.get("knowledge_sources"))


def _data_tools(ctx: dict) -> list[Tool]:
    from trainer_agent_loop.tools.data_tool import FetchDataTool

    return [FetchDataTool(ctx["knowledge_sources"])]


_GROUPS = [
    ToolGroup(enabled=_always, build=_control_tools),
    ToolGroup(enabled=_data_enabled, build=_data_tools),
]


def get_all(*, knowledge_sources: list[str] | None = None) -> list[Tool]:
    ctx = {"knowledge_sources": list(knowledge_sources or [])}
    tools: list[Tool] = []
    for group in _GROUPS:
        if group.enabled(ctx):
            tools.extend(group.build(ctx))
    return tools


def build_registry(
    *,
    knowledge_sources: list[str] | None = None,
    extra_tools: list[Tool] | None = None,
    max_result_chars: int = DEFAULT_MAX_TOOL_RESULT_CHARS,
) -> ToolRegistry:
    registry = ToolRegistry(get_all(knowledge_sources=knowledge_sources), max_result_chars=max_result_chars)
    for tool in extra_tools or []:
        registry.register(tool)
    registry.require_control_tools()
    return registry
