from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

MAX_RETRY_ATTEMPTS = 5


class InvalidModelResponseError(Exception):
    """The model did not return exactly one usable tool invocation."""


def on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt}/{MAX_RETRY_ATTEMPTS})...")


def default_retry_kwargs(exception_types: tuple[type[Exception], ...]) -> dict:
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=1, min=1, max=30),
        "stop": stop_after_attempt(MAX_RETRY_ATTEMPTS),
        "before_sleep": on_retry,
        "reraise": True,
    }


@dataclass(frozen=True)
class Usage:
    """Token usage of one call.

    ``input_tokens`` counts only uncached prompt tokens; cache reads and cache
    writes are reported separately so they can be priced separately.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_read_tokens + self.cache_write_tokens


@dataclass(frozen=True)
class ToolInvocation:
    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ModelResponse:
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    text: str = ""
    stop_reason: str = "end_turn"
    usage: Usage = field(default_factory=Usage)
    model: str = ""
    duration_ms: int = 0

    @property
    def tool_names(self) -> list[str]:
        return [call.name for call in self.tool_calls]

    def require_single_tool_call(self, allowed_names: set[str] | frozenset[str]) -> ToolInvocation:
        if not self.tool_calls:
            preview = self.text[:200] if self.text else "(no text)"
            raise InvalidModelResponseError(f"Model returned no tool call: {preview}")
        if len(self.tool_calls) > 1:
            raise InvalidModelResponseError(
                f"Model returned {len(self.tool_calls)} tool calls, expected exactly one: "
                f"{', '.join(self.tool_names)}"
            )
        call = self.tool_calls[0]
        if call.name not in allowed_names:
            raise InvalidModelResponseError(f"Model called unknown tool: {call.name}")
        if not isinstance(call.input, dict):
            raise InvalidModelResponseError(f"Tool call arguments for {call.name} are not an object")
        return call
