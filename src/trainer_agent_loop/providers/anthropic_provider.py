import time

import anthropic
from loguru import logger
from tenacity import retry

from trainer_agent_loop.providers.common import ModelResponse, ToolInvocation, Usage, default_retry_kwargs


class AnthropicProvider:
    def __init__(self, api_key: str, *, client: anthropic.AsyncAnthropic | None = None):
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    @retry(**default_retry_kwargs((
        anthropic.RateLimitError,
        anthropic.APIConnectionError,
        anthropic.APITimeoutError,
    )))
    async def call_tool(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system: list[dict],
        messages: list[dict],
        tools: list[dict],
        *,
        force_tool: str | None = None,
    ) -> ModelResponse:
        if force_tool:
            tool_choice = {"type": "tool", "name": force_tool, "disable_parallel_tool_use": True}
        else:
            tool_choice = {"type": "any", "disable_parallel_tool_use": True}

        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(messages)}, tools={len(tools)}"
        )
        started = time.monotonic()
        response = await self._client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=messages,
            tools=tools,
            tool_choice=tool_choice,
        )
        duration_ms = int((time.monotonic() - started) * 1000)

        usage = response.usage
        result_usage = Usage(
            input_tokens=usage.input_tokens or 0,
            output_tokens=usage.output_tokens or 0,
            cache_read_tokens=getattr(usage, "cache_read_input_tokens", None) or 0,
            cache_write_tokens=getattr(usage, "cache_creation_input_tokens", None) or 0,
        )
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, input_tokens={result_usage.input_tokens}, "
            f"output_tokens={result_usage.output_tokens}, cache_read={result_usage.cache_read_tokens}, "
            f"cache_write={result_usage.cache_write_tokens}"
        )

        text_parts: list[str] = []
        tool_calls: list[ToolInvocation] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolInvocation(id=block.id, name=block.name, input=block.input))

        return ModelResponse(
            tool_calls=tool_calls,
            text="\n".join(text_parts),
            stop_reason=response.stop_reason or "end_turn",
            usage=result_usage,
            model=getattr(response, "model", None) or model,
            duration_ms=duration_ms,
        )
