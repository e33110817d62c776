import json
import time

import openai
from loguru import logger
from tenacity import retry

from trainer_agent_loop.providers.common import ModelResponse, ToolInvocation, Usage, default_retry_kwargs

# Map OpenAI finish reasons to Anthropic-style stop reasons.
_STOP_REASON_MAP = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "length": "max_tokens",
}


def _block_text(block) -> str:
    if isinstance(block, str):
        return block
    if isinstance(block, dict) and block.get("type") == "text":
        return str(block.get("text", ""))
    return ""


def _system_text(system: list[dict] | str) -> str:
    if isinstance(system, str):
        return system
    return "\n\n".join(t for t in (_block_text(b) for b in system) if t)


def _to_openai_messages(
    system: list[dict] | str,
    messages: list[dict],
) -> list[dict]:
    """Convert internal (Anthropic-style) messages to OpenAI chat format."""
    out: list[dict] = []

    system_prompt = _system_text(system)
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        role = msg["role"]
        content = msg.get("content", "")

        if role == "assistant":
            if isinstance(content, str):
                out.append({"role": "assistant", "content": content})
                continue

            text_parts: list[str] = []
            tool_calls: list[dict] = []
            for block in content:
                if block.get("type") == "text":
                    text_parts.append(block["text"])
                elif block.get("type") == "tool_use":
                    tool_calls.append({
                        "id": block["id"],
                        "type": "function",
                        "function": {
                            "name": block["name"],
                            "arguments": json.dumps(block["input"]),
                        },
                    })

            oai_msg: dict = {"role": "assistant"}
            oai_msg["content"] = "\n".join(text_parts) if text_parts else None
            if tool_calls:
                oai_msg["tool_calls"] = tool_calls
            out.append(oai_msg)

        elif role == "user":
            if isinstance(content, str):
                out.append({"role": "user", "content": content})
                continue

            # Tool results become "tool" messages and must come before any user text.
            text_parts_user: list[str] = []
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    tool_content = block.get("content", "")
                    if isinstance(tool_content, list):
                        tool_content = "\n".join(_block_text(sub) for sub in tool_content)
                    out.append({
                        "role": "tool",
                        "tool_call_id": block["tool_use_id"],
                        "content": str(tool_content),
                    })
                else:
                    text = _block_text(block)
                    if text:
                        text_parts_user.append(text)

            if text_parts_user:
                out.append({"role": "user", "content": "\n".join(text_parts_user)})

        else:
            out.append({"role": role, "content": content if isinstance(content, str) else str(content)})

    return out


def _to_openai_tools(tools: list[dict]) -> list[dict]:
    """Convert internal (Anthropic-style) tool dicts to OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tools
    ]


class OpenAIProvider:
    def __init__(self, api_key: str, *, client: openai.AsyncOpenAI | None = None):
        self._client = client or openai.AsyncOpenAI(api_key=api_key)

    @retry(**default_retry_kwargs((
        openai.RateLimitError,
        openai.APIConnectionError,
        openai.APITimeoutError,
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
        oai_messages = _to_openai_messages(system, messages)
        oai_tools = _to_openai_tools(tools)
        if force_tool:
            tool_choice: str | dict = {"type": "function", "function": {"name": force_tool}}
        else:
            tool_choice = "required"

        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(oai_messages)}, tools={len(oai_tools)}"
        )
        started = time.monotonic()
        response = await self._client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=oai_messages,
            tools=oai_tools,
            tool_choice=tool_choice,
            parallel_tool_calls=False,
        )
        duration_ms = int((time.monotonic() - started) * 1000)

        choice = response.choices[0]
        stop_reason = _STOP_REASON_MAP.get(choice.finish_reason or "stop", "end_turn")

        tool_calls: list[ToolInvocation] = []
        for call in choice.message.tool_calls or []:
            raw_args = call.function.arguments or ""
            try:
                parsed_input = json.loads(raw_args) if raw_args else {}
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse tool call arguments: {raw_args[:200]}")
                parsed_input = None
            tool_calls.append(ToolInvocation(id=call.id, name=call.function.name, input=parsed_input))

        usage = response.usage
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        details = getattr(usage, "prompt_tokens_details", None)
        cached = (getattr(details, "cached_tokens", 0) or 0) if details is not None else 0
        result_usage = Usage(
            input_tokens=max(0, prompt_tokens - cached),
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            cache_read_tokens=cached,
        )
        logger.debug(
            f"API response: stop_reason={stop_reason}, prompt_tokens={prompt_tokens}, "
            f"cached={cached}, tool_calls={len(tool_calls)}"
        )

        return ModelResponse(
            tool_calls=tool_calls,
            text=choice.message.content or "",
            stop_reason=stop_reason,
            usage=result_usage,
            model=getattr(response, "model", None) or model,
            duration_ms=duration_ms,
        )
