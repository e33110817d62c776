from typing import Protocol, runtime_checkable

from trainer_agent_loop.providers.common import ModelResponse


@runtime_checkable
class LLMProvider(Protocol):
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
        """Make one model call that must answer with exactly one tool invocation.

        ``system``, ``messages`` and ``tools`` are in Anthropic-style internal
        format and may carry ``cache_control`` markers; providers without
        explicit cache control drop them. ``force_tool`` pins the call to a
        single named tool.
        """
        ...


def create_provider(provider_name: str, api_key: str) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from trainer_agent_loop.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == "openai":
        from trainer_agent_loop.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
