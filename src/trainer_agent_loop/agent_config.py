from dataclasses import dataclass, field

from trainer_agent_loop.data_sources import DataSourceRegistry, ReferenceDataProvider
from trainer_agent_loop.memory.store import MemoryStore
from trainer_agent_loop.provider import LLMProvider
from trainer_agent_loop.tool import Tool
from trainer_agent_loop.tool_registry import DEFAULT_MAX_TOOL_RESULT_CHARS
from trainer_agent_loop.turn_engine import MAX_ITERATIONS


@dataclass
class AgentConfig:
    store: MemoryStore
    provider_name: str = "anthropic"
    api_key: str = ""
    provider: LLMProvider | None = None
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    temperature: float = 0.7
    initializer_enabled: bool = True
    initializer_provider_name: str = ""
    initializer_api_key: str = ""
    initializer_provider: LLMProvider | None = None
    initializer_model: str = "claude-haiku-4-5"
    initializer_max_tokens: int = 1024
    tools: list[Tool] = field(default_factory=list)
    system_prompt: str = ""
    max_tool_result_chars: int = DEFAULT_MAX_TOOL_RESULT_CHARS
    max_iterations: int = MAX_ITERATIONS
    knowledge: DataSourceRegistry = field(default_factory=DataSourceRegistry)
    reference_data: ReferenceDataProvider | None = None
