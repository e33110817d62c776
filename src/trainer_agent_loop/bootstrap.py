from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI

from trainer_agent_loop.agent import Agent
from trainer_agent_loop.agent_config import AgentConfig
from trainer_agent_loop.app_config import AppConfig, DataSourceConfig, RuntimeEnv
from trainer_agent_loop.data_sources import DataSourceReferenceData, DataSourceRegistry, HttpDataSource
from trainer_agent_loop.logging_config import setup_logging
from trainer_agent_loop.memory import MemoryStore
from trainer_agent_loop.server.app import create_app
from trainer_agent_loop.system_prompt import build_system_prompt


@dataclass
class AppRuntime:
    agent: Agent
    app: FastAPI
    memory_store: MemoryStore
    knowledge: DataSourceRegistry
    reference: DataSourceRegistry
    log_descriptions: list[str]


def build_data_sources(
    sources: list[DataSourceConfig],
    base_url: str,
    api_key: str,
    timeout_seconds: float,
) -> DataSourceRegistry:
    registry = DataSourceRegistry()
    if not base_url:
        return registry
    for source in sources:
        registry.register(
            HttpDataSource(
                source.name,
                source.description,
                base_url,
                api_key=api_key,
                timeout_seconds=timeout_seconds,
            )
        )
    return registry


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    if not env.provider_api_key:
        raise ValueError(f"{env.provider_env_var} environment variable is required.")

    db_path = Path(app.db_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    memory_store = MemoryStore(str(db_path))

    knowledge = build_data_sources(
        app.knowledge_sources, app.data_source_base_url, env.data_source_api_key, app.data_source_timeout_seconds
    )
    reference = build_data_sources(
        app.reference_sources, app.data_source_base_url, env.data_source_api_key, app.data_source_timeout_seconds
    )

    agent = Agent(
        AgentConfig(
            store=memory_store,
            provider_name=app.provider_name,
            api_key=env.provider_api_key,
            model=app.model,
            max_tokens=app.max_tokens,
            temperature=app.temperature,
            initializer_enabled=app.initializer_enabled,
            initializer_provider_name=app.initializer_provider_name,
            initializer_api_key=env.initializer_api_key,
            initializer_model=app.initializer_model,
            initializer_max_tokens=app.initializer_max_tokens,
            system_prompt=build_system_prompt(),
            max_tool_result_chars=app.max_tool_result_chars,
            max_iterations=app.max_iterations,
            knowledge=knowledge,
            reference_data=DataSourceReferenceData(reference, reference.names()) if reference.names() else None,
        )
    )

    return AppRuntime(
        agent=agent,
        app=create_app(agent, allowed_origins=app.allowed_origins, close_agent_on_shutdown=True),
        memory_store=memory_store,
        knowledge=knowledge,
        reference=reference,
        log_descriptions=log_descriptions,
    )
