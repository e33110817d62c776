from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class DataSourceConfig:
    name: str
    description: str


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str
    initializer_api_key: str
    data_source_api_key: str


@dataclass
class AppConfig:
    provider_name: str
    model: str
    initializer_provider_name: str
    initializer_model: str
    initializer_enabled: bool
    max_tokens: int
    initializer_max_tokens: int
    temperature: float
    max_iterations: int
    max_tool_result_chars: int
    db_path: str
    data_source_base_url: str
    knowledge_sources: list[DataSourceConfig]
    reference_sources: list[DataSourceConfig]
    data_source_timeout_seconds: float
    host: str
    port: int
    allowed_origins: list[str]
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _parse_sources(value: object) -> list[DataSourceConfig]:
    """Accepts ``["name", ...]`` or ``[{"Name": ..., "Description": ...}, ...]``."""
    if not isinstance(value, list):
        return []
    sources: list[DataSourceConfig] = []
    for item in value:
        if isinstance(item, str) and item.strip():
            sources.append(DataSourceConfig(name=item.strip(), description=item.strip().replace("_", " ")))
        elif isinstance(item, dict) and str(item.get("Name", "")).strip():
            name = str(item["Name"]).strip()
            sources.append(DataSourceConfig(name=name, description=str(item.get("Description", name.replace("_", " ")))))
    return sources


def parse_app_config(config: dict) -> AppConfig:
    provider_name = config.get("Provider", "anthropic").strip().lower()
    return AppConfig(
        provider_name=provider_name,
        model=config.get("Model", "claude-sonnet-4-5"),
        initializer_provider_name=str(config.get("InitializerProvider", provider_name)).strip().lower(),
        initializer_model=config.get("InitializerModel", "claude-haiku-4-5"),
        initializer_enabled=_to_bool(config.get("InitializerEnabled", True), default=True),
        max_tokens=int(config.get("MaxTokens", 4096)),
        initializer_max_tokens=int(config.get("InitializerMaxTokens", 1024)),
        temperature=float(config.get("Temperature", 0.7)),
        max_iterations=int(config.get("MaxIterations", 10)),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        db_path=str(config.get("DbPath", ".trainer_agent/sessions.db")),
        data_source_base_url=str(config.get("DataSourceBaseUrl", "")).strip(),
        knowledge_sources=_parse_sources(config.get("KnowledgeSources")),
        reference_sources=_parse_sources(config.get("ReferenceSources")),
        data_source_timeout_seconds=float(config.get("DataSourceTimeoutSeconds", 10)),
        host=str(config.get("Host", "127.0.0.1")),
        port=int(config.get("Port", 8000)),
        allowed_origins=list(config.get("AllowedOrigins", [])),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def _provider_key(provider_name: str) -> tuple[str, str]:
    env_var = "OPENAI_API_KEY" if provider_name == "openai" else "ANTHROPIC_API_KEY"
    return os.environ.get(env_var, ""), env_var


def resolve_runtime_env(provider_name: str, initializer_provider_name: str | None = None) -> RuntimeEnv:
    provider_api_key, provider_env_var = _provider_key(provider_name)
    initializer_api_key, _ = _provider_key(initializer_provider_name or provider_name)
    return RuntimeEnv(
        provider_api_key=provider_api_key,
        provider_env_var=provider_env_var,
        initializer_api_key=initializer_api_key,
        data_source_api_key=os.environ.get("DATA_SOURCE_API_KEY", ""),
    )
