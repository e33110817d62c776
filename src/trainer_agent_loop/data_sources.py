from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
from loguru import logger

FETCH_ERROR_TEXT = "Error loading data."


class UnknownDataSourceError(Exception):
    """No data source is registered under the requested name."""


class DataSourceError(Exception):
    """A data source could not produce a result."""


@dataclass
class DataSourceResult:
    source: str
    raw: Any
    formatted: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@runtime_checkable
class DataSource(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    async def fetch(self, owner_id: str, params: dict[str, Any]) -> DataSourceResult: ...


class DataSourceRegistry:
    def __init__(self, sources: list[DataSource] | None = None):
        self._sources: dict[str, DataSource] = {}
        for source in sources or []:
            self.register(source)

    def register(self, source: DataSource) -> None:
        if not isinstance(source, DataSource):
            raise TypeError(f"Not a data source: {source!r}")
        if source.name in self._sources:
            raise ValueError(f"Data source already registered: {source.name}")
        self._sources[source.name] = source

    def get(self, name: str) -> DataSource:
        try:
            return self._sources[name]
        except KeyError:
            raise UnknownDataSourceError(f"Unknown data source: {name}") from None

    def has(self, name: str) -> bool:
        return name in self._sources

    def names(self) -> list[str]:
        return list(self._sources)

    def describe(self) -> list[dict[str, str]]:
        return [{"name": s.name, "description": s.description} for s in self._sources.values()]

    async def fetch(self, name: str, owner_id: str, params: dict[str, Any] | None = None) -> DataSourceResult:
        return await self.get(name).fetch(owner_id, dict(params or {}))

    async def fetch_many(
        self,
        names: list[str],
        owner_id: str,
        params_by_source: dict[str, dict[str, Any]] | None = None,
    ) -> list[DataSourceResult]:
        """Fetch sources concurrently; a failing source yields an error result instead of raising."""
        params_by_source = params_by_source or {}

        async def _one(name: str) -> DataSourceResult:
            try:
                return await self.fetch(name, owner_id, params_by_source.get(name))
            except Exception as ex:
                logger.warning(f"Data source {name} failed: {ex}")
                return DataSourceResult(source=name, raw=None, formatted=FETCH_ERROR_TEXT, error=str(ex) or type(ex).__name__)

        return list(await asyncio.gather(*(_one(name) for name in names)))


class HttpDataSource:
    """GET ``{base_url}/{name}?owner_id=...`` returning ``{"data": ..., "formatted": "..."}``."""

    def __init__(
        self,
        name: str,
        description: str,
        base_url: str,
        *,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._name = name
        self._description = description
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._client = client

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    async def fetch(self, owner_id: str, params: dict[str, Any]) -> DataSourceResult:
        query: dict[str, Any] = {"owner_id": owner_id}
        for key, value in params.items():
            if value is None:
                continue
            query[key] = json.dumps(value) if isinstance(value, (dict, list)) else value
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        url = f"{self._base_url}/{self._name}"

        try:
            if self._client is not None:
                response = await self._client.get(url, params=query, headers=headers, timeout=self._timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                    response = await client.get(url, params=query, headers=headers)
        except httpx.TimeoutException as ex:
            raise DataSourceError(f"{self._name}: request timed out after {self._timeout_seconds}s") from ex
        except httpx.HTTPError as ex:
            raise DataSourceError(f"{self._name}: {ex}") from ex

        if response.status_code >= 400:
            raise DataSourceError(f"{self._name}: HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as ex:
            raise DataSourceError(f"{self._name}: response is not JSON") from ex

        if not isinstance(body, dict):
            body = {"data": body}
        raw = body.get("data")
        formatted = body.get("formatted")
        if not isinstance(formatted, str):
            formatted = json.dumps(raw, indent=2, default=str)
        return DataSourceResult(source=self._name, raw=raw, formatted=formatted)


class ReferenceDataProvider(Protocol):
    async def load(self, owner_id: str) -> str: ...


class DataSourceReferenceData:
    """Stable per-owner reference block placed in the system prompt, fetched fresh on each build."""

    def __init__(self, registry: DataSourceRegistry, source_names: list[str]):
        self._registry = registry
        self._source_names = list(source_names)

    async def load(self, owner_id: str) -> str:
        names = [name for name in self._source_names if self._registry.has(name)]
        results = await self._registry.fetch_many(names, owner_id)
        return format_user_data(results)


def format_user_data(results: list[DataSourceResult]) -> str:
    parts = ["<user_data>"]
    for result in results:
        parts.append(f"<{result.source}>\n{result.formatted.strip()}\n</{result.source}>")
    if len(parts) == 1:
        parts.append("No reference data available.")
    parts.append("</user_data>")
    return "\n".join(parts)
