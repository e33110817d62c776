from typing import Any

from trainer_agent_loop.tool import ToolContext, ToolStatusMessage


class FetchDataTool:
    """Pulls named knowledge sources into the conversation on demand."""

    def __init__(self, source_names: list[str]):
        self._source_names = list(source_names)

    @property
    def name(self) -> str:
        return "fetch_data"

    @property
    def description(self) -> str:
        return (
            "Fetch additional data sources into context. Use when you need information "
            "that is not already present in the conversation."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "sources": {
                    "type": "array",
                    "items": {"type": "string", "enum": self._source_names},
                    "description": "Data source names to fetch",
                },
                "params": {
                    "type": "object",
                    "description": "Optional parameters keyed by source name, e.g. {\"history\": {\"limit\": 5}}",
                },
            },
            "required": ["sources"],
        }

    @property
    def status_message(self) -> ToolStatusMessage | None:
        return ToolStatusMessage(start="Gathering your info...", done="Context ready")

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        sources = tool_input.get("sources")
        if not sources and tool_input.get("source"):
            sources = [tool_input["source"]]
        if isinstance(sources, str):
            sources = [sources]
        if not sources or not isinstance(sources, list):
            return {"success": False, "error": "Invalid format: a non-empty 'sources' array is required"}

        unknown = [s for s in sources if s not in self._source_names or not context.data_sources.has(s)]
        known = [s for s in sources if s not in unknown]
        params = tool_input.get("params")
        params = params if isinstance(params, dict) else {}

        results = await context.data_sources.fetch_many(known, context.owner_id, params)
        data = {r.source: r.formatted for r in results if r.ok}
        errors = {r.source: r.error for r in results if r.error}
        for name in unknown:
            errors[name] = "unknown data source"
        if not data:
            return {"success": False, "error": f"No data could be loaded ({', '.join(errors)})", "errors": errors}
        return {"success": True, "data": data, "errors": errors}

    def format_result(self, result: dict[str, Any]) -> str:
        if not result.get("success"):
            return f"Data fetch failed: {result.get('error', 'unknown error')}"
        blocks = [
            f'<knowledge source="{source}">\n{formatted}\n</knowledge>'
            for source, formatted in result.get("data", {}).items()
        ]
        for source, error in (result.get("errors") or {}).items():
            blocks.append(f'<knowledge source="{source}" error="true">\n{error}\n</knowledge>')
        return f"Fetched {len(result.get('data', {}))} data sources\n" + "\n".join(blocks)
