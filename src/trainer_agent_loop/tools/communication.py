from typing import Any

from trainer_agent_loop.tool import ToolContext, ToolStatusMessage
from trainer_agent_loop.tool_registry import ControlTool


def _preview(text: str, max_chars: int = 50) -> str:
    return text if len(text) <= max_chars else text[:max_chars] + "..."


class NotifyUserTool:
    @property
    def name(self) -> str:
        return ControlTool.NOTIFY_USER.value

    @property
    def description(self) -> str:
        return (
            "Send a message to the user without expecting a response. Use for confirmations, "
            "status updates and results. Optionally include an artifact_id to deliver a "
            "previously created artifact with the message."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "message": {
                    "type": "string",
                    "description": "The message to display to the user",
                },
                "artifact_id": {
                    "type": "string",
                    "description": "Optional id of an artifact created earlier in this session (e.g. art_x7k2m9p4)",
                },
            },
            "required": ["message"],
        }

    @property
    def status_message(self) -> ToolStatusMessage | None:
        return None

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        message = str(tool_input.get("message", ""))
        result: dict[str, Any] = {"success": True, "type": "notification", "message": message}

        artifact_id = tool_input.get("artifact_id")
        if artifact_id:
            artifact = await context.artifacts.get(str(artifact_id))
            if artifact is None:
                result["warning"] = f"Artifact {artifact_id} was not found in this session; message sent without it."
            else:
                result["artifact_id"] = artifact_id
                result["artifact"] = artifact
        return result

    def format_result(self, result: dict[str, Any]) -> str:
        text = f'Notified user: "{_preview(result.get("message", ""))}"'
        if result.get("artifact_id"):
            text += f" (delivered artifact {result['artifact_id']})"
        if result.get("warning"):
            text += f"\nWarning: {result['warning']}"
        return text


class AskUserTool:
    @property
    def name(self) -> str:
        return ControlTool.ASK_USER.value

    @property
    def description(self) -> str:
        return (
            "Ask the user a question and wait for their response. Use only when you genuinely "
            "need clarification or input. Ends the current turn."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "question": {
                    "type": "string",
                    "description": "The question to ask the user",
                },
                "options": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Optional suggested responses",
                },
            },
            "required": ["question"],
        }

    @property
    def status_message(self) -> ToolStatusMessage | None:
        return None

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        options = tool_input.get("options") or []
        return {
            "success": True,
            "type": "question",
            "question": str(tool_input.get("question", "")),
            "options": [str(o) for o in options] if isinstance(options, list) else [],
            "awaiting_response": True,
        }

    def format_result(self, result: dict[str, Any]) -> str:
        return f'Asked user: "{_preview(result.get("question", ""))}"'


class IdleTool:
    @property
    def name(self) -> str:
        return ControlTool.IDLE.value

    @property
    def description(self) -> str:
        return "Signal that the current task is complete and you are waiting for user input. Always call this when done."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "reason": {
                    "type": "string",
                    "description": "Brief reason for going idle",
                },
            },
            "required": ["reason"],
        }

    @property
    def status_message(self) -> ToolStatusMessage | None:
        return ToolStatusMessage(start="Wrapping up...", done="All done")

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return {"success": True, "idle": True, "reason": str(tool_input.get("reason", ""))}

    def format_result(self, result: dict[str, Any]) -> str:
        return f"Agent idle: {result.get('reason', '')}"
