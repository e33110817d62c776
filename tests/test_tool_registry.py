import asyncio
from typing import Any

from tests.fakes import make_context
from tests.memory.base import MemoryStoreTestCase
from trainer_agent_loop.tool import ToolStatusMessage
from trainer_agent_loop.tool_registry import (
    ControlTool,
    ToolRegistrationError,
    ToolRegistry,
    UnknownToolError,
    build_registry,
)


class _EchoTool:
    def __init__(
        self,
        name: str = "echo",
        schema: Any = None,
        description: str = "Echo the input back",
        raises: Exception | None = None,
        output: str | None = None,
    ):
        self._name = name
        self._schema = schema if schema is not None else {"type": "object", "properties": {"text": {"type": "string"}}}
        self._description = description
        self._raises = raises
        self._output = output

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._schema

    @property
    def status_message(self) -> ToolStatusMessage | None:
        return ToolStatusMessage(start="Echoing...", done="Echoed")

    async def execute(self, tool_input: dict[str, Any], context) -> dict[str, Any]:
        if self._raises is not None:
            raise self._raises
        return {"success": True, "text": tool_input.get("text", "")}

    def format_result(self, result: dict[str, Any]) -> str:
        return self._output if self._output is not None else f"echo: {result['text']}"


class ToolRegistryTests(MemoryStoreTestCase):
    def test_registration_validation(self) -> None:
        registry = ToolRegistry()
        registry.register(_EchoTool())

        cases = [
            _EchoTool(),  # duplicate
            _EchoTool(name="bad name!"),
            _EchoTool(name="x" * 65),
            _EchoTool(name="arr", schema={"type": "array"}),
            _EchoTool(name="props", schema={"type": "object", "properties": []}),
            _EchoTool(name="nodesc", description="  "),
            object(),
        ]
        for tool in cases:
            with self.subTest(tool=getattr(tool, "name", tool)):
                with self.assertRaises(ToolRegistrationError):
                    registry.register(tool)
        self.assertEqual(frozenset({"echo"}), registry.names())

    def test_control_tools_are_required(self) -> None:
        registry = ToolRegistry([_EchoTool()])
        with self.assertRaises(ToolRegistrationError):
            registry.require_control_tools()

        full = build_registry()
        self.assertTrue({c.value for c in ControlTool} <= full.names())
        self.assertNotIn("fetch_data", full.names())

    def test_fetch_data_is_registered_with_knowledge_sources(self) -> None:
        registry = build_registry(knowledge_sources=["profile", "workout_history"], extra_tools=[_EchoTool()])
        self.assertIn("fetch_data", registry.names())
        self.assertIn("echo", registry.names())
        definition = next(d for d in registry.definitions() if d["name"] == "fetch_data")
        self.assertEqual(
            ["profile", "workout_history"],
            definition["input_schema"]["properties"]["sources"]["items"]["enum"],
        )

    def test_unknown_tool_raises(self) -> None:
        with self.assertRaises(UnknownToolError):
            build_registry().get("nope")
        self.assertIsNone(build_registry().status_message("nope"))

    def test_dispatch_wraps_successful_output(self) -> None:
        sid = self._sessions.create_session("owner-1").id
        registry = ToolRegistry([_EchoTool()])
        dispatch = asyncio.run(registry.dispatch("echo", {"text": "hi"}, make_context(self._log, sid)))

        self.assertTrue(dispatch.success)
        self.assertEqual({"success": True, "text": "hi"}, dispatch.result)
        self.assertEqual("<result>\necho: hi\n</result>", dispatch.formatted)
        self.assertGreaterEqual(dispatch.duration_ms, 0)

    def test_dispatch_turns_exceptions_into_error_results(self) -> None:
        sid = self._sessions.create_session("owner-1").id
        registry = ToolRegistry([_EchoTool(raises=RuntimeError("backend down"))])
        dispatch = asyncio.run(registry.dispatch("echo", {}, make_context(self._log, sid)))

        self.assertFalse(dispatch.success)
        self.assertEqual({"success": False, "error": "backend down"}, dispatch.result)
        self.assertEqual('<result error="true">\nError: backend down\n</result>', dispatch.formatted)

    def test_dispatch_truncates_long_output(self) -> None:
        sid = self._sessions.create_session("owner-1").id
        registry = ToolRegistry([_EchoTool(output="x" * 500)], max_result_chars=100)
        dispatch = asyncio.run(registry.dispatch("echo", {}, make_context(self._log, sid)))

        self.assertIn("x" * 100 + "\n\n[OUTPUT TRUNCATED: Showing 100 of 500 characters from echo]", dispatch.formatted)
        self.assertNotIn("x" * 101, dispatch.formatted)
