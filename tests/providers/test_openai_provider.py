import asyncio
import json
import unittest
from types import SimpleNamespace

from trainer_agent_loop.providers.openai_provider import (
    _STOP_REASON_MAP,
    OpenAIProvider,
    _to_openai_messages,
    _to_openai_tools,
)


class _FakeCompletions:
    def __init__(self, response):
        self._response = response
        self.requests: list[dict] = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        return self._response


class _FakeClient:
    def __init__(self, response):
        self.chat = SimpleNamespace(completions=_FakeCompletions(response))


def _completion(tool_calls=None, content=None, finish_reason="tool_calls", cached=0) -> SimpleNamespace:
    return SimpleNamespace(
        model="gpt-4o-2024-08-06",
        choices=[
            SimpleNamespace(
                finish_reason=finish_reason,
                message=SimpleNamespace(content=content, tool_calls=tool_calls),
            )
        ],
        usage=SimpleNamespace(
            prompt_tokens=1000,
            completion_tokens=50,
            prompt_tokens_details=SimpleNamespace(cached_tokens=cached),
        ),
    )


def _call(call_id: str, name: str, arguments: str) -> SimpleNamespace:
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


class ToOpenAIMessagesTests(unittest.TestCase):
    def test_system_blocks_are_joined(self) -> None:
        result = _to_openai_messages(
            [{"type": "text", "text": "Rules", "cache_control": {"type": "ephemeral"}}, {"type": "text", "text": "Data"}],
            [],
        )
        self.assertEqual([{"role": "system", "content": "Rules\n\nData"}], result)

    def test_tool_use_and_result_round_trip(self) -> None:
        result = _to_openai_messages(
            "",
            [
                {"role": "user", "content": [{"type": "text", "text": "hi"}]},
                {
                    "role": "assistant",
                    "content": [{"type": "tool_use", "id": "c1", "name": "fetch_data", "input": {"sources": ["a"]}}],
                },
                {
                    "role": "user",
                    "content": [
                        {"type": "tool_result", "tool_use_id": "c1", "content": "<result>ok</result>"},
                        {"type": "text", "text": "<knowledge source=\"a\">x</knowledge>", "cache_control": {"type": "ephemeral"}},
                    ],
                },
            ],
        )
        self.assertEqual(["user", "assistant", "tool", "user"], [m["role"] for m in result])
        self.assertIsNone(result[1]["content"])
        self.assertEqual("fetch_data", result[1]["tool_calls"][0]["function"]["name"])
        self.assertEqual({"sources": ["a"]}, json.loads(result[1]["tool_calls"][0]["function"]["arguments"]))
        self.assertEqual({"role": "tool", "tool_call_id": "c1", "content": "<result>ok</result>"}, result[2])
        self.assertNotIn("cache_control", result[3])

    def test_tools_become_functions(self) -> None:
        result = _to_openai_tools(
            [{"name": "idle", "description": "Stop", "input_schema": {"type": "object"}, "cache_control": {"type": "ephemeral"}}]
        )
        self.assertEqual(
            [{"type": "function", "function": {"name": "idle", "description": "Stop", "parameters": {"type": "object"}}}],
            result,
        )

    def test_stop_reason_map(self) -> None:
        self.assertEqual("tool_use", _STOP_REASON_MAP["tool_calls"])
        self.assertEqual("max_tokens", _STOP_REASON_MAP["length"])


class OpenAIProviderTests(unittest.TestCase):
    def test_requires_one_tool_call_without_parallel_calls(self) -> None:
        client = _FakeClient(_completion([_call("call_1", "idle", '{"reason": "done"}')], cached=400))
        provider = OpenAIProvider("key", client=client)

        response = asyncio.run(provider.call_tool("gpt-4o", 256, 0.2, [{"type": "text", "text": "s"}], [], []))

        request = client.chat.completions.requests[0]
        self.assertEqual("required", request["tool_choice"])
        self.assertFalse(request["parallel_tool_calls"])
        self.assertEqual(["idle"], response.tool_names)
        self.assertEqual({"reason": "done"}, response.tool_calls[0].input)
        self.assertEqual("tool_use", response.stop_reason)
        self.assertEqual(600, response.usage.input_tokens)
        self.assertEqual(400, response.usage.cache_read_tokens)
        self.assertEqual(50, response.usage.output_tokens)

    def test_forced_tool_uses_named_function(self) -> None:
        client = _FakeClient(_completion([_call("call_1", "select_context", "{}")]))
        asyncio.run(OpenAIProvider("key", client=client).call_tool("gpt-4o", 256, 0, [], [], [], force_tool="select_context"))
        self.assertEqual(
            {"type": "function", "function": {"name": "select_context"}},
            client.chat.completions.requests[0]["tool_choice"],
        )

    def test_unparseable_arguments_yield_no_input(self) -> None:
        client = _FakeClient(_completion([_call("call_1", "idle", "{not json")]))
        response = asyncio.run(OpenAIProvider("key", client=client).call_tool("gpt-4o", 256, 0, [], [], []))
        self.assertIsNone(response.tool_calls[0].input)

    def test_text_only_reply(self) -> None:
        client = _FakeClient(_completion(None, content="Hello", finish_reason="stop"))
        response = asyncio.run(OpenAIProvider("key", client=client).call_tool("gpt-4o", 256, 0, [], [], []))
        self.assertEqual([], response.tool_calls)
        self.assertEqual("Hello", response.text)
        self.assertEqual("end_turn", response.stop_reason)


if __name__ == "__main__":
    unittest.main()
