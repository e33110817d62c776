import asyncio

from tests.fakes import FakeDataSource, make_context
from tests.memory.base import MemoryStoreTestCase
from trainer_agent_loop.data_sources import DataSourceRegistry
from trainer_agent_loop.tools.data_tool import FetchDataTool


class FetchDataToolTests(MemoryStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._history = FakeDataSource("workout_history", "3 workouts this week")
        self._broken = FakeDataSource("nutrition", fail=True)
        self._registry = DataSourceRegistry([self._history, self._broken])
        self._tool = FetchDataTool(["workout_history", "nutrition"])
        self._sid = self._sessions.create_session("owner-1").id

    def _run(self, tool_input: dict) -> dict:
        return asyncio.run(self._tool.execute(tool_input, make_context(self._log, self._sid, data_sources=self._registry)))

    def test_fetches_known_sources_with_params(self) -> None:
        result = self._run({"sources": ["workout_history"], "params": {"workout_history": {"limit": 5}}})

        self.assertTrue(result["success"])
        self.assertEqual({"workout_history": "3 workouts this week"}, result["data"])
        self.assertEqual([("owner-1", {"limit": 5})], self._history.calls)
        formatted = self._tool.format_result(result)
        self.assertIn('<knowledge source="workout_history">\n3 workouts this week\n</knowledge>', formatted)

    def test_single_source_alias(self) -> None:
        result = self._run({"source": "workout_history"})
        self.assertTrue(result["success"])

    def test_partial_failure_keeps_loaded_data(self) -> None:
        result = self._run({"sources": ["workout_history", "nutrition", "sleep"]})

        self.assertTrue(result["success"])
        self.assertEqual(["workout_history"], list(result["data"]))
        self.assertEqual({"nutrition", "sleep"}, set(result["errors"]))
        self.assertEqual("unknown data source", result["errors"]["sleep"])
        self.assertIn('<knowledge source="nutrition" error="true">', self._tool.format_result(result))

    def test_nothing_loaded_is_a_failure(self) -> None:
        result = self._run({"sources": ["nutrition"]})
        self.assertFalse(result["success"])
        self.assertTrue(self._tool.format_result(result).startswith("Data fetch failed:"))

        invalid = self._run({"sources": []})
        self.assertFalse(invalid["success"])
        self.assertIn("sources", invalid["error"])
