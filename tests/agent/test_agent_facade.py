import asyncio

from tests.fakes import FakeDataSource, ScriptedProvider, tool_response
from tests.memory.base import MemoryStoreTestCase
from trainer_agent_loop.agent import Agent
from trainer_agent_loop.agent_config import AgentConfig
from trainer_agent_loop.data_sources import DataSourceRegistry
from trainer_agent_loop.memory import SessionNotFoundError
from trainer_agent_loop.turn_engine import TurnState


class _OverlapTrackingProvider(ScriptedProvider):
    def __init__(self, responses):
        super().__init__(responses)
        self.in_flight = 0
        self.max_in_flight = 0

    async def call_tool(self, *args, **kwargs):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await super().call_tool(*args, **kwargs)
        finally:
            self.in_flight -= 1


class AgentFacadeTests(MemoryStoreTestCase):
    def _agent(self, provider, **kwargs) -> Agent:
        return Agent(AgentConfig(store=self._store, provider=provider, initializer_enabled=False, **kwargs))

    def test_turns_for_one_session_are_serialized(self) -> None:
        provider = _OverlapTrackingProvider([tool_response("idle", {"reason": "ok"}) for _ in range(2)])
        agent = self._agent(provider)
        sid = asyncio.run(agent.start_session("owner-1")).id

        async def _run():
            return await asyncio.gather(
                agent.run_turn("owner-1", "first", session_id=sid),
                agent.run_turn("owner-1", "second", session_id=sid),
            )

        results = asyncio.run(_run())
        self.assertEqual([TurnState.DONE, TurnState.DONE], [r.state for r in results])
        self.assertEqual(1, provider.max_in_flight)
        self.assertEqual(0, agent.locked_sessions)
        sequences = [e.sequence_number for e in asyncio.run(self._events.timeline(sid))]
        self.assertEqual(list(range(1, len(sequences) + 1)), sequences)

    def test_session_locks_are_released_after_turns_finish(self) -> None:
        provider = ScriptedProvider([tool_response("idle", {"reason": "ok"}) for _ in range(20)])
        agent = self._agent(provider)

        async def _run():
            for i in range(20):
                result = await agent.run_turn(f"owner-{i}", "hi")
                self.assertEqual(TurnState.DONE, result.state)

        asyncio.run(_run())
        self.assertEqual(0, agent.locked_sessions)

    def test_running_turns_share_one_session_lock(self) -> None:
        provider = _OverlapTrackingProvider([tool_response("idle", {"reason": "ok"}) for _ in range(2)])
        agent = self._agent(provider)
        sid = asyncio.run(agent.start_session("owner-1")).id

        async def _run():
            first = asyncio.create_task(agent.run_turn("owner-1", "first", session_id=sid))
            second = asyncio.create_task(agent.run_turn("owner-1", "second", session_id=sid))
            while provider.in_flight == 0:
                await asyncio.sleep(0.001)
            held = agent.locked_sessions
            await asyncio.gather(first, second)
            return held

        self.assertEqual(1, asyncio.run(_run()))
        self.assertEqual(0, agent.locked_sessions)

    def test_turns_for_different_sessions_overlap(self) -> None:
        provider = _OverlapTrackingProvider([tool_response("idle", {"reason": "ok"}) for _ in range(2)])
        agent = self._agent(provider)
        a = asyncio.run(agent.start_session("owner-1")).id
        b = asyncio.run(agent.start_session("owner-2")).id

        async def _run():
            await asyncio.gather(
                agent.run_turn("owner-1", "hi", session_id=a),
                agent.run_turn("owner-2", "hi", session_id=b),
            )

        asyncio.run(_run())
        self.assertEqual(2, provider.max_in_flight)

    def test_foreign_session_is_rejected(self) -> None:
        agent = self._agent(ScriptedProvider([]))
        sid = asyncio.run(agent.start_session("owner-1")).id
        with self.assertRaises(SessionNotFoundError):
            asyncio.run(agent.run_turn("owner-2", "hi", session_id=sid))
        with self.assertRaises(SessionNotFoundError):
            asyncio.run(agent.get_session_state("owner-2", sid))

    def test_knowledge_sources_enable_fetch_tool_and_initializer(self) -> None:
        knowledge = DataSourceRegistry([FakeDataSource("workout_history", "ran 5k")])
        main = ScriptedProvider([tool_response("idle", {"reason": "ok"})])
        init = ScriptedProvider(
            [tool_response("select_context", {"reasoning": "r", "append_knowledge": []})]
        )
        agent = Agent(
            AgentConfig(
                store=self._store,
                provider=main,
                initializer_provider=init,
                knowledge=knowledge,
            )
        )
        result = asyncio.run(agent.run_turn("owner-1", "How am I doing?"))

        self.assertEqual(TurnState.DONE, result.state)
        self.assertEqual(1, len(init.calls))
        self.assertEqual("claude-haiku-4-5", init.calls[0]["model"])
        self.assertIn("fetch_data", [t["name"] for t in main.calls[0]["tools"]])
        listed = asyncio.run(agent.list_sessions("owner-1"))
        self.assertEqual([result.session_id], [s.id for s in listed])
