import asyncio

from tests.fakes import make_context
from tests.memory.base import MemoryStoreTestCase
from trainer_agent_loop.tools.communication import AskUserTool, IdleTool, NotifyUserTool


class NotifyUserToolTests(MemoryStoreTestCase):
    def test_plain_notification(self) -> None:
        sid = self._sessions.create_session("owner-1").id
        tool = NotifyUserTool()
        result = asyncio.run(tool.execute({"message": "Nice work today"}, make_context(self._log, sid)))

        self.assertEqual({"success": True, "type": "notification", "message": "Nice work today"}, result)
        self.assertEqual('Notified user: "Nice work today"', tool.format_result(result))

    def test_artifact_from_same_session_is_attached(self) -> None:
        sid = self._sessions.create_session("owner-1").id
        context = make_context(self._log, sid)

        async def _run():
            artifact_id = await context.artifacts.create("workout", "Leg day", summary={"exercises": 4})
            return artifact_id, await NotifyUserTool().execute(
                {"message": "Here is your workout", "artifact_id": artifact_id}, context
            )

        artifact_id, result = asyncio.run(_run())
        self.assertEqual(artifact_id, result["artifact_id"])
        self.assertEqual("Leg day", result["artifact"]["title"])
        self.assertNotIn("warning", result)
        self.assertIn(f"(delivered artifact {artifact_id})", NotifyUserTool().format_result(result))

    def test_artifact_from_other_session_is_not_attached(self) -> None:
        owner = self._sessions.create_session("owner-1").id
        other = self._sessions.create_session("owner-1").id

        async def _run():
            artifact_id = await make_context(self._log, owner).artifacts.create("workout", "Leg day")
            return await NotifyUserTool().execute(
                {"message": "Here you go", "artifact_id": artifact_id}, make_context(self._log, other)
            )

        result = asyncio.run(_run())
        self.assertTrue(result["success"])
        self.assertNotIn("artifact", result)
        self.assertIn("was not found in this session", result["warning"])
        self.assertIn("Warning:", NotifyUserTool().format_result(result))


class AskAndIdleToolTests(MemoryStoreTestCase):
    def test_ask_user_normalizes_options(self) -> None:
        sid = self._sessions.create_session("owner-1").id
        tool = AskUserTool()
        result = asyncio.run(
            tool.execute({"question": "How many days a week?", "options": [3, "4"]}, make_context(self._log, sid))
        )
        self.assertEqual(["3", "4"], result["options"])
        self.assertTrue(result["awaiting_response"])
        self.assertEqual('Asked user: "How many days a week?"', tool.format_result(result))

        no_options = asyncio.run(tool.execute({"question": "Why?", "options": "yes"}, make_context(self._log, sid)))
        self.assertEqual([], no_options["options"])

    def test_idle(self) -> None:
        sid = self._sessions.create_session("owner-1").id
        tool = IdleTool()
        result = asyncio.run(tool.execute({"reason": "plan delivered"}, make_context(self._log, sid)))
        self.assertTrue(result["idle"])
        self.assertEqual("Agent idle: plan delivered", tool.format_result(result))
        self.assertEqual("Wrapping up...", tool.status_message.start)
