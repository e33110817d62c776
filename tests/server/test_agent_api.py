import json
import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from fastapi.testclient import TestClient

from tests.fakes import ScriptedProvider, tool_response
from trainer_agent_loop.agent import Agent
from trainer_agent_loop.agent_config import AgentConfig
from trainer_agent_loop.memory import MemoryStore
from trainer_agent_loop.providers.common import ModelResponse
from trainer_agent_loop.server.app import create_app

PROJECT_ROOT = Path(__file__).resolve().parents[2]
ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


def _sse_events(body: str) -> list[dict]:
    return [json.loads(frame[len("data: "):]) for frame in body.split("\n\n") if frame.startswith("data: ")]


class AgentApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"api-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._store = MemoryStore(str(self._tmp_dir / "sessions.db"))
        self._provider = ScriptedProvider([])
        self._agent = Agent(AgentConfig(store=self._store, provider=self._provider, initializer_enabled=False))
        self._client_cm = TestClient(create_app(self._agent, allowed_origins=["http://localhost:3000"]))
        self._client = self._client_cm.__enter__()

    def tearDown(self) -> None:
        self._client_cm.__exit__(None, None, None)
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def test_health(self) -> None:
        response = self._client.get("/health")
        self.assertEqual(200, response.status_code)
        self.assertEqual({"status": "ok"}, response.json())

    def test_owner_header_is_required(self) -> None:
        self.assertEqual(401, self._client.get("/agent/sessions").status_code)
        self.assertEqual(401, self._client.post("/agent/chat", json={"message": "hi"}).status_code)

    def test_chat_runs_a_turn(self) -> None:
        self._provider.queue(
            tool_response("message_notify_user", {"message": "Try 3x5 squats"}, "c1"),
            tool_response("idle", {"reason": "answered"}, "c2"),
        )
        response = self._client.post(
            "/agent/chat",
            json={"message": "Leg ideas?", "context": {"screen": "workout_builder"}},
            headers=ALICE,
        )

        self.assertEqual(200, response.status_code)
        body = response.json()
        self.assertEqual("done", body["state"])
        self.assertEqual(2, body["iterations"])
        self.assertEqual(["Try 3x5 squats"], body["messages"])
        self.assertIsNone(body["question"])

        state = self._client.get(f"/agent/sessions/{body['session_id']}", headers=ALICE).json()
        self.assertEqual("completed", state["session"]["status"])
        self.assertEqual(1, state["counts"]["knowledge"])
        self.assertEqual(["message_notify_user", "idle"], [a["tool_name"] for a in state["recent_tool_actions"]])

    def test_chat_question_is_returned(self) -> None:
        self._provider.queue(tool_response("message_ask_user", {"question": "Which days?", "options": ["Mon", "Thu"]}))
        body = self._client.post("/agent/chat", json={"message": "Plan my week"}, headers=ALICE).json()
        self.assertEqual("awaiting_user", body["state"])
        self.assertEqual({"question": "Which days?", "options": ["Mon", "Thu"]}, body["question"])

    def test_chat_fatal_error_returns_500(self) -> None:
        self._provider.queue(ModelResponse(text="no tool here"))
        response = self._client.post("/agent/chat", json={"message": "hi"}, headers=ALICE)
        self.assertEqual(500, response.status_code)
        self.assertIn("no tool call", response.json()["detail"])

    def test_blank_message_is_rejected(self) -> None:
        self.assertEqual(422, self._client.post("/agent/chat", json={"message": "   "}, headers=ALICE).status_code)

    def test_other_owners_sessions_are_not_found(self) -> None:
        created = self._client.post("/agent/sessions", json={"metadata": {"client": "web"}}, headers=ALICE)
        self.assertEqual(201, created.status_code)
        session_id = created.json()["id"]
        self.assertEqual({"client": "web"}, created.json()["metadata"])

        self.assertEqual(200, self._client.get(f"/agent/sessions/{session_id}", headers=ALICE).status_code)
        self.assertEqual(404, self._client.get(f"/agent/sessions/{session_id}", headers=BOB).status_code)
        chat = self._client.post("/agent/chat", json={"message": "hi", "session_id": session_id}, headers=BOB)
        self.assertEqual(404, chat.status_code)
        stream = self._client.post("/agent/stream", json={"message": "hi", "session_id": session_id}, headers=BOB)
        self.assertEqual(404, stream.status_code)
        self.assertEqual([], self._provider.calls)

    def test_list_sessions_limit(self) -> None:
        for _ in range(3):
            self._client.post("/agent/sessions", headers=ALICE)
        self._client.post("/agent/sessions", headers=BOB)

        listed = self._client.get("/agent/sessions", params={"limit": 2}, headers=ALICE)
        self.assertEqual(200, listed.status_code)
        self.assertEqual(2, len(listed.json()["sessions"]))
        self.assertEqual(3, len(self._client.get("/agent/sessions", headers=ALICE).json()["sessions"]))
        self.assertEqual(422, self._client.get("/agent/sessions", params={"limit": 51}, headers=ALICE).status_code)
        self.assertEqual(422, self._client.get("/agent/sessions", params={"limit": 0}, headers=ALICE).status_code)

    def test_stream_emits_tool_events_then_done(self) -> None:
        self._provider.queue(
            tool_response("message_notify_user", {"message": "On it"}, "c1"),
            tool_response("idle", {"reason": "done"}, "c2"),
        )
        response = self._client.post("/agent/stream", json={"message": "Quick workout?"}, headers=ALICE)

        self.assertEqual(200, response.status_code)
        self.assertTrue(response.headers["content-type"].startswith("text/event-stream"))
        events = _sse_events(response.text)
        types = [e["type"] for e in events]
        self.assertEqual("done", types[-1])
        self.assertEqual(["running", "done"], [e["data"]["status"] for e in events if e["type"] == "message_notify_user"])
        self.assertIn("status", types)
        self.assertEqual("On it", next(e for e in events if e["type"] == "message_notify_user" and e["data"]["status"] == "done")["data"]["message"])

    def test_stream_reports_errors_in_band(self) -> None:
        self._provider.queue(ConnectionError("provider unreachable"))
        response = self._client.post("/agent/stream", json={"message": "hi"}, headers=ALICE)
        self.assertEqual(200, response.status_code)
        events = _sse_events(response.text)
        self.assertEqual("error", events[-1]["type"])
        self.assertIn("provider unreachable", events[-1]["data"]["message"])

    def test_cors_preflight(self) -> None:
        response = self._client.options(
            "/agent/chat",
            headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "POST"},
        )
        self.assertEqual("http://localhost:3000", response.headers.get("access-control-allow-origin"))
