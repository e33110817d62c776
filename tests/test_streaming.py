import asyncio
import json
import unittest

from trainer_agent_loop.streaming import (
    CollectingStreamSink,
    QueueStreamSink,
    done_event,
    error_event,
    safe_emit,
    status_event,
    to_sse,
    tool_result_event,
    tool_start_event,
)


class _ExplodingSink:
    def emit(self, event):
        raise RuntimeError("socket closed")

    def close(self):
        pass


class StreamEventTests(unittest.TestCase):
    def test_event_shapes(self) -> None:
        start = tool_start_event("fetch_data", "call_1", {"sources": ["profile"]})
        self.assertEqual("fetch_data", start["type"])
        self.assertEqual("running", start["data"]["status"])
        self.assertIn("timestamp", start)

        status = status_event("Gathering your info...", "fetch_data", "start")
        self.assertEqual("status", status["type"])
        self.assertEqual("Gathering your info...", status["data"]["message"])

        self.assertEqual("done", done_event("s1", "done", 2)["type"])
        self.assertEqual("error", error_event("boom")["type"])

    def test_tool_result_event_carries_artifact(self) -> None:
        event = tool_result_event(
            "message_notify_user",
            "call_1",
            success=True,
            formatted="<result>\nok\n</result>",
            result={"message": "Here it is", "artifact_id": "art_12345678", "artifact": {"title": "Leg day"}},
        )
        self.assertEqual("done", event["data"]["status"])
        self.assertEqual("Here it is", event["data"]["message"])
        self.assertEqual("art_12345678", event["data"]["artifact_id"])
        self.assertEqual({"title": "Leg day"}, event["data"]["artifact"])

        failed = tool_result_event("fetch_data", "call_2", success=False, formatted="x", result={"error": "down"})
        self.assertEqual("failed", failed["data"]["status"])
        self.assertNotIn("artifact", failed["data"])

    def test_sse_framing(self) -> None:
        frame = to_sse({"type": "done", "data": {"text": "ünïcode"}})
        self.assertTrue(frame.startswith("data: "))
        self.assertTrue(frame.endswith("\n\n"))
        self.assertEqual({"type": "done", "data": {"text": "ünïcode"}}, json.loads(frame[len("data: "):]))

    def test_safe_emit_never_raises(self) -> None:
        safe_emit(_ExplodingSink(), done_event("s1", "done", 1))
        sink = CollectingStreamSink()
        safe_emit(sink, done_event("s1", "done", 1))
        self.assertEqual(1, len(sink.events))


class QueueStreamSinkTests(unittest.TestCase):
    def test_events_are_delivered_in_order_until_close(self) -> None:
        async def _run():
            sink = QueueStreamSink()
            sink.emit({"type": "a"})
            sink.emit({"type": "b"})
            sink.close()
            sink.emit({"type": "late"})
            return [e["type"] async for e in sink.events()], sink.dropped

        received, dropped = asyncio.run(_run())
        self.assertEqual(["a", "b"], received)
        self.assertEqual(1, dropped)

    def test_disconnect_drops_pending_and_future_events(self) -> None:
        async def _run():
            sink = QueueStreamSink()
            sink.emit({"type": "a"})
            sink.disconnect()
            sink.emit({"type": "b"})
            sink.emit({"type": "c"})
            return sink

        sink = asyncio.run(_run())
        self.assertTrue(sink.disconnected)
        self.assertEqual(2, sink.dropped)

    def test_producer_and_consumer_run_concurrently(self) -> None:
        async def _run():
            sink = QueueStreamSink()

            async def _produce():
                for i in range(3):
                    sink.emit({"type": str(i)})
                    await asyncio.sleep(0)
                sink.close()

            producer = asyncio.create_task(_produce())
            received = [e["type"] async for e in sink.events()]
            await producer
            return received

        self.assertEqual(["0", "1", "2"], asyncio.run(_run()))
