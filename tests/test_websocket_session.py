"""
Tests for TranscriptionSession (receive loop, batching cadence, failures, close).

Uses a fake websocket, a fake clock and a fake transcription client; no
network and no real audio.
Run: python3 -m unittest tests.test_websocket_session -v
"""

import asyncio
import json
import unittest

from starlette.websockets import WebSocketState

import metrics.streaming_metrics as streaming_metrics
from config import TranscriptionSettings
from streaming.transcription import TranscriptionClient, TranscriptionError, TranscriptionResult
from streaming.websocket_server import (
    MSG_NO_API_KEY,
    SessionState,
    TranscriptionSession,
    build_ws_transcription_handler,
)
from streaming.wav import read_wav_header

READY = {"type": "ready"}


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWebSocket:
    """Just enough of starlette's WebSocket for the session."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.close_code = None
        self.receive_calls = 0
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def receive(self):
        self.receive_calls += 1
        message = await self.incoming.get()
        if isinstance(message, Exception):
            raise message
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def send_json(self, data):
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    def push_bytes(self, data: bytes):
        self.incoming.put_nowait({"type": "websocket.receive", "bytes": data})

    def push_text(self, text: str):
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def push_disconnect(self, code: int = 1000):
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": code})

    def finals(self):
        return [m for m in self.sent if m["type"] == "final"]


class FakeTranscriptionClient(TranscriptionClient):
    def __init__(self, outcomes=None, gate: asyncio.Event = None):
        self.calls = []
        self.outcomes = list(outcomes or [])
        self.gate = gate

    async def transcribe(self, wav: bytes) -> TranscriptionResult:
        self.calls.append(wav)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else TranscriptionResult(text="hello")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_settings(**overrides):
    values = dict(
        api_key="test-key",
        allowed_origins=("http://localhost:3000",),
        flush_poll_seconds=0.005,
        drain_timeout_seconds=1.0,
    )
    values.update(overrides)
    return TranscriptionSettings(**values)


async def until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class SessionTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        streaming_metrics.reset()
        self.ws = FakeWebSocket()
        self.clock = FakeClock()
        self.client = FakeTranscriptionClient()

    def start(self, settings=None):
        self.session = TranscriptionSession(
            self.ws,
            settings or make_settings(),
            self.client,
            metrics=streaming_metrics,
            clock=self.clock,
        )
        self.task = asyncio.create_task(self.session.run())
        return self.task

    async def finish(self):
        self.ws.push_disconnect()
        await asyncio.wait_for(self.task, timeout=2.0)


class TestSessionLifecycle(SessionTestCase):

    async def test_ready_on_accept(self):
        self.start()
        await until(lambda: self.ws.sent == [READY])
        self.assertIs(self.session.state, SessionState.OPEN)
        self.assertEqual(streaming_metrics.get_snapshot()["active_connections"], 1)
        await self.finish()
        self.assertEqual(streaming_metrics.get_snapshot()["active_connections"], 0)

    async def test_missing_api_key_sends_error_and_closes(self):
        await asyncio.wait_for(self.start(make_settings(api_key="")), timeout=2.0)
        self.assertEqual(self.ws.sent, [{"type": "error", "message": MSG_NO_API_KEY}])
        self.assertEqual(self.ws.close_code, 1000)
        self.assertIs(self.session.state, SessionState.CLOSED)
        self.assertEqual(self.ws.receive_calls, 0)

    async def test_client_close_mid_session(self):
        self.start()
        await until(lambda: self.ws.sent == [READY])
        self.ws.push_bytes(b"\x00" * 3200)
        await until(lambda: self.session.batcher.pending_bytes() == 3200)
        await self.finish()

        self.assertIs(self.session.state, SessionState.CLOSED)
        reads = self.ws.receive_calls
        self.clock.advance(10)
        await asyncio.sleep(0.05)
        self.assertEqual(self.ws.receive_calls, reads)
        self.assertEqual(self.client.calls, [])
        # client already gone, no close frame to send
        self.assertIsNone(self.ws.close_code)

    async def test_idle_timeout_closes_normally(self):
        self.start(make_settings(idle_timeout_seconds=60))
        await until(lambda: self.ws.sent == [READY])
        self.clock.advance(61)
        await asyncio.wait_for(self.task, timeout=2.0)
        self.assertEqual(self.ws.close_code, 1000)
        self.assertIs(self.session.state, SessionState.CLOSED)

    async def test_receive_error_reports_and_closes(self):
        self.start()
        await until(lambda: self.ws.sent == [READY])
        self.ws.incoming.put_nowait(RuntimeError("socket exploded"))
        await asyncio.wait_for(self.task, timeout=2.0)
        self.assertEqual(self.ws.sent[-1], {"type": "error", "message": "Internal error: socket exploded"})
        self.assertEqual(self.ws.close_code, 1000)
        self.assertIs(self.session.state, SessionState.CLOSED)

    async def test_cancellation_closes_and_propagates(self):
        self.start()
        await until(lambda: self.ws.sent == [READY])
        self.task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await self.task
        self.assertEqual(self.ws.close_code, 1000)
        self.assertIs(self.session.state, SessionState.CLOSED)

    async def test_close_failure_is_swallowed(self):
        async def broken_close(code=1000, reason=None):
            raise RuntimeError("already closed")

        self.ws.close = broken_close
        self.start(make_settings(idle_timeout_seconds=1))
        await until(lambda: self.ws.sent == [READY])
        self.clock.advance(2)
        await asyncio.wait_for(self.task, timeout=2.0)
        self.assertIs(self.session.state, SessionState.CLOSED)


class TestBatching(SessionTestCase):

    async def test_one_call_after_interval_without_more_input(self):
        self.start()
        await until(lambda: self.ws.sent == [READY])
        self.ws.push_bytes(b"\x01\x00" * 8000)
        await until(lambda: self.session.batcher.pending_bytes() == 16000)
        self.assertEqual(self.client.calls, [])

        self.clock.advance(3.1)
        await until(lambda: len(self.client.calls) == 1)
        await asyncio.sleep(0.05)

        self.assertEqual(len(self.client.calls), 1)
        wav = self.client.calls[0]
        self.assertEqual(len(wav), 16044)
        self.assertEqual(read_wav_header(wav).data_size, 16000)
        self.assertEqual(wav[44:], b"\x01\x00" * 8000)
        await until(lambda: self.ws.finals() == [{"type": "final", "text": "hello", "confidence": 0.8}])
        await self.finish()

    async def test_flush_checked_on_binary_frame(self):
        self.start(make_settings(flush_poll_seconds=60))
        await until(lambda: self.ws.sent == [READY])
        self.ws.push_bytes(b"\x00" * 100)
        await until(lambda: self.session.batcher.pending_bytes() == 100)
        self.clock.advance(3)
        self.ws.push_bytes(b"\x00" * 100)
        await until(lambda: len(self.client.calls) == 1)
        self.assertEqual(len(self.client.calls[0]), 244)
        await self.finish()

    async def test_no_call_without_audio(self):
        self.start()
        await until(lambda: self.ws.sent == [READY])
        self.clock.advance(10)
        await asyncio.sleep(0.05)
        self.assertEqual(self.client.calls, [])
        await self.finish()

    async def test_final_carries_reported_confidence(self):
        self.client.outcomes = [TranscriptionResult(text="good morning", confidence=0.97)]
        self.start()
        await until(lambda: self.ws.sent == [READY])
        self.ws.push_bytes(b"\x00" * 320)
        self.clock.advance(3)
        await until(lambda: len(self.ws.finals()) == 1)
        self.assertEqual(self.ws.finals()[0], {"type": "final", "text": "good morning", "confidence": 0.97})
        await self.finish()

    async def test_blank_text_emits_nothing(self):
        self.client.outcomes = [TranscriptionResult(text="   ")]
        self.start()
        await until(lambda: self.ws.sent == [READY])
        self.ws.push_bytes(b"\x00" * 320)
        self.clock.advance(3)
        await until(lambda: len(self.client.calls) == 1)
        await asyncio.sleep(0.05)
        self.assertEqual(self.ws.finals(), [])
        await self.finish()

    async def test_failure_is_silent_and_session_continues(self):
        self.client.outcomes = [TranscriptionError("upload failed"), TranscriptionResult(text="second")]
        self.start()
        await until(lambda: self.ws.sent == [READY])

        self.ws.push_bytes(b"\x00" * 320)
        self.clock.advance(3)
        await until(lambda: len(self.client.calls) == 1)
        await until(lambda: streaming_metrics.get_snapshot()["transcription_failure_count"] == 1)
        self.assertEqual(self.ws.finals(), [])
        self.assertIs(self.session.state, SessionState.OPEN)

        self.ws.push_bytes(b"\x00" * 320)
        self.clock.advance(3)
        await until(lambda: len(self.client.calls) == 2)
        await until(lambda: len(self.ws.finals()) == 1)
        self.assertEqual(self.ws.finals()[0]["text"], "second")
        self.assertFalse(any(m["type"] == "error" for m in self.ws.sent))
        await self.finish()

    async def test_in_flight_cap_defers_flush(self):
        gate = asyncio.Event()
        self.client.gate = gate
        self.start(make_settings(max_in_flight=1))
        await until(lambda: self.ws.sent == [READY])

        self.ws.push_bytes(b"\x00" * 320)
        self.clock.advance(3)
        await until(lambda: len(self.client.calls) == 1)

        self.ws.push_bytes(b"\x00" * 640)
        self.clock.advance(3)
        await until(lambda: streaming_metrics.get_snapshot()["deferred_flushes"] == 1)
        self.assertEqual(len(self.client.calls), 1)
        self.assertEqual(self.session.batcher.pending_bytes(), 640)

        gate.set()
        await until(lambda: len(self.client.calls) == 2)
        self.assertEqual(len(self.client.calls[1]), 640 + 44)
        await until(lambda: len(self.ws.finals()) == 2)
        await self.finish()

    async def test_late_result_dropped_after_disconnect(self):
        gate = asyncio.Event()
        self.client.gate = gate
        self.start(make_settings(drain_timeout_seconds=30))
        await until(lambda: self.ws.sent == [READY])
        self.ws.push_bytes(b"\x00" * 320)
        self.clock.advance(3)
        await until(lambda: len(self.client.calls) == 1)
        # no drain wait once the client is gone
        await self.finish()
        self.assertIs(self.session.state, SessionState.CLOSED)

        gate.set()
        await asyncio.sleep(0.05)
        self.assertEqual(self.ws.finals(), [])

    async def test_outstanding_results_delivered_before_close(self):
        gate = asyncio.Event()
        self.client.gate = gate
        self.start(make_settings(idle_timeout_seconds=5))
        await until(lambda: self.ws.sent == [READY])
        self.ws.push_bytes(b"\x00" * 320)
        self.clock.advance(3)
        await until(lambda: len(self.client.calls) == 1)
        self.clock.advance(10)
        await until(lambda: self.session.state is SessionState.CLOSING)
        gate.set()
        await asyncio.wait_for(self.task, timeout=2.0)
        self.assertEqual(len(self.ws.finals()), 1)
        self.assertEqual(self.ws.close_code, 1000)


class TestControlMessages(SessionTestCase):

    async def test_malformed_text_ignored(self):
        self.start()
        await until(lambda: self.ws.sent == [READY])
        for text in ("not json", "[1, 2]", json.dumps({"command": "rewind"}), json.dumps({"cmd": "start"})):
            self.ws.push_text(text)
        await asyncio.sleep(0.05)
        self.assertEqual(self.ws.sent, [READY])
        self.assertIs(self.session.state, SessionState.OPEN)
        await self.finish()

    async def test_start_is_acknowledged_silently(self):
        self.start()
        await until(lambda: self.ws.sent == [READY])
        with self.assertLogs("streaming.websocket_server", level="INFO") as logs:
            self.ws.push_text(json.dumps({"command": "start"}))
            await asyncio.sleep(0.05)
        self.assertTrue(any("started" in line for line in logs.output))
        self.assertEqual(self.ws.sent, [READY])
        self.assertIs(self.session.state, SessionState.OPEN)
        await self.finish()

    async def test_stop_flushes_tail_immediately(self):
        self.start()
        await until(lambda: self.ws.sent == [READY])
        self.ws.push_bytes(b"\x00" * 500)
        self.ws.push_text(json.dumps({"command": "stop"}))
        await until(lambda: len(self.client.calls) == 1)
        self.assertEqual(len(self.client.calls[0]), 544)
        self.assertIs(self.session.state, SessionState.OPEN)
        await self.finish()

    async def test_stop_with_empty_buffer_is_noop(self):
        self.start()
        await until(lambda: self.ws.sent == [READY])
        self.ws.push_text(json.dumps({"command": "stop"}))
        await asyncio.sleep(0.05)
        self.assertEqual(self.client.calls, [])
        await self.finish()


class TestBuildHandler(unittest.IsolatedAsyncioTestCase):

    async def test_handler_accepts_and_runs_session(self):
        client = FakeTranscriptionClient()
        handler = build_ws_transcription_handler(make_settings(), client_factory=lambda s: client)
        self.assertTrue(asyncio.iscoroutinefunction(handler))

        ws = FakeWebSocket()
        ws.push_disconnect()
        await asyncio.wait_for(handler(ws), timeout=2.0)
        self.assertTrue(ws.accepted)
        self.assertEqual(ws.sent, [READY])


if __name__ == "__main__":
    unittest.main()
