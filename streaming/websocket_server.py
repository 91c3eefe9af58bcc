"""
WebSocket session for real-time transcription.

- Accepts raw 16 kHz 16-bit mono PCM frames, per-connection AudioBatcher.
- Every flush interval the buffered audio is framed as WAV and sent to the
  transcription client in a background task; the receive loop never waits.
- Non-blank results go back to the client as {"type": "final", ...}.
- Text frames are control commands: {"command": "start" | "stop"}.
- At most `max_in_flight` transcriptions run per connection; beyond that the
  flush is deferred and audio keeps accumulating (bounded by the batcher).
- No ordering guarantee between overlapping transcriptions.
"""

import asyncio
import itertools
import json
import logging
import time
from enum import Enum
from typing import Any, Callable, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from config import TranscriptionSettings
from streaming.audio_buffer import AudioBatcher
from streaming.events import Error, Final, Ready, TranscriptEvent
from streaming.transcription import AssemblyAITranscriptionClient, TranscriptionClient
from streaming.wav import pcm_to_wav

logger = logging.getLogger(__name__)

MSG_NO_API_KEY = "AssemblyAI API key not configured"
NORMAL_CLOSURE = 1000
CLOSE_REASON = "Session ended"


class SessionState(Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class TranscriptionSession:
    """One client connection, from Ready to the final close frame."""

    def __init__(
        self,
        websocket: WebSocket,
        settings: TranscriptionSettings,
        client: TranscriptionClient,
        batcher: Optional[AudioBatcher] = None,
        metrics: Optional[Any] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.websocket = websocket
        self.settings = settings
        self.client = client
        self.metrics = metrics
        self._clock = clock
        self.batcher = batcher or AudioBatcher(
            interval_seconds=settings.flush_interval_seconds,
            max_buffer_bytes=settings.max_buffer_bytes,
            block_align=settings.channels * settings.bits_per_sample // 8,
            clock=clock,
        )
        self.state: Optional[SessionState] = None
        self._tasks: Set[asyncio.Task] = set()
        self._batch_ids = itertools.count(1)
        self._flush_deferred = False

    @property
    def in_flight(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def run(self) -> None:
        if not self.settings.api_key:
            logger.error(MSG_NO_API_KEY)
            await self.send_event(Error(message=MSG_NO_API_KEY))
            await self._close()
            self.state = SessionState.CLOSED
            return

        if self.metrics:
            self.metrics.record_connection_open()
        cancelled = False
        try:
            await self.send_event(Ready())
            self.state = SessionState.OPEN
            await self._receive_loop()
        except asyncio.CancelledError:
            cancelled = True
            logger.info("Transcription session cancelled")
            raise
        except Exception as e:
            logger.exception("Error in real-time transcription")
            await self.send_event(Error(message=f"Internal error: {e}"))
        finally:
            self.state = SessionState.CLOSING
            # results can only be delivered while the client is still there
            if not cancelled and self.is_connected():
                await self._drain()
            await self._close()
            self.state = SessionState.CLOSED
            if self.metrics:
                self.metrics.record_connection_close()

    async def _receive_loop(self) -> None:
        last_activity = self._clock()
        while self.state is SessionState.OPEN:
            try:
                message = await asyncio.wait_for(
                    self.websocket.receive(), timeout=self.settings.flush_poll_seconds
                )
            except asyncio.TimeoutError:
                if self._clock() - last_activity >= self.settings.idle_timeout_seconds:
                    logger.info("No audio for %.0fs, closing session", self.settings.idle_timeout_seconds)
                    break
                self._maybe_flush()
                continue

            last_activity = self._clock()
            kind = message.get("type")
            if kind == "websocket.disconnect":
                logger.info("WebSocket connection closed by client")
                break
            if kind != "websocket.receive":
                continue
            if message.get("bytes") is not None:
                self._on_audio(message["bytes"])
            elif message.get("text") is not None:
                self._on_control(message["text"])

    def _on_audio(self, frame: bytes) -> None:
        dropped = self.batcher.accept(frame)
        if dropped and self.metrics:
            self.metrics.record_dropped_audio(dropped)
        self._maybe_flush()

    def _on_control(self, text: str) -> None:
        try:
            payload = json.loads(text)
        except ValueError:
            logger.warning("Failed to parse control message: %r", text)
            return
        command = payload.get("command") if isinstance(payload, dict) else None
        if command == "start":
            logger.info("Real-time transcription started")
        elif command == "stop":
            logger.info("Real-time transcription stopped")
            # transcribe the tail without waiting for the interval
            self._maybe_flush(force=True)
        else:
            logger.warning("Ignoring unrecognized control message: %r", text)

    def _maybe_flush(self, force: bool = False) -> Optional[asyncio.Task]:
        """Dispatch the buffered batch if it is due. Returns the spawned task."""
        if force:
            if not self.batcher.pending_bytes():
                return None
        elif not self.batcher.should_flush():
            return None

        if self.in_flight >= self.settings.max_in_flight:
            if not self._flush_deferred:
                self._flush_deferred = True
                logger.info("%d transcriptions in flight, deferring flush", self.in_flight)
                if self.metrics:
                    self.metrics.record_deferred_flush()
            return None
        self._flush_deferred = False

        batch = self.batcher.flush()
        if not batch:
            return None
        wav = pcm_to_wav(
            batch,
            sample_rate=self.settings.sample_rate,
            channels=self.settings.channels,
            bits_per_sample=self.settings.bits_per_sample,
        )
        batch_id = next(self._batch_ids)
        logger.debug("Dispatching batch %d (%d bytes PCM)", batch_id, len(batch))
        task = asyncio.create_task(self._transcribe_batch(batch_id, wav))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if self.metrics:
            self.metrics.record_batch_dispatched()
        return task

    async def _transcribe_batch(self, batch_id: int, wav: bytes) -> None:
        t0 = time.perf_counter()
        try:
            result = await self.client.transcribe(wav)
        except Exception:
            logger.exception("Error transcribing audio batch %d", batch_id)
            if self.metrics:
                self.metrics.record_transcription_failure()
            return
        if self.metrics:
            self.metrics.record_latency_ms(round((time.perf_counter() - t0) * 1000))
        if not result.text.strip():
            logger.debug("Batch %d produced no text", batch_id)
            return
        await self.send_event(Final(text=result.text, confidence=result.confidence))

    def is_connected(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_event(self, event: TranscriptEvent) -> bool:
        """Send one event as a JSON text frame. Dropped if the socket is gone."""
        if not self.is_connected():
            logger.debug("Socket closed, dropping %s event", event.type)
            return False
        try:
            await self.websocket.send_json(event.to_dict())
            return True
        except Exception:
            logger.exception("Error sending transcription result")
            return False

    async def _drain(self) -> None:
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=self.settings.drain_timeout_seconds)
        if still_running:
            logger.warning("%d transcriptions still running at session end", len(still_running))

    async def _close(self) -> None:
        if not self.is_connected():
            return
        try:
            await self.websocket.close(code=NORMAL_CLOSURE, reason=CLOSE_REASON)
        except Exception:
            logger.exception("Error closing WebSocket")


def build_ws_transcription_handler(
    settings: TranscriptionSettings,
    client_factory: Optional[Callable[[TranscriptionSettings], TranscriptionClient]] = None,
    metrics: Optional[Any] = None,
) -> Callable:
    """
    Build the async WebSocket handler for the transcription endpoint.

    Args:
        settings: Immutable service settings, shared by every session.
        client_factory: settings -> TranscriptionClient. Defaults to AssemblyAI.
        metrics: Optional module with record_* functions (metrics.streaming_metrics).

    Returns:
        Async function (websocket: WebSocket) -> None for use with FastAPI.
    """
    make_client = client_factory or default_client_factory

    async def handle_ws_transcription(websocket: WebSocket) -> None:
        await websocket.accept()
        logger.info("WebSocket connection established for real-time transcription")
        session = TranscriptionSession(
            websocket,
            settings,
            make_client(settings),
            metrics=metrics,
        )
        await session.run()

    return handle_ws_transcription


def default_client_factory(settings: TranscriptionSettings) -> TranscriptionClient:
    return AssemblyAITranscriptionClient(
        api_key=settings.api_key,
        base_url=settings.base_url,
        language_code=settings.language_code,
        poll_interval=settings.poll_interval_seconds,
        timeout=settings.transcription_timeout_seconds,
    )
