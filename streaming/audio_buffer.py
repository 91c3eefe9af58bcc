"""
Per-connection audio batcher for chunked transcription.

Accumulates incoming PCM frames of any size and releases everything buffered
once a fixed wall-clock interval has elapsed since the previous flush.
Batching is time-driven, not size-driven: a slow trickle still produces one
batch per interval once any audio exists. An empty buffer never flushes.
"""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# 16 kHz mono, 16-bit = 32000 bytes/sec
SAMPLE_RATE = 16000
BYTES_PER_SAMPLE = 2
BYTES_PER_SECOND = SAMPLE_RATE * BYTES_PER_SAMPLE

DEFAULT_FLUSH_INTERVAL_SECONDS = 3.0
DEFAULT_MAX_BUFFER_BYTES = 30 * BYTES_PER_SECOND


def bytes_to_duration_ms(num_bytes: int) -> float:
    """Convert raw audio byte count to duration in milliseconds."""
    if num_bytes <= 0:
        return 0.0
    return (num_bytes / BYTES_PER_SECOND) * 1000.0


def duration_ms_to_bytes(ms: float) -> int:
    """Convert duration in ms to byte count for 16 kHz 16-bit mono."""
    return int((ms / 1000.0) * BYTES_PER_SECOND)


class AudioBatcher:
    """
    Time-driven accumulation buffer for one session.

    - accept() appends a frame.
    - should_flush() is true once `interval_seconds` have passed since the
      last flush (or construction) and the buffer is non-empty.
    - flush() hands over all buffered bytes and restarts the interval.

    A lock serializes all three so a flush never interleaves with an append.
    The buffer is capped at `max_buffer_bytes`; on overflow the oldest audio
    is discarded, in whole sample frames of `block_align` bytes, and counted in
    `dropped_bytes`.
    """

    def __init__(
        self,
        interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
        block_align: int = BYTES_PER_SAMPLE,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            interval_seconds: Minimum time between flushes.
            max_buffer_bytes: Cap on buffered audio (0 = unbounded).
            block_align: Bytes per sample frame; trims never split a frame.
            clock: Monotonic time source, injectable for tests.
        """
        self.interval_seconds = interval_seconds
        self.max_buffer_bytes = max(0, int(max_buffer_bytes))
        self.block_align = max(1, int(block_align))
        self._clock = clock
        self._lock = threading.Lock()
        self._buffer = bytearray()
        self._last_flush = clock()
        self._total_accepted = 0
        self.dropped_bytes = 0

    def accept(self, frame: bytes) -> int:
        """
        Append one frame. Returns the number of old bytes dropped to stay
        under the cap (usually 0).
        """
        if not frame:
            return 0
        with self._lock:
            self._buffer.extend(frame)
            self._total_accepted += len(frame)
            overflow = 0
            if self.max_buffer_bytes and len(self._buffer) > self.max_buffer_bytes:
                overflow = len(self._buffer) - self.max_buffer_bytes
                overflow = -(-overflow // self.block_align) * self.block_align
                del self._buffer[:overflow]
                self.dropped_bytes += overflow
        if overflow:
            logger.warning(
                "Audio buffer over %d bytes, dropped %d oldest bytes",
                self.max_buffer_bytes,
                overflow,
            )
        return overflow

    def should_flush(self, now: Optional[float] = None) -> bool:
        if now is None:
            now = self._clock()
        with self._lock:
            return bool(self._buffer) and now - self._last_flush >= self.interval_seconds

    def flush(self) -> bytes:
        """Return everything buffered and reset the buffer and the interval."""
        with self._lock:
            batch = bytes(self._buffer)
            self._buffer.clear()
            self._last_flush = self._clock()
        return batch

    def pending_bytes(self) -> int:
        with self._lock:
            return len(self._buffer)

    def duration_ms(self) -> float:
        """Current buffered duration in milliseconds."""
        return bytes_to_duration_ms(self.pending_bytes())

    def total_accepted_bytes(self) -> int:
        """Total bytes ever accepted (for stats)."""
        return self._total_accepted
