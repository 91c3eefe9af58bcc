"""
Streaming observability metrics.

Thread-safe counters and latency samples for the transcription WebSocket.
Exposed via GET /metrics/streaming (JSON snapshot).
"""

import threading
from collections import deque
from typing import Any, Dict

# ----- Shared state (module-level for singleton behavior) -----
_lock = threading.Lock()
_active_connections = 0
_latency_samples: deque = deque(maxlen=1000)  # last N transcription latencies (ms)
_batches_dispatched = 0
_transcription_failure_count = 0
_deferred_flushes = 0
_dropped_audio_bytes = 0


def record_connection_open() -> None:
    """Call when a WebSocket connection is accepted."""
    with _lock:
        global _active_connections
        _active_connections += 1


def record_connection_close() -> None:
    """Call when a WebSocket connection closes."""
    with _lock:
        global _active_connections
        _active_connections = max(0, _active_connections - 1)


def record_batch_dispatched() -> None:
    with _lock:
        global _batches_dispatched
        _batches_dispatched += 1


def record_latency_ms(total_ms: float) -> None:
    """Record one upload-to-text latency sample."""
    with _lock:
        _latency_samples.append(total_ms)


def record_transcription_failure() -> None:
    with _lock:
        global _transcription_failure_count
        _transcription_failure_count += 1


def record_deferred_flush() -> None:
    """Call when a flush is postponed because the in-flight cap is reached."""
    with _lock:
        global _deferred_flushes
        _deferred_flushes += 1


def record_dropped_audio(num_bytes: int) -> None:
    """Call when buffered audio is discarded to respect the buffer cap."""
    with _lock:
        global _dropped_audio_bytes
        _dropped_audio_bytes += num_bytes


def reset() -> None:
    """Zero all counters (tests)."""
    global _active_connections, _batches_dispatched, _transcription_failure_count
    global _deferred_flushes, _dropped_audio_bytes
    with _lock:
        _active_connections = 0
        _batches_dispatched = 0
        _transcription_failure_count = 0
        _deferred_flushes = 0
        _dropped_audio_bytes = 0
        _latency_samples.clear()


def get_snapshot() -> Dict[str, Any]:
    """
    Return a JSON-serializable snapshot of streaming metrics.
    Used by GET /metrics/streaming.
    """
    with _lock:
        samples = list(_latency_samples)
        snapshot = {
            "active_connections": _active_connections,
            "batches_dispatched": _batches_dispatched,
            "transcription_failure_count": _transcription_failure_count,
            "deferred_flushes": _deferred_flushes,
            "dropped_audio_bytes": _dropped_audio_bytes,
        }
    n = len(samples)
    if n == 0:
        avg_latency_ms = None
        p95_latency_ms = None
    else:
        avg_latency_ms = round(sum(samples) / n, 2)
        sorted_s = sorted(samples)
        idx = max(0, int(0.95 * n) - 1)
        p95_latency_ms = round(sorted_s[idx], 2)
    snapshot["avg_latency_ms"] = avg_latency_ms
    snapshot["p95_latency_ms"] = p95_latency_ms
    snapshot["latency_sample_count"] = n
    return snapshot
