"""
Observability and streaming metrics.
"""

from metrics.streaming_metrics import (
    get_snapshot,
    record_batch_dispatched,
    record_connection_close,
    record_connection_open,
    record_deferred_flush,
    record_dropped_audio,
    record_latency_ms,
    record_transcription_failure,
    reset,
)

__all__ = [
    "get_snapshot",
    "record_batch_dispatched",
    "record_connection_close",
    "record_connection_open",
    "record_deferred_flush",
    "record_dropped_audio",
    "record_latency_ms",
    "record_transcription_failure",
    "reset",
]
