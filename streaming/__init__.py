"""
Real-time streaming layer.

- audio_buffer: Per-connection time-driven batcher for incoming PCM.
- wav: WAV framing for flushed batches.
- transcription: Remote transcription client (upload, submit, poll).
- websocket_server: WebSocket session (import separately to avoid pulling FastAPI).
"""

from streaming.audio_buffer import AudioBatcher, bytes_to_duration_ms, duration_ms_to_bytes
from streaming.events import Error, Final, Ready, TranscriptEvent
from streaming.transcription import (
    AssemblyAITranscriptionClient,
    TranscriptionClient,
    TranscriptionError,
    TranscriptionResult,
)
from streaming.wav import WAV_HEADER_SIZE, pcm_to_wav, read_wav_header

__all__ = [
    "AudioBatcher",
    "bytes_to_duration_ms",
    "duration_ms_to_bytes",
    "Error",
    "Final",
    "Ready",
    "TranscriptEvent",
    "AssemblyAITranscriptionClient",
    "TranscriptionClient",
    "TranscriptionError",
    "TranscriptionResult",
    "WAV_HEADER_SIZE",
    "pcm_to_wav",
    "read_wav_header",
]
