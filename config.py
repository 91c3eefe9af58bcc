"""
Production configuration via environment variables.
Load with python-dotenv; no hardcoded secrets.

Module constants are read once at import. Sessions never read them directly:
load_settings() snapshots them into an immutable TranscriptionSettings that
is passed to each connection.
"""
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

# Load .env if present (in production the orchestrator usually sets env)
load_dotenv()

# ----- Server -----
PORT = int(os.environ.get("PORT", "8000"))
HOST = os.environ.get("HOST", "0.0.0.0")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# ----- Transcription service (AssemblyAI) -----
ASSEMBLYAI_API_KEY = os.environ.get("ASSEMBLYAI_API_KEY", "")
ASSEMBLYAI_BASE_URL = os.environ.get("ASSEMBLYAI_BASE_URL", "https://api.assemblyai.com")
TRANSCRIPTION_LANGUAGE = os.environ.get("TRANSCRIPTION_LANGUAGE", "en")
TRANSCRIPTION_POLL_SECONDS = float(os.environ.get("TRANSCRIPTION_POLL_SECONDS", "1.0"))
TRANSCRIPTION_TIMEOUT_SECONDS = float(os.environ.get("TRANSCRIPTION_TIMEOUT_SECONDS", "300"))

# ----- Streaming (16 kHz 16-bit mono PCM, batched every few seconds) -----
WS_FLUSH_INTERVAL_SECONDS = float(os.environ.get("WS_FLUSH_INTERVAL_SECONDS", "3.0"))
WS_FLUSH_POLL_SECONDS = float(os.environ.get("WS_FLUSH_POLL_SECONDS", "0.25"))
# Oldest audio is dropped once a session buffers more than this
WS_MAX_BUFFER_SECONDS = float(os.environ.get("WS_MAX_BUFFER_SECONDS", "30"))
# Max concurrent transcription calls per connection; further flushes wait
WS_MAX_IN_FLIGHT = int(os.environ.get("WS_MAX_IN_FLIGHT", "3"))
WS_IDLE_TIMEOUT_SECONDS = float(os.environ.get("WS_IDLE_TIMEOUT_SECONDS", "300"))
WS_DRAIN_TIMEOUT_SECONDS = float(os.environ.get("WS_DRAIN_TIMEOUT_SECONDS", "10"))

# ----- CORS (required: comma-separated list of frontend origins) -----
CORS_ALLOWED_ORIGINS = os.environ.get("CORS_ALLOWED_ORIGINS", "")


class ConfigurationError(ValueError):
    """Raised at startup when required configuration is missing."""


def parse_origins(raw: Optional[str]) -> Tuple[str, ...]:
    """Split a comma-separated origin list, dropping blanks."""
    if not raw:
        return ()
    return tuple(o.strip() for o in raw.split(",") if o.strip())


def get_cors_origins() -> list:
    """Return list of allowed CORS origins from env. Fails fast when empty."""
    origins = parse_origins(CORS_ALLOWED_ORIGINS)
    if not origins:
        raise ConfigurationError("CORS_ALLOWED_ORIGINS must contain at least one origin")
    return list(origins)


@dataclass(frozen=True)
class TranscriptionSettings:
    api_key: str
    allowed_origins: Tuple[str, ...]
    base_url: str = "https://api.assemblyai.com"
    language_code: str = "en"
    sample_rate: int = 16000
    channels: int = 1
    bits_per_sample: int = 16
    flush_interval_seconds: float = 3.0
    flush_poll_seconds: float = 0.25
    max_buffer_seconds: float = 30.0
    max_in_flight: int = 3
    idle_timeout_seconds: float = 300.0
    drain_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 1.0
    transcription_timeout_seconds: float = 300.0

    def __post_init__(self):
        if not self.allowed_origins:
            raise ConfigurationError("allowed_origins must contain at least one origin")

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.channels * self.bits_per_sample // 8

    @property
    def max_buffer_bytes(self) -> int:
        return int(self.max_buffer_seconds * self.bytes_per_second)


def load_settings() -> TranscriptionSettings:
    """Build the immutable settings object from the environment."""
    return TranscriptionSettings(
        api_key=ASSEMBLYAI_API_KEY,
        allowed_origins=tuple(get_cors_origins()),
        base_url=ASSEMBLYAI_BASE_URL,
        language_code=TRANSCRIPTION_LANGUAGE,
        flush_interval_seconds=WS_FLUSH_INTERVAL_SECONDS,
        flush_poll_seconds=WS_FLUSH_POLL_SECONDS,
        max_buffer_seconds=WS_MAX_BUFFER_SECONDS,
        max_in_flight=WS_MAX_IN_FLIGHT,
        idle_timeout_seconds=WS_IDLE_TIMEOUT_SECONDS,
        drain_timeout_seconds=WS_DRAIN_TIMEOUT_SECONDS,
        poll_interval_seconds=TRANSCRIPTION_POLL_SECONDS,
        transcription_timeout_seconds=TRANSCRIPTION_TIMEOUT_SECONDS,
    )
