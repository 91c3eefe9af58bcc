"""
Real-time transcription relay API.

Browser clients stream raw PCM over a WebSocket; every few seconds the
buffered audio is wrapped as WAV and sent to AssemblyAI, and the text comes
back over the same socket as JSON events.

Run:
    python main.py
    uvicorn main:create_app --factory --host 0.0.0.0 --port 8000
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

import config as _config
import metrics.streaming_metrics as _streaming_metrics
from config import TranscriptionSettings, load_settings
from streaming.transcription import TranscriptionClient
from streaming.websocket_server import build_ws_transcription_handler

logger = logging.getLogger(__name__)

API_PREFIX = "/api/realtimetranscription"
STATUS_MESSAGE = "Real-time transcription service is running"
WS_ONLY_MESSAGE = "This endpoint only accepts WebSocket connections"


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def create_app(
    settings: Optional[TranscriptionSettings] = None,
    client_factory: Optional[Callable[[TranscriptionSettings], TranscriptionClient]] = None,
) -> FastAPI:
    """
    Build the FastAPI app. Raises ConfigurationError when no CORS origin is
    configured, so a misconfigured deployment never starts.
    """
    if settings is None:
        settings = load_settings()
    if not settings.api_key:
        logger.warning("ASSEMBLYAI_API_KEY is not set; connections will be refused with an error event")

    app = FastAPI(title="Real-time Transcription API")
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def health_check():
        return {
            "status": "ok",
            "message": STATUS_MESSAGE,
        }

    @app.get(f"{API_PREFIX}/status")
    def get_status():
        return {
            "status": STATUS_MESSAGE,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/metrics/streaming", include_in_schema=False)
    def metrics_streaming():
        """JSON snapshot: active_connections, batches_dispatched, failures, latency avg/p95."""
        return _streaming_metrics.get_snapshot()

    @app.get(f"{API_PREFIX}/ws", include_in_schema=False)
    def ws_plain_request():
        raise HTTPException(status_code=400, detail=WS_ONLY_MESSAGE)

    ws_handler = build_ws_transcription_handler(
        settings,
        client_factory=client_factory,
        metrics=_streaming_metrics,
    )
    app.websocket(f"{API_PREFIX}/ws")(ws_handler)

    return app


def main() -> None:
    _setup_logging(_config.LOG_LEVEL)
    app = create_app()
    logger.info("Starting transcription relay on %s:%s", _config.HOST, _config.PORT)
    uvicorn.run(app, host=_config.HOST, port=_config.PORT)


if __name__ == "__main__":
    main()
