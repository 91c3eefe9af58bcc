"""
Transcription client adapter.

Sends one WAV batch to the remote transcription service and returns the
text. AssemblyAI is asynchronous on its side: upload the blob, submit a
transcript job that references the upload URL, then poll the job until it
completes or errors.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from streaming.events import DEFAULT_CONFIDENCE

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"


class TranscriptionError(Exception):
    """Upload, submit or poll failed, or the remote job ended in error."""


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    confidence: float = DEFAULT_CONFIDENCE
    transcript_id: Optional[str] = None


class TranscriptionClient(ABC):
    @abstractmethod
    async def transcribe(self, wav: bytes) -> TranscriptionResult:
        """Convert one WAV blob to text. Raises TranscriptionError on failure."""
        ...


class AssemblyAITranscriptionClient(TranscriptionClient):

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.assemblyai.com",
        language_code: str = "en",
        poll_interval: float = 1.0,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._language_code = language_code
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._transport = transport

    async def transcribe(self, wav: bytes) -> TranscriptionResult:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers={"authorization": self._api_key},
            timeout=httpx.Timeout(60.0),
            transport=self._transport,
        ) as client:
            try:
                upload_url = await self._upload(client, wav)
                transcript_id = await self._submit(client, upload_url)
                job = await self._wait_until_ready(client, transcript_id)
            except httpx.HTTPStatusError as exc:
                raise TranscriptionError(
                    f"Transcription API returned {exc.response.status_code} for {exc.request.url.path}"
                ) from exc
            except httpx.HTTPError as exc:
                raise TranscriptionError(f"Transcription API request failed: {exc}") from exc

        confidence = job.get("confidence")
        try:
            return TranscriptionResult(
                text=str(job.get("text") or "").strip(),
                confidence=float(confidence) if confidence is not None else DEFAULT_CONFIDENCE,
                transcript_id=transcript_id,
            )
        except (TypeError, ValueError) as exc:
            raise TranscriptionError(f"Transcript {transcript_id} has invalid confidence: {confidence!r}") from exc

    async def _upload(self, client: httpx.AsyncClient, wav: bytes) -> str:
        response = await client.post(
            "/v2/upload",
            content=wav,
            headers={"content-type": "application/octet-stream"},
        )
        response.raise_for_status()
        upload_url = _json_object(response, "upload").get("upload_url")
        if not upload_url:
            raise TranscriptionError("Upload response missing upload_url")
        return upload_url

    async def _submit(self, client: httpx.AsyncClient, upload_url: str) -> str:
        response = await client.post(
            "/v2/transcript",
            json={"audio_url": upload_url, "language_code": self._language_code},
        )
        response.raise_for_status()
        transcript_id = _json_object(response, "transcript").get("id")
        if not transcript_id:
            raise TranscriptionError("Transcript response missing id")
        logger.debug("Submitted transcript %s", transcript_id)
        return transcript_id

    async def _wait_until_ready(self, client: httpx.AsyncClient, transcript_id: str) -> Dict[str, Any]:
        deadline = time.monotonic() + self._timeout
        while True:
            response = await client.get(f"/v2/transcript/{transcript_id}")
            response.raise_for_status()
            job = _json_object(response, "poll")
            status = job.get("status")
            if status == STATUS_COMPLETED:
                return job
            if status == STATUS_ERROR:
                raise TranscriptionError(f"Transcript {transcript_id} failed: {job.get('error')}")
            if time.monotonic() >= deadline:
                raise TranscriptionError(
                    f"Transcript {transcript_id} not ready after {self._timeout:.0f}s (status={status})"
                )
            await asyncio.sleep(self._poll_interval)


def _json_object(response: httpx.Response, step: str) -> Dict[str, Any]:
    """Decode a JSON object body; anything else is a TranscriptionError."""
    try:
        body = response.json()
    except ValueError as exc:
        raise TranscriptionError(f"Transcription API {step} response is not JSON") from exc
    if not isinstance(body, dict):
        raise TranscriptionError(f"Transcription API {step} response is not a JSON object")
    return body
