"""Outbound transcript events, serialized to the client as JSON text frames."""

from dataclasses import dataclass
from typing import Any, Dict

DEFAULT_CONFIDENCE = 0.8


@dataclass(frozen=True)
class TranscriptEvent:
    type = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type}


@dataclass(frozen=True)
class Ready(TranscriptEvent):
    type = "ready"


@dataclass(frozen=True)
class Final(TranscriptEvent):
    text: str = ""
    confidence: float = DEFAULT_CONFIDENCE
    type = "final"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text, "confidence": self.confidence}


@dataclass(frozen=True)
class Error(TranscriptEvent):
    message: str = ""
    type = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "message": self.message}
