from __future__ import annotations

from abc import ABC, abstractmethod
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional


class RecognitionError(Exception):
    """Raised from a recognizer's result stream when recognition fails at runtime."""

    def __init__(self, code: str = "recognition_failed", message: str = ""):
        super().__init__(message or code)
        self.code = code


@dataclass
class RecognitionResult:
    """One recognition event: an interim hypothesis or a committed final segment."""
    text: str
    is_final: bool
    confidence: float = 0.0
    timestamp: float = field(default_factory=time.time)


class SynthesisOutcome(str, Enum):
    COMPLETED = "completed"
    # Autoplay/permission policy refused playback
    BLOCKED = "blocked"
    ERROR = "error"
    CANCELLED = "cancelled"


class CaptureKind(str, Enum):
    CODE = "code"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass
class CaptureOutcome:
    kind: CaptureKind
    code: Optional[str] = None


class Recognizer(ABC):
    """
    Streaming speech recognizer.

    `start()` yields results until the recognizer ends on its own or `stop()` is
    called. Runtime failures are raised as `RecognitionError` from the stream.
    """

    @property
    def is_available(self) -> bool:
        return True

    @abstractmethod
    def start(self, locale: str) -> AsyncIterator[RecognitionResult]:
        raise NotImplementedError

    def stop(self) -> None:
        return None


class Synthesizer(ABC):
    @abstractmethod
    async def speak(self, text: str, *, locale: str, rate: float) -> SynthesisOutcome:
        raise NotImplementedError

    def cancel(self) -> None:
        return None


class CodeCaptureProvider(ABC):
    """Automatic one-time-code capture (e.g. an SMS retriever on the client)."""

    @property
    def is_available(self) -> bool:
        return True

    @abstractmethod
    async def request(self, timeout_s: float) -> CaptureOutcome:
        raise NotImplementedError

    def abort(self) -> None:
        return None
