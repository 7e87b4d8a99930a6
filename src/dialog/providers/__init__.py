"""Speech and code-capture provider interfaces and implementations."""

from src.dialog.providers.base import (
    CaptureKind,
    CaptureOutcome,
    CodeCaptureProvider,
    RecognitionError,
    RecognitionResult,
    Recognizer,
    SynthesisOutcome,
    Synthesizer,
)

__all__ = [
    "CaptureKind",
    "CaptureOutcome",
    "CodeCaptureProvider",
    "RecognitionError",
    "RecognitionResult",
    "Recognizer",
    "SynthesisOutcome",
    "Synthesizer",
]
