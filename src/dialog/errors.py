"""
Error taxonomy for the dialog engine.

Only `UnsupportedError` is ever raised to the host screen; every other kind is
recorded on channel state or handled by the engine's retry policy.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error categories."""

    # Platform lacks a capability (permanent, surfaced once)
    UNSUPPORTED = "unsupported"
    # Recognition failed for this attempt (transient)
    RECOGNITION_FAILED = "recognition_failed"
    # Input didn't parse or pass business rules (expected, drives retry prompts)
    VALIDATION_FAILED = "validation_failed"
    # No-speech or silence elapsed (expected, not an error state)
    TIMEOUT = "timeout"
    # Autoplay/permission policy blocked synthesis (resolved silently)
    SYNTHESIS_BLOCKED = "synthesis_blocked"


class DialogError(Exception):
    """Base class for dialog engine exceptions."""
    pass


class UnsupportedError(DialogError):
    """Raised when the platform has no speech recognition at all."""

    kind = ErrorKind.UNSUPPORTED


class FlowBusyError(DialogError):
    """Raised when a second flow is started on an engine that is already running one."""
    pass


class AuthError(DialogError):
    """Raised by an AuthService when a code can't be sent or doesn't verify."""

    def __init__(self, message: str, *, code: str = "auth_failed"):
        super().__init__(message)
        self.code = code
