"""
One-time code acquisition with a voice fallback.

Automatic capture (an SMS retriever on the client) races a single deadline. When
the deadline fires, automatic capture is aborted and the voice fallback starts in
the same callback; a code that arrives automatically after that is ignored.
Exactly one winner is recorded per race.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from src.dialog.config import Config, get_config
from src.dialog.numbers import extract_code
from src.dialog.providers.base import CaptureKind, CaptureOutcome, CodeCaptureProvider

logger = structlog.get_logger(__name__)

VoiceFallback = Callable[[], Awaitable[Optional[str]]]


class CaptureWinner(str, Enum):
    AUTOMATIC = "automatic"
    VOICE = "voice"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class CaptureRace:
    """Bookkeeping for one code request. Times are event-loop times."""
    started_at: float
    deadline: float
    winner: Optional[CaptureWinner] = None
    fallback_started_at: Optional[float] = None
    automatic_stopped_at: Optional[float] = None

    @property
    def resolved(self) -> bool:
        return self.winner is not None

    def resolve(self, winner: CaptureWinner) -> bool:
        """Record the winner. Only the first call succeeds."""
        if self.winner is not None:
            return False
        self.winner = winner
        return True


@dataclass
class CaptureResult:
    code: Optional[str]
    winner: CaptureWinner
    race: CaptureRace


class CredentialCaptureFallbackChain:
    """
    Automatic capture -> deadline -> voice fallback.

    `voice_fallback` is awaited once the deadline passes and returns the spoken
    code or None. `cancel()` ends the current acquisition as CANCELLED.
    """

    def __init__(
        self,
        provider: Optional[CodeCaptureProvider],
        voice_fallback: VoiceFallback,
        *,
        code_length: Optional[int] = None,
        config: Optional[Config] = None,
    ):
        if config is None:
            config = get_config()
        self.config = config
        self._provider = provider
        self._voice_fallback = voice_fallback
        self._code_length = code_length or config.otp_length
        self._cancelled: Optional[asyncio.Future] = None
        self._race: Optional[CaptureRace] = None

    @property
    def race(self) -> Optional[CaptureRace]:
        return self._race

    def cancel(self) -> None:
        fut = self._cancelled
        if fut is not None and not fut.done():
            fut.set_result(None)
            logger.info("Code capture cancelled")

    async def acquire(self, deadline_ms: Optional[int] = None) -> CaptureResult:
        loop = asyncio.get_running_loop()
        deadline_ms = deadline_ms if deadline_ms is not None else self.config.otp_deadline_ms

        now = loop.time()
        race = CaptureRace(started_at=now, deadline=now + deadline_ms / 1000.0)
        self._race = race
        cancelled = loop.create_future()
        self._cancelled = cancelled

        expired = loop.create_future()

        def _on_deadline() -> None:
            if not expired.done():
                expired.set_result(loop.time())

        deadline_handle = loop.call_at(race.deadline, _on_deadline)

        auto_task: Optional[asyncio.Task] = None
        if self._provider is not None and self._provider.is_available:
            auto_task = asyncio.create_task(self._provider.request(deadline_ms / 1000.0))
        else:
            logger.info("Automatic code capture unavailable, waiting for deadline", deadline_ms=deadline_ms)

        fallback_task: Optional[asyncio.Task] = None
        try:
            pending: set[asyncio.Future] = {expired, cancelled}
            if auto_task is not None:
                pending.add(auto_task)

            while True:
                done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)

                if cancelled in done:
                    self._stop_automatic(auto_task, race, loop.time())
                    race.resolve(CaptureWinner.CANCELLED)
                    return CaptureResult(code=None, winner=CaptureWinner.CANCELLED, race=race)

                if auto_task is not None and auto_task in done:
                    pending.discard(auto_task)
                    outcome = self._automatic_outcome(auto_task)
                    code = extract_code(outcome.code or "", self._code_length)
                    if outcome.kind == CaptureKind.CODE and code and race.resolve(CaptureWinner.AUTOMATIC):
                        logger.info("Code captured automatically")
                        return CaptureResult(code=code, winner=CaptureWinner.AUTOMATIC, race=race)
                    # Early timeout/abort/error: the deadline still governs.
                    logger.info("Automatic code capture ended without a code", kind=outcome.kind.value)

                if expired in done:
                    break

            fired_at = expired.result()
            self._stop_automatic(auto_task, race, fired_at)
            race.fallback_started_at = fired_at
            logger.info("Code deadline passed, starting voice fallback", deadline_ms=deadline_ms)

            fallback_task = asyncio.create_task(self._voice_fallback())
            done, _ = await asyncio.wait({fallback_task, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if cancelled in done:
                race.resolve(CaptureWinner.CANCELLED)
                return CaptureResult(code=None, winner=CaptureWinner.CANCELLED, race=race)

            spoken = fallback_task.result()
            code = extract_code(spoken or "", self._code_length) or None
            winner = CaptureWinner.VOICE if code else CaptureWinner.TIMEOUT
            race.resolve(winner)
            logger.info("Code capture resolved", winner=winner.value)
            return CaptureResult(code=code, winner=winner, race=race)
        finally:
            deadline_handle.cancel()
            if auto_task is not None and not auto_task.done():
                if race.automatic_stopped_at is None:
                    self._stop_automatic(auto_task, race, loop.time())
                else:
                    auto_task.cancel()
            if fallback_task is not None and not fallback_task.done():
                fallback_task.cancel()
            self._cancelled = None

    def _stop_automatic(self, auto_task: Optional[asyncio.Task], race: CaptureRace, at: float) -> None:
        if race.automatic_stopped_at is None:
            race.automatic_stopped_at = at
        if auto_task is None or auto_task.done():
            return
        if self._provider is not None:
            self._provider.abort()
        auto_task.cancel()

    @staticmethod
    def _automatic_outcome(task: asyncio.Task) -> CaptureOutcome:
        if task.cancelled():
            return CaptureOutcome(kind=CaptureKind.ABORTED)
        exc = task.exception()
        if exc is not None:
            logger.warning("Automatic code capture failed", error=str(exc))
            return CaptureOutcome(kind=CaptureKind.ERROR)
        return task.result()
