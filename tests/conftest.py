"""
Pytest configuration and fixtures.
"""

import asyncio
import os
from typing import Optional
from unittest.mock import patch

import pytest

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


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "DEFAULT_LOCALE": "en",
        # Short timers keep the suite fast
        "ELDER_SILENCE_TIMEOUT_MS": "120",
        "ELDER_NO_SPEECH_TIMEOUT_MS": "200",
        "QUICK_SILENCE_TIMEOUT_MS": "40",
        "QUICK_NO_SPEECH_TIMEOUT_MS": "100",
        "AIRLOCK_COOLDOWN_MS": "20",
        "AUTO_ADVANCE_MS": "60",
        "OTP_DEADLINE_MS": "150",
        "OTP_LENGTH": "6",
        "VOICE_RETRY_LIMIT": "3",
        "MAX_SNOOZES": "3",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.dialog.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def config():
    from src.dialog.config import get_config
    return get_config()


_END = object()


class ScriptedRecognizer(Recognizer):
    """Recognizer fed by the test through push()/finish()/fail()."""

    def __init__(self, available: bool = True):
        self.available = available
        self.started = 0
        self.stopped = 0
        self.locales: list[str] = []
        self._queue: Optional[asyncio.Queue] = None

    @property
    def is_available(self) -> bool:
        return self.available

    @property
    def active(self) -> bool:
        return self._queue is not None

    def _open(self, locale: str) -> asyncio.Queue:
        self.started += 1
        self.locales.append(locale)
        queue: asyncio.Queue = asyncio.Queue()
        self._queue = queue
        return queue

    async def _drain(self, queue: asyncio.Queue):
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            if self._queue is queue:
                self._queue = None

    def start(self, locale: str):
        return self._drain(self._open(locale))

    def stop(self) -> None:
        self.stopped += 1
        if self._queue is not None:
            self._queue.put_nowait(_END)
            self._queue = None

    def push(self, text: str, is_final: bool = True) -> bool:
        if self._queue is None:
            return False
        self._queue.put_nowait(RecognitionResult(text=text, is_final=is_final, confidence=0.9))
        return True

    def finish(self) -> None:
        if self._queue is not None:
            self._queue.put_nowait(_END)

    def fail(self, code: str = "network") -> None:
        if self._queue is not None:
            self._queue.put_nowait(RecognitionError(code))


class AnsweringRecognizer(ScriptedRecognizer):
    """
    Answers one scripted utterance per listen cycle.

    Each answer is a final string, a list of (text, is_final) segments, or None
    for silence. The stream stays open afterwards so the channel's timers decide
    when the cycle ends.
    """

    def __init__(self, answers, available: bool = True, gap: float = 0.005):
        super().__init__(available=available)
        self.answers = list(answers)
        self.gap = gap

    def start(self, locale: str):
        answer = self.answers.pop(0) if self.answers else None
        if isinstance(answer, str):
            answer = [(answer, True)]
        queue = self._open(locale)
        return self._answer(queue, answer or [])

    async def _answer(self, queue: asyncio.Queue, segments):
        for text, is_final in segments:
            await asyncio.sleep(self.gap)
            yield RecognitionResult(text=text, is_final=is_final, confidence=0.9)
        async for item in self._drain(queue):
            yield item


class FakeSynthesizer(Synthesizer):
    """Synthesizer that records utterances and resolves immediately by default."""

    def __init__(self, outcome: SynthesisOutcome = SynthesisOutcome.COMPLETED, delay: float = 0.0):
        self.outcome = outcome
        self.delay = delay
        self.spoken: list[str] = []
        self.locales: list[str] = []
        self.cancelled = 0
        self.raise_error: Optional[Exception] = None

    async def speak(self, text: str, *, locale: str, rate: float) -> SynthesisOutcome:
        self.spoken.append(text)
        self.locales.append(locale)
        if self.raise_error is not None:
            raise self.raise_error
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.outcome

    def cancel(self) -> None:
        self.cancelled += 1


class FakeCapture(CodeCaptureProvider):
    """Code capture that returns `code` after `delay` seconds, or never."""

    def __init__(self, code: Optional[str] = None, delay: float = 0.01, available: bool = True):
        self.code = code
        self.delay = delay
        self.available = available
        self.requests = 0
        self.aborted = 0

    @property
    def is_available(self) -> bool:
        return self.available

    async def request(self, timeout_s: float) -> CaptureOutcome:
        self.requests += 1
        if self.code is None:
            await asyncio.sleep(timeout_s + 10)
            return CaptureOutcome(kind=CaptureKind.TIMEOUT)
        await asyncio.sleep(self.delay)
        return CaptureOutcome(kind=CaptureKind.CODE, code=self.code)

    def abort(self) -> None:
        self.aborted += 1


@pytest.fixture
def recognizer():
    return ScriptedRecognizer()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.002) -> None:
    """Wait until predicate() is true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
