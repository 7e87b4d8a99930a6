"""
Providers backed by a connected client.

Recognition, synthesis and SMS code capture run on the client; these classes turn
the client protocol into the provider interfaces the channel and the capture
chain consume. Outbound messages go through a synchronous `send` (an enqueue), so
`stop()`, `cancel()` and `abort()` stay synchronous.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Optional, Union

import structlog

from src.dialog.client_protocol import (
    ClientEventType,
    HelloEvent,
    OtpResultEvent,
    RecognitionEndEvent,
    SpeechEndEvent,
    TranscriptEvent,
    create_cancel_speech_message,
    create_otp_abort_message,
    create_otp_request_message,
    create_speak_message,
    create_start_recognition_message,
    create_stop_recognition_message,
)
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

logger = structlog.get_logger(__name__)

Send = Callable[[str], None]

_END = object()


class RemoteRecognizer(Recognizer):
    def __init__(self, send: Send, *, available: bool = True):
        self._send = send
        self._available = available
        self._rid = 0
        self._active_rid: Optional[int] = None
        self._queue: Optional[asyncio.Queue] = None

    @property
    def is_available(self) -> bool:
        return self._available

    @property
    def active_rid(self) -> Optional[int]:
        return self._active_rid

    async def start(self, locale: str) -> AsyncIterator[RecognitionResult]:
        self._rid += 1
        rid = self._rid
        queue: asyncio.Queue = asyncio.Queue()
        self._active_rid = rid
        self._queue = queue
        self._send(create_start_recognition_message(rid, locale))
        try:
            while True:
                item: Union[RecognitionResult, RecognitionError, object] = await queue.get()
                if item is _END:
                    return
                if isinstance(item, RecognitionError):
                    raise item
                yield item
        finally:
            if self._active_rid == rid:
                self._send(create_stop_recognition_message(rid))
                self._active_rid = None
                self._queue = None

    def stop(self) -> None:
        rid = self._active_rid
        if rid is None:
            return
        self._send(create_stop_recognition_message(rid))
        self._active_rid = None
        if self._queue is not None:
            self._queue.put_nowait(_END)
            self._queue = None

    def feed_transcript(self, event: TranscriptEvent) -> bool:
        if event.rid != self._active_rid or self._queue is None:
            logger.debug("Stale transcript dropped", rid=event.rid, active_rid=self._active_rid)
            return False
        self._queue.put_nowait(
            RecognitionResult(text=event.text, is_final=event.is_final, confidence=event.confidence)
        )
        return True

    def feed_end(self, event: RecognitionEndEvent, *, error: bool = False) -> bool:
        if event.rid != self._active_rid or self._queue is None:
            return False
        if error:
            self._queue.put_nowait(RecognitionError(event.error or "recognition_failed"))
        else:
            self._queue.put_nowait(_END)
        return True


class RemoteSynthesizer(Synthesizer):
    def __init__(self, send: Send):
        self._send = send
        self._sid = 0
        self._pending: dict[int, asyncio.Future] = {}

    async def speak(self, text: str, *, locale: str, rate: float) -> SynthesisOutcome:
        self._sid += 1
        sid = self._sid
        fut = asyncio.get_running_loop().create_future()
        self._pending[sid] = fut
        self._send(create_speak_message(sid, text, locale, rate))
        try:
            return await fut
        finally:
            self._pending.pop(sid, None)

    def cancel(self) -> None:
        for sid, fut in list(self._pending.items()):
            self._send(create_cancel_speech_message(sid))
            if not fut.done():
                fut.set_result(SynthesisOutcome.CANCELLED)

    def feed_speech_end(self, event: SpeechEndEvent) -> bool:
        fut = self._pending.get(event.sid)
        if fut is None or fut.done():
            return False
        try:
            outcome = SynthesisOutcome(event.outcome)
        except ValueError:
            outcome = SynthesisOutcome.ERROR
        fut.set_result(outcome)
        return True


class RemoteCodeCapture(CodeCaptureProvider):
    def __init__(self, send: Send, *, available: bool = False):
        self._send = send
        self._available = available
        self._oid = 0
        self._pending: Optional[tuple[int, asyncio.Future]] = None

    @property
    def is_available(self) -> bool:
        return self._available

    async def request(self, timeout_s: float) -> CaptureOutcome:
        self._oid += 1
        oid = self._oid
        fut = asyncio.get_running_loop().create_future()
        self._pending = (oid, fut)
        self._send(create_otp_request_message(oid, int(timeout_s * 1000)))
        try:
            return await asyncio.wait_for(fut, timeout=timeout_s)
        except asyncio.TimeoutError:
            self._send(create_otp_abort_message(oid))
            return CaptureOutcome(kind=CaptureKind.TIMEOUT)
        finally:
            if self._pending is not None and self._pending[0] == oid:
                self._pending = None

    def abort(self) -> None:
        if self._pending is None:
            return
        oid, fut = self._pending
        self._pending = None
        self._send(create_otp_abort_message(oid))
        if not fut.done():
            fut.set_result(CaptureOutcome(kind=CaptureKind.ABORTED))

    def feed_result(self, event: OtpResultEvent) -> bool:
        if self._pending is None or self._pending[0] != event.oid:
            logger.debug("Stale code result dropped", oid=event.oid)
            return False
        _, fut = self._pending
        if fut.done():
            return False
        try:
            kind = CaptureKind(event.kind)
        except ValueError:
            kind = CaptureKind.ERROR
        fut.set_result(CaptureOutcome(kind=kind, code=event.code))
        return True


class RemoteClient:
    """The three remote providers of one connection, plus event dispatch."""

    def __init__(self, send: Send):
        self.recognizer = RemoteRecognizer(send, available=False)
        self.synthesizer = RemoteSynthesizer(send)
        self.capture = RemoteCodeCapture(send, available=False)

    def apply_hello(self, event: HelloEvent) -> None:
        self.recognizer._available = event.recognition
        self.capture._available = event.otp

    def dispatch(self, event_type: ClientEventType, event: object) -> bool:
        """Route a provider-level event. Returns False for events that aren't provider events."""
        if event_type == ClientEventType.TRANSCRIPT:
            self.recognizer.feed_transcript(event)
        elif event_type == ClientEventType.RECOGNITION_END:
            self.recognizer.feed_end(event)
        elif event_type == ClientEventType.RECOGNITION_ERROR:
            self.recognizer.feed_end(event, error=True)
        elif event_type == ClientEventType.SPEECH_END:
            self.synthesizer.feed_speech_end(event)
        elif event_type == ClientEventType.OTP_RESULT:
            self.capture.feed_result(event)
        else:
            return False
        return True
