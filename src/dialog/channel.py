"""
Half-duplex speech channel.

One channel owns one microphone and one speaker. It never listens while it speaks,
applies a per-cycle timeout policy (silence and no-speech timers), merges
recognition segments per transcript mode, and enforces a short "airlock" cooldown
after every context switch so a stale recognizer callback can't leak into the
next screen.

Every timer carries the channel generation (bumped on each context switch) and,
for the silence timer, an arm id (bumped on each re-arm). A timer whose ids are
stale when it fires does nothing.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from src.dialog.config import Config, get_config
from src.dialog.errors import ErrorKind
from src.dialog.locale import normalize_locale, redact_for_logs, speech_tag
from src.dialog.providers.base import (
    RecognitionError,
    RecognitionResult,
    Recognizer,
    SynthesisOutcome,
    Synthesizer,
)

logger = structlog.get_logger(__name__)

# speak() resolves with the provider outcome; blocked/error never raise.
SpeechOutcome = SynthesisOutcome


class TranscriptMode(str, Enum):
    # Append each final segment (long answers spoken in pieces)
    ACCUMULATE = "accumulate"
    # Each final segment replaces the buffer (short commands)
    REPLACE = "replace"


@dataclass(frozen=True)
class TimeoutPolicy:
    """Timers for one listen cycle. Captured at start; never changed mid-listen."""
    silence_timeout_ms: int
    no_speech_timeout_ms: int

    @classmethod
    def elder_friendly(cls, config: Optional[Config] = None) -> "TimeoutPolicy":
        config = config or get_config()
        return cls(config.elder_silence_timeout_ms, config.elder_no_speech_timeout_ms)

    @classmethod
    def quick_command(cls, config: Optional[Config] = None) -> "TimeoutPolicy":
        config = config or get_config()
        return cls(config.quick_silence_timeout_ms, config.quick_no_speech_timeout_ms)


ELDER_FRIENDLY = TimeoutPolicy(silence_timeout_ms=6000, no_speech_timeout_ms=8000)
QUICK_COMMAND = TimeoutPolicy(silence_timeout_ms=1500, no_speech_timeout_ms=5000)


@dataclass(frozen=True)
class ListenProfile:
    policy: TimeoutPolicy
    mode: TranscriptMode


def profile_for_route(route: Optional[str], config: Optional[Config] = None) -> ListenProfile:
    """
    Pick the listen profile for a screen.

    Data-entry routes (registration, login) get long timeouts and accumulate
    segments; every other route is a quick command context.
    """
    config = config or get_config()
    route = (route or "").strip().lower()
    for prefix in config.elder_routes:
        if route.startswith(prefix.lower()):
            return ListenProfile(TimeoutPolicy.elder_friendly(config), TranscriptMode.ACCUMULATE)
    return ListenProfile(TimeoutPolicy.quick_command(config), TranscriptMode.REPLACE)


@dataclass
class ChannelState:
    listening: bool = False
    speaking: bool = False
    processing_cooldown: bool = False
    transcript_buffer: str = ""
    last_error: Optional[ErrorKind] = None
    interim: str = ""
    mode: TranscriptMode = TranscriptMode.ACCUMULATE

    @property
    def preview(self) -> str:
        """Live text shown while the user is still speaking."""
        if not self.interim:
            return self.transcript_buffer
        if self.mode == TranscriptMode.ACCUMULATE:
            return f"{self.transcript_buffer} {self.interim}".strip()
        return self.interim


class StopReason(str, Enum):
    SILENCE = "silence"
    NO_SPEECH = "no_speech"
    MANUAL = "manual"
    TYPED = "typed"
    ERROR = "error"
    CANCELLED = "cancelled"
    # Recognizer ended the stream on its own
    ENDED = "ended"


@dataclass
class ListenResult:
    transcript: str
    reason: StopReason
    error: Optional[str] = None


class ChannelEvent(str, Enum):
    TRANSCRIPT = "transcript"
    LISTENING_STARTED = "listening_started"
    LISTENING_STOPPED = "listening_stopped"
    SPEAKING_STARTED = "speaking_started"
    SPEAKING_STOPPED = "speaking_stopped"
    ERROR = "error"
    COOLDOWN_ENDED = "cooldown_ended"


Subscriber = Callable[[ChannelEvent, dict[str, Any]], None]


@dataclass
class _ListenCycle:
    cycle_id: int
    generation: int
    policy: TimeoutPolicy
    mode: TranscriptMode
    future: asyncio.Future
    heard_any: bool = False
    task: Optional[asyncio.Task] = None
    silence_handle: Optional[asyncio.TimerHandle] = None
    no_speech_handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return not self.future.done()


class SpeechChannel:
    """
    Arbitrates one half-duplex audio channel.

    Created per client connection and injected into the engine. Construction with
    no (or an unavailable) recognizer records `ErrorKind.UNSUPPORTED` once; every
    later `start_listening()` is a no-op.
    """

    def __init__(
        self,
        recognizer: Optional[Recognizer],
        synthesizer: Synthesizer,
        *,
        locale: Optional[str] = None,
        speech_rate: Optional[float] = None,
        config: Optional[Config] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.state = ChannelState()
        self._recognizer = recognizer
        self._synthesizer = synthesizer
        self._locale = normalize_locale(locale or config.default_locale)
        self._speech_rate = speech_rate if speech_rate is not None else config.speech_rate

        self._generation = 0
        self._arm_id = 0
        self._cycle_seq = 0
        self._cycle: Optional[_ListenCycle] = None
        self._last_result: Optional[ListenResult] = None

        self._speech_seq = 0
        self._speech_task: Optional[asyncio.Task] = None
        self._cooldown_handle: Optional[asyncio.TimerHandle] = None
        self._ready = asyncio.Event()
        self._ready.set()

        self._subscribers: list[Subscriber] = []

        self.recognition_supported = recognizer is not None and recognizer.is_available
        if not self.recognition_supported:
            self.state.last_error = ErrorKind.UNSUPPORTED
            logger.warning("Speech recognition unsupported on this client")

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def locale(self) -> str:
        return self._locale

    def set_locale(self, locale: Optional[str]) -> None:
        self._locale = normalize_locale(locale)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def last_result(self) -> Optional[ListenResult]:
        return self._last_result

    @property
    def is_ready(self) -> bool:
        return not self.state.speaking and not self.state.processing_cooldown

    # ------------------------------------------------------------------ #
    # Subscribers
    # ------------------------------------------------------------------ #

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _emit(self, event: ChannelEvent, **data: Any) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event, data)
            except Exception as e:
                logger.warning("Channel subscriber failed", event=event.value, error=str(e), exc_info=True)

    # ------------------------------------------------------------------ #
    # Listening
    # ------------------------------------------------------------------ #

    def start_listening(self, policy: TimeoutPolicy, mode: TranscriptMode) -> bool:
        """
        Open a listen cycle.

        Returns False (and does nothing) while speaking, during the airlock, when
        already listening, or when recognition is unsupported.
        """
        if not self.recognition_supported:
            logger.debug("Listen ignored", reason="unsupported")
            return False
        if self.state.speaking:
            logger.debug("Listen ignored", reason="speaking")
            return False
        if self.state.processing_cooldown:
            logger.debug("Listen ignored", reason="cooldown")
            return False
        if self.state.listening:
            logger.debug("Listen ignored", reason="already_listening")
            return False

        loop = asyncio.get_running_loop()
        self._cycle_seq += 1
        cycle = _ListenCycle(
            cycle_id=self._cycle_seq,
            generation=self._generation,
            policy=policy,
            mode=mode,
            future=loop.create_future(),
        )
        self._cycle = cycle

        self.state.transcript_buffer = ""
        self.state.interim = ""
        self.state.mode = mode
        self.state.last_error = None
        self.state.listening = True

        cycle.no_speech_handle = loop.call_later(
            policy.no_speech_timeout_ms / 1000.0,
            self._on_no_speech,
            cycle.generation,
            cycle.cycle_id,
        )
        cycle.task = asyncio.create_task(self._run_recognition(cycle))

        logger.debug(
            "Listening started",
            cycle=cycle.cycle_id,
            mode=mode.value,
            silence_timeout_ms=policy.silence_timeout_ms,
            no_speech_timeout_ms=policy.no_speech_timeout_ms,
        )
        self._emit(ChannelEvent.LISTENING_STARTED, mode=mode.value)
        return True

    def stop_listening(self) -> None:
        """Stop the current cycle (idempotent)."""
        cycle = self._cycle
        if cycle is not None and cycle.active:
            self._end_cycle(cycle, StopReason.MANUAL)

    async def wait_for_stop(self) -> ListenResult:
        """Wait until the current listen cycle ends."""
        cycle = self._cycle
        if cycle is None:
            return self._last_result or ListenResult(transcript="", reason=StopReason.MANUAL)
        return await asyncio.shield(cycle.future)

    def stop_future(self) -> Optional[asyncio.Future]:
        """Future of the current cycle, for callers that race it with other events."""
        return self._cycle.future if self._cycle is not None else None

    async def wait_until_ready(self) -> None:
        """Wait until the channel is neither speaking nor in the airlock."""
        while not self.is_ready:
            self._ready.clear()
            await self._ready.wait()

    def reset_transcript(self) -> None:
        self.state.transcript_buffer = ""
        self.state.interim = ""

    def submit_text(self, text: str) -> bool:
        """
        Typed/tapped fallback input.

        Commits the text as a final segment and ends the current cycle with reason
        TYPED. Returns False when no listen cycle is open.
        """
        cycle = self._cycle
        if cycle is None or not cycle.active:
            logger.debug("Typed input ignored", reason="not_listening")
            return False
        self._merge_final(cycle.mode, (text or "").strip())
        self.state.interim = ""
        self._emit(
            ChannelEvent.TRANSCRIPT,
            transcript=self.state.transcript_buffer,
            preview=self.state.preview,
            is_final=True,
        )
        self._end_cycle(cycle, StopReason.TYPED)
        return True

    def _merge_final(self, mode: TranscriptMode, segment: str) -> None:
        if mode == TranscriptMode.ACCUMULATE:
            self.state.transcript_buffer = f"{self.state.transcript_buffer} {segment}".strip()
        else:
            self.state.transcript_buffer = segment.strip()

    async def _run_recognition(self, cycle: _ListenCycle) -> None:
        recognizer = self._recognizer
        if recognizer is None:
            return
        try:
            async for result in recognizer.start(speech_tag(self._locale)):
                if cycle is not self._cycle or not cycle.active:
                    break
                self._handle_result(cycle, result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            code = e.code if isinstance(e, RecognitionError) else "recognition_failed"
            if cycle is self._cycle and cycle.active:
                self.state.last_error = ErrorKind.RECOGNITION_FAILED
                logger.warning("Recognition failed", cycle=cycle.cycle_id, error=code)
                self._emit(ChannelEvent.ERROR, kind=ErrorKind.RECOGNITION_FAILED.value, error=code)
                self._end_cycle(cycle, StopReason.ERROR, error=code)
            return

        if cycle is self._cycle and cycle.active:
            self._end_cycle(cycle, StopReason.ENDED)

    def _handle_result(self, cycle: _ListenCycle, result: RecognitionResult) -> None:
        cycle.heard_any = True
        self._arm_silence(cycle)

        if result.is_final:
            if result.text.strip():
                self._merge_final(cycle.mode, result.text)
            self.state.interim = ""
        else:
            self.state.interim = result.text.strip()

        logger.debug(
            "Transcript",
            cycle=cycle.cycle_id,
            is_final=result.is_final,
            text=redact_for_logs(self.state.preview)[:80],
        )
        self._emit(
            ChannelEvent.TRANSCRIPT,
            transcript=self.state.transcript_buffer,
            preview=self.state.preview,
            is_final=result.is_final,
        )

    def _arm_silence(self, cycle: _ListenCycle) -> None:
        loop = asyncio.get_running_loop()
        if cycle.no_speech_handle is not None:
            cycle.no_speech_handle.cancel()
            cycle.no_speech_handle = None
        if cycle.silence_handle is not None:
            cycle.silence_handle.cancel()
        self._arm_id += 1
        cycle.silence_handle = loop.call_later(
            cycle.policy.silence_timeout_ms / 1000.0,
            self._on_silence,
            cycle.generation,
            self._arm_id,
        )

    def _on_silence(self, generation: int, arm_id: int) -> None:
        cycle = self._cycle
        if generation != self._generation or arm_id != self._arm_id:
            return
        if cycle is None or not cycle.active:
            return
        self._end_cycle(cycle, StopReason.SILENCE)

    def _on_no_speech(self, generation: int, cycle_id: int) -> None:
        cycle = self._cycle
        if generation != self._generation or cycle is None or cycle.cycle_id != cycle_id:
            return
        if not cycle.active or cycle.heard_any:
            return
        self._end_cycle(cycle, StopReason.NO_SPEECH)

    def _end_cycle(self, cycle: _ListenCycle, reason: StopReason, error: Optional[str] = None) -> None:
        for handle in (cycle.silence_handle, cycle.no_speech_handle):
            if handle is not None:
                handle.cancel()
        cycle.silence_handle = None
        cycle.no_speech_handle = None

        self.state.listening = False
        self.state.interim = ""
        if self._recognizer is not None:
            self._recognizer.stop()
        if cycle.task is not None and cycle.task is not asyncio.current_task() and not cycle.task.done():
            cycle.task.cancel()

        result = ListenResult(transcript=self.state.transcript_buffer, reason=reason, error=error)
        self._last_result = result
        cycle.future.set_result(result)

        logger.debug(
            "Listening stopped",
            cycle=cycle.cycle_id,
            reason=reason.value,
            text=redact_for_logs(result.transcript)[:80],
        )
        self._emit(ChannelEvent.LISTENING_STOPPED, reason=reason.value, transcript=result.transcript)

    # ------------------------------------------------------------------ #
    # Speaking
    # ------------------------------------------------------------------ #

    async def speak(
        self,
        text: str,
        *,
        rate: Optional[float] = None,
        locale: Optional[str] = None,
    ) -> SpeechOutcome:
        """
        Speak `text` and return when playback ends.

        Cancels in-flight speech and stops any open listen cycle first. Provider
        failures and autoplay blocks resolve normally with the matching outcome.
        """
        if not text or not text.strip():
            return SynthesisOutcome.COMPLETED

        self._cancel_speech()
        self.stop_listening()

        self._speech_seq += 1
        seq = self._speech_seq
        self.state.speaking = True
        self._ready.clear()
        self._emit(ChannelEvent.SPEAKING_STARTED, text=text)

        tag = speech_tag(locale or self._locale)
        task = asyncio.create_task(
            self._synthesizer.speak(
                text,
                locale=tag,
                rate=rate if rate is not None else self._speech_rate,
            )
        )
        self._speech_task = task

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            if seq == self._speech_seq:
                self._cancel_speech()
            raise

        if task.cancelled():
            outcome = SynthesisOutcome.CANCELLED
        elif task.exception() is not None:
            logger.warning("Speech synthesis failed", error=str(task.exception()))
            outcome = SynthesisOutcome.ERROR
        else:
            outcome = task.result()

        if outcome == SynthesisOutcome.BLOCKED:
            self.state.last_error = ErrorKind.SYNTHESIS_BLOCKED
            logger.info("Speech synthesis blocked by playback policy")
        elif outcome == SynthesisOutcome.ERROR:
            logger.warning("Speech synthesis error")

        if seq == self._speech_seq:
            self._finish_speaking()
        return outcome

    def _finish_speaking(self) -> None:
        self._speech_task = None
        if self.state.speaking:
            self.state.speaking = False
            self._emit(ChannelEvent.SPEAKING_STOPPED)
        self._update_ready()

    def _cancel_speech(self) -> None:
        task = self._speech_task
        if task is None:
            return
        self._speech_seq += 1
        if not task.done():
            self._synthesizer.cancel()
            task.cancel()
        self._finish_speaking()

    def cancel_speech(self) -> None:
        self._cancel_speech()

    # ------------------------------------------------------------------ #
    # Context switches
    # ------------------------------------------------------------------ #

    def on_context_switch(self) -> None:
        """
        Hard reset for navigation/cancellation.

        Cancels speech, ends the listen cycle as CANCELLED, clears the transcript,
        invalidates every pending timer and starts the airlock cooldown.
        """
        self._generation += 1
        self._cancel_speech()
        cycle = self._cycle
        if cycle is not None and cycle.active:
            self._end_cycle(cycle, StopReason.CANCELLED)
        self.state.listening = False
        self.reset_transcript()
        self._start_cooldown()
        logger.debug("Context switch", generation=self._generation)

    def _start_cooldown(self) -> None:
        if self._cooldown_handle is not None:
            self._cooldown_handle.cancel()
            self._cooldown_handle = None

        cooldown_ms = self.config.airlock_cooldown_ms
        if cooldown_ms <= 0:
            self._update_ready()
            return

        self.state.processing_cooldown = True
        self._ready.clear()
        loop = asyncio.get_running_loop()
        self._cooldown_handle = loop.call_later(cooldown_ms / 1000.0, self._end_cooldown, self._generation)

    def _end_cooldown(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._cooldown_handle = None
        self.state.processing_cooldown = False
        self._emit(ChannelEvent.COOLDOWN_ENDED)
        self._update_ready()

    def _update_ready(self) -> None:
        if self.is_ready:
            self._ready.set()
        else:
            self._ready.clear()

    def close(self) -> None:
        """Release everything; the channel is unusable afterwards."""
        self.on_context_switch()
        if self._cooldown_handle is not None:
            self._cooldown_handle.cancel()
            self._cooldown_handle = None
        self.state.processing_cooldown = False
        self._subscribers.clear()
