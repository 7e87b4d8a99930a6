"""
Conversation engine: drives declarative dialog steps over a SpeechChannel.

A turn is: speak the prompt -> wait for the airlock -> listen with the flow's
profile -> stop on the first of (channel stop, auto-advance, early completion,
cancellation) -> parse -> validate -> confirm or retry. Speaking is the only thing
that leads to listening, and the channel is always stopped before parsing so a
failed validator never leaves the microphone open.

The engine keeps no state across flows; everything a flow captures lives on
`Flow.values`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from src.dialog.channel import (
    ChannelEvent,
    ListenProfile,
    SpeechChannel,
    SpeechOutcome,
    TimeoutPolicy,
    TranscriptMode,
)
from src.dialog.config import Config, get_config
from src.dialog.errors import AuthError, DialogError, FlowBusyError, UnsupportedError
from src.dialog.intents import (
    parse_alarm_response,
    parse_command,
    parse_gender,
    parse_spoken_time_of_day,
    parse_yes_no,
)
from src.dialog.locale import normalize_locale, redact_for_logs
from src.dialog.numbers import (
    PhoneFormat,
    clean_and_format_phone_number,
    extract_code,
    is_valid_age,
    parse_spoken_age,
    parse_spoken_number,
    sanitize_voice_input,
)
from src.dialog.prompts import render_prompt

logger = structlog.get_logger(__name__)

END = "__end__"

StepTarget = Optional[str]


class EngineState(str, Enum):
    IDLE = "idle"
    PROMPTING = "prompting"
    LISTENING = "listening"
    PARSING = "parsing"
    VALIDATING = "validating"
    CONFIRMED = "confirmed"
    RETRY = "retry"
    ACTING = "acting"
    TERMINAL = "terminal"


class ParserKind(str, Enum):
    PHONE = "phone"
    NUMBER = "number"
    AGE = "age"
    CODE = "code"
    NAME = "name"
    YES_NO = "yes_no"
    TIME_OF_DAY = "time_of_day"
    GENDER = "gender"
    ALARM = "alarm"
    COMMAND = "command"
    TEXT = "text"


class FlowStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class Validation:
    ok: bool
    value: Any = None
    error_prompt: Optional[str] = None

    @classmethod
    def accept(cls, value: Any) -> "Validation":
        return cls(ok=True, value=value)

    @classmethod
    def reject(cls, error_prompt: Optional[str] = None) -> "Validation":
        return cls(ok=False, error_prompt=error_prompt)


@dataclass
class RetryPolicy:
    """
    Bounds re-prompting for one step.

    `max_attempts=None` retries until the user answers or the flow is cancelled.
    `on_exhausted(run)` names the step to continue with (the manual/default path);
    without it the flow ends ABANDONED.
    """
    max_attempts: Optional[int] = None
    error_prompt: Optional[str] = "not_understood"
    on_exhausted: Optional[Callable[["FlowRun"], StepTarget]] = None


Prompt = Union[str, Callable[["FlowRun"], str], None]
Validator = Callable[[Any, str], Validation]
SuccessHandler = Callable[[Any, "FlowRun"], Union[StepTarget, Awaitable[StepTarget]]]
Action = Callable[["FlowRun"], Awaitable[StepTarget]]


@dataclass
class DialogStep:
    """
    One step of a flow.

    Listening steps speak `prompt`, parse the answer as `expects` and route via
    `on_success`. Action steps run `action(run)` without listening. Steps with
    `listen=False` only speak. A handler returning None continues with the next
    step in declaration order.
    """
    id: str
    prompt: Prompt = None
    expects: ParserKind = ParserKind.TEXT
    validate: Optional[Validator] = None
    on_success: Optional[SuccessHandler] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    complete_when: Optional[Callable[[str], bool]] = None
    action: Optional[Action] = None
    listen: bool = True
    store_as: Optional[str] = None


@dataclass
class Flow:
    name: str
    steps: dict[str, DialogStep]
    start: Optional[str] = None
    locale: str = "en"
    profile: Optional[ListenProfile] = None
    auto_advance_ms: Optional[int] = None
    values: dict[str, Any] = field(default_factory=dict)
    current: Optional[str] = None

    @classmethod
    def from_steps(cls, name: str, steps: list[DialogStep], **kwargs: Any) -> "Flow":
        ordered = {step.id: step for step in steps}
        if len(ordered) != len(steps):
            raise DialogError(f"Flow '{name}' has duplicate step ids")
        return cls(name=name, steps=ordered, **kwargs)

    def next_after(self, step_id: str) -> str:
        ids = list(self.steps)
        idx = ids.index(step_id)
        return ids[idx + 1] if idx + 1 < len(ids) else END


@dataclass
class TerminalResult:
    status: FlowStatus
    flow: str
    step_id: Optional[str]
    values: dict[str, Any]
    outcome: Optional[str] = None


def parse_transcript(
    kind: ParserKind,
    transcript: str,
    locale: Optional[str] = "en",
    config: Optional[Config] = None,
) -> Any:
    """Run the parser for `kind`; returns None when nothing usable was heard."""
    config = config or get_config()
    text = transcript or ""

    if kind == ParserKind.PHONE:
        phone_format = PhoneFormat(
            country_code=config.phone_country_code,
            local_digits=config.phone_local_digits,
            leading_digits=config.phone_leading_digits,
        )
        return clean_and_format_phone_number(text, locale, phone_format)
    if kind == ParserKind.NUMBER:
        return parse_spoken_number(text, locale) or None
    if kind == ParserKind.AGE:
        return parse_spoken_age(text, locale) or None
    if kind == ParserKind.CODE:
        return extract_code(text, config.otp_length, locale) or None
    if kind == ParserKind.NAME:
        return sanitize_voice_input(text, "name", locale) or None
    if kind == ParserKind.YES_NO:
        return parse_yes_no(text, locale)
    if kind == ParserKind.TIME_OF_DAY:
        return parse_spoken_time_of_day(text, locale)
    if kind == ParserKind.GENDER:
        return parse_gender(text, locale)
    if kind == ParserKind.ALARM:
        return parse_alarm_response(text, locale)
    if kind == ParserKind.COMMAND:
        match = parse_command(text)
        return match if match.action != "UNKNOWN" else None
    return text.strip() or None


_DEFAULT_ERROR_PROMPTS = {
    ParserKind.PHONE: "invalid_phone",
    ParserKind.AGE: "invalid_age",
    ParserKind.CODE: "invalid_code",
    ParserKind.NAME: "invalid_name",
    ParserKind.GENDER: "invalid_gender",
}


def default_validation(kind: ParserKind, parsed: Any) -> Validation:
    error = _DEFAULT_ERROR_PROMPTS.get(kind)
    if parsed is None:
        return Validation.reject(error)
    if kind == ParserKind.PHONE:
        return Validation.accept(parsed.formatted) if parsed.is_valid else Validation.reject(error)
    if kind == ParserKind.AGE:
        return Validation.accept(int(parsed)) if is_valid_age(parsed) else Validation.reject(error)
    if kind == ParserKind.NAME:
        return Validation.accept(parsed) if len(parsed) >= 2 else Validation.reject(error)
    return Validation.accept(parsed)


class _Cancelled:
    pass


CANCELLED = _Cancelled()


class FlowRun:
    """Handle passed to step actions and handlers while a flow is running."""

    def __init__(self, engine: "ConversationEngine", flow: Flow, cancel_future: asyncio.Future):
        self._engine = engine
        self.flow = flow
        self._cancel_future = cancel_future
        self._cancel_callbacks: list[Callable[[], None]] = []
        self.status = FlowStatus.COMPLETED
        self.outcome: Optional[str] = None

    @property
    def values(self) -> dict[str, Any]:
        return self.flow.values

    @property
    def locale(self) -> str:
        return self.flow.locale

    @property
    def channel(self) -> SpeechChannel:
        return self._engine.channel

    @property
    def config(self) -> Config:
        return self._engine.config

    @property
    def cancelled(self) -> bool:
        return self._cancel_future.done()

    def render(self, key_or_text: Optional[str], **values: Any) -> str:
        merged = {"code_length": self.config.otp_length, **self.values, **values}
        return self._engine.render(key_or_text, self.locale, **merged)

    async def speak(self, key_or_text: Optional[str], **values: Any) -> Optional[SpeechOutcome]:
        """Speak a prompt key (or literal text). Returns None if the flow was cancelled."""
        result = await self._engine._until_cancelled(self, self.channel.speak(self.render(key_or_text, **values)))
        return None if result is CANCELLED else result

    async def ask(self, step: DialogStep) -> Any:
        """Run one prompt/listen/validate loop for `step` and return the value (None if it never validated)."""
        ok, value = await self._engine._turn(self, step)
        return value if ok else None

    def on_cancel(self, callback: Callable[[], None]) -> None:
        self._cancel_callbacks.append(callback)

    def finish(self, outcome: Optional[str] = None) -> str:
        self.outcome = outcome
        return END

    def abandon(self, outcome: Optional[str] = None) -> str:
        self.status = FlowStatus.ABANDONED
        self.outcome = outcome
        return END


class ConversationEngine:
    """
    Runs one flow at a time on one channel.

    `run()` raises `UnsupportedError` when the channel has no recognizer; that is
    the only runtime error surfaced to the caller. A failing host action or
    handler ends the flow ABANDONED with outcome "error". `FlowBusyError` and a
    `DialogError` for a malformed flow are programming errors and propagate.
    """

    def __init__(
        self,
        channel: SpeechChannel,
        *,
        default_profile: Optional[ListenProfile] = None,
        render: Callable[..., str] = render_prompt,
        config: Optional[Config] = None,
    ):
        if config is None:
            config = get_config()
        self.config = config
        self.channel = channel
        self.render = render
        self.default_profile = default_profile or ListenProfile(
            TimeoutPolicy.elder_friendly(config), TranscriptMode.ACCUMULATE
        )
        self.state = EngineState.IDLE
        self.last_stop_reason: Optional[str] = None
        self._run: Optional[FlowRun] = None

    @property
    def active(self) -> bool:
        return self._run is not None

    @property
    def current_flow(self) -> Optional[Flow]:
        return self._run.flow if self._run is not None else None

    async def run(self, flow: Flow) -> TerminalResult:
        if not self.channel.recognition_supported:
            raise UnsupportedError("Speech recognition is not available on this client")
        if self._run is not None:
            raise FlowBusyError(f"Flow '{self._run.flow.name}' is already running")

        loop = asyncio.get_running_loop()
        run = FlowRun(self, flow, loop.create_future())
        self._run = run
        self.state = EngineState.IDLE
        flow.locale = normalize_locale(flow.locale)
        logger.info("Flow started", flow=flow.name, locale=flow.locale)

        try:
            result = await self._drive(run)
        except DialogError as e:
            # Other DialogErrors mean a malformed flow and propagate.
            if not isinstance(e, AuthError):
                raise
            result = self._failed_result(run, e)
        except Exception as e:
            result = self._failed_result(run, e)
        finally:
            self._run = None
            self.state = EngineState.TERMINAL
            self.channel.stop_listening()

        logger.info(
            "Flow finished",
            flow=flow.name,
            status=result.status.value,
            step=result.step_id,
            outcome=result.outcome,
        )
        return result

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Cancel the active flow.

        Resets the channel (context switch), unblocks every suspension point and
        runs the flow's cancel callbacks. `run()` then returns CANCELLED.
        """
        run = self._run
        if run is None or run.cancelled:
            return False
        run._cancel_future.set_result(reason)
        self.channel.on_context_switch()
        for callback in list(run._cancel_callbacks):
            try:
                callback()
            except Exception as e:
                logger.warning("Cancel callback failed", flow=run.flow.name, error=str(e), exc_info=True)
        logger.info("Flow cancel requested", flow=run.flow.name, reason=reason)
        return True

    def _failed_result(self, run: FlowRun, error: Exception) -> TerminalResult:
        """A host action or handler raised: the flow ends ABANDONED with outcome "error"."""
        flow = run.flow
        logger.warning("Flow step failed", flow=flow.name, step=flow.current, error=str(error), exc_info=True)
        return TerminalResult(
            status=FlowStatus.ABANDONED,
            flow=flow.name,
            step_id=flow.current,
            values=dict(flow.values),
            outcome="error",
        )

    def _cancelled_result(self, run: FlowRun) -> TerminalResult:
        reason = run._cancel_future.result() if run._cancel_future.done() else None
        return TerminalResult(
            status=FlowStatus.CANCELLED,
            flow=run.flow.name,
            step_id=run.flow.current,
            values=dict(run.values),
            outcome=reason,
        )

    async def _drive(self, run: FlowRun) -> TerminalResult:
        flow = run.flow
        if not flow.steps:
            return TerminalResult(FlowStatus.COMPLETED, flow.name, None, dict(flow.values))

        step_id: str = flow.start or next(iter(flow.steps))
        while step_id != END:
            if run.cancelled:
                return self._cancelled_result(run)

            step = flow.steps.get(step_id)
            if step is None:
                raise DialogError(f"Flow '{flow.name}' has no step '{step_id}'")
            flow.current = step_id

            if step.action is not None:
                self.state = EngineState.ACTING
                target = await self._until_cancelled(run, step.action(run))
            elif not step.listen:
                self.state = EngineState.PROMPTING
                spoken = await self._until_cancelled(run, self.channel.speak(self._prompt_text(run, step)))
                target = CANCELLED if spoken is CANCELLED else await self._handle_success(run, step, None)
            else:
                ok, value = await self._turn(run, step)
                if run.cancelled:
                    return self._cancelled_result(run)
                if ok:
                    self.state = EngineState.CONFIRMED
                    run.values[step.store_as or step.id] = value
                    target = await self._handle_success(run, step, value)
                elif step.retry.on_exhausted is not None:
                    logger.info("Retries exhausted", flow=flow.name, step=step.id)
                    target = step.retry.on_exhausted(run)
                else:
                    logger.info("Retries exhausted, abandoning flow", flow=flow.name, step=step.id)
                    target = run.abandon("retries_exhausted")

            if target is CANCELLED or run.cancelled:
                return self._cancelled_result(run)
            step_id = target if target is not None else flow.next_after(step_id)

        return TerminalResult(
            status=run.status,
            flow=flow.name,
            step_id=flow.current,
            values=dict(flow.values),
            outcome=run.outcome,
        )

    async def _handle_success(self, run: FlowRun, step: DialogStep, value: Any) -> Any:
        if step.on_success is None:
            return None
        result = step.on_success(value, run)
        if inspect.isawaitable(result):
            result = await self._until_cancelled(run, result)
        return result

    def _prompt_text(self, run: FlowRun, step: DialogStep) -> str:
        if step.prompt is None:
            return ""
        if callable(step.prompt):
            return step.prompt(run)
        return run.render(step.prompt)

    async def _until_cancelled(self, run: FlowRun, awaitable: Awaitable[Any]) -> Any:
        """Await `awaitable` unless the flow is cancelled first; returns CANCELLED then."""
        task = asyncio.ensure_future(awaitable)
        if run.cancelled:
            task.cancel()
            await asyncio.wait({task})
            return CANCELLED
        await asyncio.wait({task, run._cancel_future}, return_when=asyncio.FIRST_COMPLETED)
        if run.cancelled:
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
            return CANCELLED
        return task.result()

    async def _turn(self, run: FlowRun, step: DialogStep) -> tuple[bool, Any]:
        """Prompt, listen and validate until accepted, exhausted or cancelled."""
        flow = run.flow
        prompt = self._prompt_text(run, step)
        attempts = 0

        while True:
            attempts += 1
            self.state = EngineState.PROMPTING
            if await self._until_cancelled(run, self.channel.speak(prompt)) is CANCELLED:
                return False, None
            if await self._until_cancelled(run, self.channel.wait_until_ready()) is CANCELLED:
                return False, None

            self.state = EngineState.LISTENING
            transcript = await self._listen(run, step)
            if transcript is CANCELLED:
                return False, None

            self.state = EngineState.PARSING
            parsed = parse_transcript(step.expects, transcript, run.locale, self.config)

            self.state = EngineState.VALIDATING
            if step.validate is not None:
                validation = step.validate(parsed, transcript)
            else:
                validation = default_validation(step.expects, parsed)

            if validation.ok:
                logger.debug("Step answered", flow=flow.name, step=step.id, attempts=attempts)
                return True, validation.value

            self.state = EngineState.RETRY
            logger.debug(
                "Validation failed",
                flow=flow.name,
                step=step.id,
                attempt=attempts,
                transcript=redact_for_logs(transcript)[:80],
            )
            self.channel.reset_transcript()
            if step.retry.max_attempts is not None and attempts >= step.retry.max_attempts:
                return False, None

            error_key = validation.error_prompt or step.retry.error_prompt
            error_text = run.render(error_key) if error_key else ""
            if error_text:
                prompt = f"{error_text} {self._prompt_text(run, step)}".strip()
            else:
                prompt = self._prompt_text(run, step)

    async def _listen(self, run: FlowRun, step: DialogStep) -> Any:
        """One listen cycle; returns the committed transcript or CANCELLED."""
        flow = run.flow
        profile = flow.profile or self.default_profile
        loop = asyncio.get_running_loop()
        channel = self.channel

        if not channel.start_listening(profile.policy, profile.mode):
            logger.warning("Could not start listening", flow=flow.name, step=step.id)
            self.last_stop_reason = "not_started"
            return ""

        stop_future = channel.stop_future()
        if stop_future is None:
            self.last_stop_reason = "not_started"
            return ""
        advance_future = loop.create_future()
        complete_future = loop.create_future()

        advance_ms = flow.auto_advance_ms
        advance_handle: Optional[asyncio.TimerHandle] = None
        advance_seq = 0
        # True when the latest transcript event armed auto-advance after the
        # channel re-armed its silence timer.
        advance_armed_last = False

        def _fire_advance(seq: int) -> None:
            if seq == advance_seq and not advance_future.done():
                advance_future.set_result(None)

        def _on_event(event: ChannelEvent, data: dict[str, Any]) -> None:
            nonlocal advance_handle, advance_seq, advance_armed_last
            if event != ChannelEvent.TRANSCRIPT:
                return
            advance_armed_last = False
            if advance_ms and channel.state.transcript_buffer:
                if advance_handle is not None:
                    advance_handle.cancel()
                advance_seq += 1
                advance_handle = loop.call_later(advance_ms / 1000.0, _fire_advance, advance_seq)
                advance_armed_last = True
            if step.complete_when is not None and not complete_future.done():
                if step.complete_when(channel.state.preview):
                    complete_future.set_result(channel.state.preview)

        unsubscribe = channel.subscribe(_on_event)
        try:
            done, _ = await asyncio.wait(
                {stop_future, advance_future, complete_future, run._cancel_future},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            unsubscribe()
            if advance_handle is not None:
                advance_handle.cancel()

        if run.cancelled:
            return CANCELLED

        if complete_future in done:
            reason = "complete"
        elif advance_future in done and (stop_future not in done or advance_armed_last):
            reason = "auto_advance"
        else:
            reason = stop_future.result().reason.value

        channel.stop_listening()
        transcript = stop_future.result().transcript
        if reason == "complete":
            # The matched text may still be an interim segment.
            transcript = complete_future.result()
        self.last_stop_reason = reason
        logger.debug(
            "Turn ended",
            flow=flow.name,
            step=step.id,
            reason=reason,
            transcript=redact_for_logs(transcript)[:80],
        )
        return transcript
