"""
Host flows built on the conversation engine.

Each builder returns a fresh `Flow`; persistence goes through the `AuthService`
and `RecordStore` interfaces and only happens inside step handlers and actions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from src.dialog.channel import profile_for_route
from src.dialog.config import Config, get_config
from src.dialog.engine import (
    DialogStep,
    Flow,
    FlowRun,
    ParserKind,
    RetryPolicy,
    Validation,
)
from src.dialog.errors import AuthError, DialogError
from src.dialog.intents import SLOT_HOURS, TimeOfDay, format_hour, parse_yes_no, slot_display
from src.dialog.locale import redact_for_logs
from src.dialog.numbers import (
    PhoneFormat,
    clean_and_format_phone_number,
    format_phone_display,
    format_phone_for_voice,
    validate_phone,
)
from src.dialog.otp import CaptureWinner, CredentialCaptureFallbackChain
from src.dialog.providers.base import CodeCaptureProvider
from src.dialog.records import AuthService, MedicineSchedule, Profile, RecordStore

logger = structlog.get_logger(__name__)

# Said instead of (or with) yes/no while negotiating a schedule.
_CHANGE_WORDS = ("change", "बदलो", "बदल")
_KEEP_WORDS = ("okay", "ठीक", "theek", "fine")


@dataclass
class FlowDeps:
    """Collaborators the flows need; one set per session."""
    auth: AuthService
    store: RecordStore
    capture: Optional[CodeCaptureProvider] = None
    config: Config = field(default_factory=get_config)

    @property
    def phone_format(self) -> PhoneFormat:
        return PhoneFormat(
            country_code=self.config.phone_country_code,
            local_digits=self.config.phone_local_digits,
            leading_digits=self.config.phone_leading_digits,
        )


def _bounded(config: Config, error_prompt: Optional[str] = None) -> RetryPolicy:
    return RetryPolicy(max_attempts=config.voice_retry_limit, error_prompt=error_prompt or "not_understood")


_PHONE_ERROR_PROMPTS = {
    "length": "invalid_phone_length",
    "prefix": "invalid_phone_prefix",
}


def _phone_validator(phone_format: PhoneFormat, locale: str):
    """Accept a valid number; otherwise re-prompt with what was wrong with it."""
    def _validate(parsed: Any, transcript: str) -> Validation:
        check = validate_phone(transcript, phone_format, locale)
        if check.is_valid:
            return Validation.accept(check.formatted)
        logger.debug("Phone rejected", reason=check.reason or "invalid")
        return Validation.reject(_PHONE_ERROR_PROMPTS.get(check.reason, "invalid_phone"))
    return _validate


def _remember_phone(phone_format: PhoneFormat):
    def _on_phone(value: str, run: FlowRun) -> None:
        run.values["phone_voice"] = format_phone_for_voice(value, phone_format)
        run.values["phone_display"] = format_phone_display(value, phone_format)
    return _on_phone


# --------------------------------------------------------------------------- #
# Login
# --------------------------------------------------------------------------- #


def build_login_flow(deps: FlowDeps, *, locale: str = "en") -> Flow:
    """
    Phone -> read back and send code -> capture code (automatic, then voice) ->
    verify -> returning user done, new user asked for a name and saved.
    """
    config = deps.config
    phone_format = deps.phone_format

    def _phone_heard(text: str) -> bool:
        return clean_and_format_phone_number(text, locale, phone_format).is_valid

    code_step = DialogStep(
        id="code",
        prompt="login_ask_code",
        expects=ParserKind.CODE,
        retry=_bounded(config, "invalid_code"),
    )

    async def _send_code(run: FlowRun) -> Optional[str]:
        phone = run.values["phone"]
        await run.speak("login_read_back")
        try:
            await deps.auth.send_code(phone)
        except AuthError as e:
            logger.warning("Code send failed", phone=redact_for_logs(phone), error=e.code)
            await run.speak("login_send_failed")
            return run.abandon("send_failed")
        await run.speak("login_waiting_code")
        return None

    async def _capture_code(run: FlowRun) -> Optional[str]:
        chain = CredentialCaptureFallbackChain(
            deps.capture,
            lambda: run.ask(code_step),
            config=config,
        )
        run.on_cancel(chain.cancel)
        result = await chain.acquire()
        run.values["code_source"] = result.winner.value
        if result.winner == CaptureWinner.CANCELLED:
            return None
        if not result.code:
            return run.abandon("code_not_received")
        run.values["code"] = result.code
        return "verify"

    async def _verify(run: FlowRun) -> Optional[str]:
        phone = run.values["phone"]
        attempts = run.values.get("verify_attempts", 0) + 1
        run.values["verify_attempts"] = attempts
        try:
            user_id = await deps.auth.verify_code(phone, run.values["code"])
        except AuthError as e:
            logger.info("Code verification failed", attempt=attempts, error=e.code)
            await run.speak("login_verify_failed")
            if attempts >= config.voice_retry_limit:
                return run.abandon("verification_failed")
            code = await run.ask(code_step)
            if code is None:
                return run.abandon("verification_failed")
            run.values["code"] = code
            run.values["code_source"] = CaptureWinner.VOICE.value
            return "verify"

        run.values["user_id"] = user_id
        profile = await deps.store.get_profile(user_id)
        if profile is not None:
            run.values["name"] = profile.name
            await run.speak("login_welcome_back")
            return run.finish("returning_user")
        return "name"

    def _validate_name(parsed: Any, transcript: str) -> Validation:
        if parsed and len(parsed) > 2:
            return Validation.accept(parsed)
        return Validation.reject("invalid_name")

    async def _save(run: FlowRun) -> Optional[str]:
        profile = Profile(
            user_id=run.values["user_id"],
            phone=run.values["phone"],
            name=run.values["name"],
            locale=run.locale,
        )
        await deps.store.save_profile(profile)
        await run.speak("login_saved")
        return run.finish("new_user")

    steps = [
        DialogStep(
            id="phone",
            prompt="login_ask_phone",
            expects=ParserKind.PHONE,
            complete_when=_phone_heard,
            validate=_phone_validator(phone_format, locale),
            on_success=_remember_phone(phone_format),
            retry=_bounded(config, "invalid_phone"),
        ),
        DialogStep(id="send_code", action=_send_code),
        DialogStep(id="capture_code", action=_capture_code),
        DialogStep(id="verify", action=_verify),
        DialogStep(
            id="name",
            prompt="login_ask_name",
            expects=ParserKind.NAME,
            validate=_validate_name,
            retry=_bounded(config, "invalid_name"),
        ),
        DialogStep(id="save", action=_save),
    ]
    return Flow.from_steps("login", steps, locale=locale, profile=profile_for_route("/login", config))


# --------------------------------------------------------------------------- #
# Registration
# --------------------------------------------------------------------------- #


def build_registration_flow(deps: FlowDeps, *, locale: str = "en") -> Flow:
    """Name, phone, gender and age with auto-advance, then save the profile."""
    config = deps.config
    phone_format = deps.phone_format

    def _phone_heard(text: str) -> bool:
        return clean_and_format_phone_number(text, locale, phone_format).is_valid

    async def _save(run: FlowRun) -> Optional[str]:
        phone = run.values["phone"]
        profile = Profile(
            user_id=phone,
            phone=phone,
            name=run.values["name"],
            gender=run.values["gender"],
            age=run.values["age"],
            locale=run.locale,
        )
        await deps.store.save_profile(profile)
        run.values["user_id"] = profile.user_id
        await run.speak("register_done")
        return run.finish("registered")

    steps = [
        DialogStep(
            id="name",
            prompt="register_ask_name",
            expects=ParserKind.NAME,
            retry=_bounded(config, "invalid_name"),
        ),
        DialogStep(
            id="phone",
            prompt="register_ask_phone",
            expects=ParserKind.PHONE,
            complete_when=_phone_heard,
            validate=_phone_validator(phone_format, locale),
            on_success=_remember_phone(phone_format),
            retry=_bounded(config, "invalid_phone"),
        ),
        DialogStep(
            id="gender",
            prompt="register_ask_gender",
            expects=ParserKind.GENDER,
            retry=_bounded(config, "invalid_gender"),
        ),
        DialogStep(
            id="age",
            prompt="register_ask_age",
            expects=ParserKind.AGE,
            retry=_bounded(config, "invalid_age"),
        ),
        DialogStep(id="save", action=_save),
    ]
    return Flow.from_steps(
        "registration",
        steps,
        locale=locale,
        profile=profile_for_route("/register", config),
        auto_advance_ms=config.auto_advance_ms,
    )


# --------------------------------------------------------------------------- #
# Schedule negotiation
# --------------------------------------------------------------------------- #


def describe_hours(hours: list[int], locale: str = "en") -> str:
    """Spoken list of reminder times ("8:00 AM and 9:00 PM")."""
    if not hours:
        return slot_display("morning", locale)
    by_hour = {hour: slot for slot, hour in SLOT_HOURS.items()}
    parts = [slot_display(by_hour[h], locale) if h in by_hour else format_hour(h) for h in hours]
    return " and ".join(parts)


def build_schedule_flow(
    deps: FlowDeps,
    *,
    user_id: str,
    locale: str = "en",
    medicines: Optional[list[MedicineSchedule]] = None,
) -> Flow:
    """
    Walk through each medicine: announce its times and ask whether to change them.

    Silence or an unclear answer keeps the times; an unparsed new time also keeps
    them.
    """
    config = deps.config

    async def _load(run: FlowRun) -> Optional[str]:
        queue = list(medicines) if medicines is not None else await deps.store.get_schedules(user_id)
        run.values["queue"] = queue
        run.values["index"] = -1
        run.values["updated"] = {}
        if not queue:
            return "done"
        return None

    def _advance(run: FlowRun) -> str:
        queue: list[MedicineSchedule] = run.values["queue"]
        index = run.values["index"] + 1
        run.values["index"] = index
        if index >= len(queue):
            return "done"
        current = queue[index]
        run.values["medicine"] = current.name
        run.values["medicine_id"] = current.medicine_id
        run.values["times"] = describe_hours(current.hours, run.locale)
        return "ask_change"

    async def _next_medicine(run: FlowRun) -> Optional[str]:
        return _advance(run)

    def _validate_change(parsed: Any, transcript: str) -> Validation:
        answer = parse_yes_no(transcript, locale, extra_yes=_CHANGE_WORDS, extra_no=_KEEP_WORDS)
        # Silence and ambiguity both mean "keep".
        return Validation.accept(answer or "no")

    async def _on_change(value: str, run: FlowRun) -> Optional[str]:
        if value == "yes":
            return "ask_time"
        await run.speak("schedule_kept")
        return "next_medicine"

    def _validate_time(parsed: Optional[TimeOfDay], transcript: str) -> Validation:
        return Validation.accept(parsed)

    async def _on_time(value: Optional[TimeOfDay], run: FlowRun) -> Optional[str]:
        if value is None:
            await run.speak("schedule_kept")
            return "next_medicine"
        medicine_id = run.values["medicine_id"]
        await deps.store.update_schedule(user_id, medicine_id, [value.hour], name=run.values["medicine"])
        run.values["updated"][medicine_id] = value.hour
        await run.speak("schedule_updated", time=describe_hours([value.hour], run.locale))
        return "next_medicine"

    async def _done(run: FlowRun) -> Optional[str]:
        await run.speak("schedule_done")
        return run.finish("updated" if run.values["updated"] else "unchanged")

    steps = [
        DialogStep(id="load", action=_load),
        DialogStep(id="intro", prompt="schedule_intro", listen=False),
        DialogStep(id="next_medicine", action=_next_medicine),
        DialogStep(
            id="ask_change",
            prompt="schedule_ask_change",
            expects=ParserKind.YES_NO,
            validate=_validate_change,
            on_success=_on_change,
        ),
        DialogStep(
            id="ask_time",
            prompt="schedule_ask_time",
            expects=ParserKind.TIME_OF_DAY,
            validate=_validate_time,
            on_success=_on_time,
        ),
        DialogStep(id="done", action=_done),
    ]
    flow = Flow.from_steps("schedule", steps, locale=locale)
    flow.values["user_id"] = user_id
    return flow


# --------------------------------------------------------------------------- #
# Alarm response
# --------------------------------------------------------------------------- #


def build_alarm_flow(
    deps: FlowDeps,
    *,
    user_id: str,
    medicine_id: str,
    medicine_name: str,
    user_name: str = "",
    locale: str = "en",
    today: Optional[date] = None,
    now: Optional[Callable[[], datetime]] = None,
) -> Flow:
    """
    Taken / skip / snooze for a due medicine.

    Snoozes are counted per medicine per day; the request that would reach
    `max_snoozes` is turned into a forced skip.
    """
    config = deps.config
    clock = now or datetime.now
    day = today or clock().date()

    def _route(value: str, run: FlowRun) -> str:
        return value

    async def _taken(run: FlowRun) -> Optional[str]:
        await deps.store.log_medication_action(user_id, medicine_id, "taken", {"medicine_name": medicine_name})
        await run.speak("alarm_taken")
        return run.finish("taken")

    async def _skip(run: FlowRun) -> Optional[str]:
        await deps.store.log_medication_action(
            user_id, medicine_id, "skipped", {"medicine_name": medicine_name, "reason": "user_skipped"}
        )
        await run.speak("alarm_skipped")
        return run.finish("skipped")

    async def _snooze(run: FlowRun) -> Optional[str]:
        count = await deps.store.get_snooze_count(user_id, medicine_id, day)
        if count >= config.max_snoozes - 1:
            await deps.store.log_medication_action(
                user_id,
                medicine_id,
                "skipped",
                {"medicine_name": medicine_name, "reason": "snooze_limit", "snooze_count": count + 1},
            )
            await deps.store.set_snooze_count(user_id, medicine_id, day, 0)
            logger.info("Snooze limit reached", medicine_id=medicine_id, snooze_count=count + 1)
            await run.speak("alarm_forced_skip")
            return run.finish("forced_skip")

        left = config.max_snoozes - count - 1
        until = clock() + timedelta(minutes=config.snooze_minutes)
        await deps.store.set_snooze_count(user_id, medicine_id, day, count + 1)
        await deps.store.log_medication_action(
            user_id,
            medicine_id,
            "snoozed",
            {
                "medicine_name": medicine_name,
                "snooze_count": count + 1,
                "snoozes_remaining": left,
                "snooze_until": until.isoformat(),
            },
        )
        run.values["snooze_until"] = until.isoformat()
        await run.speak("alarm_snoozed", minutes=config.snooze_minutes, left=left)
        return run.finish("snoozed")

    steps = [
        DialogStep(
            id="ask",
            prompt="alarm_ask",
            expects=ParserKind.ALARM,
            on_success=_route,
            retry=RetryPolicy(
                max_attempts=config.voice_retry_limit,
                error_prompt="alarm_not_understood",
            ),
        ),
        DialogStep(id="taken", action=_taken),
        DialogStep(id="skip", action=_skip),
        DialogStep(id="snooze", action=_snooze),
    ]
    flow = Flow.from_steps("alarm", steps, locale=locale)
    flow.values.update(
        {"user_id": user_id, "medicine_id": medicine_id, "medicine": medicine_name, "name": user_name}
    )
    return flow


FLOW_BUILDERS: dict[str, Callable[..., Flow]] = {
    "login": build_login_flow,
    "registration": build_registration_flow,
    "schedule": build_schedule_flow,
    "alarm": build_alarm_flow,
}


def build_flow(name: str, deps: FlowDeps, **params: Any) -> Flow:
    builder = FLOW_BUILDERS.get(name)
    if builder is None:
        raise DialogError(f"Unknown flow '{name}'")
    return builder(deps, **params)
