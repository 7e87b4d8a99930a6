"""
Configuration management for the voice dialog engine.

Loads environment variables and provides a strongly-typed configuration object.
Validates timing and phone settings at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

SUPPORTED_LOCALES = ("en", "hi", "mr")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 7860
    log_level: str = "INFO"

    # Language
    # - default_locale is the spoken locale at session start ("en", "hi" or "mr")
    default_locale: str = "en"
    speech_rate: float = 0.9  # Slightly slower for elderly users

    # Listening
    # - elder routes get long timeouts and accumulate transcript segments
    # - every other route is a quick in-app command context
    elder_routes: tuple[str, ...] = ("/register", "/login")
    elder_silence_timeout_ms: int = 6000
    elder_no_speech_timeout_ms: int = 8000
    quick_silence_timeout_ms: int = 1500
    quick_no_speech_timeout_ms: int = 5000
    airlock_cooldown_ms: int = 500
    auto_advance_ms: int = 2000

    # One-time codes
    otp_deadline_ms: int = 30000
    otp_length: int = 6

    # Phone numbers
    phone_country_code: str = "91"
    phone_local_digits: int = 10
    phone_leading_digits: str = "6789"

    # Flow settings
    voice_retry_limit: int = 3
    max_snoozes: int = 3
    snooze_minutes: int = 15

    def validate(self) -> None:
        """Validate that the configuration is usable."""
        problems = []

        if self.default_locale not in SUPPORTED_LOCALES:
            problems.append(
                f"DEFAULT_LOCALE '{self.default_locale}' (expected one of {', '.join(SUPPORTED_LOCALES)})"
            )

        for name in (
            "elder_silence_timeout_ms",
            "elder_no_speech_timeout_ms",
            "quick_silence_timeout_ms",
            "quick_no_speech_timeout_ms",
            "otp_deadline_ms",
        ):
            if getattr(self, name) <= 0:
                problems.append(f"{name.upper()} must be positive")

        if self.airlock_cooldown_ms < 0:
            problems.append("AIRLOCK_COOLDOWN_MS must not be negative")
        if self.auto_advance_ms < 0:
            problems.append("AUTO_ADVANCE_MS must not be negative")
        if not 0.1 <= self.speech_rate <= 10.0:
            problems.append("SPEECH_RATE must be between 0.1 and 10")
        if self.otp_length < 4:
            problems.append("OTP_LENGTH must be at least 4")
        if not self.phone_country_code.isdigit():
            problems.append("PHONE_COUNTRY_CODE must be digits only")
        if not self.phone_leading_digits or not self.phone_leading_digits.isdigit():
            problems.append("PHONE_LEADING_DIGITS must be a non-empty set of digits")
        if self.phone_local_digits <= 0:
            problems.append("PHONE_LOCAL_DIGITS must be positive")
        if self.max_snoozes < 1:
            problems.append("MAX_SNOOZES must be at least 1")

        if problems:
            raise ConfigError(
                f"Invalid configuration: {'; '.join(problems)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            default_locale=self.default_locale,
            elder_routes=list(self.elder_routes),
            elder_silence_timeout_ms=self.elder_silence_timeout_ms,
            elder_no_speech_timeout_ms=self.elder_no_speech_timeout_ms,
            quick_silence_timeout_ms=self.quick_silence_timeout_ms,
            quick_no_speech_timeout_ms=self.quick_no_speech_timeout_ms,
            airlock_cooldown_ms=self.airlock_cooldown_ms,
            auto_advance_ms=self.auto_advance_ms,
            otp_deadline_ms=self.otp_deadline_ms,
            otp_length=self.otp_length,
            phone_country_code=self.phone_country_code,
            voice_retry_limit=self.voice_retry_limit,
            max_snoozes=self.max_snoozes,
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Get a comma-separated list from environment variable."""
    raw = os.getenv(key)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    default_locale = os.getenv("DEFAULT_LOCALE", "en").strip().lower()
    # Accept full tags like "hi-IN".
    default_locale = default_locale.split("-", 1)[0].split("_", 1)[0]

    config = Config(
        # Server
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Language
        default_locale=default_locale,
        speech_rate=_get_float("SPEECH_RATE", 0.9),

        # Listening
        elder_routes=_get_list("ELDER_ROUTES", ("/register", "/login")),
        elder_silence_timeout_ms=_get_int("ELDER_SILENCE_TIMEOUT_MS", 6000),
        elder_no_speech_timeout_ms=_get_int("ELDER_NO_SPEECH_TIMEOUT_MS", 8000),
        quick_silence_timeout_ms=_get_int("QUICK_SILENCE_TIMEOUT_MS", 1500),
        quick_no_speech_timeout_ms=_get_int("QUICK_NO_SPEECH_TIMEOUT_MS", 5000),
        airlock_cooldown_ms=_get_int("AIRLOCK_COOLDOWN_MS", 500),
        auto_advance_ms=_get_int("AUTO_ADVANCE_MS", 2000),

        # One-time codes
        otp_deadline_ms=_get_int("OTP_DEADLINE_MS", 30000),
        otp_length=_get_int("OTP_LENGTH", 6),

        # Phone numbers
        phone_country_code=os.getenv("PHONE_COUNTRY_CODE", "91").strip().lstrip("+"),
        phone_local_digits=_get_int("PHONE_LOCAL_DIGITS", 10),
        phone_leading_digits=os.getenv("PHONE_LEADING_DIGITS", "6789").strip(),

        # Flow settings
        voice_retry_limit=_get_int("VOICE_RETRY_LIMIT", 3),
        max_snoozes=_get_int("MAX_SNOOZES", 3),
        snooze_minutes=_get_int("SNOOZE_MINUTES", 15),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
