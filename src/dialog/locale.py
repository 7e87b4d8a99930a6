"""
Locale utilities for the dialog engine.

Every per-locale table in the package is keyed by `LocaleCode`. Anything we don't
recognize normalizes to `FALLBACK_LOCALE`.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Literal, Mapping, Optional, TypeVar

LocaleCode = Literal["en", "hi", "mr"]

FALLBACK_LOCALE: LocaleCode = "en"

# BCP-47 tags handed to recognition/synthesis providers.
SPEECH_TAGS: dict[LocaleCode, str] = {
    "en": "en-US",
    "hi": "hi-IN",
    "mr": "mr-IN",
}

T = TypeVar("T")

_DEVANAGARI_DIGITS = str.maketrans("०१२३४५६७८९", "0123456789")


def normalize_locale(locale: Optional[str]) -> LocaleCode:
    """
    Normalize a locale or language tag ("hi-IN", "mr_IN", "EN") into a LocaleCode.
    """
    if not locale:
        return FALLBACK_LOCALE
    primary = re.split(r"[-_]", locale.strip().lower(), maxsplit=1)[0]
    if primary == "hi":
        return "hi"
    if primary == "mr":
        return "mr"
    return FALLBACK_LOCALE


def speech_tag(locale: Optional[str]) -> str:
    return SPEECH_TAGS[normalize_locale(locale)]


def pick(table: Mapping[str, T], locale: Optional[str]) -> T:
    """Look up a locale-keyed table, falling back to the fallback locale."""
    code = normalize_locale(locale)
    if code in table:
        return table[code]
    return table[FALLBACK_LOCALE]


def normalize_text(text: Optional[str]) -> str:
    """
    Normalize spoken/typed text for dictionary matching.

    Unlike Latin-only accent folding, this keeps Devanagari vowel signs intact
    (they are combining marks) and only composes, lowercases and converts
    Devanagari digits to ASCII.
    """
    text = (text or "").strip()
    text = text.replace("’", "'")
    text = unicodedata.normalize("NFC", text)
    text = text.translate(_DEVANAGARI_DIGITS)
    text = re.sub(r"\s+", " ", text)
    return text.lower()


_DIGIT_RUN_RE = re.compile(r"[0-9०-९][0-9०-९\s\-]{2,}[0-9०-९]")


def redact_for_logs(text: Optional[str]) -> str:
    """
    Best-effort redaction for logs.

    Masks digit runs (phone numbers, one-time codes) keeping the last two digits,
    e.g. "9876543210" -> "[DIGITS-***10]".
    """
    if not text:
        return ""

    def _mask(match: re.Match[str]) -> str:
        digits = re.sub(r"[^0-9०-९]+", "", match.group(0))
        return f"[DIGITS-***{digits[-2:]}]"

    return _DIGIT_RUN_RE.sub(_mask, text)
