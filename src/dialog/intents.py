"""
Deterministic intent parsing for short spoken answers.

Provides small per-locale keyword tables for yes/no confirmation, time-of-day
slots, gender options, alarm responses and in-app navigation commands. Matching
is substring/dictionary based on purpose; nothing here guesses beyond the tables.
"""

from __future__ import annotations

from dataclasses import dataclass
import difflib
import re
from typing import Iterable, Literal, Optional

from src.dialog.locale import LocaleCode, normalize_locale, normalize_text, pick
from src.dialog.numbers import NUMBER_WORDS, tokenize

YesNo = Literal["yes", "no"]

# Affirmative sets are checked first; the first matching set wins.
_YES_WORDS: dict[LocaleCode, tuple[str, ...]] = {
    "en": ("yes", "yeah", "yep", "sure", "correct", "haan", "han ji"),
    "hi": ("हां", "हाँ", "हा", "जी हां", "ठीक है हां", "yes", "haan"),
    "mr": ("होय", "हो", "हा", "yes", "hoy"),
}

_NO_WORDS: dict[LocaleCode, tuple[str, ...]] = {
    "en": ("no", "nope", "nah", "nahi", "nahin"),
    "hi": ("नहीं", "नही", "ना", "no", "nahi", "nahin"),
    "mr": ("नाही", "नको", "no", "nahi"),
}


def parse_yes_no(
    text: str,
    locale: Optional[str] = "en",
    *,
    extra_yes: Iterable[str] = (),
    extra_no: Iterable[str] = (),
) -> Optional[YesNo]:
    """
    Check whether the user said yes or no.

    Returns None when neither set matches; the caller decides what silence or
    ambiguity means (e.g. "no change").
    """
    normalized = normalize_text(text)
    if not normalized:
        return None

    yes_words = pick(_YES_WORDS, locale) + tuple(extra_yes)
    no_words = pick(_NO_WORDS, locale) + tuple(extra_no)

    if any(_contains_word(normalized, w) for w in yes_words):
        return "yes"
    if any(_contains_word(normalized, w) for w in no_words):
        return "no"
    return None


def _contains_word(normalized: str, word: str) -> bool:
    # Latin words match whole words ("know" is not "no"); Devanagari matches as a substring.
    word = word.lower()
    if word.isascii():
        return re.search(rf"\b{re.escape(word)}\b", normalized) is not None
    return word in normalized


TimeSlot = Literal["morning", "afternoon", "evening", "night"]


@dataclass(frozen=True)
class TimeOfDay:
    hour: int
    display: str
    slot: Optional[TimeSlot] = None


SLOT_HOURS: dict[TimeSlot, int] = {
    "morning": 8,
    "afternoon": 14,
    "evening": 18,
    "night": 21,
}

# Localized displays for the representative slot hours.
SLOT_DISPLAYS: dict[LocaleCode, dict[TimeSlot, str]] = {
    "en": {
        "morning": "8:00 AM",
        "afternoon": "2:00 PM",
        "evening": "6:00 PM",
        "night": "9:00 PM",
    },
    "hi": {
        "morning": "सुबह 8 बजे",
        "afternoon": "दोपहर 2 बजे",
        "evening": "शाम 6 बजे",
        "night": "रात 9 बजे",
    },
    "mr": {
        "morning": "सकाळी 8 वाजता",
        "afternoon": "दुपारी 2 वाजता",
        "evening": "संध्याकाळी 6 वाजता",
        "night": "रात्री 9 वाजता",
    },
}

# Ordered: "afternoon" must be checked before "noon"-like fragments of other slots.
_SLOT_KEYWORDS: tuple[tuple[TimeSlot, tuple[str, ...]], ...] = (
    ("morning", ("morning", "सुबह", "सकाळी", "subah", "sakali")),
    ("afternoon", ("afternoon", "दोपहर", "दुपारी", "dopahar", "dupari")),
    ("evening", ("evening", "शाम", "संध्याकाळी", "sham", "sandhyakali")),
    ("night", ("night", "रात्री", "रात", "raat", "ratri")),
)

_HOUR_RE = re.compile(
    # Minutes may follow as ":30" or, once "7:30" is tokenized, as " 30".
    r"(?<![0-9])([0-9]{1,2})(?:\s*:?\s*[0-5][0-9])?(?![0-9])\s*(a\.?m\.?|p\.?m\.?|बजे|वाजता)?"
)


def format_hour(hour: int) -> str:
    """Format a 24h hour as "8:00 AM" / "12:00 PM"."""
    suffix = "PM" if hour >= 12 else "AM"
    h12 = hour % 12 or 12
    return f"{h12}:00 {suffix}"


def _find_slot(normalized: str) -> Optional[TimeSlot]:
    for slot, keywords in _SLOT_KEYWORDS:
        if any(k in normalized for k in keywords):
            return slot
    return None


def _words_to_digit_text(normalized: str, locale: Optional[str]) -> str:
    """Rewrite number-word tokens as digits, keeping the rest of the text."""
    table = NUMBER_WORDS[normalize_locale(locale)]
    out = []
    for token in tokenize(normalized):
        value = table.get(token)
        out.append(str(value) if value is not None else token)
    return " ".join(out)


def parse_spoken_time_of_day(text: str, locale: Optional[str] = "en") -> Optional[TimeOfDay]:
    """
    Parse a spoken time to an hour.

    Handles: "8 AM", "8 pm", "आठ बजे", "शाम 6 बजे", "morning", "सुबह".
    An explicit hour wins; slot keywords alone map to representative hours.
    """
    normalized = normalize_text(text)
    if not normalized:
        return None

    slot = _find_slot(normalized)
    candidate = _words_to_digit_text(normalized, locale)
    # tokenize() drops "." so "p.m." arrives as "p m".
    candidate = re.sub(r"\b([ap])\s+m\b", r"\1m", candidate)

    match = _HOUR_RE.search(candidate)
    if match:
        hour = int(match.group(1))
        modifier = (match.group(2) or "").replace(".", "")
        if modifier == "pm" and hour < 12:
            hour += 12
        elif modifier == "am" and hour == 12:
            hour = 0
        elif modifier not in ("am", "pm") and slot in ("afternoon", "evening", "night") and hour < 12:
            hour += 12

        if 0 <= hour <= 23:
            return TimeOfDay(hour=hour, display=format_hour(hour), slot=slot)

    if slot is not None:
        hour = SLOT_HOURS[slot]
        return TimeOfDay(hour=hour, display=format_hour(hour), slot=slot)

    return None


def slot_display(slot: TimeSlot, locale: Optional[str] = "en") -> str:
    return pick(SLOT_DISPLAYS, locale)[slot]


Gender = Literal["male", "female"]

_GENDER_WORDS: tuple[tuple[Gender, tuple[str, ...]], ...] = (
    # "female" contains "male", so check it first.
    ("female", ("female", "woman", "lady", "महिला", "औरत", "स्त्री", "बाई", "mahila")),
    ("male", ("male", "man", "gent", "पुरुष", "आदमी", "purush")),
)


def parse_gender(text: str, locale: Optional[str] = "en") -> Optional[Gender]:
    normalized = normalize_text(text)
    if not normalized:
        return None
    for gender, words in _GENDER_WORDS:
        if any(w in normalized for w in words):
            return gender
    return None


AlarmAction = Literal["taken", "skip", "snooze"]

_ALARM_WORDS: tuple[tuple[AlarmAction, tuple[str, ...]], ...] = (
    ("taken", ("taken", "took", "ले लिया", "ले ली", "घेतले", "घेतली")),
    ("skip", ("skip", "not taken", "नहीं", "नाही")),
    ("snooze", ("snooze", "later", "बाद", "नंतर")),
)


def parse_alarm_response(text: str, locale: Optional[str] = "en") -> Optional[AlarmAction]:
    """Map an answer to a medicine alarm to taken / skip / snooze."""
    normalized = normalize_text(text)
    if not normalized:
        return None
    # "not taken" must not read as "taken".
    if "not taken" in normalized:
        return "skip"
    for action, words in _ALARM_WORDS:
        if any(w in normalized for w in words):
            return action
    return None


@dataclass(frozen=True)
class Command:
    action: str
    keywords: tuple[str, ...]


# Simple one-word, elder-friendly keywords in every supported language.
COMMANDS: tuple[Command, ...] = (
    Command("HOME", ("home", "dashboard", "main", "go home", "होम", "घर", "डैशबोर्ड", "डॅशबोर्ड")),
    Command("SCAN", ("scan", "camera", "photo", "picture", "स्कैन", "कैमरा", "फोटो", "स्कॅन", "कॅमेरा")),
    Command(
        "MEDICINES",
        ("medicines", "pills", "medicine", "pill", "my medicines",
         "दवाई", "दवाइयां", "गोली", "गोलियां", "औषध", "औषधे", "गोळी", "गोळ्या"),
    ),
    Command("REMINDERS", ("reminders", "reminder", "alarm", "alerts", "रिमाइंडर", "अलार्म", "याद", "आठवण")),
    Command("BACK", ("back", "return", "go back", "previous", "वापस", "पीछे", "लौटो", "मागे", "परत", "मागे जा")),
    Command("REPEAT", ("repeat", "again", "pardon", "दोहराओ", "फिर से", "पुन्हा", "परत सांग")),
    Command("HELP", ("help", "commands", "assist", "मदद", "सहायता", "हेल्प", "मदत", "साहाय्य")),
)

_FUZZY_CUTOFF = 0.6


@dataclass(frozen=True)
class CommandMatch:
    action: str
    confidence: float


UNKNOWN_COMMAND = CommandMatch(action="UNKNOWN", confidence=0.0)


def _keyword_index() -> list[tuple[str, str]]:
    return [(normalize_text(k), cmd.action) for cmd in COMMANDS for k in cmd.keywords]


_KEYWORDS = _keyword_index()


def parse_command(text: str) -> CommandMatch:
    """
    Parse an in-app voice command.

    Exact keyword containment wins with confidence 1.0; otherwise the closest
    keyword by `difflib` similarity (per token and whole phrase) above the cutoff.
    """
    normalized = normalize_text(text)
    if not normalized:
        return UNKNOWN_COMMAND

    for keyword, action in _KEYWORDS:
        if keyword in normalized:
            return CommandMatch(action=action, confidence=1.0)

    best = UNKNOWN_COMMAND
    candidates = [normalized] + [t for t in tokenize(normalized) if len(t) >= 2]
    for candidate in candidates:
        for keyword, action in _KEYWORDS:
            score = difflib.SequenceMatcher(None, candidate, keyword).ratio()
            if score >= _FUZZY_CUTOFF and score > best.confidence:
                best = CommandMatch(action=action, confidence=round(score, 3))
    return best

