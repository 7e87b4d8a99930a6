"""
Spoken number and phone parsing.

Maps free-form transcripts in English, Hindi and Marathi (including Devanagari
transliterations of English digit words, e.g. "वन टू थ्री") to digit strings.

Every function here is total: unknown words are skipped and the worst case is an
empty string, never an exception. These run inside a live conversation turn.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
import unicodedata
from typing import Literal, Optional

from src.dialog.locale import LocaleCode, normalize_locale, normalize_text

ENGLISH_NUMBERS: dict[str, int] = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4,
    "five": 5, "six": 6, "seven": 7, "eight": 8, "nine": 9,
    "ten": 10, "eleven": 11, "twelve": 12, "thirteen": 13, "fourteen": 14,
    "fifteen": 15, "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19,
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90, "hundred": 100,
}

HINDI_NUMBERS: dict[str, int] = {
    "शून्य": 0, "एक": 1, "दो": 2, "तीन": 3, "चार": 4,
    "पांच": 5, "पाँच": 5, "छह": 6, "छः": 6, "सात": 7, "आठ": 8, "नौ": 9,
    "दस": 10, "ग्यारह": 11, "बारह": 12, "तेरह": 13, "चौदह": 14,
    "पंद्रह": 15, "सोलह": 16, "सत्रह": 17, "अठारह": 18, "उन्नीस": 19,
    "बीस": 20, "इक्कीस": 21, "बाईस": 22, "तेईस": 23, "चौबीस": 24,
    "पच्चीस": 25, "छब्बीस": 26, "सत्ताईस": 27, "अट्ठाईस": 28, "उनतीस": 29,
    "तीस": 30, "इकतीस": 31, "बत्तीस": 32, "तैंतीस": 33, "चौंतीस": 34,
    "पैंतीस": 35, "छत्तीस": 36, "सैंतीस": 37, "अड़तीस": 38, "उनतालीस": 39,
    "चालीस": 40, "इकतालीस": 41, "बयालीस": 42, "तैंतालीस": 43, "चवालीस": 44,
    "पैंतालीस": 45, "छियालीस": 46, "सैंतालीस": 47, "अड़तालीस": 48, "उनचास": 49,
    "पचास": 50, "इक्यावन": 51, "बावन": 52, "तिरपन": 53, "चौवन": 54,
    "पचपन": 55, "छप्पन": 56, "सत्तावन": 57, "अठावन": 58, "उनसठ": 59,
    "साठ": 60, "इकसठ": 61, "बासठ": 62, "तिरसठ": 63, "चौंसठ": 64,
    "पैंसठ": 65, "छियासठ": 66, "सड़सठ": 67, "अड़सठ": 68, "उनहत्तर": 69,
    "सत्तर": 70, "इकहत्तर": 71, "बहत्तर": 72, "तिहत्तर": 73, "चौहत्तर": 74,
    "पचहत्तर": 75, "छिहत्तर": 76, "सतहत्तर": 77, "अठहत्तर": 78, "उन्यासी": 79,
    "अस्सी": 80, "इक्यासी": 81, "बयासी": 82, "तिरासी": 83, "चौरासी": 84,
    "पचासी": 85, "छियासी": 86, "सतासी": 87, "अट्ठासी": 88, "नवासी": 89,
    "नब्बे": 90, "इक्यानबे": 91, "बानबे": 92, "तिरानबे": 93, "चौरानबे": 94,
    "पंचानबे": 95, "छियानबे": 96, "सत्तानबे": 97, "अट्ठानबे": 98, "निन्यानबे": 99,
    "सौ": 100,
}

MARATHI_NUMBERS: dict[str, int] = {
    "शून्य": 0, "एक": 1, "दोन": 2, "तीन": 3, "चार": 4,
    "पाच": 5, "सहा": 6, "सात": 7, "आठ": 8, "नऊ": 9,
    "दहा": 10, "अकरा": 11, "बारा": 12, "तेरा": 13, "चौदा": 14,
    "पंधरा": 15, "सोळा": 16, "सतरा": 17, "अठरा": 18, "एकोणीस": 19,
    "वीस": 20, "एकवीस": 21, "बावीस": 22, "तेवीस": 23, "चोवीस": 24,
    "पंचवीस": 25, "सव्वीस": 26, "सत्तावीस": 27, "अठ्ठावीस": 28, "एकोणतीस": 29,
    "तीस": 30, "एकतीस": 31, "बत्तीस": 32, "तेहेतीस": 33, "चौतीस": 34,
    "पस्तीस": 35, "छत्तीस": 36, "सदतीस": 37, "अडतीस": 38, "एकोणचाळीस": 39,
    "चाळीस": 40, "एक्केचाळीस": 41, "बेचाळीस": 42, "त्रेचाळीस": 43, "चव्वेचाळीस": 44,
    "पंचेचाळीस": 45, "शेहेचाळीस": 46, "सत्तेचाळीस": 47, "अठ्ठेचाळीस": 48, "एकोणपन्नास": 49,
    "पन्नास": 50, "एक्कावन्न": 51, "बावन्न": 52, "त्रेपन्न": 53, "चोपन्न": 54,
    "पंचावन्न": 55, "छप्पन्न": 56, "सत्तावन्न": 57, "अठ्ठावन्न": 58, "एकोणसाठ": 59,
    "साठ": 60, "एकसष्ट": 61, "बासष्ट": 62, "त्रेसष्ट": 63, "चौसष्ट": 64,
    "पासष्ट": 65, "सहासष्ट": 66, "सदुसष्ट": 67, "अडुसष्ट": 68, "एकोणसत्तर": 69,
    "सत्तर": 70, "एकाहत्तर": 71, "बाहत्तर": 72, "त्र्याहत्तर": 73, "चौऱ्याहत्तर": 74,
    "पंच्याहत्तर": 75, "शहात्तर": 76, "सत्याहत्तर": 77, "अठ्याहत्तर": 78, "एकोणऐंशी": 79,
    "ऐंशी": 80, "एक्क्याऐंशी": 81, "ब्याऐंशी": 82, "त्र्याऐंशी": 83, "चौऱ्याऐंशी": 84,
    "पंच्याऐंशी": 85, "शहाऐंशी": 86, "सत्त्याऐंशी": 87, "अठ्ठ्याऐंशी": 88, "एकोणनव्वद": 89,
    "नव्वद": 90, "एक्क्याण्णव": 91, "ब्याण्णव": 92, "त्र्याण्णव": 93, "चौऱ्याण्णव": 94,
    "पंच्याण्णव": 95, "शहाण्णव": 96, "सत्त्याण्णव": 97, "अठ्ठ्याण्णव": 98, "नव्व्याण्णव": 99,
    "शंभर": 100,
}

# English digit words as commonly spoken and transcribed in Devanagari.
TRANSLITERATED_ENGLISH: dict[str, int] = {
    "वन": 1, "टू": 2, "थ्री": 3, "श्री": 3, "फोर": 4, "फ़ोर": 4,
    "फाइव": 5, "फाईव": 5, "फाईव्ह": 5, "फ़ाइव": 5,
    "सिक्स": 6, "सीक्स": 6,
    "सेवन": 7, "सेव्हन": 7,
    "एट": 8, "एइट": 8,
    "नाइन": 9, "नाईन": 9,
    "टेन": 10, "जीरो": 0, "झीरो": 0, "ज़ीरो": 0,
}


def _nfc_keys(table: dict[str, int]) -> dict[str, int]:
    return {unicodedata.normalize("NFC", k): v for k, v in table.items()}


def _merge(*tables: dict[str, int]) -> dict[str, int]:
    merged: dict[str, int] = {}
    for table in tables:
        merged.update(_nfc_keys(table))
    return merged


# Locale-keyed dictionaries. English words are always understood; unknown
# locales fall back to "en".
NUMBER_WORDS: dict[LocaleCode, dict[str, int]] = {
    "en": _merge(ENGLISH_NUMBERS),
    "hi": _merge(ENGLISH_NUMBERS, TRANSLITERATED_ENGLISH, HINDI_NUMBERS),
    "mr": _merge(ENGLISH_NUMBERS, TRANSLITERATED_ENGLISH, MARATHI_NUMBERS),
}

# Phone numbers are read digit-by-digit in whatever language comes out, so
# parse them against every dictionary.
ALL_NUMBER_WORDS: dict[str, int] = _merge(
    ENGLISH_NUMBERS, TRANSLITERATED_ENGLISH, HINDI_NUMBERS, MARATHI_NUMBERS
)

_ENGLISH_TENS = {"twenty", "thirty", "forty", "fifty", "sixty", "seventy", "eighty", "ninety"}

_TOKEN_SPLIT_RE = re.compile(r"[\s,.;:!?।॥\-()/+]+")
_DIGITS_RE = re.compile(r"[0-9]+")


def tokenize(text: str) -> list[str]:
    """Split a transcript into lowercase NFC tokens with ASCII digits."""
    return [t for t in _TOKEN_SPLIT_RE.split(normalize_text(text)) if t]


def _words_to_digits(tokens: list[str], table: dict[str, int]) -> str:
    result: list[str] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if _DIGITS_RE.fullmatch(token):
            result.append(token)
            i += 1
            continue

        value = table.get(token)
        if value is None:
            i += 1
            continue

        # "sixty five" is one number, not "605".
        if token in _ENGLISH_TENS and i + 1 < len(tokens):
            unit = table.get(tokens[i + 1])
            if unit is not None and 1 <= unit <= 9:
                result.append(str(value + unit))
                i += 2
                continue

        result.append(str(value))
        i += 1
    return "".join(result)


def parse_spoken_number(text: str, locale: Optional[str] = "en") -> str:
    """
    Parse a spoken number from any supported language into digits.

    Handles: "six five" -> "65", "छह पांच" -> "65", "सहा पाच" -> "65".
    Tokens that are neither digits nor number words are skipped.
    """
    if not text:
        return ""
    table = NUMBER_WORDS[normalize_locale(locale)]
    return _words_to_digits(tokenize(text), table)


def parse_spoken_phone(text: str, locale: Optional[str] = "en") -> str:
    """
    Parse a phone number from spoken text (digit-by-digit or grouped).

    A raw digit run of 10+ digits wins over word-by-word reconstruction.
    """
    if not text:
        return ""

    normalized = normalize_text(text)
    raw = "".join(_DIGITS_RE.findall(normalized))
    if len(raw) >= 10:
        return raw

    digits = _words_to_digits(tokenize(normalized), ALL_NUMBER_WORDS)
    return re.sub(r"\D+", "", digits)


@dataclass(frozen=True)
class PhoneFormat:
    """Country-specific mobile number rules."""

    country_code: str = "91"
    local_digits: int = 10
    leading_digits: str = "6789"

    def is_valid_local(self, digits: str) -> bool:
        return (
            len(digits) == self.local_digits
            and digits.isdigit()
            and digits[0] in self.leading_digits
        )


INDIA = PhoneFormat()


@dataclass(frozen=True)
class PhoneNumber:
    digits: str
    formatted: str
    is_valid: bool


def clean_and_format_phone_number(
    text: str,
    locale: Optional[str] = "en",
    phone_format: PhoneFormat = INDIA,
) -> PhoneNumber:
    """
    Clean a spoken phone number and format it with the country code.

    - local numbers with a valid leading digit get the "+<cc>" prefix
    - numbers already carrying the country code pass through
    - anything else is returned as a partial, invalid result for display

    Formatting an already formatted number returns the same result.
    """
    cleaned = parse_spoken_phone(text, locale)
    fmt = phone_format
    cc = fmt.country_code

    # Trunk prefix ("0 98765 43210").
    if len(cleaned) == fmt.local_digits + 1 and cleaned.startswith("0"):
        cleaned = cleaned[1:]

    if fmt.is_valid_local(cleaned):
        return PhoneNumber(digits=cleaned, formatted=f"+{cc}{cleaned}", is_valid=True)

    if len(cleaned) == len(cc) + fmt.local_digits and cleaned.startswith(cc):
        local = cleaned[len(cc):]
        if fmt.is_valid_local(local):
            return PhoneNumber(digits=local, formatted=f"+{cc}{local}", is_valid=True)

    return PhoneNumber(digits=cleaned, formatted=cleaned, is_valid=False)


@dataclass(frozen=True)
class PhoneValidation:
    is_valid: bool
    formatted: str
    error: str
    # "required", "length" or "prefix"; empty when valid.
    reason: str = ""


def validate_phone(
    text: str,
    phone_format: PhoneFormat = INDIA,
    locale: Optional[str] = "en",
) -> PhoneValidation:
    """
    Validate typed or spoken phone input and explain what is wrong with it.
    """
    if not text or not text.strip():
        return PhoneValidation(False, "", "Phone number is required", "required")

    result = clean_and_format_phone_number(text, locale, phone_format)
    if result.is_valid:
        return PhoneValidation(True, result.formatted, "")

    digits = result.digits
    if len(digits) != phone_format.local_digits:
        return PhoneValidation(
            False, "", f"Phone number must be {phone_format.local_digits} digits", "length"
        )
    leading = ", ".join(phone_format.leading_digits)
    return PhoneValidation(False, "", f"Mobile numbers must start with {leading}", "prefix")


def format_phone_for_voice(phone: str, phone_format: PhoneFormat = INDIA) -> str:
    """
    Format a phone number for TTS readback in digit pairs ("98 76 54 32 10").
    """
    digits = re.sub(r"\D+", "", phone or "")
    cc = phone_format.country_code
    if len(digits) == len(cc) + phone_format.local_digits and digits.startswith(cc):
        digits = digits[len(cc):]
    return " ".join(digits[i:i + 2] for i in range(0, len(digits), 2))


def format_phone_display(phone: str, phone_format: PhoneFormat = INDIA) -> str:
    """Format "+919876543210" as "+91 98765 43210"."""
    if not phone:
        return ""
    cleaned = re.sub(r"[\s\-()]", "", phone)
    prefix = f"+{phone_format.country_code}"
    if cleaned.startswith(prefix):
        number = cleaned[len(prefix):]
        return f"{prefix} {number[:5]} {number[5:]}"
    return phone


def parse_spoken_age(text: str, locale: Optional[str] = "en") -> str:
    """Parse a spoken age. Range checking is validation; see `is_valid_age`."""
    return parse_spoken_number(text, locale)


MIN_AGE = 1
MAX_AGE = 120


def is_valid_age(value: str) -> bool:
    try:
        age = int(value)
    except (TypeError, ValueError):
        return False
    return MIN_AGE <= age <= MAX_AGE


def extract_code(text: str, length: int = 6, locale: Optional[str] = "en") -> str:
    """
    Extract a one-time code of exactly `length` digits from a transcript.

    Returns "" when fewer digits were heard; extra digits are dropped.
    """
    digits = parse_spoken_phone(text, locale)
    if len(digits) < length:
        return ""
    return digits[:length]


InputType = Literal["tel", "name", "text"]

_NAME_STRIP_RE = re.compile(r"[0-9!@#$%^&*()_+=\[\]{};':\"\\|,.<>/?~`]")


def sanitize_voice_input(text: str, input_type: InputType, locale: Optional[str] = "en") -> str:
    """
    Sanitize voice input for a form field.

    - "tel": number words to digits, digits only
    - "name": strip digits and punctuation, keep letters (including Devanagari)
    - "text": unchanged
    """
    if not text:
        return ""
    if input_type == "tel":
        return re.sub(r"\D+", "", _words_to_digits(tokenize(text), ALL_NUMBER_WORDS))
    if input_type == "name":
        return re.sub(r"\s+", " ", _NAME_STRIP_RE.sub("", text)).strip()
    return text
