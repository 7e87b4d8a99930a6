"""
Tests for spoken number, phone, age and code parsing.
"""

import pytest

from src.dialog.numbers import (
    INDIA,
    PhoneFormat,
    clean_and_format_phone_number,
    extract_code,
    format_phone_display,
    format_phone_for_voice,
    is_valid_age,
    parse_spoken_age,
    parse_spoken_number,
    parse_spoken_phone,
    sanitize_voice_input,
    validate_phone,
)


class TestSpokenNumbers:
    """Tests for parse_spoken_number."""

    @pytest.mark.parametrize(
        "text,locale,expected",
        [
            ("six five", "en", "65"),
            ("sixty five", "en", "65"),
            ("छह पांच", "hi", "65"),
            ("सहा पाच", "mr", "65"),
            ("वन टू थ्री", "hi", "123"),
            ("I am 72", "en", "72"),
        ],
    )
    def test_parse(self, text, locale, expected):
        assert parse_spoken_number(text, locale) == expected

    def test_unknown_words_are_skipped(self):
        assert parse_spoken_number("banana", "en") == ""
        assert parse_spoken_number("", "en") == ""

    def test_unknown_locale_falls_back_to_english(self):
        assert parse_spoken_number("four two", "fr") == "42"

    def test_age_uses_number_parser(self):
        assert parse_spoken_age("seventy two", "en") == "72"


class TestPhoneParsing:
    """Tests for phone parsing and formatting."""

    def test_digit_words(self):
        text = "nine eight seven six five four three two one zero"
        assert parse_spoken_phone(text) == "9876543210"

    def test_grouped_digits(self):
        assert parse_spoken_phone("98765 43210") == "9876543210"

    def test_mixed_languages(self):
        # English and Devanagari digit words in one utterance
        text = "नौ आठ seven six पाच चार three two एक zero"
        assert parse_spoken_phone(text, "mr") == "9876543210"

    def test_devanagari_digits(self):
        result = clean_and_format_phone_number("९८७६५४३२१०")
        assert result.is_valid
        assert result.formatted == "+919876543210"

    def test_local_number_gets_country_code(self):
        result = clean_and_format_phone_number("9876543210")
        assert result.is_valid
        assert result.digits == "9876543210"
        assert result.formatted == "+919876543210"

    def test_country_code_passes_through(self):
        result = clean_and_format_phone_number("+91 98765 43210")
        assert result.is_valid
        assert result.formatted == "+919876543210"

    def test_trunk_prefix_is_dropped(self):
        result = clean_and_format_phone_number("0 98765 43210")
        assert result.is_valid
        assert result.formatted == "+919876543210"

    def test_formatting_is_idempotent(self):
        once = clean_and_format_phone_number("nine eight seven six five four three two one zero")
        twice = clean_and_format_phone_number(once.formatted)
        assert twice == once

    def test_bad_leading_digit_is_invalid(self):
        result = clean_and_format_phone_number("5876543210")
        assert not result.is_valid
        assert result.formatted == "5876543210"

    def test_partial_number_is_invalid(self):
        result = clean_and_format_phone_number("nine eight seven")
        assert not result.is_valid
        assert result.digits == "987"

    def test_other_phone_format(self):
        fmt = PhoneFormat(country_code="1", local_digits=10, leading_digits="23456789")
        result = clean_and_format_phone_number("2025550143", phone_format=fmt)
        assert result.is_valid
        assert result.formatted == "+12025550143"


class TestPhoneValidation:
    """Tests for validate_phone messages."""

    def test_required(self):
        result = validate_phone("")
        assert not result.is_valid
        assert result.error == "Phone number is required"
        assert result.reason == "required"

    def test_wrong_length(self):
        result = validate_phone("12345")
        assert result.error == "Phone number must be 10 digits"
        assert result.reason == "length"

    def test_wrong_leading_digit(self):
        result = validate_phone("5876543210")
        assert result.error == "Mobile numbers must start with 6, 7, 8, 9"
        assert result.reason == "prefix"

    def test_valid(self):
        result = validate_phone("98765 43210")
        assert result.is_valid
        assert result.formatted == "+919876543210"
        assert result.error == ""

    def test_spoken_in_locale(self):
        assert validate_phone("नौ आठ सात छह पांच चार तीन दो एक शून्य", locale="hi").is_valid
        assert validate_phone("five eight seven six five four three two one zero").reason == "prefix"


class TestPhoneDisplay:
    def test_voice_pairs(self):
        assert format_phone_for_voice("+919876543210") == "98 76 54 32 10"
        assert format_phone_for_voice("9876543210", INDIA) == "98 76 54 32 10"

    def test_display(self):
        assert format_phone_display("+919876543210") == "+91 98765 43210"
        assert format_phone_display("12345") == "12345"
        assert format_phone_display("") == ""


class TestAgeAndCode:
    @pytest.mark.parametrize("value,expected", [("72", True), ("1", True), ("120", True), ("0", False), ("121", False), ("abc", False), ("", False)])
    def test_age_range(self, value, expected):
        assert is_valid_age(value) is expected

    def test_code_from_words(self):
        assert extract_code("one two three four five six", 6) == "123456"

    def test_code_too_short(self):
        assert extract_code("one two three", 6) == ""

    def test_code_extra_digits_dropped(self):
        assert extract_code("my code is 1234567", 6) == "123456"

    def test_code_in_hindi(self):
        assert extract_code("एक दो तीन चार पांच छह", 6, "hi") == "123456"


class TestSanitize:
    def test_name_strips_digits_and_punctuation(self):
        assert sanitize_voice_input("Ramesh 123!", "name") == "Ramesh"

    def test_name_keeps_devanagari(self):
        assert sanitize_voice_input("रमेश कुमार", "name", "hi") == "रमेश कुमार"

    def test_tel(self):
        assert sanitize_voice_input("nine eight 7", "tel") == "987"

    def test_text_unchanged(self):
        assert sanitize_voice_input("Hello, World", "text") == "Hello, World"
