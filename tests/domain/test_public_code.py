"""Tests for public request code formatting, parsing and legacy repair."""

import pytest

from procurement_kernel.domain.public_code import (
    format_public_code,
    initials_prefix,
    normalize_public_code,
    parse_public_code,
    repair_legacy_code,
)


class TestInitialsPrefix:
    def test_first_letters_of_first_two_words(self):
        assert initials_prefix("Juan Zapata Gomez", "SC") == "JZ"

    def test_accents_are_stripped(self):
        assert initials_prefix("Álvaro Ñúñez", "SC") == "AN"

    def test_single_word(self):
        assert initials_prefix("compras", "SC") == "C"

    @pytest.mark.parametrize("name", ["", "   ", "123 456"])
    def test_falls_back_to_default(self, name):
        assert initials_prefix(name, "SC") == "SC"


class TestFormatAndParse:
    def test_zero_padded_to_width(self):
        assert format_public_code("sc", 42) == "SC-000042"

    def test_custom_width(self):
        assert format_public_code("JZ", 7, width=4) == "JZ-0007"

    def test_number_wider_than_width_is_kept(self):
        assert format_public_code("SC", 1234567) == "SC-1234567"

    def test_non_positive_number_rejected(self):
        with pytest.raises(ValueError):
            format_public_code("SC", 0)

    def test_parse(self):
        assert parse_public_code(" sc-000042 ") == ("SC", 42)

    @pytest.mark.parametrize("code", ["SC000042", "SC-", "-000042", "S1-000042", ""])
    def test_parse_rejects_malformed(self, code):
        with pytest.raises(ValueError):
            parse_public_code(code)

    def test_normalize(self):
        assert normalize_public_code("  jz-000001 ") == "JZ-000001"


class TestLegacyRepair:
    def test_strips_extra_trailing_zero(self):
        assert repair_legacy_code("JZ-0000010") == "JZ-000001"

    def test_correct_width_code_unchanged(self):
        assert repair_legacy_code("JZ-000010") == "JZ-000010"

    def test_overlong_code_not_ending_in_zero_unchanged(self):
        assert repair_legacy_code("JZ-0000011") == "JZ-0000011"

    def test_all_zero_code_unchanged(self):
        assert repair_legacy_code("JZ-0000000") == "JZ-0000000"

    def test_malformed_code_only_normalized(self):
        assert repair_legacy_code(" bad code ") == "BAD CODE"
