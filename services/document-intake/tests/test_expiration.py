"""Tests for expiration date detection in recognized text."""

import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from expiration import (
    EXPIRATION_FIELD,
    extract_expiration_date,
    find_expiration,
    with_expiration_date,
)
from models import EnhancedExtractedData, FieldType

TODAY = date(2025, 1, 1)


class TestExtractExpirationDate:
    def test_month_year_is_last_day_of_month(self):
        assert extract_expiration_date("Valid thru 03/26", today=TODAY) == "2026-03-31"

    def test_month_four_digit_year(self):
        assert extract_expiration_date("EXP 02/2028", today=TODAY) == "2028-02-29"

    def test_full_iso_date_after_keyword(self):
        assert extract_expiration_date("Expiration Date: 2026-03-15", today=TODAY) == "2026-03-15"

    def test_past_date_without_keyword(self):
        assert extract_expiration_date("Issued 01/01/2020", today=TODAY) is None

    def test_year_first(self):
        assert extract_expiration_date("Expiry date: 2027-06-30", today=TODAY) == "2027-06-30"

    def test_year_first_with_slashes(self):
        assert extract_expiration_date("Expires 2027/6/1", today=TODAY) == "2027-06-01"

    def test_year_first_past_date_is_kept(self):
        assert extract_expiration_date("Expiration date 2020-05-01", today=TODAY) == "2020-05-01"

    def test_month_first_future(self):
        assert extract_expiration_date("Expires on 12/31/2027", today=TODAY) == "2027-12-31"

    def test_month_first_dotted(self):
        assert extract_expiration_date("valid until 04.15.2026", today=TODAY) == "2026-04-15"

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("EXP.12/31/2027", "2027-12-31"),
            ("Expires-12/31/2027", "2027-12-31"),
            ("Valid thru-03/28", "2028-03-31"),
        ],
    )
    def test_date_glued_to_keyword_by_punctuation(self, text: str, expected: str):
        assert extract_expiration_date(text, today=TODAY) == expected

    def test_month_first_past_date_rejected(self):
        assert extract_expiration_date("Expires 01/01/2020", today=TODAY) is None

    def test_keyword_is_case_insensitive(self):
        assert extract_expiration_date("EXPIRATION DATE: 2026-01-31", today=TODAY) == "2026-01-31"

    def test_no_keyword(self):
        assert extract_expiration_date("Issued 03/26", today=TODAY) is None

    def test_no_dates(self):
        assert extract_expiration_date("no dates here", today=TODAY) is None

    def test_empty_text(self):
        assert extract_expiration_date("", today=TODAY) is None

    def test_date_beyond_window_is_ignored(self):
        text = "Expiration " + "x" * 120 + " 12/31/2027"
        assert extract_expiration_date(text, today=TODAY) is None

    def test_later_occurrence_of_keyword_is_checked(self):
        text = "Expires: see back of card.\n" + "." * 120 + "\nExpires 2027-03-01"
        assert extract_expiration_date(text, today=TODAY) == "2027-03-01"

    def test_past_effective_date_skipped_for_expiration(self, policy_text: str):
        assert extract_expiration_date(policy_text, today=TODAY) == "2027-12-31"

    def test_month_name_first(self):
        assert extract_expiration_date("Valid until March 15, 2027", today=TODAY) == "2027-03-15"

    def test_day_month_name(self):
        assert extract_expiration_date("Expiry 15 Mar 2027", today=TODAY) == "2027-03-15"

    def test_month_name_past_rejected(self):
        assert extract_expiration_date("Valid until March 15, 2020", today=TODAY) is None

    def test_invalid_calendar_date_skipped(self):
        assert extract_expiration_date("Expiration 2027-02-30", today=TODAY) is None


class TestFindExpiration:
    def test_raw_text_is_the_matched_date(self):
        found = find_expiration("Valid thru 03/26", today=TODAY)
        assert found is not None
        assert found.raw_text == "03/26"
        assert found.normalized_iso_date == "2026-03-31"

    def test_no_match(self):
        assert find_expiration("Member ID 12345", today=TODAY) is None


class TestWithExpirationDate:
    def test_adds_field_from_text(self):
        data = EnhancedExtractedData(document_title="Card")
        result = with_expiration_date(data, "Valid thru 03/26", 0.6, today=TODAY)

        field = result.fields[EXPIRATION_FIELD]
        assert field.value == "2026-03-31"
        assert field.field_type is FieldType.DATE
        assert field.confidence == 0.6
        assert field.label == "Expiration Date"
        assert "03/26" in result.all_dates_found
        # Original untouched
        assert EXPIRATION_FIELD not in data.fields

    def test_existing_value_wins(self):
        data = EnhancedExtractedData.model_validate({
            "fields": {EXPIRATION_FIELD: {"value": "2030-01-01", "confidence": 0.9, "fieldType": "date"}},
        })
        result = with_expiration_date(data, "Valid thru 03/26", 0.6, today=TODAY)
        assert result is data

    def test_empty_existing_value_is_filled(self):
        data = EnhancedExtractedData.model_validate({
            "fields": {EXPIRATION_FIELD: {"label": "Expires", "value": "", "fieldType": "date"}},
        })
        result = with_expiration_date(data, "Valid thru 03/26", 0.6, today=TODAY)
        assert result.fields[EXPIRATION_FIELD].value == "2026-03-31"
        assert result.fields[EXPIRATION_FIELD].label == "Expires"

    def test_no_date_returns_same_data(self):
        data = EnhancedExtractedData()
        assert with_expiration_date(data, "nothing useful", 0.6, today=TODAY) is data
