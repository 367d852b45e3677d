"""
Tests for expense payload validation, pagination normalisation and date helpers.
"""

from datetime import date

import pytest

from expense_tracker.managers.expense_manager import (
    ONE_DAY_MILLIS,
    TEN_YEARS_MILLIS,
    VALID_SYNC_SORT_FIELDS,
    day_end_millis,
    day_start_millis,
    month_range_millis,
    normalize_page_request,
    parse_day,
    validate_expense_payload,
    validate_month,
)
from expense_tracker.models import VALID_CATEGORIES
from expense_tracker.utils.error_handling import ValidationError

NOW = 1_710_000_000_000  # 2024-03-09


def payload(**overrides):
    base = {"amount": 250.5, "category": "FOOD", "description": "Groceries", "date": NOW - ONE_DAY_MILLIS}
    base.update(overrides)
    return base


class TestValidateExpensePayload:
    def test_valid_payload_has_no_errors(self):
        assert validate_expense_payload(payload(), "₹", now=NOW) == []

    def test_category_is_case_insensitive(self):
        assert validate_expense_payload(payload(category="food"), now=NOW) == []
        assert validate_expense_payload(payload(category=" Travel "), now=NOW) == []

    @pytest.mark.parametrize("amount", [None, 0, -5, float("nan"), float("inf"), float("-inf")])
    def test_amount_must_be_positive(self, amount):
        errors = validate_expense_payload(payload(amount=amount), now=NOW)
        assert "Amount is required and must be greater than 0" in errors

    def test_amount_upper_bound_uses_currency(self):
        errors = validate_expense_payload(payload(amount=1_000_001), "$", now=NOW)
        assert errors == ["Amount cannot exceed $1000000"]

    def test_unknown_category(self):
        errors = validate_expense_payload(payload(category="RENT"), now=NOW)
        assert errors == [f"Category must be one of: {', '.join(VALID_CATEGORIES)}"]

    def test_missing_category(self):
        assert "Category is required" in validate_expense_payload(payload(category="  "), now=NOW)

    def test_description_length(self):
        errors = validate_expense_payload(payload(description="x" * 501), now=NOW)
        assert errors == ["Description cannot exceed 500 characters"]

    @pytest.mark.parametrize("description", ["<script>alert(1)</script>", "JavaScript:void(0)", "img onerror=x"])
    def test_description_rejects_markup(self, description):
        errors = validate_expense_payload(payload(description=description), now=NOW)
        assert "Description contains invalid characters" in errors

    def test_date_required(self):
        errors = validate_expense_payload(payload(date=None), now=NOW)
        assert errors == ["Date is required and must be a valid timestamp"]

    def test_date_at_most_one_day_ahead(self):
        assert validate_expense_payload(payload(date=NOW + ONE_DAY_MILLIS), now=NOW) == []
        errors = validate_expense_payload(payload(date=NOW + ONE_DAY_MILLIS + 1), now=NOW)
        assert errors == ["Date cannot be more than 1 day in the future"]

    def test_date_at_most_ten_years_back(self):
        errors = validate_expense_payload(payload(date=NOW - TEN_YEARS_MILLIS - 1), now=NOW)
        assert errors == ["Date cannot be more than 10 years in the past"]

    def test_short_ids_rejected(self):
        errors = validate_expense_payload(payload(userId="ab", familyId="f1"), now=NOW)
        assert "ExpenseUser ID format is invalid" in errors
        assert "Family ID format is invalid" in errors

    def test_collects_every_violation(self):
        errors = validate_expense_payload({"amount": 0, "category": "", "date": 0}, now=NOW)
        assert len(errors) == 3


class TestPageRequest:
    def test_defaults(self):
        request = normalize_page_request(None, None, None, False)
        assert (request.page, request.size, request.sort_by, request.ascending) == (0, 10, "date", False)
        assert request.last_expense_id is None

    def test_size_is_clamped(self):
        assert normalize_page_request(0, 0, "date", True).size == 10
        assert normalize_page_request(0, -3, "date", True).size == 10
        assert normalize_page_request(0, 1000, "date", True).size == 100

    def test_negative_page_becomes_zero(self):
        assert normalize_page_request(-4, 10, "date", True).page == 0

    def test_unknown_sort_field_falls_back(self):
        assert normalize_page_request(0, 10, "password", True).sort_by == "date"
        request = normalize_page_request(
            0, 10, "amount", True, allowed_sort_fields=VALID_SYNC_SORT_FIELDS, default_sort="lastModifiedOn"
        )
        assert request.sort_by == "lastModifiedOn"

    def test_blank_cursor_is_dropped(self):
        assert normalize_page_request(0, 10, "date", True, "   ").last_expense_id is None
        assert normalize_page_request(0, 10, "date", True, " exp-1 ").last_expense_id == "exp-1"


class TestDateHelpers:
    def test_parse_day(self):
        assert parse_day("2024-02-29") == date(2024, 2, 29)

    @pytest.mark.parametrize("value", ["2024/02/01", "2023-02-29", "", None])
    def test_parse_day_rejects_bad_input(self, value):
        with pytest.raises(ValidationError) as exc_info:
            parse_day(value)
        assert exc_info.value.message == "Invalid date format. Use YYYY-MM-DD format"

    def test_day_bounds_are_inclusive(self):
        day = date(2024, 3, 1)
        assert day_end_millis(day) - day_start_millis(day) == ONE_DAY_MILLIS - 1

    def test_month_range_handles_leap_february(self):
        start, end = month_range_millis(2024, 2)
        assert start == day_start_millis(date(2024, 2, 1))
        assert end == day_end_millis(date(2024, 2, 29))

    @pytest.mark.parametrize("year,month", [(2024, 0), (2024, 13), (1999, 5), (9999, 1)])
    def test_validate_month_rejects_out_of_range(self, year, month):
        with pytest.raises(ValidationError):
            validate_month(year, month)
