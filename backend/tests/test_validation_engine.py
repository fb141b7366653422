"""
Tests for ledger_core.validation_engine and financial_precision.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ledger_core import ValidationErrorType, ValidationFailedError
from ledger_core.financial_precision import (
    FinancialPrecisionError,
    decimal_places,
    round_financial,
    signed_amount,
    to_decimal,
)
from ledger_core.validation_engine import Result, ValidationResult


def _types(result):
    return [e.type for e in result.errors]


class TestFinancialPrecision:

    def test_round_half_up(self):
        assert round_financial("2.345") == Decimal("2.35")
        assert round_financial("2.344") == Decimal("2.34")
        assert round_financial("10.5", 0) == Decimal("11")

    def test_float_goes_through_string(self):
        assert to_decimal(0.1) == Decimal("0.1")

    def test_bool_rejected(self):
        with pytest.raises(FinancialPrecisionError):
            to_decimal(True)

    def test_signed_amount(self):
        assert signed_amount("credit", 10) == Decimal("10")
        assert signed_amount("debit", 10) == Decimal("-10")
        with pytest.raises(FinancialPrecisionError):
            signed_amount("refund", 10)

    def test_decimal_places_ignores_trailing_zeros(self):
        assert decimal_places("1.50") == 1
        assert decimal_places(100) == 0


class TestFieldRules:
    """Built-in rule registry"""

    def test_unknown_rule_raises(self, validator):
        with pytest.raises(KeyError):
            validator.validate_field("iban", "x")

    def test_custom_rule(self, validator):
        def non_empty(value, context):
            result = ValidationResult()
            if not value:
                result.add(ValidationErrorType.REQUIRED_FIELD, "required", context.get("field"))
            return result

        validator.add_rule("non_empty", non_empty)
        assert validator.validate_field("non_empty", "x").is_valid
        assert not validator.validate_field("non_empty", "", {"field": "name"}).is_valid

    @pytest.mark.parametrize("amount,expected", [
        (None, ValidationErrorType.REQUIRED_FIELD),
        ("100", ValidationErrorType.INVALID_TYPE),
        (float("nan"), ValidationErrorType.INVALID_FORMAT),
        (0, ValidationErrorType.INVALID_RANGE),
        (-5, ValidationErrorType.INVALID_RANGE),
    ])
    def test_monetary_amount_errors(self, validator, amount, expected):
        result = validator.validate_field("monetary_amount", amount)
        assert expected in _types(result)

    def test_amount_precision_per_currency(self, validator):
        assert validator.validate_monetary_amount(10.25, "USD").is_valid
        assert not validator.validate_monetary_amount(10.255, "USD").is_valid
        assert validator.validate_monetary_amount(1500, "JPY").is_valid
        assert not validator.validate_monetary_amount(15.5, "JPY").is_valid

    def test_amount_bounds(self, validator):
        assert not validator.validate_monetary_amount(0.5, "INR").is_valid
        assert not validator.validate_monetary_amount(1_000_000_000, "USD").is_valid

    def test_currency_rule(self, validator):
        assert validator.validate_field("currency", "usd").is_valid
        result = validator.validate_field("currency", "XYZ")
        assert _types(result) == [ValidationErrorType.INVALID_FORMAT]
        assert "Supported currencies" in result.errors[0].message
        assert _types(validator.validate_field("currency", None)) == [ValidationErrorType.REQUIRED_FIELD]

    def test_percentage_rule(self, validator):
        assert validator.validate_field("percentage", 0).is_valid
        assert validator.validate_field("percentage", 100).is_valid
        assert not validator.validate_field("percentage", 100.5).is_valid
        assert not validator.validate_field("percentage", "50").is_valid

    def test_party_rule(self, validator):
        assert validator.validate_field("party", "vendor").is_valid
        assert _types(validator.validate_field("party", "investor")) == [ValidationErrorType.INVALID_FORMAT]


class TestCompositeValidators:

    def test_percentages_sum_tolerance(self, validator):
        assert validator.validate_revenue_rule_percentages(33.33, 33.33, 33.34).is_valid
        assert validator.validate_revenue_rule_percentages(40, 59.995, 0).is_valid
        result = validator.validate_revenue_rule_percentages(40, 50, 0)
        assert _types(result) == [ValidationErrorType.BUSINESS_RULE_VIOLATION]
        assert "Current total: 90" in result.errors[0].message

    def test_revenue_rule_name(self, validator):
        result = validator.validate_revenue_rule({"rule_name": "ab", "admin_percent": 40, "team_percent": 60})
        assert [e.field for e in result.errors] == ["rule_name"]

    def test_revenue_rule_flags(self, validator):
        result = validator.validate_revenue_rule({
            "rule_name": "Standard", "admin_percent": 40, "team_percent": 60, "is_default": "yes",
        })
        assert _types(result) == [ValidationErrorType.INVALID_TYPE]

    def test_ledger_entry(self, validator):
        entry = {
            "project_id": "p1", "type": "credit", "party": "team",
            "amount": 10, "currency": "USD", "date": datetime.now(timezone.utc),
        }
        assert validator.validate_ledger_entry(entry).is_valid

        bad = {**entry, "project_id": "", "type": "transfer", "date": "not-a-date", "status": "void"}
        fields = {e.field for e in validator.validate_ledger_entry(bad).errors}
        assert fields == {"project_id", "type", "date", "status"}

    def test_settlement_requires_entries(self, validator):
        result = validator.validate_settlement({
            "party": "team", "ledger_entry_ids": [], "currency": "USD", "settlement_date": "2024-06-01",
        })
        assert [e.field for e in result.errors] == ["ledger_entry_ids"]

    def test_settlement_rejects_duplicate_ids(self, validator):
        result = validator.validate_settlement({
            "party": "team", "ledger_entry_ids": ["a", "a"], "currency": "USD", "settlement_date": "2024-06-01",
        })
        assert _types(result) == [ValidationErrorType.BUSINESS_RULE_VIOLATION]

    def test_currency_consistency(self, validator):
        assert validator.validate_currency_consistency([{"currency": "USD"}, {"currency": "USD"}]).is_valid
        result = validator.validate_currency_consistency([{"currency": "USD"}, {"currency": "EUR"}])
        assert _types(result) == [ValidationErrorType.CURRENCY_MISMATCH]


class TestFormatting:

    def test_format_with_symbol(self, validator):
        assert validator.format_monetary_amount(1234.5, "USD", include_symbol=True) == "$1,234.50"
        assert validator.format_monetary_amount(1234.5, "JPY", include_symbol=True) == "¥1,235"
        assert validator.format_monetary_amount(1234.5, "USD") == "1234.50"

    def test_parse_strips_symbols_and_codes(self, validator):
        assert validator.parse_monetary_amount("$1,234.50", "USD").value == Decimal("1234.50")
        assert validator.parse_monetary_amount("1 000 EUR", "EUR").value == Decimal("1000")

    def test_parse_failures(self, validator):
        assert not validator.parse_monetary_amount("abc", "USD").ok
        assert not validator.parse_monetary_amount("-5", "USD").ok
        assert not validator.parse_monetary_amount(None, "USD").ok


class TestResult:

    def test_unwrap_raises_validation_failed(self, validator):
        result = Result.from_validation(validator.validate_field("party", "nobody"))
        with pytest.raises(ValidationFailedError) as exc:
            result.unwrap()
        assert exc.value.errors[0].field == "party"

    def test_failure_needs_issues(self):
        with pytest.raises(ValueError):
            Result.failure([])


class TestDataIntegrity:

    def _entry(self, id, party, amount, payment_id=None, currency="USD", type="credit"):
        return {"id": id, "party": party, "amount": amount, "currency": currency,
                "type": type, "payment_id": payment_id}

    def test_balanced_split_passes(self, validator):
        entries = [self._entry("e1", "admin", 40, "p1"), self._entry("e2", "team", 60, "p1")]
        report = validator.validate_data_integrity(entries, [], [{"id": "p1", "amount": 100}])
        assert report.passed

    def test_split_imbalance_detected(self, validator):
        entries = [self._entry("e1", "admin", 40, "p1"), self._entry("e2", "team", 50, "p1")]
        report = validator.validate_data_integrity(entries, [], [{"id": "p1", "amount": 100}])
        assert not report.passed
        assert report.issues[0]["type"] == "split_imbalance"

    def test_negative_balance_reported_not_failed(self, validator):
        entries = [self._entry("e1", "vendor", 10, type="debit")]
        report = validator.validate_data_integrity(entries, [])
        assert report.passed
        assert report.issues[0]["type"] == "negative_balance"

    def test_settlement_checks(self, validator):
        entries = [self._entry("e1", "team", 60), self._entry("e2", "admin", 40)]
        settlements = [{"id": "s1", "party": "team", "total_amount": 80, "ledger_entry_ids": ["e1", "e2", "e9"]}]
        report = validator.validate_data_integrity(entries, settlements).to_dict()
        types = {issue["type"] for issue in report["issues"]}
        assert {"missing_ledger_entry", "party_mismatch", "settlement_amount_mismatch"} <= types
        assert not report["passed"]
