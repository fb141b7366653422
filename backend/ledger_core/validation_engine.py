"""
REVENUE LEDGER: VALIDATION ENGINE

Rule-based field and business validation for financial data.

1. Named rule registry (monetary_amount, currency, percentage, party)
2. Composite validators for ledger entries, settlements and revenue rules
3. Currency registry with per-currency precision and limits
4. Data integrity checks across entries, settlements and payments

Validation never raises for bad input: every check returns a
ValidationResult (or a Result carrying a value) listing ValidationIssues.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, TypeVar
import math
import re
import logging

from .clock import parse_datetime
from .exceptions import ValidationFailedError
from .financial_precision import (
    decimal_places,
    round_financial,
    signed_amount,
    signed_total,
    to_decimal,
    FinancialPrecisionError,
)
from .models import Party, EntryType, EntryStatus

logger = logging.getLogger(__name__)


class ValidationErrorType:
    REQUIRED_FIELD = "required_field"
    INVALID_TYPE = "invalid_type"
    INVALID_FORMAT = "invalid_format"
    INVALID_RANGE = "invalid_range"
    CURRENCY_MISMATCH = "currency_mismatch"
    BUSINESS_RULE_VIOLATION = "business_rule_violation"
    DATA_INTEGRITY_VIOLATION = "data_integrity_violation"


# Allowed deviation of a percentage sum from 100
PERCENT_SUM_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class CurrencySpec:
    symbol: str
    decimals: int
    min_amount: Decimal
    max_amount: Decimal


SUPPORTED_CURRENCIES: Dict[str, CurrencySpec] = {
    "INR": CurrencySpec("₹", 2, Decimal("1"), Decimal("9999999999.99")),
    "USD": CurrencySpec("$", 2, Decimal("0.01"), Decimal("999999999.99")),
    "EUR": CurrencySpec("€", 2, Decimal("0.01"), Decimal("999999999.99")),
    "GBP": CurrencySpec("£", 2, Decimal("0.01"), Decimal("999999999.99")),
    "CAD": CurrencySpec("C$", 2, Decimal("0.01"), Decimal("999999999.99")),
    "AUD": CurrencySpec("A$", 2, Decimal("0.01"), Decimal("999999999.99")),
    "JPY": CurrencySpec("¥", 0, Decimal("1"), Decimal("99999999999")),
}


def get_currency(code: Optional[str]) -> Optional[CurrencySpec]:
    if not isinstance(code, str):
        return None
    return SUPPORTED_CURRENCIES.get(code.upper())


def currency_decimals(code: str) -> int:
    spec = get_currency(code)
    return spec.decimals if spec else 2


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class ValidationIssue:
    """A single field-level problem"""
    type: str
    message: str
    field: Optional[str] = None
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.type, "message": self.message, "field": self.field}
        if self.value is not None:
            data["value"] = self.value if isinstance(self.value, (str, int, float, bool, list, dict)) else str(self.value)
        return data


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def extend(self, *others: "ValidationResult") -> "ValidationResult":
        for other in others:
            self.errors.extend(other.errors)
        return self

    def add(self, type: str, message: str, field: Optional[str] = None, value: Any = None):
        self.errors.append(ValidationIssue(type, message, field, value))


T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """
    Outcome of an operation whose expected failure mode is validation.

    `ok` results carry `value`; failed results carry `errors`. `unwrap()`
    is the only place a validation failure turns into an exception.
    """
    value: Optional[T] = None
    errors: List[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, errors: Iterable[ValidationIssue]) -> "Result[T]":
        errors = list(errors)
        if not errors:
            raise ValueError("A failed Result needs at least one issue")
        return cls(errors=errors)

    @classmethod
    def from_validation(cls, validation: ValidationResult) -> "Result[T]":
        return cls(errors=list(validation.errors))

    def unwrap(self) -> T:
        if self.errors:
            raise ValidationFailedError(self.errors)
        return self.value


# =============================================================================
# INTEGRITY REPORT TYPES
# =============================================================================

@dataclass
class IntegrityCheck:
    name: str
    passed: bool = True
    issues: List[Dict[str, Any]] = field(default_factory=list)

    def fail(self, issue: Dict[str, Any]):
        self.passed = False
        self.issues.append(issue)


@dataclass
class IntegrityReport:
    passed: bool = True
    checks: List[IntegrityCheck] = field(default_factory=list)
    issues: List[Dict[str, Any]] = field(default_factory=list)

    def add_check(self, check: IntegrityCheck):
        self.checks.append(check)
        self.issues.extend(check.issues)
        if not check.passed:
            self.passed = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "checks": [{"name": c.name, "passed": c.passed, "issues": c.issues} for c in self.checks],
            "issues": self.issues,
        }


RuleFn = Callable[[Any, Dict[str, Any]], ValidationResult]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_finite(value: Any) -> bool:
    if isinstance(value, Decimal):
        return value.is_finite()
    return math.isfinite(value)


class ValidationEngine:
    """Registry of named validation rules plus composite entity validators"""

    def __init__(self):
        self._rules: Dict[str, RuleFn] = {}
        self._setup_default_rules()

    # =========================================================================
    # RULE REGISTRY
    # =========================================================================

    def add_rule(self, name: str, validator: RuleFn):
        self._rules[name] = validator

    def validate_field(self, rule_name: str, value: Any, context: Optional[Dict[str, Any]] = None) -> ValidationResult:
        rule = self._rules.get(rule_name)
        if rule is None:
            raise KeyError(f"Validation rule '{rule_name}' not found")
        return rule(value, context or {})

    def _setup_default_rules(self):
        self.add_rule("monetary_amount", self._monetary_amount_rule)
        self.add_rule("currency", self._currency_rule)
        self.add_rule("percentage", self._percentage_rule)
        self.add_rule("party", self._party_rule)

    @staticmethod
    def _monetary_amount_rule(value: Any, context: Dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        field_name = context.get("field", "amount")

        if value is None:
            result.add(ValidationErrorType.REQUIRED_FIELD, "Amount is required", field_name)
            return result
        if not _is_number(value):
            result.add(ValidationErrorType.INVALID_TYPE, "Amount must be a number", field_name, value)
            return result
        if not _is_finite(value):
            result.add(ValidationErrorType.INVALID_FORMAT, "Amount must be a valid number", field_name, str(value))
            return result

        amount = to_decimal(value)
        if amount <= 0:
            result.add(ValidationErrorType.INVALID_RANGE, "Amount must be positive", field_name, value)

        currency = context.get("currency")
        spec = get_currency(currency)
        if spec is not None:
            code = currency.upper()
            if amount < spec.min_amount:
                result.add(
                    ValidationErrorType.INVALID_RANGE,
                    f"Amount must be at least {spec.min_amount} {code}",
                    field_name, value
                )
            if amount > spec.max_amount:
                result.add(
                    ValidationErrorType.INVALID_RANGE,
                    f"Amount cannot exceed {spec.max_amount} {code}",
                    field_name, value
                )
            if decimal_places(amount) > spec.decimals:
                result.add(
                    ValidationErrorType.INVALID_FORMAT,
                    f"Amount cannot have more than {spec.decimals} decimal places for {code}",
                    field_name, value
                )
        return result

    @staticmethod
    def _currency_rule(value: Any, context: Dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        field_name = context.get("field", "currency")

        if not value:
            result.add(ValidationErrorType.REQUIRED_FIELD, "Currency is required", field_name)
            return result
        if not isinstance(value, str):
            result.add(ValidationErrorType.INVALID_TYPE, "Currency must be a string", field_name, value)
            return result
        if get_currency(value) is None:
            result.add(
                ValidationErrorType.INVALID_FORMAT,
                f"Unsupported currency: {value}. Supported currencies: {', '.join(SUPPORTED_CURRENCIES)}",
                field_name, value
            )
        return result

    @staticmethod
    def _percentage_rule(value: Any, context: Dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        field_name = context.get("field", "percentage")

        if value is None:
            result.add(ValidationErrorType.REQUIRED_FIELD, "Percentage is required", field_name)
            return result
        if not _is_number(value):
            result.add(ValidationErrorType.INVALID_TYPE, "Percentage must be a number", field_name, value)
            return result
        if not _is_finite(value):
            result.add(ValidationErrorType.INVALID_FORMAT, "Percentage must be a valid number", field_name, str(value))
            return result
        if value < 0 or value > 100:
            result.add(ValidationErrorType.INVALID_RANGE, "Percentage must be between 0 and 100", field_name, value)
        return result

    @staticmethod
    def _party_rule(value: Any, context: Dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        field_name = context.get("field", "party")
        valid = [p.value for p in Party]

        if not value:
            result.add(ValidationErrorType.REQUIRED_FIELD, "Party is required", field_name)
            return result
        if value not in valid:
            result.add(
                ValidationErrorType.INVALID_FORMAT,
                f"Invalid party type: {value}. Valid types: {', '.join(valid)}",
                field_name, value
            )
        return result

    # =========================================================================
    # COMPOSITE VALIDATORS
    # =========================================================================

    def validate_monetary_amount(self, amount: Any, currency: Any, field_name: str = "amount") -> ValidationResult:
        return ValidationResult().extend(
            self.validate_field("monetary_amount", amount, {"currency": currency, "field": field_name}),
            self.validate_field("currency", currency, {"field": "currency"}),
        )

    def validate_revenue_rule_percentages(
        self,
        admin_percent: Any,
        team_percent: Any,
        vendor_percent: Any = 0
    ) -> ValidationResult:
        admin = self.validate_field("percentage", admin_percent, {"field": "admin_percent"})
        team = self.validate_field("percentage", team_percent, {"field": "team_percent"})
        vendor = self.validate_field("percentage", vendor_percent, {"field": "vendor_percent"})
        result = ValidationResult().extend(admin, team, vendor)

        if result.is_valid:
            total = to_decimal(admin_percent) + to_decimal(team_percent) + to_decimal(vendor_percent)
            if abs(total - Decimal("100")) > PERCENT_SUM_TOLERANCE:
                result.add(
                    ValidationErrorType.BUSINESS_RULE_VIOLATION,
                    f"Percentages must sum to 100%. Current total: {total}%",
                    "percentages",
                    {
                        "admin_percent": admin_percent,
                        "team_percent": team_percent,
                        "vendor_percent": vendor_percent,
                        "total": float(total),
                    }
                )
        return result

    def validate_revenue_rule(self, rule: Dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        name = rule.get("rule_name")
        if not isinstance(name, str) or len(name.strip()) < 3:
            result.add(
                ValidationErrorType.REQUIRED_FIELD if not name else ValidationErrorType.INVALID_FORMAT,
                "Rule name must be at least 3 characters",
                "rule_name", name
            )
        for flag in ("is_default", "is_active"):
            if flag in rule and rule[flag] is not None and not isinstance(rule[flag], bool):
                result.add(ValidationErrorType.INVALID_TYPE, f"{flag} must be a boolean", flag, rule[flag])
        return result.extend(self.validate_revenue_rule_percentages(
            rule.get("admin_percent"),
            rule.get("team_percent"),
            rule.get("vendor_percent", 0),
        ))

    def validate_ledger_entry(self, entry: Dict[str, Any]) -> ValidationResult:
        result = ValidationResult()

        if not entry.get("project_id"):
            result.add(ValidationErrorType.REQUIRED_FIELD, "Project ID is required", "project_id")

        entry_types = [t.value for t in EntryType]
        if entry.get("type") not in entry_types:
            result.add(
                ValidationErrorType.INVALID_FORMAT,
                f"Invalid entry type. Valid types: {', '.join(entry_types)}",
                "type", entry.get("type")
            )

        result.extend(
            self.validate_field("party", entry.get("party")),
            self.validate_monetary_amount(entry.get("amount"), entry.get("currency")),
        )
        self._check_date(result, entry.get("date"), "date", "Date")

        status = entry.get("status")
        statuses = [s.value for s in EntryStatus]
        if status and status not in statuses:
            result.add(
                ValidationErrorType.INVALID_FORMAT,
                f"Invalid status. Valid statuses: {', '.join(statuses)}",
                "status", status
            )
        return result

    def validate_settlement(self, settlement: Dict[str, Any]) -> ValidationResult:
        result = self.validate_field("party", settlement.get("party"))

        entry_ids = settlement.get("ledger_entry_ids")
        if not isinstance(entry_ids, (list, tuple, set)) or len(entry_ids) == 0:
            result.add(
                ValidationErrorType.REQUIRED_FIELD,
                "At least one ledger entry ID is required",
                "ledger_entry_ids"
            )
        elif len(set(entry_ids)) != len(entry_ids):
            result.add(
                ValidationErrorType.BUSINESS_RULE_VIOLATION,
                "Ledger entry IDs must be unique",
                "ledger_entry_ids"
            )

        result.extend(self.validate_field("currency", settlement.get("currency")))
        self._check_date(result, settlement.get("settlement_date"), "settlement_date", "Settlement date")
        return result

    @staticmethod
    def _check_date(result: ValidationResult, value: Any, field_name: str, label: str):
        if not value:
            result.add(ValidationErrorType.REQUIRED_FIELD, f"{label} is required", field_name)
        elif not isinstance(value, datetime) and parse_datetime(value) is None:
            result.add(ValidationErrorType.INVALID_FORMAT, f"Invalid {label.lower()} format", field_name, value)

    @staticmethod
    def validate_currency_consistency(items: Iterable[Dict[str, Any]], currency_field: str = "currency") -> ValidationResult:
        result = ValidationResult()
        currencies = []
        for item in items or []:
            code = item.get(currency_field)
            if code and code not in currencies:
                currencies.append(code)
        if len(currencies) > 1:
            result.add(
                ValidationErrorType.CURRENCY_MISMATCH,
                f"Currency mismatch detected. Found currencies: {', '.join(currencies)}",
                currency_field, currencies
            )
        return result

    # =========================================================================
    # FORMAT / PARSE
    # =========================================================================

    @staticmethod
    def format_monetary_amount(amount: Any, currency: str, include_symbol: bool = False) -> str:
        spec = get_currency(currency)
        if spec is None:
            return str(amount)
        rounded = round_financial(amount, spec.decimals)
        if not include_symbol:
            return f"{rounded:f}"
        return f"{spec.symbol}{rounded:,.{spec.decimals}f}"

    def parse_monetary_amount(self, text: Any, currency: str) -> Result[Decimal]:
        """Strip symbols and separators, parse, then re-validate for the currency"""
        if _is_number(text):
            amount = text
        elif isinstance(text, str):
            cleaned = text.strip()
            for code in SUPPORTED_CURRENCIES:
                cleaned = re.sub(rf"\b{code}\b", "", cleaned, flags=re.IGNORECASE)
            for symbol in sorted({c.symbol for c in SUPPORTED_CURRENCIES.values()}, key=len, reverse=True):
                cleaned = cleaned.replace(symbol, "")
            cleaned = re.sub(r"[,\s]", "", cleaned)
            try:
                amount = Decimal(cleaned)
            except InvalidOperation:
                return Result.failure([ValidationIssue(
                    ValidationErrorType.INVALID_FORMAT, "Invalid amount format", "amount", text
                )])
        else:
            return Result.failure([ValidationIssue(
                ValidationErrorType.INVALID_TYPE, "Amount must be a number or string", "amount", text
            )])

        validation = self.validate_monetary_amount(amount, currency)
        if not validation.is_valid:
            return Result.from_validation(validation)
        return Result.success(to_decimal(amount))

    # =========================================================================
    # DATA INTEGRITY
    # =========================================================================

    def validate_data_integrity(
        self,
        ledger_entries: Optional[List[Dict[str, Any]]] = None,
        settlements: Optional[List[Dict[str, Any]]] = None,
        payments: Optional[List[Dict[str, Any]]] = None
    ) -> IntegrityReport:
        report = IntegrityReport()
        try:
            if ledger_entries is not None:
                report.add_check(self.validate_revenue_split_integrity(ledger_entries, payments))
                report.add_check(self.validate_balance_integrity(ledger_entries))
                if settlements is not None:
                    report.add_check(self.validate_settlement_integrity(settlements, ledger_entries))
        except (FinancialPrecisionError, KeyError, TypeError) as e:
            report.passed = False
            report.issues.append({
                "type": "integrity_check_error",
                "message": f"Data integrity check failed: {str(e)}",
                "severity": "high",
            })
        return report

    @staticmethod
    def validate_revenue_split_integrity(
        ledger_entries: List[Dict[str, Any]],
        payments: Optional[List[Dict[str, Any]]] = None
    ) -> IntegrityCheck:
        check = IntegrityCheck("revenue_split_integrity")
        by_payment: Dict[str, List[Dict[str, Any]]] = {}
        for entry in ledger_entries:
            if entry.get("payment_id"):
                by_payment.setdefault(entry["payment_id"], []).append(entry)
        payment_map = {p["id"]: p for p in payments or []}

        for payment_id, entries in by_payment.items():
            currencies = sorted({e["currency"] for e in entries})
            if len(currencies) > 1:
                check.fail({
                    "type": "currency_inconsistency",
                    "message": f"Payment {payment_id} has mixed currencies: {', '.join(currencies)}",
                    "payment_id": payment_id,
                    "currencies": currencies,
                    "severity": "medium",
                })

            payment = payment_map.get(payment_id)
            if payment is None:
                continue
            total = signed_total(entries)
            expected = to_decimal(payment["amount"])
            if abs(total - expected) > Decimal("0.01"):
                check.fail({
                    "type": "split_imbalance",
                    "message": f"Payment {payment_id} has unbalanced splits. Total: {total}, expected: {expected}",
                    "payment_id": payment_id,
                    "total_amount": float(total),
                    "expected_amount": float(expected),
                    "severity": "high",
                })
        return check

    @staticmethod
    def validate_balance_integrity(ledger_entries: List[Dict[str, Any]]) -> IntegrityCheck:
        check = IntegrityCheck("balance_integrity")
        balances: Dict[tuple, Decimal] = {}
        for entry in ledger_entries:
            key = (entry["party"], entry["currency"])
            balances[key] = balances.get(key, Decimal("0")) + signed_amount(entry["type"], entry["amount"])

        # Negative balances are reported but do not fail the check
        for (party, currency), net in balances.items():
            if net < Decimal("-0.01"):
                check.issues.append({
                    "type": "negative_balance",
                    "message": f"{party} has negative balance in {currency}: {net}",
                    "party": party,
                    "currency": currency,
                    "balance": float(net),
                    "severity": "medium",
                })
        return check

    @staticmethod
    def validate_settlement_integrity(
        settlements: List[Dict[str, Any]],
        ledger_entries: List[Dict[str, Any]]
    ) -> IntegrityCheck:
        check = IntegrityCheck("settlement_integrity")
        entry_map = {e["id"]: e for e in ledger_entries}

        for settlement in settlements:
            calculated = Decimal("0")
            currencies = set()
            for entry_id in settlement.get("ledger_entry_ids", []):
                entry = entry_map.get(entry_id)
                if entry is None:
                    check.fail({
                        "type": "missing_ledger_entry",
                        "message": f"Settlement {settlement['id']} references non-existent ledger entry {entry_id}",
                        "settlement_id": settlement["id"],
                        "entry_id": entry_id,
                        "severity": "high",
                    })
                    continue
                if entry["party"] != settlement["party"]:
                    check.fail({
                        "type": "party_mismatch",
                        "message": f"Settlement {settlement['id']} includes entry for different party",
                        "settlement_id": settlement["id"],
                        "entry_id": entry_id,
                        "settlement_party": settlement["party"],
                        "entry_party": entry["party"],
                        "severity": "high",
                    })
                currencies.add(entry["currency"])
                calculated += signed_amount(entry["type"], entry["amount"])

            if abs(calculated - to_decimal(settlement["total_amount"])) > Decimal("0.01"):
                check.fail({
                    "type": "settlement_amount_mismatch",
                    "message": f"Settlement {settlement['id']} total amount mismatch",
                    "settlement_id": settlement["id"],
                    "expected_total": float(calculated),
                    "actual_total": settlement["total_amount"],
                    "severity": "high",
                })
            if len(currencies) > 1:
                check.fail({
                    "type": "settlement_currency_mismatch",
                    "message": f"Settlement {settlement['id']} includes multiple currencies",
                    "settlement_id": settlement["id"],
                    "currencies": sorted(currencies),
                    "severity": "medium",
                })
        return check
