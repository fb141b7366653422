"""
REVENUE SPLIT CALCULATOR

Converts a payment amount and a revenue rule into per-party shares.

1. Each share = amount x percent / 100, rounded ROUND_HALF_UP to the
   currency precision
2. The rounding residual (amount - sum of shares) goes to the admin share,
   so shares always sum exactly to the amount
3. Vendor share is present only when vendor_percent > 0
"""

from decimal import Decimal
from typing import Any, Dict, Optional, Union
import logging

from .financial_precision import calculate_percentage, round_financial, to_decimal
from .models import RevenueRule, RevenueSplit, SplitShare
from .validation_engine import (
    Result,
    ValidationEngine,
    ValidationErrorType,
    ValidationIssue,
    get_currency,
)

logger = logging.getLogger(__name__)


class RevenueSplitCalculator:

    def __init__(self, validator: Optional[ValidationEngine] = None):
        self.validator = validator or ValidationEngine()

    def calculate_split(
        self,
        amount: Any,
        currency: str,
        rule: Union[RevenueRule, Dict[str, Any], None]
    ) -> Result[RevenueSplit]:
        if rule is None:
            return Result.failure([ValidationIssue(
                ValidationErrorType.REQUIRED_FIELD, "Revenue rule is required", "rule"
            )])
        if isinstance(rule, RevenueRule):
            rule = rule.model_dump()

        validation = self.validator.validate_monetary_amount(amount, currency)
        validation.extend(self.validator.validate_revenue_rule_percentages(
            rule.get("admin_percent"),
            rule.get("team_percent"),
            rule.get("vendor_percent", 0) or 0,
        ))
        if not validation.is_valid:
            logger.warning(
                f"[SPLIT] Rejected split of {amount} {currency}: "
                f"{'; '.join(e.message for e in validation.errors)}"
            )
            return Result.from_validation(validation)

        code = currency.upper()
        decimals = get_currency(code).decimals
        total = to_decimal(amount)

        admin = round_financial(calculate_percentage(total, rule["admin_percent"]), decimals)
        team = round_financial(calculate_percentage(total, rule["team_percent"]), decimals)
        vendor_percent = to_decimal(rule.get("vendor_percent", 0) or 0)
        vendor = (
            round_financial(calculate_percentage(total, vendor_percent), decimals)
            if vendor_percent > 0 else Decimal("0")
        )

        residual = total - (admin + team + vendor)
        if residual != 0:
            logger.debug(f"[SPLIT] Residual {residual} {code} assigned to admin share")
        admin += residual

        split = RevenueSplit(
            admin=SplitShare(amount=float(admin), currency=code),
            team=SplitShare(amount=float(team), currency=code),
            vendor=SplitShare(amount=float(vendor), currency=code) if vendor_percent > 0 else None,
        )
        return Result.success(split)
