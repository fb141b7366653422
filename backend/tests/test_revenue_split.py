"""
Tests for ledger_core.revenue_split.
"""
from decimal import Decimal

import pytest

from ledger_core import RevenueRule


def _rule(admin, team, vendor=0.0):
    return RevenueRule(rule_name="Test Rule", admin_percent=admin, team_percent=team, vendor_percent=vendor)


class TestRevenueSplit:

    def test_simple_two_way_split(self, calculator):
        split = calculator.calculate_split(100, "USD", _rule(40, 60)).unwrap()
        assert split.admin.amount == 40.0
        assert split.team.amount == 60.0
        assert split.vendor is None
        assert set(split.shares()) == {"admin", "team"}

    def test_residual_goes_to_admin(self, calculator):
        split = calculator.calculate_split(99.99, "USD", _rule(33, 33, 34)).unwrap()
        assert split.team.amount == 33.0
        assert split.vendor.amount == 34.0
        assert split.admin.amount == 32.99

    @pytest.mark.parametrize("amount,rule", [
        (100.01, (33.33, 33.33, 33.34)),
        (0.07, (40, 60, 0)),
        (1234.56, (12.5, 50, 37.5)),
        (10, (33.33, 33.33, 33.34)),
    ])
    def test_shares_sum_to_amount(self, calculator, amount, rule):
        split = calculator.calculate_split(amount, "USD", _rule(*rule)).unwrap()
        total = sum(Decimal(str(s.amount)) for s in split.shares().values())
        assert total == Decimal(str(amount))

    def test_zero_decimal_currency(self, calculator):
        split = calculator.calculate_split(1001, "JPY", _rule(33.33, 33.33, 33.34)).unwrap()
        assert split.team.amount == 334.0
        assert split.vendor.amount == 334.0
        assert split.admin.amount == 333.0
        assert split.admin.currency == "JPY"

    def test_currency_normalised(self, calculator):
        split = calculator.calculate_split(50, "eur", _rule(40, 60)).unwrap()
        assert split.team.currency == "EUR"

    def test_accepts_plain_dict_rule(self, calculator):
        split = calculator.calculate_split(10, "USD", {"admin_percent": 50, "team_percent": 50})
        assert split.ok

    @pytest.mark.parametrize("amount,currency,rule", [
        (0, "USD", _rule(40, 60)),
        (-10, "USD", _rule(40, 60)),
        (100, "XYZ", _rule(40, 60)),
        (100, "USD", _rule(40, 50)),
        (100, "USD", None),
    ])
    def test_invalid_inputs_return_failed_result(self, calculator, amount, currency, rule):
        result = calculator.calculate_split(amount, currency, rule)
        assert not result.ok
        assert result.errors
