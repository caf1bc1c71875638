"""
Tests for contract pricing rules
"""

from decimal import Decimal

import pytest

from models import MembershipTier
from utils.commission_calculator import CommissionCalculator
from utils.money import CommissionRate, Money


def ars(amount: int) -> Money:
    return Money(amount, "ARS")


class TestCommissionCalculation:
    """Precedence: family plan, free credit, then the cheapest applicable rate"""

    def test_default_platform_rate(self):
        quote = CommissionCalculator.calculate(ars(10000))

        assert quote.commission == ars(500)
        assert quote.total_price == ars(10500)
        assert quote.effective_rate.value == Decimal("5.00")
        assert quote.consumed_free_credit is False
        assert quote.tier_description == "platform_default"

    def test_free_credit_zeroes_commission_and_consumes_one(self):
        quote = CommissionCalculator.calculate(ars(10000), free_contracts_remaining=1)

        assert quote.commission == ars(0)
        assert quote.total_price == ars(10000)
        assert quote.consumed_free_credit is True
        assert quote.free_contracts_remaining_after == 0

    def test_family_plan_keeps_free_credits(self):
        quote = CommissionCalculator.calculate(ars(10000), free_contracts_remaining=2, has_family_plan=True)

        assert quote.commission == ars(0)
        assert quote.consumed_free_credit is False
        assert quote.free_contracts_remaining_after == 2

    def test_referral_reduced_rate_applies(self):
        quote = CommissionCalculator.calculate(ars(10000), current_commission_rate=Decimal("3.00"))

        assert quote.commission == ars(300)
        assert quote.tier_description == "referral_reduced_rate"

    def test_membership_rate_within_monthly_quota(self):
        quote = CommissionCalculator.calculate(
            ars(10000), membership_tier=MembershipTier.SUPER_PRO.value, monthly_contracts_used=0
        )
        assert quote.commission == ars(200)
        assert quote.counts_towards_monthly_quota is True

    def test_membership_rate_after_quota_falls_back(self):
        quote = CommissionCalculator.calculate(
            ars(10000), membership_tier=MembershipTier.PRO.value, monthly_contracts_used=3
        )
        assert quote.commission == ars(500)
        assert quote.counts_towards_monthly_quota is False

    def test_cheapest_rate_wins(self):
        quote = CommissionCalculator.calculate(
            ars(10000),
            membership_tier=MembershipTier.PRO.value,
            current_commission_rate=Decimal("2.50"),
        )
        assert quote.effective_rate.value == Decimal("2.50")

    @pytest.mark.parametrize("base", [1, 19, 1010, 99999, 10_000_000])
    def test_total_is_base_plus_commission(self, base):
        quote = CommissionCalculator.calculate(ars(base))
        assert quote.total_price.amount == quote.base_price.amount + quote.commission.amount

    def test_commission_is_monotonic_in_price(self):
        commissions = [CommissionCalculator.calculate(ars(base)).commission.amount for base in range(0, 5000, 7)]
        assert commissions == sorted(commissions)


class TestFixedRateAndSettlement:

    def test_at_rate_reprices_with_stored_rate(self):
        quote = CommissionCalculator.at_rate(ars(15000), Decimal("5.00"))
        assert quote.commission == ars(750)
        assert quote.total_price == ars(15750)
        assert quote.tier_description == "fixed_rate"

    def test_at_rate_zero_for_free_contract(self):
        quote = CommissionCalculator.at_rate(ars(15000), CommissionRate(Decimal("0")))
        assert quote.commission == ars(0)

    def test_settlement_split(self):
        split = CommissionCalculator.settlement_split(ars(10500), ars(500))
        assert split.worker_payout == ars(10000)
        assert split.platform_fee == ars(500)
