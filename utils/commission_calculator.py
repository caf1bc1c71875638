"""Commission and reward calculation for contract pricing"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from config import Config
from models import MembershipTier
from utils.money import CommissionRate, Money

logger = logging.getLogger(__name__)

ZERO_RATE = CommissionRate(Decimal("0"))


@dataclass(frozen=True)
class CommissionQuote:
    """Priced contract: what the requester pays on top of the base price"""

    base_price: Money
    commission: Money
    total_price: Money
    effective_rate: CommissionRate
    consumed_free_credit: bool
    free_contracts_remaining_after: int
    counts_towards_monthly_quota: bool
    tier_description: str


@dataclass(frozen=True)
class SettlementSplit:
    worker_payout: Money
    platform_fee: Money


class CommissionCalculator:
    """
    Pure pricing rules, no I/O.

    Order of precedence:
      1. family plan -> 0%
      2. free contract credit -> 0%, one credit consumed (reported, not applied)
      3. cheapest of: platform default, membership tier rate while the monthly
         discounted quota lasts, permanent per-user rate (referral tier 3)
    """

    @classmethod
    def platform_rate(cls) -> CommissionRate:
        return CommissionRate(Config.PLATFORM_COMMISSION_RATE)

    @classmethod
    def membership_rate(cls, membership_tier: Optional[str]) -> Optional[CommissionRate]:
        if membership_tier == MembershipTier.PRO.value:
            return CommissionRate(Config.PRO_COMMISSION_RATE)
        if membership_tier == MembershipTier.SUPER_PRO.value:
            return CommissionRate(Config.SUPER_PRO_COMMISSION_RATE)
        return None

    @classmethod
    def calculate(
        cls,
        base_price: Money,
        membership_tier: Optional[str] = MembershipTier.FREE.value,
        free_contracts_remaining: int = 0,
        current_commission_rate: Union[Decimal, str, None] = None,
        has_family_plan: bool = False,
        monthly_contracts_used: int = 0,
    ) -> CommissionQuote:
        free_remaining = max(0, int(free_contracts_remaining or 0))

        if has_family_plan:
            return cls._zero_quote(base_price, free_remaining, consumed=False, description="family_plan")

        if free_remaining > 0:
            return cls._zero_quote(
                base_price, free_remaining - 1, consumed=True, description="free_contract_credit"
            )

        rate = cls.platform_rate()
        description = "platform_default"
        counts_towards_quota = False

        tier_rate = cls.membership_rate(membership_tier)
        quota = Config.MEMBERSHIP_MONTHLY_DISCOUNTED_CONTRACTS
        if tier_rate is not None and monthly_contracts_used < quota and tier_rate < rate:
            rate = tier_rate
            description = f"membership_{membership_tier}"
            counts_towards_quota = True

        personal_rate = CommissionRate.of(current_commission_rate)
        if personal_rate is not None and personal_rate < rate:
            rate = personal_rate
            description = "referral_reduced_rate"
            counts_towards_quota = False

        commission = base_price.percentage(rate)
        return CommissionQuote(
            base_price=base_price,
            commission=commission,
            total_price=base_price + commission,
            effective_rate=rate,
            consumed_free_credit=False,
            free_contracts_remaining_after=free_remaining,
            counts_towards_monthly_quota=counts_towards_quota,
            tier_description=description,
        )

    @classmethod
    def quote_for_user(cls, user, base_price: Money) -> CommissionQuote:
        """Read pricing inputs off a user row"""
        return cls.calculate(
            base_price,
            membership_tier=user.membership_tier,
            free_contracts_remaining=user.free_contracts_remaining,
            current_commission_rate=user.current_commission_rate,
            has_family_plan=user.has_family_plan,
            monthly_contracts_used=user.monthly_contracts_used,
        )

    @classmethod
    def at_rate(cls, base_price: Money, rate: Union[CommissionRate, Decimal]) -> CommissionQuote:
        """Reprice at a fixed rate, e.g. an extension keeps the contract's original rate"""
        commission_rate = CommissionRate.of(rate)
        commission = base_price.percentage(commission_rate)
        return CommissionQuote(
            base_price=base_price,
            commission=commission,
            total_price=base_price + commission,
            effective_rate=commission_rate,
            consumed_free_credit=False,
            free_contracts_remaining_after=0,
            counts_towards_monthly_quota=False,
            tier_description="fixed_rate",
        )

    @staticmethod
    def settlement_split(payment_amount: Money, platform_fee: Money) -> SettlementSplit:
        """Worker receives the held amount minus the platform fee"""
        return SettlementSplit(worker_payout=payment_amount - platform_fee, platform_fee=platform_fee)

    @staticmethod
    def _zero_quote(base_price: Money, remaining_after: int, consumed: bool, description: str) -> CommissionQuote:
        return CommissionQuote(
            base_price=base_price,
            commission=Money.zero(base_price.currency),
            total_price=base_price,
            effective_rate=ZERO_RATE,
            consumed_free_credit=consumed,
            free_contracts_remaining_after=remaining_after,
            counts_towards_monthly_quota=False,
            tier_description=description,
        )
