"""
Referral Reward Ledger
Referral chains with reward tiers applied exactly once per referrer, in order 1 -> 2 -> 3
"""

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import (
    AuditCategory, AuditSeverity, Referral, ReferralStatus, RewardType, User, utcnow
)
from services.audit_trail_service import AuditTrailService
from utils.atomic_transactions import atomic_transaction, locked_row
from utils.db_advisory_locks import DBAdvisoryLockService, advisory_locks
from utils.exceptions import (
    DuplicateReferral, InvalidReferralCode, NotFound, ReferralCapReached
)
from utils.optimistic_locking import guarded_update

logger = logging.getLogger(__name__)

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8


@dataclass(frozen=True)
class ReferralReward:
    referrer_id: int
    referral_id: int
    tier: int
    reward_type: str
    free_contracts_added: int
    commission_rate: Optional[Decimal]


class ReferralService:
    """Registration, completion tracking and tiered rewards for referrers"""

    # tier -> (reward type, free contracts credited)
    REWARD_TIERS = {
        1: (RewardType.TWO_FREE.value, 2),
        2: (RewardType.ONE_FREE.value, 1),
        3: (RewardType.REDUCED_COMMISSION.value, 0),
    }

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 audit: Optional[AuditTrailService] = None,
                 locks: Optional[DBAdvisoryLockService] = None):
        self.session_factory = session_factory
        self.audit = audit or AuditTrailService(session_factory=session_factory)
        self.locks = locks or advisory_locks

    @staticmethod
    def normalize_code(code: Optional[str]) -> str:
        return (code or "").strip().upper()

    def generate_referral_code(self, user_id: int, session: Optional[Session] = None) -> str:
        """Assign a unique uppercase code to a user that has none"""
        with atomic_transaction(session, self.session_factory) as s:
            user = locked_row(s, User, user_id)
            if user.referral_code:
                return user.referral_code
            while True:
                code = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
                if not s.query(User.id).filter(User.referral_code == code).first():
                    break
            user.referral_code = code
            s.flush()
            return code

    def validate_referral_code(self, code: str, session: Optional[Session] = None) -> Dict[str, Any]:
        """Check a code can still accept referrals"""
        normalized = self.normalize_code(code)
        with atomic_transaction(session, self.session_factory) as s:
            referrer = s.query(User).filter(User.referral_code == normalized).first()
            if not normalized or referrer is None:
                raise InvalidReferralCode(f"Unknown referral code {normalized!r}")
            used = s.query(func.count(Referral.id)).filter(Referral.referrer_id == referrer.id).scalar()
            return {
                "referrer_id": referrer.id,
                "referral_code": normalized,
                "referrals_used": used,
                "referrals_remaining": max(0, Config.MAX_REFERRALS_PER_USER - used),
                "accepting": used < Config.MAX_REFERRALS_PER_USER,
            }

    def register_referral(self, referral_code: str, referred_user_id: int,
                          now: Optional[datetime] = None,
                          session: Optional[Session] = None) -> Referral:
        current = now or utcnow()
        normalized = self.normalize_code(referral_code)

        with atomic_transaction(session, self.session_factory) as s:
            referrer = s.query(User).filter(User.referral_code == normalized).first()
            if not normalized or referrer is None:
                raise InvalidReferralCode(f"Unknown referral code {normalized!r}")
            if referrer.id == referred_user_id:
                raise InvalidReferralCode("Users cannot refer themselves")

            self.locks.referrer_lock(s, referrer.id)
            referrer = locked_row(s, User, referrer.id)
            referred = locked_row(s, User, referred_user_id)

            already = s.query(Referral.id).filter(Referral.referred_user_id == referred_user_id).first()
            if already is not None or referred.referred_by_id is not None:
                raise DuplicateReferral(f"User {referred_user_id} was already referred")

            used = s.query(func.count(Referral.id)).filter(Referral.referrer_id == referrer.id).scalar()
            if used >= Config.MAX_REFERRALS_PER_USER:
                logger.info(f"REFERRAL_CAP_REACHED: referrer={referrer.id} used={used}")
                raise ReferralCapReached(
                    f"Referrer {referrer.id} already has {used} referrals "
                    f"(max {Config.MAX_REFERRALS_PER_USER})"
                )

            referral = Referral(
                referrer_id=referrer.id,
                referred_user_id=referred_user_id,
                referral_code=normalized,
                status=ReferralStatus.REGISTERED.value,
                registered_at=current,
            )
            try:
                with s.begin_nested():
                    s.add(referral)
                    s.flush()
            except IntegrityError as e:
                raise DuplicateReferral(f"User {referred_user_id} was already referred") from e

            referred.referred_by_id = referrer.id
            referrer.total_referrals = (referrer.total_referrals or 0) + 1
            signup_credits = 0
            if referred.is_early_user:
                signup_credits = Config.EARLY_USER_SIGNUP_CREDITS
                referred.free_contracts_remaining = (referred.free_contracts_remaining or 0) + signup_credits
            s.flush()

            self.audit.record(
                s,
                performed_by=referred_user_id,
                action="referral_registered",
                category=AuditCategory.REFERRAL.value,
                target_model="Referral",
                target_id=referral.id,
                description=f"User {referred_user_id} registered with code {normalized}",
                extra_data={"referrer_id": referrer.id, "signup_credits": signup_credits},
                now=current,
            )
            logger.info(
                f"REFERRAL_REGISTERED: referrer={referrer.id} referred={referred_user_id} "
                f"slot={used + 1}/{Config.MAX_REFERRALS_PER_USER}"
            )
            return referral

    def mark_first_contract_completed(self, user_id: int, now: Optional[datetime] = None,
                                      session: Optional[Session] = None) -> Optional[ReferralReward]:
        """Called whenever a user completes a contract; only the first completion counts"""
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            referral = s.query(Referral).filter(
                Referral.referred_user_id == user_id,
                Referral.status == ReferralStatus.REGISTERED.value,
            ).first()
            if referral is None:
                return None

            moved = guarded_update(
                s, Referral, referral.id,
                expected_status=ReferralStatus.REGISTERED.value,
                values={
                    "status": ReferralStatus.COMPLETED.value,
                    "first_contract_completed_at": current,
                },
            )
            if not moved:
                return None
            logger.info(f"REFERRAL_COMPLETED: referral={referral.id} referred={user_id}")
            return self.grant_referrer_reward(referral.referrer_id, referral_id=referral.id, now=current, session=s)

    def grant_referrer_reward(self, referrer_id: int, referral_id: Optional[int] = None,
                              now: Optional[datetime] = None,
                              session: Optional[Session] = None) -> Optional[ReferralReward]:
        """
        Grant the next tier for one completed referral.

        The tier comes from the referrer's reward count read under the
        per-referrer lock, before this referral is counted.
        """
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            self.locks.referrer_lock(s, referrer_id)
            referrer = locked_row(s, User, referrer_id)

            query = s.query(Referral).filter(
                Referral.referrer_id == referrer_id,
                Referral.status == ReferralStatus.COMPLETED.value,
                Referral.reward_granted.is_(False),
            )
            if referral_id is not None:
                query = query.filter(Referral.id == referral_id)
            referral = query.order_by(Referral.first_contract_completed_at.asc(), Referral.id.asc()).first()
            if referral is None:
                logger.debug(f"REFERRAL_REWARD_SKIPPED: referrer={referrer_id} nothing to credit")
                return None

            prior_rewards = referrer.referral_rewards_granted or 0
            tier = prior_rewards + 1
            if tier not in self.REWARD_TIERS:
                logger.warning(f"⚠️ REFERRAL_REWARD_EXHAUSTED: referrer={referrer_id} tier={tier}")
                return None

            reward_type, free_contracts = self.REWARD_TIERS[tier]
            before = {
                "free_contracts_remaining": referrer.free_contracts_remaining,
                "current_commission_rate": referrer.current_commission_rate,
                "referral_rewards_granted": prior_rewards,
            }

            new_rate = None
            if free_contracts:
                referrer.free_contracts_remaining = (referrer.free_contracts_remaining or 0) + free_contracts
            else:
                reduced = Config.REFERRAL_REDUCED_COMMISSION_RATE
                existing = referrer.current_commission_rate
                new_rate = reduced if existing is None else min(Decimal(existing), reduced)
                referrer.current_commission_rate = new_rate

            referrer.referral_rewards_granted = tier
            referrer.completed_referrals = (referrer.completed_referrals or 0) + 1
            referral.status = ReferralStatus.CREDITED.value
            referral.reward_granted = True
            referral.reward_type = reward_type
            referral.reward_tier = tier
            referral.reward_granted_at = current
            s.flush()

            after = {
                "free_contracts_remaining": referrer.free_contracts_remaining,
                "current_commission_rate": referrer.current_commission_rate,
                "referral_rewards_granted": tier,
            }
            self.audit.record(
                s,
                performed_by="system",
                action="commission_rate_changed" if new_rate is not None else "referral_reward_granted",
                category=AuditCategory.REFERRAL.value,
                severity=AuditSeverity.MEDIUM.value,
                target_model="User",
                target_id=referrer_id,
                description=f"Referral tier {tier} reward {reward_type} for referral {referral.id}",
                changes=self.audit.diff(before, after),
                extra_data={"referral_id": referral.id, "tier": tier},
                now=current,
            )
            logger.info(f"✅ REFERRAL_REWARD_GRANTED: referrer={referrer_id} tier={tier} type={reward_type}")
            return ReferralReward(
                referrer_id=referrer_id,
                referral_id=referral.id,
                tier=tier,
                reward_type=reward_type,
                free_contracts_added=free_contracts,
                commission_rate=new_rate,
            )

    def get_referral_stats(self, user_id: int, session: Optional[Session] = None) -> Dict[str, Any]:
        with atomic_transaction(session, self.session_factory) as s:
            user = s.get(User, user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            referrals = (
                s.query(Referral)
                .filter(Referral.referrer_id == user_id)
                .order_by(Referral.registered_at.asc(), Referral.id.asc())
                .all()
            )
            return {
                "user_id": user_id,
                "referral_code": user.referral_code,
                "total_referrals": len(referrals),
                "completed_referrals": sum(
                    1 for r in referrals if r.status != ReferralStatus.REGISTERED.value
                ),
                "rewards_granted": user.referral_rewards_granted or 0,
                "referrals_remaining": max(0, Config.MAX_REFERRALS_PER_USER - len(referrals)),
                "free_contracts_remaining": user.free_contracts_remaining,
                "current_commission_rate": user.current_commission_rate,
                "referrals": [
                    {
                        "referral_id": r.id,
                        "referred_user_id": r.referred_user_id,
                        "status": r.status,
                        "reward_tier": r.reward_tier,
                        "reward_type": r.reward_type,
                    }
                    for r in referrals
                ],
            }
