"""
Escrow Settlement Engine - Database Schema
==========================================

Schema for the contract / escrow / referral core:
- Users with membership and referral credit state
- Jobs whose budget is split across worker contracts
- Contracts with pairing, extension and soft-delete tracking
- Gateway-backed payments held in escrow until release
- Referral chains with exactly-once reward tiers
- Signed, append-only audit trail

All money columns hold integer minor units next to a 3-letter currency code.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON, text
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back timezone-aware UTC on every backend"""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class MembershipTier(Enum):
    """Paid membership levels"""
    FREE = "free"
    PRO = "pro"
    SUPER_PRO = "super_pro"


class ContractStatus(Enum):
    """Contract lifecycle states"""
    DRAFT = "draft"
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class EscrowState(Enum):
    """Escrow hold state mirrored on the contract"""
    PENDING = "pending"
    HELD_ESCROW = "held_escrow"
    RELEASED = "released"
    REFUNDED = "refunded"


class PaymentStatus(Enum):
    """Payment ledger states"""
    PENDING = "pending"
    HELD_ESCROW = "held_escrow"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentType(Enum):
    CONTRACT_PAYMENT = "contract_payment"
    EXTENSION_TOPUP = "extension_topup"


class PaymentProvider(Enum):
    PAYPAL = "paypal"
    MERCADOPAGO = "mercadopago"


class ReferralStatus(Enum):
    REGISTERED = "registered"
    COMPLETED = "completed"
    CREDITED = "credited"


class RewardType(Enum):
    """Referrer reward per tier"""
    TWO_FREE = "two_free"
    ONE_FREE = "one_free"
    REDUCED_COMMISSION = "reduced_commission"


class AuditSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditCategory(Enum):
    CONTRACT = "contract"
    PAYMENT = "payment"
    ESCROW = "escrow"
    REFERRAL = "referral"
    USER = "user"
    SYSTEM = "system"


def _values(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


# ============================================================================
# CORE MODELS
# ============================================================================

class User(Base):
    """Marketplace user with commission and referral credit state"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    identity_verified = Column(Boolean, default=False, nullable=False)

    # Membership / commission
    membership_tier = Column(String(20), default=MembershipTier.FREE.value, nullable=False)
    has_family_plan = Column(Boolean, default=False, nullable=False)
    free_contracts_remaining = Column(Integer, default=0, nullable=False)
    current_commission_rate = Column(Numeric(5, 2), nullable=True)
    monthly_contracts_used = Column(Integer, default=0, nullable=False)
    monthly_contracts_reset_at = Column(UTCDateTime, nullable=True)

    # Referral program
    referral_code = Column(String(16), unique=True, nullable=True, index=True)
    referred_by_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    is_early_user = Column(Boolean, default=False, nullable=False)
    total_referrals = Column(Integer, default=0, nullable=False)
    completed_referrals = Column(Integer, default=0, nullable=False)
    referral_rewards_granted = Column(Integer, default=0, nullable=False)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('free_contracts_remaining >= 0', name='ck_users_free_credits_non_negative'),
        CheckConstraint('referral_rewards_granted BETWEEN 0 AND 3', name='ck_users_reward_tier_range'),
    )


class Job(Base):
    """A unit of paid work whose budget is split across worker contracts"""
    __tablename__ = 'jobs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    requester_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    price = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    max_workers = Column(Integer, default=1, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('price > 0', name='ck_jobs_price_positive'),
    )


class Contract(Base):
    """Agreement between a requester and one worker for (part of) a job"""
    __tablename__ = 'contracts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey('jobs.id'), nullable=False, index=True)
    requester_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    worker_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    # Pricing (minor units)
    currency = Column(String(3), nullable=False)
    base_price = Column(BigInteger, nullable=False)
    commission = Column(BigInteger, nullable=False, default=0)
    total_price = Column(BigInteger, nullable=False)
    commission_rate = Column(Numeric(5, 2), nullable=False)
    consumed_free_credit = Column(Boolean, default=False, nullable=False)

    status = Column(String(20), default=ContractStatus.DRAFT.value, nullable=False, index=True)
    previous_status = Column(String(20), nullable=True)
    start_date = Column(UTCDateTime, nullable=True)
    end_date = Column(UTCDateTime, nullable=True)

    # Escrow mirror
    escrow_enabled = Column(Boolean, default=True, nullable=False)
    escrow_amount = Column(BigInteger, default=0, nullable=False)
    escrow_status = Column(String(20), default=EscrowState.PENDING.value, nullable=False)
    escrow_payment_id = Column(Integer, nullable=True)

    # Pairing
    pairing_code = Column(String(6), nullable=True, index=True)
    pairing_generated_at = Column(UTCDateTime, nullable=True)
    pairing_expiry = Column(UTCDateTime, nullable=True)
    requester_confirmed_pairing = Column(Boolean, default=False, nullable=False)
    requester_confirmed_pairing_at = Column(UTCDateTime, nullable=True)
    worker_confirmed_pairing = Column(Boolean, default=False, nullable=False)
    worker_confirmed_pairing_at = Column(UTCDateTime, nullable=True)

    # Sign-off for contracts without escrow
    requester_signed_off = Column(Boolean, default=False, nullable=False)
    worker_signed_off = Column(Boolean, default=False, nullable=False)

    # Completion
    requester_confirmed = Column(Boolean, default=False, nullable=False)
    requester_confirmed_at = Column(UTCDateTime, nullable=True)
    worker_confirmed = Column(Boolean, default=False, nullable=False)
    worker_confirmed_at = Column(UTCDateTime, nullable=True)
    work_completed_at = Column(UTCDateTime, nullable=True, index=True)
    completed_at = Column(UTCDateTime, nullable=True)
    escrow_released = Column(Boolean, default=False, nullable=False)
    escrow_released_at = Column(UTCDateTime, nullable=True)
    escrow_auto_released = Column(Boolean, default=False, nullable=False)

    # Automation bookkeeping
    approval_reminder_sent = Column(Boolean, default=False, nullable=False)
    approval_reminder_sent_at = Column(UTCDateTime, nullable=True)
    overdue_notified_at = Column(UTCDateTime, nullable=True)
    auto_release_claimed_by = Column(String(64), nullable=True)
    auto_release_claimed_at = Column(UTCDateTime, nullable=True)

    # Extensions
    extension_count = Column(Integer, default=0, nullable=False)
    extension_history = Column(JSON, default=list, nullable=False)
    pending_extension_days = Column(Integer, nullable=True)
    pending_new_price = Column(BigInteger, nullable=True)
    extension_requested_by = Column(Integer, nullable=True)
    extension_requested_at = Column(UTCDateTime, nullable=True)

    # Multi-worker allocation
    allocated_amount = Column(BigInteger, nullable=True)
    percentage_of_budget = Column(Numeric(5, 2), nullable=True)

    # Disputes
    disputed_at = Column(UTCDateTime, nullable=True)
    disputed_by = Column(Integer, nullable=True)
    dispute_reason = Column(Text, nullable=True)
    dispute_resolved_at = Column(UTCDateTime, nullable=True)
    dispute_resolution = Column(String(20), nullable=True)

    # Cancellation
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancelled_by = Column(Integer, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Soft delete
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)
    deleted_at = Column(UTCDateTime, nullable=True)
    deleted_by = Column(Integer, nullable=True)
    deletion_reason = Column(Text, nullable=True)

    version = Column(Integer, default=1, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('total_price = base_price + commission', name='ck_contracts_total_price'),
        CheckConstraint('base_price >= 0', name='ck_contracts_base_price_non_negative'),
        CheckConstraint('commission >= 0', name='ck_contracts_commission_non_negative'),
        CheckConstraint(f'status IN ({_values(ContractStatus)})', name='ck_contracts_status'),
        CheckConstraint(f'escrow_status IN ({_values(EscrowState)})', name='ck_contracts_escrow_status'),
        Index('ix_contracts_status_work_completed', 'status', 'work_completed_at'),
        Index('ix_contracts_status_end_date', 'status', 'end_date'),
    )


class Payment(Base):
    """Gateway-backed money movement tied to a contract"""
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    contract_id = Column(Integer, ForeignKey('contracts.id'), nullable=False, index=True)
    payer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    platform_fee = Column(BigInteger, default=0, nullable=False)
    worker_payment_amount = Column(BigInteger, nullable=True)

    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    payment_type = Column(String(20), default=PaymentType.CONTRACT_PAYMENT.value, nullable=False)
    is_escrow = Column(Boolean, default=True, nullable=False)

    # Gateway references
    provider = Column(String(20), nullable=False)
    gateway_order_id = Column(String(128), unique=True, nullable=True)
    gateway_capture_id = Column(String(128), nullable=True)
    gateway_payer_id = Column(String(128), nullable=True)
    gateway_payer_email = Column(String(255), nullable=True)
    approval_url = Column(Text, nullable=True)

    captured_at = Column(UTCDateTime, nullable=True)
    paid_at = Column(UTCDateTime, nullable=True)

    escrow_released_at = Column(UTCDateTime, nullable=True)
    escrow_released_by = Column(String(64), nullable=True)
    escrow_auto_released = Column(Boolean, default=False, nullable=False)

    refund_id = Column(String(128), nullable=True)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(UTCDateTime, nullable=True)
    refunded_by = Column(String(64), nullable=True)

    failure_reason = Column(Text, nullable=True)
    failed_at = Column(UTCDateTime, nullable=True)

    version = Column(Integer, default=1, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
        CheckConstraint('platform_fee >= 0', name='ck_payments_fee_non_negative'),
        CheckConstraint(f'status IN ({_values(PaymentStatus)})', name='ck_payments_status'),
        Index('ix_payments_contract_status', 'contract_id', 'status'),
        Index('ix_payments_status_created', 'status', 'created_at'),
        # at most one open order per contract and payment type
        Index('ux_payments_one_pending_order', 'contract_id', 'payment_type', unique=True,
              postgresql_where=text("status = 'pending'"), sqlite_where=text("status = 'pending'")),
    )


class Referral(Base):
    """One referrer -> referred user link"""
    __tablename__ = 'referrals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    referrer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    referred_user_id = Column(Integer, ForeignKey('users.id'), nullable=False, unique=True)
    referral_code = Column(String(16), nullable=False)
    status = Column(String(20), default=ReferralStatus.REGISTERED.value, nullable=False)
    registered_at = Column(UTCDateTime, default=utcnow, nullable=False)
    first_contract_completed_at = Column(UTCDateTime, nullable=True)
    reward_granted = Column(Boolean, default=False, nullable=False)
    reward_type = Column(String(30), nullable=True)
    reward_tier = Column(Integer, nullable=True)
    reward_granted_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('referrer_id', 'reward_tier', name='uq_referrals_referrer_reward_tier'),
        CheckConstraint('reward_tier IS NULL OR reward_tier BETWEEN 1 AND 3', name='ck_referrals_reward_tier'),
        Index('ix_referrals_referrer_status', 'referrer_id', 'status'),
    )


class AuditLog(Base):
    """Signed, append-only audit trail"""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    performed_by = Column(String(64), nullable=False, index=True)
    action = Column(String(64), nullable=False, index=True)
    category = Column(String(20), nullable=False)
    severity = Column(String(10), default=AuditSeverity.LOW.value, nullable=False)
    target_model = Column(String(50), nullable=False)
    target_id = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    changes = Column(JSON, nullable=True)
    extra_data = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    signature = Column(String(64), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('ix_audit_logs_target', 'target_model', 'target_id'),
        Index('ix_audit_logs_severity_created', 'severity', 'created_at'),
    )


class DistributedLock(Base):
    """Database-backed distributed lock with atomic guarantees"""
    __tablename__ = 'distributed_locks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lock_name = Column(String(255), unique=True, nullable=False)
    locked_by = Column(String(255), nullable=True)
    locked_at = Column(UTCDateTime, default=utcnow, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    lock_metadata = Column('metadata', JSON, nullable=True)

    __table_args__ = (
        Index('ix_distributed_locks_expires_at', 'expires_at'),
    )
