"""
Contract and Payment State Transition Validators
===============================================

Single source of truth for which status changes are legal. Every service that
writes a status asks these validators first and the write itself is guarded
by the expected current status.
"""

import logging
from typing import Dict, Optional, Set

from models import ContractStatus, PaymentStatus, EscrowState
from utils.exceptions import InvalidTransition

logger = logging.getLogger(__name__)


class ContractStateValidator:
    """
    Contract lifecycle edges.

    draft -> pending -> accepted -> in_progress -> waiting_approval -> completed
    with disputes from waiting_approval and cancellation before work starts.
    """

    VALID_TRANSITIONS: Dict[str, Set[str]] = {
        ContractStatus.DRAFT.value: {
            ContractStatus.PENDING.value,
            ContractStatus.CANCELLED.value,
        },
        ContractStatus.PENDING.value: {
            ContractStatus.ACCEPTED.value,
            ContractStatus.CANCELLED.value,
        },
        ContractStatus.ACCEPTED.value: {
            ContractStatus.IN_PROGRESS.value,
            ContractStatus.CANCELLED.value,
        },
        ContractStatus.IN_PROGRESS.value: {
            ContractStatus.WAITING_APPROVAL.value,
            # refund path only, escrow is returned to the requester
            ContractStatus.CANCELLED.value,
        },
        ContractStatus.WAITING_APPROVAL.value: {
            ContractStatus.COMPLETED.value,
            ContractStatus.DISPUTED.value,
            ContractStatus.CANCELLED.value,
        },
        ContractStatus.DISPUTED.value: {
            ContractStatus.COMPLETED.value,
            ContractStatus.CANCELLED.value,
        },
        ContractStatus.COMPLETED.value: set(),
        ContractStatus.CANCELLED.value: set(),
    }

    TERMINAL_STATES: Set[str] = {
        ContractStatus.COMPLETED.value,
        ContractStatus.CANCELLED.value,
    }

    # Explicit cancellation (no refund involved) is only allowed before work starts
    PRE_WORK_STATES: Set[str] = {
        ContractStatus.DRAFT.value,
        ContractStatus.PENDING.value,
        ContractStatus.ACCEPTED.value,
    }

    EXTENDABLE_STATES: Set[str] = {
        ContractStatus.ACCEPTED.value,
        ContractStatus.IN_PROGRESS.value,
    }

    @classmethod
    def is_valid_transition(cls, current: Optional[str], target: str) -> bool:
        return target in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def validate_transition(cls, current: Optional[str], target: str, contract_id=None):
        if not cls.is_valid_transition(current, target):
            logger.info(
                f"CONTRACT_TRANSITION_REJECTED: contract={contract_id} {current} -> {target}"
            )
            raise InvalidTransition("Contract", current, target)

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return status in cls.TERMINAL_STATES


class PaymentStateValidator:
    """Payment ledger edges; terminal states are never left"""

    VALID_TRANSITIONS: Dict[str, Set[str]] = {
        PaymentStatus.PENDING.value: {
            PaymentStatus.HELD_ESCROW.value,
            PaymentStatus.COMPLETED.value,
            PaymentStatus.REFUNDED.value,
            PaymentStatus.FAILED.value,
        },
        PaymentStatus.HELD_ESCROW.value: {
            PaymentStatus.COMPLETED.value,
            PaymentStatus.REFUNDED.value,
        },
        PaymentStatus.COMPLETED.value: set(),
        PaymentStatus.REFUNDED.value: set(),
        PaymentStatus.FAILED.value: set(),
    }

    TERMINAL_STATES: Set[str] = {
        PaymentStatus.COMPLETED.value,
        PaymentStatus.REFUNDED.value,
        PaymentStatus.FAILED.value,
    }

    @classmethod
    def is_valid_transition(cls, current: Optional[str], target: str) -> bool:
        return target in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def validate_transition(cls, current: Optional[str], target: str, payment_id=None):
        if not cls.is_valid_transition(current, target):
            logger.info(
                f"PAYMENT_TRANSITION_REJECTED: payment={payment_id} {current} -> {target}"
            )
            raise InvalidTransition("Payment", current, target)

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return status in cls.TERMINAL_STATES


class EscrowStateValidator:
    """Escrow mirror on the contract"""

    VALID_TRANSITIONS: Dict[str, Set[str]] = {
        EscrowState.PENDING.value: {
            EscrowState.HELD_ESCROW.value,
            EscrowState.REFUNDED.value,
        },
        EscrowState.HELD_ESCROW.value: {
            EscrowState.RELEASED.value,
            EscrowState.REFUNDED.value,
        },
        EscrowState.RELEASED.value: set(),
        EscrowState.REFUNDED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current: Optional[str], target: str) -> bool:
        return target in cls.VALID_TRANSITIONS.get(current, set())
