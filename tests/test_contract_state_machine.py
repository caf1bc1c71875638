"""
Tests for contract, payment and escrow transition tables
"""

import pytest

from models import ContractStatus, EscrowState, PaymentStatus
from utils.contract_state_machine import (
    ContractStateValidator, EscrowStateValidator, PaymentStateValidator
)
from utils.exceptions import InvalidTransition


class TestContractStateValidator:

    @pytest.mark.parametrize("current,target", [
        ("draft", "pending"),
        ("pending", "accepted"),
        ("accepted", "in_progress"),
        ("in_progress", "waiting_approval"),
        ("waiting_approval", "completed"),
        ("waiting_approval", "disputed"),
        ("disputed", "completed"),
        ("disputed", "cancelled"),
        ("pending", "cancelled"),
    ])
    def test_allowed_edges(self, current, target):
        assert ContractStateValidator.is_valid_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        ("draft", "in_progress"),
        ("pending", "completed"),
        ("in_progress", "completed"),
        ("in_progress", "disputed"),
        ("completed", "cancelled"),
        ("cancelled", "pending"),
        (None, "pending"),
    ])
    def test_rejected_edges(self, current, target):
        assert not ContractStateValidator.is_valid_transition(current, target)
        with pytest.raises(InvalidTransition) as exc_info:
            ContractStateValidator.validate_transition(current, target, contract_id=7)
        assert exc_info.value.current == current
        assert exc_info.value.target == target

    def test_terminal_states_have_no_exits(self):
        for status in ContractStateValidator.TERMINAL_STATES:
            assert ContractStateValidator.VALID_TRANSITIONS[status] == set()
            assert ContractStateValidator.is_terminal_state(status)

    def test_every_status_has_an_entry(self):
        assert set(ContractStateValidator.VALID_TRANSITIONS) == {s.value for s in ContractStatus}


class TestPaymentStateValidator:

    def test_pending_edges(self):
        for target in ("held_escrow", "completed", "refunded", "failed"):
            assert PaymentStateValidator.is_valid_transition("pending", target)

    def test_held_can_only_complete_or_refund(self):
        assert PaymentStateValidator.is_valid_transition("held_escrow", "completed")
        assert PaymentStateValidator.is_valid_transition("held_escrow", "refunded")
        assert not PaymentStateValidator.is_valid_transition("held_escrow", "failed")

    @pytest.mark.parametrize("terminal", ["completed", "refunded", "failed"])
    def test_terminal_payment_states_are_final(self, terminal):
        assert PaymentStateValidator.is_terminal_state(terminal)
        with pytest.raises(InvalidTransition):
            PaymentStateValidator.validate_transition(terminal, PaymentStatus.HELD_ESCROW.value)


class TestEscrowStateValidator:

    def test_hold_then_release(self):
        assert EscrowStateValidator.is_valid_transition(EscrowState.PENDING.value, EscrowState.HELD_ESCROW.value)
        assert EscrowStateValidator.is_valid_transition(EscrowState.HELD_ESCROW.value, EscrowState.RELEASED.value)

    def test_released_is_final(self):
        assert not EscrowStateValidator.is_valid_transition(EscrowState.RELEASED.value, EscrowState.REFUNDED.value)
        assert not EscrowStateValidator.is_valid_transition(EscrowState.PENDING.value, EscrowState.RELEASED.value)
