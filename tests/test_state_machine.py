"""Tests for receipt version state machine."""

import pytest

from payroll_versioning.config import CriticalAction
from payroll_versioning.exceptions import InvalidTransitionError
from payroll_versioning.models import ReceiptStatus
from payroll_versioning.services.state_machine import ReceiptStateMachine


class TestReceiptStateMachine:
    """Test state machine transitions."""

    def test_valid_transitions(self):
        """Test that valid transitions are allowed."""
        # PENDING → CALCULATING → CALCULATED → APPROVED
        assert ReceiptStateMachine.can_transition("PENDING", "CALCULATING") is True
        assert ReceiptStateMachine.can_transition("CALCULATING", "CALCULATED") is True
        assert ReceiptStateMachine.can_transition("CALCULATED", "APPROVED") is True

        # APPROVED → STAMPING → STAMP_OK → PAID
        assert ReceiptStateMachine.can_transition("APPROVED", "STAMPING") is True
        assert ReceiptStateMachine.can_transition("STAMPING", "STAMP_OK") is True
        assert ReceiptStateMachine.can_transition("STAMP_OK", "PAID") is True

        # Failure and retry
        assert ReceiptStateMachine.can_transition("STAMPING", "STAMP_ERROR") is True
        assert ReceiptStateMachine.can_transition("STAMP_ERROR", "STAMPING") is True

    def test_invalid_transitions(self):
        """Test that invalid transitions are blocked."""
        # Can't skip calculation or approval
        assert ReceiptStateMachine.can_transition("PENDING", "APPROVED") is False
        assert ReceiptStateMachine.can_transition("CALCULATED", "STAMPING") is False

        # Can't go backwards
        assert ReceiptStateMachine.can_transition("APPROVED", "CALCULATED") is False
        assert ReceiptStateMachine.can_transition("STAMP_OK", "STAMPING") is False

        # Terminal statuses
        assert ReceiptStateMachine.can_transition("PAID", "CANCELLED") is False
        assert ReceiptStateMachine.can_transition("CANCELLED", "PENDING") is False
        assert ReceiptStateMachine.can_transition("SUPERSEDED", "APPROVED") is False

    def test_superseded_is_never_a_transition_target(self):
        for status in ReceiptStatus:
            assert ReceiptStateMachine.can_transition(status, "SUPERSEDED") is False

    def test_validate_transition_raises(self):
        """Test that validate_transition raises for invalid transitions."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            ReceiptStateMachine.validate_transition("PENDING", "STAMP_OK")

        assert exc_info.value.from_status == "PENDING"
        assert exc_info.value.to_status == "STAMP_OK"

    def test_critical_transitions(self):
        assert (
            ReceiptStateMachine.required_action("STAMP_ERROR", "STAMPING")
            == CriticalAction.RETRY_STAMPING
        )
        assert (
            ReceiptStateMachine.required_action("STAMP_OK", "CANCELLED")
            == CriticalAction.CANCEL_CFDI
        )
        assert ReceiptStateMachine.required_action("APPROVED", "STAMPING") is None
        assert ReceiptStateMachine.required_action("APPROVED", "CANCELLED") is None

    def test_stamp_outcomes_are_provider_only(self):
        assert ReceiptStateMachine.is_provider_only("STAMPING", "STAMP_OK") is True
        assert ReceiptStateMachine.is_provider_only("STAMPING", "STAMP_ERROR") is True
        assert ReceiptStateMachine.is_provider_only("APPROVED", "STAMPING") is False
        assert ReceiptStateMachine.is_provider_only("STAMP_OK", "PAID") is False

    def test_only_calculation_in_progress_blocks_authorization(self):
        assert ReceiptStateMachine.IN_CALCULATION == {ReceiptStatus.CALCULATING}

    def test_can_modify(self):
        """Only PENDING, CALCULATED and APPROVED receipts are modifiable."""
        modifiable = {s for s in ReceiptStatus if ReceiptStateMachine.can_modify(s)}
        assert modifiable == {
            ReceiptStatus.PENDING,
            ReceiptStatus.CALCULATED,
            ReceiptStatus.APPROVED,
        }

    def test_blocks_new_version(self):
        assert ReceiptStateMachine.blocks_new_version("STAMP_OK") is True
        assert ReceiptStateMachine.blocks_new_version("PAID") is True
        assert ReceiptStateMachine.blocks_new_version("STAMP_ERROR") is False
        assert ReceiptStateMachine.blocks_new_version("APPROVED") is False

    def test_paid_and_cancelled_keep_their_status(self):
        assert ReceiptStateMachine.is_supersedable("PAID") is False
        assert ReceiptStateMachine.is_supersedable("CANCELLED") is False
        assert ReceiptStateMachine.is_supersedable("STAMP_OK") is True
        assert ReceiptStateMachine.is_supersedable("PENDING") is True

    def test_terminal_states(self):
        """Test terminal state detection."""
        assert ReceiptStateMachine.is_terminal("PAID") is True
        assert ReceiptStateMachine.is_terminal("CANCELLED") is True
        assert ReceiptStateMachine.is_terminal("SUPERSEDED") is True
        assert ReceiptStateMachine.is_terminal("STAMP_OK") is False
        assert ReceiptStateMachine.get_next_statuses("PAID") == []

    def test_get_next_statuses(self):
        """Test getting valid next statuses."""
        assert set(ReceiptStateMachine.get_next_statuses("STAMPING")) == {
            ReceiptStatus.STAMP_OK,
            ReceiptStatus.STAMP_ERROR,
        }
        assert set(ReceiptStateMachine.get_next_statuses("STAMP_OK")) == {
            ReceiptStatus.PAID,
            ReceiptStatus.CANCELLED,
        }
