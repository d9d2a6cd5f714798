"""Tests for execution state machine — escrow lifecycle transitions."""

from datetime import datetime, timezone

import pytest

from visibility.errors import InvalidExecutionState
from visibility.escrow.state_machine import ExecutionStateMachine
from visibility.models.services import Execution, ExecutionState

REQUESTER = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def _make_execution(state: ExecutionState = ExecutionState.UNINITIALIZED) -> Execution:
    return Execution(requester=REQUESTER, state=state)


class TestValidTransitions:
    def test_uninitialized_to_requested(self) -> None:
        execution = _make_execution()
        errors = ExecutionStateMachine.validate_transition(execution, ExecutionState.REQUESTED)
        assert errors == []

    def test_requested_to_accepted(self) -> None:
        execution = _make_execution(ExecutionState.REQUESTED)
        errors = ExecutionStateMachine.validate_transition(execution, ExecutionState.ACCEPTED)
        assert errors == []

    def test_requested_to_refunded(self) -> None:
        execution = _make_execution(ExecutionState.REQUESTED)
        errors = ExecutionStateMachine.validate_transition(execution, ExecutionState.REFUNDED)
        assert errors == []

    def test_accepted_to_validated_or_disputed(self) -> None:
        for target in (ExecutionState.VALIDATED, ExecutionState.DISPUTED):
            execution = _make_execution(ExecutionState.ACCEPTED)
            errors = ExecutionStateMachine.validate_transition(execution, target)
            assert errors == [], f"ACCEPTED → {target.value} should be valid"

    def test_disputed_to_validated_or_refunded(self) -> None:
        for target in (ExecutionState.VALIDATED, ExecutionState.REFUNDED):
            execution = _make_execution(ExecutionState.DISPUTED)
            errors = ExecutionStateMachine.validate_transition(execution, target)
            assert errors == [], f"DISPUTED → {target.value} should be valid"


class TestInvalidTransitions:
    def test_requested_to_validated(self) -> None:
        execution = _make_execution(ExecutionState.REQUESTED)
        errors = ExecutionStateMachine.validate_transition(execution, ExecutionState.VALIDATED)
        assert len(errors) == 1
        assert "Invalid execution transition" in errors[0]

    def test_accepted_to_refunded(self) -> None:
        """Accepted work can only be refunded through a dispute."""
        execution = _make_execution(ExecutionState.ACCEPTED)
        errors = ExecutionStateMachine.validate_transition(execution, ExecutionState.REFUNDED)
        assert len(errors) == 1

    def test_validated_to_anything(self) -> None:
        execution = _make_execution(ExecutionState.VALIDATED)
        for target in ExecutionState:
            errors = ExecutionStateMachine.validate_transition(execution, target)
            assert len(errors) == 1, f"VALIDATED → {target.value} should be invalid"

    def test_refunded_to_anything(self) -> None:
        execution = _make_execution(ExecutionState.REFUNDED)
        for target in ExecutionState:
            errors = ExecutionStateMachine.validate_transition(execution, target)
            assert len(errors) == 1, f"REFUNDED → {target.value} should be invalid"


class TestApplyTransition:
    def test_apply_valid_transition_stamps_time(self) -> None:
        execution = _make_execution()
        ExecutionStateMachine.apply_transition(execution, ExecutionState.REQUESTED, _now())
        assert execution.state == ExecutionState.REQUESTED
        assert execution.last_update_timestamp == _now()

    def test_apply_invalid_transition_no_mutation(self) -> None:
        execution = _make_execution(ExecutionState.REQUESTED)
        with pytest.raises(InvalidExecutionState):
            ExecutionStateMachine.apply_transition(execution, ExecutionState.DISPUTED, _now())
        assert execution.state == ExecutionState.REQUESTED
        assert execution.last_update_timestamp is None

    def test_require_state(self) -> None:
        execution = _make_execution(ExecutionState.ACCEPTED)
        ExecutionStateMachine.require_state(execution, ExecutionState.ACCEPTED)
        with pytest.raises(InvalidExecutionState):
            ExecutionStateMachine.require_state(execution, ExecutionState.REQUESTED)


class TestTerminalAndValidTransitions:
    def test_is_terminal(self) -> None:
        assert ExecutionStateMachine.is_terminal(ExecutionState.VALIDATED)
        assert ExecutionStateMachine.is_terminal(ExecutionState.REFUNDED)
        assert not ExecutionStateMachine.is_terminal(ExecutionState.DISPUTED)

    def test_valid_transitions_from_requested(self) -> None:
        valid = ExecutionStateMachine.valid_transitions(ExecutionState.REQUESTED)
        assert valid == {ExecutionState.ACCEPTED, ExecutionState.REFUNDED}

    def test_valid_transitions_from_validated(self) -> None:
        assert ExecutionStateMachine.valid_transitions(ExecutionState.VALIDATED) == set()
