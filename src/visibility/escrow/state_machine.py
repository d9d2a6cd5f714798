"""Execution state machine — enforces valid escrow lifecycle transitions.

Execution lifecycle:
    UNINITIALIZED → REQUESTED → ACCEPTED → VALIDATED
    ACCEPTED → DISPUTED → {VALIDATED | REFUNDED}
    REQUESTED → REFUNDED  (cancel)

State semantics:
- REQUESTED: payment escrowed, waiting for the creator.
- ACCEPTED: creator took the job; requester may validate or dispute.
- DISPUTED: requester contests; only a dispute resolver may settle.
- VALIDATED: terminal — payment released to the creator side.
- REFUNDED: terminal — payment returned to the requester.

Fail-closed: invalid transitions raise InvalidExecutionState. There are
no implicit transitions.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from visibility.errors import InvalidExecutionState
from visibility.models.services import (
    EXECUTION_TRANSITIONS,
    Execution,
    ExecutionState,
)

_TERMINAL = frozenset({ExecutionState.VALIDATED, ExecutionState.REFUNDED})


class ExecutionStateMachine:
    """Validates and applies execution state transitions.

    Pure computation: settlement, events and authorization are handled
    by the escrow engine.
    """

    @staticmethod
    def validate_transition(
        execution: Execution,
        target: ExecutionState,
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = execution.state
        allowed = EXECUTION_TRANSITIONS.get(current, frozenset())

        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid execution transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def require_state(execution: Execution, expected: ExecutionState) -> None:
        """Raise InvalidExecutionState unless the execution is in `expected`."""
        if execution.state != expected:
            raise InvalidExecutionState(execution.state.value)

    @staticmethod
    def apply_transition(
        execution: Execution,
        target: ExecutionState,
        now: Optional[datetime] = None,
    ) -> None:
        """Validate and apply a transition, stamping last_update_timestamp.

        Raises InvalidExecutionState if the transition is not allowed.
        """
        if ExecutionStateMachine.validate_transition(execution, target):
            raise InvalidExecutionState(execution.state.value, target.value)
        execution.state = target
        if now is not None:
            execution.last_update_timestamp = now

    @staticmethod
    def is_terminal(state: ExecutionState) -> bool:
        """Check if a state is terminal (no further transitions)."""
        return state in _TERMINAL

    @staticmethod
    def valid_transitions(state: ExecutionState) -> set[ExecutionState]:
        """Return the set of valid target states from the given state."""
        return set(EXECUTION_TRANSITIONS.get(state, frozenset()))
