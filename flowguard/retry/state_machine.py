"""
State machine for retry record statuses.

Implements explicit status transitions with guards and a recorded history.
"""

from typing import Callable, Optional

from flowguard.core.exceptions import InvalidStateTransitionError
from flowguard.retry.models import ExecutionStatus, RetryableExecution, StateTransition

# Type alias for transition guards
TransitionGuard = Callable[[], bool]


class RetryStateMachine:
    """
    State machine bound to a single retry record.

    Transitions update the record's status, history and ``updated_at``.
    """

    # Valid state transitions: from_state -> [valid_to_states]
    VALID_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
        ExecutionStatus.PENDING: {
            ExecutionStatus.RETRYING,
            ExecutionStatus.SUCCEEDED,
            ExecutionStatus.FAILED,
            ExecutionStatus.DLQ,
        },
        ExecutionStatus.RETRYING: {
            ExecutionStatus.SUCCEEDED,
            ExecutionStatus.FAILED,
            ExecutionStatus.DLQ,
        },
        ExecutionStatus.SUCCEEDED: {ExecutionStatus.PENDING},  # Re-run
        ExecutionStatus.FAILED: {ExecutionStatus.PENDING},     # Re-run
        ExecutionStatus.DLQ: {ExecutionStatus.PENDING},        # Replay
    }

    # A run has ended in one of these
    TERMINAL_STATES: set[ExecutionStatus] = {
        ExecutionStatus.SUCCEEDED,
        ExecutionStatus.FAILED,
        ExecutionStatus.DLQ,
    }

    ACTIVE_STATES: set[ExecutionStatus] = {
        ExecutionStatus.PENDING,
        ExecutionStatus.RETRYING,
    }

    FAILURE_STATES: set[ExecutionStatus] = {
        ExecutionStatus.FAILED,
        ExecutionStatus.DLQ,
    }

    def __init__(self, record: RetryableExecution):
        self.record = record

    @property
    def state(self) -> ExecutionStatus:
        """Get current state."""
        return self.record.status

    @property
    def history(self) -> list[StateTransition]:
        """Get state transition history."""
        return self.record.history.copy()

    @property
    def is_terminal(self) -> bool:
        return self.state in self.TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self.state in self.ACTIVE_STATES

    @property
    def is_failure(self) -> bool:
        return self.state in self.FAILURE_STATES

    def can_transition_to(self, to_state: ExecutionStatus) -> bool:
        """Check if transition to given state is valid."""
        return to_state in self.VALID_TRANSITIONS.get(self.state, set())

    def get_valid_transitions(self) -> set[ExecutionStatus]:
        """Get all valid transitions from current state."""
        return self.VALID_TRANSITIONS.get(self.state, set()).copy()

    def transition(
        self,
        to_state: ExecutionStatus,
        reason: Optional[str] = None,
        guard: Optional[TransitionGuard] = None,
        metadata: Optional[dict] = None,
    ) -> StateTransition:
        """
        Transition the record to a new status.

        Args:
            to_state: Target status
            reason: Reason for transition
            guard: Optional guard function that must return True
            metadata: Additional metadata for the transition

        Returns:
            StateTransition record

        Raises:
            InvalidStateTransitionError: If transition is not valid
        """
        if not self.can_transition_to(to_state):
            raise InvalidStateTransitionError(
                self.state.value,
                to_state.value,
                f"Valid transitions: {sorted(s.value for s in self.get_valid_transitions())}",
            )

        if guard is not None and not guard():
            raise InvalidStateTransitionError(
                self.state.value,
                to_state.value,
                "Guard condition failed",
            )

        transition = StateTransition(
            from_state=self.state.value,
            to_state=to_state.value,
            reason=reason,
            metadata=metadata or {},
        )

        self.record.history.append(transition)
        self.record.status = to_state
        self.record.touch()

        return transition
