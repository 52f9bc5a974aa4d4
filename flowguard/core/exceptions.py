"""
Exception hierarchy shared by the validator, mapping engine and retry manager.
"""

from typing import Optional


class FlowguardError(Exception):
    """Base class for all flowguard errors."""


class InvalidStateTransitionError(FlowguardError):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str, message: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition from {from_state} to {to_state}"
            + (f": {message}" if message else "")
        )


# ==================== Mapping ====================

class ExpressionError(FlowguardError):
    """Base class for expression language errors."""


class ExpressionSyntaxError(ExpressionError):
    """Raised when an expression cannot be tokenized or parsed."""

    def __init__(self, message: str, expression: str, position: Optional[int] = None):
        self.expression = expression
        self.position = position
        location = f" at position {position}" if position is not None else ""
        super().__init__(f"{message}{location}")


class ExpressionEvaluationError(ExpressionError):
    """Raised when a parsed expression fails at evaluation time."""


class TransformError(FlowguardError):
    """Raised when a named transform is unknown or fails."""


# ==================== Retry ====================

class RetryError(FlowguardError):
    """Base class for retry manager errors."""

    def __init__(self, message: str, node_id: str, execution_id: str):
        self.node_id = node_id
        self.execution_id = execution_id
        super().__init__(message)


class RetryExhaustedError(RetryError):
    """Raised when a retryable failure used up every allowed attempt."""

    def __init__(self, node_id: str, execution_id: str, attempts: int, last_error: str):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Node {node_id} failed after {attempts} attempts - moved to DLQ: {last_error}",
            node_id,
            execution_id,
        )


class DeadLetteredError(RetryError):
    """Raised when executing a node whose record sits in the dead-letter queue."""

    def __init__(self, node_id: str, execution_id: str):
        super().__init__(
            f"Execution {execution_id}:{node_id} is dead-lettered; replay it before retrying",
            node_id,
            execution_id,
        )


class DLQItemNotFoundError(RetryError):
    """Raised when replaying an execution that is not in the dead-letter queue."""

    def __init__(self, node_id: str, execution_id: str):
        super().__init__(
            f"No DLQ item found for {execution_id}:{node_id}",
            node_id,
            execution_id,
        )


class RetryCancelledError(RetryError):
    """Raised when a retry chain is abandoned through its cancellation token."""

    def __init__(self, node_id: str, execution_id: str):
        super().__init__(
            f"Retry chain for {execution_id}:{node_id} was cancelled",
            node_id,
            execution_id,
        )


class IdempotencyConflictError(RetryError):
    """Raised when another process holds a live claim on the idempotency key."""

    def __init__(self, key: str, node_id: str, execution_id: str):
        self.key = key
        super().__init__(
            f"Idempotency key '{key}' is already being executed elsewhere",
            node_id,
            execution_id,
        )
