"""Retry, dead-letter and idempotency management for node executions."""

from flowguard.retry.idempotency import IdempotencyStore, InMemoryIdempotencyStore
from flowguard.retry.manager import (
    CancellationToken,
    RetryManager,
    calculate_retry_delay,
    classify_error,
)
from flowguard.retry.models import (
    ErrorType,
    ExecutionStatus,
    IdempotencyEntry,
    IdempotencyState,
    RetryAttempt,
    RetryableExecution,
    RetryPolicy,
    RetryStats,
)
from flowguard.retry.state_machine import RetryStateMachine

__all__ = [
    "CancellationToken",
    "ErrorType",
    "ExecutionStatus",
    "IdempotencyEntry",
    "IdempotencyState",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "RetryAttempt",
    "RetryManager",
    "RetryPolicy",
    "RetryStateMachine",
    "RetryStats",
    "RetryableExecution",
    "calculate_retry_delay",
    "classify_error",
]
