"""
Models for retry policies, execution records and idempotency entries.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from flowguard.config.settings import RetrySettings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorType(str, Enum):
    """Classification of executor failures used for retry decisions."""

    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ExecutionStatus(str, Enum):
    """
    Status of a (execution, node) retry record.

    State transitions:
    - pending -> retrying -> succeeded | failed | dlq
    - pending -> succeeded | failed | dlq
    - dlq -> pending (replay)
    - succeeded | failed -> pending (re-run)
    """

    PENDING = "pending"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DLQ = "dlq"


class IdempotencyState(str, Enum):
    CLAIMED = "claimed"      # Executor is running; no result yet
    COMPLETED = "completed"  # Result cached


class RetryPolicy(BaseModel):
    """Configuration for retry behavior."""

    max_attempts: int = Field(default=3, ge=1, le=100, description="Maximum attempts including the first")
    initial_delay_ms: int = Field(default=1000, ge=0, description="Delay before the first retry")
    max_delay_ms: int = Field(default=30000, ge=0, description="Delay cap")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0, description="Backoff base")
    jitter_enabled: bool = Field(default=True, description="Add +/-25% randomized jitter")
    retryable_errors: list[ErrorType] = Field(
        default_factory=lambda: [
            ErrorType.TIMEOUT,
            ErrorType.RATE_LIMIT,
            ErrorType.NETWORK_ERROR,
            ErrorType.SERVICE_UNAVAILABLE,
        ]
    )

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay_ms=settings.initial_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            backoff_multiplier=settings.backoff_multiplier,
            jitter_enabled=settings.jitter_enabled,
            retryable_errors=settings.retryable_errors,
        )

    def merged(self, overrides: Optional[dict[str, Any]]) -> "RetryPolicy":
        """Return a validated copy with the given fields replaced."""
        if not overrides:
            return self
        return RetryPolicy.model_validate({**self.model_dump(), **overrides})


class StateTransition(BaseModel):
    """Represents a status transition event."""

    from_state: str
    to_state: str
    timestamp: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RetryAttempt(BaseModel):
    """One invocation of the executor."""

    attempt: int = Field(..., ge=1)
    timestamp: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    next_retry_at: Optional[datetime] = None


class RetryableExecution(BaseModel):
    """Retry bookkeeping for one (execution id, node id) pair."""

    node_id: str
    execution_id: str
    node_type: Optional[str] = None
    attempts: list[RetryAttempt] = Field(default_factory=list)
    policy: RetryPolicy = Field(default_factory=RetryPolicy)
    status: ExecutionStatus = ExecutionStatus.PENDING
    idempotency_key: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    history: list[StateTransition] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return execution_key(self.execution_id, self.node_id)

    def touch(self) -> None:
        self.updated_at = utcnow()


class IdempotencyEntry(BaseModel):
    """A claimed or completed idempotency key."""

    key: str
    node_id: str
    execution_id: str
    state: IdempotencyState = IdempotencyState.CLAIMED
    owner: Optional[str] = Field(default=None, description="Claim holder; only it may release")
    result: Any = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    @classmethod
    def create(
        cls,
        key: str,
        node_id: str,
        execution_id: str,
        ttl_seconds: int,
        state: IdempotencyState = IdempotencyState.CLAIMED,
        owner: Optional[str] = None,
        result: Any = None,
        now: Optional[datetime] = None,
    ) -> "IdempotencyEntry":
        now = now or utcnow()
        return cls(
            key=key,
            node_id=node_id,
            execution_id=execution_id,
            state=state,
            owner=owner,
            result=result,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


def execution_key(execution_id: str, node_id: str) -> str:
    return f"{execution_id}:{node_id}"


class RetryStats(BaseModel):
    """Snapshot of retry manager state."""

    active_executions: int = 0
    cached_keys: int = 0
    dlq_items: int = 0
    total_executions: int = 0
    success_rate: float = 1.0
