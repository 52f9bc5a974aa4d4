"""
Retry manager.

Wraps node executions with exponential-backoff retries, parks exhausted
retryable failures in a dead-letter queue and caches results by
idempotency key so a repeated invocation does not re-run the executor.
"""

import asyncio
import logging
import math
import random
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from flowguard.config import get_settings
from flowguard.config.settings import Settings
from flowguard.core.exceptions import (
    DeadLetteredError,
    DLQItemNotFoundError,
    IdempotencyConflictError,
    RetryCancelledError,
    RetryExhaustedError,
)
from flowguard.retry.idempotency import IdempotencyStore, InMemoryIdempotencyStore
from flowguard.retry.models import (
    ErrorType,
    ExecutionStatus,
    IdempotencyState,
    RetryableExecution,
    RetryAttempt,
    RetryPolicy,
    RetryStats,
    execution_key,
    utcnow,
)
from flowguard.retry.state_machine import RetryStateMachine

logger = logging.getLogger(__name__)

Executor = Callable[[], Awaitable[Any]]

MIN_DELAY_MS = 100
JITTER_RATIO = 0.25


class CancellationToken:
    """Cooperative cancellation signal for a retry chain."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


SleepFunc = Callable[[float, CancellationToken], Awaitable[bool]]


async def cooperative_sleep(seconds: float, token: CancellationToken) -> bool:
    return await token.sleep(seconds)


def calculate_retry_delay(attempt: int, policy: RetryPolicy) -> int:
    """
    Delay in ms before retrying after the given failed attempt.

    ``initial * multiplier^(attempt-1)``, capped at ``max_delay_ms``, with
    +/-25% jitter when enabled, never below 100 ms.
    """
    delay = policy.initial_delay_ms * policy.backoff_multiplier ** (attempt - 1)
    delay = min(delay, policy.max_delay_ms)

    if policy.jitter_enabled:
        delay += random.uniform(-1, 1) * delay * JITTER_RATIO

    return max(MIN_DELAY_MS, math.floor(delay))


def classify_error(error: BaseException) -> ErrorType:
    """Classify an executor failure for retry decisions."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return ErrorType.RATE_LIMIT
        if status == 503:
            return ErrorType.SERVICE_UNAVAILABLE
        if status == 504:
            return ErrorType.TIMEOUT
        if status >= 500:
            return ErrorType.SERVER_ERROR

    if isinstance(error, (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(error, (httpx.NetworkError, ConnectionError)):
        return ErrorType.NETWORK_ERROR

    message = str(error).lower()
    if "timeout" in message or "timed out" in message:
        return ErrorType.TIMEOUT
    if "rate limit" in message or "429" in message:
        return ErrorType.RATE_LIMIT
    if "network" in message or "econnreset" in message or "econnrefused" in message:
        return ErrorType.NETWORK_ERROR
    if "503" in message or "service unavailable" in message:
        return ErrorType.SERVICE_UNAVAILABLE
    if "500" in message or "internal server error" in message:
        return ErrorType.SERVER_ERROR

    return ErrorType.UNKNOWN_ERROR


def _type_matches(node_type: str, prefix: str) -> bool:
    if prefix.endswith("."):
        return node_type.startswith(prefix)
    return node_type == prefix or node_type.startswith(prefix + ".")


class _InflightCall:
    """Outcome of an idempotent call shared with concurrent callers of the same key."""

    def __init__(self):
        self.done = asyncio.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None

    async def wait(self) -> Any:
        await self.done.wait()
        if self.error is not None:
            raise self.error
        return self.result


class RetryManager:
    """
    Executes node invocations with retry, dead-lettering and idempotency.

    Retry records are kept in process memory keyed by (execution id, node
    id); idempotency entries live in the configured store.
    """

    def __init__(
        self,
        store: Optional[IdempotencyStore] = None,
        settings: Optional[Settings] = None,
        sleep: Optional[SleepFunc] = None,
        node_type_policies: Optional[dict[str, dict[str, Any]]] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or InMemoryIdempotencyStore()
        self.default_policy = RetryPolicy.from_settings(self.settings.retry)
        self.node_type_policies: dict[str, dict[str, Any]] = {}
        for prefix, overrides in (node_type_policies or {}).items():
            self.set_node_type_policy(prefix, overrides)

        self._sleep = sleep or cooperative_sleep
        self._owner = f"retry-manager-{uuid.uuid4().hex[:8]}"
        self._executions: dict[str, RetryableExecution] = {}
        self._inflight: dict[str, _InflightCall] = {}

        self._running = False
        self._maintenance_task: Optional[asyncio.Task] = None

    # ==================== Policies ====================

    def set_node_type_policy(self, type_prefix: str, overrides: dict[str, Any]) -> None:
        """
        Register policy overrides for node types matching a prefix.

        Raises:
            pydantic.ValidationError: If the overrides produce an invalid policy
        """
        self.default_policy.merged(overrides)
        self.node_type_policies[type_prefix] = dict(overrides)

    def resolve_policy(
        self,
        node_type: Optional[str] = None,
        policy: Union[RetryPolicy, dict[str, Any], None] = None,
    ) -> RetryPolicy:
        """
        Effective policy: defaults, then the longest matching node-type
        override, then the fields explicitly set on ``policy``.
        """
        resolved = self.default_policy

        if node_type:
            matches = [p for p in self.node_type_policies if _type_matches(node_type, p)]
            if matches:
                resolved = resolved.merged(self.node_type_policies[max(matches, key=len)])

        if policy is not None:
            if isinstance(policy, RetryPolicy):
                overrides = policy.model_dump(exclude_unset=True)
            else:
                overrides = dict(policy)
            resolved = resolved.merged(overrides)

        return resolved

    # ==================== Execution ====================

    async def execute_with_retry(
        self,
        node_id: str,
        execution_id: str,
        executor: Executor,
        *,
        policy: Union[RetryPolicy, dict[str, Any], None] = None,
        idempotency_key: Optional[str] = None,
        node_type: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Any:
        """
        Execute a node with retry logic and idempotency.

        Args:
            node_id: Node being executed
            execution_id: Workflow execution the node belongs to
            executor: Zero-argument coroutine function performing the work
            policy: Partial or full policy overriding defaults
            idempotency_key: Cache the result under this key for 24 hours
            node_type: Selects node-type policy overrides
            cancel_token: Abandons the chain during a backoff wait

        Returns:
            The executor's result, or the cached result for the key

        Raises:
            RetryExhaustedError: A retryable failure used up every attempt
            RetryCancelledError: The chain was cancelled while waiting
            DeadLetteredError: The record is in the DLQ and was not replayed
            IdempotencyConflictError: Another process holds the key
            Exception: The executor's error when it is not retryable
        """
        if not idempotency_key:
            return await self._run(
                node_id, execution_id, executor, policy, None, node_type, cancel_token
            )

        inflight = self._inflight.get(idempotency_key)
        if inflight is not None:
            logger.info(f"Idempotency key {idempotency_key} in flight - sharing its outcome")
            return await inflight.wait()

        call = _InflightCall()
        self._inflight[idempotency_key] = call
        try:
            call.result = await self._run_idempotent(
                node_id, execution_id, executor, policy, idempotency_key, node_type, cancel_token
            )
            return call.result
        except BaseException as e:
            call.error = e
            raise
        finally:
            call.done.set()
            self._inflight.pop(idempotency_key, None)

    async def _run_idempotent(
        self,
        node_id: str,
        execution_id: str,
        executor: Executor,
        policy: Union[RetryPolicy, dict[str, Any], None],
        idempotency_key: str,
        node_type: Optional[str],
        cancel_token: Optional[CancellationToken],
    ) -> Any:
        cached = await self.store.get(idempotency_key)
        if cached is not None and cached.state == IdempotencyState.COMPLETED:
            logger.info(f"Idempotency hit for {node_id} - returning cached result")
            return cached.result

        claimed = await self.store.claim(
            idempotency_key,
            node_id,
            execution_id,
            self._owner,
            self.settings.idempotency.claim_ttl_seconds,
        )
        if not claimed:
            raise IdempotencyConflictError(idempotency_key, node_id, execution_id)

        try:
            result = await self._run(
                node_id, execution_id, executor, policy, idempotency_key, node_type, cancel_token
            )
        except BaseException:
            await self.store.release(idempotency_key, self._owner)
            raise

        await self.store.complete(
            idempotency_key,
            node_id,
            execution_id,
            result,
            self.settings.idempotency.result_ttl_seconds,
        )
        return result

    async def _run(
        self,
        node_id: str,
        execution_id: str,
        executor: Executor,
        policy: Union[RetryPolicy, dict[str, Any], None],
        idempotency_key: Optional[str],
        node_type: Optional[str],
        cancel_token: Optional[CancellationToken],
    ) -> Any:
        resolved = self.resolve_policy(node_type, policy)
        record = self._prepare_record(node_id, execution_id, resolved, idempotency_key, node_type)
        machine = RetryStateMachine(record)
        token = cancel_token or CancellationToken()
        attempt_number = 0

        while True:
            if token.cancelled:
                raise self._cancel(machine)

            attempt_number += 1
            attempt = RetryAttempt(attempt=attempt_number)
            record.attempts.append(attempt)
            record.touch()

            logger.info(
                f"Executing {node_id} - attempt {attempt_number}/{resolved.max_attempts}"
            )

            try:
                result = await executor()
            except Exception as error:
                message = str(error) or type(error).__name__
                error_type = classify_error(error)
                attempt.error = message
                attempt.error_type = error_type
                record.last_error = message
                record.touch()

                if error_type not in resolved.retryable_errors:
                    self._settle(machine, ExecutionStatus.FAILED, reason=f"{error_type.value}: {message}")
                    logger.error(f"Node {node_id} failed permanently: {message}")
                    raise

                if attempt_number >= resolved.max_attempts:
                    self._settle(
                        machine,
                        ExecutionStatus.DLQ,
                        reason=f"{error_type.value} after {attempt_number} attempts",
                    )
                    logger.error(
                        f"Node {node_id} failed after {attempt_number} attempts - moved to DLQ: {message}"
                    )
                    raise RetryExhaustedError(node_id, execution_id, attempt_number, message) from error

                delay_ms = calculate_retry_delay(attempt_number, resolved)
                attempt.next_retry_at = utcnow() + timedelta(milliseconds=delay_ms)
                self._settle(
                    machine,
                    ExecutionStatus.RETRYING,
                    reason=f"{error_type.value} on attempt {attempt_number}",
                )

                logger.warning(
                    f"Node {node_id} failed on attempt {attempt_number}, "
                    f"retrying in {delay_ms}ms: {message}"
                )

                if await self._sleep(delay_ms / 1000, token) or token.cancelled:
                    raise self._cancel(machine) from error
                continue

            self._settle(machine, ExecutionStatus.SUCCEEDED, reason=f"attempt {attempt_number} succeeded")
            logger.info(f"Node {node_id} succeeded on attempt {attempt_number}")
            return result

    def _cancel(self, machine: RetryStateMachine) -> RetryCancelledError:
        record = machine.record
        self._settle(machine, ExecutionStatus.FAILED, reason="cancelled")
        logger.warning(f"Retry chain for {record.key} cancelled")
        return RetryCancelledError(record.node_id, record.execution_id)

    @staticmethod
    def _settle(machine: RetryStateMachine, status: ExecutionStatus, reason: str) -> None:
        """
        Move the shared record to ``status`` for the current run.

        Concurrent runs of one (execution id, node id) pair share a record, so
        another run may already have moved it there or finished it.
        """
        if machine.state == status:
            return
        if machine.is_terminal:
            machine.transition(ExecutionStatus.PENDING, reason="concurrent run")
        machine.transition(status, reason=reason)

    def _prepare_record(
        self,
        node_id: str,
        execution_id: str,
        policy: RetryPolicy,
        idempotency_key: Optional[str],
        node_type: Optional[str],
    ) -> RetryableExecution:
        """Locate or create the record for a new run."""
        key = execution_key(execution_id, node_id)
        record = self._executions.get(key)

        if record is None:
            record = RetryableExecution(
                node_id=node_id,
                execution_id=execution_id,
                node_type=node_type,
                policy=policy,
                idempotency_key=idempotency_key,
            )
            self._executions[key] = record
            return record

        if record.status == ExecutionStatus.DLQ:
            raise DeadLetteredError(node_id, execution_id)

        if record.status in (ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED):
            RetryStateMachine(record).transition(ExecutionStatus.PENDING, reason="re-run")
            record.attempts = []
            record.last_error = None

        record.policy = policy
        record.node_type = node_type or record.node_type
        record.idempotency_key = idempotency_key or record.idempotency_key
        return record

    # ==================== Inspection ====================

    def get_retry_status(self, execution_id: str, node_id: str) -> Optional[RetryableExecution]:
        """Get the retry record for a node execution."""
        return self._executions.get(execution_key(execution_id, node_id))

    def get_dlq_items(self) -> list[RetryableExecution]:
        """Get all dead-lettered records."""
        return [r for r in self._executions.values() if r.status == ExecutionStatus.DLQ]

    def replay_from_dlq(self, execution_id: str, node_id: str) -> RetryableExecution:
        """
        Reset a dead-lettered record so the node can be executed again.

        Raises:
            DLQItemNotFoundError: If the record is missing or not in the DLQ
        """
        record = self._executions.get(execution_key(execution_id, node_id))
        if record is None or record.status != ExecutionStatus.DLQ:
            raise DLQItemNotFoundError(node_id, execution_id)

        RetryStateMachine(record).transition(ExecutionStatus.PENDING, reason="replayed from DLQ")
        record.attempts = []
        record.last_error = None

        logger.info(f"Replaying DLQ item: {record.key}")
        return record

    async def get_stats(self) -> RetryStats:
        """Get retry manager statistics."""
        records = list(self._executions.values())
        total = len(records)
        succeeded = sum(1 for r in records if r.status == ExecutionStatus.SUCCEEDED)

        return RetryStats(
            active_executions=sum(1 for r in records if r.status in RetryStateMachine.ACTIVE_STATES),
            cached_keys=await self.store.count(),
            dlq_items=sum(1 for r in records if r.status == ExecutionStatus.DLQ),
            total_executions=total,
            success_rate=succeeded / total if total else 1.0,
        )

    # ==================== Maintenance ====================

    async def cleanup(self) -> dict[str, int]:
        """Evict records older than the retention window and expired idempotency entries."""
        cutoff = utcnow() - timedelta(seconds=self.settings.idempotency.record_max_age_seconds)
        stale = [key for key, record in self._executions.items() if record.created_at < cutoff]
        for key in stale:
            del self._executions[key]

        purged = await self.store.purge_expired()

        logger.info(
            f"Cleanup completed - removed {len(stale)} records and {purged} expired keys, "
            f"{len(self._executions)} records remain"
        )
        return {"records_removed": len(stale), "keys_purged": purged}

    async def start(self) -> None:
        """Start the periodic maintenance task."""
        if self._running:
            return

        self._running = True
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info("Retry manager maintenance started")

    async def stop(self) -> None:
        """Stop the periodic maintenance task."""
        if not self._running:
            return

        self._running = False
        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None

        logger.info("Retry manager maintenance stopped")

    async def _maintenance_loop(self) -> None:
        interval = self.settings.idempotency.cleanup_interval_seconds

        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.cleanup()
            except Exception as e:
                logger.error(f"Retry manager cleanup failed: {e}")
