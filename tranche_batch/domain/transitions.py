"""
Lifecycle transition tables for executions and idempotency keys.

Each lifecycle is an enum plus an explicit table of legal next states.
Every status change in the engine goes through one of the ``validate_*``
functions; anything not in the table raises a typed error.
"""

from __future__ import annotations

from tranche_batch.domain.types import ExecutionStatus, IdempotencyStatus
from tranche_kernel.exceptions import (
    InvalidExecutionTransitionError,
    InvalidIdempotencyTransitionError,
)

EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.STARTED: frozenset({
        ExecutionStatus.RUNNING,
        # A job with nothing to dispatch completes without running
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.STOPPED,
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.STOPPED,
    }),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.STOPPED: frozenset(),
}

IDEMPOTENCY_TRANSITIONS: dict[IdempotencyStatus, frozenset[IdempotencyStatus]] = {
    IdempotencyStatus.PENDING: frozenset({IdempotencyStatus.IN_PROGRESS}),
    IdempotencyStatus.IN_PROGRESS: frozenset({
        IdempotencyStatus.COMPLETED,
        IdempotencyStatus.FAILED,
        # Stale takeover after the owner disappeared
        IdempotencyStatus.IN_PROGRESS,
    }),
    IdempotencyStatus.COMPLETED: frozenset(),
    # Retry after cooldown
    IdempotencyStatus.FAILED: frozenset({IdempotencyStatus.IN_PROGRESS}),
}


def can_transition_execution(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    return target in EXECUTION_TRANSITIONS.get(current, frozenset())


def validate_execution_transition(
    execution_id: object, current: ExecutionStatus, target: ExecutionStatus
) -> None:
    if not can_transition_execution(current, target):
        raise InvalidExecutionTransitionError(str(execution_id), current.value, target.value)


def can_transition_idempotency(current: IdempotencyStatus, target: IdempotencyStatus) -> bool:
    return target in IDEMPOTENCY_TRANSITIONS.get(current, frozenset())


def validate_idempotency_transition(
    key: str, current: IdempotencyStatus, target: IdempotencyStatus
) -> None:
    if not can_transition_idempotency(current, target):
        raise InvalidIdempotencyTransitionError(key, current.value, target.value)
