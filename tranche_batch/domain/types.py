"""
tranche_batch.domain.types -- Pure frozen dataclasses for the batch engine.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.  Business context (execution id, business date,
correlation id) travels in these values, never in process-wide state.

Invariants enforced:
    - All DTOs are frozen (immutable once built).
    - Lifecycle statuses are enums; legal transitions live in
      ``tranche_batch.domain.transitions``.
    - An idempotency decision is exactly one of Proceed, ReturnCached or
      Conflict.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping, Sequence, Union
from uuid import UUID

from tranche_config.schema import JobDefinition, ProcessingMode, TransactionTypeDef
from tranche_kernel.domain.dtos import ValidationError


# =============================================================================
# Status enums
# =============================================================================


class ExecutionStatus(str, Enum):
    """Job execution lifecycle status."""

    STARTED = "STARTED"  # Idempotency guard said Proceed
    RUNNING = "RUNNING"  # Config loaded and first partition dispatched
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"  # External cancellation

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.STOPPED,
        )


class FailureReason(str, Enum):
    """Why a FAILED execution failed, and therefore what the operator does next."""

    CONFIGURATION = "CONFIGURATION"  # Fix configuration and resubmit
    INFRASTRUCTURE = "INFRASTRUCTURE"  # Retry as-is after cooldown
    THRESHOLD_EXCEEDED = "THRESHOLD_EXCEEDED"  # Inspect data quality


class IdempotencyStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ConflictReason(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"  # Duplicate concurrent submission
    COOLDOWN = "COOLDOWN"  # FAILED, retry cooldown still running
    RETRY_LIMIT = "RETRY_LIMIT"  # FAILED too many times


# =============================================================================
# Idempotency decisions
# =============================================================================


@dataclass(frozen=True)
class Proceed:
    """Caller owns the key and must finish with complete() or fail()."""

    key: str
    attempt: int = 1
    recovered_stale: bool = False


@dataclass(frozen=True)
class ReturnCached:
    """A completed run exists; ``payload`` is returned verbatim, nothing executes."""

    key: str
    payload: dict[str, Any]
    execution_id: UUID | None = None


@dataclass(frozen=True)
class Conflict:
    """The key is busy or not yet retryable; the caller must not proceed."""

    key: str
    reason: ConflictReason
    execution_id: UUID | None = None
    retry_after: datetime | None = None


IdempotencyDecision = Union[Proceed, ReturnCached, Conflict]


@dataclass(frozen=True)
class IdempotencyRecord:
    """Snapshot of one idempotency key."""

    key: str
    fingerprint: str
    status: IdempotencyStatus
    execution_id: UUID | None = None
    result_payload: dict[str, Any] | None = None
    error_message: str | None = None
    retry_count: int = 0
    started_at: datetime | None = None
    processed_at: datetime | None = None
    expires_at: datetime | None = None


# =============================================================================
# Executions
# =============================================================================


@dataclass(frozen=True)
class JobExecution:
    """Immutable snapshot of one run of a job."""

    execution_id: UUID
    job_config_id: str
    job_name: str
    business_date: date
    processing_mode: ProcessingMode
    status: ExecutionStatus
    idempotency_key: str
    failure_reason: FailureReason | None = None
    error_summary: str | None = None
    total_count: int = 0
    processed_count: int = 0
    error_count: int = 0
    filtered_count: int = 0
    correlation_id: str | None = None
    config_checksum: str | None = None
    started_at: datetime | None = None
    running_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def error_rate_percent(self) -> float:
        if self.total_count == 0:
            return 0.0
        return self.error_count * 100.0 / self.total_count


@dataclass(frozen=True)
class ExecutionRequest:
    """What a caller submits.  ``records`` maps transaction type code to raw payloads.

    When ``records`` is None the records are expected to be staged already
    by the ingestion collaborator under ``execution_id``.
    """

    job_config_id: str
    business_date: date
    records: Mapping[str, Sequence[Mapping[str, Any]]] | None = None
    idempotency_key: str | None = None
    correlation_id: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    execution_id: UUID | None = None


# =============================================================================
# Staging and processing
# =============================================================================


@dataclass(frozen=True)
class SourceRecord:
    """One record routed to a partition, ordered by ``sequence_number``."""

    sequence_number: int
    payload: Mapping[str, Any]
    record_id: UUID | None = None


@dataclass(frozen=True)
class StagingRecord:
    """Snapshot of a staged record."""

    record_id: UUID
    execution_id: UUID
    transaction_type: str
    sequence_number: int
    payload: dict[str, Any]
    dependency_satisfied: bool = False
    processed: bool = False
    error: bool = False
    error_message: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None

    def as_source(self) -> SourceRecord:
        return SourceRecord(
            sequence_number=self.sequence_number,
            payload=self.payload,
            record_id=self.record_id,
        )


@dataclass(frozen=True)
class OutputRecord:
    """One formatted body record.

    ``values`` holds the typed values by target name (used for aggregates);
    ``segments`` the padded per-field text; ``line`` the rendered record.
    """

    transaction_type: str
    sequence_number: int
    values: dict[str, Any]
    segments: tuple[str, ...]
    line: str
    record_id: UUID | None = None


@dataclass(frozen=True)
class FailedRecord:
    """A record that failed validation, with its reasons."""

    record: SourceRecord
    errors: tuple[ValidationError, ...]

    @property
    def reason_code(self) -> str:
        return self.errors[0].code if self.errors else "UNKNOWN"

    @property
    def message(self) -> str:
        return "; ".join(f"{e.field}: {e.message}" if e.field else e.message for e in self.errors)


@dataclass(frozen=True)
class PartitionResult:
    """Outcome of processing one transaction type's records.

    ``stopped`` means cancellation was observed before every record was
    processed.  ``crashed`` means the worker raised; no per-record outcome
    is trustworthy in that case.
    """

    execution_id: UUID
    transaction_type: str
    succeeded: tuple[OutputRecord, ...] = ()
    failed: tuple[FailedRecord, ...] = ()
    stopped: bool = False
    crashed: bool = False
    crash_message: str | None = None
    duration_ms: int = 0

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def error_rate_percent(self) -> float:
        if self.total == 0:
            return 0.0
        return len(self.failed) * 100.0 / self.total


@dataclass(frozen=True)
class PartitionContext:
    """Everything a partition worker needs, passed explicitly."""

    execution_id: UUID
    job: JobDefinition
    transaction_type: TransactionTypeDef
    business_date: date
    correlation_id: str | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event, compare=False)


@dataclass(frozen=True)
class ExecutionWave:
    """Ordered batch of transaction types with no unresolved dependency."""

    index: int
    transaction_types: tuple[str, ...]


# =============================================================================
# Output
# =============================================================================


@dataclass(frozen=True)
class MergedOutput:
    """Ordered body plus merge statistics."""

    records: tuple[OutputRecord, ...]
    counts_by_type: dict[str, int]
    succeeded_count: int
    failed_count: int
    content_hash: str

    @property
    def record_count(self) -> int:
        return len(self.records)

    @property
    def lines(self) -> tuple[str, ...]:
        return tuple(r.line for r in self.records)

    @property
    def success_rate(self) -> float:
        total = self.succeeded_count + self.failed_count
        if total == 0:
            return 100.0
        return self.succeeded_count * 100.0 / total


@dataclass(frozen=True)
class OutputDocument:
    """Header, body and footer handed to the output writer."""

    body: tuple[str, ...]
    content_hash: str
    header: str | None = None
    footer: str | None = None

    def lines(self) -> tuple[str, ...]:
        out: list[str] = []
        if self.header is not None:
            out.extend(self.header.splitlines() or [""])
        out.extend(self.body)
        if self.footer is not None:
            out.extend(self.footer.splitlines() or [""])
        return tuple(out)


@dataclass(frozen=True)
class ExecutionOutcome:
    """What the coordinator returns to the invoking boundary."""

    decision: IdempotencyDecision
    execution: JobExecution | None = None
    document: OutputDocument | None = None

    @property
    def cached_payload(self) -> dict[str, Any] | None:
        if isinstance(self.decision, ReturnCached):
            return self.decision.payload
        return None
