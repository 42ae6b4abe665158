"""
StagingStore -- execution-scoped holding area for records awaiting sequencing.

Contract:
    insert / insert_many      assign per-execution sequence numbers
    mark_dependency_met       flips dependency_satisfied for one type
    fetch_ready               ready, unprocessed records ordered by sequence
    mark_processed/mark_error terminal per-record outcome
    purge                     remove every record of a finished execution
    purge_expired             remove records of executions that finished
                              longer ago than the retention window

Architecture: tranche_batch/services.  Takes a session factory; each
    operation runs in its own transaction.  ``insert_many`` commits one
    transaction per chunk.

Invariants enforced:
    - Sequence numbers come from the locked ``staging:<execution id>``
      counter, so they are unique and increasing per execution across
      processes.  (execution_id, sequence_number) is also UNIQUE.
    - fetch_ready is restartable: repeated without intervening writes it
      returns the same records in the same order.
    - Per-record outcome updates are compare-and-set on the
      (processed, error) flags; a record is finished at most once.
    - purge refuses while the owning execution is non-terminal and is a
      no-op when repeated.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, Mapping, Sequence
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tranche_batch.domain.types import ExecutionStatus, StagingRecord
from tranche_batch.models.execution import JobExecutionModel
from tranche_batch.models.staging import StagingRecordModel, to_json_safe
from tranche_kernel.db.engine import transaction_scope
from tranche_kernel.domain.clock import Clock, SystemClock
from tranche_kernel.exceptions import ExecutionStillActiveError, StagingStoreError
from tranche_kernel.logging_config import get_logger
from tranche_kernel.services.sequence_service import SequenceService

logger = get_logger("batch.staging")

# Records kept after a failed or stopped run are removed after this long
DEFAULT_RETENTION_SECONDS = 24 * 3600


def staging_sequence_name(execution_id: UUID) -> str:
    return f"staging:{execution_id}"


@dataclass(frozen=True)
class StagingCounts:
    """Record counts for one execution."""

    total: int = 0
    ready: int = 0
    processed: int = 0
    errored: int = 0

    @property
    def pending(self) -> int:
        return self.total - self.processed - self.errored


class StagingStore:
    """Durable staging of raw records between intake and sequenced processing."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        chunk_size: int = 500,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._chunk_size = chunk_size

    # -------------------------------------------------------------------------
    # Insert
    # -------------------------------------------------------------------------

    def insert(
        self,
        execution_id: UUID,
        transaction_type: str,
        payload: Mapping[str, Any],
    ) -> int:
        """Stage one record; returns its sequence number."""
        return self.insert_many(execution_id, transaction_type, [payload])[0]

    def insert_many(
        self,
        execution_id: UUID,
        transaction_type: str,
        payloads: Iterable[Mapping[str, Any]],
        chunk_size: int | None = None,
    ) -> list[int]:
        """Stage records in input order, one transaction per chunk.

        Returns the assigned sequence numbers in input order.  A failure
        leaves earlier chunks committed.
        """
        size = chunk_size or self._chunk_size
        sequence_numbers: list[int] = []
        chunk: list[Mapping[str, Any]] = []

        for payload in payloads:
            chunk.append(payload)
            if len(chunk) >= size:
                sequence_numbers.extend(self._insert_chunk(execution_id, transaction_type, chunk))
                chunk = []
        if chunk:
            sequence_numbers.extend(self._insert_chunk(execution_id, transaction_type, chunk))

        logger.info(
            "records_staged",
            extra={
                "execution_id": execution_id,
                "transaction_type": transaction_type,
                "count": len(sequence_numbers),
            },
        )
        return sequence_numbers

    def _insert_chunk(
        self,
        execution_id: UUID,
        transaction_type: str,
        chunk: Sequence[Mapping[str, Any]],
    ) -> list[int]:
        now = self._clock.now_utc()
        try:
            with transaction_scope(self._session_factory) as session:
                first = SequenceService(session).next_block(
                    staging_sequence_name(execution_id), len(chunk)
                )
                numbers = list(range(first, first + len(chunk)))
                session.add_all([
                    StagingRecordModel(
                        execution_id=execution_id,
                        transaction_type=transaction_type,
                        sequence_number=number,
                        payload=to_json_safe(dict(payload)),
                        dependency_satisfied=False,
                        processed=False,
                        error=False,
                        created_at=now,
                    )
                    for number, payload in zip(numbers, chunk)
                ])
        except SQLAlchemyError as exc:
            raise self._store_error("insert", execution_id, exc) from exc
        return numbers

    # -------------------------------------------------------------------------
    # Readiness
    # -------------------------------------------------------------------------

    def mark_dependency_met(self, execution_id: UUID, transaction_type: str) -> int:
        """Flag every staged record of one type as ready. Returns rows changed."""
        try:
            with transaction_scope(self._session_factory) as session:
                result = session.execute(
                    update(StagingRecordModel)
                    .where(
                        StagingRecordModel.execution_id == execution_id,
                        StagingRecordModel.transaction_type == transaction_type,
                        StagingRecordModel.dependency_satisfied.is_(False),
                    )
                    .values(dependency_satisfied=True)
                    .execution_options(synchronize_session=False)
                )
                changed = result.rowcount
        except SQLAlchemyError as exc:
            raise self._store_error("mark_dependency_met", execution_id, exc) from exc

        logger.debug(
            "dependency_met",
            extra={
                "execution_id": execution_id,
                "transaction_type": transaction_type,
                "count": changed,
            },
        )
        return changed

    def fetch_ready(self, execution_id: UUID, transaction_type: str) -> list[StagingRecord]:
        """Ready, unfinished records of one type, ascending by sequence number."""
        try:
            with transaction_scope(self._session_factory) as session:
                rows = session.execute(
                    select(StagingRecordModel)
                    .where(
                        StagingRecordModel.execution_id == execution_id,
                        StagingRecordModel.transaction_type == transaction_type,
                        StagingRecordModel.dependency_satisfied.is_(True),
                        StagingRecordModel.processed.is_(False),
                        StagingRecordModel.error.is_(False),
                    )
                    .order_by(StagingRecordModel.sequence_number)
                ).scalars().all()
                return [row.to_dto() for row in rows]
        except SQLAlchemyError as exc:
            raise self._store_error("fetch_ready", execution_id, exc) from exc

    def records(self, execution_id: UUID) -> list[StagingRecord]:
        """Every staged record of an execution, by sequence number (diagnostics)."""
        try:
            with transaction_scope(self._session_factory) as session:
                rows = session.execute(
                    select(StagingRecordModel)
                    .where(StagingRecordModel.execution_id == execution_id)
                    .order_by(StagingRecordModel.sequence_number)
                ).scalars().all()
                return [row.to_dto() for row in rows]
        except SQLAlchemyError as exc:
            raise self._store_error("records", execution_id, exc) from exc

    # -------------------------------------------------------------------------
    # Per-record outcome
    # -------------------------------------------------------------------------

    def mark_processed(self, record_id: UUID) -> bool:
        """Finish a record successfully. False if it was already finished."""
        return self.record_outcomes([record_id], {}) == 1

    def mark_error(self, record_id: UUID, message: str) -> bool:
        """Finish a record with an error. False if it was already finished."""
        return self.record_outcomes([], {record_id: message}) == 1

    def record_outcomes(
        self,
        processed_ids: Iterable[UUID],
        errors: Mapping[UUID, str],
    ) -> int:
        """Write back a partition's outcomes in one transaction.

        Returns the number of records whose state actually changed.
        """
        now = self._clock.now_utc()
        unfinished = (
            StagingRecordModel.processed.is_(False),
            StagingRecordModel.error.is_(False),
        )
        changed = 0
        try:
            with transaction_scope(self._session_factory) as session:
                ids = list(processed_ids)
                if ids:
                    result = session.execute(
                        update(StagingRecordModel)
                        .where(StagingRecordModel.id.in_(ids), *unfinished)
                        .values(processed=True, processed_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    changed += result.rowcount
                for record_id, message in errors.items():
                    result = session.execute(
                        update(StagingRecordModel)
                        .where(StagingRecordModel.id == record_id, *unfinished)
                        .values(error=True, error_message=message, processed_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    changed += result.rowcount
        except SQLAlchemyError as exc:
            raise self._store_error("record_outcomes", None, exc) from exc
        return changed

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    def purge(self, execution_id: UUID) -> int:
        """Delete every record of a terminal execution.

        Purging an unknown or already-purged execution removes nothing and
        does not raise.

        Raises:
            ExecutionStillActiveError: the execution is STARTED or RUNNING.
        """
        try:
            with transaction_scope(self._session_factory) as session:
                status = session.execute(
                    select(JobExecutionModel.status)
                    .where(JobExecutionModel.id == execution_id)
                    .with_for_update()
                ).scalar_one_or_none()
                if status is not None and not ExecutionStatus(status).is_terminal:
                    raise ExecutionStillActiveError(execution_id, status)

                result = session.execute(
                    delete(StagingRecordModel)
                    .where(StagingRecordModel.execution_id == execution_id)
                    .execution_options(synchronize_session=False)
                )
                removed = result.rowcount
                SequenceService(session).discard(staging_sequence_name(execution_id))
        except SQLAlchemyError as exc:
            raise self._store_error("purge", execution_id, exc) from exc

        logger.info("staging_purged", extra={"execution_id": execution_id, "count": removed})
        return removed

    def purge_expired(self, retention_seconds: int = DEFAULT_RETENTION_SECONDS) -> int:
        """Delete records of executions that finished before the retention window.

        Covers staging kept by ``staging_retention_on_failure`` and records
        whose execution row no longer exists (judged by their own
        ``created_at``).  Executions that are still STARTED or RUNNING are
        never touched.  Returns the number of records removed.
        """
        cutoff = self._clock.now_utc() - timedelta(seconds=retention_seconds)
        terminal = [s.value for s in ExecutionStatus if s.is_terminal]
        removed = 0
        try:
            with transaction_scope(self._session_factory) as session:
                finished = session.execute(
                    select(JobExecutionModel.id).where(
                        JobExecutionModel.status.in_(terminal),
                        JobExecutionModel.finished_at <= cutoff,
                        JobExecutionModel.id.in_(select(StagingRecordModel.execution_id)),
                    )
                ).scalars().all()
                orphaned = session.execute(
                    select(StagingRecordModel.execution_id)
                    .where(
                        StagingRecordModel.created_at <= cutoff,
                        StagingRecordModel.execution_id.not_in(select(JobExecutionModel.id)),
                    )
                    .distinct()
                ).scalars().all()

                sequences = SequenceService(session)
                for execution_id in {*finished, *orphaned}:
                    result = session.execute(
                        delete(StagingRecordModel)
                        .where(StagingRecordModel.execution_id == execution_id)
                        .execution_options(synchronize_session=False)
                    )
                    removed += result.rowcount
                    sequences.discard(staging_sequence_name(execution_id))
        except SQLAlchemyError as exc:
            raise self._store_error("purge_expired", None, exc) from exc

        logger.info(
            "staging_expired_purged",
            extra={
                "count": removed,
                "executions": len(finished) + len(orphaned),
                "retention_seconds": retention_seconds,
            },
        )
        return removed

    def counts(self, execution_id: UUID) -> StagingCounts:
        try:
            with transaction_scope(self._session_factory) as session:
                row = session.execute(
                    select(
                        func.count(StagingRecordModel.id),
                        func.count(StagingRecordModel.id).filter(
                            StagingRecordModel.dependency_satisfied.is_(True)
                        ),
                        func.count(StagingRecordModel.id).filter(
                            StagingRecordModel.processed.is_(True)
                        ),
                        func.count(StagingRecordModel.id).filter(
                            StagingRecordModel.error.is_(True)
                        ),
                    ).where(StagingRecordModel.execution_id == execution_id)
                ).one()
        except SQLAlchemyError as exc:
            raise self._store_error("counts", execution_id, exc) from exc
        return StagingCounts(total=row[0], ready=row[1], processed=row[2], errored=row[3])

    @staticmethod
    def _store_error(operation: str, execution_id: UUID | None, exc: Exception) -> StagingStoreError:
        logger.error(
            "staging_store_error",
            extra={"operation": operation, "execution_id": execution_id},
            exc_info=True,
        )
        return StagingStoreError(operation, execution_id, str(exc))
