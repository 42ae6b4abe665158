"""
PartitionProcessor -- applies one transaction type's field mappings to its records.

Contract:
    ``process(context, records) -> PartitionResult``.  Records are processed
    in ascending sequence number.  Each record either becomes an OutputRecord
    or a FailedRecord carrying its reason codes; a bad record never aborts
    the rest of the partition.

Architecture: tranche_batch/services.  Pure with respect to storage: a
    worker thread runs ``process`` and never touches the database.  Record
    outcomes are written back by the coordinator.

Invariants enforced:
    - succeeded + failed == records processed; nothing is silently dropped.
    - The cancel event is checked before each record, so a stop finishes the
      current record and then stops (``PartitionResult.stopped``).
    - Configuration problems (unknown rule kind) raise; data problems do not.
"""

from __future__ import annotations

import time
from typing import Any, Iterable, Mapping, Sequence

from tranche_batch.domain.types import (
    FailedRecord,
    OutputRecord,
    PartitionContext,
    PartitionResult,
    SourceRecord,
)
from tranche_batch.mapping.engine import lookup, map_record, sort_token
from tranche_config.predicate import evaluate_predicate
from tranche_config.schema import TransactionTypeDef
from tranche_kernel.logging_config import get_logger

logger = get_logger("batch.partition")


# -----------------------------------------------------------------------------
# Source selection
# -----------------------------------------------------------------------------


def select_records(
    transaction_type: TransactionTypeDef,
    payloads: Iterable[Mapping[str, Any]],
) -> tuple[list[Mapping[str, Any]], int]:
    """Apply a type's source selector.

    Returns the selected payloads (filtered, then stably sorted) and the
    number of payloads the filter dropped.
    """
    selector = transaction_type.selector
    selected: list[Mapping[str, Any]] = []
    filtered = 0
    for payload in payloads:
        if selector.filter and not evaluate_predicate(selector.filter, payload):
            filtered += 1
            continue
        selected.append(payload)

    if selector.sort_by:
        selected.sort(
            key=lambda p: tuple(sort_token(lookup(p, name)) for name in selector.sort_by),
            reverse=selector.descending,
        )
    return selected, filtered


# -----------------------------------------------------------------------------
# Processor
# -----------------------------------------------------------------------------


class PartitionProcessor:
    """Maps one partition of source records to output records."""

    def __init__(self, progress_interval: int | None = None):
        self._progress_interval = progress_interval

    def process(
        self,
        context: PartitionContext,
        records: Sequence[SourceRecord],
    ) -> PartitionResult:
        started = time.perf_counter()
        job = context.job
        tt = context.transaction_type
        mappings = tt.ordered_mappings
        interval = self._progress_interval or job.chunk_size

        logger.info(
            "partition_started",
            extra={
                "execution_id": context.execution_id,
                "transaction_type": tt.code,
                "record_count": len(records),
            },
        )

        succeeded: list[OutputRecord] = []
        failed: list[FailedRecord] = []
        stopped = False

        for index, record in enumerate(sorted(records, key=lambda r: r.sequence_number), start=1):
            if context.cancel_event.is_set():
                stopped = True
                logger.warning(
                    "partition_stop_observed",
                    extra={
                        "execution_id": context.execution_id,
                        "transaction_type": tt.code,
                        "processed": index - 1,
                        "remaining": len(records) - index + 1,
                    },
                )
                break

            result = map_record(record.payload, mappings, job.output_format, job.delimiter)
            if result.success:
                succeeded.append(OutputRecord(
                    transaction_type=tt.code,
                    sequence_number=record.sequence_number,
                    values=result.values,
                    segments=result.segments,
                    line=result.line,
                    record_id=record.record_id,
                ))
            else:
                failed.append(FailedRecord(record=record, errors=result.errors))

            if index % interval == 0:
                logger.debug(
                    "partition_progress",
                    extra={
                        "execution_id": context.execution_id,
                        "transaction_type": tt.code,
                        "processed": index,
                        "failed": len(failed),
                    },
                )

        partition = PartitionResult(
            execution_id=context.execution_id,
            transaction_type=tt.code,
            succeeded=tuple(succeeded),
            failed=tuple(failed),
            stopped=stopped,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        logger.info(
            "partition_completed",
            extra={
                "execution_id": context.execution_id,
                "transaction_type": tt.code,
                "succeeded": len(partition.succeeded),
                "failed": len(partition.failed),
                "stopped": stopped,
                "duration_ms": partition.duration_ms,
            },
        )
        return partition
