"""
ResultMerger -- combines partition outputs into one ordered output stream.

Contract:
    ``merge(partition_results, precedence) -> MergedOutput``.  ``precedence``
    maps a transaction type code to a sort key.  Partitions are concatenated
    in ascending key order; records inside a partition are ordered by
    sequence number.

    simple jobs   key = (processing_order, code)
    complex jobs  key = (wave_index, processing_order, code)

Invariants enforced:
    - Pure: the input order of ``partition_results`` (i.e. completion
      order) never affects the output.
    - The content hash covers the rendered lines in output order.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from tranche_batch.domain.types import MergedOutput, OutputRecord, PartitionResult
from tranche_batch.sequencing.sequencer import SequencePlan
from tranche_config.schema import JobDefinition
from tranche_kernel.logging_config import get_logger
from tranche_kernel.utils.hashing import hash_lines

logger = get_logger("batch.merge")

Precedence = Mapping[str, tuple[Any, ...]]


def simple_precedence(job: JobDefinition) -> dict[str, tuple[Any, ...]]:
    """One wave: processing order hint, then code."""
    return {tt.code: (tt.processing_order, tt.code) for tt in job.transaction_types}


def wave_precedence(job: JobDefinition, plan: SequencePlan) -> dict[str, tuple[Any, ...]]:
    """Wave execution order, then the sequencer's intra-wave tie-break."""
    orders = {tt.code: tt.processing_order for tt in job.transaction_types}
    return {
        code: (wave.index, orders.get(code, 0), code)
        for wave in plan.waves
        for code in wave.transaction_types
    }


class ResultMerger:
    """Deterministic fan-in of partition results."""

    def merge(
        self,
        partition_results: Iterable[PartitionResult],
        precedence: Precedence,
    ) -> MergedOutput:
        by_type: dict[str, list[PartitionResult]] = {}
        failed = 0
        for result in partition_results:
            by_type.setdefault(result.transaction_type, []).append(result)
            failed += len(result.failed)

        def type_key(code: str) -> tuple[Any, ...]:
            # Types without a configured precedence go last, by code
            if code in precedence:
                return (0, precedence[code])
            return (1, code)

        records: list[OutputRecord] = []
        counts: dict[str, int] = {}
        for code in sorted(by_type, key=type_key):
            partition_records = sorted(
                (r for result in by_type[code] for r in result.succeeded),
                key=lambda r: (r.sequence_number, r.line),
            )
            counts[code] = len(partition_records)
            records.extend(partition_records)

        merged = MergedOutput(
            records=tuple(records),
            counts_by_type=counts,
            succeeded_count=len(records),
            failed_count=failed,
            content_hash=hash_lines(r.line for r in records),
        )
        logger.info(
            "results_merged",
            extra={
                "record_count": merged.record_count,
                "failed_count": merged.failed_count,
                "type_count": len(counts),
                "content_hash": merged.content_hash,
            },
        )
        return merged
