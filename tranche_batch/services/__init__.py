"""Batch services: idempotency guard, staging store, partition processing, merge, output and coordination."""

from tranche_batch.services.coordinator import ExecutionCoordinator
from tranche_batch.services.header_footer import ExecutionSummary, HeaderFooterGenerator
from tranche_batch.services.idempotency_guard import IdempotencyGuard
from tranche_batch.services.output_writer import (
    ExecutionObserver,
    FileOutputWriter,
    InMemoryOutputWriter,
    LoggingExecutionObserver,
    OutputWriter,
)
from tranche_batch.services.partition_processor import PartitionProcessor, select_records
from tranche_batch.services.result_merger import ResultMerger
from tranche_batch.services.staging_store import StagingCounts, StagingStore

__all__ = [
    "ExecutionCoordinator",
    "ExecutionObserver",
    "ExecutionSummary",
    "FileOutputWriter",
    "HeaderFooterGenerator",
    "IdempotencyGuard",
    "InMemoryOutputWriter",
    "LoggingExecutionObserver",
    "OutputWriter",
    "PartitionProcessor",
    "ResultMerger",
    "StagingCounts",
    "StagingStore",
    "select_records",
]
