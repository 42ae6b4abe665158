"""
Downstream collaborators of the coordinator: output writer and execution observer.

Contract:
    ``OutputWriter.write(execution, document)`` serializes a completed
    execution's document.  ``ExecutionObserver.on_status_change(execution)``
    receives every lifecycle change (audit/monitoring sink).

Architecture:
    tranche_batch/services.  Protocols plus the default implementations
    (``FileOutputWriter``, ``LoggingExecutionObserver``).  Observers must
    not raise into the coordinator; a failing observer is logged and
    ignored.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from tranche_batch.domain.types import JobExecution, OutputDocument
from tranche_kernel.logging_config import get_logger

logger = get_logger("batch.output")


@runtime_checkable
class OutputWriter(Protocol):
    """Serializes the document of a COMPLETED execution."""

    def write(self, execution: JobExecution, document: OutputDocument) -> str | None:
        """Persist ``document``; returns a location (path, URI) when there is one."""
        ...


@runtime_checkable
class ExecutionObserver(Protocol):
    """Receives execution status changes."""

    def on_status_change(self, execution: JobExecution) -> None: ...


class FileOutputWriter:
    """Writes header, body and footer lines to one file per execution.

    The file name pattern is formatted with ``job_config_id``,
    ``business_date`` and ``execution_id``.
    """

    def __init__(
        self,
        directory: str | Path,
        filename_pattern: str = "{job_config_id}_{business_date:%Y%m%d}_{execution_id}.txt",
        encoding: str = "utf-8",
        line_terminator: str = "\n",
    ):
        self._directory = Path(directory)
        self._pattern = filename_pattern
        self._encoding = encoding
        self._terminator = line_terminator

    def path_for(self, execution: JobExecution) -> Path:
        name = self._pattern.format(
            job_config_id=execution.job_config_id,
            business_date=execution.business_date,
            execution_id=execution.execution_id,
        )
        return self._directory / name

    def write(self, execution: JobExecution, document: OutputDocument) -> str:
        path = self.path_for(execution)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".part")
        with tmp.open("w", encoding=self._encoding, newline="") as fh:
            for line in document.lines():
                fh.write(line)
                fh.write(self._terminator)
        tmp.replace(path)

        logger.info(
            "output_written",
            extra={
                "execution_id": execution.execution_id,
                "path": str(path),
                "line_count": len(document.lines()),
                "content_hash": document.content_hash,
            },
        )
        return str(path)


class InMemoryOutputWriter:
    """Keeps documents by execution id.  Used by tests and dry runs."""

    def __init__(self) -> None:
        self.documents: dict[str, OutputDocument] = {}

    def write(self, execution: JobExecution, document: OutputDocument) -> None:
        self.documents[str(execution.execution_id)] = document


class LoggingExecutionObserver:
    """Default observer: one structured log line per status change."""

    def on_status_change(self, execution: JobExecution) -> None:
        extra = {
            "execution_id": execution.execution_id,
            "job_config_id": execution.job_config_id,
            "status": execution.status.value,
            "total_count": execution.total_count,
            "processed_count": execution.processed_count,
            "error_count": execution.error_count,
        }
        if execution.failure_reason is not None:
            extra["failure_reason"] = execution.failure_reason.value
            logger.warning("execution_status_changed", extra=extra)
        else:
            logger.info("execution_status_changed", extra=extra)
