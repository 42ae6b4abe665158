"""
ORM model for job executions.

Contract:
    JobExecutionModel persists one run of a job: lifecycle status, counts,
    failure classification and timestamps.  ``to_dto()`` returns the frozen
    ``JobExecution`` snapshot.

Architecture: tranche_batch/models.  Imports from tranche_kernel.db.base only.

Invariants enforced:
    - Status changes go through ``transition_to`` which consults
      EXECUTION_TRANSITIONS; terminal states are never left.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import Date, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tranche_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from tranche_batch.domain.types import ExecutionStatus, JobExecution


class JobExecutionModel(TrackedBase):
    """Persistent job execution record."""

    __tablename__ = "job_executions"

    __table_args__ = (
        Index("ix_job_executions_status", "status"),
        Index("ix_job_executions_job_date", "job_config_id", "business_date"),
        Index("ix_job_executions_idempotency_key", "idempotency_key"),
    )

    job_config_id: Mapped[str] = mapped_column(String(200), nullable=False)
    job_name: Mapped[str] = mapped_column(String(200), nullable=False)
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    processing_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(String(40), nullable=True)
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    filtered_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    config_checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    running_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def transition_to(self, target: ExecutionStatus) -> None:
        from tranche_batch.domain.transitions import validate_execution_transition
        from tranche_batch.domain.types import ExecutionStatus

        validate_execution_transition(self.id, ExecutionStatus(self.status), target)
        self.status = target.value

    def to_dto(self) -> JobExecution:
        from tranche_batch.domain.types import ExecutionStatus, FailureReason, JobExecution
        from tranche_config.schema import ProcessingMode
        from tranche_kernel.domain.clock import ensure_utc

        return JobExecution(
            execution_id=self.id,
            job_config_id=self.job_config_id,
            job_name=self.job_name,
            business_date=self.business_date,
            processing_mode=ProcessingMode(self.processing_mode),
            status=ExecutionStatus(self.status),
            idempotency_key=self.idempotency_key,
            failure_reason=FailureReason(self.failure_reason) if self.failure_reason else None,
            error_summary=self.error_summary,
            total_count=self.total_count,
            processed_count=self.processed_count,
            error_count=self.error_count,
            filtered_count=self.filtered_count,
            correlation_id=self.correlation_id,
            config_checksum=self.config_checksum,
            started_at=ensure_utc(self.started_at),
            running_at=ensure_utc(self.running_at),
            finished_at=ensure_utc(self.finished_at),
        )
