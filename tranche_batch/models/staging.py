"""
ORM model for staged records awaiting sequenced processing.

Contract:
    StagingRecordModel holds one raw record between intake and processing.
    ``(execution_id, sequence_number)`` is UNIQUE, which backs the
    per-execution counter in SequenceService: a duplicate number can never
    be committed even if two writers raced.

Architecture: tranche_batch/models.  Imports from tranche_kernel.db.base only.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tranche_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from tranche_batch.domain.types import StagingRecord


def to_json_safe(obj: Any) -> Any:
    """Convert values to JSON-serializable form (Decimal -> str, etc.)."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, dict):
        return {str(k): to_json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_json_safe(v) for v in obj]
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    return obj


class StagingRecordModel(Base):
    """Execution-scoped staged record."""

    __tablename__ = "staging_records"

    __table_args__ = (
        UniqueConstraint(
            "execution_id", "sequence_number", name="uq_staging_execution_sequence"
        ),
        Index(
            "ix_staging_execution_type_seq",
            "execution_id", "transaction_type", "sequence_number",
        ),
    )

    execution_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(100), nullable=False)
    sequence_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    dependency_satisfied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> StagingRecord:
        from tranche_batch.domain.types import StagingRecord
        from tranche_kernel.domain.clock import ensure_utc

        return StagingRecord(
            record_id=self.id,
            execution_id=self.execution_id,
            transaction_type=self.transaction_type,
            sequence_number=self.sequence_number,
            payload=dict(self.payload or {}),
            dependency_satisfied=self.dependency_satisfied,
            processed=self.processed,
            error=self.error,
            error_message=self.error_message,
            created_at=ensure_utc(self.created_at),
            processed_at=ensure_utc(self.processed_at),
        )
