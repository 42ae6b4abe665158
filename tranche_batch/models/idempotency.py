"""
ORM models for idempotency keys and their audit trail.

Contract:
    IdempotencyRecordModel -- one row per key (UNIQUE).  Status changes are
    written with compare-and-set UPDATEs (``WHERE status = :expected``) by
    IdempotencyGuard, never by mutating a loaded instance.
    IdempotencyAuditModel -- append-only log of every status change.

Architecture: tranche_batch/models.  Imports from tranche_kernel.db.base only.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tranche_kernel.db.base import Base, TrackedBase, UUIDString

if TYPE_CHECKING:
    from tranche_batch.domain.types import IdempotencyRecord


class IdempotencyRecordModel(TrackedBase):
    """Persistent idempotency record."""

    __tablename__ = "idempotency_records"

    __table_args__ = (
        Index("ix_idempotency_records_expires_at", "expires_at"),
    )

    key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    execution_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    result_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def to_dto(self) -> IdempotencyRecord:
        from tranche_batch.domain.types import IdempotencyRecord, IdempotencyStatus
        from tranche_kernel.domain.clock import ensure_utc

        return IdempotencyRecord(
            key=self.key,
            fingerprint=self.fingerprint,
            status=IdempotencyStatus(self.status),
            execution_id=self.execution_id,
            result_payload=self.result_payload,
            error_message=self.error_message,
            retry_count=self.retry_count,
            started_at=ensure_utc(self.started_at),
            processed_at=ensure_utc(self.processed_at),
            expires_at=ensure_utc(self.expires_at),
        )


class IdempotencyAuditModel(Base):
    """One idempotency status change.

    ``sequence`` comes from the ``idempotency_audit`` counter and orders
    entries that share a timestamp.
    """

    __tablename__ = "idempotency_audit"

    __table_args__ = (
        Index("ix_idempotency_audit_key", "key"),
    )

    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
