"""
Module: tranche_kernel.db.base
Responsibility: Declarative base for the execution, staging, idempotency and
    counter tables.
Architecture position: Kernel > DB.  Imported by every model module; imports
    nothing from the rest of tranche.

Column conventions:
    - ``id`` is a uuid4 stored as String(36) (UUIDString), so PostgreSQL and
      the SQLite test database share one schema.
    - ``datetime`` annotations become timezone-aware DateTime.  SQLite hands
      them back naive; models pass them through ``ensure_utc``.
    - ``int`` annotations become BigInteger: sequence numbers and record
      counts of large executions do not fit a 32-bit column.
"""

from datetime import datetime
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID bound as its canonical 36-character string."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class Base(DeclarativeBase):
    """Every tranche table has a uuid4 primary key named ``id``."""

    type_annotation_map: ClassVar[dict] = {
        datetime: DateTime(timezone=True),
        UUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Adds database-maintained ``created_at``/``updated_at``.

    These record when the row changed, not when the execution did; lifecycle
    timestamps (started_at, finished_at, expires_at) come from the injected
    Clock and live on the models.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )
