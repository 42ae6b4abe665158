"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing sequence numbers per named counter.  The
    staging store keeps one counter per execution (``staging:<execution id>``)
    so that records inserted concurrently for the same execution, from any
    process, never share a sequence number.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Monotonicity: the locked counter row is the sole source of truth for
      the next value.  Aggregate max-plus-one over the staging table is never
      used.
    - Transactional: an increment is only visible after the caller's
      transaction commits.  Rollback returns the values.

Failure modes:
    - IntegrityError: concurrent counter creation race (handled via savepoint
      rollback and retry).
"""

from sqlalchemy import BigInteger, String, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from tranche_kernel.db.base import Base
from tranche_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row is a named sequence with its current value.  Row-level locking
    keeps allocation monotonic under concurrency.
    """

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Contract:
        Accepts a sequence name and returns the next strictly-monotonic
        integer value (or a contiguous block of values).

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.

    Usage:
        with transaction_scope(session_factory) as session:
            first = SequenceService(session).next_block("staging:<id>", 500)
    """

    def __init__(self, session: Session):
        self._session = session

    def next_value(self, sequence_name: str) -> int:
        """Get the next value for a named sequence (always > 0)."""
        return self.next_block(sequence_name, 1)

    def next_block(self, sequence_name: str, count: int) -> int:
        """
        Reserve ``count`` consecutive values and return the first one.

        The caller owns ``[first, first + count)``.  The counter row stays
        locked until the transaction completes.
        """
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")

        counter = self._lock_counter(sequence_name)

        if counter is None:
            # First use of this sequence. Another session may be creating the
            # same row; a savepoint keeps the caller's work intact on a race.
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=count)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "first": 1, "count": count},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                self._session.expire_all()
                counter = self._lock_counter(sequence_name)
                if counter is None:
                    raise

        first = counter.current_value + 1
        counter.current_value += count
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "first": first, "count": count},
        )
        return first

    def current_value(self, sequence_name: str) -> int | None:
        """Current value of a sequence without incrementing, or None if unused."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None

    def discard(self, sequence_name: str) -> bool:
        """Delete a counter that will never be used again. Returns True if removed."""
        result = self._session.execute(
            delete(SequenceCounter).where(SequenceCounter.name == sequence_name)
        )
        return result.rowcount > 0

    def _lock_counter(self, sequence_name: str) -> SequenceCounter | None:
        # Fresh read: the session may hold a stale counter from an earlier call
        self._session.expire_all()
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
