"""
IdempotencyGuard -- gates execution by idempotency key.

Contract:
    ``begin(key, fingerprint)`` returns exactly one of:
        Proceed       -- no record, PENDING, expired, stale IN_PROGRESS, or
                         FAILED past its cooldown and within the retry budget.
                         The record is now IN_PROGRESS and the caller owns it.
        ReturnCached  -- COMPLETED; the stored payload, verbatim.
        Conflict      -- IN_PROGRESS (duplicate concurrent submission) or
                         FAILED but not yet retryable.
    ``complete(key, payload)`` and ``fail(key, reason)`` perform the terminal
    transition from IN_PROGRESS.

Architecture: tranche_batch/services.  Takes a session factory and runs
    every operation in its own short transaction, so decisions are visible
    to concurrent callers as soon as they are made.

Invariants enforced:
    - At most one record per key (UNIQUE constraint; a racing first insert
      loses with IntegrityError and re-reads).
    - Every status change is a compare-and-set UPDATE
      (``WHERE status = :expected``) checked by rowcount, so two writers can
      never both win the same transition.
    - Same key with a different fingerprint raises RequestConflictError.
    - Every status change is recorded in idempotency_audit.
    - All timestamps come from the injected Clock.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tranche_batch.domain.transitions import validate_idempotency_transition
from tranche_batch.domain.types import (
    Conflict,
    ConflictReason,
    IdempotencyDecision,
    IdempotencyRecord,
    IdempotencyStatus,
    Proceed,
    ReturnCached,
)
from tranche_batch.models.idempotency import IdempotencyAuditModel, IdempotencyRecordModel
from tranche_batch.models.staging import to_json_safe
from tranche_kernel.db.engine import transaction_scope
from tranche_kernel.domain.clock import Clock, SystemClock, ensure_utc
from tranche_kernel.exceptions import (
    IdempotencyRecordNotFoundError,
    IdempotencyStoreError,
    InvalidIdempotencyTransitionError,
    RequestConflictError,
)
from tranche_kernel.logging_config import get_logger
from tranche_kernel.services.sequence_service import SequenceService

logger = get_logger("batch.idempotency")

AUDIT_SEQUENCE = "idempotency_audit"


class IdempotencyGuard:
    """Idempotency state machine over persistent records.

    Policy values given to the constructor are defaults; ``begin`` accepts
    per-job overrides (cooldown, TTL, retry budget).
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        retry_cooldown_seconds: int = 0,
        ttl_seconds: int = 86400,
        max_retries: int = 3,
        stale_after_seconds: int | None = 1800,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._retry_cooldown_seconds = retry_cooldown_seconds
        self._ttl_seconds = ttl_seconds
        self._max_retries = max_retries
        self._stale_after_seconds = stale_after_seconds

    # -------------------------------------------------------------------------
    # Begin
    # -------------------------------------------------------------------------

    def begin(
        self,
        key: str,
        fingerprint: str,
        execution_id: UUID | None = None,
        *,
        retry_cooldown_seconds: int | None = None,
        ttl_seconds: int | None = None,
        max_retries: int | None = None,
    ) -> IdempotencyDecision:
        """Decide whether the caller may run the request identified by ``key``.

        Raises:
            RequestConflictError: key exists with a different fingerprint.
            IdempotencyStoreError: the store could not be reached.
        """
        cooldown = self._retry_cooldown_seconds if retry_cooldown_seconds is None else retry_cooldown_seconds
        ttl = self._ttl_seconds if ttl_seconds is None else ttl_seconds
        budget = self._max_retries if max_retries is None else max_retries

        for attempt in range(2):
            try:
                with transaction_scope(self._session_factory) as session:
                    decision = self._begin(session, key, fingerprint, execution_id, cooldown, ttl, budget)
                break
            except IntegrityError as exc:
                # Lost the first-insert race; the winner's row is now visible
                if attempt == 1:
                    raise IdempotencyStoreError("begin", key, str(exc)) from exc
                logger.debug("idempotency_insert_race_retry", extra={"idempotency_key": key})
            except SQLAlchemyError as exc:
                logger.error(
                    "idempotency_store_error",
                    extra={"idempotency_key": key, "operation": "begin"},
                    exc_info=True,
                )
                raise IdempotencyStoreError("begin", key, str(exc)) from exc

        self._log_decision(decision)
        return decision

    def _begin(
        self,
        session: Session,
        key: str,
        fingerprint: str,
        execution_id: UUID | None,
        cooldown: int,
        ttl: int,
        budget: int,
    ) -> IdempotencyDecision:
        now = self._clock.now_utc()
        row = session.execute(
            select(IdempotencyRecordModel)
            .where(IdempotencyRecordModel.key == key)
            .with_for_update()
        ).scalar_one_or_none()

        if row is None:
            row = IdempotencyRecordModel(
                key=key,
                fingerprint=fingerprint,
                status=IdempotencyStatus.PENDING.value,
                execution_id=execution_id,
                retry_count=0,
                first_seen_at=now,
                expires_at=now + timedelta(seconds=ttl),
            )
            session.add(row)
            session.flush()
            self._audit(session, key, None, IdempotencyStatus.PENDING, "first_seen", execution_id, now)
            return self._start(session, row, IdempotencyStatus.PENDING, execution_id, now, attempt=1)

        status = IdempotencyStatus(row.status)

        if ensure_utc(row.expires_at) <= now and status != IdempotencyStatus.IN_PROGRESS:
            session.execute(
                update(IdempotencyRecordModel)
                .where(IdempotencyRecordModel.key == key, IdempotencyRecordModel.status == status.value)
                .values(
                    fingerprint=fingerprint,
                    status=IdempotencyStatus.PENDING.value,
                    result_payload=None,
                    error_message=None,
                    retry_count=0,
                    first_seen_at=now,
                    processed_at=None,
                    expires_at=now + timedelta(seconds=ttl),
                )
                .execution_options(synchronize_session=False)
            )
            self._audit(session, key, status, IdempotencyStatus.PENDING, "expired", execution_id, now)
            return self._start(session, row, IdempotencyStatus.PENDING, execution_id, now, attempt=1)

        if row.fingerprint != fingerprint:
            raise RequestConflictError(key, row.fingerprint, fingerprint)

        match status:
            case IdempotencyStatus.COMPLETED:
                return ReturnCached(key=key, payload=dict(row.result_payload or {}), execution_id=row.execution_id)

            case IdempotencyStatus.PENDING:
                return self._start(session, row, status, execution_id, now, attempt=row.retry_count + 1)

            case IdempotencyStatus.IN_PROGRESS:
                started = ensure_utc(row.started_at)
                if (
                    self._stale_after_seconds is not None
                    and started is not None
                    and now - started >= timedelta(seconds=self._stale_after_seconds)
                ):
                    logger.warning(
                        "idempotency_stale_recovered",
                        extra={"idempotency_key": key, "previous_execution_id": row.execution_id},
                    )
                    return self._start(
                        session, row, status, execution_id, now,
                        attempt=row.retry_count + 1, recovered_stale=True,
                    )
                return Conflict(key=key, reason=ConflictReason.IN_PROGRESS, execution_id=row.execution_id)

            case IdempotencyStatus.FAILED:
                if row.retry_count >= budget:
                    return Conflict(key=key, reason=ConflictReason.RETRY_LIMIT, execution_id=row.execution_id)
                retry_at = ensure_utc(row.processed_at or row.first_seen_at) + timedelta(seconds=cooldown)
                if now < retry_at:
                    return Conflict(
                        key=key,
                        reason=ConflictReason.COOLDOWN,
                        execution_id=row.execution_id,
                        retry_after=retry_at,
                    )
                return self._start(session, row, status, execution_id, now, attempt=row.retry_count + 1)

        raise InvalidIdempotencyTransitionError(key, status.value, IdempotencyStatus.IN_PROGRESS.value)

    def _start(
        self,
        session: Session,
        row: IdempotencyRecordModel,
        expected: IdempotencyStatus,
        execution_id: UUID | None,
        now: datetime,
        attempt: int,
        recovered_stale: bool = False,
    ) -> IdempotencyDecision:
        validate_idempotency_transition(row.key, expected, IdempotencyStatus.IN_PROGRESS)
        conditions = [
            IdempotencyRecordModel.key == row.key,
            IdempotencyRecordModel.status == expected.value,
        ]
        if recovered_stale:
            conditions.append(IdempotencyRecordModel.started_at == row.started_at)

        result = session.execute(
            update(IdempotencyRecordModel)
            .where(*conditions)
            .values(
                status=IdempotencyStatus.IN_PROGRESS.value,
                execution_id=execution_id,
                started_at=now,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return Conflict(key=row.key, reason=ConflictReason.IN_PROGRESS)

        reason = "stale_recovery" if recovered_stale else ("retry" if attempt > 1 else "begin")
        self._audit(session, row.key, expected, IdempotencyStatus.IN_PROGRESS, reason, execution_id, now)
        return Proceed(key=row.key, attempt=attempt, recovered_stale=recovered_stale)

    # -------------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------------

    def complete(self, key: str, payload: dict[str, Any]) -> None:
        """IN_PROGRESS -> COMPLETED, storing ``payload`` for later ReturnCached."""
        self._finish(
            key,
            IdempotencyStatus.COMPLETED,
            {"result_payload": to_json_safe(payload), "error_message": None},
            reason="complete",
        )

    def fail(self, key: str, reason: str) -> None:
        """IN_PROGRESS -> FAILED.  Consumes one unit of the retry budget."""
        self._finish(
            key,
            IdempotencyStatus.FAILED,
            {
                "error_message": reason,
                "retry_count": IdempotencyRecordModel.retry_count + 1,
            },
            reason=reason,
        )

    def _finish(
        self,
        key: str,
        target: IdempotencyStatus,
        values: dict[str, Any],
        reason: str,
    ) -> None:
        validate_idempotency_transition(key, IdempotencyStatus.IN_PROGRESS, target)
        now = self._clock.now_utc()
        try:
            with transaction_scope(self._session_factory) as session:
                result = session.execute(
                    update(IdempotencyRecordModel)
                    .where(
                        IdempotencyRecordModel.key == key,
                        IdempotencyRecordModel.status == IdempotencyStatus.IN_PROGRESS.value,
                    )
                    .values(status=target.value, processed_at=now, **values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    current = session.execute(
                        select(IdempotencyRecordModel.status).where(IdempotencyRecordModel.key == key)
                    ).scalar_one_or_none()
                    if current is None:
                        raise IdempotencyRecordNotFoundError(key)
                    raise InvalidIdempotencyTransitionError(key, current, target.value)
                execution_id = session.execute(
                    select(IdempotencyRecordModel.execution_id).where(IdempotencyRecordModel.key == key)
                ).scalar_one()
                self._audit(session, key, IdempotencyStatus.IN_PROGRESS, target, reason, execution_id, now)
        except SQLAlchemyError as exc:
            logger.error(
                "idempotency_store_error",
                extra={"idempotency_key": key, "operation": target.value.lower()},
                exc_info=True,
            )
            raise IdempotencyStoreError(target.value.lower(), key, str(exc)) from exc

        logger.info(
            "idempotency_finished",
            extra={"idempotency_key": key, "status": target.value, "reason": reason},
        )

    # -------------------------------------------------------------------------
    # Queries and housekeeping
    # -------------------------------------------------------------------------

    def get(self, key: str) -> IdempotencyRecord | None:
        with transaction_scope(self._session_factory) as session:
            row = session.execute(
                select(IdempotencyRecordModel).where(IdempotencyRecordModel.key == key)
            ).scalar_one_or_none()
            return row.to_dto() if row is not None else None

    def history(self, key: str) -> list[tuple[str | None, str, str | None]]:
        """Audit trail for a key as (from_status, to_status, reason), oldest first."""
        with transaction_scope(self._session_factory) as session:
            rows = session.execute(
                select(IdempotencyAuditModel)
                .where(IdempotencyAuditModel.key == key)
                .order_by(IdempotencyAuditModel.sequence)
            ).scalars().all()
            return [(r.from_status, r.to_status, r.reason) for r in rows]

    def purge_expired(self) -> int:
        """Delete expired records that are not IN_PROGRESS. Returns the count."""
        now = self._clock.now_utc()
        with transaction_scope(self._session_factory) as session:
            result = session.execute(
                delete(IdempotencyRecordModel)
                .where(
                    IdempotencyRecordModel.expires_at <= now,
                    IdempotencyRecordModel.status != IdempotencyStatus.IN_PROGRESS.value,
                )
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount
        logger.info("idempotency_expired_purged", extra={"count": count})
        return count

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _audit(
        self,
        session: Session,
        key: str,
        from_status: IdempotencyStatus | None,
        to_status: IdempotencyStatus,
        reason: str | None,
        execution_id: UUID | None,
        now: datetime,
    ) -> None:
        session.add(IdempotencyAuditModel(
            sequence=SequenceService(session).next_value(AUDIT_SEQUENCE),
            key=key,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            reason=reason,
            execution_id=execution_id,
            recorded_at=now,
        ))
        session.flush()

    @staticmethod
    def _log_decision(decision: IdempotencyDecision) -> None:
        match decision:
            case Proceed():
                logger.info(
                    "idempotency_proceed",
                    extra={
                        "idempotency_key": decision.key,
                        "attempt": decision.attempt,
                        "recovered_stale": decision.recovered_stale,
                    },
                )
            case ReturnCached():
                logger.info("idempotency_return_cached", extra={"idempotency_key": decision.key})
            case Conflict():
                logger.warning(
                    "idempotency_conflict",
                    extra={"idempotency_key": decision.key, "reason": decision.reason.value},
                )
