"""
StagingStore: sequence assignment, readiness, restartable fetch,
compare-and-set outcomes, and purge guarded by execution status.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from tranche_batch.domain.types import ExecutionStatus
from tranche_batch.models.execution import JobExecutionModel
from tranche_batch.services.staging_store import StagingStore, staging_sequence_name
from tranche_kernel.db.engine import transaction_scope
from tranche_kernel.exceptions import ExecutionStillActiveError, StagingStoreError
from tranche_kernel.services.sequence_service import SequenceService


@pytest.fixture
def store(session_factory, clock):
    return StagingStore(session_factory, clock=clock, chunk_size=3)


@pytest.fixture
def execution_id():
    return uuid4()


def _save_execution(session_factory, execution_id, status, finished_at=None):
    with transaction_scope(session_factory) as session:
        session.add(JobExecutionModel(
            id=execution_id,
            job_config_id="daily_payments",
            job_name="Daily Payments",
            business_date=date(2026, 3, 31),
            processing_mode="COMPLEX",
            status=status.value,
            idempotency_key="DAILY_PAYMENTS:20260331:TEST",
            finished_at=finished_at,
        ))


def _payments(n):
    return [{"id": str(i), "amount": f"{i}.00"} for i in range(1, n + 1)]


class TestInsert:

    def test_sequence_numbers_follow_input_order(self, store, execution_id):
        numbers = store.insert_many(execution_id, "PAYMENT", _payments(7))
        assert numbers == [1, 2, 3, 4, 5, 6, 7]

    def test_types_share_one_counter_per_execution(self, store, execution_id):
        store.insert_many(execution_id, "PAYMENT", _payments(2))
        assert store.insert(execution_id, "REFUND", {"id": "r1"}) == 3

    def test_executions_have_independent_counters(self, store):
        a, b = uuid4(), uuid4()
        store.insert(a, "PAYMENT", {"id": "1"})
        assert store.insert(b, "PAYMENT", {"id": "1"}) == 1

    def test_payload_is_json_safe(self, store, execution_id):
        store.insert(execution_id, "PAYMENT", {"amount": Decimal("1.50"), "on": date(2026, 3, 31)})
        record = store.records(execution_id)[0]
        assert record.payload == {"amount": "1.50", "on": "2026-03-31"}

    def test_staged_records_start_unready(self, store, execution_id):
        store.insert_many(execution_id, "PAYMENT", _payments(2))
        counts = store.counts(execution_id)
        assert (counts.total, counts.ready, counts.pending) == (2, 0, 2)
        assert store.fetch_ready(execution_id, "PAYMENT") == []


class TestFetchReady:

    def test_only_ready_type_is_returned(self, store, execution_id):
        store.insert_many(execution_id, "PAYMENT", _payments(3))
        store.insert_many(execution_id, "REFUND", _payments(2))

        assert store.mark_dependency_met(execution_id, "PAYMENT") == 3
        ready = store.fetch_ready(execution_id, "PAYMENT")

        assert [r.sequence_number for r in ready] == [1, 2, 3]
        assert store.fetch_ready(execution_id, "REFUND") == []

    def test_mark_dependency_met_is_idempotent(self, store, execution_id):
        store.insert_many(execution_id, "PAYMENT", _payments(2))
        store.mark_dependency_met(execution_id, "PAYMENT")
        assert store.mark_dependency_met(execution_id, "PAYMENT") == 0

    def test_fetch_is_restartable(self, store, execution_id):
        store.insert_many(execution_id, "PAYMENT", _payments(5))
        store.mark_dependency_met(execution_id, "PAYMENT")

        first = store.fetch_ready(execution_id, "PAYMENT")
        second = store.fetch_ready(execution_id, "PAYMENT")
        assert [r.record_id for r in first] == [r.record_id for r in second]

    def test_finished_records_are_not_refetched(self, store, execution_id):
        store.insert_many(execution_id, "PAYMENT", _payments(3))
        store.mark_dependency_met(execution_id, "PAYMENT")
        ready = store.fetch_ready(execution_id, "PAYMENT")

        store.mark_processed(ready[0].record_id)
        store.mark_error(ready[1].record_id, "id: required")

        remaining = store.fetch_ready(execution_id, "PAYMENT")
        assert [r.sequence_number for r in remaining] == [3]


class TestOutcomes:

    def test_record_is_finished_at_most_once(self, store, execution_id):
        store.insert(execution_id, "PAYMENT", {"id": "1"})
        record_id = store.records(execution_id)[0].record_id

        assert store.mark_processed(record_id) is True
        assert store.mark_processed(record_id) is False
        assert store.mark_error(record_id, "late failure") is False

        record = store.records(execution_id)[0]
        assert record.processed is True
        assert record.error is False
        assert record.processed_at is not None

    def test_record_outcomes_counts_changes(self, store, execution_id):
        store.insert_many(execution_id, "PAYMENT", _payments(3))
        ids = [r.record_id for r in store.records(execution_id)]

        changed = store.record_outcomes(ids[:2], {ids[2]: "amount: invalid"})
        assert changed == 3
        assert store.record_outcomes(ids[:2], {ids[2]: "again"}) == 0

        counts = store.counts(execution_id)
        assert (counts.processed, counts.errored, counts.pending) == (2, 1, 0)
        assert store.records(execution_id)[2].error_message == "amount: invalid"


class TestPurge:

    @pytest.mark.parametrize("status", [ExecutionStatus.STARTED, ExecutionStatus.RUNNING])
    def test_refuses_while_active(self, store, session_factory, execution_id, status):
        _save_execution(session_factory, execution_id, status)
        store.insert_many(execution_id, "PAYMENT", _payments(2))

        with pytest.raises(ExecutionStillActiveError) as exc_info:
            store.purge(execution_id)
        assert exc_info.value.code == "EXECUTION_STILL_ACTIVE"
        assert store.counts(execution_id).total == 2

    @pytest.mark.parametrize(
        "status", [ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.STOPPED]
    )
    def test_removes_records_of_terminal_execution(self, store, session_factory, execution_id, status):
        _save_execution(session_factory, execution_id, status)
        store.insert_many(execution_id, "PAYMENT", _payments(4))

        assert store.purge(execution_id) == 4
        assert store.records(execution_id) == []

    def test_repeated_purge_is_noop(self, store, session_factory, execution_id):
        _save_execution(session_factory, execution_id, ExecutionStatus.COMPLETED)
        store.insert_many(execution_id, "PAYMENT", _payments(2))

        store.purge(execution_id)
        assert store.purge(execution_id) == 0

    def test_purge_discards_counter(self, store, session_factory, execution_id):
        _save_execution(session_factory, execution_id, ExecutionStatus.COMPLETED)
        store.insert(execution_id, "PAYMENT", {"id": "1"})
        store.purge(execution_id)

        with transaction_scope(session_factory) as session:
            assert SequenceService(session).current_value(staging_sequence_name(execution_id)) is None

    def test_purge_logged(self, store, session_factory, execution_id, captured_logs):
        _save_execution(session_factory, execution_id, ExecutionStatus.FAILED)
        store.insert(execution_id, "PAYMENT", {"id": "1"})
        store.purge(execution_id)

        purged = [r for r in captured_logs() if r["message"] == "staging_purged"]
        assert purged[0]["count"] == 1
        assert purged[0]["execution_id"] == str(execution_id)


class TestPurgeExpired:

    DAY = 24 * 3600

    def test_retained_records_expire_after_window(self, store, session_factory, execution_id, clock):
        _save_execution(session_factory, execution_id, ExecutionStatus.FAILED, clock.now_utc())
        store.insert_many(execution_id, "PAYMENT", _payments(3))

        assert store.purge_expired(self.DAY) == 0
        clock.advance(self.DAY + 1)
        assert store.purge_expired(self.DAY) == 3
        assert store.counts(execution_id).total == 0
        with transaction_scope(session_factory) as session:
            assert SequenceService(session).current_value(staging_sequence_name(execution_id)) is None

    def test_only_expired_executions_are_touched(self, store, session_factory, clock):
        old, recent = uuid4(), uuid4()
        _save_execution(session_factory, old, ExecutionStatus.STOPPED, clock.now_utc())
        clock.advance(self.DAY)
        _save_execution(session_factory, recent, ExecutionStatus.COMPLETED, clock.now_utc())
        store.insert_many(old, "PAYMENT", _payments(2))
        store.insert_many(recent, "PAYMENT", _payments(2))

        clock.advance(3600)
        assert store.purge_expired(self.DAY) == 2
        assert store.counts(old).total == 0
        assert store.counts(recent).total == 2

    @pytest.mark.parametrize("status", [ExecutionStatus.STARTED, ExecutionStatus.RUNNING])
    def test_active_execution_is_never_purged(self, store, session_factory, execution_id, clock, status):
        _save_execution(session_factory, execution_id, status)
        store.insert_many(execution_id, "PAYMENT", _payments(2))

        clock.advance(30 * self.DAY)
        assert store.purge_expired(self.DAY) == 0
        assert store.counts(execution_id).total == 2

    def test_records_without_execution_expire_by_age(self, store, execution_id, clock):
        store.insert_many(execution_id, "PAYMENT", _payments(2))

        assert store.purge_expired(self.DAY) == 0
        clock.advance(self.DAY)
        assert store.purge_expired(self.DAY) == 2

    def test_purge_expired_logged(self, store, session_factory, execution_id, clock, captured_logs):
        _save_execution(session_factory, execution_id, ExecutionStatus.FAILED, clock.now_utc())
        store.insert(execution_id, "PAYMENT", {"id": "1"})
        clock.advance(2 * self.DAY)
        store.purge_expired()

        purged = [r for r in captured_logs() if r["message"] == "staging_expired_purged"]
        assert purged[0]["count"] == 1
        assert purged[0]["executions"] == 1


class TestStoreErrors:

    def test_database_failure_is_typed(self, store, engine, execution_id):
        from tranche_kernel.db.base import Base

        Base.metadata.drop_all(engine)
        try:
            with pytest.raises(StagingStoreError) as exc_info:
                store.fetch_ready(execution_id, "PAYMENT")
            assert exc_info.value.operation == "fetch_ready"
            assert exc_info.value.code == "STAGING_STORE_UNAVAILABLE"
        finally:
            Base.metadata.create_all(engine)
