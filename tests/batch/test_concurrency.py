"""
Multi-threaded races against real SQLite databases.

Threads start together behind a Barrier and share one engine, the way
concurrent executions share the process-wide engine.  Every race runs
against a file database (one connection per session, BEGIN IMMEDIATE) and
the shared in-memory database (one connection, serialized transactions).
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from uuid import uuid4

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from tranche_batch.domain.types import (
    Conflict,
    ConflictReason,
    ExecutionRequest,
    ExecutionStatus,
    IdempotencyStatus,
    Proceed,
)
from tranche_batch.services.coordinator import ExecutionCoordinator
from tranche_batch.services.idempotency_guard import IdempotencyGuard
from tranche_batch.services.staging_store import StagingStore
from tranche_config.provider import InMemoryConfigurationProvider
from tranche_kernel.db.base import Base
from tranche_kernel.db.engine import create_sqlite_engine, transaction_scope

FP = "a" * 64
NUM_THREADS = 8


@pytest.fixture(params=["file", "memory"])
def threaded_engine(request, tmp_path):
    if request.param == "file":
        eng = create_sqlite_engine(f"sqlite:///{tmp_path / 'tranche.db'}")
    else:
        eng = create_sqlite_engine("sqlite://")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def threaded_factory(threaded_engine):
    return sessionmaker(bind=threaded_engine, expire_on_commit=False)


def _race(fn, num_threads=NUM_THREADS):
    """Run ``fn(i)`` on every thread at once; re-raise any thread's exception."""
    barrier = threading.Barrier(num_threads, timeout=30)

    def _run(i):
        barrier.wait()
        return fn(i)

    with ThreadPoolExecutor(max_workers=num_threads) as executor:
        futures = [executor.submit(_run, i) for i in range(num_threads)]
        return [f.result() for f in futures]


class TestEngineSelection:

    def test_file_database_opens_connection_per_session(self, tmp_path):
        eng = create_sqlite_engine(f"sqlite:///{tmp_path / 'a.db'}")
        try:
            assert isinstance(eng.pool, NullPool)
        finally:
            eng.dispose()

    def test_memory_database_shares_one_connection(self):
        eng = create_sqlite_engine("sqlite://")
        try:
            assert isinstance(eng.pool, StaticPool)
        finally:
            eng.dispose()

    def test_memory_transactions_do_not_interleave(self):
        eng = create_sqlite_engine("sqlite://")
        factory = sessionmaker(bind=eng)
        first_inside = threading.Event()
        release_first = threading.Event()
        second_inside = threading.Event()

        def first():
            with transaction_scope(factory):
                first_inside.set()
                release_first.wait(10)

        def second():
            first_inside.wait(10)
            with transaction_scope(factory):
                second_inside.set()

        try:
            with ThreadPoolExecutor(max_workers=2) as executor:
                a = executor.submit(first)
                b = executor.submit(second)
                first_inside.wait(10)
                assert not second_inside.wait(0.2)
                release_first.set()
                a.result()
                b.result()
            assert second_inside.is_set()
        finally:
            eng.dispose()

    def test_nested_scope_on_one_thread_does_not_deadlock(self):
        eng = create_sqlite_engine("sqlite://")
        factory = sessionmaker(bind=eng)
        try:
            with transaction_scope(factory):
                with transaction_scope(factory) as inner:
                    assert inner is not None
        finally:
            eng.dispose()


class TestConcurrentIdempotency:

    def test_exactly_one_caller_proceeds(self, threaded_factory, clock):
        guard = IdempotencyGuard(threaded_factory, clock=clock)

        decisions = _race(lambda i: guard.begin("job-42", FP, uuid4()))

        proceeded = [d for d in decisions if isinstance(d, Proceed)]
        conflicts = [d for d in decisions if isinstance(d, Conflict)]
        assert len(proceeded) == 1
        assert len(conflicts) == NUM_THREADS - 1
        assert {c.reason for c in conflicts} == {ConflictReason.IN_PROGRESS}
        assert guard.get("job-42").status == IdempotencyStatus.IN_PROGRESS

    def test_audit_trail_records_one_start(self, threaded_factory, clock):
        guard = IdempotencyGuard(threaded_factory, clock=clock)

        _race(lambda i: guard.begin("job-42", FP, uuid4()))

        starts = [h for h in guard.history("job-42") if h[1] == IdempotencyStatus.IN_PROGRESS.value]
        assert len(starts) == 1


class TestConcurrentStaging:

    def test_sequence_numbers_stay_unique(self, threaded_factory, clock):
        store = StagingStore(threaded_factory, clock=clock)
        execution_id = uuid4()
        per_thread = 5

        def stage(i):
            return [
                store.insert(execution_id, "PAYMENT", {"id": f"{i}-{n}"})
                for n in range(per_thread)
            ]

        numbers = [n for batch in _race(stage) for n in batch]

        total = NUM_THREADS * per_thread
        assert sorted(numbers) == list(range(1, total + 1))
        assert store.counts(execution_id).total == total

    def test_bulk_inserts_get_disjoint_blocks(self, threaded_factory, clock):
        store = StagingStore(threaded_factory, clock=clock, chunk_size=4)
        execution_id = uuid4()

        blocks = _race(lambda i: store.insert_many(
            execution_id, "PAYMENT", [{"id": f"{i}-{n}"} for n in range(10)]
        ))

        for block in blocks:
            assert block == sorted(block)
        assert len({n for block in blocks for n in block}) == NUM_THREADS * 10


class TestConcurrentExecutions:

    def test_duplicate_submissions_run_once(self, threaded_factory, clock, make_type, make_job):
        coordinator = ExecutionCoordinator(
            threaded_factory,
            InMemoryConfigurationProvider([make_job([make_type("PAYMENT")])]),
            clock=clock,
        )
        request = ExecutionRequest(
            job_config_id="daily_payments",
            business_date=date(2026, 3, 31),
            records={"PAYMENT": [{"id": "1", "amount": "1"}]},
            idempotency_key="run-1",
        )

        outcomes = _race(lambda i: coordinator.execute(request), num_threads=4)

        ran = [o for o in outcomes if o.execution is not None]
        assert len(ran) == 1
        assert ran[0].execution.status == ExecutionStatus.COMPLETED
