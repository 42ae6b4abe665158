"""
PartitionProcessor and source selection: per-record outcomes, ordering,
cancellation, selector filter and sort.
"""

import threading
from datetime import date
from uuid import uuid4

import pytest

from tranche_batch.domain.types import PartitionContext, SourceRecord
from tranche_batch.services.partition_processor import PartitionProcessor, select_records
from tranche_config.schema import SourceSelectorDef


def _context(job, code, cancel_event=None):
    return PartitionContext(
        execution_id=uuid4(),
        job=job,
        transaction_type=job.transaction_type(code),
        business_date=date(2026, 3, 31),
        cancel_event=cancel_event or threading.Event(),
    )


def _records(*payloads):
    return [SourceRecord(sequence_number=i, payload=p) for i, p in enumerate(payloads, start=1)]


@pytest.fixture
def payment_job(make_type, make_job):
    return make_job([make_type("PAYMENT")])


class TestProcess:

    def test_valid_records_succeed_in_sequence_order(self, payment_job):
        records = list(reversed(_records({"id": "A", "amount": "1"}, {"id": "B", "amount": "2"})))

        result = PartitionProcessor().process(_context(payment_job, "PAYMENT"), records)

        assert [r.line for r in result.succeeded] == ["A,1", "B,2"]
        assert [r.sequence_number for r in result.succeeded] == [1, 2]
        assert result.failed == ()
        assert result.stopped is False

    def test_missing_mandatory_field_fails_each_record(self, payment_job):
        records = _records({"amount": "1"}, {"amount": "2"})

        result = PartitionProcessor().process(_context(payment_job, "PAYMENT"), records)

        assert len(result.failed) == 2
        assert len(result.succeeded) == 0
        assert result.failed[0].reason_code == "MISSING_REQUIRED_FIELD"
        assert result.error_rate_percent == 100.0

    def test_bad_record_does_not_abort_partition(self, payment_job):
        records = _records({"id": "A", "amount": "x"}, {"id": "B", "amount": "2"})

        result = PartitionProcessor().process(_context(payment_job, "PAYMENT"), records)

        assert result.total == 2
        assert [r.line for r in result.succeeded] == ["B,2"]
        assert "amount" in result.failed[0].message

    def test_record_ids_carried_through(self, payment_job):
        record_id = uuid4()
        records = [SourceRecord(1, {"id": "A", "amount": "1"}, record_id=record_id)]

        result = PartitionProcessor().process(_context(payment_job, "PAYMENT"), records)
        assert result.succeeded[0].record_id == record_id

    def test_empty_partition(self, payment_job):
        result = PartitionProcessor().process(_context(payment_job, "PAYMENT"), [])
        assert result.total == 0
        assert result.error_rate_percent == 0.0

    def test_progress_logged_per_interval(self, payment_job, captured_logs):
        records = _records(*({"id": str(i), "amount": "1"} for i in range(5)))

        PartitionProcessor(progress_interval=2).process(_context(payment_job, "PAYMENT"), records)

        progress = [r for r in captured_logs() if r["message"] == "partition_progress"]
        assert [r["processed"] for r in progress] == [2, 4]


class TestCancellation:

    def test_cancel_before_start_processes_nothing(self, payment_job):
        event = threading.Event()
        event.set()
        records = _records({"id": "A", "amount": "1"})

        result = PartitionProcessor().process(_context(payment_job, "PAYMENT", event), records)

        assert result.stopped is True
        assert result.total == 0

    def test_cancel_mid_partition_keeps_finished_records(self, payment_job):
        event = threading.Event()

        class _CancelAfterFirst(dict):
            def __getitem__(self, key):
                event.set()
                return super().__getitem__(key)

        records = [
            SourceRecord(1, _CancelAfterFirst(id="A", amount="1")),
            SourceRecord(2, {"id": "B", "amount": "2"}),
        ]

        result = PartitionProcessor().process(_context(payment_job, "PAYMENT", event), records)

        assert result.stopped is True
        assert [r.line for r in result.succeeded] == ["A,1"]


class TestSelectRecords:

    def test_filter_counts_dropped(self, make_type):
        tt = make_type("PAYMENT", selector=SourceSelectorDef(filter="record.status == 'OPEN'"))
        payloads = [{"id": "1", "status": "OPEN"}, {"id": "2", "status": "VOID"}]

        selected, filtered = select_records(tt, payloads)

        assert [p["id"] for p in selected] == ["1"]
        assert filtered == 1

    def test_sort_is_stable_and_numeric(self, make_type):
        tt = make_type("PAYMENT", selector=SourceSelectorDef(sort_by=("priority",)))
        payloads = [
            {"id": "a", "priority": 10},
            {"id": "b", "priority": 2},
            {"id": "c", "priority": 10},
            {"id": "d"},
        ]

        selected, _ = select_records(tt, payloads)
        assert [p["id"] for p in selected] == ["b", "a", "c", "d"]

    def test_descending(self, make_type):
        tt = make_type("PAYMENT", selector=SourceSelectorDef(sort_by=("acct",), descending=True))
        selected, _ = select_records(tt, [{"acct": "A"}, {"acct": "C"}, {"acct": "B"}])
        assert [p["acct"] for p in selected] == ["C", "B", "A"]

    def test_no_selector_keeps_input_order(self, make_type):
        payloads = [{"id": "2"}, {"id": "1"}]
        selected, filtered = select_records(make_type("PAYMENT"), payloads)
        assert selected == payloads
        assert filtered == 0
