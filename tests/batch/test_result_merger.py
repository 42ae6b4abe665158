"""
ResultMerger: output order is fixed by configuration, never by which
partition finished first.
"""

from uuid import uuid4

from hypothesis import given, settings
from hypothesis import strategies as st

from tranche_batch.domain.types import FailedRecord, OutputRecord, PartitionResult, SourceRecord
from tranche_batch.sequencing import DependencyGraphBuilder, TransactionSequencer
from tranche_batch.services.result_merger import ResultMerger, simple_precedence, wave_precedence
from tranche_kernel.utils.hashing import hash_lines

EXECUTION_ID = uuid4()


def _out(code, seq):
    line = f"{code}-{seq}"
    return OutputRecord(
        transaction_type=code, sequence_number=seq, values={}, segments=(line,), line=line
    )


def _partition(code, seqs, failed=0):
    return PartitionResult(
        execution_id=EXECUTION_ID,
        transaction_type=code,
        succeeded=tuple(_out(code, s) for s in seqs),
        failed=tuple(FailedRecord(SourceRecord(1000 + i, {}), ()) for i in range(failed)),
    )


class TestMerge:

    def test_precedence_beats_completion_order(self):
        # B finished first, but A has precedence
        results = [_partition("B", [1, 2]), _partition("A", [3])]
        merged = ResultMerger().merge(results, {"A": (1, "A"), "B": (2, "B")})

        assert merged.lines == ("A-3", "B-1", "B-2")
        assert merged.counts_by_type == {"A": 1, "B": 2}

    def test_records_ordered_by_sequence_within_partition(self):
        merged = ResultMerger().merge([_partition("A", [5, 1, 3])], {"A": (0, "A")})
        assert merged.lines == ("A-1", "A-3", "A-5")

    def test_unknown_types_go_last_by_code(self):
        results = [_partition("Z", [1]), _partition("Y", [1]), _partition("A", [1])]
        merged = ResultMerger().merge(results, {"A": (9, "A")})
        assert merged.lines == ("A-1", "Y-1", "Z-1")

    def test_counts_and_hash(self):
        merged = ResultMerger().merge(
            [_partition("A", [1, 2], failed=1), _partition("B", [], failed=2)],
            {"A": (0, "A"), "B": (1, "B")},
        )
        assert merged.succeeded_count == 2
        assert merged.failed_count == 3
        assert merged.success_rate == 40.0
        assert merged.content_hash == hash_lines(["A-1", "A-2"])

    def test_empty(self):
        merged = ResultMerger().merge([], {})
        assert merged.record_count == 0
        assert merged.success_rate == 100.0


class TestPrecedence:

    def test_simple_precedence_uses_order_hint(self, make_type, make_job):
        job = make_job([make_type("B", 1), make_type("A", 2)])
        assert simple_precedence(job) == {"B": (1, "B"), "A": (2, "A")}

    def test_wave_precedence_puts_dependents_after(self, make_type, make_job):
        types = [make_type("A", 5), make_type("B", 1, depends_on=["A"]), make_type("C", 9)]
        job = make_job(types)
        plan = TransactionSequencer().sequence(DependencyGraphBuilder().build(types))

        precedence = wave_precedence(job, plan)
        merged = ResultMerger().merge(
            [_partition("B", [1]), _partition("C", [2]), _partition("A", [3])], precedence
        )
        assert merged.lines == ("A-3", "C-2", "B-1")


class TestMergeProperties:

    @given(st.permutations(["A", "B", "C", "D"]), st.lists(st.integers(1, 50), min_size=1, max_size=5, unique=True))
    @settings(max_examples=50)
    def test_output_independent_of_completion_order(self, completion_order, seqs):
        precedence = {"A": (0, "A"), "B": (1, "B"), "C": (1, "C"), "D": (2, "D")}
        baseline = ResultMerger().merge([_partition(c, seqs) for c in "ABCD"], precedence)
        shuffled = ResultMerger().merge([_partition(c, seqs) for c in completion_order], precedence)

        assert shuffled.lines == baseline.lines
        assert shuffled.content_hash == baseline.content_hash
