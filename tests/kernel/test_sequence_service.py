"""
SequenceService: locked counter rows, block allocation, savepoint safety.
"""

import pytest

from tranche_kernel.db.engine import transaction_scope
from tranche_kernel.services.sequence_service import SequenceService


class TestNextValue:

    def test_first_value_is_one(self, session):
        assert SequenceService(session).next_value("staging:a") == 1

    def test_strictly_increasing(self, session):
        svc = SequenceService(session)
        values = [svc.next_value("staging:a") for _ in range(5)]
        assert values == [1, 2, 3, 4, 5]

    def test_counters_are_independent(self, session):
        svc = SequenceService(session)
        svc.next_value("staging:a")
        svc.next_value("staging:a")
        assert svc.next_value("staging:b") == 1
        assert svc.current_value("staging:a") == 2


class TestNextBlock:

    def test_block_reserves_contiguous_range(self, session):
        svc = SequenceService(session)
        assert svc.next_block("staging:x", 10) == 1
        assert svc.next_block("staging:x", 3) == 11
        assert svc.current_value("staging:x") == 13

    def test_rejects_empty_block(self, session):
        with pytest.raises(ValueError):
            SequenceService(session).next_block("staging:x", 0)

    def test_rollback_returns_values(self, session_factory):
        with pytest.raises(RuntimeError):
            with transaction_scope(session_factory) as s:
                SequenceService(s).next_block("staging:r", 5)
                raise RuntimeError("abort")

        with transaction_scope(session_factory) as s:
            assert SequenceService(s).current_value("staging:r") is None
            assert SequenceService(s).next_value("staging:r") == 1

    def test_creation_inside_outer_transaction_keeps_prior_work(self, session_factory):
        with transaction_scope(session_factory) as s:
            svc = SequenceService(s)
            svc.next_value("first")
            svc.next_value("second")

        with transaction_scope(session_factory) as s:
            svc = SequenceService(s)
            assert svc.current_value("first") == 1
            assert svc.current_value("second") == 1

    def test_blocks_across_transactions_never_overlap(self, session_factory):
        firsts = []
        for _ in range(8):
            with transaction_scope(session_factory) as s:
                firsts.append(SequenceService(s).next_block("staging:c", 4))

        assert firsts == [1, 5, 9, 13, 17, 21, 25, 29]


class TestDiscard:

    def test_discard_removes_counter(self, session):
        svc = SequenceService(session)
        svc.next_value("staging:gone")
        assert svc.discard("staging:gone") is True
        assert svc.current_value("staging:gone") is None

    def test_discard_unknown_is_false(self, session):
        assert SequenceService(session).discard("staging:never") is False
