"""Restricted predicate language: AST whitelist and evaluation semantics."""

import pytest

from tranche_config.predicate import evaluate_predicate, validate_predicate
from tranche_kernel.exceptions import InvalidPredicateError


class TestValidation:

    @pytest.mark.parametrize(
        "expression",
        [
            "record.amount > 100",
            "record.status in ['OPEN', 'HELD']",
            "not record.closed and len(record.memo) < 20",
            'record["account no"] == "001"',
            "startswith(upper(record.code), 'PAY')",
            "record.parent is None",
            "-record.amount >= 0",
        ],
    )
    def test_allowed(self, expression):
        assert validate_predicate(expression) == []

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os').system('ls')",
            "record.amount + 1 > 2",
            "open('x')",
            "record.a.b == 1",
            "os == 1",
            "[x for x in record]",
            "lambda: 1",
            "len(record.memo, key=1)",
        ],
    )
    def test_rejected(self, expression):
        assert validate_predicate(expression) != []

    def test_syntax_error_reported(self):
        errors = validate_predicate("record.amount >")
        assert errors[0].message.startswith("Syntax error")

    def test_evaluate_rejects_invalid(self):
        with pytest.raises(InvalidPredicateError) as exc_info:
            evaluate_predicate("exec('x')", {})
        assert exc_info.value.code == "INVALID_PREDICATE"


class TestEvaluation:

    def test_numeric_comparison_on_string_value(self):
        assert evaluate_predicate("record.amount > 100", {"amount": "150.00"})
        assert not evaluate_predicate("record.amount > 100", {"amount": "99.99"})

    def test_missing_field_comparison_is_false(self):
        assert not evaluate_predicate("record.amount < 5", {})

    def test_membership(self):
        assert evaluate_predicate("record.status in ['OPEN', 'HELD']", {"status": "HELD"})
        assert evaluate_predicate("record.status not in ['OPEN']", {"status": "CLOSED"})

    def test_numeric_membership(self):
        assert evaluate_predicate("record.code in [1, 2]", {"code": "2"})

    def test_substring_membership(self):
        assert evaluate_predicate("'ACH' in record.memo", {"memo": "ACH credit"})

    def test_boolean_logic(self):
        record = {"a": 1, "b": 0}
        assert evaluate_predicate("record.a == 1 and not record.b == 1", record)
        assert evaluate_predicate("record.a == 2 or record.b == 0", record)

    def test_chained_comparison(self):
        assert evaluate_predicate("0 < record.n <= 10", {"n": 10})
        assert not evaluate_predicate("0 < record.n <= 10", {"n": 11})

    def test_functions(self):
        record = {"code": "pay-01", "memo": "abc"}
        assert evaluate_predicate("upper(record.code) == 'PAY-01'", record)
        assert evaluate_predicate("endswith(record.code, '01')", record)
        assert evaluate_predicate("len(record.memo) == 3", record)
        assert evaluate_predicate("abs(record.delta) == 5", {"delta": "-5"})

    def test_is_none(self):
        assert evaluate_predicate("record.parent is None", {})
        assert evaluate_predicate("record.parent is not None", {"parent": "x"})

    def test_subscript_access(self):
        assert evaluate_predicate('record["account no"] == "001"', {"account no": "001"})
