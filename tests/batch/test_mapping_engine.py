"""
Mapping engine: rule evaluation, type coercion, validation and formatting
of one source record into one output line.
"""

from datetime import date
from decimal import Decimal

import pytest

from tranche_batch.mapping.engine import coerce_value, evaluate_rule, map_record
from tranche_batch.mapping.formatting import fit_segment, format_value
from tranche_config.schema import (
    BlankRule,
    CompositeOperation,
    CompositeRule,
    ConditionalBranch,
    ConditionalRule,
    ConstantRule,
    FieldMappingDef,
    FieldType,
    OutputFormat,
    PaddingPolicy,
    PadSide,
    SourceRule,
    ValidationRuleDef,
)
from tranche_kernel.exceptions import InvalidMappingRuleError


def _mapping(target, position, rule, **kw):
    return FieldMappingDef(target=target, position=position, rule=rule, **kw)


class TestEvaluateRule:

    def test_source_case_insensitive_lookup(self):
        assert evaluate_rule(SourceRule("Amount"), {"amount": "5"}, "amt") == ("5", None)

    def test_source_default_for_blank(self):
        assert evaluate_rule(SourceRule("memo", default="N/A"), {"memo": "  "}, "memo") == ("N/A", None)

    def test_constant(self):
        assert evaluate_rule(ConstantRule("USD"), {}, "ccy") == ("USD", None)

    def test_blank(self):
        assert evaluate_rule(BlankRule(), {"x": 1}, "filler") == ("", None)

    def test_concat_skips_blanks_and_transforms(self):
        rule = CompositeRule(fields=("first", "middle", "last"), delimiter=" ", transform="upper")
        value, error = evaluate_rule(rule, {"first": "ada", "middle": "", "last": "lovelace"}, "name")
        assert value == "ADA LOVELACE"
        assert error is None

    @pytest.mark.parametrize(
        "operation, expected",
        [
            (CompositeOperation.SUM, Decimal("6.5")),
            (CompositeOperation.AVG, Decimal("6.5") / 3),
            (CompositeOperation.MIN, Decimal("1.5")),
            (CompositeOperation.MAX, Decimal("3")),
        ],
    )
    def test_numeric_composites(self, operation, expected):
        rule = CompositeRule(fields=("a", "b", "c"), operation=operation)
        value, error = evaluate_rule(rule, {"a": "1.5", "b": 2, "c": "3"}, "total")
        assert value == expected
        assert error is None

    def test_numeric_composite_rejects_text(self):
        rule = CompositeRule(fields=("a", "b"), operation=CompositeOperation.SUM)
        value, error = evaluate_rule(rule, {"a": "1", "b": "lots"}, "total")
        assert value is None
        assert error.code == "INVALID_NUMERIC_SOURCE"
        assert error.field == "total"

    def test_conditional_first_match_wins(self):
        rule = ConditionalRule(
            branches=(
                ConditionalBranch("record.amount > 1000", ConstantRule("HUGE")),
                ConditionalBranch("record.amount > 100", ConstantRule("BIG")),
            ),
            otherwise=ConstantRule("SMALL"),
        )
        assert evaluate_rule(rule, {"amount": "5000"}, "size")[0] == "HUGE"
        assert evaluate_rule(rule, {"amount": "500"}, "size")[0] == "BIG"
        assert evaluate_rule(rule, {"amount": "5"}, "size")[0] == "SMALL"

    def test_conditional_without_otherwise_is_blank(self):
        rule = ConditionalRule(branches=(ConditionalBranch("record.x == 1", ConstantRule("Y")),))
        assert evaluate_rule(rule, {"x": 2}, "flag")[0] == ""


class TestCoercion:

    def test_integer_from_whole_decimal_text(self):
        assert coerce_value("42.0", FieldType.INTEGER).value == 42

    def test_integer_rejects_fraction(self):
        result = coerce_value("4.2", FieldType.INTEGER)
        assert not result.success
        assert result.error.code == "INVALID_INTEGER"

    def test_decimal_with_thousands_separator(self):
        assert coerce_value("1,234.50", FieldType.DECIMAL).value == Decimal("1234.50")

    def test_decimal_rejects_nan(self):
        assert not coerce_value("NaN", FieldType.DECIMAL).success

    def test_date_with_explicit_format(self):
        assert coerce_value("31.03.2026", FieldType.DATE, "%d.%m.%Y").value == date(2026, 3, 31)

    def test_date_fallback_formats(self):
        assert coerce_value("20260331", FieldType.DATE).value == date(2026, 3, 31)

    def test_bad_date(self):
        assert coerce_value("yesterday", FieldType.DATE).error.code == "INVALID_DATE"


class TestFormatting:

    def test_format_value(self):
        assert format_value(Decimal("5"), ".2f") == "5.00"
        assert format_value(date(2026, 3, 31), "%Y%m%d") == "20260331"
        assert format_value(None) == ""

    def test_integer_format_on_decimal_is_a_mapping_error(self):
        with pytest.raises(InvalidMappingRuleError) as exc_info:
            format_value(Decimal("5.25"), "05d", "amount")
        assert exc_info.value.target == "amount"
        assert exc_info.value.code == "INVALID_MAPPING_RULE"

    def test_map_record_reports_format_against_target(self):
        mappings = (_mapping("amount", 1, SourceRule("amount"), field_type=FieldType.DECIMAL, format="05d"),)
        with pytest.raises(InvalidMappingRuleError) as exc_info:
            map_record({"amount": "1.5"}, mappings, OutputFormat.DELIMITED)
        assert exc_info.value.target == "amount"

    def test_fixed_width_left_pad(self):
        fm = _mapping("amt", 1, SourceRule("amt"), length=6, padding=PaddingPolicy(PadSide.LEFT, "0"))
        assert fit_segment("12.5", fm, OutputFormat.FIXED_WIDTH) == ("0012.5", None)

    def test_delimited_length_is_maximum_only(self):
        fm = _mapping("code", 1, SourceRule("code"), length=6)
        assert fit_segment("ab", fm, OutputFormat.DELIMITED) == ("ab", None)

    def test_too_long_without_truncate(self):
        fm = _mapping("code", 1, SourceRule("code"), length=2)
        _, error = fit_segment("abc", fm, OutputFormat.FIXED_WIDTH)
        assert error.code == "FIELD_TOO_LONG"

    def test_truncate_keeps_least_significant_digits_when_left_padded(self):
        fm = _mapping(
            "n", 1, SourceRule("n"), length=3,
            padding=PaddingPolicy(PadSide.LEFT, "0", truncate=True),
        )
        assert fit_segment("12345", fm, OutputFormat.FIXED_WIDTH) == ("345", None)


class TestMapRecord:

    MAPPINGS = (
        _mapping("amount", 2, SourceRule("amount"), field_type=FieldType.DECIMAL, format=".2f"),
        _mapping("id", 1, SourceRule("payment_id"), validation=ValidationRuleDef(required=True)),
        _mapping("ccy", 3, ConstantRule("USD")),
    )

    def test_fields_rendered_in_position_order(self):
        result = map_record({"payment_id": "P1", "amount": "10"}, self.MAPPINGS, OutputFormat.DELIMITED, "|")
        assert result.success
        assert result.line == "P1|10.00|USD"
        assert result.values["amount"] == Decimal("10")

    def test_fixed_width_line(self):
        mappings = (
            _mapping("id", 1, SourceRule("id"), length=4),
            _mapping("amt", 2, SourceRule("amt"), length=5, padding=PaddingPolicy(PadSide.LEFT, "0")),
        )
        result = map_record({"id": "AB", "amt": "7"}, mappings, OutputFormat.FIXED_WIDTH)
        assert result.line == "AB  00007"

    def test_all_errors_reported(self):
        result = map_record({"amount": "ten"}, self.MAPPINGS, OutputFormat.DELIMITED)
        assert not result.success
        assert {e.code for e in result.errors} == {"MISSING_REQUIRED_FIELD", "INVALID_DECIMAL"}
        assert result.line == ""

    @pytest.mark.parametrize(
        "rules, value, code",
        [
            (ValidationRuleDef(pattern=r"[A-Z]{3}"), "usd", "PATTERN_MISMATCH"),
            (ValidationRuleDef(allowed_values=("USD", "EUR")), "GBP", "VALUE_NOT_ALLOWED"),
            (ValidationRuleDef(max_length=2), "USD", "FIELD_TOO_LONG"),
        ],
    )
    def test_string_validation(self, rules, value, code):
        fm = _mapping("ccy", 1, SourceRule("ccy"), validation=rules)
        result = map_record({"ccy": value}, [fm], OutputFormat.DELIMITED)
        assert result.errors[0].code == code
        assert result.errors[0].field == "ccy"

    def test_range_validation(self):
        fm = _mapping(
            "amt", 1, SourceRule("amt"), field_type=FieldType.DECIMAL,
            validation=ValidationRuleDef(min_value="0", max_value="100"),
        )
        assert map_record({"amt": "50"}, [fm], OutputFormat.DELIMITED).success
        assert map_record({"amt": "-1"}, [fm], OutputFormat.DELIMITED).errors[0].code == "VALUE_OUT_OF_RANGE"

    def test_optional_blank_field_renders_empty(self):
        fm = _mapping("memo", 1, SourceRule("memo"))
        result = map_record({}, [fm, _mapping("x", 2, ConstantRule("1"))], OutputFormat.DELIMITED)
        assert result.line == ",1"
        assert result.values["memo"] is None
