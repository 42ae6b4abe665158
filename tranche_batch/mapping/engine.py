"""
Mapping engine: pure transformation from one raw source record to one
formatted output record.  ZERO I/O.

Per field, in configured position order:
    1. evaluate the transformation rule (tagged variant dispatch)
    2. coerce to the field type
    3. run validation rules
    4. format and apply padding/trim

Failures are collected as ValidationError values; a record with any error
is not rendered.  Nothing here raises for bad data, only for rules that
cannot be applied at all (InvalidMappingRuleError).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from tranche_batch.mapping.formatting import fit_segment, format_value, render_line
from tranche_config.predicate import evaluate_predicate
from tranche_config.schema import (
    BlankRule,
    CompositeOperation,
    CompositeRule,
    ConditionalRule,
    ConstantRule,
    FieldMappingDef,
    FieldType,
    OutputFormat,
    Rule,
    SourceRule,
)
from tranche_kernel.domain.dtos import ValidationError
from tranche_kernel.exceptions import InvalidMappingRuleError


# -----------------------------------------------------------------------------
# Result types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class CoercionResult:
    """Result of coercing a raw value to a field type."""

    success: bool
    value: Any = None
    error: ValidationError | None = None


@dataclass(frozen=True)
class MappingResult:
    """Result of applying every field mapping to one raw record."""

    success: bool
    values: dict[str, Any] = field(default_factory=dict)
    segments: tuple[str, ...] = ()
    line: str = ""
    errors: tuple[ValidationError, ...] = ()


# -----------------------------------------------------------------------------
# Rule evaluation (pure)
# -----------------------------------------------------------------------------


def lookup(row: Mapping[str, Any], name: str) -> Any:
    """Exact key first, then a case-insensitive match."""
    if name in row:
        return row[name]
    lowered = name.lower()
    for key, value in row.items():
        if str(key).lower() == lowered:
            return value
    return None


def evaluate_rule(
    rule: Rule, row: Mapping[str, Any], target: str
) -> tuple[Any, ValidationError | None]:
    """Evaluate one transformation rule against a source record."""
    match rule:
        case SourceRule(field=name, default=default):
            value = lookup(row, name)
            if _is_blank(value):
                return default, None
            return value, None
        case ConstantRule(value=value):
            return value, None
        case CompositeRule():
            return _evaluate_composite(rule, row, target)
        case ConditionalRule(branches=branches, otherwise=otherwise):
            for branch in branches:
                if evaluate_predicate(branch.predicate, row):
                    return evaluate_rule(branch.rule, row, target)
            if otherwise is not None:
                return evaluate_rule(otherwise, row, target)
            return "", None
        case BlankRule(default=default):
            return default, None
    raise InvalidMappingRuleError(target, f"unsupported rule {type(rule).__name__}")


def _evaluate_composite(
    rule: CompositeRule, row: Mapping[str, Any], target: str
) -> tuple[Any, ValidationError | None]:
    inputs = [lookup(row, name) for name in rule.fields]
    present = [v for v in inputs if not _is_blank(v)]

    if rule.operation == CompositeOperation.CONCAT:
        text = rule.delimiter.join(str(v) for v in present)
        return apply_transform(text, rule.transform), None

    numbers: list[Decimal] = []
    for name, value in zip(rule.fields, inputs):
        if _is_blank(value):
            continue
        number = to_decimal(value)
        if number is None:
            return None, ValidationError(
                code="INVALID_NUMERIC_SOURCE",
                message=f"Source field {name!r} is not numeric: {value!r}",
                field=target,
            )
        numbers.append(number)

    if not numbers:
        return None, None

    match rule.operation:
        case CompositeOperation.SUM:
            return sum(numbers, Decimal(0)), None
        case CompositeOperation.AVG:
            return sum(numbers, Decimal(0)) / len(numbers), None
        case CompositeOperation.MIN:
            return min(numbers), None
        case CompositeOperation.MAX:
            return max(numbers), None
    raise InvalidMappingRuleError(target, f"unsupported composite operation {rule.operation}")


def apply_transform(value: Any, transform: str | None) -> Any:
    """Apply a named string transform. Pure function."""
    if value is None or not transform:
        return value
    t = transform.strip().lower()
    if not isinstance(value, str):
        return value
    if t in ("strip", "trim"):
        return value.strip()
    if t == "upper":
        return value.upper()
    if t == "lower":
        return value.lower()
    return value


# -----------------------------------------------------------------------------
# Coercion
# -----------------------------------------------------------------------------


def coerce_value(value: Any, field_type: FieldType, format_str: str | None = None) -> CoercionResult:
    """Coerce a transformed value to the field type. Pure function."""
    if field_type == FieldType.STRING:
        if isinstance(value, (date, datetime, Decimal, int)) and not isinstance(value, bool):
            return CoercionResult(success=True, value=value)
        return CoercionResult(success=True, value=str(value))

    if field_type == FieldType.INTEGER:
        if isinstance(value, int) and not isinstance(value, bool):
            return CoercionResult(success=True, value=value)
        number = to_decimal(value)
        if number is not None and number == number.to_integral_value():
            return CoercionResult(success=True, value=int(number))
        return CoercionResult(success=False, error=ValidationError(
            code="INVALID_INTEGER", message=f"Cannot coerce to integer: {value!r}",
        ))

    if field_type == FieldType.DECIMAL:
        number = to_decimal(value)
        if number is not None:
            return CoercionResult(success=True, value=number)
        return CoercionResult(success=False, error=ValidationError(
            code="INVALID_DECIMAL", message=f"Cannot coerce to decimal: {value!r}",
        ))

    if field_type == FieldType.DATE:
        if isinstance(value, datetime):
            return CoercionResult(success=True, value=value.date())
        if isinstance(value, date):
            return CoercionResult(success=True, value=value)
        s = str(value).strip()
        candidates = ("%Y-%m-%d", "%Y/%m/%d", "%Y%m%d", "%m/%d/%Y")
        if format_str and "%" in format_str:
            candidates = (format_str,) + candidates
        for fmt in candidates:
            try:
                return CoercionResult(success=True, value=datetime.strptime(s, fmt).date())
            except ValueError:
                continue
        return CoercionResult(success=False, error=ValidationError(
            code="INVALID_DATE", message=f"Cannot parse date: {s!r}",
        ))

    return CoercionResult(success=False, error=ValidationError(
        code="UNSUPPORTED_TYPE", message=f"Unsupported field type: {field_type}",
    ))


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------


def validate_value(value: Any, mapping: FieldMappingDef) -> list[ValidationError]:
    """Run the mapping's validation rule against a coerced, non-blank value."""
    rules = mapping.validation
    errors: list[ValidationError] = []
    text = format_value(value, None)

    if rules.pattern is not None and not re.fullmatch(rules.pattern, text):
        errors.append(ValidationError(
            code="PATTERN_MISMATCH",
            message=f"Value {text!r} does not match {rules.pattern!r}",
            field=mapping.target,
        ))

    if rules.allowed_values and text not in rules.allowed_values:
        errors.append(ValidationError(
            code="VALUE_NOT_ALLOWED",
            message=f"Value {text!r} not in allowed values",
            field=mapping.target,
            details={"allowed": list(rules.allowed_values)},
        ))

    if rules.min_value is not None or rules.max_value is not None:
        number = to_decimal(value)
        low = Decimal(rules.min_value) if rules.min_value is not None else None
        high = Decimal(rules.max_value) if rules.max_value is not None else None
        if number is None or (low is not None and number < low) or (high is not None and number > high):
            errors.append(ValidationError(
                code="VALUE_OUT_OF_RANGE",
                message=f"Value {text!r} outside [{rules.min_value}, {rules.max_value}]",
                field=mapping.target,
            ))

    if rules.max_length is not None and len(text) > rules.max_length:
        errors.append(ValidationError(
            code="FIELD_TOO_LONG",
            message=f"Value of length {len(text)} exceeds {rules.max_length}",
            field=mapping.target,
        ))

    return errors


# -----------------------------------------------------------------------------
# Apply mapping (pure)
# -----------------------------------------------------------------------------


def map_record(
    row: Mapping[str, Any],
    mappings: Sequence[FieldMappingDef],
    output_format: OutputFormat,
    delimiter: str = ",",
) -> MappingResult:
    """
    Apply field mappings to one raw record. Pure function.

    Every field is evaluated even after an error, so a failed record reports
    all of its problems at once.
    """
    errors: list[ValidationError] = []
    values: dict[str, Any] = {}
    segments: list[str] = []

    for fm in sorted(mappings, key=lambda m: m.position):
        raw, rule_error = evaluate_rule(fm.rule, row, fm.target)
        if rule_error is not None:
            errors.append(rule_error)
            continue

        if _is_blank(raw):
            if fm.validation.required:
                errors.append(ValidationError(
                    code="MISSING_REQUIRED_FIELD",
                    message=f"Required field {fm.target!r} is missing",
                    field=fm.target,
                ))
                continue
            value = None
        else:
            coerced = coerce_value(raw, fm.field_type, fm.format)
            if not coerced.success:
                errors.append(ValidationError(
                    code=coerced.error.code,
                    message=coerced.error.message,
                    field=fm.target,
                ))
                continue
            value = coerced.value
            field_errors = validate_value(value, fm)
            if field_errors:
                errors.extend(field_errors)
                continue

        text, fit_error = fit_segment(format_value(value, fm.format, fm.target), fm, output_format)
        if fit_error is not None:
            errors.append(fit_error)
            continue

        values[fm.target] = value
        segments.append(text)

    if errors:
        return MappingResult(success=False, values=values, errors=tuple(errors))

    return MappingResult(
        success=True,
        values=values,
        segments=tuple(segments),
        line=render_line(segments, output_format, delimiter),
    )


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        number = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def sort_token(value: Any) -> tuple[int, Any]:
    """Total-order key: numbers, then text, then missing.

    Values of different kinds are never compared with each other, so mixed
    columns sort (and min/max) without TypeError.
    """
    if value is None:
        return (2, "")
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        number = to_decimal(value)
        if number is not None and not number.is_nan():
            return (0, number)
    return (1, str(value))
