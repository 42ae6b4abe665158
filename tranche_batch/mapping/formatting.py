"""
Output formatting: typed value -> text segment -> rendered line.  ZERO I/O.

Padding/trim policy is applied last, per field.  In FIXED_WIDTH output a
field's ``length`` is its exact width (padded per policy).  In DELIMITED
output ``length`` is only a maximum; segments are not padded.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Sequence

from tranche_config.schema import FieldMappingDef, OutputFormat, PadSide
from tranche_kernel.domain.dtos import ValidationError
from tranche_kernel.exceptions import InvalidMappingRuleError


def format_value(value: Any, fmt: str | None = None, target: str = "value") -> str:
    """Render a typed value as text using an optional format pattern.

    Dates use ``strftime`` patterns; numbers use Python format specs
    (e.g. ``".2f"``, ``"012d"``).

    Raises:
        InvalidMappingRuleError: ``fmt`` does not apply to the value's type
            (``"05d"`` on a Decimal).  ``target`` names the field or
            template variable in the error.
    """
    if value is None:
        return ""
    if isinstance(value, (date, datetime)):
        return value.strftime(fmt) if fmt else value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, Decimal)):
        if fmt:
            try:
                return format(value, fmt)
            except (TypeError, ValueError) as exc:
                raise InvalidMappingRuleError(target, f"format {fmt!r} does not apply: {exc}") from exc
        return str(value)
    return str(value)


def fit_segment(
    text: str, mapping: FieldMappingDef, output_format: OutputFormat
) -> tuple[str, ValidationError | None]:
    """Apply trim, length and padding policy to one segment."""
    policy = mapping.padding
    if policy.trim:
        text = text.strip()

    length = mapping.length
    if length is not None and len(text) > length:
        if not policy.truncate:
            return text, ValidationError(
                code="FIELD_TOO_LONG",
                message=f"Value of length {len(text)} exceeds {length}",
                field=mapping.target,
                details={"length": len(text), "max": length},
            )
        # Numbers keep their least significant digits when left-padded
        text = text[-length:] if policy.side == PadSide.LEFT else text[:length]

    if output_format == OutputFormat.FIXED_WIDTH and length is not None:
        match policy.side:
            case PadSide.LEFT:
                text = text.rjust(length, policy.pad_char)
            case PadSide.RIGHT:
                text = text.ljust(length, policy.pad_char)
            case PadSide.NONE:
                pass

    return text, None


def render_line(
    segments: Sequence[str], output_format: OutputFormat, delimiter: str = ","
) -> str:
    if output_format == OutputFormat.FIXED_WIDTH:
        return "".join(segments)
    return delimiter.join(segments)
