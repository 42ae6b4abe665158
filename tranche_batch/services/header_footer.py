"""
HeaderFooterGenerator -- bounding records around the merged body.

Templates use ``${name}`` placeholders with an optional default and an
optional format::

    ${name}  ${name?default}  ${name|format}  ${name?default|format}  $$

``format`` is a strftime pattern for dates and a format spec for numbers.
A placeholder without a default whose name is not available raises
MissingTemplateVariableError; nothing is ever rendered as empty by accident.

Built-in variables (always available): current_timestamp, current_date,
current_time, taken once per call from the injected Clock.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Sequence
from uuid import UUID

from tranche_batch.domain.types import MergedOutput, OutputRecord
from tranche_batch.mapping.engine import sort_token, to_decimal
from tranche_batch.mapping.formatting import format_value
from tranche_config.schema import AggregateDef, AggregateFunction, JobDefinition
from tranche_kernel.domain.clock import Clock, SystemClock
from tranche_kernel.exceptions import MissingTemplateVariableError
from tranche_kernel.logging_config import get_logger

logger = get_logger("batch.header_footer")

_PLACEHOLDER = re.compile(
    r"\$(?:(?P<escape>\$)"
    r"|\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)"
    r"(?:\?(?P<default>[^}|]*))?"
    r"(?:\|(?P<format>[^}]*))?\})"
)


def template_variables(template: str) -> list[str]:
    """Names referenced by a template, in first-use order."""
    names: list[str] = []
    for match in _PLACEHOLDER.finditer(template):
        name = match.group("name")
        if name and name not in names:
            names.append(name)
    return names


# -----------------------------------------------------------------------------
# Summary
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutionSummary:
    """Counts and aggregates available to a footer template."""

    execution_id: UUID
    job_config_id: str
    job_name: str
    business_date: date
    total_count: int
    success_count: int
    failure_count: int
    record_count: int
    aggregates: dict[str, Any] = field(default_factory=dict)

    def as_variables(self) -> dict[str, Any]:
        variables: dict[str, Any] = {
            "execution_id": self.execution_id,
            "job_config_id": self.job_config_id,
            "job_name": self.job_name,
            "business_date": self.business_date,
            "total_count": self.total_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "record_count": self.record_count,
        }
        variables.update(self.aggregates)
        return variables


def compute_aggregates(
    aggregates: Sequence[AggregateDef],
    records: Sequence[OutputRecord],
) -> dict[str, Any]:
    """Evaluate configured aggregates over the typed values of output records.

    Records without the field are skipped.  ``min``/``max`` of nothing is None;
    over mixed kinds they follow ``sort_token`` (numbers before text).
    """
    results: dict[str, Any] = {}
    for agg in aggregates:
        values = [r.values[agg.field] for r in records if r.values.get(agg.field) is not None]
        match agg.function:
            case AggregateFunction.COUNT:
                results[agg.name] = len(values)
            case AggregateFunction.SUM:
                numbers = [n for n in (to_decimal(v) for v in values) if n is not None]
                results[agg.name] = sum(numbers, Decimal(0))
            case AggregateFunction.MIN:
                results[agg.name] = min(values, key=sort_token, default=None)
            case AggregateFunction.MAX:
                results[agg.name] = max(values, key=sort_token, default=None)
    return results


def build_summary(
    execution_id: UUID,
    job: JobDefinition,
    business_date: date,
    merged: MergedOutput,
    total_count: int,
) -> ExecutionSummary:
    return ExecutionSummary(
        execution_id=execution_id,
        job_config_id=job.job_config_id,
        job_name=job.job_name,
        business_date=business_date,
        total_count=total_count,
        success_count=merged.succeeded_count,
        failure_count=merged.failed_count,
        record_count=merged.record_count,
        aggregates=compute_aggregates(job.aggregates, merged.records),
    )


# -----------------------------------------------------------------------------
# Generator
# -----------------------------------------------------------------------------


class HeaderFooterGenerator:
    """Renders header and footer templates."""

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()

    def header(self, template: str, variables: Mapping[str, Any]) -> str:
        return self.render(template, variables)

    def footer(self, template: str, summary: ExecutionSummary | Mapping[str, Any]) -> str:
        if isinstance(summary, ExecutionSummary):
            summary = summary.as_variables()
        return self.render(template, summary)

    def render(self, template: str, variables: Mapping[str, Any]) -> str:
        """Substitute every placeholder.

        Raises:
            MissingTemplateVariableError: listing every unresolved name.
        """
        now = self._clock.now_utc()
        scope: dict[str, Any] = {
            "current_timestamp": now,
            "current_date": now.date(),
            "current_time": now.time().replace(microsecond=0),
        }
        scope.update(variables)

        missing: list[str] = []

        def substitute(match: re.Match[str]) -> str:
            if match.group("escape"):
                return "$"
            name = match.group("name")
            default = match.group("default")
            fmt = match.group("format") or None
            if name not in scope:
                if default is None:
                    if name not in missing:
                        missing.append(name)
                    return ""
                return default
            value = scope[name]
            if value is None:
                return default or ""
            if fmt and hasattr(value, "strftime"):
                return value.strftime(fmt)
            return format_value(value, fmt, name)

        rendered = _PLACEHOLDER.sub(substitute, template)
        if missing:
            logger.error(
                "template_variable_missing",
                extra={"missing": missing},
            )
            raise MissingTemplateVariableError(template, missing)
        return rendered
