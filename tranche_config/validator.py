"""
Job definition validation.

Checks a parsed ``JobDefinition`` for problems the loader cannot see:
numeric ranges of the documented keys, duplicate codes and positions,
dangling dependency references, fixed-width layouts without lengths,
and predicates outside the restricted AST.

Dependency cycles are NOT checked here; the sequencer detects them at
sequencing time so that a cycle is always reported with its members.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation

from tranche_config.predicate import validate_predicate
from tranche_config.schema import (
    CompositeRule,
    ConditionalRule,
    FieldMappingDef,
    FieldType,
    JobDefinition,
    OutputFormat,
    Rule,
)
from tranche_kernel.exceptions import InvalidJobConfigurationError


@dataclass(frozen=True)
class ConfigIssue:
    """One configuration problem, located by key path."""

    key: str
    message: str


def validate_job_definition(job: JobDefinition) -> list[ConfigIssue]:
    """Return every issue found.  Empty list means the job is valid."""
    issues: list[ConfigIssue] = []

    if job.parallel_threads < 1:
        issues.append(ConfigIssue("parallel_threads", "must be >= 1"))
    if job.chunk_size < 1:
        issues.append(ConfigIssue("chunk_size", "must be >= 1"))
    if not 0 <= job.error_threshold_percent <= 100:
        issues.append(ConfigIssue("error_threshold_percent", "must be between 0 and 100"))
    if job.retry_cooldown_seconds < 0:
        issues.append(ConfigIssue("retry_cooldown_seconds", "must be >= 0"))
    if job.idempotency_ttl_seconds < 1:
        issues.append(ConfigIssue("idempotency_ttl_seconds", "must be >= 1"))
    if job.max_retries < 0:
        issues.append(ConfigIssue("max_retries", "must be >= 0"))
    if job.output_format == OutputFormat.DELIMITED and not job.delimiter:
        issues.append(ConfigIssue("delimiter", "delimited output requires a delimiter"))
    if job.header_enabled and not job.header_template:
        issues.append(ConfigIssue("header_template", "header enabled without a template"))
    if job.footer_enabled and not job.footer_template:
        issues.append(ConfigIssue("footer_template", "footer enabled without a template"))

    codes = [tt.code for tt in job.transaction_types]
    seen: set[str] = set()
    for code in codes:
        if code in seen:
            issues.append(ConfigIssue(f"transaction_types.{code}", "duplicate transaction type code"))
        seen.add(code)

    for dep in job.dependency_declarations():
        if dep.transaction_type not in seen:
            issues.append(ConfigIssue(
                f"dependencies.{dep.transaction_type}",
                "dependency declared for an undefined transaction type",
            ))
        if dep.active and dep.depends_on not in seen:
            issues.append(ConfigIssue(
                f"transaction_types.{dep.transaction_type}.depends_on",
                f"unknown transaction type {dep.depends_on}",
            ))

    all_targets: set[str] = set()
    for tt in job.transaction_types:
        path = f"transaction_types.{tt.code}"
        if tt.selector.filter:
            issues.extend(_predicate_issues(tt.selector.filter, f"{path}.selector.filter"))

        positions: set[int] = set()
        for fm in tt.field_mappings:
            fpath = f"{path}.field_mappings.{fm.target}"
            all_targets.add(fm.target)
            if fm.position in positions:
                issues.append(ConfigIssue(fpath, f"duplicate position {fm.position}"))
            positions.add(fm.position)
            issues.extend(_mapping_issues(fm, job.output_format, fpath))

    for agg in job.aggregates:
        if agg.field not in all_targets:
            issues.append(ConfigIssue(
                f"aggregates.{agg.name}", f"unknown output field {agg.field}"
            ))

    return issues


def ensure_valid(job: JobDefinition) -> JobDefinition:
    """Raise InvalidJobConfigurationError on the first issue; return ``job`` otherwise."""
    issues = validate_job_definition(job)
    if issues:
        first = issues[0]
        raise InvalidJobConfigurationError(first.key, first.message)
    return job


def _mapping_issues(
    fm: FieldMappingDef, output_format: OutputFormat, path: str
) -> list[ConfigIssue]:
    issues: list[ConfigIssue] = []
    if output_format == OutputFormat.FIXED_WIDTH and not fm.length:
        issues.append(ConfigIssue(f"{path}.length", "fixed-width output requires a length"))
    if fm.length is not None and fm.length < 1:
        issues.append(ConfigIssue(f"{path}.length", "must be >= 1"))
    if len(fm.padding.pad_char) != 1:
        issues.append(ConfigIssue(f"{path}.padding.pad_char", "must be a single character"))
    if fm.validation.pattern is not None:
        try:
            re.compile(fm.validation.pattern)
        except re.error as exc:
            issues.append(ConfigIssue(f"{path}.validation.pattern", f"invalid regex: {exc}"))
    for bound in ("min_value", "max_value"):
        raw = getattr(fm.validation, bound)
        if raw is not None:
            try:
                Decimal(raw)
            except InvalidOperation:
                issues.append(ConfigIssue(f"{path}.validation.{bound}", "must be numeric"))
    if fm.field_type == FieldType.STRING and fm.format and "%" in fm.format:
        issues.append(ConfigIssue(f"{path}.format", "date format on a STRING field"))
    elif fm.format and fm.field_type in _FORMAT_SAMPLES:
        try:
            _FORMAT_SAMPLES[fm.field_type](fm.format)
        except (TypeError, ValueError) as exc:
            issues.append(ConfigIssue(
                f"{path}.format", f"{fm.format!r} does not apply to {fm.field_type.value}: {exc}"
            ))
    issues.extend(_rule_issues(fm.rule, f"{path}.rule"))
    return issues


# Render a representative value of each type; a format that fails here
# would fail on every record
_FORMAT_SAMPLES = {
    FieldType.INTEGER: lambda fmt: format(0, fmt),
    FieldType.DECIMAL: lambda fmt: format(Decimal(0), fmt),
    FieldType.DATE: lambda fmt: date.min.strftime(fmt),
}


def _rule_issues(rule: Rule, path: str) -> list[ConfigIssue]:
    match rule:
        case ConditionalRule(branches=branches, otherwise=otherwise):
            issues: list[ConfigIssue] = []
            for i, branch in enumerate(branches):
                issues.extend(_predicate_issues(branch.predicate, f"{path}.when[{i}].predicate"))
                issues.extend(_rule_issues(branch.rule, f"{path}.when[{i}].rule"))
            if otherwise is not None:
                issues.extend(_rule_issues(otherwise, f"{path}.otherwise"))
            return issues
        case CompositeRule(transform=transform) if transform not in (None, "upper", "lower", "trim"):
            return [ConfigIssue(f"{path}.transform", f"unknown transform {transform}")]
    return []


def _predicate_issues(expression: str, path: str) -> list[ConfigIssue]:
    return [ConfigIssue(path, e.message) for e in validate_predicate(expression)]
