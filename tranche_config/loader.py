"""
Job Definition Loader (``tranche_config.loader``).

Responsibility
--------------
Loads YAML job documents and parses them into the frozen dataclasses of
``tranche_config.schema``.

Invariants enforced
-------------------
* Every parse error raises ``InvalidJobConfigurationError`` naming the
  offending key path; there are no silent defaults for required fields.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any

import yaml

from tranche_config.schema import (
    AggregateDef,
    AggregateFunction,
    BlankRule,
    CompositeOperation,
    CompositeRule,
    ConditionalBranch,
    ConditionalRule,
    ConstantRule,
    DependencyDef,
    DependencyType,
    FieldMappingDef,
    FieldType,
    JobDefinition,
    OutputFormat,
    PaddingPolicy,
    PadSide,
    ProcessingMode,
    Rule,
    RuleKind,
    SourceRule,
    SourceSelectorDef,
    TransactionTypeDef,
    ValidationRuleDef,
)
from tranche_kernel.exceptions import InvalidJobConfigurationError
from tranche_kernel.utils.hashing import hash_payload

# camelCase spellings accepted for the documented job keys
_KEY_ALIASES: dict[str, str] = {
    "jobConfigId": "job_config_id",
    "jobName": "job_name",
    "processingMode": "processing_mode",
    "parallelThreads": "parallel_threads",
    "chunkSize": "chunk_size",
    "errorThresholdPercent": "error_threshold_percent",
    "retryCooldownSeconds": "retry_cooldown_seconds",
    "stagingRetentionOnFailure": "staging_retention_on_failure",
    "idempotencyTtlSeconds": "idempotency_ttl_seconds",
    "maxRetries": "max_retries",
    "outputFormat": "output_format",
    "headerEnabled": "header_enabled",
    "footerEnabled": "footer_enabled",
    "headerTemplate": "header_template",
    "footerTemplate": "footer_template",
    "transactionTypes": "transaction_types",
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_job_definition(path: Path) -> JobDefinition:
    """Load and parse one job document."""
    data = load_yaml_file(Path(path))
    if "job" in data and isinstance(data["job"], dict):
        data = data["job"]
    return parse_job_definition(data)


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    return {_KEY_ALIASES.get(k, k): v for k, v in data.items()}


def _enum(enum_cls, value: Any, path: str):
    try:
        if isinstance(value, str):
            lowered = {m.value.lower(): m for m in enum_cls}
            if value.lower() in lowered:
                return lowered[value.lower()]
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidJobConfigurationError(
            path, f"expected one of {allowed}", value
        ) from None


def _require(data: dict[str, Any], key: str, path: str) -> Any:
    if key not in data or data[key] is None:
        raise InvalidJobConfigurationError(f"{path}.{key}", "required key is missing")
    return data[key]


def _int(value: Any, path: str) -> int:
    if isinstance(value, bool):
        raise InvalidJobConfigurationError(path, "expected an integer", value)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidJobConfigurationError(path, "expected an integer", value) from None


def _bool(value: Any, path: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "yes", "y", "1"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "no", "n", "0"):
        return False
    raise InvalidJobConfigurationError(path, "expected a boolean", value)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def parse_rule(data: Any, path: str) -> Rule:
    """Parse one tagged transformation rule."""
    if not isinstance(data, dict):
        raise InvalidJobConfigurationError(path, "rule must be a mapping", data)

    kind = _enum(RuleKind, str(_require(data, "type", path)).lower(), f"{path}.type")

    match kind:
        case RuleKind.SOURCE:
            return SourceRule(
                field=str(_require(data, "field", path)),
                default=data.get("default"),
            )
        case RuleKind.CONSTANT:
            if "value" not in data:
                raise InvalidJobConfigurationError(f"{path}.value", "required key is missing")
            return ConstantRule(value=data["value"])
        case RuleKind.COMPOSITE:
            fields = _require(data, "fields", path)
            if not isinstance(fields, list) or not fields:
                raise InvalidJobConfigurationError(
                    f"{path}.fields", "expected a non-empty list", fields
                )
            return CompositeRule(
                fields=tuple(str(f) for f in fields),
                operation=_enum(
                    CompositeOperation,
                    data.get("operation", "concat"),
                    f"{path}.operation",
                ),
                delimiter=str(data.get("delimiter", "")),
                transform=data.get("transform"),
            )
        case RuleKind.CONDITIONAL:
            branches_raw = _require(data, "when", path)
            if not isinstance(branches_raw, list) or not branches_raw:
                raise InvalidJobConfigurationError(
                    f"{path}.when", "expected a non-empty list", branches_raw
                )
            branches = tuple(
                ConditionalBranch(
                    predicate=str(_require(b, "predicate", f"{path}.when[{i}]")),
                    rule=parse_rule(_require(b, "rule", f"{path}.when[{i}]"), f"{path}.when[{i}].rule"),
                )
                for i, b in enumerate(branches_raw)
            )
            otherwise = data.get("otherwise")
            return ConditionalRule(
                branches=branches,
                otherwise=parse_rule(otherwise, f"{path}.otherwise") if otherwise is not None else None,
            )
        case RuleKind.BLANK:
            return BlankRule(default=str(data.get("default", "")))


def parse_field_mapping(data: dict[str, Any], index: int, path: str) -> FieldMappingDef:
    """
    Parse one field mapping.

    ``source: <field>`` is accepted as shorthand for a source rule.
    """
    if "rule" in data:
        rule = parse_rule(data["rule"], f"{path}.rule")
    elif "source" in data:
        rule = SourceRule(field=str(data["source"]), default=data.get("default"))
    else:
        raise InvalidJobConfigurationError(f"{path}.rule", "required key is missing")

    validation_data = data.get("validation") or {}
    validation = ValidationRuleDef(
        required=_bool(validation_data.get("required", False), f"{path}.validation.required"),
        pattern=validation_data.get("pattern"),
        allowed_values=tuple(str(v) for v in validation_data.get("allowed_values", ())),
        min_value=str(validation_data["min_value"]) if validation_data.get("min_value") is not None else None,
        max_value=str(validation_data["max_value"]) if validation_data.get("max_value") is not None else None,
        max_length=_int(validation_data["max_length"], f"{path}.validation.max_length")
        if validation_data.get("max_length") is not None else None,
    )

    padding_data = data.get("padding") or {}
    padding = PaddingPolicy(
        side=_enum(PadSide, padding_data.get("side", "RIGHT"), f"{path}.padding.side"),
        pad_char=str(padding_data.get("pad_char", " ")),
        trim=_bool(padding_data.get("trim", True), f"{path}.padding.trim"),
        truncate=_bool(padding_data.get("truncate", False), f"{path}.padding.truncate"),
    )

    return FieldMappingDef(
        target=str(_require(data, "target", path)),
        position=_int(data.get("position", index + 1), f"{path}.position"),
        rule=rule,
        field_type=_enum(FieldType, data.get("type", "STRING"), f"{path}.type"),
        length=_int(data["length"], f"{path}.length") if data.get("length") is not None else None,
        format=data.get("format"),
        validation=validation,
        padding=padding,
    )


def parse_transaction_type(data: dict[str, Any], path: str) -> TransactionTypeDef:
    """Parse a ``TransactionTypeDef`` from a dict."""
    data = _normalize_keys(data)
    selector_data = data.get("selector") or data.get("source_selector") or {}
    sort_by = selector_data.get("sort_by", ())
    if isinstance(sort_by, str):
        sort_by = (sort_by,)

    depends_on = data.get("depends_on") or ()
    if isinstance(depends_on, str):
        depends_on = (depends_on,)

    mappings_raw = data.get("field_mappings") or data.get("fields") or []
    return TransactionTypeDef(
        code=str(_require(data, "code", path)),
        processing_order=_int(
            data.get("processing_order", data.get("processingOrder", 0)),
            f"{path}.processing_order",
        ),
        parallel_eligible=_bool(
            data.get("parallel_eligible", data.get("parallelEligible", True)),
            f"{path}.parallel_eligible",
        ),
        depends_on=tuple(str(d) for d in depends_on),
        selector=SourceSelectorDef(
            filter=selector_data.get("filter"),
            sort_by=tuple(str(s) for s in sort_by),
            descending=_bool(selector_data.get("descending", False), f"{path}.selector.descending"),
        ),
        field_mappings=tuple(
            parse_field_mapping(m, i, f"{path}.field_mappings[{i}]")
            for i, m in enumerate(mappings_raw)
        ),
    )


def parse_dependency(data: dict[str, Any], path: str) -> DependencyDef:
    return DependencyDef(
        transaction_type=str(_require(data, "transaction_type", path)),
        depends_on=str(_require(data, "depends_on", path)),
        dependency_type=_enum(
            DependencyType,
            data.get("dependency_type", "SEQUENTIAL"),
            f"{path}.dependency_type",
        ),
        active=_bool(data.get("active", True), f"{path}.active"),
        priority_weight=_int(data.get("priority_weight", 0), f"{path}.priority_weight"),
    )


def parse_job_definition(data: dict[str, Any]) -> JobDefinition:
    """
    Parse a ``JobDefinition`` from a dict.

    Preconditions:
        - ``data`` contains at minimum ``job_config_id`` (or ``jobConfigId``).
    Raises:
        InvalidJobConfigurationError: on any missing or malformed key.
    """
    if not isinstance(data, dict):
        raise InvalidJobConfigurationError("job", "job document must be a mapping", data)
    data = _normalize_keys(data)

    job_config_id = str(_require(data, "job_config_id", "job"))
    types_raw = data.get("transaction_types") or []
    if not isinstance(types_raw, list):
        raise InvalidJobConfigurationError("job.transaction_types", "expected a list", types_raw)

    header_template = data.get("header_template")
    footer_template = data.get("footer_template")

    return JobDefinition(
        job_config_id=job_config_id,
        job_name=str(data.get("job_name", job_config_id)),
        processing_mode=_enum(
            ProcessingMode, data.get("processing_mode", "SIMPLE"), "job.processing_mode"
        ),
        parallel_threads=_int(data.get("parallel_threads", 4), "job.parallel_threads"),
        chunk_size=_int(data.get("chunk_size", 500), "job.chunk_size"),
        error_threshold_percent=_percent(data.get("error_threshold_percent", 0)),
        retry_cooldown_seconds=_int(
            data.get("retry_cooldown_seconds", 0), "job.retry_cooldown_seconds"
        ),
        staging_retention_on_failure=_bool(
            data.get("staging_retention_on_failure", True),
            "job.staging_retention_on_failure",
        ),
        idempotency_ttl_seconds=_int(
            data.get("idempotency_ttl_seconds", 86400), "job.idempotency_ttl_seconds"
        ),
        max_retries=_int(data.get("max_retries", 3), "job.max_retries"),
        output_format=_enum(
            OutputFormat, data.get("output_format", "DELIMITED"), "job.output_format"
        ),
        delimiter=str(data.get("delimiter", ",")),
        header_enabled=_bool(
            data.get("header_enabled", header_template is not None), "job.header_enabled"
        ),
        footer_enabled=_bool(
            data.get("footer_enabled", footer_template is not None), "job.footer_enabled"
        ),
        header_template=header_template,
        footer_template=footer_template,
        aggregates=tuple(
            AggregateDef(
                name=str(_require(a, "name", f"job.aggregates[{i}]")),
                field=str(_require(a, "field", f"job.aggregates[{i}]")),
                function=_enum(
                    AggregateFunction, a.get("function", "sum"), f"job.aggregates[{i}].function"
                ),
            )
            for i, a in enumerate(data.get("aggregates") or [])
        ),
        transaction_types=tuple(
            parse_transaction_type(t, f"job.transaction_types[{i}]")
            for i, t in enumerate(types_raw)
        ),
        dependencies=tuple(
            parse_dependency(d, f"job.dependencies[{i}]")
            for i, d in enumerate(data.get("dependencies") or [])
        ),
        version=_int(data.get("version", 1), "job.version"),
    )


def _percent(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidJobConfigurationError(
            "job.error_threshold_percent", "expected a number", value
        ) from None


def compute_checksum(job: JobDefinition) -> str:
    """Deterministic SHA-256 of a job definition."""
    return hash_payload(_to_plain(job))


def _to_plain(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj):
        plain = {f.name: _to_plain(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
        kind = getattr(type(obj), "kind", None)
        if isinstance(kind, RuleKind):
            plain["type"] = kind.value
        return plain
    if isinstance(obj, (list, tuple)):
        return [_to_plain(v) for v in obj]
    return obj
