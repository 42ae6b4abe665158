"""
Job definition schema.

Defines the human-authored, reviewable source artifact for one batch job:
processing mode, parallelism, output layout, transaction types with their
dependencies, and per-type field mappings.  YAML documents are parsed into
these types by the loader and checked by the validator.  The engine only
ever reads them.

Transformation rules are a tagged variant: every rule class carries a
``kind`` tag and its own data, and ``Rule`` is the closed union the mapping
engine matches on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProcessingMode(str, Enum):
    """Independent parallel partitions, or dependency-sequenced waves."""

    SIMPLE = "SIMPLE"
    COMPLEX = "COMPLEX"


class OutputFormat(str, Enum):
    DELIMITED = "DELIMITED"
    FIXED_WIDTH = "FIXED_WIDTH"


class FieldType(str, Enum):
    STRING = "STRING"
    INTEGER = "INTEGER"
    DECIMAL = "DECIMAL"
    DATE = "DATE"


class PadSide(str, Enum):
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    NONE = "NONE"


class RuleKind(str, Enum):
    SOURCE = "source"
    CONSTANT = "constant"
    COMPOSITE = "composite"
    CONDITIONAL = "conditional"
    BLANK = "blank"


class CompositeOperation(str, Enum):
    CONCAT = "concat"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


class DependencyType(str, Enum):
    """Declared nature of a dependency.  Every active type orders waves."""

    SEQUENTIAL = "SEQUENTIAL"
    CONDITIONAL = "CONDITIONAL"
    PARALLEL_SAFE = "PARALLEL_SAFE"
    RESOURCE_LOCK = "RESOURCE_LOCK"
    DATA_CONSISTENCY = "DATA_CONSISTENCY"


class AggregateFunction(str, Enum):
    SUM = "sum"
    COUNT = "count"
    MIN = "min"
    MAX = "max"


# ---------------------------------------------------------------------------
# Transformation rules (tagged variant)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceRule:
    """Direct copy of one source field, falling back to ``default``."""

    kind: ClassVar[RuleKind] = RuleKind.SOURCE

    field: str
    default: Any = None


@dataclass(frozen=True)
class ConstantRule:
    kind: ClassVar[RuleKind] = RuleKind.CONSTANT

    value: Any


@dataclass(frozen=True)
class CompositeRule:
    """Combine several source fields (concatenation or numeric reduction)."""

    kind: ClassVar[RuleKind] = RuleKind.COMPOSITE

    fields: tuple[str, ...]
    operation: CompositeOperation = CompositeOperation.CONCAT
    delimiter: str = ""
    transform: str | None = None  # upper | lower | trim


@dataclass(frozen=True)
class ConditionalBranch:
    predicate: str
    rule: Rule


@dataclass(frozen=True)
class ConditionalRule:
    """First branch whose predicate holds wins; otherwise ``otherwise`` (or blank)."""

    kind: ClassVar[RuleKind] = RuleKind.CONDITIONAL

    branches: tuple[ConditionalBranch, ...]
    otherwise: Rule | None = None


@dataclass(frozen=True)
class BlankRule:
    kind: ClassVar[RuleKind] = RuleKind.BLANK

    default: str = ""


Rule = Union[SourceRule, ConstantRule, CompositeRule, ConditionalRule, BlankRule]


# ---------------------------------------------------------------------------
# Field mappings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationRuleDef:
    """Checks run after transformation, before formatting."""

    required: bool = False
    pattern: str | None = None
    allowed_values: tuple[str, ...] = ()
    min_value: str | None = None  # Decimal-parsable
    max_value: str | None = None
    max_length: int | None = None


@dataclass(frozen=True)
class PaddingPolicy:
    side: PadSide = PadSide.RIGHT
    pad_char: str = " "
    trim: bool = True
    truncate: bool = False


@dataclass(frozen=True)
class FieldMappingDef:
    """One ordered output position produced from a transformation rule."""

    target: str
    position: int
    rule: Rule
    field_type: FieldType = FieldType.STRING
    length: int | None = None
    format: str | None = None
    validation: ValidationRuleDef = field(default_factory=ValidationRuleDef)
    padding: PaddingPolicy = field(default_factory=PaddingPolicy)


# ---------------------------------------------------------------------------
# Transaction types and dependencies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceSelectorDef:
    """Which source records belong to a transaction type, and in what order."""

    filter: str | None = None
    sort_by: tuple[str, ...] = ()
    descending: bool = False


@dataclass(frozen=True)
class DependencyDef:
    """Explicit dependency declaration: ``transaction_type`` runs after ``depends_on``."""

    transaction_type: str
    depends_on: str
    dependency_type: DependencyType = DependencyType.SEQUENTIAL
    active: bool = True
    priority_weight: int = 0


@dataclass(frozen=True)
class TransactionTypeDef:
    """A named partition of work within a job."""

    code: str
    processing_order: int = 0
    parallel_eligible: bool = True
    depends_on: tuple[str, ...] = ()
    selector: SourceSelectorDef = field(default_factory=SourceSelectorDef)
    field_mappings: tuple[FieldMappingDef, ...] = ()

    @property
    def ordered_mappings(self) -> tuple[FieldMappingDef, ...]:
        return tuple(sorted(self.field_mappings, key=lambda m: m.position))


# ---------------------------------------------------------------------------
# Job definition
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AggregateDef:
    """A footer summary value computed over succeeded output records."""

    name: str
    field: str
    function: AggregateFunction = AggregateFunction.SUM


@dataclass(frozen=True)
class JobDefinition:
    """
    Root configuration artifact for one batch job.

    ``transaction_types`` keep their authored order; the engine never relies
    on it (ordering comes from processing_order and dependencies).
    """

    job_config_id: str
    job_name: str
    processing_mode: ProcessingMode = ProcessingMode.SIMPLE
    parallel_threads: int = 4
    chunk_size: int = 500
    error_threshold_percent: float = 0.0
    retry_cooldown_seconds: int = 0
    staging_retention_on_failure: bool = True
    idempotency_ttl_seconds: int = 86400
    max_retries: int = 3
    output_format: OutputFormat = OutputFormat.DELIMITED
    delimiter: str = ","
    header_enabled: bool = False
    footer_enabled: bool = False
    header_template: str | None = None
    footer_template: str | None = None
    aggregates: tuple[AggregateDef, ...] = ()
    transaction_types: tuple[TransactionTypeDef, ...] = ()
    dependencies: tuple[DependencyDef, ...] = ()
    version: int = 1

    def transaction_type(self, code: str) -> TransactionTypeDef:
        for tt in self.transaction_types:
            if tt.code == code:
                return tt
        raise KeyError(code)

    def dependency_declarations(self) -> tuple[DependencyDef, ...]:
        """Inline ``depends_on`` references merged with explicit declarations."""
        inline = tuple(
            DependencyDef(transaction_type=tt.code, depends_on=dep)
            for tt in self.transaction_types
            for dep in tt.depends_on
        )
        return inline + self.dependencies
