"""
Typed Exception Hierarchy for the Tranche batch engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

An execution that fails must be classified precisely enough for an operator
to decide what to do next: retry as-is, fix configuration and resubmit, or
inspect data quality. Parsing message strings for that decision is fragile,
so every error here:
  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA (not just a message string)

Example:
    try:
        plan = sequencer.sequence(graph)
    except CycleDetectedError as e:
        log.error("cycle", extra={"members": e.members, "path": e.path})
        api_response(code=e.code, members=e.members)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from TrancheError:

    TrancheError (base)
    |
    +-- ConfigurationError                 (fatal, never retried automatically)
    |   +-- InvalidJobConfigurationError
    |   +-- JobConfigNotFoundError
    |   +-- UnknownDependencyError
    |   +-- CycleDetectedError
    |   +-- InvalidMappingRuleError
    |   +-- InvalidPredicateError
    |   +-- MissingTemplateVariableError
    |
    +-- InfrastructureError                (restartable after cooldown)
    |   +-- StagingStoreError
    |   +-- IdempotencyStoreError
    |   +-- ExecutionStoreError
    |
    +-- IdempotencyError
    |   +-- RequestConflictError
    |   +-- IdempotencyRecordNotFoundError
    |   +-- InvalidIdempotencyTransitionError
    |
    +-- ExecutionError
        +-- ExecutionNotFoundError
        +-- InvalidExecutionTransitionError
        +-- ExecutionStillActiveError

Per-record validation failures are NOT exceptions. They are represented by
``tranche_kernel.domain.dtos.ValidationError`` values and routed into the
partition result.

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|-----------------------------------
Configuration   | INVALID_JOB_CONFIGURATION     | Bad key, range or structure
                | JOB_CONFIG_NOT_FOUND          | Provider has no such job
                | UNKNOWN_DEPENDENCY            | depends_on names a missing type
                | CYCLE_DETECTED                | Dependency graph is not a DAG
                | INVALID_MAPPING_RULE          | Rule cannot be applied
                | INVALID_PREDICATE             | Predicate outside restricted AST
                | MISSING_TEMPLATE_VARIABLE     | Template references unknown name
----------------|-------------------------------|-----------------------------------
Infrastructure  | STAGING_STORE_UNAVAILABLE     | Staging I/O failed
                | IDEMPOTENCY_STORE_UNAVAILABLE | Idempotency I/O failed
                | EXECUTION_STORE_UNAVAILABLE   | Execution record I/O failed
----------------|-------------------------------|-----------------------------------
Idempotency     | REQUEST_CONFLICT              | Same key, different fingerprint
                | IDEMPOTENCY_RECORD_NOT_FOUND  | complete/fail on unknown key
                | INVALID_IDEMPOTENCY_TRANSITION| CAS lost or illegal transition
----------------|-------------------------------|-----------------------------------
Execution       | EXECUTION_NOT_FOUND           | Unknown execution id
                | INVALID_EXECUTION_TRANSITION  | Illegal lifecycle transition
                | EXECUTION_STILL_ACTIVE        | Purge of a non-terminal execution

===============================================================================
"""

from typing import ClassVar


class TrancheError(Exception):
    """
    Base exception for all tranche errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "TRANCHE_ERROR"


# Configuration errors


class ConfigurationError(TrancheError):
    """Base exception for configuration errors. Always fatal to an execution."""

    code: str = "CONFIGURATION_ERROR"
    failure_class: ClassVar[str] = "CONFIGURATION"


class InvalidJobConfigurationError(ConfigurationError):
    """A job definition key is missing, malformed or out of range."""

    code: str = "INVALID_JOB_CONFIGURATION"

    def __init__(self, key: str, reason: str, value: object = None):
        self.key = key
        self.reason = reason
        self.value = value
        super().__init__(f"Invalid job configuration at {key!r}: {reason}")


class JobConfigNotFoundError(ConfigurationError):
    """The configuration provider has no job with the given id."""

    code: str = "JOB_CONFIG_NOT_FOUND"

    def __init__(self, job_config_id: str):
        self.job_config_id = job_config_id
        super().__init__(f"Job configuration not found: {job_config_id}")


class UnknownDependencyError(ConfigurationError):
    """A transaction type depends on a code that is not defined in the job."""

    code: str = "UNKNOWN_DEPENDENCY"

    def __init__(self, transaction_type: str, missing: str):
        self.transaction_type = transaction_type
        self.missing = missing
        super().__init__(
            f"Transaction type {transaction_type} depends on undefined type {missing}"
        )


class CycleDetectedError(ConfigurationError):
    """
    The transaction-type dependency graph contains a cycle.

    ``members`` lists every node that could not be placed in a wave, sorted.
    ``path`` is one concrete cycle, first node repeated at the end.
    """

    code: str = "CYCLE_DETECTED"

    def __init__(self, members: list[str], path: list[str] | None = None):
        self.members = list(members)
        self.path = list(path or [])
        shown = " -> ".join(self.path) if self.path else ", ".join(self.members)
        super().__init__(f"Dependency cycle detected: {shown}")


class InvalidMappingRuleError(ConfigurationError):
    """A field-mapping rule is structurally invalid."""

    code: str = "INVALID_MAPPING_RULE"

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Invalid mapping rule for {target}: {reason}")


class InvalidPredicateError(ConfigurationError):
    """A conditional or selector predicate uses a disallowed construct."""

    code: str = "INVALID_PREDICATE"

    def __init__(self, expression: str, messages: list[str]):
        self.expression = expression
        self.messages = list(messages)
        super().__init__(
            f"Invalid predicate {expression!r}: {'; '.join(self.messages)}"
        )


class MissingTemplateVariableError(ConfigurationError):
    """A header/footer template references variables that are not available."""

    code: str = "MISSING_TEMPLATE_VARIABLE"

    def __init__(self, template: str, missing: list[str]):
        self.template = template
        self.missing = sorted(missing)
        super().__init__(
            f"Template references undefined variable(s): {', '.join(self.missing)}"
        )


# Infrastructure errors


class InfrastructureError(TrancheError):
    """Base exception for store/transport failures. Execution is restartable."""

    code: str = "INFRASTRUCTURE_ERROR"
    failure_class: ClassVar[str] = "INFRASTRUCTURE"


class StagingStoreError(InfrastructureError):
    """The staging store could not complete an operation."""

    code: str = "STAGING_STORE_UNAVAILABLE"

    def __init__(self, operation: str, execution_id: str | None = None, detail: str = ""):
        self.operation = operation
        self.execution_id = execution_id
        self.detail = detail
        super().__init__(f"Staging store {operation} failed: {detail}")


class IdempotencyStoreError(InfrastructureError):
    """The idempotency store could not complete an operation."""

    code: str = "IDEMPOTENCY_STORE_UNAVAILABLE"

    def __init__(self, operation: str, key: str, detail: str = ""):
        self.operation = operation
        self.key = key
        self.detail = detail
        super().__init__(f"Idempotency store {operation} failed for {key}: {detail}")


class ExecutionStoreError(InfrastructureError):
    """Execution records could not be read or written."""

    code: str = "EXECUTION_STORE_UNAVAILABLE"

    def __init__(self, operation: str, execution_id: str | None = None, detail: str = ""):
        self.operation = operation
        self.execution_id = execution_id
        self.detail = detail
        super().__init__(f"Execution store {operation} failed: {detail}")


# Idempotency errors


class IdempotencyError(TrancheError):
    """Base exception for idempotency protocol violations."""

    code: str = "IDEMPOTENCY_ERROR"


class RequestConflictError(IdempotencyError):
    """
    Key exists but was recorded for a different request fingerprint.

    Surfaced rather than silently reusing the cached result.
    """

    code: str = "REQUEST_CONFLICT"

    def __init__(self, key: str, expected_fingerprint: str, received_fingerprint: str):
        self.key = key
        self.expected_fingerprint = expected_fingerprint
        self.received_fingerprint = received_fingerprint
        super().__init__(
            f"Request conflict for idempotency key {key}: "
            f"expected {expected_fingerprint}, received {received_fingerprint}"
        )


class IdempotencyRecordNotFoundError(IdempotencyError):
    """No idempotency record exists for the key."""

    code: str = "IDEMPOTENCY_RECORD_NOT_FOUND"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Idempotency record not found: {key}")


class InvalidIdempotencyTransitionError(IdempotencyError):
    """A status change was attempted from a state that does not allow it."""

    code: str = "INVALID_IDEMPOTENCY_TRANSITION"

    def __init__(self, key: str, from_status: str, to_status: str):
        self.key = key
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid idempotency transition for {key}: {from_status} -> {to_status}"
        )


# Execution errors


class ExecutionError(TrancheError):
    """Base exception for execution lifecycle errors."""

    code: str = "EXECUTION_ERROR"


class ExecutionNotFoundError(ExecutionError):
    """Execution with given id was not found."""

    code: str = "EXECUTION_NOT_FOUND"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class InvalidExecutionTransitionError(ExecutionError):
    """Execution status change not permitted by the lifecycle."""

    code: str = "INVALID_EXECUTION_TRANSITION"

    def __init__(self, execution_id: str, from_status: str, to_status: str):
        self.execution_id = execution_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid execution transition for {execution_id}: "
            f"{from_status} -> {to_status}"
        )


class ExecutionStillActiveError(ExecutionError):
    """Staging purge requested while the owning execution is not terminal."""

    code: str = "EXECUTION_STILL_ACTIVE"

    def __init__(self, execution_id: str, status: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(
            f"Execution {execution_id} is still {status}; staging records retained"
        )
