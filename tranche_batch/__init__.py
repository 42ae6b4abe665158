"""
tranche_batch -- configuration-driven batch processing core.

Turns staged source records into ordered, formatted output documents.
SIMPLE jobs run every transaction type concurrently in one wave; COMPLEX
jobs resolve declared dependencies into waves that run in sequence, with
records parked in the staging store between intake and processing.  An
idempotency guard makes every execution safely restartable.

Architecture:
    tranche_batch/ is a top-level package.  Nothing in tranche_kernel or
    tranche_config imports from it (except create_tables, which registers
    its models).

Invariants:
    - Output order never depends on partition completion order.
    - Waves run strictly in sequence; dependents never run before their
      prerequisites.
    - At most one idempotency record per key; every status change is a
      compare-and-set.
    - Staged records are purged only for terminal executions.
    - All timestamps come from an injected Clock.
"""
