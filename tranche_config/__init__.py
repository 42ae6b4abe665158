"""
tranche_config -- Job definition schema, loading and validation.

Job definitions are authored as YAML, parsed into frozen dataclasses
(``schema``), checked (``validator``) and served read-only to the engine by a
``ConfigurationProvider``.  The ``predicate`` module implements the restricted
expression language used by conditional rules and source selectors.
"""

from tranche_config.loader import compute_checksum, load_job_definition, parse_job_definition
from tranche_config.provider import (
    ConfigurationProvider,
    InMemoryConfigurationProvider,
    YamlDirectoryConfigurationProvider,
)
from tranche_config.schema import JobDefinition, ProcessingMode, TransactionTypeDef
from tranche_config.validator import ensure_valid, validate_job_definition

__all__ = [
    "ConfigurationProvider",
    "InMemoryConfigurationProvider",
    "JobDefinition",
    "ProcessingMode",
    "TransactionTypeDef",
    "YamlDirectoryConfigurationProvider",
    "compute_checksum",
    "ensure_valid",
    "load_job_definition",
    "parse_job_definition",
    "validate_job_definition",
]
