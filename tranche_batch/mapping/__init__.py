"""Field-mapping engine: rule evaluation, coercion, validation and formatting."""

from tranche_batch.mapping.engine import MappingResult, evaluate_rule, map_record

__all__ = ["MappingResult", "evaluate_rule", "map_record"]
