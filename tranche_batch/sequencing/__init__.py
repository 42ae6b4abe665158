"""Dependency graph construction and wave sequencing (pure, ZERO I/O)."""

from tranche_batch.sequencing.graph import DependencyEdge, DependencyGraph, DependencyGraphBuilder
from tranche_batch.sequencing.sequencer import SequencePlan, TransactionSequencer

__all__ = [
    "DependencyEdge",
    "DependencyGraph",
    "DependencyGraphBuilder",
    "SequencePlan",
    "TransactionSequencer",
]
