"""
TransactionSequencer -- topological ordering of a dependency graph into waves.

Responsibility:
    Kahn's algorithm over a DependencyGraph.  Each round extracts every node
    whose in-degree is zero as one ExecutionWave, then decrements the
    in-degree of its dependents.  When nodes remain but none has in-degree
    zero, the graph has a cycle and sequencing fails with CycleDetectedError.
    No partial plan is ever returned.

Invariants enforced:
    - Every node appears in exactly one wave.
    - For every edge prerequisite -> dependent, the prerequisite's wave index
      is strictly lower than the dependent's.
    - Within a wave, codes are ordered by processing order ascending, then
      code ascending.  Dependency edges always dominate wave placement; the
      processing order only breaks ties inside a wave.
    - An empty graph yields an empty plan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from tranche_batch.domain.types import ExecutionWave
from tranche_batch.sequencing.graph import DependencyGraph
from tranche_kernel.exceptions import CycleDetectedError
from tranche_kernel.logging_config import get_logger

logger = get_logger("batch.sequencing.sequencer")


@dataclass(frozen=True)
class SequencePlan:
    """Ordered waves plus sequencing metrics."""

    waves: tuple[ExecutionWave, ...]
    dependency_count: int = 0
    levels: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self):
        # Read-only view over a private copy of the caller's mapping
        object.__setattr__(self, "levels", MappingProxyType(dict(self.levels)))

    @property
    def wave_count(self) -> int:
        return len(self.waves)

    @property
    def transaction_count(self) -> int:
        return sum(len(w.transaction_types) for w in self.waves)

    @property
    def max_parallelism(self) -> int:
        return max((len(w.transaction_types) for w in self.waves), default=0)

    @property
    def parallel_efficiency(self) -> float:
        """Share of sequential steps saved by running waves in parallel, in percent."""
        if self.transaction_count == 0:
            return 0.0
        return (1 - self.wave_count / self.transaction_count) * 100.0

    def level_of(self, code: str) -> int:
        return self.levels[code]

    def ordered_codes(self) -> tuple[str, ...]:
        return tuple(code for wave in self.waves for code in wave.transaction_types)


class TransactionSequencer:
    """Orders a DependencyGraph into execution waves."""

    def sequence(self, graph: DependencyGraph) -> SequencePlan:
        in_degree = [len(p) for p in graph.prerequisites]
        remaining = set(range(graph.node_count))
        waves: list[ExecutionWave] = []
        levels: dict[str, int] = {}

        ready = [i for i in remaining if in_degree[i] == 0]
        while ready:
            ready.sort(key=graph.sort_key)
            wave = ExecutionWave(
                index=len(waves),
                transaction_types=tuple(graph.codes[i] for i in ready),
            )
            waves.append(wave)

            next_ready: list[int] = []
            for node in ready:
                remaining.discard(node)
                levels[graph.codes[node]] = wave.index
                for dependent in graph.dependents[node]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_ready.append(dependent)
            ready = next_ready

        if remaining:
            members = self._cycle_members(graph, remaining)
            path = self._cycle_path(graph, members)
            logger.error(
                "dependency_cycle_detected",
                extra={"members": members, "path": path},
            )
            raise CycleDetectedError(members, path)

        plan = SequencePlan(
            waves=tuple(waves),
            dependency_count=graph.edge_count,
            levels=levels,
        )
        logger.info(
            "transactions_sequenced",
            extra={
                "transaction_count": plan.transaction_count,
                "dependency_count": plan.dependency_count,
                "wave_count": plan.wave_count,
                "max_parallelism": plan.max_parallelism,
                "parallel_efficiency": round(plan.parallel_efficiency, 2),
            },
        )
        return plan

    @staticmethod
    def _cycle_members(graph: DependencyGraph, remaining: set[int]) -> list[str]:
        """Nodes that lie on some cycle (reach themselves), sorted by code.

        Unplaced nodes that merely sit downstream of a cycle are excluded.
        """
        members: list[str] = []
        for start in remaining:
            stack = [d for d in graph.dependents[start] if d in remaining]
            visited: set[int] = set()
            while stack:
                node = stack.pop()
                if node == start:
                    members.append(graph.codes[start])
                    break
                if node in visited:
                    continue
                visited.add(node)
                stack.extend(d for d in graph.dependents[node] if d in remaining)
        return sorted(members)

    @staticmethod
    def _cycle_path(graph: DependencyGraph, members: list[str]) -> list[str]:
        """One concrete cycle through the members, first node repeated at the end.

        Depth-first search with three-colour marking; a GRAY neighbour closes
        the cycle.
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        member_idx = {graph.index_of(code) for code in members}
        color = {i: WHITE for i in member_idx}
        path: list[int] = []

        def dfs(node: int) -> list[int] | None:
            color[node] = GRAY
            path.append(node)
            for neighbor in graph.dependents[node]:
                if neighbor not in member_idx:
                    continue
                if color[neighbor] == GRAY:
                    start = path.index(neighbor)
                    return path[start:] + [neighbor]
                if color[neighbor] == WHITE:
                    found = dfs(neighbor)
                    if found:
                        return found
            color[node] = BLACK
            path.pop()
            return None

        for node in sorted(member_idx, key=graph.sort_key):
            if color[node] == WHITE:
                cycle = dfs(node)
                if cycle:
                    return [graph.codes[i] for i in cycle]
        return []
