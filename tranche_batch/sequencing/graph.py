"""
DependencyGraphBuilder -- flat dependency declarations to an index-based graph.

Responsibility:
    Turns a job's transaction types plus their dependency references into a
    directed graph whose nodes are integer indices and whose edges run from
    prerequisite to dependent.  No object references: cycle detection and
    wave extraction in the sequencer are plain list/set operations.

Invariants enforced:
    - Every dependency reference names a defined transaction type
      (UnknownDependencyError otherwise).
    - Inactive declarations contribute no edge.
    - Duplicate declarations collapse to one edge.
    - Self-references are KEPT as edges so the sequencer rejects them as a
      1-cycle exactly like a longer cycle.
    - Node indices follow the tie-break order (processing order, then code),
      so iterating indices in ascending order is already deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from tranche_config.schema import DependencyDef, DependencyType, TransactionTypeDef
from tranche_kernel.exceptions import InvalidJobConfigurationError, UnknownDependencyError
from tranche_kernel.logging_config import get_logger

logger = get_logger("batch.sequencing.graph")


@dataclass(frozen=True)
class DependencyEdge:
    prerequisite: str
    dependent: str
    dependency_type: DependencyType = DependencyType.SEQUENTIAL
    priority_weight: int = 0


@dataclass(frozen=True)
class DependencyGraph:
    """Immutable index-based dependency graph.

    ``dependents[i]`` lists the indices that must run after node ``i``;
    ``prerequisites[i]`` the indices node ``i`` waits for.
    """

    codes: tuple[str, ...]
    processing_orders: tuple[int, ...]
    dependents: tuple[tuple[int, ...], ...]
    prerequisites: tuple[tuple[int, ...], ...]
    edges: tuple[DependencyEdge, ...] = ()

    @property
    def node_count(self) -> int:
        return len(self.codes)

    @property
    def edge_count(self) -> int:
        return sum(len(d) for d in self.dependents)

    def index_of(self, code: str) -> int:
        return self.codes.index(code)

    def sort_key(self, index: int) -> tuple[int, str]:
        """Intra-wave tie-break: processing order ascending, then code ascending."""
        return (self.processing_orders[index], self.codes[index])

    def prerequisites_of(self, code: str) -> tuple[str, ...]:
        return tuple(self.codes[i] for i in self.prerequisites[self.index_of(code)])


class DependencyGraphBuilder:
    """Builds a DependencyGraph from transaction-type declarations."""

    def build(
        self,
        transaction_types: Iterable[TransactionTypeDef],
        dependencies: Iterable[DependencyDef] = (),
    ) -> DependencyGraph:
        types = list(transaction_types)

        seen: set[str] = set()
        for tt in types:
            if tt.code in seen:
                raise InvalidJobConfigurationError(
                    f"transaction_types.{tt.code}", "duplicate transaction type code"
                )
            seen.add(tt.code)

        ordered = sorted(types, key=lambda t: (t.processing_order, t.code))
        codes = tuple(t.code for t in ordered)
        index = {code: i for i, code in enumerate(codes)}

        declarations = [
            DependencyDef(transaction_type=tt.code, depends_on=dep)
            for tt in ordered
            for dep in tt.depends_on
        ]
        declarations.extend(dependencies)

        dependents: list[set[int]] = [set() for _ in codes]
        prerequisites: list[set[int]] = [set() for _ in codes]
        edges: list[DependencyEdge] = []

        for decl in declarations:
            if not decl.active:
                continue
            if decl.transaction_type not in index:
                raise UnknownDependencyError(decl.transaction_type, decl.transaction_type)
            if decl.depends_on not in index:
                raise UnknownDependencyError(decl.transaction_type, decl.depends_on)

            before = index[decl.depends_on]
            after = index[decl.transaction_type]
            if after in dependents[before]:
                continue
            dependents[before].add(after)
            prerequisites[after].add(before)
            edges.append(DependencyEdge(
                prerequisite=decl.depends_on,
                dependent=decl.transaction_type,
                dependency_type=decl.dependency_type,
                priority_weight=decl.priority_weight,
            ))

        graph = DependencyGraph(
            codes=codes,
            processing_orders=tuple(t.processing_order for t in ordered),
            dependents=tuple(tuple(sorted(d)) for d in dependents),
            prerequisites=tuple(tuple(sorted(p)) for p in prerequisites),
            edges=tuple(edges),
        )
        logger.debug(
            "dependency_graph_built",
            extra={"node_count": graph.node_count, "edge_count": graph.edge_count},
        )
        return graph
