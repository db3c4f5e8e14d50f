"""Dependency graph over resource addresses.

Edges point from a resource to the resources it references. A resource
is only created after everything it depends on, and deleted only after
everything that depends on it.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Mapping

import structlog

from sitestack.core.exceptions import (
    CycleDetectedError,
    UnresolvedReferenceError,
    VariableError,
)
from sitestack.engine.expressions import iter_references
from sitestack.models.schemas import Document, ResourceDeclaration

logger = structlog.get_logger(__name__)


@dataclass
class DependencyGraph:
    """Adjacency sets keyed by address: ``dependencies[a]`` is what ``a`` needs."""

    dependencies: dict[str, set[str]] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: Document) -> "DependencyGraph":
        """Build the graph from references and explicit ``depends_on`` edges."""
        declared = document.by_address
        graph = cls()
        for resource in document.resources:
            graph.dependencies[resource.address] = _collect_dependencies(
                resource, declared, document.variables
            )
        logger.debug(
            "dependency_graph_built",
            nodes=len(graph.dependencies),
            edges=sum(len(deps) for deps in graph.dependencies.values()),
        )
        return graph

    @classmethod
    def from_mapping(cls, dependencies: Mapping[str, Iterable[str]]) -> "DependencyGraph":
        """Build a graph from recorded dependencies, dropping edges to unknown nodes."""
        nodes = set(dependencies)
        return cls(
            dependencies={
                node: {dep for dep in deps if dep in nodes}
                for node, deps in dependencies.items()
            }
        )

    @property
    def nodes(self) -> list[str]:
        return sorted(self.dependencies)

    def dependents(self) -> dict[str, set[str]]:
        """Reverse edges: ``dependents()[a]`` is everything that needs ``a``."""
        reverse: dict[str, set[str]] = {node: set() for node in self.dependencies}
        for node, deps in self.dependencies.items():
            for dep in deps:
                reverse[dep].add(node)
        return reverse

    def levels(self) -> list[list[str]]:
        """
        Topological levels (Kahn's algorithm).

        Every node in level ``n`` depends only on nodes in levels ``< n``,
        so nodes of one level may be processed concurrently.

        Raises:
            CycleDetectedError: If the graph contains a cycle.
        """
        remaining = {node: set(deps) for node, deps in self.dependencies.items()}
        dependents = self.dependents()
        ready = sorted(node for node, deps in remaining.items() if not deps)
        levels: list[list[str]] = []
        placed = 0

        while ready:
            levels.append(ready)
            placed += len(ready)
            next_ready = set()
            for node in ready:
                for dependent in dependents[node]:
                    remaining[dependent].discard(node)
                    if not remaining[dependent]:
                        next_ready.add(dependent)
            for node in ready:
                del remaining[node]
            ready = sorted(next_ready)

        if placed != len(self.dependencies):
            raise CycleDetectedError(self._find_cycle(remaining))
        return levels

    def reverse_levels(self) -> list[list[str]]:
        """Levels for teardown: dependents come before their dependencies."""
        return list(reversed(self.levels()))

    def level_of(self) -> dict[str, int]:
        return {
            node: index
            for index, level in enumerate(self.levels())
            for node in level
        }

    def _find_cycle(self, remaining: dict[str, set[str]]) -> list[str]:
        """Return one cycle among the nodes Kahn's algorithm could not place."""
        start = sorted(remaining)[0]
        path: list[str] = []
        position: dict[str, int] = {}
        node = start
        while node not in position:
            position[node] = len(path)
            path.append(node)
            node = sorted(dep for dep in remaining[node] if dep in remaining)[0]
        return path[position[node]:] + [node]


def _collect_dependencies(
    resource: ResourceDeclaration,
    declared: Mapping[str, ResourceDeclaration],
    variables: Mapping[str, object],
) -> set[str]:
    deps: set[str] = set()
    for reference in iter_references(resource.attributes):
        if reference.is_variable:
            if reference.target not in variables:
                raise VariableError(
                    reference.target, f"referenced by {resource.address} but not declared"
                )
            continue
        if reference.target not in declared:
            raise UnresolvedReferenceError("${" + reference.text + "}", resource.address)
        deps.add(reference.target)

    for address in resource.depends_on:
        if address not in declared:
            raise UnresolvedReferenceError(address, resource.address, "depends_on target not declared")
        deps.add(address)
    return deps
