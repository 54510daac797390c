"""Resource dependency ordering and validation.

This module implements dependency management for plans:
1. The kind-level DAG (parent kinds before child kinds)
2. Dependency graph construction for individual operations
3. Topological sorting with deterministic tie-breaking
4. Cycle detection to prevent deadlocks

Resources may add edges beyond the kind DAG via ``metadata.dependsOn``:

```yaml
metadata:
  name: app-user
  dependsOn:
    - Cluster/analytics   # kind-qualified
    - reporting           # bare name, any kind in the same project
```
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import ConsistencyError
from .models import ResourceKind

logger = logging.getLogger(__name__)


class CyclicDependencyError(ConsistencyError):
    """Raised when a dependency cycle is detected."""

    pass


# Parent kinds each kind depends on. Deletes run in the reverse order.
KIND_DEPENDENCIES: dict[ResourceKind, list[ResourceKind]] = {
    ResourceKind.PROJECT: [],
    ResourceKind.NETWORK_CONTAINER: [ResourceKind.PROJECT],
    ResourceKind.NETWORK_ACCESS: [ResourceKind.PROJECT],
    ResourceKind.CLUSTER: [ResourceKind.PROJECT],
    ResourceKind.ALERT_CONFIGURATION: [ResourceKind.PROJECT],
    ResourceKind.ENCRYPTION_AT_REST: [ResourceKind.PROJECT],
    ResourceKind.DATABASE_USER: [ResourceKind.PROJECT, ResourceKind.CLUSTER],
    ResourceKind.SEARCH_INDEX: [ResourceKind.CLUSTER],
    ResourceKind.VPC_ENDPOINT: [ResourceKind.PROJECT],
    ResourceKind.NETWORK_PEERING: [ResourceKind.NETWORK_CONTAINER],
    ResourceKind.DATABASE_ROLE: [ResourceKind.DATABASE_USER],
}


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    key: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of dependencies between keys."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def add_node(self, key: str, depends_on: list[str] | None = None) -> None:
        """Add a node, merging edges if it already exists.

        Args:
            key: Node key.
            depends_on: Keys this node depends on.
        """
        node = self.nodes.setdefault(key, DependencyNode(key=key))
        for dep in depends_on or []:
            if dep not in node.depends_on:
                node.depends_on.append(dep)
            # Ensure all dependencies have nodes (even if not yet defined)
            self.nodes.setdefault(dep, DependencyNode(key=dep))

    def add_edge(self, key: str, depends_on: str) -> None:
        self.add_node(key, [depends_on])

    def dependents(self, key: str) -> list[str]:
        return sorted(n.key for n in self.nodes.values() if key in n.depends_on)

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.topological_sort()

    def topological_sort(self, sort_key: Callable[[str], Any] | None = None) -> list[str]:
        """Return keys in dependency order (dependencies first).

        Args:
            sort_key: Orders nodes that become ready at the same time.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        order = sort_key or (lambda k: k)

        # Build adjacency list (reversed - edges point to dependents)
        dependents: dict[str, list[str]] = {key: [] for key in self.nodes}
        in_degree: dict[str, int] = {key: 0 for key in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.key)
                in_degree[node.key] += 1

        # Kahn's algorithm
        result: list[str] = []
        queue = [key for key, degree in in_degree.items() if degree == 0]
        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort(key=order)
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self.nodes):
            cycle_nodes = sorted(key for key, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")
        return result

    def get_ready(self, satisfied: set[str], excluded: set[str] | None = None) -> list[str]:
        """Keys whose dependencies are all satisfied.

        Args:
            satisfied: Keys already completed.
            excluded: Keys that must not be returned (running or finished).
        """
        skip = satisfied | (excluded or set())
        return sorted(
            node.key
            for node in self.nodes.values()
            if node.key not in skip and all(dep in satisfied for dep in node.depends_on)
        )


def _kind_ranks() -> dict[ResourceKind, int]:
    graph = DependencyGraph()
    for kind, parents in KIND_DEPENDENCIES.items():
        graph.add_node(kind.value, [p.value for p in parents])
    ordered = graph.topological_sort()
    return {ResourceKind(key): rank for rank, key in enumerate(ordered)}


# Position of each kind in creation order
KIND_RANK: dict[ResourceKind, int] = _kind_ranks()


def parse_dependency_ref(ref: str) -> tuple[ResourceKind | None, str]:
    """Split a ``dependsOn`` entry into ``(kind, name)``.

    A prefix that is not a known kind is part of the name (``admin/alice``).
    """
    if "/" in ref:
        prefix, _, name = ref.partition("/")
        try:
            return ResourceKind(prefix), name
        except ValueError:
            pass
    return None, ref
