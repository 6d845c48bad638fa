"""Dependency graph for formula nodes with topological ordering.

Nodes live in an arena: identities are interned to small integer indices in
declaration order, and edges are adjacency lists of indices in both
directions.
"""

from __future__ import annotations

import heapq
from collections import deque
from collections.abc import Iterable
from typing import TYPE_CHECKING

from forgecalc.calc._errors import CycleError

if TYPE_CHECKING:
    from forgecalc.calc._resolver import BoundFormula


class DependencyGraph:
    """Tracks formula node dependencies for evaluation ordering.

    Only formula-bearing identities are nodes; references to literals add
    no edges.
    """

    __slots__ = ("dependencies", "dependents", "index", "nodes")

    def __init__(self) -> None:
        # index -> identity, in declaration order
        self.nodes: list[str] = []
        # identity -> index
        self.index: dict[str, int] = {}
        # index -> indices it reads from
        self.dependencies: list[list[int]] = []
        # index -> indices that read from it (reverse edges)
        self.dependents: list[list[int]] = []

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, identity: object) -> bool:
        return identity in self.index

    def add_node(self, identity: str) -> int:
        """Intern *identity*; returns its arena index."""
        if identity in self.index:
            return self.index[identity]
        idx = len(self.nodes)
        self.nodes.append(identity)
        self.index[identity] = idx
        self.dependencies.append([])
        self.dependents.append([])
        return idx

    def add_edge(self, identity: str, dependency: str) -> None:
        """Record that *identity* reads *dependency* (both must be nodes)."""
        src = self.index[identity]
        dst = self.index[dependency]
        if dst not in self.dependencies[src]:
            self.dependencies[src].append(dst)
            self.dependents[dst].append(src)

    @classmethod
    def from_bindings(cls, bindings: Iterable[BoundFormula]) -> DependencyGraph:
        """Build the graph over bound formulas, given in declaration order."""
        bindings = list(bindings)
        graph = cls()
        for bound in bindings:
            graph.add_node(bound.owner)
        for bound in bindings:
            for dep in bound.dependencies:
                if dep in graph.index:
                    graph.add_edge(bound.owner, dep)
        return graph

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def topological_order(self) -> list[str]:
        """Return formula nodes in evaluation order (Kahn's algorithm).

        Ties are broken by declaration order. Raises CycleError naming the
        ordered cycle if the graph is not acyclic.
        """
        in_degree = [len(deps) for deps in self.dependencies]
        ready = [i for i, degree in enumerate(in_degree) if degree == 0]
        heapq.heapify(ready)

        order: list[int] = []
        while ready:
            idx = heapq.heappop(ready)
            order.append(idx)
            for dependent in self.dependents[idx]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(self.nodes):
            done = set(order)
            remaining = [i for i in range(len(self.nodes)) if i not in done]
            raise CycleError(
                self._extract_cycle(remaining),
                involved=sorted(self.nodes[i] for i in remaining),
            )

        return [self.nodes[i] for i in order]

    def _extract_cycle(self, remaining: list[int]) -> list[str]:
        """Walk dependencies inside *remaining* until a node repeats.

        Every node left over by Kahn's algorithm has a dependency that is
        also left over, so the walk always closes a cycle.
        """
        pending = set(remaining)
        path: list[int] = []
        seen: dict[int, int] = {}
        idx = min(remaining)
        while idx not in seen:
            seen[idx] = len(path)
            path.append(idx)
            idx = min(d for d in self.dependencies[idx] if d in pending)
        cycle = path[seen[idx]:] + [idx]
        return [self.nodes[i] for i in cycle]

    def levels(self) -> list[list[str]]:
        """Group nodes into dependency waves.

        Every node in wave ``k`` depends only on nodes in earlier waves;
        within a wave, nodes are in declaration order.
        """
        order = self.topological_order()
        depth: list[int] = [0] * len(self.nodes)
        for identity in order:
            idx = self.index[identity]
            deps = self.dependencies[idx]
            depth[idx] = 1 + max(depth[d] for d in deps) if deps else 0
        waves: list[list[str]] = [[] for _ in range(max(depth, default=-1) + 1)]
        for idx, level in enumerate(depth):
            waves[level].append(self.nodes[idx])
        return waves

    # ------------------------------------------------------------------
    # Change propagation
    # ------------------------------------------------------------------

    def affected_nodes(self, changed: Iterable[str], readers: dict[str, list[str]]) -> list[str]:
        """Formula nodes downstream of *changed*, in evaluation order.

        *readers* maps a non-formula identity (a literal) to the formula
        nodes that read it directly.
        """
        queue: deque[int] = deque()
        visited: set[int] = set()
        for identity in changed:
            starts = [identity] if identity in self.index else readers.get(identity, [])
            for start in starts:
                idx = self.index[start]
                if idx not in visited:
                    visited.add(idx)
                    queue.append(idx)

        while queue:
            idx = queue.popleft()
            for dependent in self.dependents[idx]:
                if dependent not in visited:
                    visited.add(dependent)
                    queue.append(dependent)

        affected = {self.nodes[i] for i in visited}
        return [n for n in self.topological_order() if n in affected]

    def max_depth(self, roots: Iterable[str], readers: dict[str, list[str]]) -> int:
        """Longest dependency chain from *roots* through formula nodes.

        A formula root starts at depth 0; the direct readers of a literal
        root start at depth 1.
        """
        depth: dict[int, int] = {}
        for root in roots:
            if root in self.index:
                depth[self.index[root]] = 0
            else:
                for reader in readers.get(root, []):
                    depth[self.index[reader]] = max(depth.get(self.index[reader], 0), 1)
        if not depth:
            return 0
        queue: deque[int] = deque(depth)
        max_d = max(depth.values())
        while queue:
            idx = queue.popleft()
            for dependent in self.dependents[idx]:
                new_depth = depth[idx] + 1
                if dependent not in depth or new_depth > depth[dependent]:
                    depth[dependent] = new_depth
                    max_d = max(max_d, new_depth)
                    queue.append(dependent)
        return max_d
