"""
Dependency graph — validation and deterministic ordering (pure).

Checks for:
    - Duplicate identifiers
    - References to undeclared identifiers
    - Cycles (Kahn's algorithm, members reported exactly)

Ordering is Kahn's algorithm with the ready set kept in a heap, so ties
always break by identifier and the same document yields the same order
on every run. No I/O, no adapters: a graph error means nothing was
probed or changed.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable
from dataclasses import dataclass, field

from hostconverge.core.errors import (
    CycleDetected,
    DanglingReference,
    DuplicateIdentifier,
)
from hostconverge.core.models.action import Action


@dataclass(frozen=True)
class DependencyGraph:
    """Validated actions plus edges in both directions."""

    actions: dict[str, Action]
    dependencies: dict[str, tuple[str, ...]]     # node -> what it needs
    dependents: dict[str, tuple[str, ...]]       # node -> what needs it
    order: tuple[str, ...] = field(default=())

    def __len__(self) -> int:
        return len(self.actions)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self.actions

    def action(self, identifier: str) -> Action:
        return self.actions[identifier]

    def descendants(self, identifier: str) -> set[str]:
        """Everything that transitively depends on ``identifier``."""
        seen: set[str] = set()
        stack = list(self.dependents.get(identifier, ()))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self.dependents.get(node, ()))
        return seen

    def ordered_actions(self) -> list[Action]:
        return [self.actions[i] for i in self.order]


def build_graph(actions: Iterable[Action]) -> DependencyGraph:
    """Validate the declared actions and compute their order.

    Raises:
        DuplicateIdentifier: two actions share an identifier.
        DanglingReference: a ``depends_on`` names an undeclared action.
        CycleDetected: the edges contain a cycle; ``identifiers`` holds
            exactly the nodes on cycles.
    """
    by_id: dict[str, Action] = {}
    duplicates: set[str] = set()
    for action in actions:
        if action.identifier in by_id:
            duplicates.add(action.identifier)
        by_id[action.identifier] = action
    if duplicates:
        raise DuplicateIdentifier(
            f"Duplicate action identifier(s): {', '.join(sorted(duplicates))}",
            duplicates,
        )

    missing: list[str] = []
    for identifier, action in by_id.items():
        for dep in action.depends_on:
            if dep not in by_id:
                missing.append(f"'{identifier}' depends on unknown '{dep}'")
    if missing:
        raise DanglingReference(
            "Undeclared dependencies: " + "; ".join(sorted(missing)),
            [a.identifier for a in by_id.values()
             if any(d not in by_id for d in a.depends_on)],
        )

    dependencies = {i: tuple(dict.fromkeys(a.depends_on)) for i, a in by_id.items()}
    dependents: dict[str, list[str]] = {i: [] for i in by_id}
    for identifier, deps in dependencies.items():
        for dep in deps:
            dependents[dep].append(identifier)

    graph = DependencyGraph(
        actions=by_id,
        dependencies=dependencies,
        dependents={i: tuple(sorted(d)) for i, d in dependents.items()},
    )
    order = topological_order(graph)
    return DependencyGraph(
        actions=graph.actions,
        dependencies=graph.dependencies,
        dependents=graph.dependents,
        order=tuple(order),
    )


def topological_order(graph: DependencyGraph) -> list[str]:
    """Kahn's algorithm with lexical tie-break.

    Raises CycleDetected if any node is never released.
    """
    in_degree = {i: len(deps) for i, deps in graph.dependencies.items()}
    ready = [i for i, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for successor in graph.dependents[node]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(ready, successor)

    if len(order) < len(graph.dependencies):
        leftover = {i for i, deg in in_degree.items() if deg > 0}
        members = _cycle_members(leftover, graph.dependencies)
        raise CycleDetected(
            f"Dependency cycle among: {', '.join(sorted(members))}",
            members,
        )
    return order


def _cycle_members(nodes: set[str], dependencies: dict[str, tuple[str, ...]]) -> set[str]:
    """Nodes that sit on a cycle, not merely downstream of one.

    Tarjan's strongly connected components over the unreleased nodes;
    a component counts if it has more than one node or a self-edge.
    """
    index: dict[str, int] = {}
    low: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    members: set[str] = set()
    counter = 0

    for root in sorted(nodes):
        if root in index:
            continue
        # Iterative DFS: (node, iterator over its in-set successors)
        work = [(root, iter(sorted(d for d in dependencies[root] if d in nodes)))]
        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)

        while work:
            node, successors = work[-1]
            advanced = False
            for succ in successors:
                if succ not in index:
                    index[succ] = low[succ] = counter
                    counter += 1
                    stack.append(succ)
                    on_stack.add(succ)
                    work.append((succ, iter(sorted(d for d in dependencies[succ] if d in nodes))))
                    advanced = True
                    break
                if succ in on_stack:
                    low[node] = min(low[node], index[succ])
            if advanced:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index[node]:
                component = []
                while True:
                    top = stack.pop()
                    on_stack.discard(top)
                    component.append(top)
                    if top == node:
                        break
                if len(component) > 1 or node in dependencies[node]:
                    members.update(component)
    return members
