from __future__ import annotations

import heapq
from typing import Mapping, Sequence


def find_cycle(graph: Mapping[str, set[str] | Sequence[str]]) -> list[str] | None:
    """Return one cycle as a list of node names (first == last), if any.

    Edges point from a node to the nodes it depends on; targets missing from
    ``graph`` are ignored.
    """
    white, grey, black = 0, 1, 2
    color = {node: white for node in graph}
    trail: list[str] = []

    def visit(node: str) -> list[str] | None:
        color[node] = grey
        trail.append(node)
        for target in sorted(graph.get(node, ())):
            if target not in color:
                continue
            if color[target] == grey:
                return trail[trail.index(target):] + [target]
            if color[target] == white and (cycle := visit(target)):
                return cycle
        trail.pop()
        color[node] = black
        return None

    for node in sorted(graph):
        if color[node] == white and (cycle := visit(node)):
            return cycle
    return None


def topological_order(nodes: Sequence[str], dependencies: Mapping[str, Sequence[str]]) -> list[str] | None:
    """Kahn's algorithm with ties broken by position in ``nodes``.

    Returns ``None`` when the dependencies contain a cycle.
    """
    position = {node: index for index, node in enumerate(nodes)}
    indegree = {node: 0 for node in nodes}
    dependents: dict[str, list[str]] = {node: [] for node in nodes}
    for node in nodes:
        for dep in set(dependencies.get(node, ())):
            indegree[node] += 1
            dependents[dep].append(node)

    ready = [position[node] for node in nodes if indegree[node] == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        node = nodes[heapq.heappop(ready)]
        order.append(node)
        for dependent in dependents[node]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, position[dependent])
    if len(order) != len(nodes):
        return None
    return order
