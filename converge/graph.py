"""
Dependency graph helpers shared by the loader and the planner.

Graphs are plain mappings of node name -> names it depends on. Edges that
point at names outside the mapping are allowed and ignored; the loader is
responsible for rejecting unknown references.
"""

import heapq
from typing import Iterable, Mapping, Optional

from converge.errors import CycleError


Graph = Mapping[str, Iterable[str]]


def find_cycle(graph: Graph) -> Optional[list[str]]:
    """
    Find one dependency cycle in graph.

    Args:
        graph: Mapping of node -> dependencies

    Returns:
        The cycle as a list of names with the first name repeated at the
        end (e.g. ["a", "b", "a"]), or None if the graph is acyclic
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in graph}
    path: list[str] = []

    def visit(node: str) -> Optional[list[str]]:
        color[node] = GREY
        path.append(node)
        for dep in sorted(graph[node]):
            if dep not in color:
                continue
            if color[dep] == GREY:
                return path[path.index(dep):] + [dep]
            if color[dep] == WHITE:
                cycle = visit(dep)
                if cycle:
                    return cycle
        path.pop()
        color[node] = BLACK
        return None

    for node in sorted(graph):
        if color[node] == WHITE:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def ancestors_within(graph: Graph, node: str, members: set[str]) -> set[str]:
    """
    Members reachable from node by following dependency edges.

    Traversal passes through non-member nodes, so for a -> b -> c with only
    a and c in members, c's result contains a. Edges to names not present
    in graph end the traversal.
    """
    found: set[str] = set()
    seen: set[str] = set()
    stack = list(graph.get(node, ()))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        if current in members:
            found.add(current)
        if current in graph:
            stack.extend(graph[current])
    return found


def restrict(graph: Graph, members: Iterable[str]) -> dict[str, tuple[str, ...]]:
    """
    Project graph onto members, keeping transitive ordering.

    Each member maps to the members it depends on directly or through
    nodes outside members.
    """
    member_set = set(members)
    return {
        node: tuple(sorted(ancestors_within(graph, node, member_set)))
        for node in sorted(member_set)
    }


def topological_order(graph: Graph) -> list[str]:
    """
    Deterministic topological order, dependencies first.

    Kahn's algorithm with a min-heap, so among nodes that are ready at the
    same time the lexicographically smallest name goes first.

    Args:
        graph: Mapping of node -> dependencies. Edges to unknown nodes are ignored.

    Returns:
        All nodes of graph in dependency order

    Raises:
        CycleError: If the graph contains a cycle
    """
    nodes = set(graph)
    remaining = {node: {d for d in graph[node] if d in nodes} for node in nodes}
    dependents: dict[str, set[str]] = {node: set() for node in nodes}
    for node, deps in remaining.items():
        for dep in deps:
            dependents[dep].add(node)

    ready = [node for node, deps in remaining.items() if not deps]
    heapq.heapify(ready)
    order: list[str] = []

    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            remaining[dependent].discard(node)
            if not remaining[dependent]:
                heapq.heappush(ready, dependent)

    if len(order) != len(nodes):
        stuck = {node: remaining[node] for node in nodes if node not in order}
        cycle = find_cycle(stuck) or sorted(stuck)
        raise CycleError(f"Dependency cycle: {' -> '.join(cycle)}", cycle=cycle)

    return order
