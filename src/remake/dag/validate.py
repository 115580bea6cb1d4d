"""DAG validation helpers."""

from __future__ import annotations

from collections import deque

from remake.util.errors import CycleError


def _find_cycle(remaining: list[str], upstream: dict[str, list[str]]) -> list[str]:
    """Walk upstream edges among nodes Kahn's algorithm could not order until one repeats."""
    remaining_set = set(remaining)
    path: list[str] = []
    position: dict[str, int] = {}
    current = remaining[0]
    while current not in position:
        position[current] = len(path)
        path.append(current)
        current = next(dep for dep in upstream.get(current, []) if dep in remaining_set)
    return path[position[current] :]


def assert_acyclic(
    names: list[str], dependents: dict[str, list[str]], in_degree: dict[str, int]
) -> list[str]:
    """
    Validate graph has no cycle using Kahn's algorithm and return a topological order.

    Ties are broken by the order of ``names``. On failure, raises CycleError carrying one
    cycle as an ordered list where each name depends on the next.
    """
    degrees = dict(in_degree)
    rank = {name: idx for idx, name in enumerate(names)}
    q = deque([name for name in names if degrees.get(name, 0) == 0])
    order: list[str] = []

    while q:
        current = q.popleft()
        order.append(current)
        released: list[str] = []
        for nxt in dependents.get(current, []):
            degrees[nxt] = degrees[nxt] - 1
            if degrees[nxt] == 0:
                released.append(nxt)
        q.extend(sorted(released, key=rank.__getitem__))

    if len(order) != len(names):
        ordered = set(order)
        remaining = [name for name in names if name not in ordered]
        upstream: dict[str, list[str]] = {name: [] for name in names}
        for name in names:
            for child in dependents.get(name, []):
                upstream[child].append(name)
        for deps in upstream.values():
            deps.sort(key=rank.__getitem__)
        raise CycleError(_find_cycle(remaining, upstream))
    return order
