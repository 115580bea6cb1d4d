"""Build graph structures from an analyzed plan."""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from remake.config.schema import TargetSpec


@dataclass(slots=True)
class AnalyzedTarget:
    spec: TargetSpec
    upstream: list[str]
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    produced_inputs: dict[str, str] = field(default_factory=dict)
    function_digests: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.spec.name


@dataclass(slots=True)
class DependencyGraph:
    targets: dict[str, AnalyzedTarget]
    dependents: dict[str, list[str]]
    order: list[str]

    def upstream_of(self, name: str) -> list[str]:
        return self.targets[name].upstream

    def upstream_closure(self, names: Iterable[str]) -> set[str]:
        """Return ``names`` plus everything they transitively depend on."""
        seen: set[str] = set()
        queue = deque(names)
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.targets[current].upstream)
        return seen

    def downstream_closure(self, names: Iterable[str]) -> set[str]:
        """Return ``names`` plus everything that transitively depends on them."""
        seen: set[str] = set()
        queue = deque(names)
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.dependents.get(current, []))
        return seen

    def to_dict(self) -> dict[str, object]:
        nodes = []
        for name in self.order:
            target = self.targets[name]
            nodes.append(
                {
                    "name": name,
                    "kind": target.spec.kind,
                    "group": target.spec.group,
                    "upstream": target.upstream,
                    "inputs": target.inputs,
                    "outputs": target.outputs,
                    "functions": sorted(target.function_digests),
                }
            )
        edges = [
            {"from": dep, "to": name}
            for name in self.order
            for dep in self.targets[name].upstream
        ]
        return {"nodes": nodes, "edges": edges}


def build_adjacency(
    names: list[str], upstream: dict[str, list[str]]
) -> tuple[dict[str, list[str]], dict[str, int]]:
    """Return dependents adjacency and in-degree by target name."""
    dependents: dict[str, list[str]] = defaultdict(list)
    in_degree: dict[str, int] = {}

    for name in names:
        deps = upstream.get(name, [])
        in_degree[name] = len(deps)
        dependents.setdefault(name, [])
        for dep in deps:
            dependents[dep].append(name)

    return dict(dependents), in_degree
