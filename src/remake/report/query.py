"""Read-only views over a plan: what is outdated and how targets connect."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from remake.cache.store import FingerprintCache
from remake.config.schema import PlanSpec
from remake.dag.analyze import analyze_plan
from remake.dag.build import DependencyGraph
from remake.exec.staleness import decide


def outdated(
    plan_or_graph: PlanSpec | DependencyGraph,
    cache: FingerprintCache,
    workdir: Path,
    namespace: dict[str, object] | None = None,
    *,
    only: Iterable[str] | None = None,
    force: bool = False,
) -> list[str]:
    """
    Names a build would rebuild, in topological order. Writes nothing.

    ``only`` and ``force`` mean what they mean for a build, so a dry run lists
    exactly what ``make`` with the same options would dispatch.
    """
    if isinstance(plan_or_graph, PlanSpec):
        graph = analyze_plan(plan_or_graph, namespace)
    else:
        graph = plan_or_graph
    decisions = decide(graph, cache, workdir, force=force, only=only)
    return [name for name, decision in decisions.items() if decision.needs_build]


def graph(plan: PlanSpec, namespace: dict[str, object] | None = None) -> DependencyGraph:
    return analyze_plan(plan, namespace)
