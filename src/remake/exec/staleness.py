"""Decide, before anything is dispatched, which targets need a rebuild."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from remake.cache.fingerprint import current_fingerprint, hash_input_files, hash_output_files
from remake.cache.store import CacheEntry, FingerprintCache
from remake.dag.build import AnalyzedTarget, DependencyGraph
from remake.state.model import Decision
from remake.util.errors import MissingInputError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StalenessDecision:
    name: str
    status: Decision
    fingerprint: str | None
    reason: str | None = None
    error: MissingInputError | None = None

    @property
    def needs_build(self) -> bool:
        return self.status != "UP_TO_DATE"


def _stale_reason(
    target: AnalyzedTarget,
    entry: CacheEntry | None,
    fingerprint: str,
    cache: FingerprintCache,
    workdir: Path,
) -> str | None:
    if entry is None:
        return "never_built"
    if entry.fingerprint != fingerprint:
        return "fingerprint_changed"
    if target.outputs:
        current = hash_output_files(target, workdir)
        if any(current[path] is None for path in target.outputs):
            return "output_missing"
        if any(entry.output_files.get(path) != current[path] for path in target.outputs):
            return "output_missing"
    if not cache.has_value(entry):
        return "value_missing"
    return None


def selected_names(graph: DependencyGraph, only: Iterable[str] | None) -> list[str]:
    """Topologically ordered names restricted to ``only`` plus its upstream closure."""
    if only is None:
        return list(graph.order)
    closure = graph.upstream_closure(only)
    return [name for name in graph.order if name in closure]


def decide(
    graph: DependencyGraph,
    cache: FingerprintCache,
    workdir: Path,
    *,
    force: bool = False,
    only: Iterable[str] | None = None,
) -> dict[str, StalenessDecision]:
    """
    Compute one decision per selected target, in topological order.

    A target is stale when it was never built, its fingerprint changed, a declared
    output is gone or differs from what was recorded, or its cached value is missing.
    A target whose own inputs are missing is ``MISSING_INPUT``; its dependents have no
    computable fingerprint and are reported stale with reason ``upstream_unavailable``.
    Never writes to the cache.
    """
    decisions: dict[str, StalenessDecision] = {}
    fingerprints: dict[str, str] = {}
    for name in selected_names(graph, only):
        target = graph.targets[name]
        if any(dep not in fingerprints for dep in target.upstream):
            decisions[name] = StalenessDecision(
                name=name, status="STALE", fingerprint=None, reason="upstream_unavailable"
            )
            continue
        try:
            file_hashes = hash_input_files(target, workdir, fingerprints)
        except MissingInputError as exc:
            decisions[name] = StalenessDecision(
                name=name,
                status="MISSING_INPUT",
                fingerprint=None,
                reason="missing_input",
                error=exc,
            )
            continue
        fingerprint = current_fingerprint(target, fingerprints, file_hashes)
        fingerprints[name] = fingerprint
        if force:
            reason: str | None = "forced"
        else:
            reason = _stale_reason(target, cache.lookup(name), fingerprint, cache, workdir)
        status: Decision = "STALE" if reason is not None else "UP_TO_DATE"
        decisions[name] = StalenessDecision(
            name=name, status=status, fingerprint=fingerprint, reason=reason
        )
        logger.debug("decision %s: %s (%s)", name, status, reason)
    return decisions
