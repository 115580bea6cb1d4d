"""Function-style entry points, each wrapping a short-lived Session."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from remake.config.schema import EngineSettings, PlanSpec
from remake.dag.build import DependencyGraph
from remake.session import Session
from remake.state.model import RunState


def make(
    plan: PlanSpec | Path | str,
    targets: Iterable[str] | None = None,
    *,
    home: Path = Path(".remake"),
    workdir: Path | None = None,
    settings: EngineSettings | None = None,
    force: bool = False,
) -> RunState:
    """Build ``plan`` (or only ``targets`` and their upstream) and return the run state."""
    with Session(plan, home=home, workdir=workdir, settings=settings) as session:
        return session.make(targets, force=force)


def outdated(
    plan: PlanSpec | Path | str,
    *,
    home: Path = Path(".remake"),
    workdir: Path | None = None,
    settings: EngineSettings | None = None,
) -> list[str]:
    return Session(plan, home=home, workdir=workdir, settings=settings).outdated()


def graph(plan: PlanSpec | Path | str, *, workdir: Path | None = None) -> DependencyGraph:
    return Session(plan, workdir=workdir).analyze()


def read_target(
    plan: PlanSpec | Path | str,
    name: str,
    *,
    home: Path = Path(".remake"),
    workdir: Path | None = None,
    settings: EngineSettings | None = None,
) -> object:
    return Session(plan, home=home, workdir=workdir, settings=settings).read(name)
