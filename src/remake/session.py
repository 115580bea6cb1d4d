"""Explicit run context: plan, cache, lock, backend and run directory."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Iterable
from contextlib import ExitStack
from datetime import datetime
from pathlib import Path
from types import TracebackType

from remake.cache.store import FingerprintCache
from remake.config.loader import load_plan
from remake.config.namespace import load_namespace
from remake.config.schema import EngineSettings, PlanSpec
from remake.config.settings import merge_overrides
from remake.dag.analyze import analyze_plan
from remake.dag.build import DependencyGraph
from remake.exec.backends import Backend, make_backend
from remake.exec.runner import run_plan
from remake.report import query
from remake.report.render_md import render_markdown
from remake.report.summarize import build_summary
from remake.state.lock import cache_lock
from remake.state.model import RunState
from remake.util.atomic import write_text_atomic
from remake.util.errors import CacheError, PlanError, RemakeError
from remake.util.ids import new_run_id
from remake.util.paths import cache_dir, ensure_cache_layout, ensure_run_layout, run_dir

logger = logging.getLogger(__name__)


def write_report(state: RunState, current_run_dir: Path) -> Path:
    summary = build_summary(state, current_run_dir)
    report_path = current_run_dir / "report" / "final_report.md"
    write_text_atomic(report_path, render_markdown(summary) + "\n")
    return report_path


class Session:
    """
    Everything one build needs, opened once and closed deterministically.

    ``open()`` validates the plan before touching the cache: a cycle or an unknown
    reference raises PlanError and nothing is locked, created or built.
    """

    def __init__(
        self,
        plan: PlanSpec | Path | str,
        *,
        home: Path = Path(".remake"),
        workdir: Path | None = None,
        settings: EngineSettings | None = None,
        run_id: str | None = None,
    ) -> None:
        if isinstance(plan, (str, Path)):
            plan = load_plan(Path(plan))
        self.plan = plan
        self.home = home
        self.settings = settings if settings is not None else plan.settings
        self.functions_base = Path(plan.base_dir) if plan.base_dir is not None else Path.cwd()
        self.workdir = (workdir if workdir is not None else self.functions_base).resolve()
        self._requested_run_id = run_id
        self.cancel_event = threading.Event()
        self.namespace: dict[str, object] = {}
        self._graph: DependencyGraph | None = None
        self._cache: FingerprintCache | None = None
        self._backend: Backend | None = None
        self._run_dir: Path | None = None
        self._stack: ExitStack | None = None
        self.last_report: Path | None = None

    @property
    def graph(self) -> DependencyGraph:
        if self._graph is None:
            return self.analyze()
        return self._graph

    @property
    def cache(self) -> FingerprintCache:
        if self._cache is None:
            raise RemakeError("session is not open")
        return self._cache

    @property
    def backend(self) -> Backend:
        if self._backend is None:
            raise RemakeError("session is not open")
        return self._backend

    @property
    def run_dir(self) -> Path:
        if self._run_dir is None:
            raise RemakeError("session is not open")
        return self._run_dir

    @property
    def cache_root(self) -> Path:
        if self.settings.cache_dir is None:
            return cache_dir(self.home)
        configured = Path(self.settings.cache_dir)
        return configured if configured.is_absolute() else self.workdir / configured

    def analyze(self) -> DependencyGraph:
        """Load the functions namespace and analyze the plan; no filesystem writes."""
        self.namespace = load_namespace(self.plan.functions, self.functions_base, reload=True)
        self._graph = analyze_plan(self.plan, self.namespace)
        return self._graph

    def _start_run(self) -> None:
        run_id = self._requested_run_id or new_run_id(datetime.now().astimezone())
        self._requested_run_id = None
        current_run_dir = run_dir(self.home, run_id)
        if (current_run_dir / "state.json").exists():
            raise RemakeError(f"run already exists: {run_id}")
        ensure_run_layout(current_run_dir)
        self._run_dir = current_run_dir
        if self._backend is not None:
            self._backend.shutdown(cancel=True)
        self._backend = make_backend(self.settings.backend, self.settings.max_parallel)
        self.cancel_event.clear()

    def open(self) -> Session:
        if self._stack is not None:
            return self
        self.analyze()
        root = self.cache_root
        stack = ExitStack()
        try:
            ensure_cache_layout(root)
            stack.enter_context(cache_lock(root))
            self._cache = FingerprintCache(root).open()
            self._start_run()
        except OSError as exc:
            stack.close()
            raise CacheError(f"failed to prepare cache or run directory: {exc}") from exc
        except BaseException:
            stack.close()
            raise
        self._stack = stack
        logger.debug("session opened: cache=%s run_dir=%s", root, self._run_dir)
        return self

    def close(self) -> None:
        if self._backend is not None:
            self._backend.shutdown(cancel=True)
            self._backend = None
        if self._stack is not None:
            self._stack.close()
            self._stack = None

    def __enter__(self) -> Session:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _requested(self, targets: Iterable[str] | None) -> list[str] | None:
        if targets is None:
            return None
        only = list(targets)
        for name in only:
            if name not in self.graph.targets:
                raise PlanError(f"unknown target: {name}")
        return only

    async def make_async(
        self,
        targets: Iterable[str] | None = None,
        *,
        force: bool = False,
        max_parallel: int | None = None,
        fail_fast: bool | None = None,
    ) -> RunState:
        graph = self.graph
        only = self._requested(targets)
        if self._run_dir is not None and (self._run_dir / "state.json").exists():
            self._start_run()
        settings = merge_overrides(self.settings, max_parallel=max_parallel, fail_fast=fail_fast)
        state = await run_plan(
            graph,
            self,
            max_parallel=settings.max_parallel,
            fail_fast=settings.fail_fast,
            force=force,
            only=only,
        )
        try:
            self.last_report = write_report(state, self.run_dir)
        except OSError as exc:
            logger.warning("failed to write report: %s", exc)
        return state

    def make(
        self,
        targets: Iterable[str] | None = None,
        *,
        force: bool = False,
        max_parallel: int | None = None,
        fail_fast: bool | None = None,
    ) -> RunState:
        return asyncio.run(
            self.make_async(targets, force=force, max_parallel=max_parallel, fail_fast=fail_fast)
        )

    def outdated(self, targets: Iterable[str] | None = None, *, force: bool = False) -> list[str]:
        graph = self.graph
        only = self._requested(targets)
        cache = self._cache if self._cache is not None else FingerprintCache(self.cache_root)
        return query.outdated(graph, cache, self.workdir, only=only, force=force)

    def read(self, name: str) -> object:
        """Return the cached value of ``name``; CacheError if it was never built."""
        if name not in {target.name for target in self.plan.targets}:
            raise PlanError(f"unknown target: {name}")
        cache = self._cache if self._cache is not None else FingerprintCache(self.cache_root)
        entry = cache.lookup(name)
        if entry is None:
            raise CacheError(f"target '{name}' has never been built")
        return cache.load_value(entry)

    def cancel(self) -> None:
        self.cancel_event.set()
