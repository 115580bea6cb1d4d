from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Iterable
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from remake.dag.build import DependencyGraph
from remake.exec.cancel import cancel_requested
from remake.exec.retry import backoff_for_attempt, should_retry
from remake.exec.staleness import StalenessDecision, decide
from remake.exec.worker import BuildResult, TargetDescriptor
from remake.state.model import (
    FAILURE_STATUSES,
    SUCCESS_STATUSES,
    RunState,
    TargetState,
)
from remake.state.store import save_state_atomic
from remake.util.errors import BuildError, CacheError
from remake.util.time import duration_sec, now_iso

if TYPE_CHECKING:
    from remake.session import Session

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SEC = 0.1


@dataclass(slots=True)
class _InFlight:
    future: asyncio.Future[BuildResult]
    source: Future[BuildResult]
    timeout_sec: float | None
    deadline: float | None = None

    def expired(self, now: float) -> bool:
        """Expression timeouts count from when a worker picks the build up, not from submit."""
        if self.timeout_sec is None:
            return False
        if self.deadline is None:
            if not self.source.running():
                return False
            self.deadline = now + self.timeout_sec
        return now > self.deadline


def _persist(run_dir: Path, state: RunState) -> None:
    state.updated_at = now_iso()
    save_state_atomic(run_dir, state)


def _elapsed_since(started_at: str | None) -> float | None:
    if started_at is None:
        return None
    try:
        started_dt = datetime.fromisoformat(started_at)
    except ValueError:
        return None
    return max(0.0, duration_sec(started_dt, datetime.now().astimezone()))


def _initial_state(
    graph: DependencyGraph,
    decisions: dict[str, StalenessDecision],
    session: Session,
    *,
    max_parallel: int,
    fail_fast: bool,
    force: bool,
    requested: list[str],
) -> RunState:
    ts = now_iso()
    targets = {
        name: TargetState(
            status="PENDING",
            kind=graph.targets[name].spec.kind,
            upstream=list(graph.targets[name].upstream),
            retries=graph.targets[name].spec.retries,
            stdout_path=f"logs/{name}.out.log",
            stderr_path=f"logs/{name}.err.log",
        )
        for name in decisions
    }
    return RunState(
        run_id=session.run_dir.name,
        created_at=ts,
        updated_at=ts,
        status="RUNNING",
        goal=session.plan.goal,
        workdir=str(session.workdir),
        cache_dir=str(session.cache.root),
        backend=session.backend.name,
        max_parallel=max_parallel,
        fail_fast=fail_fast,
        force=force,
        targets=targets,
        requested=requested,
    )


def _finalize_run_status(state: RunState, *, user_canceled: bool) -> None:
    statuses = [target.status for target in state.targets.values()]
    if user_canceled and "CANCELED" in statuses:
        state.status = "CANCELED"
    elif statuses and all(status in SUCCESS_STATUSES for status in statuses):
        state.status = "SUCCESS"
    else:
        state.status = "FAILED"


async def run_plan(
    graph: DependencyGraph,
    session: Session,
    *,
    max_parallel: int,
    fail_fast: bool,
    force: bool = False,
    only: Iterable[str] | None = None,
) -> RunState:
    """
    Bring every selected target up to date and return the final run state.

    Staleness is decided once, up front. Stale targets are dispatched to the session's
    backend as soon as all of their upstream targets are SUCCEEDED or SKIPPED, with at
    most ``max_parallel`` running at a time. State is persisted after every transition.
    """
    if max_parallel < 1:
        raise ValueError("max_parallel must be >= 1")
    requested = list(only) if only is not None else []
    run_dir = session.run_dir
    cache = session.cache
    workdir = session.workdir
    backend = session.backend

    decisions = await asyncio.to_thread(
        decide, graph, cache, workdir, force=force, only=requested or None
    )
    state = _initial_state(
        graph,
        decisions,
        session,
        max_parallel=max_parallel,
        fail_fast=fail_fast,
        force=force,
        requested=requested,
    )
    _persist(run_dir, state)

    pending: set[str] = set()
    for name, decision in decisions.items():
        target_state = state.targets[name]
        target_state.decision = decision.status
        target_state.reason = decision.reason
        target_state.fingerprint = decision.fingerprint
        if decision.status == "MISSING_INPUT":
            target_state.status = "STALE"
        else:
            target_state.status = decision.status
            if decision.status == "STALE":
                pending.add(name)
    _persist(run_dir, state)

    results: dict[str, BuildResult] = {}
    running: dict[str, _InFlight] = {}
    delayed: dict[str, float] = {}
    dep_remaining = {
        name: sum(1 for dep in graph.upstream_of(name) if dep in pending) for name in pending
    }
    ready: deque[str] = deque()
    fail_fast_mode = False
    user_canceled = False

    def _release_children(name: str) -> None:
        for child in graph.dependents.get(name, []):
            if child in dep_remaining:
                dep_remaining[child] -= 1
                if dep_remaining[child] == 0 and child in pending and child not in running:
                    ready.append(child)

    def _cancel_not_dispatched(reason: str) -> None:
        for name in [n for n in state.targets if n in pending and n not in running]:
            target_state = state.targets[name]
            target_state.status = "CANCELED"
            target_state.reason = reason
            target_state.ended_at = now_iso()
            pending.discard(name)
            delayed.pop(name, None)
        ready.clear()

    def _fail(name: str, error: BuildError | None, *, reason: str | None = None) -> None:
        nonlocal fail_fast_mode
        target_state = state.targets[name]
        target_state.status = "FAILED"
        target_state.ended_at = now_iso()
        target_state.duration_sec = _elapsed_since(target_state.started_at)
        if reason is not None:
            target_state.reason = reason
        if error is not None:
            target_state.error = error.cause
            target_state.retryable = error.retryable
            target_state.timed_out = error.timed_out
        pending.discard(name)
        logger.warning("%s failed: %s", name, target_state.error)
        downstream = graph.downstream_closure([name])
        for child in [n for n in state.targets if n in downstream]:
            if child == name or child not in pending:
                continue
            child_state = state.targets[child]
            child_state.status = "FAILED_UPSTREAM"
            child_state.reason = "upstream_failed"
            child_state.ended_at = now_iso()
            pending.discard(child)
            delayed.pop(child, None)
        if fail_fast and not fail_fast_mode:
            fail_fast_mode = True
            _cancel_not_dispatched("fail_fast")

    def _attempt_failed(name: str, error: BuildError) -> None:
        target_state = state.targets[name]
        spec = graph.targets[name].spec
        target_state.error = error.cause
        target_state.retryable = error.retryable
        target_state.timed_out = error.timed_out
        if should_retry(
            retryable=error.retryable,
            attempts=target_state.attempts,
            retries=spec.retries,
            canceled=fail_fast_mode,
        ):
            delay = backoff_for_attempt(target_state.attempts - 1, spec.retry_backoff_sec)
            target_state.status = "QUEUED"
            target_state.reason = "retry_backoff"
            delayed[name] = time.monotonic() + delay
            logger.info("%s attempt %d failed, retrying in %.1fs", name, target_state.attempts, delay)
            return
        _fail(name, error)

    async def _upstream_values(name: str) -> dict[str, object]:
        target = graph.targets[name]
        if target.spec.kind != "expr":
            return {}
        values: dict[str, object] = {}
        for dep in target.upstream:
            produced = results.get(dep)
            if produced is not None:
                try:
                    values[dep] = produced.load()
                except Exception as exc:
                    raise BuildError(name, f"failed to load value of '{dep}': {exc}") from exc
                continue
            try:
                entry = await asyncio.to_thread(cache.lookup, dep)
                if entry is None:
                    raise CacheError(f"no cached value for '{dep}'")
                values[dep] = await asyncio.to_thread(cache.load_value, entry)
            except CacheError as exc:
                raise BuildError(name, str(exc)) from exc
        return values

    async def _dispatch(name: str) -> None:
        target = graph.targets[name]
        target_state = state.targets[name]
        target_state.status = "QUEUED"
        _persist(run_dir, state)
        try:
            upstream_values = await _upstream_values(name)
        except BuildError as exc:
            _fail(name, exc)
            return
        target_state.attempts += 1
        target_state.status = "RUNNING"
        target_state.started_at = now_iso()
        target_state.ended_at = None
        target_state.duration_sec = None
        descriptor = TargetDescriptor.for_target(
            target,
            workdir=workdir,
            functions=session.plan.functions,
            functions_base=session.functions_base,
            log_dir=run_dir / "logs",
            attempt=target_state.attempts,
        )
        # commands enforce their own timeout in the worker
        timeout_sec = target.spec.timeout_sec if target.spec.kind == "expr" else None
        source = backend.submit(descriptor, upstream_values)
        running[name] = _InFlight(
            future=asyncio.wrap_future(source), source=source, timeout_sec=timeout_sec
        )
        logger.info("%s started (attempt %d)", name, target_state.attempts)

    async def _complete(name: str, result: BuildResult) -> None:
        target_state = state.targets[name]
        fingerprint = target_state.fingerprint
        assert fingerprint is not None
        try:
            await asyncio.to_thread(
                cache.store,
                name,
                fingerprint,
                payload=result.payload,
                output_files=result.output_files,
                kind=target_state.kind,
            )
        except CacheError as exc:
            _fail(name, BuildError(name, str(exc)), reason="cache_store_failed")
            return
        results[name] = result
        target_state.status = "SUCCEEDED"
        target_state.error = None
        target_state.retryable = False
        target_state.timed_out = False
        target_state.started_at = result.started_at
        target_state.ended_at = result.ended_at
        target_state.duration_sec = result.duration_sec
        pending.discard(name)
        logger.info("%s succeeded in %.3fs", name, result.duration_sec)
        _release_children(name)

    for name in state.targets:
        if decisions[name].status == "MISSING_INPUT":
            error = decisions[name].error
            cause = str(error) if error is not None else "missing input"
            pending.add(name)
            _fail(name, BuildError(name, cause), reason="missing_input")
        elif decisions[name].status == "UP_TO_DATE":
            state.targets[name].status = "SKIPPED"
            logger.debug("%s is up to date", name)
    _persist(run_dir, state)

    for name in state.targets:
        if name in pending and dep_remaining[name] == 0:
            ready.append(name)

    while pending or running:
        if session.cancel_event.is_set() or cancel_requested(run_dir):
            user_canceled = True
            logger.warning("run canceled; abandoning %d in-flight targets", len(running))
            backend.interrupt()
            for name, flight in running.items():
                flight.future.cancel()
                target_state = state.targets[name]
                target_state.status = "CANCELED"
                target_state.reason = "run_canceled"
                target_state.ended_at = now_iso()
                target_state.duration_sec = _elapsed_since(target_state.started_at)
                pending.discard(name)
            running.clear()
            _cancel_not_dispatched("run_canceled")
            _persist(run_dir, state)
            break

        now = time.monotonic()
        for name, due in list(delayed.items()):
            if due <= now:
                del delayed[name]
                ready.append(name)

        while ready and len(running) < max_parallel:
            name = ready.popleft()
            if name not in pending or name in running:
                continue
            upstream_states = [state.targets[dep].status for dep in graph.upstream_of(name)]
            if any(status not in SUCCESS_STATUSES for status in upstream_states):
                continue
            await _dispatch(name)
            _persist(run_dir, state)

        if not running:
            if delayed:
                wait = min(delayed.values()) - time.monotonic()
                await asyncio.sleep(min(_POLL_INTERVAL_SEC, max(0.0, wait)))
                continue
            if not ready:
                for name in [n for n in state.targets if n in pending]:
                    target_state = state.targets[name]
                    target_state.status = "FAILED_UPSTREAM"
                    target_state.reason = "unresolvable_dependencies"
                    target_state.ended_at = now_iso()
                    pending.discard(name)
                _persist(run_dir, state)
                break
            continue

        done, _ = await asyncio.wait(
            [flight.future for flight in running.values()],
            timeout=_POLL_INTERVAL_SEC,
            return_when=asyncio.FIRST_COMPLETED,
        )
        now = time.monotonic()
        for name, flight in list(running.items()):
            if flight.future in done:
                del running[name]
                try:
                    result = flight.future.result()
                except BuildError as exc:
                    _attempt_failed(name, exc)
                    continue
                except Exception as exc:
                    _attempt_failed(name, BuildError(name, f"worker error: {exc}"))
                    continue
                await _complete(name, result)
            elif flight.expired(now):
                del running[name]
                flight.future.cancel()
                backend.abandon(name)
                timeout = graph.targets[name].spec.timeout_sec
                _attempt_failed(
                    name, BuildError(name, f"timed out after {timeout}s", timed_out=True)
                )
        _persist(run_dir, state)

    _finalize_run_status(state, user_canceled=user_canceled)
    _persist(run_dir, state)
    logger.info(
        "run %s finished: %s (%d built, %d skipped, %d failed)",
        state.run_id,
        state.status,
        state.count("SUCCEEDED"),
        state.count("SKIPPED"),
        state.count(*FAILURE_STATUSES),
    )
    return state
