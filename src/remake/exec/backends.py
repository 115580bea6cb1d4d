"""Worker pools the scheduler submits builds to."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from typing import Protocol

from remake.config.schema import BACKEND_NAMES
from remake.exec.worker import BuildResult, TargetDescriptor, build_target, build_target_detached
from remake.util.errors import BuildError

logger = logging.getLogger(__name__)


class Backend(Protocol):
    """
    Runs builds for the scheduler, which never has more than ``max_workers`` in flight.

    ``abandon`` is called when the scheduler gives up on a build it can no longer stop,
    such as a timed-out expression. The stuck worker keeps running but must not hold
    one of the pool slots the next submissions need.
    """

    name: str

    def submit(
        self, descriptor: TargetDescriptor, upstream_values: dict[str, object]
    ) -> Future[BuildResult]: ...

    def abandon(self, name: str) -> None: ...

    def interrupt(self) -> None: ...

    def shutdown(self, cancel: bool = False) -> None: ...


class ThreadBackend:
    """In-process pool. Values are handed over without a pickle round-trip."""

    name = "thread"

    def __init__(self, max_workers: int) -> None:
        self._max_workers = max_workers
        self._executor = self._new_executor()
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="remake-worker")

    def submit(
        self, descriptor: TargetDescriptor, upstream_values: dict[str, object]
    ) -> Future[BuildResult]:
        with self._lock:
            return self._executor.submit(
                build_target, descriptor, upstream_values, self._cancel_event
            )

    def abandon(self, name: str) -> None:
        # the old pool finishes what it already runs, then its threads exit
        with self._lock:
            stale, self._executor = self._executor, self._new_executor()
        stale.shutdown(wait=False)
        logger.debug("abandoned %s; thread pool replaced", name)

    def interrupt(self) -> None:
        self._cancel_event.set()

    def shutdown(self, cancel: bool = False) -> None:
        if cancel:
            self._cancel_event.set()
        with self._lock:
            self._executor.shutdown(wait=not cancel, cancel_futures=cancel)


class ProcessBackend:
    """Process pool. A crashed worker breaks the pool; it is recreated for the next submit."""

    name = "process"

    def __init__(self, max_workers: int) -> None:
        self._max_workers = max_workers
        self._executor = ProcessPoolExecutor(max_workers=max_workers)
        self._lock = threading.Lock()

    def _wrap(self, name: str, inner: Future[BuildResult]) -> Future[BuildResult]:
        outer: Future[BuildResult] = Future()
        # the pool has a free worker for every submit, so the build counts as started
        outer.set_running_or_notify_cancel()

        def _relay(done: Future[BuildResult]) -> None:
            if done.cancelled():
                outer.set_exception(BuildError(name, "interrupted by cancellation"))
                return
            exc = done.exception()
            if isinstance(exc, BrokenProcessPool):
                logger.warning("worker process for %s died; pool will be recreated", name)
                outer.set_exception(
                    BuildError(name, f"worker process died: {exc}", retryable=True)
                )
            elif exc is not None:
                outer.set_exception(exc)
            else:
                outer.set_result(done.result())

        inner.add_done_callback(_relay)
        return outer

    def submit(
        self, descriptor: TargetDescriptor, upstream_values: dict[str, object]
    ) -> Future[BuildResult]:
        with self._lock:
            try:
                inner = self._executor.submit(build_target_detached, descriptor, upstream_values)
            except BrokenProcessPool:
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = ProcessPoolExecutor(max_workers=self._max_workers)
                inner = self._executor.submit(build_target_detached, descriptor, upstream_values)
        return self._wrap(descriptor.name, inner)

    def abandon(self, name: str) -> None:
        with self._lock:
            stale = self._executor
            self._executor = ProcessPoolExecutor(max_workers=self._max_workers)
        stale.shutdown(wait=False)
        logger.debug("abandoned %s; process pool replaced", name)

    def interrupt(self) -> None:
        with self._lock:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def shutdown(self, cancel: bool = False) -> None:
        with self._lock:
            self._executor.shutdown(wait=not cancel, cancel_futures=cancel)


def make_backend(name: str, max_workers: int) -> Backend:
    if max_workers < 1:
        raise ValueError("max_workers must be >= 1")
    if name not in BACKEND_NAMES:
        raise ValueError(f"unknown backend: {name}")
    if name == "process":
        return ProcessBackend(max_workers)
    return ThreadBackend(max_workers)
