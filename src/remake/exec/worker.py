"""Evaluate one target: a Python expression or a subprocess command."""

from __future__ import annotations

import builtins
import errno
import logging
import os
import pickle
import subprocess
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from remake.cache.fingerprint import hash_path, resolve_path
from remake.cache.store import serialize_value
from remake.config.namespace import load_namespace
from remake.dag.build import AnalyzedTarget
from remake.util.errors import BuildError, CacheError, PlanError, TransientError
from remake.util.time import duration_sec

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SEC = 0.1
_TERMINATE_GRACE_SEC = 1.0
_TRANSIENT_START_ERRNOS = {errno.EAGAIN, errno.ENOMEM, errno.EMFILE, errno.ENFILE}


@dataclass(frozen=True, slots=True)
class TargetDescriptor:
    """Everything a worker needs to build a target; picklable for process pools."""

    name: str
    kind: str
    workdir: str
    expr: str | None = None
    cmd: tuple[str, ...] = ()
    cwd: str | None = None
    env: tuple[tuple[str, str], ...] = ()
    timeout_sec: float | None = None
    outputs: tuple[str, ...] = ()
    functions: tuple[str, ...] = ()
    functions_base: str = "."
    log_dir: str | None = None
    attempt: int = 1
    max_attempts: int = 1

    @classmethod
    def for_target(
        cls,
        target: AnalyzedTarget,
        *,
        workdir: Path,
        functions: list[str],
        functions_base: Path,
        log_dir: Path | None,
        attempt: int,
    ) -> TargetDescriptor:
        spec = target.spec
        return cls(
            name=spec.name,
            kind=spec.kind,
            workdir=str(workdir),
            expr=spec.expr,
            cmd=tuple(spec.cmd or ()),
            cwd=spec.cwd,
            env=tuple(sorted((spec.env or {}).items())),
            timeout_sec=spec.timeout_sec,
            outputs=tuple(target.outputs),
            functions=tuple(functions),
            functions_base=str(functions_base),
            log_dir=str(log_dir) if log_dir is not None else None,
            attempt=attempt,
            max_attempts=spec.retries + 1,
        )

    @property
    def stdout_path(self) -> Path | None:
        return Path(self.log_dir) / f"{self.name}.out.log" if self.log_dir else None

    @property
    def stderr_path(self) -> Path | None:
        return Path(self.log_dir) / f"{self.name}.err.log" if self.log_dir else None


@dataclass(slots=True)
class BuildResult:
    name: str
    payload: bytes
    content_hash: str
    started_at: str
    ended_at: str
    duration_sec: float
    output_files: dict[str, str] = field(default_factory=dict)
    value: object = None
    has_value: bool = True

    def load(self) -> object:
        if self.has_value:
            return self.value
        return pickle.loads(self.payload)

    def detached(self) -> BuildResult:
        """Copy without the in-memory value, so only the payload crosses process boundaries."""
        return BuildResult(
            name=self.name,
            payload=self.payload,
            content_hash=self.content_hash,
            started_at=self.started_at,
            ended_at=self.ended_at,
            duration_sec=self.duration_sec,
            output_files=self.output_files,
            value=None,
            has_value=False,
        )


def _append_text_best_effort(log_path: Path | None, text: str) -> None:
    if log_path is None:
        return
    try:
        with log_path.open("a", encoding="utf-8") as f:
            f.write(text)
    except OSError:
        return


def _attempt_header(descriptor: TargetDescriptor) -> str:
    return f"\n===== attempt {descriptor.attempt} / {descriptor.max_attempts} =====\n"


def _markers(workdir: Path) -> dict[str, object]:
    def _resolve(paths: tuple[str, ...]) -> str | list[str]:
        resolved = [str(resolve_path(path, workdir)) for path in paths]
        return resolved[0] if len(resolved) == 1 else resolved

    def file_in(*paths: str) -> str | list[str]:
        return _resolve(paths)

    def file_out(*paths: str) -> str | list[str]:
        return _resolve(paths)

    return {"file_in": file_in, "file_out": file_out}


def _collect_outputs(descriptor: TargetDescriptor) -> dict[str, str]:
    workdir = Path(descriptor.workdir)
    hashes: dict[str, str] = {}
    for path in descriptor.outputs:
        digest = hash_path(resolve_path(path, workdir))
        if digest is None:
            raise BuildError(descriptor.name, f"declared output was not produced: {path}")
        hashes[path] = digest
    return hashes


def _evaluate_expression(
    descriptor: TargetDescriptor, upstream_values: dict[str, object]
) -> object:
    assert descriptor.expr is not None
    try:
        namespace = load_namespace(list(descriptor.functions), Path(descriptor.functions_base))
    except PlanError as exc:
        raise BuildError(descriptor.name, str(exc), retryable=False) from exc
    scope: dict[str, object] = {"__builtins__": builtins}
    scope.update(namespace)
    scope.update(_markers(Path(descriptor.workdir)))
    scope.update(upstream_values)
    try:
        code = compile(descriptor.expr, f"<target {descriptor.name}>", "eval")
        return eval(code, scope)  # noqa: S307 - evaluating the plan's own build expression
    except TransientError as exc:
        _append_text_best_effort(descriptor.stderr_path, traceback.format_exc())
        raise BuildError(descriptor.name, f"transient: {exc}", retryable=True) from exc
    except Exception as exc:
        _append_text_best_effort(descriptor.stderr_path, traceback.format_exc())
        raise BuildError(descriptor.name, f"{type(exc).__name__}: {exc}") from exc


def _terminate(proc: subprocess.Popen[bytes]) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=_TERMINATE_GRACE_SEC)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def _run_command(descriptor: TargetDescriptor, cancel_event: threading.Event | None) -> None:
    workdir = Path(descriptor.workdir)
    cwd = resolve_path(descriptor.cwd, workdir) if descriptor.cwd is not None else workdir
    merged_env = os.environ.copy()
    merged_env.update(dict(descriptor.env))
    merged_env["REMAKE_TARGET"] = descriptor.name
    out_path = descriptor.stdout_path
    err_path = descriptor.stderr_path
    out_file = out_path.open("ab") if out_path is not None else None
    err_file = err_path.open("ab") if err_path is not None else None
    try:
        try:
            proc = subprocess.Popen(
                list(descriptor.cmd),
                cwd=str(cwd),
                env=merged_env,
                stdout=out_file if out_file is not None else subprocess.DEVNULL,
                stderr=err_file if err_file is not None else subprocess.DEVNULL,
            )
        except OSError as exc:
            if err_file is not None:
                err_file.write(f"failed to start process: {exc}\n".encode())
            retryable = exc.errno in _TRANSIENT_START_ERRNOS
            raise BuildError(
                descriptor.name, f"failed to start process: {exc}", retryable=retryable
            ) from exc
        except ValueError as exc:
            raise BuildError(descriptor.name, f"failed to start process: {exc}") from exc

        started = time.monotonic()
        while True:
            code = proc.poll()
            if code is not None:
                break
            if cancel_event is not None and cancel_event.is_set():
                _terminate(proc)
                raise BuildError(descriptor.name, "interrupted by cancellation")
            if (
                descriptor.timeout_sec is not None
                and time.monotonic() - started > descriptor.timeout_sec
            ):
                _terminate(proc)
                raise BuildError(
                    descriptor.name,
                    f"timed out after {descriptor.timeout_sec}s",
                    timed_out=True,
                )
            time.sleep(_POLL_INTERVAL_SEC)
        if code != 0:
            raise BuildError(descriptor.name, f"command exited with code {code}")
    finally:
        if out_file is not None:
            out_file.close()
        if err_file is not None:
            err_file.close()


def build_target(
    descriptor: TargetDescriptor,
    upstream_values: dict[str, object],
    cancel_event: threading.Event | None = None,
) -> BuildResult:
    """
    Build ``descriptor`` with its upstream values already materialized.

    Raises BuildError; ``retryable`` is set only for failures worth another attempt.
    """
    started_dt = datetime.now().astimezone()
    _append_text_best_effort(descriptor.stdout_path, _attempt_header(descriptor))
    _append_text_best_effort(descriptor.stderr_path, _attempt_header(descriptor))
    logger.debug("building %s (attempt %d)", descriptor.name, descriptor.attempt)

    if descriptor.kind == "expr":
        value = _evaluate_expression(descriptor, upstream_values)
        output_files = _collect_outputs(descriptor)
    else:
        _run_command(descriptor, cancel_event)
        output_files = _collect_outputs(descriptor)
        value = dict(output_files)

    try:
        payload, content_hash = serialize_value(value)
    except CacheError as exc:
        raise BuildError(descriptor.name, str(exc)) from exc
    ended_dt = datetime.now().astimezone()
    return BuildResult(
        name=descriptor.name,
        payload=payload,
        content_hash=content_hash,
        started_at=started_dt.isoformat(timespec="seconds"),
        ended_at=ended_dt.isoformat(timespec="seconds"),
        duration_sec=duration_sec(started_dt, ended_dt),
        output_files=output_files,
        value=value,
    )


def build_target_detached(
    descriptor: TargetDescriptor, upstream_values: dict[str, object]
) -> BuildResult:
    """Process-pool entry point: return the result without the unpickled value."""
    return build_target(descriptor, upstream_values).detached()
