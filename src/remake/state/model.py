from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, cast

RunStatus = Literal["RUNNING", "SUCCESS", "FAILED", "CANCELED"]
TargetStatus = Literal[
    "PENDING",
    "STALE",
    "UP_TO_DATE",
    "QUEUED",
    "RUNNING",
    "SUCCEEDED",
    "FAILED",
    "FAILED_UPSTREAM",
    "SKIPPED",
    "CANCELED",
]
Decision = Literal["STALE", "UP_TO_DATE", "MISSING_INPUT"]
RUN_STATUS_VALUES: set[str] = {"RUNNING", "SUCCESS", "FAILED", "CANCELED"}
TARGET_STATUS_VALUES: set[str] = {
    "PENDING",
    "STALE",
    "UP_TO_DATE",
    "QUEUED",
    "RUNNING",
    "SUCCEEDED",
    "FAILED",
    "FAILED_UPSTREAM",
    "SKIPPED",
    "CANCELED",
}
DECISION_VALUES: set[str] = {"STALE", "UP_TO_DATE", "MISSING_INPUT"}
TERMINAL_STATUSES: frozenset[str] = frozenset(
    {"SUCCEEDED", "FAILED", "FAILED_UPSTREAM", "SKIPPED", "CANCELED"}
)
SUCCESS_STATUSES: frozenset[str] = frozenset({"SUCCEEDED", "SKIPPED"})
FAILURE_STATUSES: frozenset[str] = frozenset({"FAILED", "FAILED_UPSTREAM"})


def _as_str(value: object, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _as_optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _as_bool(value: object, default: bool = False) -> bool:
    return value if isinstance(value, bool) else default


def _as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def _as_optional_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_list_str(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _parse_target_status(value: object) -> TargetStatus:
    status = _as_str(value, "PENDING")
    if status not in TARGET_STATUS_VALUES:
        status = "PENDING"
    return cast(TargetStatus, status)


def _parse_decision(value: object) -> Decision | None:
    if isinstance(value, str) and value in DECISION_VALUES:
        return cast(Decision, value)
    return None


def _parse_run_status(value: object) -> RunStatus:
    status = _as_str(value, "FAILED")
    if status not in RUN_STATUS_VALUES:
        status = "FAILED"
    return cast(RunStatus, status)


@dataclass(slots=True)
class TargetState:
    status: TargetStatus
    kind: str
    upstream: list[str]
    decision: Decision | None = None
    reason: str | None = None
    fingerprint: str | None = None
    attempts: int = 0
    retries: int = 0
    started_at: str | None = None
    ended_at: str | None = None
    duration_sec: float | None = None
    error: str | None = None
    retryable: bool = False
    timed_out: bool = False
    stdout_path: str | None = None
    stderr_path: str | None = None

    @property
    def retry_count(self) -> int:
        return max(0, self.attempts - 1)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "kind": self.kind,
            "upstream": self.upstream,
            "decision": self.decision,
            "reason": self.reason,
            "fingerprint": self.fingerprint,
            "attempts": self.attempts,
            "retries": self.retries,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_sec": self.duration_sec,
            "error": self.error,
            "retryable": self.retryable,
            "timed_out": self.timed_out,
            "stdout_path": self.stdout_path,
            "stderr_path": self.stderr_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> TargetState:
        return cls(
            status=_parse_target_status(data.get("status")),
            kind=_as_str(data.get("kind"), "expr"),
            upstream=_as_list_str(data.get("upstream")),
            decision=_parse_decision(data.get("decision")),
            reason=_as_optional_str(data.get("reason")),
            fingerprint=_as_optional_str(data.get("fingerprint")),
            attempts=_as_int(data.get("attempts")),
            retries=_as_int(data.get("retries")),
            started_at=_as_optional_str(data.get("started_at")),
            ended_at=_as_optional_str(data.get("ended_at")),
            duration_sec=_as_optional_float(data.get("duration_sec")),
            error=_as_optional_str(data.get("error")),
            retryable=_as_bool(data.get("retryable")),
            timed_out=_as_bool(data.get("timed_out")),
            stdout_path=_as_optional_str(data.get("stdout_path")),
            stderr_path=_as_optional_str(data.get("stderr_path")),
        )


@dataclass(slots=True)
class RunState:
    run_id: str
    created_at: str
    updated_at: str
    status: RunStatus
    goal: str | None
    workdir: str
    cache_dir: str
    backend: str
    max_parallel: int
    fail_fast: bool
    force: bool
    targets: dict[str, TargetState]
    requested: list[str] = field(default_factory=list)

    def count(self, *statuses: str) -> int:
        return sum(1 for target in self.targets.values() if target.status in statuses)

    def dispatched(self) -> list[str]:
        """Names of targets that were queued for a build during this run."""
        return [name for name, target in self.targets.items() if target.attempts > 0]

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "status": self.status,
            "goal": self.goal,
            "workdir": self.workdir,
            "cache_dir": self.cache_dir,
            "backend": self.backend,
            "max_parallel": self.max_parallel,
            "fail_fast": self.fail_fast,
            "force": self.force,
            "requested": self.requested,
            "targets": {name: target.to_dict() for name, target in self.targets.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> RunState:
        raw_targets = data.get("targets")
        targets: dict[str, TargetState] = {}
        if isinstance(raw_targets, dict):
            for name, target_data in raw_targets.items():
                if isinstance(name, str) and isinstance(target_data, dict):
                    targets[name] = TargetState.from_dict(target_data)
        return cls(
            run_id=_as_str(data.get("run_id")),
            created_at=_as_str(data.get("created_at")),
            updated_at=_as_str(data.get("updated_at")),
            status=_parse_run_status(data.get("status")),
            goal=_as_optional_str(data.get("goal")),
            workdir=_as_str(data.get("workdir")),
            cache_dir=_as_str(data.get("cache_dir")),
            backend=_as_str(data.get("backend"), "thread"),
            max_parallel=_as_int(data.get("max_parallel")),
            fail_fast=_as_bool(data.get("fail_fast")),
            force=_as_bool(data.get("force")),
            targets=targets,
            requested=_as_list_str(data.get("requested")),
        )
