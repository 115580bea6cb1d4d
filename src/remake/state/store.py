from __future__ import annotations

import json
import math
import re
from datetime import datetime
from pathlib import Path

from remake.state.model import (
    DECISION_VALUES,
    RUN_STATUS_VALUES,
    TARGET_STATUS_VALUES,
    TERMINAL_STATUSES,
    RunState,
)
from remake.util.atomic import read_regular_file, write_text_atomic
from remake.util.errors import StateError

_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_RUN_ID_MAX_LEN = 128
_ALLOWED_RUN_KEYS = {
    "run_id",
    "created_at",
    "updated_at",
    "status",
    "goal",
    "workdir",
    "cache_dir",
    "backend",
    "max_parallel",
    "fail_fast",
    "force",
    "requested",
    "targets",
}
_ALLOWED_TARGET_KEYS = {
    "status",
    "kind",
    "upstream",
    "decision",
    "reason",
    "fingerprint",
    "attempts",
    "retries",
    "started_at",
    "ended_at",
    "duration_sec",
    "error",
    "retryable",
    "timed_out",
    "stdout_path",
    "stderr_path",
}


def _is_iso_datetime(value: object) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return False
    return dt.tzinfo is not None


def _is_non_negative_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _is_optional_str(value: object) -> bool:
    return value is None or (isinstance(value, str) and "\x00" not in value)


def _validate_target_shape(name: object, data: object, known: set[str]) -> str:
    if not isinstance(name, str) or not isinstance(data, dict):
        raise StateError("invalid state field: targets")
    if any(not isinstance(key, str) for key in data) or set(data) - _ALLOWED_TARGET_KEYS:
        raise StateError("invalid state field: targets")
    status = data.get("status")
    if not isinstance(status, str) or status not in TARGET_STATUS_VALUES:
        raise StateError("invalid state field: targets")
    decision = data.get("decision")
    if decision is not None and decision not in DECISION_VALUES:
        raise StateError("invalid state field: targets")
    upstream = data.get("upstream")
    if not isinstance(upstream, list) or any(dep not in known for dep in upstream):
        raise StateError("invalid state field: targets")
    if not _is_non_negative_int(data.get("attempts")) or not _is_non_negative_int(
        data.get("retries")
    ):
        raise StateError("invalid state field: targets")
    for key in ("reason", "fingerprint", "error", "stdout_path", "stderr_path"):
        if not _is_optional_str(data.get(key)):
            raise StateError("invalid state field: targets")
    for key in ("started_at", "ended_at"):
        value = data.get(key)
        if value is not None and not _is_iso_datetime(value):
            raise StateError("invalid state field: targets")
    duration = data.get("duration_sec")
    if duration is not None and not (
        isinstance(duration, (int, float))
        and not isinstance(duration, bool)
        and math.isfinite(duration)
        and duration >= 0
    ):
        raise StateError("invalid state field: targets")
    for key in ("retryable", "timed_out"):
        if not isinstance(data.get(key), bool):
            raise StateError("invalid state field: targets")
    if status == "SUCCEEDED" and data.get("attempts") == 0:
        raise StateError("invalid state field: targets")
    if status in {"SKIPPED", "FAILED_UPSTREAM"} and data.get("attempts") != 0:
        raise StateError("invalid state field: targets")
    return status


def _validate_state_shape(raw: dict[str, object], run_dir: Path) -> None:
    if any(not isinstance(key, str) for key in raw) or set(raw) - _ALLOWED_RUN_KEYS:
        raise StateError("invalid state field: root")

    for key in ("run_id", "status", "workdir", "cache_dir", "backend"):
        value = raw.get(key)
        if not isinstance(value, str) or not value:
            raise StateError(f"invalid state field: {key}")

    run_id = raw["run_id"]
    if (
        not isinstance(run_id, str)
        or len(run_id) > _RUN_ID_MAX_LEN
        or _RUN_ID_PATTERN.fullmatch(run_id) is None
    ):
        raise StateError("invalid state field: run_id")
    if run_id != run_dir.name:
        raise StateError("state run_id does not match directory")

    for key in ("created_at", "updated_at"):
        if not _is_iso_datetime(raw.get(key)):
            raise StateError(f"invalid state field: {key}")
    if datetime.fromisoformat(str(raw["updated_at"])) < datetime.fromisoformat(
        str(raw["created_at"])
    ):
        raise StateError("invalid state field: updated_at")

    status = raw["status"]
    if status not in RUN_STATUS_VALUES:
        raise StateError("invalid state field: status")
    goal = raw.get("goal")
    if goal is not None and not isinstance(goal, str):
        raise StateError("invalid state field: goal")
    max_parallel = raw.get("max_parallel")
    if not isinstance(max_parallel, int) or isinstance(max_parallel, bool) or max_parallel < 1:
        raise StateError("invalid state field: max_parallel")
    for key in ("fail_fast", "force"):
        if not isinstance(raw.get(key), bool):
            raise StateError(f"invalid state field: {key}")
    requested = raw.get("requested")
    if not isinstance(requested, list) or any(not isinstance(n, str) for n in requested):
        raise StateError("invalid state field: requested")

    targets = raw.get("targets")
    if not isinstance(targets, dict) or not targets:
        raise StateError("invalid state field: targets")
    known = {name for name in targets if isinstance(name, str)}
    statuses = [_validate_target_shape(name, data, known) for name, data in targets.items()]

    if status == "SUCCESS" and any(s not in {"SUCCEEDED", "SKIPPED"} for s in statuses):
        raise StateError("invalid state field: status")
    if status == "CANCELED" and "CANCELED" not in statuses:
        raise StateError("invalid state field: status")
    if status in {"SUCCESS", "FAILED", "CANCELED"} and any(
        s not in TERMINAL_STATUSES for s in statuses
    ):
        raise StateError("invalid state field: status")


def load_state(run_dir: Path) -> RunState:
    state_path = run_dir / "state.json"
    try:
        raw = json.loads(read_regular_file(state_path).decode("utf-8"))
    except FileNotFoundError as exc:
        raise StateError(f"state file not found: {state_path}") from exc
    except UnicodeError as exc:
        raise StateError(f"failed to decode state file as utf-8: {state_path}") from exc
    except json.JSONDecodeError as exc:
        raise StateError(f"invalid state json: {state_path}") from exc
    except OSError as exc:
        if "symlink" in str(exc):
            raise StateError(f"state file must not be symlink: {state_path}") from exc
        raise StateError(f"failed to read state file: {state_path}") from exc
    if not isinstance(raw, dict):
        raise StateError("state root must be object")
    _validate_state_shape(raw, run_dir)
    return RunState.from_dict(raw)


def save_state_atomic(run_dir: Path, state: RunState) -> None:
    payload = json.dumps(state.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
    write_text_atomic(run_dir / "state.json", payload + "\n")
