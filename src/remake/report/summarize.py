from __future__ import annotations

from pathlib import Path

from remake.state.model import RunState
from remake.util.tail import tail_lines

_PROBLEM_STATUSES = {"FAILED", "FAILED_UPSTREAM", "CANCELED"}


def build_summary(state: RunState, run_dir: Path) -> dict[str, object]:
    target_rows: list[dict[str, object]] = []
    problem_rows: list[dict[str, object]] = []

    for name, target in state.targets.items():
        target_rows.append(
            {
                "name": name,
                "kind": target.kind,
                "status": target.status,
                "decision": target.decision,
                "attempts": target.attempts,
                "retry_count": target.retry_count,
                "duration_sec": target.duration_sec,
                "timed_out": target.timed_out,
                "stdout_path": target.stdout_path,
                "stderr_path": target.stderr_path,
            }
        )
        if target.status in _PROBLEM_STATUSES:
            stderr_tail: list[str] = []
            if target.status == "FAILED" and target.stderr_path is not None:
                stderr_tail = tail_lines(run_dir / target.stderr_path, 50)
            problem_rows.append(
                {
                    "name": name,
                    "status": target.status,
                    "reason": target.reason,
                    "error": target.error,
                    "retry_count": target.retry_count,
                    "stderr_tail": stderr_tail,
                }
            )

    return {
        "run": {
            "run_id": state.run_id,
            "goal": state.goal,
            "created_at": state.created_at,
            "updated_at": state.updated_at,
            "status": state.status,
            "backend": state.backend,
            "max_parallel": state.max_parallel,
            "fail_fast": state.fail_fast,
            "force": state.force,
            "workdir": state.workdir,
            "cache_dir": state.cache_dir,
        },
        "counts": {
            "built": state.count("SUCCEEDED"),
            "skipped": state.count("SKIPPED"),
            "failed": state.count("FAILED"),
            "failed_upstream": state.count("FAILED_UPSTREAM"),
            "canceled": state.count("CANCELED"),
        },
        "targets": target_rows,
        "problems": problem_rows,
    }
