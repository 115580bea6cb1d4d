from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from remake.state.model import RunState, TargetState
from remake.state.store import load_state, save_state_atomic
from remake.util.errors import StateError


def _make_state(run_id: str = "run_1") -> RunState:
    return RunState(
        run_id=run_id,
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:05+00:00",
        status="FAILED",
        goal="demo",
        workdir="/work",
        cache_dir="/work/.remake/cache",
        backend="thread",
        max_parallel=2,
        fail_fast=False,
        force=False,
        targets={
            "dataset": TargetState(
                status="SKIPPED", kind="expr", upstream=[], decision="UP_TO_DATE"
            ),
            "model": TargetState(
                status="FAILED",
                kind="expr",
                upstream=["dataset"],
                decision="STALE",
                reason="fingerprint_changed",
                attempts=2,
                retries=1,
                error="ValueError: bad",
                retryable=True,
                stderr_path="logs/model.err.log",
            ),
            "report": TargetState(
                status="FAILED_UPSTREAM",
                kind="cmd",
                upstream=["model"],
                decision="STALE",
                reason="upstream_failed",
            ),
        },
    )


def test_save_and_load_state_atomic(tmp_path: Path) -> None:
    run_dir = tmp_path / "run_1"
    run_dir.mkdir()
    state = _make_state()
    save_state_atomic(run_dir, state)
    loaded = load_state(run_dir)
    assert loaded == state
    assert loaded.targets["model"].retry_count == 1
    assert loaded.count("FAILED", "FAILED_UPSTREAM") == 2
    assert loaded.dispatched() == ["model"]


def test_load_state_rejects_mismatched_run_id(tmp_path: Path) -> None:
    run_dir = tmp_path / "other"
    run_dir.mkdir()
    save_state_atomic(run_dir, _make_state())
    with pytest.raises(StateError, match="does not match"):
        load_state(run_dir)


def _write_raw(run_dir: Path, raw: dict[str, object]) -> None:
    (run_dir / "state.json").write_text(json.dumps(raw), encoding="utf-8")


@pytest.mark.parametrize(
    "mutate",
    [
        lambda raw: raw["targets"]["model"].update(status="SUCCEEDED", attempts=0),
        lambda raw: raw["targets"]["dataset"].update(attempts=1),
        lambda raw: raw["targets"]["model"].update(upstream=["ghost"]),
        lambda raw: raw["targets"]["model"].update(decision="MAYBE"),
        lambda raw: raw.update(status="SUCCESS"),
        lambda raw: raw.update(status="CANCELED"),
        lambda raw: raw.update(max_parallel=0),
        lambda raw: raw.update(extra=True),
    ],
)
def test_load_state_rejects_inconsistent_shapes(tmp_path: Path, mutate) -> None:  # type: ignore[no-untyped-def]
    run_dir = tmp_path / "run_1"
    run_dir.mkdir()
    raw = _make_state().to_dict()
    mutate(raw)
    _write_raw(run_dir, raw)
    with pytest.raises(StateError):
        load_state(run_dir)


def test_load_state_reports_missing_and_invalid_json(tmp_path: Path) -> None:
    run_dir = tmp_path / "run_1"
    run_dir.mkdir()
    with pytest.raises(StateError, match="not found"):
        load_state(run_dir)
    (run_dir / "state.json").write_text("{", encoding="utf-8")
    with pytest.raises(StateError, match="invalid state json"):
        load_state(run_dir)


def test_load_state_refuses_symlinked_state(tmp_path: Path) -> None:
    run_dir = tmp_path / "run_1"
    run_dir.mkdir()
    real = tmp_path / "real.json"
    real.write_text(json.dumps(_make_state().to_dict()), encoding="utf-8")
    (run_dir / "state.json").symlink_to(real)
    with pytest.raises(StateError, match="symlink"):
        load_state(run_dir)


def test_save_state_atomic_cleans_tmp_when_replace_fails(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    run_dir = tmp_path / "run_1"
    run_dir.mkdir()

    def _fail_replace(src: str | Path, dst: str | Path) -> None:
        raise OSError("replace failed")

    monkeypatch.setattr(os, "replace", _fail_replace)
    with pytest.raises(OSError, match="replace failed"):
        save_state_atomic(run_dir, _make_state())
    assert list(run_dir.iterdir()) == []
