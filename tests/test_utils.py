from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from remake.exec.cancel import cancel_requested, write_cancel_request
from remake.exec.retry import backoff_for_attempt, should_retry
from remake.util.atomic import read_regular_file, write_bytes_atomic, write_text_atomic
from remake.util.ids import new_run_id, sanitize_name_part
from remake.util.paths import ensure_cache_layout, ensure_run_layout, run_dir
from remake.util.tail import tail_lines
from remake.util.time import duration_sec, now_iso


def test_new_run_id_format_includes_timestamp_and_suffix() -> None:
    run_id = new_run_id(datetime(2026, 3, 4, 5, 6, 7))
    assert re.fullmatch(r"20260304_050607_[0-9a-f]{6}", run_id)


def test_sanitize_name_part_keeps_identifier_characters() -> None:
    assert sanitize_name_part("data/2024-01.csv") == "data_2024_01_csv"
    assert sanitize_name_part(3.5) == "3_5"
    assert sanitize_name_part("---") == "x"


def test_now_iso_is_timezone_aware_and_duration_rounds() -> None:
    assert datetime.fromisoformat(now_iso()).tzinfo is not None
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert duration_sec(start, start + timedelta(milliseconds=1234)) == 1.234


def test_run_and_cache_layouts(tmp_path: Path) -> None:
    current = run_dir(tmp_path / ".remake", "r1")
    ensure_run_layout(current)
    assert (current / "logs").is_dir()
    assert (current / "report").is_dir()
    ensure_cache_layout(tmp_path / "cache")
    assert sorted(p.name for p in (tmp_path / "cache").iterdir()) == ["entries", "objects", "tmp"]


def test_ensure_run_layout_rejects_symlinked_run_dir(tmp_path: Path) -> None:
    real = tmp_path / "real"
    real.mkdir()
    link = tmp_path / "link"
    link.symlink_to(real, target_is_directory=True)
    with pytest.raises(OSError):
        ensure_run_layout(link)


def test_write_atomic_replaces_content(tmp_path: Path) -> None:
    target = tmp_path / "file.txt"
    write_text_atomic(target, "first")
    write_bytes_atomic(target, b"second", tmp_dir=tmp_path)
    assert read_regular_file(target) == b"second"
    assert [p.name for p in tmp_path.iterdir()] == ["file.txt"]


def test_write_atomic_refuses_symlink_target(tmp_path: Path) -> None:
    real = tmp_path / "real.txt"
    real.write_text("keep", encoding="utf-8")
    link = tmp_path / "link.txt"
    link.symlink_to(real)
    with pytest.raises(OSError, match="symlink"):
        write_text_atomic(link, "overwrite")
    assert real.read_text(encoding="utf-8") == "keep"


def test_backoff_for_attempt_uses_configured_values_and_clamps_to_last() -> None:
    assert backoff_for_attempt(0, [0.5, 1.0]) == 0.5
    assert backoff_for_attempt(1, [0.5, 1.0]) == 1.0
    assert backoff_for_attempt(5, [0.5, 1.0]) == 1.0


def test_backoff_for_attempt_uses_exponential_default_with_cap() -> None:
    assert backoff_for_attempt(0, []) == 1.0
    assert backoff_for_attempt(3, []) == 8.0
    assert backoff_for_attempt(10, []) == 60.0


def test_should_retry_respects_budget_and_cancellation() -> None:
    assert should_retry(retryable=True, attempts=1, retries=1, canceled=False)
    assert not should_retry(retryable=True, attempts=2, retries=1, canceled=False)
    assert not should_retry(retryable=False, attempts=1, retries=3, canceled=False)
    assert not should_retry(retryable=True, attempts=1, retries=3, canceled=True)


def test_tail_lines_returns_last_n_lines(tmp_path: Path) -> None:
    log = tmp_path / "x.log"
    log.write_text("\n".join(f"line{i}" for i in range(10)) + "\n", encoding="utf-8")
    assert tail_lines(log, 3) == ["line7", "line8", "line9"]
    assert tail_lines(tmp_path / "missing.log", 3) == []
    assert tail_lines(log, 0) == []


def test_cancel_request_marker(tmp_path: Path) -> None:
    assert not cancel_requested(tmp_path)
    write_cancel_request(tmp_path)
    assert cancel_requested(tmp_path)
    assert (tmp_path / "cancel.request").read_text(encoding="utf-8") == "cancel requested\n"


def test_write_cancel_request_refuses_symlink(tmp_path: Path) -> None:
    (tmp_path / "elsewhere").write_text("", encoding="utf-8")
    (tmp_path / "cancel.request").symlink_to(tmp_path / "elsewhere")
    with pytest.raises(OSError, match="symlink"):
        write_cancel_request(tmp_path)


def test_tail_lines_reads_across_blocks_of_large_logs(tmp_path: Path) -> None:
    log = tmp_path / "big.log"
    log.write_text("".join(f"entry {i:05d} {'x' * 40}\n" for i in range(5000)), encoding="utf-8")
    lines = tail_lines(log, 300)
    assert len(lines) == 300
    assert lines[0].startswith("entry 04700")
    assert lines[-1].startswith("entry 04999")
