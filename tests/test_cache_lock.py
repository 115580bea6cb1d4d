from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest

from remake.state.lock import cache_lock
from remake.util.errors import RunConflictError


def test_cache_lock_creates_and_releases_lock_file(tmp_path: Path) -> None:
    lock_path = tmp_path / ".lock"
    with cache_lock(tmp_path):
        assert lock_path.exists()
        assert lock_path.read_text(encoding="utf-8") == str(os.getpid())
    assert not lock_path.exists()


def test_cache_lock_raises_on_conflict_with_fresh_lock(tmp_path: Path) -> None:
    lock_path = tmp_path / ".lock"
    lock_path.write_text("other-process", encoding="utf-8")

    with pytest.raises(RunConflictError), cache_lock(tmp_path, stale_sec=3600, retries=0):
        pass

    assert lock_path.exists()


def test_cache_lock_takes_over_stale_lock(tmp_path: Path) -> None:
    lock_path = tmp_path / ".lock"
    lock_path.write_text("crashed", encoding="utf-8")
    old = time.time() - 120
    os.utime(lock_path, (old, old))

    with cache_lock(tmp_path, stale_sec=1):
        assert lock_path.read_text(encoding="utf-8") == str(os.getpid())
    assert not lock_path.exists()


def test_cache_lock_released_when_body_raises(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError), cache_lock(tmp_path):
        raise RuntimeError("boom")
    assert not (tmp_path / ".lock").exists()


def test_cache_lock_waits_for_holder_to_release(tmp_path: Path) -> None:
    lock_path = tmp_path / ".lock"
    lock_path.write_text("holder", encoding="utf-8")
    timer = threading.Timer(0.15, lambda: lock_path.unlink(missing_ok=True))
    timer.start()
    try:
        with cache_lock(tmp_path, retries=20, retry_interval=0.05):
            assert lock_path.exists()
    finally:
        timer.cancel()


def test_cache_lock_refuses_symlinked_lock(tmp_path: Path) -> None:
    (tmp_path / "elsewhere").write_text("x", encoding="utf-8")
    (tmp_path / ".lock").symlink_to(tmp_path / "elsewhere")
    with pytest.raises(OSError, match="symlink"), cache_lock(tmp_path):
        pass
