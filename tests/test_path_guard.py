from __future__ import annotations

import os
from pathlib import Path

import pytest

from remake.util.path_guard import (
    has_symlink_ancestor,
    is_symlink_path,
    nofollow_flags,
    refuse_symlinks,
)


def test_is_symlink_path_distinguishes_links_and_missing_paths(tmp_path: Path) -> None:
    real = tmp_path / "real"
    real.write_text("x", encoding="utf-8")
    link = tmp_path / "link"
    link.symlink_to(real)
    assert is_symlink_path(link)
    assert not is_symlink_path(real)
    assert not is_symlink_path(tmp_path / "missing")


def test_is_symlink_path_fails_closed_on_lstat_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    target = tmp_path / "x"

    def broken_lstat(path_obj: Path) -> os.stat_result:
        raise PermissionError("denied")

    monkeypatch.setattr(Path, "lstat", broken_lstat)
    assert is_symlink_path(target)
    assert not is_symlink_path(target, fail_closed=False)


def test_has_symlink_ancestor_detects_linked_parent(tmp_path: Path) -> None:
    real_dir = tmp_path / "real"
    real_dir.mkdir()
    (tmp_path / "alias").symlink_to(real_dir, target_is_directory=True)
    assert has_symlink_ancestor(tmp_path / "alias" / "file.txt")
    assert not has_symlink_ancestor(real_dir / "not-yet" / "file.txt")


def test_refuse_symlinks_raises_for_link_or_linked_parent(tmp_path: Path) -> None:
    real_dir = tmp_path / "real"
    real_dir.mkdir()
    (tmp_path / "alias").symlink_to(real_dir, target_is_directory=True)
    with pytest.raises(OSError, match="must not include symlink"):
        refuse_symlinks(tmp_path / "alias" / "f")
    with pytest.raises(OSError, match="must not be symlink"):
        refuse_symlinks(tmp_path / "alias")
    refuse_symlinks(real_dir / "f")


def test_nofollow_flags_keeps_base_flags() -> None:
    flags = nofollow_flags(os.O_RDONLY | os.O_CREAT)
    assert flags & os.O_CREAT
    if hasattr(os, "O_NOFOLLOW"):
        assert flags & os.O_NOFOLLOW
