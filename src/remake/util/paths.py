from __future__ import annotations

import stat
from pathlib import Path

from remake.util.path_guard import is_symlink_path, refuse_symlinks


def run_dir(home: Path, run_id: str) -> Path:
    """Return run directory path."""
    return home / "runs" / run_id


def cache_dir(home: Path) -> Path:
    """Return the default fingerprint cache directory."""
    return home / "cache"


def ensure_directory(path: Path, *, parents: bool = False) -> None:
    refuse_symlinks(path)
    try:
        path.mkdir(parents=parents, exist_ok=True)
    except (OSError, RuntimeError) as exc:
        raise OSError(f"failed to create directory path: {path}") from exc
    try:
        meta = path.lstat()
    except (OSError, RuntimeError) as exc:
        raise OSError(f"path must be directory: {path}") from exc
    if is_symlink_path(path) or not stat.S_ISDIR(meta.st_mode):
        raise OSError(f"path must be directory: {path}")


def ensure_run_layout(run_dir: Path) -> None:
    """Ensure all directories required by the run layout exist."""
    ensure_directory(run_dir, parents=True)
    ensure_directory(run_dir / "logs")
    ensure_directory(run_dir / "report")


def ensure_cache_layout(cache_root: Path) -> None:
    ensure_directory(cache_root, parents=True)
    ensure_directory(cache_root / "entries")
    ensure_directory(cache_root / "objects")
    ensure_directory(cache_root / "tmp")
