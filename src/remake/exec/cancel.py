"""Cross-process cancellation: ``remake cancel`` drops a marker file into the run dir."""

from __future__ import annotations

import stat
from pathlib import Path

from remake.util.atomic import write_text_atomic
from remake.util.path_guard import has_symlink_ancestor

CANCEL_FILENAME = "cancel.request"


def cancel_requested(run_dir: Path) -> bool:
    path = run_dir / CANCEL_FILENAME
    if has_symlink_ancestor(path):
        return False
    try:
        meta = path.lstat()
    except OSError:
        return False
    return stat.S_ISREG(meta.st_mode)


def write_cancel_request(run_dir: Path) -> None:
    """Ask the process running ``run_dir`` to stop; OSError if the marker path is unsafe."""
    write_text_atomic(run_dir / CANCEL_FILENAME, "cancel requested\n")
