"""Symlink checks for everything remake reads or writes under its home and cache."""

from __future__ import annotations

import os
import stat
from pathlib import Path


def is_symlink_path(path: Path, *, fail_closed: bool = True) -> bool:
    """True if ``path`` itself is a symlink; an unreadable path counts as one unless told otherwise."""
    try:
        meta = path.lstat()
    except FileNotFoundError:
        return False
    except (OSError, RuntimeError):
        return fail_closed
    return stat.S_ISLNK(meta.st_mode)


def has_symlink_ancestor(path: Path) -> bool:
    for parent in path.parents:
        try:
            meta = parent.lstat()
        except FileNotFoundError:
            continue
        except (OSError, RuntimeError):
            return True
        if stat.S_ISLNK(meta.st_mode):
            return True
    return False


def refuse_symlinks(path: Path) -> None:
    """Raise OSError if ``path`` or any existing parent directory is a symlink."""
    if has_symlink_ancestor(path):
        raise OSError(f"path must not include symlink: {path}")
    if is_symlink_path(path):
        raise OSError(f"path must not be symlink: {path}")


def nofollow_flags(base: int) -> int:
    flags = base
    if hasattr(os, "O_NONBLOCK"):
        flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    return flags
