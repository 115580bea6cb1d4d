"""Crash-safe file writes and symlink-refusing reads."""

from __future__ import annotations

import errno
import os
import stat
from contextlib import suppress
from pathlib import Path
from secrets import token_hex

from remake.util.path_guard import has_symlink_ancestor, nofollow_flags, refuse_symlinks


def fsync_directory(path: Path) -> None:
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        with suppress(OSError):
            os.close(fd)


def write_bytes_atomic(path: Path, payload: bytes, *, tmp_dir: Path | None = None) -> None:
    """
    Replace ``path`` with ``payload`` so readers see either the old or the new content.

    The temporary file lives in ``tmp_dir`` (default: next to ``path``) and must be on
    the same filesystem for ``os.replace`` to be atomic.
    """
    refuse_symlinks(path)
    staging = tmp_dir if tmp_dir is not None else path.parent
    tmp_path = staging / f".{path.name}.{os.getpid()}.{token_hex(4)}.tmp"
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    try:
        fd = os.open(str(tmp_path), flags, 0o600)
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise OSError(f"temporary path must not be symlink: {tmp_path}") from exc
        raise
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise
    try:
        os.replace(tmp_path, path)
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise
    fsync_directory(path.parent)


def write_text_atomic(path: Path, text: str, *, tmp_dir: Path | None = None) -> None:
    write_bytes_atomic(path, text.encode("utf-8"), tmp_dir=tmp_dir)


def read_regular_file(path: Path) -> bytes:
    """
    Read a regular, non-symlink file.

    Raises FileNotFoundError when missing and OSError for anything that is not a
    plain file.
    """
    if has_symlink_ancestor(path):
        raise OSError(f"path must not include symlink: {path}")
    meta = path.lstat()
    if stat.S_ISLNK(meta.st_mode):
        raise OSError(f"path must not be symlink: {path}")
    if not stat.S_ISREG(meta.st_mode):
        raise OSError(f"path must be regular file: {path}")
    fd: int | None = None
    try:
        fd = os.open(str(path), nofollow_flags(os.O_RDONLY))
        opened_meta = os.fstat(fd)
        if not stat.S_ISREG(opened_meta.st_mode):
            raise OSError(f"path must be regular file: {path}")
        with os.fdopen(fd, "rb") as f:
            fd = None
            return f.read()
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise OSError(f"path must not be symlink: {path}") from exc
        raise
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)
