"""Exclusive lock file guarding a cache directory for the duration of a run."""

from __future__ import annotations

import errno
import logging
import os
import stat
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

from remake.util.errors import RunConflictError
from remake.util.path_guard import is_symlink_path, refuse_symlinks

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".lock"


def _lock_age(lock_path: Path) -> float | None:
    """Seconds since the lock was written, or None if it is not a plain file."""
    try:
        meta = lock_path.lstat()
    except (OSError, RuntimeError):
        return None
    if not stat.S_ISREG(meta.st_mode):
        return None
    return time.time() - meta.st_mtime


def _create_lock(lock_path: Path) -> os.stat_result:
    flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    try:
        fd = os.open(lock_path, flags, 0o644)
    except OSError as err:
        if err.errno == errno.ELOOP:
            raise OSError(f"lock path must not be symlink: {lock_path}") from err
        raise
    try:
        os.write(fd, str(os.getpid()).encode("utf-8"))
        return os.fstat(fd)
    except OSError:
        with suppress(OSError):
            lock_path.unlink(missing_ok=True)
        raise
    finally:
        with suppress(OSError):
            os.close(fd)


def _still_ours(lock_path: Path, meta: os.stat_result) -> bool:
    try:
        current = lock_path.lstat()
    except (OSError, RuntimeError):
        return False
    return (
        stat.S_ISREG(current.st_mode)
        and current.st_ino == meta.st_ino
        and current.st_dev == meta.st_dev
    )


@contextmanager
def cache_lock(
    cache_root: Path, stale_sec: int = 3600, *, retries: int = 0, retry_interval: float = 0.2
) -> Iterator[None]:
    """
    Hold an exclusive ``.lock`` file in ``cache_root`` for the duration of a run.

    A lock older than ``stale_sec`` is assumed to belong to a crashed process and is
    taken over. Raises RunConflictError when another live process still holds it
    after ``retries`` waits of ``retry_interval`` seconds.
    """
    refuse_symlinks(cache_root)
    lock_path = cache_root / LOCK_FILENAME
    waited = 0
    while True:
        if is_symlink_path(lock_path):
            raise OSError(f"lock path must not be symlink: {lock_path}")
        try:
            meta = _create_lock(lock_path)
            break
        except FileExistsError as err:
            age = _lock_age(lock_path)
            if age is not None and age > stale_sec:
                logger.warning("taking over stale cache lock %s (%.0fs old)", lock_path, age)
                with suppress(OSError, RuntimeError):
                    lock_path.unlink(missing_ok=True)
                continue
            if waited >= retries:
                raise RunConflictError(f"cache is locked by another process: {lock_path}") from err
            waited += 1
            time.sleep(retry_interval)

    try:
        yield
    finally:
        if _still_ours(lock_path, meta):
            with suppress(OSError, RuntimeError):
                lock_path.unlink(missing_ok=True)
