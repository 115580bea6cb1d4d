from __future__ import annotations

import os
import stat
from pathlib import Path

from remake.util.path_guard import nofollow_flags, refuse_symlinks

_BLOCK_SIZE = 8192


def tail_lines(path: Path, n: int) -> list[str]:
    """
    Return the last ``n`` lines of a log file, reading backwards from the end.

    Missing, unreadable, symlinked or non-regular files yield an empty list.
    """
    if n <= 0:
        return []
    try:
        refuse_symlinks(path)
        fd = os.open(str(path), nofollow_flags(os.O_RDONLY))
    except OSError:
        return []
    with os.fdopen(fd, "rb") as f:
        try:
            meta = os.fstat(f.fileno())
            if not stat.S_ISREG(meta.st_mode):
                return []
            position = meta.st_size
            data = b""
            while position > 0 and data.count(b"\n") <= n:
                step = min(_BLOCK_SIZE, position)
                position -= step
                f.seek(position)
                data = f.read(step) + data
        except OSError:
            return []
    lines = data.decode("utf-8", errors="replace").splitlines()
    return lines[-n:]
