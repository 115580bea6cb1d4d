"""ID generation utilities."""

import re
from datetime import datetime
from secrets import token_hex

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_]")


def new_run_id(now: datetime) -> str:
    """Create run id: YYYYMMDD_HHMMSS_<6chars>."""
    ts = now.strftime("%Y%m%d_%H%M%S")
    suffix = token_hex(3)
    return f"{ts}_{suffix}"


def sanitize_name_part(value: object) -> str:
    """Turn an arbitrary value into a fragment usable inside a target name."""
    text = _UNSAFE_NAME_CHARS.sub("_", str(value)).strip("_")
    return text or "x"
