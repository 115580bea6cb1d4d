from __future__ import annotations

_MAX_DEFAULT_BACKOFF_SEC = 60


def backoff_for_attempt(attempt_idx: int, backoff: list[float]) -> float:
    """
    Return backoff seconds for retry attempt index.

    attempt_idx is zero-based for retries: 0 means first retry wait.
    """
    if backoff:
        return float(backoff[min(attempt_idx, len(backoff) - 1)])
    return float(min(_MAX_DEFAULT_BACKOFF_SEC, 2**attempt_idx))


def should_retry(*, retryable: bool, attempts: int, retries: int, canceled: bool) -> bool:
    if canceled or not retryable:
        return False
    return attempts < retries + 1
