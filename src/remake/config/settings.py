"""Engine settings: plan-level ``settings:`` block plus command-line overrides."""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Any, cast

from remake.config.schema import BACKEND_NAMES, BackendName, EngineSettings
from remake.util.errors import PlanError

_ALLOWED_SETTINGS_KEYS = {
    "max_parallel",
    "backend",
    "cache_dir",
    "fail_fast",
    "default_timeout_sec",
    "default_retries",
}


def _is_positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _is_non_negative_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _is_positive_finite(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


def parse_settings(raw: Any) -> EngineSettings:
    if raw is None:
        return EngineSettings()
    if not isinstance(raw, dict) or any(not isinstance(key, str) for key in raw):
        raise PlanError("plan.settings must be a mapping")
    unknown = set(raw) - _ALLOWED_SETTINGS_KEYS
    if unknown:
        raise PlanError(f"plan.settings contains unknown fields: {sorted(unknown)}")

    settings = EngineSettings()
    if "max_parallel" in raw:
        if not _is_positive_int(raw["max_parallel"]):
            raise PlanError("settings.max_parallel must be int >= 1")
        settings.max_parallel = raw["max_parallel"]
    if "backend" in raw:
        if raw["backend"] not in BACKEND_NAMES:
            raise PlanError(f"settings.backend must be one of {sorted(BACKEND_NAMES)}")
        settings.backend = cast(BackendName, raw["backend"])
    if "cache_dir" in raw:
        cache_dir = raw["cache_dir"]
        if not isinstance(cache_dir, str) or not cache_dir.strip() or "\x00" in cache_dir:
            raise PlanError("settings.cache_dir must be non-empty string")
        settings.cache_dir = cache_dir
    if "fail_fast" in raw:
        if not isinstance(raw["fail_fast"], bool):
            raise PlanError("settings.fail_fast must be bool")
        settings.fail_fast = raw["fail_fast"]
    if raw.get("default_timeout_sec") is not None:
        if not _is_positive_finite(raw["default_timeout_sec"]):
            raise PlanError("settings.default_timeout_sec must be > 0")
        settings.default_timeout_sec = float(raw["default_timeout_sec"])
    if "default_retries" in raw:
        if not _is_non_negative_int(raw["default_retries"]):
            raise PlanError("settings.default_retries must be int >= 0")
        settings.default_retries = raw["default_retries"]
    return settings


def merge_overrides(
    settings: EngineSettings,
    *,
    max_parallel: int | None = None,
    backend: str | None = None,
    cache_dir: str | None = None,
    fail_fast: bool | None = None,
) -> EngineSettings:
    """Return a copy of ``settings`` with every non-None override applied."""
    merged = replace(settings)
    if max_parallel is not None:
        if not _is_positive_int(max_parallel):
            raise PlanError("max_parallel must be int >= 1")
        merged.max_parallel = max_parallel
    if backend is not None:
        if backend not in BACKEND_NAMES:
            raise PlanError(f"backend must be one of {sorted(BACKEND_NAMES)}")
        merged.backend = cast(BackendName, backend)
    if cache_dir is not None:
        merged.cache_dir = cache_dir
    if fail_fast is not None:
        merged.fail_fast = fail_fast
    return merged
