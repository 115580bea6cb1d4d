from __future__ import annotations

import math
import re
import shlex
from pathlib import Path
from typing import Any, cast

import yaml

from remake.config.expand import TargetEntry, Transform, TransformKind, expand_targets
from remake.config.schema import EngineSettings, PlanSpec, TargetSpec
from remake.config.settings import parse_settings
from remake.util.atomic import read_regular_file
from remake.util.errors import PlanError

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_NAME_MAX_LEN = 128
_RESERVED_NAMES = {"file_in", "file_out"}
_ALLOWED_PLAN_KEYS = {"goal", "functions", "settings", "targets"}
_ALLOWED_TARGET_KEYS = {
    "name",
    "expr",
    "cmd",
    "depends_on",
    "inputs",
    "outputs",
    "cwd",
    "env",
    "timeout_sec",
    "retries",
    "retry_backoff_sec",
    "map",
    "cross",
    "combine",
}


def _is_finite_real_number(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return math.isfinite(value)


def _is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


def _is_str_without_nul(value: object) -> bool:
    return isinstance(value, str) and "\x00" not in value


def _is_valid_env_key(value: object) -> bool:
    return _is_non_blank_str(value) and "=" not in cast(str, value)


def _is_valid_name(value: object) -> bool:
    return (
        isinstance(value, str)
        and len(value) <= _NAME_MAX_LEN
        and _NAME_PATTERN.fullmatch(value) is not None
        and value not in _RESERVED_NAMES
    )


def normalize_cmd(cmd: str | list[str]) -> list[str]:
    if isinstance(cmd, str):
        try:
            parts = shlex.split(cmd)
        except ValueError as exc:
            raise PlanError(f"invalid cmd string: {exc}") from exc
        if not parts:
            raise PlanError("cmd string must not be empty")
        if any("\x00" in part for part in parts):
            raise PlanError("cmd must not contain null bytes")
        return parts
    if isinstance(cmd, list) and cmd and all(_is_non_blank_str(p) for p in cmd):
        return cmd
    raise PlanError("cmd must be str or non-empty list[str]")


def _ensure_list_str(name: str, value: Any, *, non_empty_items: bool = False) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PlanError(f"{name} must be list[str]")
    if non_empty_items and any(not _is_non_blank_str(v) for v in value):
        raise PlanError(f"{name} must not contain empty strings")
    return value


def _parse_transform(name: str, kind: TransformKind, raw: Any) -> Transform:
    if not isinstance(raw, dict) or any(not isinstance(key, str) for key in raw):
        raise PlanError(f"target '{name}' {kind} must be mapping of parameter -> list")
    params: dict[str, list[object]] = {}
    for param, values in raw.items():
        if not isinstance(values, list):
            raise PlanError(f"target '{name}' {kind}.{param} must be a list")
        params[param] = list(values)
    return Transform(kind=kind, params=params)


def _parse_target(raw: Any, settings: EngineSettings) -> TargetEntry:
    if not isinstance(raw, dict):
        raise PlanError("target must be mapping")
    if any(not isinstance(key, str) for key in raw):
        raise PlanError("target fields must use string keys")
    name = raw.get("name")
    if not _is_non_blank_str(name):
        raise PlanError("target.name is required and must be non-empty string")
    if not _is_valid_name(name):
        raise PlanError(
            f"target name '{name}' must be a Python identifier of at most "
            f"{_NAME_MAX_LEN} characters and not a reserved word"
        )
    unknown = set(raw.keys()) - _ALLOWED_TARGET_KEYS
    if unknown:
        raise PlanError(f"target '{name}' has unknown fields: {sorted(unknown)}")

    has_expr = "expr" in raw
    has_cmd = "cmd" in raw
    if has_expr == has_cmd:
        raise PlanError(f"target '{name}' must define exactly one of expr or cmd")
    expr: str | None = None
    cmd: list[str] | None = None
    if has_expr:
        if not _is_non_blank_str(raw["expr"]):
            raise PlanError(f"target '{name}' expr must be non-empty string")
        expr = raw["expr"].strip()
    else:
        try:
            cmd = normalize_cmd(raw["cmd"])
        except PlanError as exc:
            raise PlanError(f"target '{name}' {exc}") from exc

    retries = raw.get("retries", settings.default_retries)
    if not isinstance(retries, int) or isinstance(retries, bool) or retries < 0:
        raise PlanError(f"target '{name}' retries must be int >= 0")

    timeout_sec = raw.get("timeout_sec", settings.default_timeout_sec)
    if timeout_sec is not None:
        if not _is_finite_real_number(timeout_sec) or timeout_sec <= 0:
            raise PlanError(f"target '{name}' timeout_sec must be > 0")
        timeout_sec = float(timeout_sec)

    raw_backoff = raw.get("retry_backoff_sec", [])
    if not isinstance(raw_backoff, list) or not all(
        _is_finite_real_number(v) and v >= 0 for v in raw_backoff
    ):
        raise PlanError(f"target '{name}' retry_backoff_sec must be list[number>=0]")
    retry_backoff = [float(v) for v in raw_backoff]
    if len(retry_backoff) > retries:
        raise PlanError(f"target '{name}' retry_backoff_sec length must be <= retries")

    depends_on = _ensure_list_str("depends_on", raw.get("depends_on"), non_empty_items=True)
    inputs = _ensure_list_str("inputs", raw.get("inputs"), non_empty_items=True)
    outputs = _ensure_list_str("outputs", raw.get("outputs"), non_empty_items=True)

    cwd = raw.get("cwd")
    if cwd is not None and not _is_non_blank_str(cwd):
        raise PlanError(f"target '{name}' cwd must be non-empty string")

    env = raw.get("env")
    if env is not None and (
        not isinstance(env, dict)
        or not all(_is_valid_env_key(k) and _is_str_without_nul(v) for k, v in env.items())
    ):
        raise PlanError(f"target '{name}' env must be dict[str, str]")
    if expr is not None and (cwd is not None or env is not None):
        raise PlanError(f"target '{name}' cwd/env apply to cmd targets only")

    transform: Transform | None = None
    if "map" in raw and "cross" in raw:
        raise PlanError(f"target '{name}' cannot use both map and cross")
    if "map" in raw:
        transform = _parse_transform(name, "map", raw["map"])
    elif "cross" in raw:
        transform = _parse_transform(name, "cross", raw["cross"])

    combine = raw.get("combine")
    if combine is not None and not _is_valid_name(combine):
        raise PlanError(f"target '{name}' combine must name a template target")

    spec = TargetSpec(
        name=name,
        expr=expr,
        cmd=cmd,
        depends_on=depends_on,
        inputs=inputs,
        outputs=outputs,
        cwd=cwd,
        env=env,
        timeout_sec=timeout_sec,
        retries=retries,
        retry_backoff_sec=retry_backoff,
    )
    return TargetEntry(spec=spec, transform=transform, combine=combine)


def _raw_target_list(raw_targets: Any) -> list[Any]:
    if isinstance(raw_targets, list):
        return raw_targets
    if isinstance(raw_targets, dict):
        items: list[Any] = []
        for name, body in raw_targets.items():
            if isinstance(body, str):
                items.append({"name": name, "expr": body})
            elif isinstance(body, dict):
                if "name" in body and body["name"] != name:
                    raise PlanError(f"target '{name}' has mismatching name field")
                items.append({"name": name, **body})
            else:
                raise PlanError(f"target '{name}' must be expression string or mapping")
        return items
    raise PlanError("plan.targets must be a list or a mapping")


def validate_plan(plan: PlanSpec) -> None:
    if not plan.targets:
        raise PlanError("plan.targets must contain at least one target")

    names = [target.name for target in plan.targets]
    if len(set(names)) != len(names):
        raise PlanError("target names must be unique")
    folded = [name.casefold() for name in names]
    if len(set(folded)) != len(folded):
        raise PlanError("target names must be unique (case-insensitive)")

    for target in plan.targets:
        if len(set(target.depends_on)) != len(target.depends_on):
            raise PlanError(f"target '{target.name}' has duplicate dependencies")
        if len(set(target.outputs)) != len(target.outputs):
            raise PlanError(f"target '{target.name}' has duplicate outputs")
        if len(set(target.inputs)) != len(target.inputs):
            raise PlanError(f"target '{target.name}' has duplicate inputs")


def parse_plan(raw: Any, *, base_dir: Path | None = None) -> PlanSpec:
    """Build a validated plan from already-decoded YAML/JSON data."""
    if not isinstance(raw, dict):
        raise PlanError("plan root must be a mapping")
    if any(not isinstance(key, str) for key in raw):
        raise PlanError("plan root keys must be strings")
    unknown_root = set(raw.keys()) - _ALLOWED_PLAN_KEYS
    if unknown_root:
        raise PlanError(f"plan contains unknown fields: {sorted(unknown_root)}")

    goal = raw.get("goal")
    if goal is not None and not _is_non_blank_str(goal):
        raise PlanError("plan.goal must be non-empty string when provided")

    functions = _ensure_list_str("plan.functions", raw.get("functions"), non_empty_items=True)
    settings = parse_settings(raw.get("settings"))

    if "targets" not in raw:
        raise PlanError("plan.targets is required")
    entries = [_parse_target(item, settings) for item in _raw_target_list(raw["targets"])]
    template_names = [entry.spec.name for entry in entries]
    if len(set(template_names)) != len(template_names):
        raise PlanError("target names must be unique")
    plan = PlanSpec(
        goal=goal,
        targets=expand_targets(entries),
        functions=functions,
        settings=settings,
        base_dir=str(base_dir) if base_dir is not None else None,
    )
    validate_plan(plan)
    return plan


def load_plan(path: Path) -> PlanSpec:
    try:
        content = read_regular_file(path).decode("utf-8")
    except FileNotFoundError as exc:
        raise PlanError(f"plan file not found: {path}") from exc
    except UnicodeError as exc:
        raise PlanError(f"failed to decode plan file as utf-8: {path}") from exc
    except OSError as exc:
        if "symlink" in str(exc):
            raise PlanError(f"plan file must not be symlink: {path}") from exc
        raise PlanError(f"failed to read plan file: {path}") from exc

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise PlanError(f"failed to parse yaml: {exc}") from exc

    return parse_plan(raw, base_dir=path.resolve().parent)
