"""Load user function modules that build expressions may call."""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import logging
import sys
import threading
from pathlib import Path
from types import ModuleType

from remake.util.errors import PlanError

logger = logging.getLogger(__name__)

_FILE_MODULE_PREFIX = "_remake_functions_"
_LOCK = threading.Lock()
_NAMESPACES: dict[tuple[tuple[str, ...], str], dict[str, object]] = {}


def _looks_like_path(entry: str) -> bool:
    return entry.endswith(".py") or "/" in entry or "\\" in entry


def _import_file(path: Path, *, reload: bool) -> ModuleType:
    digest = hashlib.sha256(str(path).encode("utf-8")).hexdigest()[:12]
    module_name = f"{_FILE_MODULE_PREFIX}{path.stem}_{digest}"
    existing = sys.modules.get(module_name)
    if existing is not None and not reload:
        return existing
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise PlanError(f"cannot import functions file: {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        sys.modules.pop(module_name, None)
        raise PlanError(f"failed to import functions file {path}: {exc}") from exc
    return module


def _import_entry(entry: str, base_dir: Path, *, reload: bool) -> ModuleType:
    if _looks_like_path(entry):
        path = Path(entry)
        if not path.is_absolute():
            path = base_dir / path
        if not path.is_file():
            raise PlanError(f"functions file not found: {path}")
        return _import_file(path.resolve(), reload=reload)
    try:
        return importlib.import_module(entry)
    except Exception as exc:
        raise PlanError(f"failed to import functions module '{entry}': {exc}") from exc


def _public_attributes(module: ModuleType) -> dict[str, object]:
    exported = getattr(module, "__all__", None)
    if isinstance(exported, (list, tuple)):
        names = [name for name in exported if isinstance(name, str)]
    else:
        names = [name for name in vars(module) if not name.startswith("_")]
    return {name: getattr(module, name) for name in names if hasattr(module, name)}


def load_namespace(
    functions: list[str], base_dir: Path, *, reload: bool = False
) -> dict[str, object]:
    """
    Import every entry of ``functions`` and merge their public attributes.

    Later entries win on name clashes. Results are cached per process, keyed by the
    entries and base directory, so worker processes import each module once.
    ``reload=True`` re-executes functions files (not installed modules) so edits made
    since the last load are picked up.
    """
    key = (tuple(functions), str(base_dir))
    with _LOCK:
        cached = _NAMESPACES.get(key)
        if cached is not None and not reload:
            return cached
        namespace: dict[str, object] = {}
        for entry in functions:
            module = _import_entry(entry, base_dir, reload=reload)
            attributes = _public_attributes(module)
            clashes = sorted(set(attributes) & set(namespace))
            if clashes:
                logger.debug("functions entry %s shadows names: %s", entry, clashes)
            namespace.update(attributes)
        _NAMESPACES[key] = namespace
        return namespace
