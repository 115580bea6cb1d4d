from __future__ import annotations

import ast
import hashlib
import inspect
import json
from pathlib import Path

CHUNK = 1024 * 1024  # 1MB streaming chunks
PREFIX = "sha256:"


def sha256_bytes(data: bytes) -> str:
    return PREFIX + hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Stream a file and return 'sha256:<hex>'."""
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(CHUNK), b""):
            h.update(chunk)
    return PREFIX + h.hexdigest()


def canonical_json(obj: object) -> bytes:
    """Canonical JSON for hashing: UTF-8, sorted keys, no whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def digest_hex(digest: str) -> str:
    return digest.split(":", 1)[1] if digest.startswith(PREFIX) else digest


def normalize_expression(expr: str) -> str:
    """
    Hash the AST of an expression, so whitespace and formatting do not matter.

    Falls back to the raw text when the expression does not parse; the analyzer
    rejects such plans before fingerprints are ever compared.
    """
    try:
        tree = ast.parse(expr, mode="eval")
    except SyntaxError:
        return sha256_bytes(expr.encode("utf-8"))
    dumped = ast.dump(tree, annotate_fields=False, include_attributes=False)
    return sha256_bytes(dumped.encode("utf-8"))


def normalize_command(cmd: list[str], cwd: str | None, env: dict[str, str] | None) -> str:
    return sha256_bytes(canonical_json({"cmd": cmd, "cwd": cwd, "env": env or {}}))


def function_digest(obj: object) -> str:
    """Hash a callable by its source; use bytecode or qualified name when there is none."""
    try:
        source = inspect.getsource(obj)  # type: ignore[arg-type]
    except (OSError, TypeError):
        code = getattr(obj, "__code__", None)
        if code is not None:
            return sha256_bytes(code.co_code + repr(code.co_consts).encode("utf-8"))
        module = getattr(obj, "__module__", None) or ""
        qualname = getattr(obj, "__qualname__", None) or type(obj).__qualname__
        return sha256_bytes(f"{module}.{qualname}".encode("utf-8"))
    return sha256_bytes(inspect.cleandoc(source).encode("utf-8"))
