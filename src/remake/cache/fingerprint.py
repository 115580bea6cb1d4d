from __future__ import annotations

import os
from pathlib import Path

from remake.cache.hashing import (
    canonical_json,
    normalize_command,
    normalize_expression,
    sha256_bytes,
    sha256_file,
)
from remake.dag.build import AnalyzedTarget
from remake.util.errors import MissingInputError


def resolve_path(path: str, workdir: Path) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return workdir / candidate


def code_digest(target: AnalyzedTarget) -> str:
    spec = target.spec
    if spec.expr is not None:
        return normalize_expression(spec.expr)
    return normalize_command(spec.cmd or [], spec.cwd, spec.env)


def hash_tree(root: Path) -> str:
    """Merkle-style digest of a directory: sorted (relative path, content hash) pairs."""
    pairs: list[list[str]] = []
    for base, _dirs, filenames in os.walk(root):
        base_path = Path(base)
        for filename in filenames:
            file_path = base_path / filename
            if not file_path.is_file():
                continue
            pairs.append([file_path.relative_to(root).as_posix(), sha256_file(file_path)])
    pairs.sort()
    return sha256_bytes(canonical_json(pairs))


def hash_path(path: Path) -> str | None:
    """Content hash of a file or directory, or None when it does not exist."""
    try:
        if path.is_dir():
            return hash_tree(path)
        if path.is_file():
            return sha256_file(path)
    except FileNotFoundError:
        return None
    return None


def hash_input_files(
    target: AnalyzedTarget, workdir: Path, upstream_fingerprints: dict[str, str]
) -> dict[str, str]:
    """
    Hash every declared input of ``target``.

    Inputs produced by another target of the plan contribute that producer's
    fingerprint: the file may not exist yet and is fully determined by the producer.
    """
    hashes: dict[str, str] = {}
    for path in target.inputs:
        producer = target.produced_inputs.get(path)
        if producer is not None:
            hashes[path] = "target:" + upstream_fingerprints[producer]
            continue
        digest = hash_path(resolve_path(path, workdir))
        if digest is None:
            raise MissingInputError(target.name, path)
        hashes[path] = digest
    return hashes


def hash_output_files(target: AnalyzedTarget, workdir: Path) -> dict[str, str | None]:
    return {path: hash_path(resolve_path(path, workdir)) for path in target.outputs}


def current_fingerprint(
    target: AnalyzedTarget,
    upstream_fingerprints: dict[str, str],
    file_hashes: dict[str, str],
) -> str:
    """
    Combine code, user functions, upstream fingerprints and input file hashes.

    Every collection is reduced to sorted pairs before hashing, so the declaration
    order of dependencies and files never affects the result.
    """
    payload = {
        "kind": target.spec.kind,
        "code": code_digest(target),
        "outputs": sorted(target.outputs),
        "functions": sorted(target.function_digests.items()),
        "upstream": sorted((name, upstream_fingerprints[name]) for name in target.upstream),
        "files": sorted(file_hashes.items()),
    }
    return sha256_bytes(canonical_json(payload))
