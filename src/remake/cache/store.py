"""
Content-addressed fingerprint cache.

Layout under the cache root::

    entries/<target>.json   # {name, fingerprint, output_hash, output_files, stored_at, kind}
    objects/ab/cdef...      # pickled output values, named by their content hash
    tmp/                    # staging area for atomic writes

An entry is written only after its object is durable, and both writes go through
write-temp-then-rename, so a reader sees either the previous entry or the new one.
"""

from __future__ import annotations

import json
import logging
import pickle
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path

from remake.cache.hashing import PREFIX, digest_hex, sha256_bytes
from remake.util.atomic import read_regular_file, write_bytes_atomic
from remake.util.errors import CacheError
from remake.util.paths import ensure_cache_layout
from remake.util.time import now_iso_precise

logger = logging.getLogger(__name__)

_STRING_KEYS = ("name", "fingerprint", "output_hash", "stored_at", "kind")
_ENTRY_KEYS = {*_STRING_KEYS, "output_files"}


@dataclass(frozen=True, slots=True)
class CacheEntry:
    name: str
    fingerprint: str
    output_hash: str
    stored_at: str
    kind: str = "expr"
    output_files: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> CacheEntry:
        if set(data) != _ENTRY_KEYS:
            raise ValueError("unexpected entry fields")
        fields: dict[str, str] = {}
        for key in _STRING_KEYS:
            value = data[key]
            if not isinstance(value, str):
                raise ValueError("entry fields must be strings")
            fields[key] = value
        output_files = data["output_files"]
        if not isinstance(output_files, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in output_files.items()
        ):
            raise ValueError("entry output_files must be dict[str, str]")
        if not fields["output_hash"].startswith(PREFIX):
            raise ValueError("entry output_hash must be sha256 digest")
        return cls(
            name=fields["name"],
            fingerprint=fields["fingerprint"],
            output_hash=fields["output_hash"],
            stored_at=fields["stored_at"],
            kind=fields["kind"],
            output_files=dict(output_files),
        )


def serialize_value(value: object) -> tuple[bytes, str]:
    """Pickle ``value`` and return the payload with its content hash."""
    try:
        payload = pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
    except (pickle.PicklingError, TypeError, AttributeError) as exc:
        raise CacheError(f"output value cannot be serialized: {exc}") from exc
    return payload, sha256_bytes(payload)


class FingerprintCache:
    """On-disk map from target name to its last successful fingerprint and output."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def open(self) -> FingerprintCache:
        try:
            ensure_cache_layout(self.root)
        except OSError as exc:
            raise CacheError(f"failed to prepare cache directory: {exc}") from exc
        return self

    def _entry_path(self, name: str) -> Path:
        return self.root / "entries" / f"{name}.json"

    def _object_path(self, output_hash: str) -> Path:
        hex_digest = digest_hex(output_hash)
        return self.root / "objects" / hex_digest[:2] / hex_digest[2:]

    @contextmanager
    def _writer(self, name: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(name, threading.Lock())
        with lock:
            yield

    def lookup(self, name: str) -> CacheEntry | None:
        path = self._entry_path(name)
        try:
            raw = json.loads(read_regular_file(path).decode("utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, UnicodeError, json.JSONDecodeError) as exc:
            raise CacheError(f"failed to read cache entry for '{name}': {exc}") from exc
        if not isinstance(raw, dict):
            raise CacheError(f"malformed cache entry for '{name}'")
        try:
            entry = CacheEntry.from_dict(raw)
        except ValueError as exc:
            raise CacheError(f"malformed cache entry for '{name}': {exc}") from exc
        if entry.name != name:
            raise CacheError(f"cache entry for '{name}' names '{entry.name}'")
        return entry

    def has_value(self, entry: CacheEntry) -> bool:
        return self._object_path(entry.output_hash).is_file()

    def load_value(self, entry: CacheEntry) -> object:
        path = self._object_path(entry.output_hash)
        try:
            payload = read_regular_file(path)
        except FileNotFoundError as exc:
            raise CacheError(f"cached value for '{entry.name}' is missing") from exc
        except OSError as exc:
            raise CacheError(f"failed to read cached value for '{entry.name}': {exc}") from exc
        if sha256_bytes(payload) != entry.output_hash:
            raise CacheError(f"cached value for '{entry.name}' is corrupt")
        try:
            return pickle.loads(payload)
        except Exception as exc:
            raise CacheError(f"failed to load cached value for '{entry.name}': {exc}") from exc

    def store(
        self,
        name: str,
        fingerprint: str,
        value: object = None,
        *,
        payload: bytes | None = None,
        output_files: dict[str, str] | None = None,
        kind: str = "expr",
    ) -> CacheEntry:
        """
        Record a successful build, replacing any previous entry for ``name``.

        ``payload`` is the already-pickled value when the worker produced one.
        Raises CacheError if anything could not be written; the previous entry then
        remains the one readers see.
        """
        if payload is None:
            payload, output_hash = serialize_value(value)
        else:
            output_hash = sha256_bytes(payload)
        entry = CacheEntry(
            name=name,
            fingerprint=fingerprint,
            output_hash=output_hash,
            stored_at=now_iso_precise(),
            kind=kind,
            output_files=dict(output_files or {}),
        )
        tmp_dir = self.root / "tmp"
        with self._writer(name):
            try:
                object_path = self._object_path(output_hash)
                if not object_path.is_file():
                    object_path.parent.mkdir(parents=True, exist_ok=True)
                    write_bytes_atomic(object_path, payload, tmp_dir=tmp_dir)
                data = json.dumps(entry.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
                write_bytes_atomic(
                    self._entry_path(name), (data + "\n").encode("utf-8"), tmp_dir=tmp_dir
                )
            except OSError as exc:
                raise CacheError(f"failed to store cache entry for '{name}': {exc}") from exc
        logger.debug("stored %s fingerprint=%s", name, fingerprint)
        return entry

    def forget(self, name: str) -> bool:
        with self._writer(name):
            try:
                self._entry_path(name).unlink()
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise CacheError(f"failed to remove cache entry for '{name}': {exc}") from exc
        return True

    def names(self) -> list[str]:
        entries_dir = self.root / "entries"
        if not entries_dir.is_dir():
            return []
        return sorted(path.stem for path in entries_dir.glob("*.json") if path.is_file())

    def gc(self) -> int:
        """Delete objects no entry refers to; return how many were removed."""
        referenced: set[str] = set()
        for name in self.names():
            entry = self.lookup(name)
            if entry is not None:
                referenced.add(digest_hex(entry.output_hash))
        removed = 0
        objects_dir = self.root / "objects"
        if not objects_dir.is_dir():
            return 0
        for path in objects_dir.glob("*/*"):
            if not path.is_file():
                continue
            if path.parent.name + path.name in referenced:
                continue
            try:
                path.unlink()
            except OSError as exc:
                raise CacheError(f"failed to remove cache object {path}: {exc}") from exc
            removed += 1
        for path in (self.root / "tmp").glob("*"):
            if path.is_file():
                path.unlink(missing_ok=True)
        logger.info("cache gc removed %d objects", removed)
        return removed
