from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from remake.cache.hashing import digest_hex
from remake.cache.store import FingerprintCache, serialize_value
from remake.util.errors import CacheError


def _cache(tmp_path: Path) -> FingerprintCache:
    return FingerprintCache(tmp_path / "cache").open()


def test_store_then_lookup_and_load(tmp_path: Path) -> None:
    cache = _cache(tmp_path)
    entry = cache.store("model", "sha256:fp1", {"weights": [1, 2, 3]})
    found = cache.lookup("model")
    assert found == entry
    assert found is not None and found.fingerprint == "sha256:fp1"
    assert cache.load_value(found) == {"weights": [1, 2, 3]}
    assert cache.names() == ["model"]


def test_lookup_of_unknown_target_returns_none(tmp_path: Path) -> None:
    assert _cache(tmp_path).lookup("nothing") is None


def test_store_supersedes_previous_entry(tmp_path: Path) -> None:
    cache = _cache(tmp_path)
    cache.store("t", "sha256:old", 1)
    cache.store("t", "sha256:new", 2)
    entry = cache.lookup("t")
    assert entry is not None
    assert entry.fingerprint == "sha256:new"
    assert cache.load_value(entry) == 2


def test_store_accepts_prepickled_payload(tmp_path: Path) -> None:
    cache = _cache(tmp_path)
    payload, content_hash = serialize_value([1, 2])
    entry = cache.store("t", "sha256:fp", payload=payload, output_files={"o.txt": "sha256:1"})
    assert entry.output_hash == content_hash
    assert entry.output_files == {"o.txt": "sha256:1"}


def test_unpicklable_value_raises_cache_error(tmp_path: Path) -> None:
    with pytest.raises(CacheError):
        _cache(tmp_path).store("t", "sha256:fp", lambda: None)


def test_malformed_entry_raises_cache_error(tmp_path: Path) -> None:
    cache = _cache(tmp_path)
    (cache.root / "entries" / "t.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(CacheError):
        cache.lookup("t")
    (cache.root / "entries" / "t.json").write_text(json.dumps({"name": "t"}), encoding="utf-8")
    with pytest.raises(CacheError, match="malformed"):
        cache.lookup("t")


def test_entry_with_non_string_field_is_malformed(tmp_path: Path) -> None:
    cache = _cache(tmp_path)
    entry = cache.store("t", "sha256:fp", "value")
    assert cache.lookup("t") == entry
    raw = json.loads((cache.root / "entries" / "t.json").read_text(encoding="utf-8"))
    raw["fingerprint"] = 7
    (cache.root / "entries" / "t.json").write_text(json.dumps(raw), encoding="utf-8")
    with pytest.raises(CacheError, match="must be strings"):
        cache.lookup("t")


def test_corrupt_object_is_detected(tmp_path: Path) -> None:
    cache = _cache(tmp_path)
    entry = cache.store("t", "sha256:fp", "value")
    hex_digest = digest_hex(entry.output_hash)
    (cache.root / "objects" / hex_digest[:2] / hex_digest[2:]).write_bytes(b"garbage")
    with pytest.raises(CacheError, match="corrupt"):
        cache.load_value(entry)


def test_crash_during_entry_write_keeps_previous_entry(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    cache = _cache(tmp_path)
    cache.store("t", "sha256:old", "old value")

    real_replace = os.replace

    def _crashing_replace(src: str | Path, dst: str | Path) -> None:
        if str(dst).endswith("t.json"):
            raise OSError("simulated crash before rename")
        real_replace(src, dst)

    monkeypatch.setattr(os, "replace", _crashing_replace)
    with pytest.raises(CacheError):
        cache.store("t", "sha256:new", "new value")
    monkeypatch.setattr(os, "replace", real_replace)

    entry = cache.lookup("t")
    assert entry is not None
    assert entry.fingerprint == "sha256:old"
    assert cache.load_value(entry) == "old value"
    assert list((cache.root / "tmp").iterdir()) == []


def test_forget_and_gc(tmp_path: Path) -> None:
    cache = _cache(tmp_path)
    cache.store("keep", "sha256:1", "kept")
    cache.store("drop", "sha256:2", "dropped")
    assert cache.forget("drop") is True
    assert cache.forget("drop") is False
    assert cache.lookup("drop") is None
    assert cache.gc() == 1
    keep = cache.lookup("keep")
    assert keep is not None and cache.load_value(keep) == "kept"
    assert cache.gc() == 0
