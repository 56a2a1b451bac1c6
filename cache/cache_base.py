#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Disk-backed key/value cache with per-entry TTL.

Storage layout (one JSON file per namespace):

    <cache_dir>/<namespace>.json
    {
      "version": 1,
      "items": {
        "<sha256(key)>": {"v": <value>, "meta": {"fetched_at": 1766947200, "ttl_s": 3600}}
      }
    }

Keys are stored as SHA-256 digests: callers build keys from configuration that can
contain credentials (auth tokens), and those must not end up in a plain-text file.
"""

from __future__ import annotations

import hashlib
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Tuple

try:
    import fcntl  # type: ignore
except ImportError:  # pragma: no cover - best-effort on non-POSIX
    fcntl = None  # type: ignore


CACHE_ENTRY_VALUE_KEY = "v"
CACHE_ENTRY_META_KEY = "meta"
CACHE_ENTRY_FETCHED_AT_KEY = "fetched_at"
CACHE_ENTRY_TTL_S_KEY = "ttl_s"


class CacheStoreError(RuntimeError):
    """The cache store could not be read or written."""


def hash_cache_key(key: str) -> str:
    return hashlib.sha256(str(key).encode("utf-8")).hexdigest()


def json_copy(value: Any) -> Any:
    """Detached copy of a JSON value, shaped as it would come back from disk (tuples become lists)."""
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError) as e:
        raise CacheStoreError(f"cache value is not JSON-serializable: {e}") from e


def make_cache_entry(*, value: Any, fetched_at: int, ttl_s: int) -> Dict[str, Any]:
    """Standard cache entry schema: {"v": <value>, "meta": {"fetched_at": <epoch_s>, "ttl_s": <s>}}."""
    return {
        CACHE_ENTRY_VALUE_KEY: value,
        CACHE_ENTRY_META_KEY: {CACHE_ENTRY_FETCHED_AT_KEY: int(fetched_at), CACHE_ENTRY_TTL_S_KEY: int(ttl_s)},
    }


def is_cache_entry_fresh(entry: Any, *, now: int) -> bool:
    """ttl_s == 0 means the entry never expires."""
    if not isinstance(entry, dict) or CACHE_ENTRY_VALUE_KEY not in entry:
        return False
    meta = entry.get(CACHE_ENTRY_META_KEY)
    if not isinstance(meta, dict):
        return False
    try:
        fetched_at = int(meta.get(CACHE_ENTRY_FETCHED_AT_KEY) or 0)
        ttl_s = int(meta.get(CACHE_ENTRY_TTL_S_KEY) or 0)
    except (ValueError, TypeError):
        return False
    if ttl_s <= 0:
        return True
    return (now - fetched_at) < ttl_s


@dataclass
class BaseCacheStats:
    """Basic cache statistics tracked automatically by the caches below."""
    hit: int = 0
    miss: int = 0
    write: int = 0


class InMemoryKVCache:
    """Process-local store with the same get/set contract as DiskKVCache (used by --no-cache and tests)."""

    def __init__(self) -> None:
        self._mu = Lock()
        self._items: Dict[str, Dict[str, Any]] = {}
        self.stats = BaseCacheStats()

    def get(self, key: str) -> Optional[Any]:
        with self._mu:
            entry = self._items.get(hash_cache_key(key))
            if entry is not None and is_cache_entry_fresh(entry, now=int(time.time())):
                self.stats.hit += 1
                return json_copy(entry[CACHE_ENTRY_VALUE_KEY])
            self.stats.miss += 1
            return None

    def set(self, key: str, value: Any, ttl_s: int) -> None:
        # Callers may mutate both what they pass in and what get() hands back.
        value = json_copy(value)
        with self._mu:
            self._items[hash_cache_key(key)] = make_cache_entry(value=value, fetched_at=int(time.time()), ttl_s=ttl_s)
            self.stats.write += 1

    def __len__(self) -> int:
        return len(self._items)


class BaseDiskCache:
    """Thread-safe JSON file cache with inter-process locking.

    Provides:
    - Thread-safe access with Lock
    - Disk persistence with inter-process locking (fcntl)
    - Lazy loading (load on first access)
    - Merge on write (another process may have written in between)
    - Cache size tracking (initial disk count vs current memory count)
    """

    def __init__(self, *, cache_file: Path, schema_version: int = 1):
        self._mu = Lock()
        self._cache_file = Path(cache_file)
        self._schema_version = schema_version
        self._data: Dict[str, Any] = {}
        self._loaded = False
        self._dirty = False
        self._initial_disk_count: Optional[int] = None
        self.stats = BaseCacheStats()

    @property
    def cache_file(self) -> Path:
        return self._cache_file

    def _lock_file_path(self) -> Path:
        return self._cache_file.with_name(f".{self._cache_file.name}.lock")

    def _acquire_disk_lock(self, *, timeout_s: float = 10.0) -> Optional[object]:
        """Best-effort inter-process lock for the cache file.

        Returns file handle on success, None on failure/timeout.
        """
        if fcntl is None:
            return None

        lock_path = self._lock_file_path()
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        fh = open(lock_path, "w")
        start = time.monotonic()
        while time.monotonic() - start < float(timeout_s):
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return fh
            except OSError:
                time.sleep(0.1)
        fh.close()
        return None

    def _release_disk_lock(self, lock_fh: Optional[object]) -> None:
        if lock_fh is None:
            return
        try:
            if fcntl is not None:
                fcntl.flock(lock_fh.fileno(), fcntl.LOCK_UN)
        finally:
            lock_fh.close()

    def _read_disk_items(self) -> Dict[str, Any]:
        """Read items from disk. A missing file is empty; an unreadable one is an error."""
        if not self._cache_file.exists():
            return {}
        try:
            raw = json.loads(self._cache_file.read_text() or "{}")
        except (OSError, ValueError) as e:
            raise CacheStoreError(f"cannot read cache file {self._cache_file}: {e}") from e
        if not isinstance(raw, dict):
            raise CacheStoreError(f"cache file {self._cache_file} does not contain a JSON object")
        items = raw.get("items")
        if items is None:
            return {}
        if not isinstance(items, dict):
            raise CacheStoreError(f"cache file {self._cache_file} has a malformed 'items' section")
        return dict(items)

    def _load_once(self, *, strict: bool = True) -> None:
        """Load cache from disk (once per instance).

        With strict=False a corrupt file is treated as empty; the next persist replaces it.
        """
        if self._loaded:
            return
        try:
            items = self._read_disk_items()
        except CacheStoreError:
            if strict:
                raise
            items = {}
        self._data = {"version": self._schema_version, "items": items}
        self._initial_disk_count = len(items)
        self._loaded = True

    def _get_items(self) -> Dict[str, Any]:
        items = self._data.get("items") if isinstance(self._data, dict) else None
        if not isinstance(items, dict):
            items = {}
            self._data = {"version": self._schema_version, "items": items}
        return items

    def _persist(self) -> None:
        """Persist cache to disk, merging with whatever another process wrote meanwhile."""
        if not self._dirty:
            return

        mem_items: Dict[str, Any] = dict(self._get_items())
        try:
            self._cache_file.parent.mkdir(parents=True, exist_ok=True)
            lock_fh = self._acquire_disk_lock(timeout_s=10.0)
        except OSError as e:
            raise CacheStoreError(f"cannot lock cache file {self._cache_file}: {e}") from e
        try:
            try:
                disk_items = self._read_disk_items()
            except CacheStoreError:
                # We are about to rewrite the file anyway; a corrupt copy on disk loses nothing.
                disk_items = {}

            # Merge: disk first, then memory wins for conflicts
            self._write_atomic({
                "version": self._schema_version,
                "items": {**disk_items, **mem_items},
            })
            self._dirty = False
        finally:
            self._release_disk_lock(lock_fh)

    def _write_atomic(self, data: Dict[str, Any]) -> None:
        """Write tmp file + rename, then make `data` the in-memory view."""
        tmp = Path(f"{self._cache_file}.tmp.{os.getpid()}")
        try:
            tmp.write_text(json.dumps(data, separators=(",", ":")))
            os.replace(str(tmp), str(self._cache_file))
        except OSError as e:
            raise CacheStoreError(f"cannot write cache file {self._cache_file}: {e}") from e
        self._data = data

    def flush(self) -> None:
        with self._mu:
            self._persist()

    def get_cache_sizes(self) -> Tuple[int, int]:
        """Return (mem_count, disk_count) for cache entries.

        disk_count is the count before this run's modifications.
        """
        with self._mu:
            self._load_once()
            return (len(self._get_items()), int(self._initial_disk_count or 0))


class DiskKVCache(BaseDiskCache):
    """Key/value store with per-entry TTL on top of BaseDiskCache.

    Satisfies the store contract used by CachedGitHubClient:
      get(key) -> value or None (absent/expired; never raises on a plain miss)
      set(key, value, ttl_s) -> None (persisted before returning)
    """

    _SCHEMA_VERSION = 1

    def __init__(self, *, cache_dir: Path, namespace: str):
        ns = str(namespace or "").strip()
        if not ns or "/" in ns or ns.startswith("."):
            raise ValueError(f"Invalid cache namespace: {namespace!r}")
        self.namespace = ns
        super().__init__(cache_file=Path(cache_dir) / f"{ns}.json", schema_version=self._SCHEMA_VERSION)

    def get(self, key: str) -> Optional[Any]:
        with self._mu:
            self._load_once()
            entry = self._get_items().get(hash_cache_key(key))
            if entry is not None and is_cache_entry_fresh(entry, now=int(time.time())):
                self.stats.hit += 1
                return json_copy(entry[CACHE_ENTRY_VALUE_KEY])
            self.stats.miss += 1
            return None

    def set(self, key: str, value: Any, ttl_s: int) -> None:
        # Copy before touching the in-memory view: the entry must match what lands on disk,
        # and the caller keeps its own object.
        entry = json_copy(make_cache_entry(value=value, fetched_at=int(time.time()), ttl_s=int(ttl_s)))
        with self._mu:
            self._load_once(strict=False)
            self._get_items()[hash_cache_key(key)] = entry
            self._dirty = True
            self.stats.write += 1
            self._persist()

    def prune_expired(self) -> int:
        """Drop expired entries from disk. Returns the number of entries removed."""
        now = int(time.time())
        with self._mu:
            self._load_once()
            if not self._cache_file.exists():
                return 0
            lock_fh = self._acquire_disk_lock(timeout_s=10.0)
            try:
                # Include entries written by other processes, otherwise they would survive the prune.
                items = {**self._read_disk_items(), **self._get_items()}
                fresh = {k: v for (k, v) in items.items() if is_cache_entry_fresh(v, now=now)}
                removed = len(items) - len(fresh)
                if removed > 0:
                    self._write_atomic({"version": self._schema_version, "items": fresh})
                    self._dirty = False
                return removed
            finally:
                self._release_disk_lock(lock_fh)
