# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Cache-aside wrapper around the GitHub API client.

Every cached call follows the same flow:

    key = canonical_json({"route"|"query": ..., "options"|"parameters": ..., "extra_cache_keys": <fingerprint>})
    store.get(key) -> hit: return it
                   -> miss: live call, wait for the full result, store.set(key, result, ttl), return it

The fingerprint is the canonical JSON of the client options (auth, log target, ...),
so two differently-configured clients never read each other's entries.

Failures are never cached: if the live call raises, nothing is written and the next
call with the same key goes to the network again.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from typing import Any, Dict, Mapping, Optional, Protocol, TextIO

from common import DEFAULT_CACHE_TTL_S

from cache.cache_base import CacheStoreError

from . import GitHubAPIClient

_SEPARATORS = (",", ":")


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl_s: int) -> None: ...


class LiveClient(Protocol):
    def graphql(self, query: str, parameters: Optional[Mapping[str, Any]] = None) -> Any: ...

    def request(self, route: str, options: Optional[Mapping[str, Any]] = None) -> Any: ...


class CacheConfigError(ValueError):
    """Client options can't be used to build a cached client."""


def canonical_json(obj: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace, non-ASCII kept as-is."""
    return json.dumps(obj, sort_keys=True, separators=_SEPARATORS, ensure_ascii=False, allow_nan=False)


def make_cache_key(kind: str, identity: str, params: Optional[Mapping[str, Any]], extra_cache_keys: str) -> str:
    """Cache key for one call.

    kind is "query" (GraphQL) or "route" (REST); the params field name follows it so
    a query and a route with the same text produce different keys.
    """
    params_field = "parameters" if kind == "query" else "options"
    try:
        return canonical_json({
            kind: str(identity),
            params_field: dict(params or {}),
            "extra_cache_keys": extra_cache_keys,
        })
    except (TypeError, ValueError) as e:
        raise ValueError(f"{params_field} must be JSON-serializable: {e}") from e


def config_fingerprint(client_options: Any) -> str:
    """Canonical JSON of the client options; raises CacheConfigError if they are malformed."""
    if not isinstance(client_options, Mapping):
        raise CacheConfigError(f"client options must be a mapping, got {type(client_options).__name__}")
    if "auth" not in client_options:
        raise CacheConfigError("client options need an 'auth' entry (token string or None)")
    auth = client_options.get("auth")
    if auth is not None and not isinstance(auth, str):
        raise CacheConfigError(f"'auth' must be a string or None, got {type(auth).__name__}")
    log = client_options.get("log")
    if log is not None and not isinstance(log, str):
        raise CacheConfigError(f"'log' must be a logger name or None, got {type(log).__name__}")
    try:
        return canonical_json(dict(client_options))
    except (TypeError, ValueError) as e:
        raise CacheConfigError(f"client options must be JSON-serializable: {e}") from e


def _check_ttl(retention_in_seconds: Any) -> int:
    if isinstance(retention_in_seconds, bool) or not isinstance(retention_in_seconds, int) or retention_in_seconds < 0:
        raise ValueError(f"retention_in_seconds must be a non-negative integer, got {retention_in_seconds!r}")
    return retention_in_seconds


def _query_label(query: str) -> str:
    """First line of a GraphQL document ("query stale_repos($q: String!) {"), for log lines."""
    for line in str(query or "").splitlines():
        s = line.strip()
        if s:
            return s.rstrip("{").strip()
    return "<empty query>"


class CachedGitHubClient:
    """GitHub client facade with a persistent cache in front of graphql() and request().

    Example:
        store = DiskKVCache(cache_dir=github_report_cache_dir(), namespace="close-stale-repos")
        gh = CachedGitHubClient(store, {"auth": token, "log": "github_report"})
        members = gh.request_cached("GET /orgs/{org}/members", {"org": "acme", "role": "admin"})["data"]
        gh.print_cache_stats()
    """

    def __init__(
        self,
        cache: KeyValueStore,
        client_options: Mapping[str, Any],
        *,
        client: Optional[LiveClient] = None,
        store_read_errors_as_miss: bool = True,
        dedupe_inflight: bool = False,
    ):
        """
        Args:
            cache: store with get(key) / set(key, value, ttl_s)
            client_options: {"auth": <token or None>, "log": <logger name>, ...}; extra entries
                            (base_url, timeout) go to the GitHubAPIClient built when `client` is None
            client: live client with graphql()/request(); built from client_options when omitted
            store_read_errors_as_miss: a failing store.get() counts as a miss instead of raising
            dedupe_inflight: serialize concurrent misses on the same key so only one live call is made
        """
        if cache is None or not callable(getattr(cache, "get", None)) or not callable(getattr(cache, "set", None)):
            raise CacheConfigError("cache must provide get(key) and set(key, value, ttl_s)")

        self.extra_cache_keys: str = config_fingerprint(client_options)
        self.cache = cache
        self.client_options: Dict[str, Any] = dict(client_options)
        self.logger = logging.getLogger(self.client_options.get("log") or __name__)
        self.store_read_errors_as_miss = bool(store_read_errors_as_miss)
        self.dedupe_inflight = bool(dedupe_inflight)

        if client is None:
            opts = {k: v for (k, v) in self.client_options.items() if k in ("base_url", "timeout")}
            client = GitHubAPIClient(self.client_options.get("auth"), **opts)
        self.client = client

        self.hits = 0
        self.misses = 0
        self.writes = 0
        self._stats_mu = threading.Lock()

        # Inflight request deduplication: per-key locks (only used with dedupe_inflight=True).
        self._inflight_locks_mu = threading.Lock()
        self._inflight_locks: Dict[str, threading.Lock] = {}

    # -----------------------------------------------------------------------------
    # Key derivation
    # -----------------------------------------------------------------------------

    def query_cache_key(self, query: str, parameters: Optional[Mapping[str, Any]] = None) -> str:
        return make_cache_key("query", query, parameters, self.extra_cache_keys)

    def request_cache_key(self, route: str, options: Optional[Mapping[str, Any]] = None) -> str:
        return make_cache_key("route", route, options, self.extra_cache_keys)

    # -----------------------------------------------------------------------------
    # Cached calls
    # -----------------------------------------------------------------------------

    def graphql_cached(
        self,
        query: str,
        parameters: Optional[Mapping[str, Any]] = None,
        retention_in_seconds: int = DEFAULT_CACHE_TTL_S,
    ) -> Any:
        """client.graphql(query, parameters), served from the cache when possible."""
        ttl_s = _check_ttl(retention_in_seconds)
        key = self.query_cache_key(query, parameters)
        return self._get_or_fetch(
            key,
            ttl_s,
            describe=lambda: f"{_query_label(query)} {canonical_json(dict(parameters or {}))}",
            fetch=lambda: self.client.graphql(query, parameters),
        )

    def request_cached(
        self,
        route: str,
        options: Optional[Mapping[str, Any]] = None,
        retention_in_seconds: int = DEFAULT_CACHE_TTL_S,
    ) -> Any:
        """client.request(route, options), served from the cache when possible."""
        ttl_s = _check_ttl(retention_in_seconds)
        key = self.request_cache_key(route, options)
        return self._get_or_fetch(
            key,
            ttl_s,
            describe=lambda: f"{route} {canonical_json(dict(options or {}))}",
            fetch=lambda: self.client.request(route, options),
        )

    def _read(self, key: str) -> Optional[Any]:
        try:
            return self.cache.get(key)
        except (CacheStoreError, OSError, ValueError) as e:
            if not self.store_read_errors_as_miss:
                raise
            self.logger.warning("cache read failed, treating as miss: %s", e)
            return None

    def _get_or_fetch(self, key: str, ttl_s: int, *, describe, fetch) -> Any:
        cached = self._read(key)
        if cached is not None:
            self._count_hit()
            self.logger.info("cache hit: %s", describe())
            return cached

        if not self.dedupe_inflight:
            return self._fetch_and_store(key, ttl_s, describe=describe, fetch=fetch)

        with self._inflight_lock(key):
            # Re-check (another thread may have populated it while we waited).
            cached = self._read(key)
            if cached is not None:
                self._count_hit()
                self.logger.info("cache hit (after inflight wait): %s", describe())
                return cached
            return self._fetch_and_store(key, ttl_s, describe=describe, fetch=fetch)

    def _fetch_and_store(self, key: str, ttl_s: int, *, describe, fetch) -> Any:
        self._count_miss()
        self.logger.debug("cache miss: %s", describe())

        # The write must see the complete live result; a raising fetch writes nothing.
        live_data = fetch()
        if live_data is None:
            # None is indistinguishable from "absent" on the next lookup; don't store it.
            return live_data
        self.cache.set(key, live_data, ttl_s)
        with self._stats_mu:
            self.writes += 1
        return live_data

    def _inflight_lock(self, key: str) -> "threading.Lock":
        """Return a per-key lock to dedupe concurrent network fetches across threads."""
        with self._inflight_locks_mu:
            lk = self._inflight_locks.get(key)
            if lk is None:
                lk = threading.Lock()
                self._inflight_locks[key] = lk
            return lk

    def _count_hit(self) -> None:
        with self._stats_mu:
            self.hits += 1

    def _count_miss(self) -> None:
        with self._stats_mu:
            self.misses += 1

    # -----------------------------------------------------------------------------
    # Stats
    # -----------------------------------------------------------------------------

    def hit_rate_pct(self) -> Optional[float]:
        """hits / (hits + misses) * 100, or None before the first call."""
        total = self.hits + self.misses
        if total == 0:
            return None
        return (self.hits / total) * 100

    def cache_stats(self) -> Dict[str, Any]:
        return {
            "hits": int(self.hits),
            "misses": int(self.misses),
            "writes": int(self.writes),
            "hit_rate_pct": self.hit_rate_pct(),
        }

    def print_cache_stats(self, out: Optional[TextIO] = None) -> None:
        """Print hits/misses/hit rate; the hit rate is "N/A" when nothing was looked up."""
        out = out if out is not None else sys.stdout
        rate = self.hit_rate_pct()
        rate_txt = "N/A" if rate is None else f"{rate:.1f} %"
        print(file=out)
        print("cache stats:", file=out)
        print(f"  hits: {self.hits}", file=out)
        print(f"  misses: {self.misses}", file=out)
        print(f"  hit rate: {rate_txt}", file=out)
