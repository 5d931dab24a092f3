"""Search result cache shared between workers.

Only popular searches are written: a (query, location) pair on the warm list,
or one requested at least ``popularity_threshold`` times within the TTL. Redis
is used when ``REDIS_URL`` is configured; otherwise entries live in process
memory.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from redis import Redis
from redis.exceptions import RedisError

from leadfinder.core.config import Settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "search:"
POPULARITY_PREFIX = "search-hits:"
STALE_AFTER_SECONDS = 12 * 60 * 60
WARM_RESULT_COUNT = 50

POPULAR_QUERIES: Sequence[Tuple[str, Sequence[str]]] = (
    ("restaurants", ("austin tx", "denver co", "miami fl", "seattle wa")),
    ("coffee shops", ("new york ny", "los angeles ca", "chicago il")),
    ("bakeries", ("boston ma", "portland or", "san francisco ca")),
    ("plumbers", ("houston tx", "phoenix az", "dallas tx")),
    ("electricians", ("atlanta ga", "philadelphia pa")),
    ("hvac contractors", ("las vegas nv", "san diego ca")),
    ("lawyers", ("new york ny", "los angeles ca", "chicago il")),
    ("accountants", ("houston tx", "dallas tx")),
    ("real estate agents", ("miami fl", "denver co")),
    ("dentists", ("seattle wa", "san francisco ca")),
    ("chiropractors", ("phoenix az", "atlanta ga")),
    ("gyms", ("austin tx", "boston ma")),
    ("auto repair", ("houston tx", "los angeles ca")),
    ("car wash", ("miami fl", "dallas tx")),
    ("pet stores", ("new york ny", "seattle wa")),
    ("florists", ("chicago il", "san diego ca")),
)

SearchRunner = Callable[[str, Optional[str], int], List[Dict[str, Any]]]


class CacheBackendError(RuntimeError):
    """Raised by a backend when the underlying store cannot be reached."""


def normalize(value: Optional[str]) -> str:
    return " ".join((value or "").split()).lower()


def cache_key(query: str, location: Optional[str]) -> str:
    digest = hashlib.sha256(f"{normalize(query)}\x1f{normalize(location)}".encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{digest[:32]}"


def popular_pairs(max_queries: Optional[int] = None) -> List[Tuple[str, str]]:
    pairs = [(query, location) for query, locations in POPULAR_QUERIES for location in locations]
    return pairs if max_queries is None else pairs[: max(0, max_queries)]


_POPULAR_KEYS = frozenset(cache_key(query, location) for query, location in popular_pairs())


class CacheBackend(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    def incr(self, key: str, ttl_seconds: int) -> int: ...

    @abstractmethod
    def scan(self, prefix: str) -> Iterator[str]: ...

    @abstractmethod
    def ping(self) -> bool: ...

    def sweep(self) -> int:
        """Drop expired entries; returns how many were evicted."""
        return 0


class MemoryCacheBackend(CacheBackend):
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[str, float]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._data.get(key)
        if entry is not None and entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl_seconds)

    def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                count, expires_at = 1, self._clock() + ttl_seconds
            else:
                count, expires_at = int(entry[0]) + 1, entry[1]
            self._data[key] = (str(count), expires_at)
            return count

    def scan(self, prefix: str) -> Iterator[str]:
        with self._lock:
            keys = [key for key in self._data if key.startswith(prefix)]
        return iter(keys)

    def ping(self) -> bool:
        return True

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
            for key in expired:
                del self._data[key]
        return len(expired)


class RedisCacheBackend(CacheBackend):
    """Redis expires keys natively, so ``sweep`` has nothing to evict."""

    def __init__(self, client: Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheBackend":
        return cls(Redis.from_url(url, decode_responses=True, socket_timeout=2, socket_connect_timeout=2))

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except RedisError as exc:
            raise CacheBackendError(f"GET {key} failed: {exc}") from exc

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self.client.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise CacheBackendError(f"SET {key} failed: {exc}") from exc

    def incr(self, key: str, ttl_seconds: int) -> int:
        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.expire(key, ttl_seconds, nx=True)
            count, _ = pipe.execute()
            return int(count)
        except RedisError as exc:
            raise CacheBackendError(f"INCR {key} failed: {exc}") from exc

    def scan(self, prefix: str) -> Iterator[str]:
        try:
            return iter(list(self.client.scan_iter(match=f"{prefix}*", count=200)))
        except RedisError as exc:
            raise CacheBackendError(f"SCAN {prefix} failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError as exc:
            raise CacheBackendError(f"PING failed: {exc}") from exc


@dataclass
class CacheEntry:
    query: str
    location: Optional[str]
    businesses: List[Dict[str, Any]]
    cached_at: float

    def to_json(self) -> str:
        return json.dumps(
            {
                "query": self.query,
                "location": self.location,
                "businesses": self.businesses,
                "cachedAt": self.cached_at,
            },
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        payload = json.loads(raw)
        return cls(
            query=payload.get("query", ""),
            location=payload.get("location"),
            businesses=list(payload.get("businesses") or []),
            cached_at=float(payload.get("cachedAt") or 0.0),
        )


@dataclass
class CacheLookup:
    cached: bool
    businesses: List[Dict[str, Any]] = field(default_factory=list)
    age_seconds: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"cached": self.cached, "totalCount": len(self.businesses)}
        if self.cached:
            payload["cacheAgeSeconds"] = self.age_seconds
            payload["results"] = self.businesses
        else:
            payload["reason"] = self.reason
            payload["results"] = []
        return payload


@dataclass
class WarmupResult:
    query: str
    location: str
    cached: bool = False
    refreshed: bool = False
    business_count: int = 0
    error: Optional[str] = None


@dataclass
class WarmupStats:
    total: int = 0
    cached: int = 0
    refreshed: int = 0
    stored: int = 0
    errors: int = 0
    results: List[WarmupResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "cached": self.cached,
            "refreshed": self.refreshed,
            "stored": self.stored,
            "errors": self.errors,
        }


@dataclass
class MaintenanceResult:
    evicted: int = 0
    refreshed: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"evicted": self.evicted, "refreshed": self.refreshed, "errors": self.errors}


class SearchCache:
    def __init__(
        self,
        backend: CacheBackend,
        *,
        ttl_seconds: int = 24 * 60 * 60,
        popularity_threshold: int = 3,
        runner: Optional[SearchRunner] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.popularity_threshold = max(1, popularity_threshold)
        self.runner = runner
        self._clock = clock
        self._lock = threading.Lock()
        self._counters = {"hits": 0, "misses": 0, "errors": 0, "writes": 0, "skipped": 0}

    @classmethod
    def from_settings(cls, settings: Settings, runner: Optional[SearchRunner] = None) -> "SearchCache":
        backend: CacheBackend
        if settings.redis_url:
            backend = RedisCacheBackend.from_url(settings.redis_url)
        else:
            backend = MemoryCacheBackend()
        return cls(
            backend,
            ttl_seconds=settings.cache_ttl_seconds,
            popularity_threshold=settings.cache_popularity_threshold,
            runner=runner,
        )

    def _count(self, name: str) -> None:
        with self._lock:
            self._counters[name] += 1

    def _read(self, query: str, location: Optional[str]) -> Optional[CacheEntry]:
        raw = self.backend.get(cache_key(query, location))
        return CacheEntry.from_json(raw) if raw else None

    def lookup(self, query: str, location: Optional[str]) -> CacheLookup:
        try:
            entry = self._read(query, location)
        except (CacheBackendError, ValueError) as exc:
            logger.warning("Cache lookup failed for %r/%r: %s", query, location, exc)
            self._count("errors")
            return CacheLookup(cached=False, reason="cache_error")

        if entry is None:
            self._count("misses")
            return CacheLookup(cached=False, reason="cache_miss")

        self._count("hits")
        age = max(0, int(self._clock() - entry.cached_at))
        return CacheLookup(cached=True, businesses=entry.businesses, age_seconds=age)

    def is_popular(self, query: str, location: Optional[str]) -> bool:
        """Whether a search qualifies for caching; counts this request towards popularity."""
        key = cache_key(query, location)
        if key in _POPULAR_KEYS:
            return True
        hits = self.backend.incr(f"{POPULARITY_PREFIX}{key[len(KEY_PREFIX):]}", self.ttl_seconds)
        return hits >= self.popularity_threshold

    def _write(self, query: str, location: Optional[str], businesses: List[Dict[str, Any]]) -> None:
        entry = CacheEntry(query=query, location=location, businesses=list(businesses), cached_at=self._clock())
        self.backend.set(cache_key(query, location), entry.to_json(), self.ttl_seconds)
        self._count("writes")

    def store(self, query: str, location: Optional[str], businesses: List[Dict[str, Any]]) -> bool:
        """Cache ``businesses`` if the search is popular; returns True when written."""
        try:
            if not self.is_popular(query, location):
                self._count("skipped")
                return False
            self._write(query, location, businesses)
        except CacheBackendError as exc:
            logger.warning("Cache store failed for %r/%r: %s", query, location, exc)
            self._count("errors")
            return False
        logger.info("Cached %d business(es) for %r in %r", len(businesses), query, location)
        return True

    def _needs_refresh(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.cached_at > STALE_AFTER_SECONDS

    def _warm_one(self, query: str, location: str, force_refresh: bool) -> WarmupResult:
        result = WarmupResult(query=query, location=location)
        try:
            existing = self._read(query, location)
            if existing is not None and not force_refresh and not self._needs_refresh(existing):
                result.cached = True
                result.business_count = len(existing.businesses)
                return result
            if self.runner is None:
                raise RuntimeError("no search runner configured")
            logger.info("Warming cache for %r in %r", query, location)
            businesses = self.runner(query, location, WARM_RESULT_COUNT)
            self._write(query, location, businesses)
            result.refreshed = existing is not None
            result.business_count = len(businesses)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Cache warm failed for %r/%r: %s", query, location, exc)
            result.error = str(exc)
        return result

    def warm(self, max_queries: int = 20, force_refresh: bool = False) -> WarmupStats:
        pairs = popular_pairs(max_queries)
        stats = WarmupStats(total=len(pairs))
        for query, location in pairs:
            result = self._warm_one(query, location, force_refresh)
            stats.results.append(result)
            if result.error:
                stats.errors += 1
            elif result.cached:
                stats.cached += 1
            elif result.refreshed:
                stats.refreshed += 1
            else:
                stats.stored += 1
        logger.info(
            "Cache warm finished: %d cached, %d refreshed, %d stored, %d errors",
            stats.cached,
            stats.refreshed,
            stats.stored,
            stats.errors,
        )
        return stats

    def maintain(self, max_queries: int = 10) -> MaintenanceResult:
        result = MaintenanceResult()
        try:
            result.evicted = self.backend.sweep()
        except CacheBackendError as exc:
            logger.warning("Cache sweep failed: %s", exc)
            result.errors += 1

        warmed = self.warm(max_queries=max_queries, force_refresh=False)
        result.refreshed = warmed.refreshed
        result.errors += warmed.errors
        return result

    def health(self) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            healthy = self.backend.ping()
            error = None
        except CacheBackendError as exc:
            healthy = False
            error = str(exc)
        latency_ms = round((time.perf_counter() - started) * 1000.0, 2)

        with self._lock:
            counters = dict(self._counters)
        lookups = counters["hits"] + counters["misses"]
        payload: Dict[str, Any] = {
            "healthy": healthy,
            "backend": "redis" if isinstance(self.backend, RedisCacheBackend) else "memory",
            "latencyMs": latency_ms,
            "hitRate": round(counters["hits"] / lookups, 4) if lookups else 0.0,
            "stats": counters,
        }
        if error:
            payload["error"] = error
        return payload
