"""S1 — Tiered page cache: in-process TTLCache in front of Redis.

  - L1: cachetools.TTLCache, short horizon (default 5 minutes)
  - L2: Redis, long horizon (default 30 days), values above the compression
    threshold are stored zlib-compressed inside a JSON envelope

Graceful degradation: Redis errors are logged, counted and treated as a miss.
If Redis is unavailable at all, L1 serves alone and JSON records used by the
job/manifest stores fall back to an in-memory TLRUCache.
"""

import base64
import json
import logging
import time
import zlib
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any

from cachetools import TLRUCache, TTLCache
from pydantic import BaseModel
from redis.exceptions import RedisError

from doccrawl.config import settings
from doccrawl.utils.urls import url_hash

logger = logging.getLogger(__name__)

# Bump to invalidate every stored page after a format change
KEY_VERSION = 3
LATENCY_WINDOW = 1000

# Network failures, JSON / envelope decoding, corrupt compressed payloads
DURABLE_ERRORS = (RedisError, OSError, ValueError, zlib.error)


class CacheRecord(BaseModel):
    """Durable-tier envelope for one page."""
    data: str
    compressed: bool = False
    stored_at: float = 0.0


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    errors: int = 0
    local_hits: int = 0
    redis_hits: int = 0
    redis_misses: int = 0
    provider_fetches: int = 0
    avg_redis_latency_ms: float = 0.0
    slow_redis_ops: int = 0


def _record_expiry(_key: str, value: tuple[str, int], now: float) -> float:
    return now + value[1]


class TieredCache:
    """Async two-tier cache keyed by page URL."""

    def __init__(
        self,
        redis=None,
        ttl: int | None = None,
        local_ttl: int | None = None,
        compression_threshold: int | None = None,
        local_max_entries: int | None = None,
        slow_threshold_ms: int | None = None,
    ):
        self.ttl = ttl or settings.cache_ttl_pages
        self.local_ttl = local_ttl or settings.local_cache_ttl
        self.compression_threshold = (
            settings.compression_threshold if compression_threshold is None else compression_threshold
        )
        self.slow_threshold_ms = slow_threshold_ms or settings.slow_redis_threshold_ms
        max_entries = local_max_entries or settings.local_cache_max_entries

        self._local = TTLCache(maxsize=max_entries, ttl=self.local_ttl)
        self._records = TLRUCache(maxsize=max_entries, ttu=_record_expiry)
        self._redis = redis
        self._latencies: deque[float] = deque(maxlen=LATENCY_WINDOW)
        self.stats = CacheStats()

    # ─── connection ───

    async def connect(self, url: str | None = None) -> bool:
        """Connect to Redis. Returns True on success."""
        try:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                url or settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=3,
            )
            await self._redis.ping()
            return True
        except Exception as e:
            logger.warning("Redis connection failed — using in-memory cache only: %s", str(e)[:100])
            self._redis = None
            return False

    async def disconnect(self):
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @property
    def redis(self):
        """Durable-tier client, or None when running memory-only."""
        return self._redis

    @property
    def is_redis_available(self) -> bool:
        return self._redis is not None

    # ─── keys & encoding ───

    @staticmethod
    def make_key(url: str) -> str:
        """Deterministic, versioned page key for a URL."""
        return f"page:{url_hash(url)}:v{KEY_VERSION}"

    def _encode(self, value: str) -> str:
        if len(value) > self.compression_threshold:
            packed = base64.b64encode(zlib.compress(value.encode("utf-8"))).decode("ascii")
            record = CacheRecord(data=packed, compressed=True, stored_at=time.time())
        else:
            record = CacheRecord(data=value, compressed=False, stored_at=time.time())
        return record.model_dump_json()

    @staticmethod
    def _decode(raw: str) -> str:
        record = CacheRecord.model_validate_json(raw)
        if record.compressed:
            return zlib.decompress(base64.b64decode(record.data)).decode("utf-8")
        return record.data

    def _track_latency(self, op: str, started: float) -> None:
        elapsed_ms = (time.monotonic() - started) * 1000
        self._latencies.append(elapsed_ms)
        self.stats.avg_redis_latency_ms = round(sum(self._latencies) / len(self._latencies), 1)
        if elapsed_ms > self.slow_threshold_ms:
            self.stats.slow_redis_ops += 1
            logger.warning(
                "Slow Redis op | op=%s | %dms (threshold %dms)",
                op, elapsed_ms, self.slow_threshold_ms,
            )

    def _record_error(self, op: str, error: Exception) -> None:
        self.stats.errors += 1
        logger.warning("Redis %s error: %s", op, str(error)[:100])

    # ─── page operations ───

    async def get(self, url: str) -> str | None:
        """Read a page. Returns None on miss."""
        key = self.make_key(url)

        value = self._local.get(key)
        if value is not None:
            self.stats.hits += 1
            self.stats.local_hits += 1
            logger.debug("Cache HIT (memory) | url=%s", url[:100])
            return value

        if self._redis is not None:
            started = time.monotonic()
            try:
                raw = await self._redis.get(key)
                self._track_latency("GET", started)
                if raw is not None:
                    value = self._decode(raw)
                    self._local[key] = value
                    self.stats.hits += 1
                    self.stats.redis_hits += 1
                    logger.info("Cache HIT (Redis) | url=%s | chars=%d", url[:100], len(value))
                    return value
                self.stats.redis_misses += 1
            except DURABLE_ERRORS as e:
                self._record_error("GET", e)

        self.stats.misses += 1
        logger.debug("Cache MISS | url=%s", url[:100])
        return None

    async def set(self, url: str, value: str, ttl: int | None = None):
        """Write a page to both tiers. Redis failures never propagate."""
        key = self.make_key(url)
        ttl = ttl or self.ttl
        self._local[key] = value

        if self._redis is None:
            return
        started = time.monotonic()
        try:
            payload = self._encode(value)
            await self._redis.set(key, payload, ex=ttl)
            self._track_latency("SET", started)
            logger.info("Cache SET (Redis) | url=%s | chars=%d | ttl=%ds", url[:100], len(value), ttl)
        except DURABLE_ERRORS as e:
            self._record_error("SET", e)

    async def mget(self, urls: list[str]) -> dict[str, str | None]:
        """Read many pages; every requested URL appears in the result."""
        results: dict[str, str | None] = {}
        # Several URLs may normalize to the same key
        missing: dict[str, list[str]] = {}

        for url in urls:
            key = self.make_key(url)
            value = self._local.get(key)
            if value is not None:
                results[url] = value
                self.stats.hits += 1
                self.stats.local_hits += 1
            else:
                missing.setdefault(key, []).append(url)

        if missing and self._redis is not None:
            keys = list(missing)
            started = time.monotonic()
            try:
                values = await self._redis.mget(keys)
                self._track_latency("MGET", started)
                logger.debug("Redis MGET | keys=%d", len(keys))
                for key, raw in zip(keys, values):
                    if raw is None:
                        self.stats.redis_misses += 1
                        continue
                    value = self._decode(raw)
                    self._local[key] = value
                    for url in missing.pop(key):
                        results[url] = value
                        self.stats.hits += 1
                        self.stats.redis_hits += 1
            except DURABLE_ERRORS as e:
                self._record_error("MGET", e)

        for pending in missing.values():
            for url in pending:
                results[url] = None
                self.stats.misses += 1

        return results

    async def mset(self, entries: dict[str, str], ttl: int | None = None):
        """Write many pages in one Redis pipeline."""
        ttl = ttl or self.ttl
        for url, value in entries.items():
            self._local[self.make_key(url)] = value

        if self._redis is None or not entries:
            return
        started = time.monotonic()
        try:
            pipe = self._redis.pipeline(transaction=False)
            for url, value in entries.items():
                pipe.set(self.make_key(url), self._encode(value), ex=ttl)
            await pipe.execute()
            self._track_latency("MSET", started)
        except DURABLE_ERRORS as e:
            self._record_error("MSET", e)

    async def delete(self, url: str):
        key = self.make_key(url)
        self._local.pop(key, None)
        if self._redis is None:
            return
        try:
            await self._redis.delete(key)
        except DURABLE_ERRORS as e:
            self._record_error("DEL", e)

    def clear_local(self):
        """Drop every L1 entry (durable tier untouched)."""
        self._local.clear()

    # ─── JSON records (job store, manifests, breaker state) ───

    async def get_json(self, key: str) -> Any | None:
        if self._redis is None:
            entry = self._records.get(key)
            return json.loads(entry[0]) if entry else None

        started = time.monotonic()
        try:
            raw = await self._redis.get(key)
            self._track_latency("GET", started)
            return json.loads(raw) if raw is not None else None
        except DURABLE_ERRORS as e:
            self._record_error("GET", e)
            return None

    async def set_json(self, key: str, value: Any, ttl: int) -> bool:
        """Store a JSON-serializable value. Returns False if the write failed."""
        payload = json.dumps(value, ensure_ascii=False)
        if self._redis is None:
            self._records[key] = (payload, ttl)
            return True

        started = time.monotonic()
        try:
            await self._redis.set(key, payload, ex=ttl)
            self._track_latency("SET", started)
            return True
        except DURABLE_ERRORS as e:
            self._record_error("SET", e)
            return False

    # ─── statistics ───

    def increment_provider_fetches(self):
        self.stats.provider_fetches += 1

    def get_stats(self) -> dict[str, Any]:
        data = asdict(self.stats)
        total = self.stats.hits + self.stats.misses
        redis_total = self.stats.redis_hits + self.stats.redis_misses
        data["hit_rate"] = self.stats.hits / total if total else 0.0
        data["redis_hit_rate"] = self.stats.redis_hits / redis_total if redis_total else 0.0
        data["local_cache_size"] = len(self._local)
        data["redis_available"] = self.is_redis_available
        data["summary"] = (
            f"requests={total} | hit_rate={data['hit_rate'] * 100:.1f}% | "
            f"local_hits={self.stats.local_hits} | redis_hits={self.stats.redis_hits} | "
            f"misses={self.stats.misses} | provider_fetches={self.stats.provider_fetches} | "
            f"avg_redis={self.stats.avg_redis_latency_ms}ms | "
            f"slow_ops(>{self.slow_threshold_ms}ms)={self.stats.slow_redis_ops}"
        )
        return data

    def reset_stats(self):
        self.stats = CacheStats()
        self._latencies.clear()
