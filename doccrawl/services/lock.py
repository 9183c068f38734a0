"""S2 — Distributed lock on the Redis tier.

One lock per resource (a URL), stored at ``lock:<page key>`` with an expiry so
a crashed holder cannot wedge the resource. Release is compare-and-delete on
the holder token.

Availability over correctness: when Redis is unreachable, ``acquire`` hands out
a fresh token anyway. Two processes may then both "hold" the same lock. Every
such grant is logged as a warning.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager

from redis.exceptions import RedisError, WatchError

from doccrawl.config import settings
from doccrawl.errors import CrawlInProgressError
from doccrawl.services.cache import TieredCache

logger = logging.getLogger(__name__)


class DistributedLock:
    """Per-resource mutual exclusion with expiry-based safety."""

    def __init__(self, cache: TieredCache, check_interval: float = 0.5):
        self._cache = cache
        self.check_interval = check_interval

    def lock_key(self, resource: str) -> str:
        return f"lock:{self._cache.make_key(resource)}"

    async def acquire(self, resource: str, ttl: int | None = None) -> str | None:
        """Try to take the lock. Returns the holder token, or None if already held."""
        ttl = ttl or settings.crawl_lock_ttl
        token = uuid.uuid4().hex
        redis = self._cache.redis
        if redis is None:
            logger.warning("Lock granted without Redis | resource=%s", resource[:100])
            return token

        start = time.monotonic()
        try:
            acquired = await redis.set(self.lock_key(resource), token, nx=True, ex=ttl)
        except (RedisError, OSError) as e:
            logger.warning(
                "Lock store unavailable — granting lock anyway | resource=%s | %s",
                resource[:100], str(e)[:100],
            )
            return token

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if acquired:
            logger.info("Lock ACQUIRED | resource=%s | %dms", resource[:100], elapsed_ms)
            return token
        logger.info("Lock BUSY | resource=%s | %dms", resource[:100], elapsed_ms)
        return None

    async def release(self, resource: str, token: str) -> bool:
        """Delete the lock only if ``token`` still owns it."""
        redis = self._cache.redis
        if redis is None:
            return True

        key = self.lock_key(resource)
        try:
            async with redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current != token:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
        except WatchError:
            # Key changed between GET and DEL: expired and re-taken by someone else
            return False
        except (RedisError, OSError) as e:
            logger.warning("Lock release failed | resource=%s | %s", resource[:100], str(e)[:100])
            return False

        logger.info("Lock RELEASED | resource=%s", resource[:100])
        return True

    async def is_locked(self, resource: str) -> bool:
        redis = self._cache.redis
        if redis is None:
            return False
        try:
            return await redis.exists(self.lock_key(resource)) == 1
        except (RedisError, OSError) as e:
            logger.warning("Lock check failed | resource=%s | %s", resource[:100], str(e)[:100])
            return False

    async def wait_for_release(self, resource: str, timeout: float = 30.0) -> bool:
        """Poll until the lock clears. Returns False if ``timeout`` elapses first."""
        deadline = time.monotonic() + timeout
        while True:
            if not await self.is_locked(resource):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.check_interval, remaining))

    @asynccontextmanager
    async def hold(self, resource: str, ttl: int | None = None):
        """Hold the lock for the duration of the block.

        Raises CrawlInProgressError when another holder owns it.
        """
        token = await self.acquire(resource, ttl)
        if token is None:
            raise CrawlInProgressError(
                "A crawl for this URL is already being started. Please retry shortly.",
                {"url": resource},
            )
        try:
            yield token
        finally:
            await self.release(resource, token)
