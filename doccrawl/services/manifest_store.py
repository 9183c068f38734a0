"""S5 — URL manifests: the page set of the last complete crawl per start URL.

Stored at ``crawl:urls:<hash of normalized start URL>``, a namespace that can
never collide with ``page:`` content keys. Always written whole.
"""

import logging

from doccrawl.services.cache import TieredCache
from doccrawl.utils.urls import url_hash

logger = logging.getLogger(__name__)


class UrlManifestStore:
    def __init__(self, cache: TieredCache, ttl: int | None = None):
        self._cache = cache
        self.ttl = ttl or cache.ttl

    @staticmethod
    def manifest_key(start_url: str) -> str:
        return f"crawl:urls:{url_hash(start_url)}"

    async def put(self, start_url: str, urls: list[str], ttl: int | None = None) -> bool:
        ok = await self._cache.set_json(self.manifest_key(start_url), list(urls), ttl or self.ttl)
        if ok:
            logger.info("Manifest stored | url=%s | pages=%d", start_url[:100], len(urls))
        return ok

    async def get(self, start_url: str) -> list[str] | None:
        data = await self._cache.get_json(self.manifest_key(start_url))
        if not isinstance(data, list):
            return None
        return [u for u in data if isinstance(u, str)]
