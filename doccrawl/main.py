"""doccrawl backend — FastAPI application entry point.

Exposes crawl start, manifest seeding, the live status stream (SSE) and
result retrieval on top of the tiered cache.
"""

import logging
import math
import time
from collections import deque
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from doccrawl.config import settings
from doccrawl.errors import CrawlError, InvalidRequestError
from doccrawl.integrations.firecrawl import FirecrawlClient
from doccrawl.orchestrator.router import CrawlOrchestrator, parse_request
from doccrawl.orchestrator.schemas import CrawlEvent, SeedRequest, StartCrawlRequest
from doccrawl.services.cache import TieredCache
from doccrawl.services.circuit_breaker import CircuitBreaker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger("doccrawl")

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


# ═══════════════ RATE LIMITER ═══════════════

class RateLimiter:
    """Sliding-window limiter on crawl starts, keyed by client IP."""

    def __init__(self, max_requests: int, window_seconds: float = 60.0, clock=time.monotonic):
        self.max_requests = max_requests
        self.window = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = clock()

    def _prune(self, ip: str, now: float) -> deque[float]:
        hits = self._hits.get(ip, deque())
        while hits and hits[0] <= now - self.window:
            hits.popleft()
        if not hits:
            self._hits.pop(ip, None)
        return hits

    def _sweep(self, now: float):
        """Drop every IP whose window has emptied, at most once per window."""
        if now - self._last_sweep < self.window:
            return
        self._last_sweep = now
        for ip in list(self._hits):
            self._prune(ip, now)

    def is_limited(self, ip: str) -> bool:
        now = self._clock()
        self._sweep(now)
        hits = self._prune(ip, now)
        if len(hits) >= self.max_requests:
            return True
        hits.append(now)
        self._hits[ip] = hits
        return False

    def retry_after(self, ip: str) -> int:
        """Seconds until the oldest hit leaves the window."""
        hits = self._hits.get(ip)
        if not hits:
            return 0
        return max(1, math.ceil(hits[0] + self.window - self._clock()))


# ═══════════════ COMPONENTS ═══════════════

cache = TieredCache()
breaker = CircuitBreaker("firecrawl", cache)
orchestrator = CrawlOrchestrator(cache=cache, provider=FirecrawlClient(), breaker=breaker)
rate_limiter = RateLimiter(settings.rate_limit_per_minute)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("doccrawl backend starting | provider_key=%s", settings.has_provider_key)

    # Graceful degradation if Redis is unavailable
    redis_ok = await cache.connect()
    logger.info("Redis: %s", "connected" if redis_ok else "unavailable (using in-memory cache)")

    yield

    await cache.disconnect()
    logger.info("doccrawl backend shutting down")


# ═══════════════ APP ═══════════════

app = FastAPI(
    title="doccrawl API",
    description="Cache-first documentation crawling with live progress",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["POST", "OPTIONS", "GET"],
    allow_headers=["Content-Type"],
)


@app.exception_handler(CrawlError)
async def crawl_error_handler(request: Request, exc: CrawlError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _client_ip(request: Request) -> str:
    client_ip = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip


async def _json_body(request: Request):
    try:
        return await request.json()
    except ValueError:
        raise InvalidRequestError("Invalid request body")


# ═══════════════ ENDPOINTS ═══════════════

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "redis": cache.is_redis_available,
        "has_provider_key": settings.has_provider_key,
    }


@app.post("/api/crawl/start")
async def start_crawl(request: Request):
    """Start a crawl, or serve it from the cache when the manifest is warm."""
    client_ip = _client_ip(request)
    if rate_limiter.is_limited(client_ip):
        logger.warning("Rate limited | ip=%s", client_ip)
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests. Please wait a minute."},
            headers={"Retry-After": str(rate_limiter.retry_after(client_ip))},
        )

    crawl_request = parse_request(StartCrawlRequest, await _json_body(request))

    start = time.monotonic()
    try:
        result = await orchestrator.start_crawl(crawl_request)
    except CrawlError:
        raise
    except Exception as e:
        logger.error("Crawl start failed | url=%s | %s", crawl_request.url[:100], str(e)[:300])
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    elapsed_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "Crawl started | job=%s | cached=%s | %dms | ip=%s",
        result.jobId, bool(result.cached), elapsed_ms, client_ip,
    )
    return JSONResponse(content=result.model_dump(exclude_none=True))


@app.post("/api/crawl/seed")
async def seed_crawl(request: Request):
    """Bootstrap a URL manifest from pages that are already cached."""
    seed_request = parse_request(SeedRequest, await _json_body(request))
    result = await orchestrator.seed_manifest(seed_request)
    return JSONResponse(content=result.model_dump(exclude_none=True))


@app.get("/api/crawl/{job_id}/status")
async def crawl_status(job_id: str):
    """Live status stream (text/event-stream) for one crawl job."""
    try:
        events = await orchestrator.stream_status(job_id)
    except CrawlError as e:
        return StreamingResponse(
            iter([CrawlEvent(type="error", error=e.message).to_sse()]),
            status_code=e.status_code,
            media_type="text/event-stream",
        )

    async def body():
        async for event in events:
            yield event.to_sse()

    return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.get("/api/crawl/{job_id}/results")
async def crawl_results(job_id: str):
    results = await orchestrator.get_results(job_id)
    return {
        "jobId": job_id,
        "count": len(results),
        "results": [r.model_dump(exclude_none=True) for r in results],
    }


@app.get("/api/crawl/{job_id}")
async def crawl_job(job_id: str):
    job = await orchestrator.get_job(job_id)
    return job.model_dump(mode="json")


@app.get("/api/cache/stats")
async def cache_stats():
    return cache.get_stats()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("doccrawl.main:app", host=settings.host, port=settings.port)
