"""Shared test fixtures and configuration."""

import os

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# No real provider key or Redis during tests
os.environ.setdefault("FIRECRAWL_API_KEY", "")
os.environ.setdefault("REDIS_URL", "redis://localhost:1")

from doccrawl.orchestrator.schemas import CrawlStartResult, CrawlStatusResponse  # noqa: E402
from doccrawl.services.cache import TieredCache  # noqa: E402


class FakeClock:
    """Manual clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class BrokenRedis:
    """Durable tier whose every call fails like a dropped connection."""

    async def _fail(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    get = set = mget = delete = exists = _fail

    def pipeline(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")


class ScriptedProvider:
    """Stand-in for FirecrawlClient.

    ``script`` is a list of status payloads (dicts) or exceptions served in
    order, the last one repeating; or a callable taking the poll number.
    """

    def __init__(self, script=None, api_key: str = "test-key", start_result=None, start_error=None):
        self.script = script if script is not None else []
        self.api_key = api_key
        self.start_result = start_result or CrawlStartResult(success=True, id="remote-job-1", creditsUsed=1)
        self.start_error = start_error
        self.status_calls: list[tuple[str, str | None]] = []
        self.start_calls: list[tuple[str, int]] = []

    async def get_status(self, job_id: str, status_url: str | None = None) -> CrawlStatusResponse:
        n = len(self.status_calls)
        self.status_calls.append((job_id, status_url))
        if callable(self.script):
            item = self.script(n)
        else:
            item = self.script[min(n, len(self.script) - 1)]
        if isinstance(item, Exception):
            raise item
        return CrawlStatusResponse.model_validate(item)

    async def start_crawl(self, url: str, limit: int) -> CrawlStartResult:
        self.start_calls.append((url, limit))
        if self.start_error is not None:
            raise self.start_error
        return self.start_result


def page(url: str, content: str) -> dict:
    """One provider result record."""
    return {"metadata": {"sourceURL": url}, "markdown": content}


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
async def fake_redis(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def cache(fake_redis):
    """Tiered cache backed by fakeredis; compresses anything over 100 chars."""
    return TieredCache(redis=fake_redis, compression_threshold=100)


@pytest.fixture
def memory_cache():
    """Tiered cache without a durable tier."""
    return TieredCache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def long_content():
    return "# Getting started\n\n" + "Install the package and import it. " * 20


@pytest.fixture
def make_provider():
    return ScriptedProvider


@pytest.fixture
def make_page():
    return page


@pytest.fixture
def broken_redis():
    return BrokenRedis()
