"""Crawl status reconciler — drives a remote crawl job to a terminal state.

One reconciler per status stream. ``stream(job)`` is an async generator of
CrawlEvent; every await in it (provider call, sleep, cache/job store I/O) is a
suspension point, so any number of streams share one event loop.

Per poll iteration the event order is:
  status → progress → url_complete* → (complete | error)

A client disconnect closes the generator only; the remote job keeps running
and a new stream for the same job id picks it up again.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

import httpx

from doccrawl.config import Settings, settings
from doccrawl.errors import CircuitOpenError, ProviderError
from doccrawl.integrations.firecrawl import FirecrawlClient
from doccrawl.orchestrator.schemas import (
    CrawlEvent,
    CrawlJob,
    CrawlStatusResponse,
    JobStatus,
    utcnow,
)
from doccrawl.services.cache import TieredCache
from doccrawl.services.circuit_breaker import CircuitBreaker
from doccrawl.services.job_store import JobStore
from doccrawl.services.manifest_store import UrlManifestStore

logger = logging.getLogger(__name__)


class ReconcilerState(str, Enum):
    CACHE_FAST_PATH = "cache_fast_path"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class ReconcilerPolicy:
    """Polling cadence and stall heuristics. Times in seconds."""
    poll_interval: float = 2.0
    max_polling_time: float = 480.0
    max_consecutive_errors: int = 5
    max_backoff: float = 30.0
    stall_window: float = 60.0
    absolute_stall_window: float = 120.0
    near_complete_ratio: float = 0.95
    mostly_complete_ratio: float = 0.80
    absolute_stall_ratio: float = 0.5
    min_progress_rate: float = 1 / 60
    slow_progress_min_pages: int = 10
    min_content_length: int = 200

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "ReconcilerPolicy":
        return cls(
            poll_interval=s.poll_interval,
            max_polling_time=s.max_polling_time,
            max_consecutive_errors=s.max_consecutive_errors,
            max_backoff=s.max_backoff,
            stall_window=s.stall_window,
            absolute_stall_window=s.absolute_stall_window,
            near_complete_ratio=s.near_complete_ratio,
            mostly_complete_ratio=s.mostly_complete_ratio,
            absolute_stall_ratio=s.absolute_stall_ratio,
            min_progress_rate=s.min_progress_rate,
            slow_progress_min_pages=s.slow_progress_min_pages,
            min_content_length=s.min_content_length,
        )

    def next_delay(self, consecutive_errors: int) -> float:
        """Fixed interval, or exponential backoff while errors keep coming."""
        if consecutive_errors <= 0:
            return self.poll_interval
        return min(self.poll_interval * 2 ** (consecutive_errors - 1), self.max_backoff)

    def recent_rate(self, samples: deque[tuple[float, int]], now: float, completed: int) -> float:
        """Pages per second over the last ``stall_window``.

        ``samples`` holds (time, completed) pairs, oldest first; the newest
        sample at or before the window start is kept as the baseline.
        """
        samples.append((now, completed))
        while len(samples) > 1 and samples[1][0] <= now - self.stall_window:
            samples.popleft()
        since, baseline = samples[0]
        span = now - since
        return (completed - baseline) / span if span > 0 else 0.0

    def completion_reason(
        self, data: CrawlStatusResponse, stalled_for: float, elapsed: float, recent_rate: float,
    ) -> str | None:
        """First matching completion predicate, or None to keep polling."""
        ratio = data.completion_ratio

        if data.status == "completed":
            return "completed"
        if data.status == "scraping" and not data.next and data.total and data.completed == data.total:
            return "all pages scraped"

        stalled = stalled_for > self.stall_window
        if stalled and ratio >= self.near_complete_ratio and not data.next:
            return "stalled near completion"

        if (
            stalled
            and ratio >= self.mostly_complete_ratio
            and data.completed > self.slow_progress_min_pages
            and recent_rate < self.min_progress_rate
        ):
            return "slow progress"

        if stalled_for > self.absolute_stall_window and ratio >= self.absolute_stall_ratio:
            return "stalled"
        if elapsed >= self.max_polling_time:
            return "max runtime exceeded"
        return None


class CrawlStatusReconciler:
    """Polls one crawl job and re-emits its progress as CrawlEvents."""

    def __init__(
        self,
        cache: TieredCache,
        jobs: JobStore,
        manifests: UrlManifestStore,
        provider: FirecrawlClient,
        breaker: CircuitBreaker | None = None,
        policy: ReconcilerPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cache = cache
        self.jobs = jobs
        self.manifests = manifests
        self.provider = provider
        self.breaker = breaker
        self.policy = policy or ReconcilerPolicy.from_settings()
        self._clock = clock
        self._sleep = sleep
        self.state: ReconcilerState | None = None

    async def stream(self, job: CrawlJob) -> AsyncIterator[CrawlEvent]:
        if job.status == JobStatus.CACHE_HIT and job.crawled_urls is not None:
            events = self._serve_from_cache(job)
        else:
            events = self._poll(job)

        try:
            async for event in events:
                yield event
        finally:
            logger.info("Status stream closed | job=%s | state=%s", job.id, self.state)

    # ─── cache fast path ───

    async def _serve_from_cache(self, job: CrawlJob) -> AsyncIterator[CrawlEvent]:
        self.state = ReconcilerState.CACHE_FAST_PATH
        urls = job.crawled_urls or []
        served = 0
        for url in urls:
            content = await self.cache.get(url)
            if content is not None:
                served += 1
                yield CrawlEvent(type="url_complete", url=url, content=content, cached=True)

        logger.info("Cache fast path | job=%s | served=%d/%d | credits=0", job.id, served, len(urls))
        yield CrawlEvent(type="complete", total=len(urls), creditsUsed=0)

    # ─── polling ───

    async def _poll(self, job: CrawlJob) -> AsyncIterator[CrawlEvent]:
        policy = self.policy
        self.state = ReconcilerState.POLLING

        started = self._clock()
        deadline = started + policy.max_polling_time
        last_progress_at = started
        last_completed = 0
        consecutive_errors = 0
        ratio = job.completion_ratio
        samples: deque[tuple[float, int]] = deque()

        status_url = job.next_page_token
        page_number = job.last_page_number
        seen: set[str] = set()
        cached_urls: list[str] = []

        while self._clock() < deadline:
            try:
                if not await self._admitted():
                    raise CircuitOpenError("Crawl provider unavailable (circuit breaker open)")
                data = await self.provider.get_status(job.id, status_url)

            except CircuitOpenError as e:
                consecutive_errors += 1
                logger.warning(
                    "Status poll skipped, circuit open | job=%s | attempt=%d/%d",
                    job.id, consecutive_errors, policy.max_consecutive_errors,
                )
                if consecutive_errors >= policy.max_consecutive_errors:
                    yield await self._fail(job, e.message, ratio)
                    return

            except ProviderError as e:
                consecutive_errors += 1
                if e.is_server_error:
                    await self._record_failure()
                else:
                    await self._record_success()
                logger.warning(
                    "Status poll failed | job=%s | status=%d | attempt=%d/%d",
                    job.id, e.status_code, consecutive_errors, policy.max_consecutive_errors,
                )
                if consecutive_errors >= policy.max_consecutive_errors:
                    if e.is_gateway:
                        msg = "Too many consecutive gateway errors. The service may be temporarily unavailable."
                    else:
                        msg = f"Too many consecutive errors. {e.message}"
                    yield await self._fail(job, msg, ratio)
                    return
                # Gateway errors stay silent until the threshold
                if not e.is_gateway:
                    yield self._error_event(job, e.message, ratio)

            except (httpx.HTTPError, ValueError) as e:
                consecutive_errors += 1
                await self._record_failure()
                logger.warning(
                    "Status poll error | job=%s | attempt=%d/%d | %s",
                    job.id, consecutive_errors, policy.max_consecutive_errors, str(e)[:200],
                )
                if consecutive_errors >= policy.max_consecutive_errors:
                    yield await self._fail(job, f"Too many consecutive errors. {str(e)[:200]}", ratio)
                    return

            else:
                consecutive_errors = 0
                await self._record_success()

                now = self._clock()
                if data.completed > last_completed:
                    last_completed = data.completed
                    last_progress_at = now
                ratio = data.completion_ratio
                if data.next:
                    status_url = data.next

                batch = data.data or []
                changes = {
                    "remote_status": data.status,
                    "total_pages": data.total,
                    "completed_pages": data.completed,
                    "credits_used": data.creditsUsed,
                    "expires_at": data.expiresAt,
                    "next_page_token": status_url,
                    "last_page_number": page_number + 1 if batch else page_number,
                }
                job = job.model_copy(update=changes)
                await self.jobs.update_job(job.id, **changes)

                yield CrawlEvent(type="status", status=data.status)
                yield CrawlEvent(
                    type="progress", progress=data.completed, total=data.total, creditsUsed=data.creditsUsed,
                )

                if batch:
                    await self.jobs.put_result_page(job.id, page_number, batch)
                    page_number += 1

                for page in batch:
                    url = page.source_url
                    if not url or url in seen:
                        continue
                    seen.add(url)

                    cached = await self.cache.get(url)
                    if cached is not None:
                        cached_urls.append(url)
                        yield CrawlEvent(type="url_complete", url=url, content=cached, cached=True)
                        continue

                    content = page.content
                    self.cache.increment_provider_fetches()
                    if len(content) >= policy.min_content_length:
                        await self.cache.set(url, content)
                        cached_urls.append(url)
                    yield CrawlEvent(type="url_complete", url=url, content=content, cached=False)

                rate = policy.recent_rate(samples, now, data.completed)
                reason = policy.completion_reason(data, now - last_progress_at, now - started, rate)
                if reason:
                    yield await self._complete(job, data, reason, cached_urls)
                    return
                if data.status == "failed":
                    yield await self._fail(job, "Crawl job failed", ratio)
                    return

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(policy.next_delay(consecutive_errors), remaining))

        self.state = ReconcilerState.TIMED_OUT
        minutes = policy.max_polling_time / 60
        logger.warning("Crawl job timed out | job=%s | ratio=%.2f", job.id, ratio)
        await self.jobs.update_job(job.id, status=JobStatus.FAILED, failed_at=utcnow())
        yield self._error_event(job, f"Crawl job timed out after {minutes:g} minutes", ratio)

    # ─── terminal transitions ───

    async def _complete(
        self, job: CrawlJob, data: CrawlStatusResponse, reason: str, cached_urls: list[str],
    ) -> CrawlEvent:
        self.state = ReconcilerState.COMPLETED
        if reason == "completed":
            logger.info("Crawl job completed | job=%s | %d/%d", job.id, data.completed, data.total)
        else:
            logger.warning(
                "Crawl job marked complete (%s) | job=%s | %d/%d (%d%%)",
                reason, job.id, data.completed, data.total, round(data.completion_ratio * 100),
            )

        await self.jobs.update_job(job.id, status=JobStatus.COMPLETED, completed_at=utcnow())
        # Only pages actually in the cache go into the manifest
        if cached_urls:
            await self.manifests.put(job.url, cached_urls)

        return CrawlEvent(type="complete", total=data.total, creditsUsed=data.creditsUsed)

    async def _fail(self, job: CrawlJob, message: str, ratio: float) -> CrawlEvent:
        self.state = ReconcilerState.FAILED
        logger.error("Crawl job failed | job=%s | ratio=%.2f | %s", job.id, ratio, message[:200])
        await self.jobs.update_job(job.id, status=JobStatus.FAILED, failed_at=utcnow())
        return self._error_event(job, message, ratio)

    @staticmethod
    def _error_event(job: CrawlJob, message: str, ratio: float) -> CrawlEvent:
        return CrawlEvent(type="error", error=message, jobId=job.id, completionRatio=round(ratio, 4))

    async def _admitted(self) -> bool:
        return self.breaker is None or await self.breaker.can_request()

    async def _record_success(self):
        if self.breaker is not None:
            await self.breaker.record_success()

    async def _record_failure(self):
        if self.breaker is not None:
            await self.breaker.record_failure()
