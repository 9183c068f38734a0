"""S4 — Crawl job metadata and paginated result batches.

Keys:
  - crawl:job:<id>                   job metadata
  - crawl:results:<id>:page:<n>      one batch of provider results

Updates are read-merge-write without cross-process locking: two streams
updating the same job concurrently resolve as last-writer-wins. The one rule
enforced on merge is that a completed/failed job never changes status again.
"""

import logging
from typing import Any

from pydantic import ValidationError

from doccrawl.config import settings
from doccrawl.orchestrator.schemas import CrawlJob, CrawlResult
from doccrawl.services.cache import TieredCache

logger = logging.getLogger(__name__)


class JobStore:
    def __init__(self, cache: TieredCache, ttl: int | None = None):
        self._cache = cache
        self.ttl = ttl or settings.job_ttl

    @staticmethod
    def job_key(job_id: str) -> str:
        return f"crawl:job:{job_id}"

    @staticmethod
    def results_key(job_id: str, page_number: int) -> str:
        return f"crawl:results:{job_id}:page:{page_number}"

    async def create_job(self, job: CrawlJob, ttl: int | None = None) -> bool:
        ok = await self._cache.set_json(self.job_key(job.id), job.model_dump(mode="json"), ttl or self.ttl)
        if ok:
            logger.info("Job stored | id=%s | status=%s | url=%s", job.id, job.status.value, job.url[:100])
        return ok

    async def get_job(self, job_id: str) -> CrawlJob | None:
        data = await self._cache.get_json(self.job_key(job_id))
        if data is None:
            return None
        try:
            return CrawlJob.model_validate(data)
        except ValidationError as e:
            logger.warning("Corrupt job record | id=%s | %s", job_id, str(e)[:200])
            return None

    async def update_job(self, job_id: str, **changes: Any) -> CrawlJob | None:
        """Merge ``changes`` into the stored job. Returns the merged job, or None if absent."""
        job = await self.get_job(job_id)
        if job is None:
            return None

        new_status = changes.get("status")
        if job.is_terminal and new_status is not None and new_status != job.status:
            logger.debug(
                "Ignoring status change on finished job | id=%s | %s -> %s",
                job_id, job.status.value, new_status,
            )
            changes.pop("status")

        merged = CrawlJob.model_validate({**job.model_dump(), **changes})
        await self._cache.set_json(self.job_key(job_id), merged.model_dump(mode="json"), self.ttl)
        return merged

    async def put_result_page(
        self, job_id: str, page_number: int, records: list[CrawlResult], ttl: int | None = None,
    ) -> bool:
        payload = [r.model_dump(exclude_none=True) for r in records]
        return await self._cache.set_json(self.results_key(job_id, page_number), payload, ttl or self.ttl)

    async def get_result_page(self, job_id: str, page_number: int) -> list[CrawlResult] | None:
        data = await self._cache.get_json(self.results_key(job_id, page_number))
        if data is None:
            return None
        return [CrawlResult.model_validate(r) for r in data]

    async def get_all_result_pages(self, job_id: str) -> list[CrawlResult]:
        """Concatenate stored batches 0..total_pages-1 in order.

        ``total_pages`` is only final once the job completed; missing batches
        are skipped.
        """
        job = await self.get_job(job_id)
        if job is None or not job.total_pages:
            return []

        results: list[CrawlResult] = []
        for page_number in range(job.total_pages):
            page = await self.get_result_page(job_id, page_number)
            if page:
                results.extend(page)
        return results
