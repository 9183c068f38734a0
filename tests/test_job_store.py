"""Tests for the job store and URL manifest store."""

import json

import pytest

from doccrawl.orchestrator.schemas import CrawlJob, CrawlResult, JobStatus
from doccrawl.services.job_store import JobStore
from doccrawl.services.manifest_store import UrlManifestStore

START_URL = "https://docs.example.com/"


def result(url, content="body"):
    return CrawlResult.model_validate({"metadata": {"sourceURL": url}, "markdown": content})


@pytest.fixture
def jobs(cache):
    return JobStore(cache, ttl=600)


@pytest.fixture
def manifests(cache):
    return UrlManifestStore(cache, ttl=600)


class TestJobStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self, jobs, fake_redis):
        job = CrawlJob(id="job-1", url=START_URL, limit=10)
        assert await jobs.create_job(job)

        raw = json.loads(await fake_redis.get("crawl:job:job-1"))
        assert raw["status"] == "crawling"
        assert 0 < await fake_redis.ttl("crawl:job:job-1") <= 600

        loaded = await jobs.get_job("job-1")
        assert loaded.id == "job-1"
        assert loaded.status == JobStatus.CRAWLING
        assert loaded.started_at == job.started_at

    @pytest.mark.asyncio
    async def test_get_unknown(self, jobs):
        assert await jobs.get_job("missing") is None

    @pytest.mark.asyncio
    async def test_corrupt_record_reads_as_absent(self, jobs, fake_redis):
        await fake_redis.set("crawl:job:bad", json.dumps({"url": START_URL}))
        assert await jobs.get_job("bad") is None

    @pytest.mark.asyncio
    async def test_update_merges(self, jobs):
        await jobs.create_job(CrawlJob(id="job-1", url=START_URL, limit=10))
        merged = await jobs.update_job("job-1", completed_pages=4, total_pages=8, remote_status="scraping")
        assert merged.completed_pages == 4
        assert merged.limit == 10

        loaded = await jobs.get_job("job-1")
        assert loaded.total_pages == 8
        assert loaded.remote_status == "scraping"
        assert loaded.completion_ratio == 0.5

    @pytest.mark.asyncio
    async def test_update_unknown_job(self, jobs):
        assert await jobs.update_job("missing", completed_pages=1) is None

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, jobs):
        await jobs.create_job(CrawlJob(id="job-1", url=START_URL))
        await jobs.update_job("job-1", status=JobStatus.COMPLETED)
        merged = await jobs.update_job("job-1", status=JobStatus.FAILED, completed_pages=3)
        assert merged.status == JobStatus.COMPLETED
        assert merged.completed_pages == 3
        assert (await jobs.get_job("job-1")).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_memory_only(self, memory_cache):
        store = JobStore(memory_cache)
        await store.create_job(CrawlJob(id="job-1", url=START_URL))
        assert (await store.get_job("job-1")).url == START_URL


class TestResultPages:
    @pytest.mark.asyncio
    async def test_pages_concatenate_in_order(self, jobs, fake_redis):
        await jobs.create_job(CrawlJob(id="job-1", url=START_URL))
        await jobs.put_result_page("job-1", 0, [result("https://docs.example.com/a")])
        await jobs.put_result_page("job-1", 1, [result("https://docs.example.com/b"), result("https://docs.example.com/c")])
        await jobs.update_job("job-1", total_pages=2)

        assert await fake_redis.exists("crawl:results:job-1:page:1")
        pages = await jobs.get_all_result_pages("job-1")
        assert [p.source_url for p in pages] == [
            "https://docs.example.com/a",
            "https://docs.example.com/b",
            "https://docs.example.com/c",
        ]

    @pytest.mark.asyncio
    async def test_missing_pages_skipped(self, jobs):
        await jobs.create_job(CrawlJob(id="job-1", url=START_URL, total_pages=3))
        await jobs.put_result_page("job-1", 2, [result("https://docs.example.com/z")])
        pages = await jobs.get_all_result_pages("job-1")
        assert [p.source_url for p in pages] == ["https://docs.example.com/z"]

    @pytest.mark.asyncio
    async def test_extra_provider_fields_preserved(self, jobs):
        record = CrawlResult.model_validate({
            "metadata": {"sourceURL": "https://docs.example.com/a", "title": "A"},
            "markdown": "# A",
            "html": "<h1>A</h1>",
        })
        await jobs.put_result_page("job-1", 0, [record])
        [loaded] = await jobs.get_result_page("job-1", 0)
        assert loaded.model_dump()["html"] == "<h1>A</h1>"
        assert loaded.metadata.model_dump()["title"] == "A"

    @pytest.mark.asyncio
    async def test_unknown_job_has_no_results(self, jobs):
        assert await jobs.get_all_result_pages("missing") == []
        assert await jobs.get_result_page("missing", 0) is None


class TestManifestStore:
    @pytest.mark.asyncio
    async def test_put_and_get(self, manifests):
        urls = ["https://docs.example.com/a", "https://docs.example.com/b"]
        assert await manifests.put(START_URL, urls)
        assert await manifests.get(START_URL) == urls

    @pytest.mark.asyncio
    async def test_keyed_by_normalized_start_url(self, manifests):
        await manifests.put(START_URL, ["https://docs.example.com/a"])
        assert await manifests.get("https://DOCS.example.com") == ["https://docs.example.com/a"]

    @pytest.mark.asyncio
    async def test_namespace_separate_from_pages(self, manifests, cache):
        key = manifests.manifest_key(START_URL)
        assert key.startswith("crawl:urls:")
        assert key != cache.make_key(START_URL)

    @pytest.mark.asyncio
    async def test_overwritten_whole(self, manifests):
        await manifests.put(START_URL, ["https://docs.example.com/a", "https://docs.example.com/b"])
        await manifests.put(START_URL, ["https://docs.example.com/c"])
        assert await manifests.get(START_URL) == ["https://docs.example.com/c"]

    @pytest.mark.asyncio
    async def test_missing(self, manifests):
        assert await manifests.get("https://docs.nothing.com/") is None

    @pytest.mark.asyncio
    async def test_malformed_record(self, manifests, fake_redis):
        await fake_redis.set(manifests.manifest_key(START_URL), json.dumps({"not": "a list"}))
        assert await manifests.get(START_URL) is None
