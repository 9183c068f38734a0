"""Pydantic models for crawl jobs, provider payloads and API input/output.

Split into: stored records, provider payloads, API requests/responses and
the live status events.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, Field, field_validator

from doccrawl.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════ STORED RECORDS ═══════════════

class JobStatus(str, Enum):
    CRAWLING = "crawling"
    CACHE_HIT = "cache_hit"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


class CrawlResultMetadata(BaseModel):
    sourceURL: str | None = None

    model_config = {"extra": "allow"}


class CrawlResult(BaseModel):
    """One crawled page as returned by the provider."""
    metadata: CrawlResultMetadata = Field(default_factory=CrawlResultMetadata)
    markdown: str | None = None

    model_config = {"extra": "allow"}

    @property
    def source_url(self) -> str | None:
        return self.metadata.sourceURL

    @property
    def content(self) -> str:
        return self.markdown or ""


class CrawlJob(BaseModel):
    """Crawl job metadata, owned by the job store."""
    id: str
    url: str
    limit: int | None = None
    status: JobStatus = JobStatus.CRAWLING
    remote_status: str | None = None
    total_pages: int = 0
    completed_pages: int = 0
    failed_pages: int = 0
    credits_used: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    expires_at: str | None = None
    next_page_token: str | None = None
    last_page_number: int = 0
    crawled_urls: list[str] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def completion_ratio(self) -> float:
        if not self.total_pages:
            return 0.0
        return self.completed_pages / self.total_pages


# ═══════════════ PROVIDER PAYLOADS ═══════════════

class CrawlStartResult(BaseModel):
    success: bool = False
    id: str | None = None
    creditsUsed: int = 0
    error: str | None = None

    model_config = {"extra": "allow"}

    @field_validator("creditsUsed", mode="before")
    @classmethod
    def _none_as_zero(cls, v: Any) -> Any:
        return v or 0


class CrawlStatusResponse(BaseModel):
    """GET /crawl/{id} body."""
    status: str = ""
    completed: int = 0
    total: int = 0
    creditsUsed: int = 0
    expiresAt: str | None = None
    next: str | None = None
    data: list[CrawlResult] | None = None

    model_config = {"extra": "allow"}

    @field_validator("completed", "total", "creditsUsed", mode="before")
    @classmethod
    def _none_as_zero(cls, v: Any) -> Any:
        return v or 0

    @property
    def completion_ratio(self) -> float:
        if not self.completed or not self.total:
            return 0.0
        return self.completed / self.total


# ═══════════════ API REQUESTS / RESPONSES ═══════════════

INVALID_URL_MESSAGE = "Invalid URL. Must be from an allowed documentation domain"


class StartCrawlRequest(BaseModel):
    url: str = Field(min_length=1)
    limit: int = Field(default=settings.default_crawl_limit, ge=1, strict=True)
    force: bool = False

    # One client-facing message per invalid field
    FIELD_ERRORS: ClassVar[dict[str, str]] = {
        "url": INVALID_URL_MESSAGE,
        "limit": "limit must be a positive integer",
        "force": "force must be a boolean",
    }


class StartCrawlResponse(BaseModel):
    success: bool = True
    jobId: str
    url: str
    limit: int
    cached: bool | None = None


class SeedRequest(BaseModel):
    url: str = Field(min_length=1)
    pageUrls: list[Annotated[str, Field(min_length=1)]] = Field(min_length=1)

    FIELD_ERRORS: ClassVar[dict[str, str]] = {
        "url": "Missing required field: url",
        "pageUrls": "Missing required field: pageUrls (non-empty array)",
        "pageUrls[]": "pageUrls must contain only non-empty strings",
    }


class SeedResponse(BaseModel):
    success: bool = True
    url: str
    stored: int
    missing: int
    missingUrls: list[str] | None = None


# ═══════════════ STATUS STREAM EVENTS ═══════════════

EventType = Literal["status", "progress", "url_complete", "error", "complete"]


class CrawlEvent(BaseModel):
    """One message on the live status stream."""
    type: EventType
    status: str | None = None
    progress: int | None = None
    total: int | None = None
    url: str | None = None
    content: str | None = None
    cached: bool | None = None
    error: str | None = None
    creditsUsed: int | None = None
    jobId: str | None = None
    completionRatio: float | None = None

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"
