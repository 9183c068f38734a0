"""Application configuration loaded from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration — reads from environment / .env file."""

    # Crawl provider
    firecrawl_api_key: str = ""
    firecrawl_api_url: str = "https://api.firecrawl.dev/v1"
    provider_wait_for_ms: int = 30000
    provider_scrape_timeout_ms: int = 60000
    provider_request_timeout: float = 90.0
    provider_status_timeout: float = 30.0

    # Redis
    redis_url: str = "redis://localhost:6379"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    allowed_origins: str = "*"
    rate_limit_per_minute: int = 20

    # Cache
    cache_ttl_pages: int = 2592000              # 30 days
    local_cache_ttl: int = 300                  # 5 minutes
    local_cache_max_entries: int = 1024
    compression_threshold: int = 5000           # chars
    slow_redis_threshold_ms: int = 100
    job_ttl: int = 86400                        # 24 hours

    # Crawling
    default_crawl_limit: int = 10
    max_allowed_urls: int = 2000
    min_content_length: int = 200
    crawl_lock_ttl: int = 60
    manifest_sample_size: int = 3

    # Status polling
    poll_interval: float = 2.0
    max_polling_time: float = 480.0             # 8 minutes
    max_consecutive_errors: int = 5
    max_backoff: float = 30.0
    stall_window: float = 60.0
    absolute_stall_window: float = 120.0
    near_complete_ratio: float = 0.95
    mostly_complete_ratio: float = 0.80
    absolute_stall_ratio: float = 0.5
    min_progress_rate: float = 1 / 60           # pages per second
    slow_progress_min_pages: int = 10

    # Circuit breaker (crawl provider)
    breaker_failure_threshold: int = 50
    breaker_success_threshold: int = 2
    breaker_timeout: float = 60.0
    breaker_half_open_requests: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def has_provider_key(self) -> bool:
        return bool(self.firecrawl_api_key)

    @property
    def cors_origins(self) -> list[str]:
        if self.allowed_origins == "*":
            return ["*"]
        return [o.strip() for o in self.allowed_origins.split(",")]


settings = Settings()
