"""Exceptions surfaced to API clients.

Every error carries the HTTP status the API layer answers with and an
optional ``details`` dict merged into the JSON error body.
"""

from typing import Any


class CrawlError(Exception):
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, **self.details}


class InvalidRequestError(CrawlError):
    """Bad client input — never retried."""
    status_code = 400


class JobNotFoundError(CrawlError):
    status_code = 404


class NotCachedError(CrawlError):
    """None of the requested pages are in the cache."""
    status_code = 404


class CrawlInProgressError(CrawlError):
    """Another request holds the start lock for this URL."""
    status_code = 409


class CircuitOpenError(CrawlError):
    status_code = 503


class ConfigurationError(CrawlError):
    status_code = 500


class ProviderError(CrawlError):
    """Non-2xx answer from the crawl provider."""

    GATEWAY_CODES = (502, 503, 504)

    def __init__(self, status_code: int, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.status_code = status_code

    @property
    def is_gateway(self) -> bool:
        return self.status_code in self.GATEWAY_CODES

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500
