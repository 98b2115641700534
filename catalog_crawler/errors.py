"""
Crawler exceptions.

Per-item errors (discovery, navigation, extraction, persistence) are contained
where they happen and counted; only FatalConfigError and CircuitOpenError end
a run.
"""

from __future__ import annotations


class CrawlerError(Exception):
    """Base exception for crawler failures."""


class FatalConfigError(CrawlerError):
    """Raised when required configuration is missing or unusable."""


class DiscoveryError(CrawlerError):
    """Raised when a sitemap cannot be fetched or parsed."""


class NavigationError(CrawlerError):
    """Raised when a page cannot be loaded. Transient."""


class PageTimeoutError(NavigationError):
    """Raised when a navigation or extraction exceeds its time budget."""


class ExtractionError(CrawlerError):
    """Raised when the field extractor fails on a loaded page."""


class ContentNotReadyError(ExtractionError):
    """Raised when a page has no product content to extract."""


class PersistenceError(CrawlerError):
    """Raised when the catalog store rejects a read or write."""


class CircuitOpenError(CrawlerError):
    """Raised when too many consecutive failures halt a run."""

    def __init__(self, consecutive_failures: int, threshold: int) -> None:
        self.consecutive_failures = consecutive_failures
        self.threshold = threshold
        super().__init__(
            f"Circuit breaker open after {consecutive_failures} consecutive failures "
            f"(threshold {threshold})"
        )


class RetryExhaustedError(CrawlerError):
    """Raised when every attempt of a retried operation failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempt(s): {last_error}")
