"""
Exception types shared by the crawler, the rate limiter and the stores.

Nothing raised from here is allowed to terminate a region loop; the
per-region guard in crawler.py logs and resumes. Only a
ConfigurationError at startup ends the process.
"""

from typing import Optional


class CrawlerError(Exception):
    """Base class for every error raised by this project."""


class ConfigurationError(CrawlerError):
    """Mandatory settings are missing or invalid."""


# =============================================================================
# UPSTREAM (Riot API)
# =============================================================================

class UpstreamError(CrawlerError):
    """The upstream API answered with an unexpected status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class UpstreamRateLimited(UpstreamError):
    """429 from upstream. Aborts only the in-flight unit of work."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


class UpstreamNotFound(UpstreamError):
    """404 from upstream. Callers treat this as "no data"."""

    def __init__(self, message: str):
        super().__init__(message, status=404)


class UpstreamTransient(UpstreamError):
    """5xx, timeout or connection failure."""


# =============================================================================
# BACKING STORES
# =============================================================================

class BackingStoreUnavailable(CrawlerError):
    """The shared counter store or the durable store could not be reached."""


class TimeoutExceeded(CrawlerError):
    """A rate-limit wait would exceed the caller's max_wait."""

    def __init__(self, scope: str, wait_time: float, max_wait: float):
        super().__init__(
            f"rate limit wait for {scope} is {wait_time:.2f}s (max {max_wait:.2f}s)"
        )
        self.scope = scope
        self.wait_time = wait_time
        self.max_wait = max_wait
