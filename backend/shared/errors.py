"""Error types raised inside the feed engine. None of them is fatal to the process."""
from __future__ import annotations

from typing import Optional


class FeedError(Exception):
    """Base class for all feed errors."""


# ── Source adapter ──────────────────────────────────────────────────────
class SourceError(FeedError):
    """An upstream fetch failed. Carries the endpoint label for logging."""

    def __init__(self, message: str, source: str = "unknown") -> None:
        self.source = source
        super().__init__(message)


class NetworkError(SourceError):
    """Transient transport failure, timeout or server error."""

    def __init__(self, message: str, source: str = "unknown", status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message, source)


class RateLimited(SourceError):
    """Upstream answered 429."""

    def __init__(self, source: str = "unknown", retry_after: Optional[float] = None) -> None:
        self.retry_after = retry_after
        super().__init__(f"Rate limited by upstream ({source})", source)


class MalformedResponse(SourceError):
    """The payload is neither a list nor {"response": list}, or is not JSON at all."""


# ── Cache ───────────────────────────────────────────────────────────────
class CacheStoreError(FeedError):
    """The cache backend is unreachable or answered with an error."""


class StorageQuotaExceeded(CacheStoreError):
    """The cache backend refused a write for lack of space."""


# ── Caller errors ───────────────────────────────────────────────────────
class InvalidDateError(FeedError, ValueError):
    """A target date is not a valid YYYY-MM-DD calendar date."""
