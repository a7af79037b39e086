"""
Abstract base class for fixture sources.
Defines the contract every upstream connector implements: per-league, by-date and live
fetches, each returning normalized fixtures or raising a typed SourceError.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from shared.models.domain import SourceResult
from shared.utils.logging import get_logger
from shared.utils.metrics import SOURCE_PARSE_ERRORS

from ingest.normalization.normalizer import normalize_records, unwrap_payload

logger = get_logger(__name__)


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of UTC calendar dates."""
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"DateRange end {self.end} is before start {self.start}")


class FixtureSource(abc.ABC):
    """
    Abstract base class for fixture providers.

    Subclasses implement the raw `_fetch_*` calls and return the decoded JSON
    document. The base class unwraps the envelope, normalizes records and logs
    skipped ones. There are no retries here.
    """

    def __init__(self, name: str, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._name = name
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return self._name

    async def start(self) -> None:
        """Acquire connections. No-op by default."""

    async def close(self) -> None:
        """Release connections. No-op by default."""

    async def fetch_league(self, league_id: int, date_range: DateRange) -> SourceResult:
        """Fixtures of one league within a UTC date range."""
        endpoint = f"league:{league_id}"
        data = await self._fetch_league(league_id, date_range)
        return self._build_result(data, endpoint)

    async def fetch_date(self, day: date) -> SourceResult:
        """Fixtures of every league on one UTC date."""
        endpoint = f"date:{day.isoformat()}"
        data = await self._fetch_date(day)
        return self._build_result(data, endpoint)

    async def fetch_live(self) -> SourceResult:
        """Fixtures currently in play."""
        data = await self._fetch_live()
        return self._build_result(data, "live")

    def _build_result(self, data: Any, endpoint: str) -> SourceResult:
        fetched_at = self._clock()
        records = unwrap_payload(data, endpoint)
        fixtures, errors = normalize_records(records, endpoint)
        if errors:
            SOURCE_PARSE_ERRORS.labels(endpoint=endpoint.split(":", 1)[0]).inc(len(errors))
        logger.debug(
            "source_fetch_complete",
            source=self._name,
            endpoint=endpoint,
            fixtures=len(fixtures),
            skipped=len(errors),
        )
        return SourceResult(fixtures=fixtures, errors=errors, fetched_at=fetched_at)

    # ── Abstract methods (each provider implements these) ───────────────
    @abc.abstractmethod
    async def _fetch_league(self, league_id: int, date_range: DateRange) -> Any:
        """Provider-specific per-league fetch. Returns the decoded JSON document."""
        ...

    @abc.abstractmethod
    async def _fetch_date(self, day: date) -> Any:
        """Provider-specific by-date fetch."""
        ...

    @abc.abstractmethod
    async def _fetch_live(self) -> Any:
        """Provider-specific live fetch."""
        ...


