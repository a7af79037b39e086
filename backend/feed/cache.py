"""
Persisted cache of ended fixtures, keyed by (date, league).

The manager is an explicitly owned object: open it, inject it into every orchestrator
that should share it, close it on shutdown. Reads never raise. An entry that fails to
parse, belongs to another date, or outlived its TTL is deleted and reported as a miss.
Writes that hit the storage quota evict the oldest half of the entries and retry once.
"""
from __future__ import annotations

import asyncio
import math
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Protocol, Union

from pydantic import ValidationError

from shared.config import Settings, get_settings
from shared.errors import CacheStoreError, StorageQuotaExceeded
from shared.models.domain import CacheEntry, Fixture
from shared.models.enums import StatusCategory
from shared.utils.logging import get_logger
from shared.utils.metrics import CACHE_EVICTIONS, CACHE_OPERATIONS

from feed.classifier import category_for_code
from feed.date_filter import TimezoneLike, local_today, parse_target_date

logger = get_logger(__name__)


class CacheStore(Protocol):
    """Raw string storage used by CacheManager."""

    def key(self, date: str, league_id: int) -> str: ...

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, timestamp: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def timestamps(self) -> list[tuple[str, float]]: ...


class MemoryCacheStore:
    """In-process store with an entry-count quota. Safe for concurrent tasks on one loop."""

    def __init__(self, max_entries: int = 500, prefix: str = "feed") -> None:
        self._max_entries = max_entries
        self._prefix = prefix
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def key(self, date: str, league_id: int) -> str:
        return f"{self._prefix}:cache:{date}:{league_id}"

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            item = self._data.get(key)
        return item[0] if item else None

    async def set(self, key: str, value: str, timestamp: float) -> None:
        async with self._lock:
            if key not in self._data and self._max_entries and len(self._data) >= self._max_entries:
                raise StorageQuotaExceeded(f"Cache holds {self._max_entries} entries")
            self._data[key] = (value, timestamp)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def timestamps(self) -> list[tuple[str, float]]:
        async with self._lock:
            rows = [(k, ts) for k, (_, ts) in self._data.items()]
        return sorted(rows, key=lambda r: r[1])

    def __len__(self) -> int:
        return len(self._data)


DateLike = Union[str, date]


class CacheManager:
    """
    Ended-fixture cache with date validation, TTL and quota handling.

    Args:
        store: Storage backend.
        settings: TTLs, staleness threshold and default timezone come from here.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: CacheStore,
        settings: Settings | None = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._threshold = timedelta(seconds=self._settings.staleness_threshold_s)
        self._evict_lock = asyncio.Lock()
        self._open = False

    # ── Lifecycle ───────────────────────────────────────────────────────
    async def open(self) -> None:
        await self._store.open()
        self._open = True
        logger.info("cache_opened", store=type(self._store).__name__)

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        await self._store.close()
        logger.info("cache_closed")

    async def __aenter__(self) -> "CacheManager":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._open

    def _require_open(self) -> None:
        if not self._open:
            raise RuntimeError("CacheManager not open. Call open() first.")

    # ── Policy ──────────────────────────────────────────────────────────
    def _today(self, today: Optional[date], tz: Optional[TimezoneLike]) -> date:
        if today is not None:
            return today
        return local_today(self._clock(), tz or self._settings.timezone)

    def ttl_for(self, day: date, today: date) -> float:
        """Past dates are settled and keep for a week; today (and later) only briefly."""
        if day < today:
            return self._settings.cache_ttl_past_s
        return self._settings.cache_ttl_today_s

    def persistable(self, fixtures: Iterable[Fixture], now: Optional[datetime] = None) -> list[Fixture]:
        """Fixtures with a final status whose kickoff is past the staleness threshold."""
        now = now or self._clock()
        return [
            f
            for f in fixtures
            if category_for_code(f.status.code) == StatusCategory.ENDED
            and now - f.kickoff > self._threshold
        ]

    # ── Read ────────────────────────────────────────────────────────────
    async def get(
        self,
        day: DateLike,
        league_id: int,
        today: Optional[date] = None,
        tz: Optional[TimezoneLike] = None,
    ) -> list[Fixture]:
        """Cached ended fixtures for (day, league_id), or [] on any kind of miss."""
        self._require_open()
        target = parse_target_date(day)
        date_str = target.isoformat()
        key = self._store.key(date_str, league_id)

        try:
            raw = await self._store.get(key)
        except CacheStoreError as exc:
            logger.warning("cache_read_failed", key=key, error=str(exc))
            CACHE_OPERATIONS.labels(op="get", result="error").inc()
            return []
        if raw is None:
            CACHE_OPERATIONS.labels(op="get", result="miss").inc()
            return []

        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("cache_entry_corrupt", key=key, error=str(exc).splitlines()[0])
            await self._drop(key, reason="corrupt")
            return []

        if entry.date != date_str or entry.league_id != league_id:
            logger.info(
                "cache_date_mismatch",
                key=key,
                cached_date=entry.date,
                requested_date=date_str,
            )
            await self._drop(key, reason="date_mismatch")
            return []

        age = self._clock().timestamp() - entry.timestamp
        if age >= self.ttl_for(target, self._today(today, tz)):
            logger.debug("cache_entry_expired", key=key, age_s=round(age, 1))
            await self._drop(key, reason="expired")
            return []

        CACHE_OPERATIONS.labels(op="get", result="hit").inc()
        return list(entry.fixtures)

    async def _drop(self, key: str, reason: str) -> None:
        CACHE_OPERATIONS.labels(op="get", result=reason).inc()
        CACHE_EVICTIONS.labels(reason=reason).inc()
        try:
            await self._store.delete(key)
        except CacheStoreError as exc:
            logger.warning("cache_delete_failed", key=key, error=str(exc))

    # ── Write ───────────────────────────────────────────────────────────
    async def put(self, day: DateLike, league_id: int, fixtures: Iterable[Fixture]) -> bool:
        """
        Persist the ended fixtures of (day, league_id).

        Returns:
            True if an entry was written, False if there was nothing to persist or
            the write was dropped.
        """
        self._require_open()
        now = self._clock()
        ended = self.persistable(fixtures, now)
        if not ended:
            return False

        date_str = parse_target_date(day).isoformat()
        key = self._store.key(date_str, league_id)
        timestamp = now.timestamp()
        payload = CacheEntry(
            fixtures=ended, timestamp=timestamp, date=date_str, league_id=league_id
        ).to_json()

        try:
            await self._store.set(key, payload, timestamp)
        except StorageQuotaExceeded:
            logger.warning("cache_quota_exceeded", key=key)
            await self.evict_oldest()
            try:
                await self._store.set(key, payload, timestamp)
            except CacheStoreError as exc:
                logger.warning("cache_write_dropped", key=key, error=str(exc))
                CACHE_OPERATIONS.labels(op="put", result="dropped").inc()
                return False
        except CacheStoreError as exc:
            logger.warning("cache_write_failed", key=key, error=str(exc))
            CACHE_OPERATIONS.labels(op="put", result="error").inc()
            return False

        CACHE_OPERATIONS.labels(op="put", result="ok").inc()
        logger.debug("cache_entry_written", key=key, fixtures=len(ended))
        return True

    async def evict_oldest(self, fraction: float = 0.5) -> int:
        """Delete the oldest `fraction` of entries by write timestamp. Returns how many went."""
        async with self._evict_lock:
            try:
                rows = await self._store.timestamps()
            except CacheStoreError as exc:
                logger.warning("cache_evict_failed", error=str(exc))
                return 0
            if not rows:
                return 0
            rows.sort(key=lambda r: r[1])
            count = max(1, math.ceil(len(rows) * fraction))
            removed = 0
            for key, _ in rows[:count]:
                try:
                    await self._store.delete(key)
                    removed += 1
                except CacheStoreError as exc:
                    logger.warning("cache_delete_failed", key=key, error=str(exc))
            CACHE_EVICTIONS.labels(reason="quota").inc(removed)
            logger.info("cache_evicted_oldest", removed=removed, before=len(rows))
            return removed
