"""
Feed scheduler service.
Runs one polling orchestrator per configured view and logs every emitted snapshot.
Views for "today" are rebuilt when the local calendar date rolls over.
"""
from __future__ import annotations

import asyncio
import signal
from datetime import date, datetime, timezone
from typing import Callable, Optional

from shared.config import CacheBackend, Settings, get_settings
from shared.models.domain import FeedSnapshot
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisCacheStore, RedisManager

from feed.cache import CacheManager, CacheStore, MemoryCacheStore
from feed.date_filter import local_today
from feed.orchestrator import FeedOrchestrator, FeedView, PollingHandle
from ingest.providers.api_football import ApiFootballSource
from ingest.providers.base import FixtureSource

logger = get_logger(__name__)

ROLLOVER_CHECK_S = 60.0


def build_store(settings: Settings) -> CacheStore:
    """Pick the cache backend from settings."""
    if settings.cache_backend == CacheBackend.REDIS:
        return RedisCacheStore(
            RedisManager(settings),
            prefix=settings.redis_key_prefix,
            max_entries=settings.cache_max_entries,
        )
    return MemoryCacheStore(max_entries=settings.cache_max_entries, prefix=settings.redis_key_prefix)


def build_views(settings: Settings, today: date) -> list[FeedView]:
    """The configured league panel for today, plus the live-only panel when enabled."""
    views = [
        FeedView(
            target_date=today,
            league_ids=tuple(settings.feed_leagues),
            timezone=settings.timezone,
            include_live=settings.feed_include_live,
            name="leagues",
        )
    ]
    if settings.feed_include_live:
        views.append(
            FeedView(
                target_date=today,
                league_ids=(),
                timezone=settings.timezone,
                include_live=True,
                name="all",
            )
        )
    return views


class FeedService:
    """
    Owns the view orchestrators and their polling handles.

    The source and cache are shared by every view and are closed by the caller.
    """

    def __init__(
        self,
        source: FixtureSource,
        cache: Optional[CacheManager],
        settings: Settings | None = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._source = source
        self._cache = cache
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._orchestrators: dict[str, FeedOrchestrator] = {}
        self._handles: dict[str, PollingHandle] = {}
        self._today: Optional[date] = None
        self._shutdown = asyncio.Event()

    @property
    def views(self) -> list[FeedView]:
        return [o.view for o in self._orchestrators.values()]

    def _on_snapshot(self, snapshot: FeedSnapshot) -> None:
        refresh = snapshot.refresh
        logger.info(
            "feed_snapshot",
            date=snapshot.target_date,
            leagues=list(snapshot.fixtures_by_group),
            fixtures=snapshot.fixture_count,
            events=[e.to_display() for e in snapshot.events],
            refresh_s=refresh.interval_s if refresh else None,
            error=snapshot.error,
        )

    async def start_views(self) -> None:
        """(Re)build every view for the current local date and start polling."""
        await self.stop_views()
        self._today = local_today(self._clock(), self._settings.timezone)
        for view in build_views(self._settings, self._today):
            orchestrator = FeedOrchestrator(
                view,
                self._source,
                self._cache,
                settings=self._settings,
                clock=self._clock,
            )
            self._orchestrators[view.name] = orchestrator
            self._handles[view.name] = orchestrator.start_polling(self._on_snapshot)
        logger.info("feed_views_started", date=self._today.isoformat(), views=list(self._orchestrators))

    async def stop_views(self) -> None:
        """Close every orchestrator; their polling tasks and event timers go with them."""
        for orchestrator in self._orchestrators.values():
            await orchestrator.close()
        self._orchestrators.clear()
        self._handles.clear()

    async def check_rollover(self) -> bool:
        """Restart the views when the local date changed. Returns True if it did."""
        today = local_today(self._clock(), self._settings.timezone)
        if self._today is not None and today == self._today:
            return False
        logger.info("feed_date_rollover", previous=str(self._today), current=today.isoformat())
        await self.start_views()
        return True

    async def run(self) -> None:
        await self.start_views()
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=ROLLOVER_CHECK_S)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
            if self._shutdown.is_set():
                break
            try:
                await self.check_rollover()
            except Exception as exc:
                logger.error("feed_service_loop_error", error=str(exc), exc_info=True)

    def request_shutdown(self) -> None:
        self._shutdown.set()


async def main() -> None:
    """Feed service entrypoint."""
    settings = get_settings()
    setup_logging("feed")
    start_metrics_server()

    cache = CacheManager(build_store(settings), settings)
    source = ApiFootballSource(settings)

    await cache.open()
    await source.start()

    service = FeedService(source, cache, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.request_shutdown)

    logger.info("feed_service_started", instance_id=settings.instance_id, leagues=settings.feed_leagues)

    try:
        await service.run()
    finally:
        await service.stop_views()
        await source.close()
        await cache.close()
        logger.info("feed_service_stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
