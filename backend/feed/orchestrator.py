"""
Feed orchestrator: one polling loop per view.

A cycle fetches from the source in bounded batches, reads the ended-fixture cache,
merges, drops excluded competitions, filters to the view's local date, groups and
sorts, diffs for transition events, writes ended fixtures through to the cache and
emits a FeedSnapshot. An unchanged snapshot with no events is suppressed.
"""
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from shared.config import Settings, get_settings
from shared.errors import NetworkError, RateLimited, SourceError
from shared.models.domain import FeedSnapshot, Fixture, RefreshDecision, SourceBatch, SourceResult
from shared.models.enums import SourceKind, StatusCategory
from shared.utils.logging import get_logger
from shared.utils.metrics import ACTIVE_VIEWS, CYCLE_DURATION, FEED_CYCLES, LIVE_FIXTURES, atrack_latency

from ingest.providers.base import DateRange, FixtureSource
from feed.cache import CacheManager
from feed.classifier import classify, group_by_league
from feed.date_filter import (
    TimezoneLike,
    filter_by_local_date,
    local_today,
    parse_target_date,
    resolve_timezone,
    utc_dates_for_local_day,
)
from feed.exclusions import apply_exclusions
from feed.merger import merge_batches
from feed.transitions import TransitionDetector
from scheduler.engine.polling import RefreshPolicy

logger = get_logger(__name__)

SnapshotCallback = Callable[[FeedSnapshot], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class FeedView:
    """
    What a consumer is looking at: a set of leagues on one local date.

    An empty `league_ids` means every league, fetched by date. Raises
    InvalidDateError for a malformed `target_date`.
    """
    target_date: Union[str, date]
    league_ids: tuple[int, ...] = ()
    timezone: TimezoneLike = "UTC"
    include_live: bool = True
    name: str = "default"

    def __post_init__(self) -> None:
        object.__setattr__(self, "target_date", parse_target_date(self.target_date))
        object.__setattr__(self, "league_ids", tuple(self.league_ids))
        resolve_timezone(self.timezone)

    @property
    def day(self) -> date:
        return self.target_date  # type: ignore[return-value]


@dataclass
class _FetchPlan:
    label: str
    kind: SourceKind
    call: Callable[[], Awaitable[SourceResult]]


@dataclass
class _FetchOutcome:
    batch: Optional[SourceBatch] = None
    network_failure: bool = False
    succeeded: bool = False


class PollingHandle:
    """Cancellable handle around a view's polling task."""

    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        self._task.cancel()

    def is_current(self) -> bool:
        return asyncio.current_task() is self._task

    async def wait(self) -> None:
        """Wait for the loop to finish; cancellation counts as finishing."""
        try:
            await self._task
        except asyncio.CancelledError:
            pass


@dataclass
class _CycleState:
    last_snapshot: Optional[FeedSnapshot] = None
    refresh: Optional[RefreshDecision] = None
    loaded: bool = False
    last_good: dict[str, SourceBatch] = field(default_factory=dict)
    cached: dict[tuple[str, int], list[Fixture]] = field(default_factory=dict)


class FeedOrchestrator:
    """
    Runs feed cycles for one view.

    Args:
        view: Leagues, date and timezone to show.
        source: Upstream fixture source. Not owned; the caller closes it.
        cache: Shared ended-fixture cache, or None to run without persistence.
            Not owned; the caller closes it.
        detector: Transition detector. Owned; closed with the orchestrator.
        policy: Refresh policy.
    """

    def __init__(
        self,
        view: FeedView,
        source: FixtureSource,
        cache: Optional[CacheManager] = None,
        settings: Settings | None = None,
        clock: Optional[Callable[[], datetime]] = None,
        detector: Optional[TransitionDetector] = None,
        policy: Optional[RefreshPolicy] = None,
    ) -> None:
        self._view = view
        self._source = source
        self._cache = cache
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._threshold = timedelta(seconds=self._settings.staleness_threshold_s)
        self._detector = detector or TransitionDetector(
            threshold=self._threshold,
            goal_display_s=self._settings.flash_goal_s,
            status_display_s=self._settings.flash_status_s,
        )
        self._policy = policy or RefreshPolicy(self._settings)
        self._state = _CycleState()
        self._handle: Optional[PollingHandle] = None
        self._closed = False

    @property
    def view(self) -> FeedView:
        return self._view

    @property
    def detector(self) -> TransitionDetector:
        return self._detector

    @property
    def last_snapshot(self) -> Optional[FeedSnapshot]:
        return self._state.last_snapshot

    @property
    def refresh(self) -> Optional[RefreshDecision]:
        return self._state.refresh

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Fetch planning ──────────────────────────────────────────────────
    def _plan(self, now: datetime) -> list[_FetchPlan]:
        view = self._view
        utc_days = utc_dates_for_local_day(view.day, view.timezone)
        plans: list[_FetchPlan] = []

        if view.include_live and view.day == local_today(now, view.timezone):
            plans.append(_FetchPlan("live", SourceKind.LIVE, self._source.fetch_live))

        if view.league_ids:
            span = DateRange(start=utc_days[0], end=utc_days[-1])
            for league_id in view.league_ids:
                plans.append(
                    _FetchPlan(
                        f"league:{league_id}",
                        SourceKind.LEAGUE,
                        lambda lid=league_id: self._source.fetch_league(lid, span),
                    )
                )
        else:
            for day in utc_days:
                plans.append(
                    _FetchPlan(
                        f"date:{day.isoformat()}",
                        SourceKind.DATE,
                        lambda d=day: self._source.fetch_date(d),
                    )
                )
        return plans

    def _tolerance(self, now: datetime) -> timedelta:
        refresh = self._state.refresh or self._policy.evaluate(
            [], self._view.day, now, self._view.timezone
        )
        return timedelta(seconds=refresh.staleness_tolerance_s)

    async def _fetch_one(self, plan: _FetchPlan, now: datetime, tolerance: timedelta) -> _FetchOutcome:
        outcome = _FetchOutcome()
        try:
            result = await plan.call()
        except RateLimited as exc:
            logger.info("source_rate_limited", view=self._view.name, fetch=plan.label, retry_after=exc.retry_after)
        except NetworkError as exc:
            outcome.network_failure = True
            logger.warning(
                "source_fetch_failed",
                view=self._view.name,
                fetch=plan.label,
                status=exc.status,
                error=str(exc),
            )
        except SourceError as exc:
            logger.warning("source_response_malformed", view=self._view.name, fetch=plan.label, error=str(exc))
        except Exception as exc:
            # anything else fails this slice only
            logger.error("source_fetch_crashed", view=self._view.name, fetch=plan.label, error=str(exc), exc_info=True)
        else:
            batch = SourceBatch(
                kind=plan.kind,
                fixtures=result.fixtures,
                fetched_at=result.fetched_at,
                label=plan.label,
            )
            self._state.last_good[plan.label] = batch
            outcome.batch = batch
            outcome.succeeded = True
            return outcome

        last = self._state.last_good.get(plan.label)
        if last is not None and now - last.fetched_at <= tolerance:
            logger.debug("using_last_good_slice", view=self._view.name, fetch=plan.label)
            outcome.batch = last
        return outcome

    async def _fetch_all(self, now: datetime) -> list[_FetchOutcome]:
        plans = self._plan(now)
        tolerance = self._tolerance(now)
        size = self._settings.fetch_concurrency
        outcomes: list[_FetchOutcome] = []

        for start in range(0, len(plans), size):
            if start:
                await asyncio.sleep(self._settings.fetch_batch_delay_s)
            chunk = plans[start:start + size]
            outcomes.extend(
                await asyncio.gather(*(self._fetch_one(p, now, tolerance) for p in chunk))
            )
        return outcomes

    # ── Cache ───────────────────────────────────────────────────────────
    def _cache_leagues(self, fixtures: list[Fixture]) -> list[int]:
        if self._view.league_ids:
            return list(self._view.league_ids)
        ids = {f.league.id for f in fixtures}
        return sorted(ids | set(self._settings.feed_leagues))

    async def _read_cache(self, now: datetime, fetched: list[Fixture]) -> list[SourceBatch]:
        """Cached entries are keyed by the UTC kickoff date."""
        self._state.cached = {}
        if self._cache is None:
            return []
        batches: list[SourceBatch] = []
        utc_today = now.astimezone(timezone.utc).date()
        for day in utc_dates_for_local_day(self._view.day, self._view.timezone):
            for league_id in self._cache_leagues(fetched):
                fixtures = await self._cache.get(day, league_id, today=utc_today)
                if not fixtures:
                    continue
                self._state.cached[(day.isoformat(), league_id)] = fixtures
                batches.append(
                    SourceBatch(
                        kind=SourceKind.CACHE,
                        fixtures=fixtures,
                        fetched_at=now,
                        label=f"cache:{day.isoformat()}:{league_id}",
                    )
                )
        return batches

    async def _write_through(self, fixtures: list[Fixture], now: datetime) -> None:
        if self._cache is None:
            return
        days = {d.isoformat() for d in utc_dates_for_local_day(self._view.day, self._view.timezone)}
        buckets: dict[tuple[str, int], dict[int, Fixture]] = {}
        for fixture in self._cache.persistable(fixtures, now):
            key = (fixture.kickoff.date().isoformat(), fixture.league.id)
            if key[0] not in days:
                continue
            buckets.setdefault(key, {})[fixture.id] = fixture

        for (day, league_id), fresh in buckets.items():
            existing = self._state.cached.get((day, league_id), [])
            combined = {f.id: f for f in existing}
            combined.update(fresh)
            merged = sorted(combined.values(), key=lambda f: (f.kickoff, f.id))
            if merged == sorted(existing, key=lambda f: (f.kickoff, f.id)):
                continue
            await self._cache.put(day, league_id, merged)

    # ── Cycle ───────────────────────────────────────────────────────────
    async def run_cycle(self) -> Optional[FeedSnapshot]:
        """
        Run one cycle.

        Returns:
            The new snapshot, or None when nothing changed or the view was closed
            while the cycle was in flight.
        """
        if self._closed:
            return None

        async with atrack_latency(CYCLE_DURATION):
            now = self._clock()
            view = self._view
            outcomes = await self._fetch_all(now)
            fetched = [f for o in outcomes if o.batch is not None for f in o.batch.fixtures]
            cached = await self._read_cache(now, fetched)
            if self._closed:
                return self._discard()

            batches = [o.batch for o in outcomes if o.batch is not None] + cached
            merged = merge_batches(batches, now, self._threshold)
            if view.league_ids:
                # the live feed spans every league
                merged = [f for f in merged if f.league.id in view.league_ids]
            shown = apply_exclusions(
                merged,
                self._settings.excluded_league_terms,
                exempt_league_ids=view.league_ids,
                exclude_unknown_country=self._settings.exclude_unknown_country,
            )
            visible = filter_by_local_date(shown, view.day, view.timezone)
            groups = group_by_league(visible, now, self._threshold, self._settings.league_priority)
            events = self._detector.observe(visible, now)

            await self._write_through(merged, now)
            if self._closed:
                return self._discard()

            refresh = self._policy.evaluate(visible, view.day, now, view.timezone)
            self._state.refresh = refresh

            if any(o.succeeded for o in outcomes) or visible:
                self._state.loaded = True
            error = None
            if not self._state.loaded and any(o.network_failure for o in outcomes):
                error = "Could not load fixtures. Retrying."

            snapshot = FeedSnapshot(
                target_date=view.day.isoformat(),
                fixtures_by_group=groups,
                events=events,
                refresh=refresh,
                error=error,
                generated_at=now,
            )

        previous = self._state.last_snapshot
        if (
            not events
            and snapshot.same_fixtures_as(previous)
            and previous is not None
            and previous.error == error
        ):
            FEED_CYCLES.labels(outcome="unchanged").inc()
            logger.debug("snapshot_unchanged", view=view.name)
            return None

        self._state.last_snapshot = snapshot
        live = sum(1 for f in visible if classify(f, now, self._threshold) == StatusCategory.LIVE)
        LIVE_FIXTURES.labels(view=view.name).set(live)
        FEED_CYCLES.labels(outcome="error" if error else "emitted").inc()
        logger.info(
            "snapshot_emitted",
            view=view.name,
            date=snapshot.target_date,
            groups=len(groups),
            fixtures=snapshot.fixture_count,
            events=len(events),
            urgency=refresh.urgency.value,
        )
        return snapshot

    def _discard(self) -> None:
        FEED_CYCLES.labels(outcome="discarded").inc()
        logger.debug("cycle_discarded", view=self._view.name)
        return None

    # ── Polling ─────────────────────────────────────────────────────────
    def start_polling(self, on_snapshot: SnapshotCallback) -> PollingHandle:
        """Start the polling loop. The interval is re-evaluated after every cycle."""
        if self._closed:
            raise RuntimeError("FeedOrchestrator is closed")
        if self._handle is not None and not self._handle.done:
            return self._handle
        task = asyncio.create_task(self._poll_loop(on_snapshot), name=f"feed-poll:{self._view.name}")
        self._handle = PollingHandle(task)
        ACTIVE_VIEWS.inc()
        task.add_done_callback(lambda _t: ACTIVE_VIEWS.dec())
        logger.info("polling_started", view=self._view.name, date=self._view.day.isoformat())
        return self._handle

    async def _poll_loop(self, on_snapshot: SnapshotCallback) -> None:
        while not self._closed:
            try:
                snapshot = await self.run_cycle()
                if snapshot is not None:
                    result: Any = on_snapshot(snapshot)
                    if inspect.isawaitable(result):
                        await result
            except asyncio.CancelledError:
                raise
            except Exception:
                FEED_CYCLES.labels(outcome="failed").inc()
                logger.error("feed_cycle_failed", view=self._view.name, exc_info=True)

            refresh = self._state.refresh
            if refresh is None:
                interval = float(self._settings.refresh_today_s)
            elif not refresh.auto_refresh:
                logger.info("auto_refresh_disabled", view=self._view.name, urgency=refresh.urgency.value)
                return
            else:
                interval = float(refresh.interval_s)
            await asyncio.sleep(interval)

    async def close(self) -> None:
        """Stop polling, cancel event timers and discard any in-flight cycle."""
        if self._closed:
            return
        self._closed = True
        if self._handle is not None and not self._handle.is_current():
            self._handle.cancel()
            await self._handle.wait()
        self._detector.close()
        logger.info("feed_view_closed", view=self._view.name)
