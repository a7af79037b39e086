"""
Integration tests for the feed orchestrator against a scripted source and an
in-memory cache.

Run: pytest backend/tests/test_orchestrator.py -v
"""
from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from conftest import NOW, Clock, raw_record
from shared.errors import InvalidDateError, NetworkError, RateLimited
from shared.models.domain import CacheEntry, FeedSnapshot
from shared.models.enums import TransitionKind, Urgency
from ingest.normalization.normalizer import normalize_fixture
from ingest.providers.base import DateRange, FixtureSource
from feed.cache import CacheManager, MemoryCacheStore
from feed.orchestrator import FeedOrchestrator, FeedView


def rec(id: int, code: str, kickoff: datetime, league_id: int = 39, goals=(None, None)) -> dict[str, Any]:
    return raw_record(id=id, code=code, date=kickoff.isoformat(), league_id=league_id, goals=goals)


class FakeSource(FixtureSource):
    """Serves scripted payloads and records every call."""

    def __init__(self, clock: Clock) -> None:
        super().__init__("fake", clock=clock)
        self.live: list[Any] = []
        self.leagues: dict[int, list[Any]] = {}
        self.by_date: dict[date, list[Any]] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.ranges: list[DateRange] = []
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def _serve(self, label: str, payload: Any) -> Any:
        self.calls.append(label)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.gate is not None:
                await self.gate.wait()
            if label in self.errors:
                raise self.errors[label]
            return payload
        finally:
            self.in_flight -= 1

    async def _fetch_league(self, league_id: int, date_range: DateRange) -> Any:
        self.ranges.append(date_range)
        return await self._serve(f"league:{league_id}", {"response": self.leagues.get(league_id, [])})

    async def _fetch_date(self, day: date) -> Any:
        return await self._serve(f"date:{day.isoformat()}", self.by_date.get(day, []))

    async def _fetch_live(self) -> Any:
        return await self._serve("live", self.live)


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def source(clock: Clock) -> FakeSource:
    return FakeSource(clock)


def _orchestrator(source, settings, clock, cache=None, **view_kwargs) -> FeedOrchestrator:
    view_kwargs.setdefault("target_date", "2025-01-01")
    view_kwargs.setdefault("league_ids", (39,))
    return FeedOrchestrator(FeedView(**view_kwargs), source, cache, settings=settings, clock=clock)


def _codes(snapshot: FeedSnapshot) -> dict[int, str]:
    return {f.id: f.status.code for g in snapshot.fixtures_by_group.values() for f in g.fixtures}


# ── View ────────────────────────────────────────────────────────────────

def test_view_rejects_bad_date() -> None:
    with pytest.raises(InvalidDateError):
        FeedView(target_date="01-01-2025")


def test_view_normalizes_date() -> None:
    assert FeedView(target_date="2025-01-01").day == date(2025, 1, 1)


# ── Cycles ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_first_cycle_emits_grouped_snapshot(source, settings, clock) -> None:
    source.leagues[39] = [
        rec(1, "FT", NOW - timedelta(hours=3)),
        rec(2, "NS", NOW + timedelta(hours=3)),
    ]
    source.live = [rec(3, "1H", NOW - timedelta(minutes=20))]
    orch = _orchestrator(source, settings, clock)

    snapshot = await orch.run_cycle()

    assert snapshot is not None
    assert list(snapshot.fixtures_by_group) == [39]
    assert [f.id for f in snapshot.fixtures_by_group[39].fixtures] == [3, 2, 1]
    assert snapshot.error is None
    assert snapshot.refresh.urgency == Urgency.LIVE
    assert sorted(source.calls) == ["league:39", "live"]
    await orch.close()


@pytest.mark.asyncio
async def test_unchanged_snapshot_is_suppressed(source, settings, clock) -> None:
    source.leagues[39] = [rec(1, "NS", NOW + timedelta(hours=3))]
    orch = _orchestrator(source, settings, clock)

    assert await orch.run_cycle() is not None
    clock.now = NOW + timedelta(seconds=60)
    assert await orch.run_cycle() is None

    source.leagues[39] = [rec(1, "PST", NOW + timedelta(hours=3))]
    assert await orch.run_cycle() is not None
    await orch.close()


@pytest.mark.asyncio
async def test_kickoff_event_in_snapshot(source, settings, clock) -> None:
    kickoff = NOW - timedelta(minutes=1)
    source.live = [rec(100, "NS", kickoff)]
    orch = _orchestrator(source, settings, clock)
    await orch.run_cycle()

    source.live = [rec(100, "1H", kickoff)]
    clock.now = NOW + timedelta(seconds=30)
    snapshot = await orch.run_cycle()

    assert [e.kind for e in snapshot.events] == [TransitionKind.KICKOFF]
    assert snapshot.to_display()["events"] == [{"fixtureId": 100, "kind": "kickoff"}]
    assert orch.detector.is_active(100, TransitionKind.KICKOFF)
    await orch.close()
    assert orch.detector.pending_timers == 0


@pytest.mark.asyncio
async def test_rate_limited_falls_back_to_last_good_slice(source, settings, clock) -> None:
    source.leagues[39] = [rec(1, "NS", NOW + timedelta(hours=1))]
    orch = _orchestrator(source, settings, clock)
    first = await orch.run_cycle()
    assert first.refresh.urgency == Urgency.SOON

    source.errors["league:39"] = RateLimited(source="league:39")
    clock.now = NOW + timedelta(seconds=45)
    assert await orch.run_cycle() is None
    assert orch.last_snapshot.fixture_count == 1
    await orch.close()


@pytest.mark.asyncio
async def test_last_good_slice_expires_after_tolerance(source, settings, clock) -> None:
    source.leagues[39] = [rec(1, "NS", NOW + timedelta(hours=1))]
    orch = _orchestrator(source, settings, clock)
    await orch.run_cycle()

    source.errors["league:39"] = NetworkError("down", source="league:39")
    clock.now = NOW + timedelta(minutes=10)
    snapshot = await orch.run_cycle()

    assert snapshot is not None
    assert snapshot.fixture_count == 0
    assert snapshot.error is None
    await orch.close()


@pytest.mark.asyncio
async def test_network_error_surfaces_only_on_initial_load(source, settings, clock) -> None:
    source.errors = {
        "live": NetworkError("down", source="live"),
        "league:39": NetworkError("down", source="league:39", status=503),
    }
    orch = _orchestrator(source, settings, clock)

    failed = await orch.run_cycle()
    assert failed.error is not None
    assert failed.fixture_count == 0

    source.errors = {}
    source.leagues[39] = [rec(1, "NS", NOW + timedelta(hours=3))]
    recovered = await orch.run_cycle()
    assert recovered.error is None
    assert recovered.fixture_count == 1

    source.errors = {"live": NetworkError("down"), "league:39": NetworkError("down")}
    clock.now = NOW + timedelta(hours=1)
    later = await orch.run_cycle()
    assert later is not None and later.error is None
    await orch.close()


@pytest.mark.asyncio
async def test_malformed_payload_does_not_fail_cycle(source, settings, clock) -> None:
    source.live = {"unexpected": True}  # type: ignore[assignment]
    source.leagues[39] = [rec(1, "NS", NOW + timedelta(hours=3))]
    orch = _orchestrator(source, settings, clock)

    snapshot = await orch.run_cycle()
    assert snapshot.fixture_count == 1
    await orch.close()


@pytest.mark.asyncio
async def test_wrongly_typed_live_record_is_skipped(source, settings, clock) -> None:
    broken = rec(2, "1H", NOW - timedelta(minutes=10))
    broken["teams"] = ["x"]
    source.live = [broken]
    source.leagues[39] = [rec(1, "NS", NOW + timedelta(hours=3))]
    orch = _orchestrator(source, settings, clock)

    snapshot = await orch.run_cycle()

    assert _codes(snapshot) == {1: "NS"}
    await orch.close()


@pytest.mark.asyncio
async def test_unexpected_source_crash_fails_only_that_slice(source, settings, clock) -> None:
    source.errors["live"] = AttributeError("'list' object has no attribute 'get'")
    source.leagues[39] = [rec(1, "NS", NOW + timedelta(hours=3))]
    orch = _orchestrator(source, settings, clock)

    snapshot = await orch.run_cycle()

    assert snapshot is not None
    assert _codes(snapshot) == {1: "NS"}
    assert snapshot.error is None
    await orch.close()


@pytest.mark.asyncio
async def test_fetches_run_in_bounded_batches(source, settings, clock) -> None:
    orch = _orchestrator(source, settings, clock, league_ids=(1, 2, 3, 4, 5), include_live=False)
    await orch.run_cycle()
    assert len(source.calls) == 5
    assert source.max_in_flight == 3
    await orch.close()


@pytest.mark.asyncio
async def test_local_timezone_view(source, settings, clock) -> None:
    source.leagues[39] = [
        rec(1, "NS", datetime(2025, 1, 2, 3, 0, tzinfo=timezone.utc)),
        rec(2, "NS", datetime(2025, 1, 2, 6, 0, tzinfo=timezone.utc)),
    ]
    orch = _orchestrator(source, settings, clock, timezone="America/New_York")

    snapshot = await orch.run_cycle()

    assert source.ranges == [DateRange(date(2025, 1, 1), date(2025, 1, 2))]
    assert list(_codes(snapshot)) == [1]
    await orch.close()


@pytest.mark.asyncio
async def test_all_leagues_view_fetches_by_date(source, settings, clock) -> None:
    source.by_date[date(2025, 1, 1)] = [rec(1, "NS", NOW + timedelta(hours=3), league_id=140)]
    orch = _orchestrator(source, settings, clock, league_ids=())

    snapshot = await orch.run_cycle()

    assert "date:2025-01-01" in source.calls
    assert list(snapshot.fixtures_by_group) == [140]
    await orch.close()


@pytest.mark.asyncio
async def test_excluded_competitions_are_hidden(source, settings, clock) -> None:
    youth = rec(2, "NS", NOW + timedelta(hours=2), league_id=700)
    youth["league"]["name"] = "Premier League U21"
    source.by_date[date(2025, 1, 1)] = [rec(1, "NS", NOW + timedelta(hours=3)), youth]
    orch = _orchestrator(source, settings, clock, league_ids=())

    snapshot = await orch.run_cycle()

    assert list(snapshot.fixtures_by_group) == [39]
    await orch.close()


@pytest.mark.asyncio
async def test_requested_league_is_never_excluded(source, settings, clock) -> None:
    women = rec(1, "NS", NOW + timedelta(hours=3), league_id=44)
    women["league"]["name"] = "FA WSL Women"
    source.leagues[44] = [women]
    orch = _orchestrator(source, settings, clock, league_ids=(44,), include_live=False)

    snapshot = await orch.run_cycle()

    assert _codes(snapshot) == {1: "NS"}
    await orch.close()


# ── Cache integration ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_fresh_live_record_beats_cached_full_time(source, settings, clock) -> None:
    kickoff = NOW - timedelta(minutes=30)
    store = MemoryCacheStore()
    async with CacheManager(store, settings, clock=clock) as cache:
        cached_fixture = normalize_fixture(rec(100, "FT", kickoff))
        entry = CacheEntry(fixtures=[cached_fixture], timestamp=NOW.timestamp(), date="2025-01-01", league_id=39)
        await store.set(store.key("2025-01-01", 39), entry.to_json(), NOW.timestamp())

        source.live = [rec(100, "1H", kickoff)]
        orch = _orchestrator(source, settings, clock, cache=cache)
        snapshot = await orch.run_cycle()
        await orch.close()

    assert _codes(snapshot) == {100: "1H"}


@pytest.mark.asyncio
async def test_ended_fixtures_written_through_and_served_when_source_fails(
    source, settings, clock
) -> None:
    past = "2024-12-31"
    source.leagues[39] = [rec(7, "FT", datetime(2024, 12, 31, 15, 0, tzinfo=timezone.utc))]
    async with CacheManager(MemoryCacheStore(), settings, clock=clock) as cache:
        first = _orchestrator(source, settings, clock, cache=cache, target_date=past)
        await first.run_cycle()
        await first.close()
        assert [f.id for f in await cache.get(past, 39, today=NOW.date())] == [7]

        source.errors["league:39"] = NetworkError("down")
        second = _orchestrator(source, settings, clock, cache=cache, target_date=past)
        snapshot = await second.run_cycle()
        await second.close()

    assert _codes(snapshot) == {7: "FT"}
    assert snapshot.error is None
    assert snapshot.refresh.urgency == Urgency.OTHER_DAY


# ── Lifecycle ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cycle_in_flight_at_close_is_discarded(source, settings, clock) -> None:
    source.leagues[39] = [rec(1, "NS", NOW + timedelta(hours=3))]
    source.gate = asyncio.Event()
    orch = _orchestrator(source, settings, clock)

    task = asyncio.create_task(orch.run_cycle())
    await asyncio.sleep(0.01)
    await orch.close()
    source.gate.set()

    assert await task is None
    assert orch.last_snapshot is None
    assert await orch.run_cycle() is None


@pytest.mark.asyncio
async def test_polling_stops_for_other_day(source, settings, clock) -> None:
    source.leagues[39] = [rec(7, "FT", datetime(2024, 12, 31, 15, 0, tzinfo=timezone.utc))]
    orch = _orchestrator(source, settings, clock, target_date="2024-12-31")
    received: list[FeedSnapshot] = []

    async def on_snapshot(snapshot: FeedSnapshot) -> None:
        received.append(snapshot)

    handle = orch.start_polling(on_snapshot)
    await asyncio.wait_for(handle.wait(), timeout=1.0)

    assert handle.done
    assert len(received) == 1
    assert orch.refresh.auto_refresh is False
    await orch.close()


@pytest.mark.asyncio
async def test_close_cancels_polling(source, settings, clock) -> None:
    source.leagues[39] = [rec(1, "NS", NOW + timedelta(hours=3))]
    orch = _orchestrator(source, settings, clock)
    received: list[FeedSnapshot] = []

    handle = orch.start_polling(received.append)
    for _ in range(20):
        if received:
            break
        await asyncio.sleep(0.01)

    await orch.close()

    assert handle.done
    assert len(received) == 1
    with pytest.raises(RuntimeError):
        orch.start_polling(received.append)


@pytest.mark.asyncio
async def test_league_view_ignores_live_fixtures_from_other_leagues(source, settings, clock) -> None:
    source.live = [
        rec(1, "1H", NOW - timedelta(minutes=10)),
        rec(2, "1H", NOW - timedelta(minutes=10), league_id=140),
    ]
    orch = _orchestrator(source, settings, clock)

    snapshot = await orch.run_cycle()

    assert list(snapshot.fixtures_by_group) == [39]
    assert list(_codes(snapshot)) == [1]
    await orch.close()
