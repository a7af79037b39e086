"""
Status classification and ordering.

Maps upstream status codes to display buckets, applies the staleness rule, and sorts
fixtures into the four-tier order used by every league group:

    1. Live      ascending elapsed minute, then kickoff
    2. Upcoming  ascending kickoff
    3. Ended     descending kickoff (most recently finished first)
    4. Other     ascending kickoff (postponed and unknown codes)
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from shared.models.domain import Fixture, LeagueGroup
from shared.models.enums import MatchState, StatusCategory

LIVE_CODES = frozenset({"1H", "2H", "HT", "ET", "BT", "P", "LIVE", "LIV", "INT", "SUSP"})
UPCOMING_CODES = frozenset({"NS", "TBD"})
ENDED_CODES = frozenset({"FT", "AET", "PEN", "AWD", "WO"})
POSTPONED_CODES = frozenset({"PST", "CANC", "ABD"})
HALFTIME_CODES = frozenset({"HT"})

DEFAULT_STALENESS = timedelta(hours=4)


def category_for_code(code: str) -> StatusCategory:
    """Raw table lookup, without the staleness rule."""
    c = (code or "").strip().upper()
    if c in LIVE_CODES:
        return StatusCategory.LIVE
    if c in UPCOMING_CODES:
        return StatusCategory.UPCOMING
    if c in ENDED_CODES:
        return StatusCategory.ENDED
    if c in POSTPONED_CODES:
        return StatusCategory.POSTPONED
    return StatusCategory.UNKNOWN


def is_stale(fixture: Fixture, now: datetime, threshold: timedelta = DEFAULT_STALENESS) -> bool:
    """A live or unstarted code is implausible once kickoff is further back than `threshold`."""
    if category_for_code(fixture.status.code) not in (StatusCategory.LIVE, StatusCategory.UPCOMING):
        return False
    return now - fixture.kickoff > threshold


def classify(fixture: Fixture, now: datetime, threshold: timedelta = DEFAULT_STALENESS) -> StatusCategory:
    if is_stale(fixture, now, threshold):
        return StatusCategory.ENDED
    return category_for_code(fixture.status.code)


def match_state(fixture: Fixture, now: datetime, threshold: timedelta = DEFAULT_STALENESS) -> MatchState:
    """State used by the transition machine. Stale fixtures count as ended."""
    category = classify(fixture, now, threshold)
    if category == StatusCategory.LIVE:
        if fixture.status.code.upper() in HALFTIME_CODES:
            return MatchState.HALFTIME
        return MatchState.LIVE
    if category == StatusCategory.UPCOMING:
        return MatchState.UPCOMING
    if category == StatusCategory.ENDED:
        return MatchState.ENDED
    return MatchState.OTHER


def _sort_key(fixture: Fixture, category: StatusCategory) -> tuple:
    ts = fixture.kickoff.timestamp()
    tier = category.sort_tier
    if category == StatusCategory.LIVE:
        return (tier, fixture.status.elapsed or 0, ts, fixture.id)
    if category == StatusCategory.ENDED:
        return (tier, -ts, fixture.id)
    return (tier, ts, fixture.id)


def sort_fixtures(
    fixtures: Iterable[Fixture], now: datetime, threshold: timedelta = DEFAULT_STALENESS
) -> list[Fixture]:
    return sorted(fixtures, key=lambda f: _sort_key(f, classify(f, now, threshold)))


def group_by_league(
    fixtures: Iterable[Fixture],
    now: datetime,
    threshold: timedelta = DEFAULT_STALENESS,
    league_priority: Optional[Sequence[int]] = None,
) -> dict[int, LeagueGroup]:
    """
    Bucket fixtures per league and sort each bucket.

    Groups are ordered by their position in `league_priority`; leagues not listed
    follow, by country then name.
    """
    buckets: dict[int, list[Fixture]] = {}
    leagues = {}
    for fixture in fixtures:
        buckets.setdefault(fixture.league.id, []).append(fixture)
        leagues.setdefault(fixture.league.id, fixture.league)

    rank = {lid: i for i, lid in enumerate(league_priority or ())}

    def group_order(league_id: int) -> tuple:
        league = leagues[league_id]
        if league_id in rank:
            return (0, rank[league_id], "", "")
        return (1, 0, league.country.lower(), league.name.lower())

    return {
        league_id: LeagueGroup(
            league=leagues[league_id],
            fixtures=sort_fixtures(buckets[league_id], now, threshold),
        )
        for league_id in sorted(buckets, key=lambda lid: (group_order(lid), lid))
    }
