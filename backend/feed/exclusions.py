"""
League exclusion filter.

Drops fixtures from competitions the feed does not show by default: youth and
reserve sides, women's competitions, futsal and beach formats, lower divisions
and exhibition matches. Terms are matched case-insensitively as substrings of
the league name and both team names.
"""
from __future__ import annotations

from typing import Collection, Iterable, Sequence

from shared.config import DEFAULT_EXCLUDED_TERMS
from shared.models.domain import Fixture
from shared.utils.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_COUNTRIES = frozenset({"", "unknown"})


def _normalize_terms(terms: Iterable[str]) -> tuple[str, ...]:
    return tuple(t.strip().lower() for t in terms if t and t.strip())


def should_exclude(
    fixture: Fixture,
    terms: Sequence[str] = DEFAULT_EXCLUDED_TERMS,
    exclude_unknown_country: bool = True,
) -> bool:
    """True when the fixture's competition or teams match an exclusion term."""
    if exclude_unknown_country and fixture.league.country.strip().lower() in UNKNOWN_COUNTRIES:
        return True
    haystacks = (
        fixture.league.name.lower(),
        fixture.home.name.lower(),
        fixture.away.name.lower(),
    )
    return any(term in text for term in _normalize_terms(terms) for text in haystacks)


def apply_exclusions(
    fixtures: Iterable[Fixture],
    terms: Sequence[str] = DEFAULT_EXCLUDED_TERMS,
    exempt_league_ids: Collection[int] = (),
    exclude_unknown_country: bool = True,
) -> list[Fixture]:
    """
    Filter out excluded fixtures.

    Leagues in `exempt_league_ids` are always kept, so a view that asks for a
    league by id still sees it whatever its name.
    """
    kept: list[Fixture] = []
    dropped = 0
    for fixture in fixtures:
        if fixture.league.id not in exempt_league_ids and should_exclude(
            fixture, terms, exclude_unknown_country
        ):
            dropped += 1
            continue
        kept.append(fixture)
    if dropped:
        logger.debug("fixtures_excluded", dropped=dropped, kept=len(kept))
    return kept
