"""
Merge fixture lists from several sources into one canonical list.

Each id keeps its best record. "Best" means, in order: not stale, fetched fresh
rather than read from cache, most recently fetched, and finally the source priority
live > league > date > cache. A second pass drops the later-seen record when two
different ids describe the same match (same teams, league and kickoff).
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from shared.models.domain import Fixture, SourceBatch
from shared.utils.logging import get_logger

from feed.classifier import DEFAULT_STALENESS, is_stale

logger = get_logger(__name__)


def _rank(batch: SourceBatch, fixture: Fixture, now: datetime, threshold: timedelta) -> tuple:
    return (
        not is_stale(fixture, now, threshold),
        not batch.from_cache,
        batch.fetched_at,
        batch.kind.priority,
    )


def merge_batches(
    batches: Iterable[SourceBatch],
    now: datetime,
    threshold: timedelta = DEFAULT_STALENESS,
) -> list[Fixture]:
    best: dict[int, tuple[tuple, Fixture]] = {}
    order: list[int] = []

    for batch in batches:
        for fixture in batch.fixtures:
            rank = _rank(batch, fixture, now, threshold)
            current = best.get(fixture.id)
            if current is None:
                order.append(fixture.id)
                best[fixture.id] = (rank, fixture)
            elif rank > current[0]:
                best[fixture.id] = (rank, fixture)

    merged: list[Fixture] = []
    seen_keys: dict[tuple, int] = {}
    for fixture_id in order:
        fixture = best[fixture_id][1]
        key = fixture.match_key
        if key in seen_keys:
            logger.debug(
                "duplicate_match_dropped",
                fixture_id=fixture_id,
                kept_fixture_id=seen_keys[key],
            )
            continue
        seen_keys[key] = fixture_id
        merged.append(fixture)
    return merged
