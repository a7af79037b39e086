"""
Pydantic v2 domain models for the match feed.
These are the canonical internal representations; raw upstream shapes never get past
the source adapter.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.models.enums import SourceKind, TransitionKind, Urgency


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


# ── Reference entities ──────────────────────────────────────────────────
class LeagueRef(DomainModel):
    id: int
    name: str
    country: str = ""
    logo: Optional[str] = None


class TeamRef(DomainModel):
    id: int
    name: str
    logo: Optional[str] = None


# ── Status / score ──────────────────────────────────────────────────────
class FixtureStatus(DomainModel):
    code: str
    elapsed: Optional[int] = None


class Goals(DomainModel):
    home: Optional[int] = None
    away: Optional[int] = None


class Score(DomainModel):
    home: Optional[int] = None
    away: Optional[int] = None
    halftime: Goals = Field(default_factory=Goals)
    fulltime: Goals = Field(default_factory=Goals)
    penalty: Optional[Goals] = None

    @property
    def as_tuple(self) -> tuple[int, int]:
        """Current score with unknown sides read as zero."""
        return (self.home or 0, self.away or 0)


# ── Fixture ─────────────────────────────────────────────────────────────
class Fixture(DomainModel):
    """A single scheduled or played match. `id` is stable across sources."""
    id: int
    kickoff: datetime
    venue: Optional[str] = None
    league: LeagueRef
    home: TeamRef
    away: TeamRef
    status: FixtureStatus
    score: Score = Field(default_factory=Score)

    @field_validator("kickoff")
    @classmethod
    def _kickoff_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def match_key(self) -> tuple[int, int, int, datetime]:
        """Secondary identity used to catch the same match reported under two ids."""
        return (self.home.id, self.away.id, self.league.id, self.kickoff)


class ParseError(DomainModel):
    """A raw upstream record that could not be normalized."""
    raw_id: Optional[str] = None
    reason: str


# ── Source results ──────────────────────────────────────────────────────
class SourceResult(DomainModel):
    """Normalized output of one upstream call."""
    fixtures: list[Fixture] = Field(default_factory=list)
    errors: list[ParseError] = Field(default_factory=list)
    fetched_at: datetime


class SourceBatch(DomainModel):
    """One input list for the merger, tagged with its provenance."""
    kind: SourceKind
    fixtures: list[Fixture] = Field(default_factory=list)
    fetched_at: datetime
    label: str = ""

    @property
    def from_cache(self) -> bool:
        return self.kind == SourceKind.CACHE


# ── Cache ───────────────────────────────────────────────────────────────
class CacheEntry(DomainModel):
    """Persisted record: {fixtures, timestamp, date, leagueId}. `timestamp` is epoch seconds."""
    fixtures: list[Fixture] = Field(default_factory=list)
    timestamp: float
    date: str
    league_id: int = Field(alias="leagueId")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ── Transitions ─────────────────────────────────────────────────────────
class TransitionEvent(DomainModel):
    fixture_id: int
    kind: TransitionKind
    observed_at: datetime

    def to_display(self) -> dict[str, Any]:
        return {"fixtureId": self.fixture_id, "kind": self.kind.value}


# ── Refresh ─────────────────────────────────────────────────────────────
class RefreshDecision(DomainModel):
    urgency: Urgency
    interval_s: Optional[float]
    staleness_tolerance_s: float

    @property
    def auto_refresh(self) -> bool:
        return self.interval_s is not None


# ── Snapshot ────────────────────────────────────────────────────────────
class LeagueGroup(DomainModel):
    league: LeagueRef
    fixtures: list[Fixture] = Field(default_factory=list)


class FeedSnapshot(DomainModel):
    """What the display layer receives after a cycle."""
    target_date: str
    fixtures_by_group: dict[int, LeagueGroup] = Field(default_factory=dict)
    events: list[TransitionEvent] = Field(default_factory=list)
    refresh: Optional[RefreshDecision] = None
    error: Optional[str] = None
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def fixture_count(self) -> int:
        return sum(len(g.fixtures) for g in self.fixtures_by_group.values())

    def same_fixtures_as(self, other: Optional["FeedSnapshot"]) -> bool:
        """Structural equality of the grouped fixtures, including group order."""
        if other is None:
            return False
        return list(self.fixtures_by_group.items()) == list(other.fixtures_by_group.items())

    def to_display(self) -> dict[str, Any]:
        return {
            "fixtures": {
                league_id: group.model_dump(mode="json")
                for league_id, group in self.fixtures_by_group.items()
            },
            "events": [e.to_display() for e in self.events],
        }
