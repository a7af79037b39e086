"""Domain enumerations for the match feed."""
from __future__ import annotations

from enum import Enum


class StatusCategory(str, Enum):
    """Display bucket a fixture falls into."""
    LIVE = "live"
    UPCOMING = "upcoming"
    ENDED = "ended"
    POSTPONED = "postponed"
    UNKNOWN = "unknown"

    @property
    def sort_tier(self) -> int:
        """Position of the bucket in a league group: Live, Upcoming, Ended, Other."""
        if self == StatusCategory.LIVE:
            return 1
        if self == StatusCategory.UPCOMING:
            return 2
        if self == StatusCategory.ENDED:
            return 3
        return 4


class MatchState(str, Enum):
    """States of the per-fixture transition machine."""
    UPCOMING = "upcoming"
    LIVE = "live"
    HALFTIME = "halftime"
    ENDED = "ended"
    OTHER = "other"

    @property
    def is_live(self) -> bool:
        return self in (MatchState.LIVE, MatchState.HALFTIME)


class TransitionKind(str, Enum):
    KICKOFF = "kickoff"
    HALFTIME = "halftime"
    FINISH = "finish"
    GOAL = "goal"


class SourceKind(str, Enum):
    """Where a batch of fixtures came from."""
    LIVE = "live"
    LEAGUE = "league"
    DATE = "date"
    CACHE = "cache"

    @property
    def priority(self) -> int:
        return {
            SourceKind.LIVE: 3,
            SourceKind.LEAGUE: 2,
            SourceKind.DATE: 1,
            SourceKind.CACHE: 0,
        }[self]


class Urgency(str, Enum):
    """Refresh urgency of a view, most urgent first."""
    LIVE = "live"
    IMMINENT = "imminent"
    SOON = "soon"
    TODAY = "today"
    OTHER_DAY = "other_day"
