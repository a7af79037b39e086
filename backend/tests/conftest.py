"""Shared builders for feed tests."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Optional

import pytest

from shared.config import Settings
from shared.models.domain import Fixture, FixtureStatus, LeagueRef, Score, TeamRef

NOW = datetime(2025, 1, 1, 18, 0, tzinfo=timezone.utc)


class Clock:
    """Mutable clock for injecting into components under test."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def build_fixture(
    id: int = 100,
    code: str = "NS",
    kickoff: Optional[datetime] = None,
    league_id: int = 39,
    home_id: Optional[int] = None,
    away_id: Optional[int] = None,
    elapsed: Optional[int] = None,
    home_goals: Optional[int] = None,
    away_goals: Optional[int] = None,
    league_name: str = "Premier League",
    country: str = "England",
) -> Fixture:
    return Fixture(
        id=id,
        kickoff=kickoff or NOW,
        league=LeagueRef(id=league_id, name=league_name, country=country),
        home=TeamRef(id=home_id if home_id is not None else id * 10 + 1, name=f"Home {id}"),
        away=TeamRef(id=away_id if away_id is not None else id * 10 + 2, name=f"Away {id}"),
        status=FixtureStatus(code=code, elapsed=elapsed),
        score=Score(home=home_goals, away=away_goals),
    )


def raw_record(
    id: int = 100,
    code: str = "NS",
    date: str = "2025-01-01T20:00:00+00:00",
    league_id: int = 39,
    goals: tuple[Any, Any] = (None, None),
) -> dict[str, Any]:
    """An API-Football /fixtures record."""
    return {
        "fixture": {
            "id": id,
            "date": date,
            "timestamp": None,
            "venue": {"name": "Anfield"},
            "status": {"short": code, "elapsed": None},
        },
        "league": {"id": league_id, "name": "Premier League", "country": "England"},
        "teams": {
            "home": {"id": id * 10 + 1, "name": "Liverpool", "logo": "l.png"},
            "away": {"id": id * 10 + 2, "name": "Everton", "logo": "e.png"},
        },
        "goals": {"home": goals[0], "away": goals[1]},
        "score": {"halftime": {"home": None, "away": None}, "penalty": {"home": None, "away": None}},
    }


@pytest.fixture
def make_fixture() -> Callable[..., Fixture]:
    return build_fixture


@pytest.fixture
def settings() -> Settings:
    return Settings(
        fetch_batch_delay_s=0.0,
        feed_leagues=[39],
        league_priority=[39],
        metrics_enabled=False,
        timezone="UTC",
    )
