"""
Normalization layer for upstream fixture payloads.
Turns raw API-Football records into canonical `Fixture` models. This is the only
place that knows about the raw shapes: the bare-list vs {"response": [...]} envelope
and the nested fixture/league/teams/goals/score layout.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from shared.errors import MalformedResponse
from shared.models.domain import (
    Fixture,
    FixtureStatus,
    Goals,
    LeagueRef,
    ParseError,
    Score,
    TeamRef,
)
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class RecordError(ValueError):
    """A single raw record is unusable."""


def unwrap_payload(data: Any, endpoint: str = "unknown") -> list[Any]:
    """Accept a bare list or {"response": list}; anything else is malformed."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("response"), list):
        return data["response"]
    raise MalformedResponse(
        f"Unexpected payload shape from {endpoint}: {type(data).__name__}",
        source=endpoint,
    )


def _safe_int(val: Any) -> Optional[int]:
    if val is None or isinstance(val, bool):
        return None
    try:
        return int(val)
    except (ValueError, TypeError, OverflowError):
        return None


def _required_int(val: Any, field: str) -> int:
    out = _safe_int(val)
    if out is None:
        raise RecordError(f"missing or non-numeric {field}")
    return out


def _parse_kickoff(fixture: dict[str, Any]) -> datetime:
    raw_date = fixture.get("date")
    if isinstance(raw_date, str) and raw_date:
        try:
            parsed = datetime.fromisoformat(raw_date.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        except (ValueError, OverflowError) as exc:
            raise RecordError(f"unparseable kickoff {raw_date!r}") from exc
    ts = _safe_int(fixture.get("timestamp"))
    if ts is not None:
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise RecordError(f"kickoff timestamp out of range: {ts}") from exc
    raise RecordError("missing kickoff")


def _block(raw: Any) -> dict[str, Any]:
    return raw if isinstance(raw, dict) else {}


def _goals(raw: Any) -> Goals:
    if not isinstance(raw, dict):
        return Goals()
    return Goals(home=_safe_int(raw.get("home")), away=_safe_int(raw.get("away")))


def _team(raw: Any, side: str) -> TeamRef:
    if not isinstance(raw, dict):
        raise RecordError(f"missing {side} team")
    return TeamRef(
        id=_required_int(raw.get("id"), f"{side} team id"),
        name=str(raw.get("name") or ""),
        logo=raw.get("logo") or None,
    )


def normalize_fixture(raw: Any) -> Fixture:
    """
    Build a Fixture from one API-Football record.

    Raises:
        RecordError: If a required part (id, kickoff, league, teams, status) is missing.
    """
    if not isinstance(raw, dict):
        raise RecordError(f"record is {type(raw).__name__}, not an object")

    fixture = raw.get("fixture")
    if not isinstance(fixture, dict):
        raise RecordError("missing fixture block")
    league = raw.get("league")
    if not isinstance(league, dict):
        raise RecordError("missing league block")
    teams = _block(raw.get("teams"))
    status = _block(fixture.get("status"))
    code = str(status.get("short") or "").strip().upper()
    if not code:
        raise RecordError("missing status code")

    goals = _block(raw.get("goals"))
    score = _block(raw.get("score"))
    penalty = _goals(score.get("penalty"))
    venue = _block(fixture.get("venue"))

    try:
        return Fixture(
            id=_required_int(fixture.get("id"), "fixture id"),
            kickoff=_parse_kickoff(fixture),
            venue=venue.get("name") or None,
            league=LeagueRef(
                id=_required_int(league.get("id"), "league id"),
                name=str(league.get("name") or ""),
                country=str(league.get("country") or ""),
                logo=league.get("logo") or None,
            ),
            home=_team(teams.get("home"), "home"),
            away=_team(teams.get("away"), "away"),
            status=FixtureStatus(code=code, elapsed=_safe_int(status.get("elapsed"))),
            score=Score(
                home=_safe_int(goals.get("home")),
                away=_safe_int(goals.get("away")),
                halftime=_goals(score.get("halftime")),
                fulltime=_goals(score.get("fulltime")),
                penalty=penalty if penalty.home is not None or penalty.away is not None else None,
            ),
        )
    except ValidationError as exc:
        raise RecordError(str(exc)) from exc


def normalize_records(
    records: list[Any], endpoint: str = "unknown"
) -> tuple[list[Fixture], list[ParseError]]:
    """Normalize every record, collecting the bad ones instead of failing the batch."""
    fixtures: list[Fixture] = []
    errors: list[ParseError] = []
    for raw in records:
        try:
            fixtures.append(normalize_fixture(raw))
        except RecordError as exc:
            raw_id = None
            if isinstance(raw, dict) and isinstance(raw.get("fixture"), dict):
                fid = raw["fixture"].get("id")
                raw_id = str(fid) if fid is not None else None
            errors.append(ParseError(raw_id=raw_id, reason=str(exc)))
            logger.warning(
                "fixture_record_skipped",
                endpoint=endpoint,
                raw_id=raw_id,
                reason=str(exc),
            )
    return fixtures, errors
