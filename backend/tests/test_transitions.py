"""
Unit tests for the transition detector: state machine edges, goal detection and
display-window timers.

Run: pytest backend/tests/test_transitions.py -v
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import NOW, build_fixture
from shared.models.enums import MatchState, TransitionKind
from feed.transitions import TransitionDetector, state_transition

KICKOFF = NOW - timedelta(minutes=2)


def _kinds(events) -> list[TransitionKind]:
    return [e.kind for e in events]


# ── State machine ───────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "prev,current,expected",
    [
        (MatchState.UPCOMING, MatchState.LIVE, TransitionKind.KICKOFF),
        (MatchState.UPCOMING, MatchState.HALFTIME, TransitionKind.KICKOFF),
        (MatchState.LIVE, MatchState.HALFTIME, TransitionKind.HALFTIME),
        (MatchState.LIVE, MatchState.ENDED, TransitionKind.FINISH),
        (MatchState.HALFTIME, MatchState.ENDED, TransitionKind.FINISH),
        (MatchState.HALFTIME, MatchState.LIVE, None),
        (MatchState.ENDED, MatchState.ENDED, None),
        (MatchState.LIVE, MatchState.LIVE, None),
        (MatchState.UPCOMING, MatchState.ENDED, None),
        (MatchState.UPCOMING, MatchState.OTHER, None),
    ],
)
def test_state_transition(prev, current, expected) -> None:
    assert state_transition(prev, current) == expected


# ── Detector ────────────────────────────────────────────────────────────

class TestTransitionDetector:

    def test_first_observation_emits_nothing(self) -> None:
        detector = TransitionDetector()
        assert detector.observe([build_fixture(100, code="1H", kickoff=KICKOFF)], NOW) == []

    def test_kickoff_without_goal(self) -> None:
        detector = TransitionDetector()
        detector.observe([build_fixture(100, code="NS", kickoff=KICKOFF)], NOW)
        events = detector.observe([build_fixture(100, code="1H", elapsed=2, kickoff=KICKOFF)], NOW)
        assert _kinds(events) == [TransitionKind.KICKOFF]
        assert events[0].fixture_id == 100
        detector.close()

    def test_kickoff_fires_once(self) -> None:
        detector = TransitionDetector()
        detector.observe([build_fixture(100, code="NS", kickoff=KICKOFF)], NOW)
        first = detector.observe([build_fixture(100, code="1H", elapsed=2, kickoff=KICKOFF)], NOW)
        second = detector.observe([build_fixture(100, code="1H", elapsed=3, kickoff=KICKOFF)], NOW)
        third = detector.observe([build_fixture(100, code="1H", elapsed=4, kickoff=KICKOFF)], NOW)
        assert _kinds(first) == [TransitionKind.KICKOFF]
        assert second == [] and third == []
        detector.close()

    def test_goal_while_live(self) -> None:
        detector = TransitionDetector()
        detector.observe([build_fixture(1, code="1H", home_goals=0, away_goals=0, kickoff=KICKOFF)], NOW)
        events = detector.observe(
            [build_fixture(1, code="1H", home_goals=1, away_goals=0, kickoff=KICKOFF)], NOW
        )
        assert _kinds(events) == [TransitionKind.GOAL]
        detector.close()

    def test_score_revealed_only_at_full_time_emits_no_goal(self) -> None:
        detector = TransitionDetector()
        detector.observe([build_fixture(1, code="NS", kickoff=KICKOFF)], NOW)
        events = detector.observe(
            [build_fixture(1, code="FT", home_goals=2, away_goals=1, kickoff=KICKOFF)], NOW
        )
        assert events == []

    def test_finish_with_late_goal_emits_only_finish(self) -> None:
        detector = TransitionDetector()
        detector.observe([build_fixture(1, code="2H", home_goals=1, away_goals=1, kickoff=KICKOFF)], NOW)
        events = detector.observe(
            [build_fixture(1, code="FT", home_goals=2, away_goals=1, kickoff=KICKOFF)], NOW
        )
        assert _kinds(events) == [TransitionKind.FINISH]
        detector.close()

    def test_halftime_then_finish(self) -> None:
        detector = TransitionDetector()
        detector.observe([build_fixture(1, code="1H", kickoff=KICKOFF)], NOW)
        assert _kinds(detector.observe([build_fixture(1, code="HT", kickoff=KICKOFF)], NOW)) == [
            TransitionKind.HALFTIME
        ]
        assert detector.observe([build_fixture(1, code="2H", kickoff=KICKOFF)], NOW) == []
        assert _kinds(detector.observe([build_fixture(1, code="FT", kickoff=KICKOFF)], NOW)) == [
            TransitionKind.FINISH
        ]
        assert detector.observe([build_fixture(1, code="FT", kickoff=KICKOFF)], NOW) == []
        detector.close()

    def test_stale_live_counts_as_finish(self) -> None:
        kickoff = NOW - timedelta(hours=3, minutes=59)
        detector = TransitionDetector()
        detector.observe([build_fixture(1, code="2H", kickoff=kickoff)], NOW)
        later = NOW + timedelta(minutes=2)
        events = detector.observe([build_fixture(1, code="2H", kickoff=kickoff)], later)
        assert _kinds(events) == [TransitionKind.FINISH]
        detector.close()

    def test_compares_against_immediately_preceding_snapshot(self) -> None:
        detector = TransitionDetector()
        detector.observe([build_fixture(1, code="NS", kickoff=KICKOFF)], NOW)
        # Fixture missing from one snapshot: the next sighting has no predecessor
        detector.observe([], NOW)
        assert detector.observe([build_fixture(1, code="1H", kickoff=KICKOFF)], NOW) == []

    def test_reset_forgets_previous_snapshot(self) -> None:
        detector = TransitionDetector()
        detector.observe([build_fixture(1, code="NS", kickoff=KICKOFF)], NOW)
        detector.reset()
        assert detector.observe([build_fixture(1, code="1H", kickoff=KICKOFF)], NOW) == []


# ── Display windows ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_goal_event_expires_after_display_window() -> None:
    detector = TransitionDetector(goal_display_s=0.01, status_display_s=5.0)
    detector.observe([build_fixture(1, code="NS", home_goals=0, away_goals=0, kickoff=KICKOFF)], NOW)
    detector.observe([build_fixture(1, code="1H", home_goals=0, away_goals=0, kickoff=KICKOFF)], NOW)
    detector.observe([build_fixture(1, code="1H", home_goals=1, away_goals=0, kickoff=KICKOFF)], NOW)

    assert detector.is_active(1, TransitionKind.GOAL)
    assert detector.is_active(1, TransitionKind.KICKOFF)
    await asyncio.sleep(0.05)
    assert not detector.is_active(1, TransitionKind.GOAL)
    assert detector.is_active(1, TransitionKind.KICKOFF)
    detector.close()


@pytest.mark.asyncio
async def test_close_cancels_all_timers() -> None:
    detector = TransitionDetector()
    detector.observe([build_fixture(1, code="NS", kickoff=KICKOFF), build_fixture(2, code="1H", kickoff=KICKOFF)], NOW)
    detector.observe([build_fixture(1, code="1H", kickoff=KICKOFF), build_fixture(2, code="HT", kickoff=KICKOFF)], NOW)
    assert detector.pending_timers == 2

    detector.close()

    assert detector.pending_timers == 0
    assert detector.active_events() == []
    assert detector.observe([build_fixture(1, code="FT", kickoff=KICKOFF)], NOW) == []
