"""
Transition detection between consecutive snapshots.

States per fixture: UPCOMING, LIVE, HALFTIME, ENDED, OTHER.

    UPCOMING -> LIVE | HALFTIME   kickoff
    LIVE -> HALFTIME              halftime
    LIVE | HALFTIME -> ENDED      finish
    ENDED -> ENDED                nothing

Goals are detected separately from the state machine: a score change against the
previous snapshot while the fixture is currently live emits `goal`. A score that
first differs once the fixture is already ended emits nothing.

Emitted events stay "active" for a short display window. The detector owns the
timer handles that expire them and cancels them all in `close()`.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Iterable, Optional

from shared.models.domain import Fixture, TransitionEvent
from shared.models.enums import MatchState, TransitionKind
from shared.utils.logging import get_logger
from shared.utils.metrics import TRANSITION_EVENTS

from feed.classifier import DEFAULT_STALENESS, match_state

logger = get_logger(__name__)


def state_transition(prev: MatchState, current: MatchState) -> Optional[TransitionKind]:
    if prev == MatchState.UPCOMING and current.is_live:
        return TransitionKind.KICKOFF
    if prev == MatchState.LIVE and current == MatchState.HALFTIME:
        return TransitionKind.HALFTIME
    if prev.is_live and current == MatchState.ENDED:
        return TransitionKind.FINISH
    return None


class TransitionDetector:
    """
    Diffs each snapshot against the immediately preceding one.

    Args:
        threshold: Staleness threshold used when deriving states.
        goal_display_s: How long a goal event stays active.
        status_display_s: How long kickoff/halftime/finish events stay active.
    """

    def __init__(
        self,
        threshold: timedelta = DEFAULT_STALENESS,
        goal_display_s: float = 2.0,
        status_display_s: float = 3.0,
    ) -> None:
        self._threshold = threshold
        self._goal_display_s = goal_display_s
        self._status_display_s = status_display_s
        self._states: dict[int, MatchState] = {}
        self._scores: dict[int, tuple[int, int]] = {}
        self._active: dict[tuple[int, TransitionKind], TransitionEvent] = {}
        self._timers: dict[tuple[int, TransitionKind], asyncio.TimerHandle] = {}
        self._closed = False

    def observe(self, fixtures: Iterable[Fixture], now: datetime) -> list[TransitionEvent]:
        """Compare `fixtures` with the previous snapshot, emit events, then replace it."""
        if self._closed:
            return []

        events: list[TransitionEvent] = []
        states: dict[int, MatchState] = {}
        scores: dict[int, tuple[int, int]] = {}

        for fixture in fixtures:
            state = match_state(fixture, now, self._threshold)
            score = fixture.score.as_tuple
            states[fixture.id] = state
            scores[fixture.id] = score

            prev_state = self._states.get(fixture.id)
            if prev_state is None:
                continue

            kind = state_transition(prev_state, state)
            if kind is not None:
                events.append(TransitionEvent(fixture_id=fixture.id, kind=kind, observed_at=now))

            prev_score = self._scores.get(fixture.id)
            if state.is_live and prev_score is not None and prev_score != score:
                events.append(
                    TransitionEvent(fixture_id=fixture.id, kind=TransitionKind.GOAL, observed_at=now)
                )

        self._states = states
        self._scores = scores

        for event in events:
            TRANSITION_EVENTS.labels(kind=event.kind.value).inc()
            logger.info("transition_detected", fixture_id=event.fixture_id, kind=event.kind.value)
            self._activate(event)
        return events

    # ── Active events ───────────────────────────────────────────────────
    def _activate(self, event: TransitionEvent) -> None:
        key = (event.fixture_id, event.kind)
        self._active[key] = event
        old = self._timers.pop(key, None)
        if old is not None:
            old.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside a loop nothing can expire the event; callers clear it via close().
            return
        duration = self._goal_display_s if event.kind == TransitionKind.GOAL else self._status_display_s
        self._timers[key] = loop.call_later(duration, self._expire, key)

    def _expire(self, key: tuple[int, TransitionKind]) -> None:
        self._timers.pop(key, None)
        self._active.pop(key, None)

    def active_events(self) -> list[TransitionEvent]:
        """Events still inside their display window."""
        return list(self._active.values())

    def is_active(self, fixture_id: int, kind: TransitionKind) -> bool:
        return (fixture_id, kind) in self._active

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    def close(self) -> None:
        """Cancel every display timer and forget all state."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._active.clear()
        self._states.clear()
        self._scores.clear()
        self._closed = True

    def reset(self) -> None:
        """Forget the previous snapshot, e.g. when a view switches date."""
        self._states.clear()
        self._scores.clear()
