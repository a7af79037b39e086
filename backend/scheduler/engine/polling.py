"""
Adaptive refresh policy for feed views.
Computes the auto-refresh interval and staleness tolerance from what is on screen.
"""
from __future__ import annotations

import random
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from shared.config import Settings, get_settings
from shared.models.domain import Fixture, RefreshDecision
from shared.models.enums import StatusCategory, Urgency
from shared.utils.logging import get_logger
from shared.utils.metrics import REFRESH_INTERVAL

from feed.classifier import classify
from feed.date_filter import TimezoneLike, local_today, parse_target_date

logger = get_logger(__name__)


class RefreshPolicy:
    """
    Maps a view's fixtures to a RefreshDecision.

    Rows are checked top to bottom, first match wins:

        any fixture live                      -> live
        an upcoming fixture within 30 min     -> imminent
        an upcoming fixture within 2 h        -> soon
        target date is today                  -> today
        otherwise                             -> other_day (no auto-refresh)

    An upcoming fixture whose kickoff has just passed while it still reads NS counts
    as imminent.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        s = self._settings
        self._table: dict[Urgency, tuple[Optional[float], float]] = {
            Urgency.LIVE: (s.refresh_live_s, s.tolerance_live_s),
            Urgency.IMMINENT: (s.refresh_imminent_s, s.tolerance_imminent_s),
            Urgency.SOON: (s.refresh_soon_s, s.tolerance_soon_s),
            Urgency.TODAY: (s.refresh_today_s, s.tolerance_today_s),
            Urgency.OTHER_DAY: (None, s.tolerance_other_day_s),
        }

    def urgency(
        self,
        fixtures: Iterable[Fixture],
        target_date: date | str,
        now: datetime,
        tz: TimezoneLike = "UTC",
    ) -> Urgency:
        threshold = timedelta(seconds=self._settings.staleness_threshold_s)
        imminent = timedelta(seconds=self._settings.imminent_window_s)
        soon = timedelta(seconds=self._settings.soon_window_s)

        nearest: Optional[timedelta] = None
        for fixture in fixtures:
            category = classify(fixture, now, threshold)
            if category == StatusCategory.LIVE:
                return Urgency.LIVE
            if category == StatusCategory.UPCOMING:
                until = fixture.kickoff - now
                if nearest is None or until < nearest:
                    nearest = until

        if nearest is not None and nearest <= imminent:
            return Urgency.IMMINENT
        if nearest is not None and nearest <= soon:
            return Urgency.SOON
        if parse_target_date(target_date) == local_today(now, tz):
            return Urgency.TODAY
        return Urgency.OTHER_DAY

    def evaluate(
        self,
        fixtures: Iterable[Fixture],
        target_date: date | str,
        now: datetime,
        tz: TimezoneLike = "UTC",
    ) -> RefreshDecision:
        """
        Decide how often the view refreshes and how old a fallback slice may be.

        Returns:
            RefreshDecision; `interval_s` is None when the view should not auto-refresh.
        """
        urgency = self.urgency(fixtures, target_date, now, tz)
        interval, tolerance = self._table[urgency]

        if interval is not None:
            # Jitter keeps several views from refreshing in lockstep
            jitter_range = interval * self._settings.refresh_jitter_factor
            if jitter_range:
                interval = max(1.0, interval + random.uniform(-jitter_range, jitter_range))
            REFRESH_INTERVAL.labels(urgency=urgency.value).observe(interval)

        logger.debug(
            "refresh_evaluated",
            urgency=urgency.value,
            interval_s=interval,
            tolerance_s=tolerance,
        )
        return RefreshDecision(
            urgency=urgency,
            interval_s=interval,
            staleness_tolerance_s=tolerance,
        )
