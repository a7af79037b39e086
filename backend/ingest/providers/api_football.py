"""
API-Football (api-sports.io v3) fixture source.
Soccer only. Authenticates with x-apisports-key, or x-rapidapi-key/x-rapidapi-host when
routed through RapidAPI.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Callable, Optional

import httpx

from shared.config import Settings, get_settings
from shared.utils.http_client import ProviderHTTPClient
from shared.utils.logging import get_logger

from ingest.providers.base import DateRange, FixtureSource

logger = get_logger(__name__)

API_FOOTBALL_BASE = "https://v3.football.api-sports.io"


def season_for(day: date) -> int:
    """European season a date belongs to: July onwards starts a new season."""
    return day.year if day.month >= 7 else day.year - 1


def _auth_headers(api_key: str, rapidapi_host: str) -> dict[str, str]:
    if not api_key:
        return {}
    if rapidapi_host:
        return {"x-rapidapi-key": api_key, "x-rapidapi-host": rapidapi_host}
    return {"x-apisports-key": api_key}


class ApiFootballSource(FixtureSource):
    """API-Football v3 `/fixtures` endpoints."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(name="api_football", clock=clock)
        self._settings = settings or get_settings()
        self._http = ProviderHTTPClient(
            provider_name="api_football",
            base_url=self._settings.api_football_base_url or API_FOOTBALL_BASE,
            headers=_auth_headers(self._settings.api_football_key, self._settings.api_football_host),
            timeout_s=self._settings.provider_request_timeout_s,
            transport=transport,
        )

    async def start(self) -> None:
        await self._http.start()

    async def close(self) -> None:
        await self._http.close()

    async def _fetch_league(self, league_id: int, date_range: DateRange) -> Any:
        season = self._settings.default_season or season_for(date_range.end)
        return await self._http.get_json(
            "/fixtures",
            params={
                "league": league_id,
                "season": season,
                "from": date_range.start.isoformat(),
                "to": date_range.end.isoformat(),
            },
            endpoint=f"league:{league_id}",
        )

    async def _fetch_date(self, day: date) -> Any:
        return await self._http.get_json(
            "/fixtures",
            params={"date": day.isoformat()},
            endpoint="date",
        )

    async def _fetch_live(self) -> Any:
        return await self._http.get_json(
            "/fixtures",
            params={"live": "all"},
            endpoint="live",
        )
