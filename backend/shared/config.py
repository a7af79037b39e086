"""
Central configuration for the match feed engine.
Uses pydantic-settings for env-based config with validation.
"""
from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class CacheBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


DEFAULT_EXCLUDED_TERMS: tuple[str, ...] = (
    # youth and development
    "u17", "u18", "u19", "u20", "u21", "u23", "youth", "junior", "reserve",
    "amateur", "academy", "primavera", "juvenil",
    # women's competitions
    "women", "girls", "feminine", "feminin", "femenino", "frauen", "donne",
    # indoor and alternative formats
    "futsal", "indoor", "beach",
    # lower divisions and regional competitions
    "regional", "division 3", "division 4", "third division", "fourth division",
    "2. bundesliga", "serie c", "serie d", "tercera division", "non-league",
    # exhibition
    "exhibition", "testimonial", "charity",
    # qualifying rounds
    "cup qualifying", "preliminary",
)


class Settings(BaseSettings):
    """Root settings for the feed service."""

    model_config = SettingsConfigDict(
        env_prefix="MF_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────
    environment: Environment = Environment.DEV
    debug: bool = False
    log_level: str = "INFO"
    instance_id: str = Field(default="", description="Unique pod/container ID bound to every log line")

    # ── Cache storage ────────────────────────────────────────
    cache_backend: CacheBackend = CacheBackend.MEMORY
    cache_max_entries: int = 500
    redis_url: RedisDsn = Field(default="redis://redis:6379/0")
    redis_max_connections: int = 20
    redis_key_prefix: str = "feed"

    # ── Upstream (API-Football) ──────────────────────────────
    api_football_base_url: str = "https://v3.football.api-sports.io"
    api_football_key: str = ""
    api_football_host: str = ""
    provider_request_timeout_s: float = 10.0
    default_season: int | None = Field(
        default=None,
        description="League season; derived from the target date when unset.",
    )

    # ── Views ────────────────────────────────────────────────
    feed_leagues: list[int] = Field(default_factory=lambda: [2, 3, 39, 140, 135, 78, 61])
    feed_include_live: bool = True
    timezone: str = "UTC"
    league_priority: list[int] = Field(default_factory=lambda: [2, 3, 39, 140, 135, 78, 61])

    # ── Exclusions ───────────────────────────────────────────
    excluded_league_terms: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_TERMS),
        description="Case-insensitive substrings of league or team names to hide; empty disables.",
    )
    exclude_unknown_country: bool = True

    # ── Fan-out ──────────────────────────────────────────────
    fetch_concurrency: int = 3
    fetch_batch_delay_s: float = 0.1

    # ── Classification ───────────────────────────────────────
    staleness_threshold_s: float = 4 * 3600

    # ── Refresh policy ───────────────────────────────────────
    refresh_live_s: float = 30.0
    refresh_imminent_s: float = 30.0
    refresh_soon_s: float = 45.0
    refresh_today_s: float = 60.0
    tolerance_live_s: float = 60.0
    tolerance_imminent_s: float = 120.0
    tolerance_soon_s: float = 180.0
    tolerance_today_s: float = 300.0
    tolerance_other_day_s: float = 3600.0
    imminent_window_s: float = 30 * 60
    soon_window_s: float = 2 * 3600
    refresh_jitter_factor: float = 0.0

    # ── Persisted cache TTLs ─────────────────────────────────
    cache_ttl_today_s: float = 3600.0
    cache_ttl_past_s: float = 7 * 24 * 3600.0

    # ── Transition highlighting ──────────────────────────────
    flash_goal_s: float = 2.0
    flash_status_s: float = 3.0

    # ── Observability ────────────────────────────────────────
    metrics_enabled: bool = True
    metrics_port: int = 9090

    @field_validator("fetch_concurrency")
    @classmethod
    def _positive_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("fetch_concurrency must be >= 1")
        return value

    @property
    def redis_url_str(self) -> str:
        return str(self.redis_url)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton access to validated settings."""
    return Settings()
