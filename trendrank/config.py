"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.

Every ranking tunable lives here so operators can adjust caps, half-lives
and the snapshot cadence without a deploy.
"""
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── TiDB (MySQL-protocol compatible) ───────────────────────────────────
    tidb_host: str = "tidb"
    tidb_port: int = 4000
    tidb_user: str = "root"
    tidb_password: str = ""
    tidb_database: str = "social_feed"

    # Any SQLAlchemy async URL; wins over the tidb_* fields when set.
    # e.g. postgresql+asyncpg://... or sqlite+aiosqlite:///./trendrank.db
    database_url: Optional[str] = None
    db_pool_size: int = 20
    db_max_overflow: int = 10

    @property
    def tidb_url(self) -> str:
        return (
            f"mysql+aiomysql://{self.tidb_user}:{self.tidb_password}"
            f"@{self.tidb_host}:{self.tidb_port}/{self.tidb_database}"
        )

    @property
    def db_url(self) -> str:
        return self.database_url or self.tidb_url

    # ── Engagement score cache ─────────────────────────────────────────────
    score_cache_ttl_seconds: int = 600
    boost_half_life_seconds: int = 24 * 60 * 60
    boost_weight_premium: float = 3.0
    boost_weight_verified: float = 2.0
    boost_weight_base: float = 1.0

    # ── Scoring ────────────────────────────────────────────────────────────
    popular_half_life_seconds: int = 12 * 60 * 60
    bookmark_weight: float = 0.5
    comment_weight: float = 0.5
    hashtag_base_bonus: float = 0.05
    hashtag_max_scaled_bonus: float = 0.15
    top_level_multiplier: float = 1.15
    deleted_ancestor_penalty: float = 0.85
    pin_score_premium: float = 0.5
    pin_score_verified: float = 0.3
    pin_score_base: float = 0.15

    # ── Candidate selection ────────────────────────────────────────────────
    popular_lookback_days: int = 30
    popular_fallback_lookback_days: int = 365
    popular_recent_window_hours: int = 72
    candidates_recent_take: int = 8000
    candidates_boosted_take: int = 1500
    candidates_bookmarked_take: int = 1500
    candidates_commented_take: int = 1500
    candidates_replies_take: int = 1200
    popular_warmup_take: int = 200

    # ── Featured feed ──────────────────────────────────────────────────────
    featured_lookback_days: int = 10
    featured_max_per_author: int = 1
    featured_scan_take_max: int = 500
    # Page 1 only: share of slots kept for the top of the snapshot; the rest
    # go to posts rising inside the rising window.
    featured_rising_mix_top_ratio: float = 0.7
    featured_rising_window_hours: int = 48
    featured_rising_half_life_seconds: int = 6 * 60 * 60
    featured_rising_candidates_take: int = 2000
    featured_rising_rows_take: int = 200

    # ── Hashtag trends ─────────────────────────────────────────────────────
    hashtag_lookback_days: int = 14
    hashtag_fallback_lookback_days: int = 365
    hashtag_rows_take: int = 20000
    hashtag_scan_take: int = 50000
    trending_tags_page_size: int = 8
    trending_tags_max_page_size: int = 50

    # ── Snapshot scheduler ─────────────────────────────────────────────────
    snapshot_scheduler_enabled: bool = True
    snapshot_interval_seconds: int = 600
    snapshot_boot_delay_seconds: float = 4.0
    snapshot_boot_stale_factor: float = 1.2
    snapshot_rows_take: int = 15000
    snapshot_retention_seconds: int = 60 * 60
    snapshot_insert_chunk_size: int = 1000
    batch_lock: Literal["local", "advisory"] = "local"
    batch_lock_key: int = 982_341_772

    # ── Feed pages ─────────────────────────────────────────────────────────
    feed_page_size: int = 20
    feed_max_page_size: int = 50

    # ── Observability ──────────────────────────────────────────────────────
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "trendrank"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
