from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )

    db_path: Path = Field(default=Path("data/trip-sync.db"), validation_alias="DB_PATH")
    data_dir: Path = Field(default=Path("data"), validation_alias="DATA_DIR")
    user_agent: str = Field(default="trip-sync/0.1", validation_alias="USER_AGENT")

    firecrawl_api_key: str | None = Field(
        default=None, validation_alias="FIRECRAWL_API_KEY"
    )
    firecrawl_base_url: str = Field(
        default="https://api.firecrawl.dev", validation_alias="FIRECRAWL_BASE_URL"
    )
    extract_poll_interval_seconds: float = Field(
        default=1.5, validation_alias="EXTRACT_POLL_INTERVAL_SECONDS"
    )
    extract_max_poll_attempts: int = Field(
        default=40, ge=1, validation_alias="EXTRACT_MAX_POLL_ATTEMPTS"
    )

    geocoding_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "GOOGLE_MAPS_GEOCODING_KEY", "GOOGLE_MAPS_SERVER_KEY"
        ),
    )
    routes_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("GOOGLE_MAPS_ROUTES_KEY", "GOOGLE_MAPS_SERVER_KEY"),
    )

    sfgov_app_token: str | None = Field(default=None, validation_alias="SFGOV_APP_TOKEN")

    spot_source_urls: str = Field(default="", validation_alias="SPOT_SOURCE_URLS")
    trust_proxy_ip_headers: bool = Field(
        default=False, validation_alias="TRUST_PROXY_IP_HEADERS"
    )

    missed_sync_threshold: int = Field(
        default=2, ge=1, validation_alias="MISSED_SYNC_THRESHOLD"
    )
    rss_initial_items: int = Field(default=1, ge=1, validation_alias="RSS_INITIAL_ITEMS")
    rss_max_items_per_sync: int = Field(
        default=3, ge=1, validation_alias="RSS_MAX_ITEMS_PER_SYNC"
    )
    rss_state_max_items: int = Field(
        default=500, ge=1, validation_alias="RSS_STATE_MAX_ITEMS"
    )

    display_timezone: str = Field(
        default="America/Los_Angeles", validation_alias="DISPLAY_TIMEZONE"
    )
    rate_limit_max_keys: int = Field(
        default=10_000, ge=1, validation_alias="RATE_LIMIT_MAX_KEYS"
    )
    route_cache_max_entries: int = Field(
        default=4000, ge=1, validation_alias="ROUTE_CACHE_MAX_ENTRIES"
    )

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    def spot_source_url_list(self) -> list[str]:
        return [part.strip() for part in self.spot_source_urls.split(",") if part.strip()]
