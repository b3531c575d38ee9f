from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine configuration, read from SPANLENS_* environment variables.

    Defaults target local development against an embedded DuckDB file.
    """

    model_config = SettingsConfigDict(env_prefix="SPANLENS_", extra="ignore")

    db_url: str = "duckdb:///data/spanlens.duckdb"

    log_level: str = "INFO"

    # Span selection: page size used while scanning the span store, and a cap on
    # how many pages a filtered scan may read (0 = no cap).
    filter_page_size: int = 100
    max_filter_pages: int = 50
    default_sample_limit: int = 100


settings = Settings()
