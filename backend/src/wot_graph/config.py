"""Configuration management."""
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = Field(
        default="sqlite:///./wot_graph.db",
        description="SQLAlchemy database URL"
    )

    # Follow list backends
    follow_source_urls: list[str] = Field(
        default_factory=list,
        description="Base URLs of HTTP follow-list backends, queried concurrently per account"
    )
    follow_fetch_timeout_seconds: float = Field(default=10.0)
    follow_fetch_retries: int = Field(default=2)
    follows_cache_hours: int = Field(default=6)

    # Crawler settings
    crawl_concurrency: int = Field(default=10)
    crawl_deadline_seconds: float = Field(default=1800.0)
    crawl_depth2_followers: bool = Field(default=True)

    # Admin surface
    admin_token: str = Field(
        default="",
        description="Shared secret expected in X-Admin-Token; empty disables the check"
    )
    history_limit: int = Field(default=10)

    log_level: str = Field(default="INFO")

    # Config versioning
    config_version: str = Field(default="1.0.0")

    class Config:
        env_prefix = "WOT_GRAPH_"
        env_file = ".env"


settings = Settings()
