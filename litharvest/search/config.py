"""Configuration for federated search."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SearchConfig(BaseSettings):
    """Settings for the search aggregator, its cache and connectors."""

    model_config = SettingsConfigDict(
        env_prefix="SEARCH_",
        case_sensitive=False,
        extra="ignore",
    )

    # Cache
    cache_enabled: bool = True
    cache_ttl_seconds: int = Field(default=3600, ge=1)
    serve_stale: bool = Field(
        default=False,
        description="Serve expired entries once and emit a refresh signal",
    )
    cache_key_prefix: str = "search:"

    # Fan-out
    fetch_depth: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Results requested per connector so later pages are cacheable",
    )
    max_fetch_depth: int = Field(default=500, ge=1, le=5000)

    # Connector defaults
    connector_timeout: float = Field(default=30.0, gt=0)
    connector_max_retries: int = Field(default=3, ge=0, le=10)
    connector_backoff_seconds: float = Field(default=1.0, ge=0)

    # Which built-in connectors to register
    enabled_connectors: list[str] = Field(
        default_factory=lambda: ["pubmed", "arxiv", "harvested"]
    )
    harvested_institution_id: str | None = Field(
        default=None,
        description="Serve harvested records of this institution only, to its members",
    )
