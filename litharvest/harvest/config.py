"""Configuration for the harvesting pipeline."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class HarvestConfig(BaseSettings):
    """Settings for OAI-PMH harvest runs, enrichment and scheduling."""

    model_config = SettingsConfigDict(
        env_prefix="HARVEST_",
        case_sensitive=False,
        extra="ignore",
    )

    # Protocol
    request_timeout: float = Field(default=60.0, gt=0)
    default_metadata_prefix: str = "oai_dc"
    default_frequency: str = Field(
        default="0 0 * * 0",
        description="Cron expression for newly created sources (weekly)",
    )
    default_filter_providers: list[str] = Field(default_factory=lambda: ["jstor"])

    # Page handling
    batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Records per upsert transaction",
    )
    page_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Attempts to re-fetch the same page on transient failure",
    )
    page_retry_base_delay: float = Field(default=2.0, ge=0)
    page_retry_max_delay: float = Field(default=60.0, ge=0)
    batch_retries: int = Field(
        default=1,
        ge=0,
        description="Whole-batch retries after a failed upsert transaction",
    )

    # Enrichment
    enrichment_enabled: bool = True
    enrichment_workers: int = Field(default=4, ge=1, le=32)
    enrichment_cache_ttl: int = Field(
        default=7 * 24 * 3600,
        ge=7 * 24 * 3600,
        description="Crossref responses are near-immutable; at least one week",
    )

    # Scheduler
    stale_after_days: int = Field(
        default=7,
        ge=1,
        description="check_due_sources() harvests sources older than this",
    )
    shutdown_timeout: float = Field(default=120.0, gt=0)
