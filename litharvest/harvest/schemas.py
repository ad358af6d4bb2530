"""
Data models for harvesting.

HarvestSource and HarvestRun mirror their database rows and are plain
dataclasses. NormalizedRecord is the canonical harvested unit; every
schema parser outputs it and the merge engine and repository consume it.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

UNKNOWN_PROVIDER = "unknown"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SourceStatus(str, Enum):
    ACTIVE = "active"
    HARVESTING = "harvesting"
    ERROR = "error"
    PAUSED = "paused"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class UpsertAction(str, Enum):
    ADDED = "added"
    UPDATED = "updated"


@dataclass
class HarvestSource:
    """An OAI-PMH endpoint registered for recurring harvests."""

    id: str
    name: str
    endpoint: str
    metadata_prefix: str = "oai_dc"
    set_spec: str | None = None
    filter_providers: list[str] = field(default_factory=list)
    harvest_frequency: str = "0 0 * * 0"
    resumption_token: str | None = None
    last_harvested: datetime | None = None
    status: SourceStatus = SourceStatus.ACTIVE
    institution_id: str | None = None
    settings: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def allows_provider(self, provider: str) -> bool:
        """An empty allow-list accepts every provider."""
        if not self.filter_providers:
            return True
        return provider.lower() in {p.lower() for p in self.filter_providers}


@dataclass
class HarvestRun:
    """One harvest run log. A new run always gets a new row."""

    id: str
    source_id: str
    started_at: datetime = field(default_factory=_utc_now)
    completed_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    records_processed: int = 0
    records_added: int = 0
    records_updated: int = 0
    records_failed: int = 0
    error_message: str | None = None
    details: dict = field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return self.status != RunStatus.RUNNING

    @property
    def changed_store(self) -> bool:
        """True if the run added, updated or deactivated any record."""
        deleted = self.details.get("stats", {}).get("deleted", 0)
        return bool(self.records_added or self.records_updated or deleted)

    def counters(self) -> dict[str, int]:
        return {
            "records_processed": self.records_processed,
            "records_added": self.records_added,
            "records_updated": self.records_updated,
            "records_failed": self.records_failed,
        }


class RecordAuthor(BaseModel):
    """An author with optional identifier (ORCID etc.) and affiliation."""

    name: str
    identifier: str | None = None
    affiliation: str | None = None


class NormalizedRecord(BaseModel):
    """
    Canonical harvested record.

    Identity for dedup is (provider, doi) when a DOI is present and
    (provider, record_id) otherwise.
    """

    provider: str = Field(default=UNKNOWN_PROVIDER)
    record_id: str = Field(..., description="Source-native record identifier")
    title: str = ""
    authors: list[RecordAuthor] = Field(default_factory=list)
    abstract: str | None = None
    publication_date: date | None = None
    journal: str | None = None
    url: str | None = None
    doi: str | None = None
    keywords: list[str] = Field(default_factory=list)
    is_open_access: bool = False
    additional_metadata: dict[str, Any] = Field(default_factory=dict)
    source_id: str | None = None
    is_active: bool = True

    @field_validator("doi")
    @classmethod
    def normalize_doi(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v.lower() or None

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return (v or UNKNOWN_PROVIDER).strip().lower()

    @property
    def identity_key(self) -> tuple[str, str, str]:
        if self.doi:
            return (self.provider, "doi", self.doi)
        return (self.provider, "record", self.record_id)


class RecordPatch(BaseModel):
    """Partial record returned by enrichment. Absent fields never overwrite."""

    title: str | None = None
    abstract: str | None = None
    authors: list[RecordAuthor] = Field(default_factory=list)
    publication_date: date | None = None
    journal: str | None = None
    url: str | None = None
    keywords: list[str] = Field(default_factory=list)
    is_open_access: bool | None = None
    additional_metadata: dict[str, Any] = Field(default_factory=dict)
