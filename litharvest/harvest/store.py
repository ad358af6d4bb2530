"""Persistence interface consumed by the harvest controller and scheduler."""

from typing import Any, Protocol

from litharvest.harvest.schemas import (
    HarvestRun,
    HarvestSource,
    NormalizedRecord,
    RecordPatch,
    UpsertAction,
)


class HarvestStore(Protocol):
    """Implemented by HarvestRepository; tests use an in-memory double."""

    async def get_source(self, source_id: str) -> HarvestSource | None: ...

    async def list_active_sources(self) -> list[HarvestSource]: ...

    async def batch_upsert_records(
        self, records: list[NormalizedRecord]
    ) -> list[UpsertAction]: ...

    async def deactivate_records(self, source_id: str, record_ids: list[str]) -> int: ...

    async def create_run_log(self, run: HarvestRun) -> None: ...

    async def update_run_log(self, run_id: str, patch: dict[str, Any]) -> None: ...

    async def update_source_state(self, source_id: str, patch: dict[str, Any]) -> None: ...

    async def claim_source(self, source_id: str) -> bool: ...


class Enricher(Protocol):
    """Anything that can turn a DOI into a partial record."""

    async def enrich(self, doi: str) -> RecordPatch | None: ...
