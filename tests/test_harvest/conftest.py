"""In-memory doubles for the harvest store and OAI-PMH client."""

import asyncio
from dataclasses import replace
from typing import Any

import pytest

from litharvest.harvest.merge import RecordMerger
from litharvest.harvest.protocol import ListPage
from litharvest.harvest.schemas import (
    HarvestRun,
    HarvestSource,
    NormalizedRecord,
    SourceStatus,
    UpsertAction,
)


class InMemoryStore:
    """HarvestStore backed by dicts and a RecordMerger."""

    def __init__(self, sources: list[HarvestSource] | None = None):
        self.sources = {s.id: s for s in sources or []}
        self.runs: dict[str, HarvestRun] = {}
        self.merger = RecordMerger()
        self.state_updates: list[tuple[str, dict]] = []
        self.fail_upserts = 0

    async def get_source(self, source_id: str) -> HarvestSource | None:
        return self.sources.get(source_id)

    async def list_active_sources(self) -> list[HarvestSource]:
        return [s for s in self.sources.values() if s.status != SourceStatus.PAUSED]

    async def batch_upsert_records(self, records: list[NormalizedRecord]) -> list[UpsertAction]:
        if self.fail_upserts:
            self.fail_upserts -= 1
            raise RuntimeError("deadlock detected")
        return [self.merger.upsert(r) for r in records]

    async def deactivate_records(self, source_id: str, record_ids: list[str]) -> int:
        return self.merger.deactivate(source_id, record_ids)

    async def create_run_log(self, run: HarvestRun) -> None:
        self.runs[run.id] = replace(run)

    async def update_run_log(self, run_id: str, patch: dict[str, Any]) -> None:
        stored = self.runs[run_id]
        if stored.is_finished:
            return
        self.runs[run_id] = replace(stored, **patch)

    async def update_source_state(self, source_id: str, patch: dict[str, Any]) -> None:
        self.state_updates.append((source_id, dict(patch)))
        self.sources[source_id] = replace(self.sources[source_id], **patch)

    async def claim_source(self, source_id: str) -> bool:
        source = self.sources.get(source_id)
        if source is None or source.status == SourceStatus.HARVESTING:
            return False
        self.sources[source_id] = replace(source, status=SourceStatus.HARVESTING)
        return True


class ScriptedClient:
    """
    OAI-PMH client double answering from a script.

    Each script item is a ListPage to return or an exception to raise.
    Calls are recorded as (resumption_token, from_date) tuples.
    """

    def __init__(self, script: list[ListPage | Exception]):
        self.script = list(script)
        self.calls: list[tuple[str | None, Any]] = []
        self.gate: asyncio.Event | None = None

    async def list_page(
        self,
        endpoint: str,
        metadata_prefix: str,
        set_spec: str | None = None,
        from_date=None,
        resumption_token: str | None = None,
    ) -> ListPage:
        self.calls.append((resumption_token, from_date))
        if self.gate is not None:
            await self.gate.wait()
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def dc_raw(identifier: str, url: str, title: str = "A title", doi: str | None = None) -> dict:
    identifiers = [url] + ([f"doi:{doi}"] if doi else [])
    return {
        "header": {"identifier": identifier, "datestamp": "2025-01-01"},
        "metadata": {
            "oai_dc:dc": {
                "dc:title": title,
                "dc:creator": ["Author, A"],
                "dc:identifier": identifiers,
            }
        },
    }


def mixed_page(start: int, jstor: int, proquest: int, token: str | None) -> ListPage:
    records = []
    for i in range(start, start + jstor):
        records.append(dc_raw(f"oai:x:{i}", f"https://www.jstor.org/stable/{i}"))
    for i in range(start + jstor, start + jstor + proquest):
        records.append(dc_raw(f"oai:x:{i}", f"https://www.proquest.com/docview/{i}"))
    return ListPage(records=records, resumption_token=token)


@pytest.fixture
def store(sample_source) -> InMemoryStore:
    return InMemoryStore([sample_source])


@pytest.fixture
def make_page():
    """Factory for a page of jstor then proquest DC records."""
    return mixed_page


@pytest.fixture
def make_raw():
    return dc_raw


@pytest.fixture
def scripted_client():
    """Factory for ScriptedClient."""
    return ScriptedClient
