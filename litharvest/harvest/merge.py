"""
Dedup/merge engine.

Identity is (provider, doi) when a DOI is known and (provider, record_id)
otherwise. Merging is field by field: a non-empty incoming value
replaces the stored one, and an empty or absent incoming value never
overwrites stored data. Author and keyword lists are replaced wholesale
only when the incoming list is non-empty.

The same rule is used when upserting harvested records and when
applying enrichment patches, so a thin later record can never degrade
an enriched one.
"""

import logging
from typing import Any

from litharvest.harvest.schemas import (
    NormalizedRecord,
    RecordPatch,
    UpsertAction,
)

logger = logging.getLogger(__name__)

SCALAR_FIELDS = ("title", "abstract", "publication_date", "journal", "url", "doi")
LIST_FIELDS = ("authors", "keywords")


class MergeConflict(Exception):
    """DOI and record-id lookups resolved to two different stored records."""

    def __init__(self, message: str, doi_match: Any = None, record_match: Any = None):
        super().__init__(message)
        self.doi_match = doi_match
        self.record_match = record_match


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def merge_records(existing: NormalizedRecord, incoming: NormalizedRecord) -> NormalizedRecord:
    """
    Merge an incoming sighting into the stored record.

    Identity fields (provider, record_id) always come from the stored
    record; source_id is only filled in when the stored one is missing.
    """
    updates: dict[str, Any] = {}

    for name in SCALAR_FIELDS + LIST_FIELDS:
        value = getattr(incoming, name)
        if not _is_empty(value):
            updates[name] = value

    if incoming.additional_metadata:
        updates["additional_metadata"] = {
            **existing.additional_metadata,
            **{k: v for k, v in incoming.additional_metadata.items() if not _is_empty(v)},
        }

    updates["is_open_access"] = existing.is_open_access or incoming.is_open_access
    # A fresh sighting of a record means it is live again
    updates["is_active"] = existing.is_active or incoming.is_active

    if existing.source_id is None and incoming.source_id is not None:
        updates["source_id"] = incoming.source_id

    return existing.model_copy(update=updates)


def apply_patch(record: NormalizedRecord, patch: RecordPatch) -> NormalizedRecord:
    """Apply an enrichment patch under the same never-degrade rule."""
    updates: dict[str, Any] = {}
    for name in ("title", "abstract", "publication_date", "journal", "url", "authors", "keywords"):
        value = getattr(patch, name)
        if not _is_empty(value):
            updates[name] = value
    if patch.additional_metadata:
        updates["additional_metadata"] = {
            **record.additional_metadata,
            **{k: v for k, v in patch.additional_metadata.items() if not _is_empty(v)},
        }
    if patch.is_open_access:
        updates["is_open_access"] = True
    return record.model_copy(update=updates) if updates else record


def fold_duplicates(records: list[NormalizedRecord]) -> list[NormalizedRecord]:
    """
    Collapse records sharing an identity key, merging later into earlier.

    Keeps first-seen order so upserts for one key are applied once per
    batch instead of racing each other.
    """
    folded: dict[tuple[str, str, str], NormalizedRecord] = {}
    by_record_id: dict[tuple[str, str], tuple[str, str, str]] = {}

    for record in records:
        key = record.identity_key
        alias = by_record_id.get((record.provider, record.record_id))
        if key not in folded and alias is not None:
            key = alias
        if key in folded:
            folded[key] = merge_records(folded[key], record)
        else:
            folded[key] = record
        by_record_id[(record.provider, record.record_id)] = key

    return list(folded.values())


class RecordMerger:
    """
    In-memory identity map applying the merge rule.

    Usage:
        merger = RecordMerger()
        action = merger.upsert(record)   # UpsertAction.ADDED
        action = merger.upsert(record)   # UpsertAction.UPDATED
    """

    def __init__(self) -> None:
        self._records: dict[int, NormalizedRecord] = {}
        self._by_doi: dict[tuple[str, str], int] = {}
        self._by_record_id: dict[tuple[str, str], int] = {}
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._records)

    def resolve(self, record: NormalizedRecord) -> int | None:
        """
        Find the stored row id for a record.

        Raises:
            MergeConflict: DOI and record id point at different rows.
        """
        doi_hit = self._by_doi.get((record.provider, record.doi)) if record.doi else None
        rid_hit = self._by_record_id.get((record.provider, record.record_id))
        if doi_hit is not None and rid_hit is not None and doi_hit != rid_hit:
            raise MergeConflict(
                f"{record.provider}:{record.record_id} matches two stored records",
                doi_match=doi_hit,
                record_match=rid_hit,
            )
        return doi_hit if doi_hit is not None else rid_hit

    def upsert(self, record: NormalizedRecord) -> UpsertAction:
        try:
            row_id = self.resolve(record)
        except MergeConflict as e:
            logger.warning(f"Merge conflict, preferring DOI match: {e}")
            row_id = e.doi_match

        if row_id is None:
            row_id = self._next_id
            self._next_id += 1
            self._store(row_id, record)
            return UpsertAction.ADDED

        self._store(row_id, merge_records(self._records[row_id], record))
        self._by_record_id.setdefault((record.provider, record.record_id), row_id)
        return UpsertAction.UPDATED

    def get(self, provider: str, *, doi: str | None = None, record_id: str | None = None) -> NormalizedRecord | None:
        row_id = None
        if doi:
            row_id = self._by_doi.get((provider, doi.lower()))
        if row_id is None and record_id:
            row_id = self._by_record_id.get((provider, record_id))
        return self._records.get(row_id) if row_id is not None else None

    def deactivate(self, source_id: str, record_ids: list[str]) -> int:
        wanted = set(record_ids)
        count = 0
        for row_id, record in self._records.items():
            if record.source_id == source_id and record.record_id in wanted and record.is_active:
                self._records[row_id] = record.model_copy(update={"is_active": False})
                count += 1
        return count

    def all(self) -> list[NormalizedRecord]:
        return list(self._records.values())

    def _store(self, row_id: int, record: NormalizedRecord) -> None:
        self._records[row_id] = record
        if record.doi:
            self._by_doi[(record.provider, record.doi)] = row_id
        self._by_record_id[(record.provider, record.record_id)] = row_id
