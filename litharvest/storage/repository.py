"""
Database repository for harvest sources, run logs and harvested records.

Record upserts run one transaction per batch. Identity resolution and
the merge rule are applied in Python under row locks, so the SQL stays
plain INSERT/UPDATE and the never-degrade rule lives in one place
(litharvest.harvest.merge).
"""

import logging
from datetime import date
from typing import Any

import asyncpg

from litharvest.harvest.merge import MergeConflict, merge_records
from litharvest.harvest.schemas import (
    HarvestRun,
    HarvestSource,
    NormalizedRecord,
    RecordAuthor,
    RunStatus,
    SourceStatus,
    UpsertAction,
)
from litharvest.storage.database import Database

logger = logging.getLogger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS oai_sources (
    id                TEXT PRIMARY KEY,
    name              TEXT NOT NULL,
    endpoint          TEXT NOT NULL,
    metadata_prefix   TEXT NOT NULL DEFAULT 'oai_dc',
    set_spec          TEXT,
    filter_providers  TEXT[] NOT NULL DEFAULT '{}',
    harvest_frequency TEXT NOT NULL DEFAULT '0 0 * * 0',
    resumption_token  TEXT,
    last_harvested    TIMESTAMPTZ,
    status            TEXT NOT NULL DEFAULT 'active',
    institution_id    TEXT,
    settings          JSONB NOT NULL DEFAULT '{}',
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS harvest_logs (
    id                TEXT PRIMARY KEY,
    source_id         TEXT NOT NULL REFERENCES oai_sources(id) ON DELETE CASCADE,
    started_at        TIMESTAMPTZ NOT NULL,
    completed_at      TIMESTAMPTZ,
    status            TEXT NOT NULL,
    records_processed INTEGER NOT NULL DEFAULT 0,
    records_added     INTEGER NOT NULL DEFAULT 0,
    records_updated   INTEGER NOT NULL DEFAULT 0,
    records_failed    INTEGER NOT NULL DEFAULT 0,
    error_message     TEXT,
    details           JSONB NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_harvest_logs_source_started
    ON harvest_logs(source_id, started_at DESC);

CREATE TABLE IF NOT EXISTS harvested_records (
    id                  BIGSERIAL PRIMARY KEY,
    provider            TEXT NOT NULL,
    record_id           TEXT NOT NULL,
    title               TEXT NOT NULL DEFAULT '',
    authors             JSONB NOT NULL DEFAULT '[]',
    abstract            TEXT,
    publication_date    DATE,
    journal             TEXT,
    url                 TEXT,
    doi                 TEXT,
    keywords            TEXT[] NOT NULL DEFAULT '{}',
    is_open_access      BOOLEAN NOT NULL DEFAULT FALSE,
    additional_metadata JSONB NOT NULL DEFAULT '{}',
    source_id           TEXT REFERENCES oai_sources(id) ON DELETE SET NULL,
    is_active           BOOLEAN NOT NULL DEFAULT TRUE,
    search_vector       TSVECTOR GENERATED ALWAYS AS (
        to_tsvector('english', coalesce(title, '') || ' ' || coalesce(abstract, ''))
    ) STORED,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (provider, record_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_records_provider_doi
    ON harvested_records(provider, doi) WHERE doi IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_records_search
    ON harvested_records USING GIN(search_vector);
CREATE INDEX IF NOT EXISTS idx_records_source
    ON harvested_records(source_id);

CREATE TABLE IF NOT EXISTS user_institutions (
    user_id        TEXT NOT NULL,
    institution_id TEXT NOT NULL,
    PRIMARY KEY (user_id, institution_id)
);
"""

_INSERT_SOURCE_SQL = """
INSERT INTO oai_sources (
    id, name, endpoint, metadata_prefix, set_spec, filter_providers,
    harvest_frequency, status, institution_id, settings
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
RETURNING *
"""

_RECORD_COLUMNS = """
    id, provider, record_id, title, authors, abstract, publication_date,
    journal, url, doi, keywords, is_open_access, additional_metadata,
    source_id, is_active
"""

_SELECT_BY_DOI_SQL = f"""
SELECT {_RECORD_COLUMNS} FROM harvested_records
WHERE provider = $1 AND doi = $2
FOR UPDATE
"""

_SELECT_BY_RECORD_ID_SQL = f"""
SELECT {_RECORD_COLUMNS} FROM harvested_records
WHERE provider = $1 AND record_id = $2
FOR UPDATE
"""

_INSERT_RECORD_SQL = """
INSERT INTO harvested_records (
    provider, record_id, title, authors, abstract, publication_date,
    journal, url, doi, keywords, is_open_access, additional_metadata,
    source_id, is_active
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
"""

_UPDATE_RECORD_SQL = """
UPDATE harvested_records SET
    provider = $2,
    title = $3,
    authors = $4,
    abstract = $5,
    publication_date = $6,
    journal = $7,
    url = $8,
    doi = $9,
    keywords = $10,
    is_open_access = $11,
    additional_metadata = $12,
    source_id = $13,
    is_active = $14,
    updated_at = NOW()
WHERE id = $1
"""

_INSERT_RUN_SQL = """
INSERT INTO harvest_logs (
    id, source_id, started_at, completed_at, status, records_processed,
    records_added, records_updated, records_failed, error_message, details
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
"""

_SOURCE_STATE_FIELDS = frozenset({"status", "resumption_token", "last_harvested"})
_RUN_LOG_FIELDS = frozenset({
    "completed_at",
    "status",
    "records_processed",
    "records_added",
    "records_updated",
    "records_failed",
    "error_message",
    "details",
})


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _record_to_source(record) -> HarvestSource:
    """Convert an asyncpg Record to a HarvestSource."""
    return HarvestSource(
        id=record["id"],
        name=record["name"],
        endpoint=record["endpoint"],
        metadata_prefix=record["metadata_prefix"],
        set_spec=record["set_spec"],
        filter_providers=list(record["filter_providers"] or []),
        harvest_frequency=record["harvest_frequency"],
        resumption_token=record["resumption_token"],
        last_harvested=record["last_harvested"],
        status=SourceStatus(record["status"]),
        institution_id=record["institution_id"],
        settings=dict(record["settings"]) if record["settings"] else {},
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def _record_to_run(record) -> HarvestRun:
    return HarvestRun(
        id=record["id"],
        source_id=record["source_id"],
        started_at=record["started_at"],
        completed_at=record["completed_at"],
        status=RunStatus(record["status"]),
        records_processed=record["records_processed"],
        records_added=record["records_added"],
        records_updated=record["records_updated"],
        records_failed=record["records_failed"],
        error_message=record["error_message"],
        details=dict(record["details"]) if record["details"] else {},
    )


def _row_to_record(record) -> NormalizedRecord:
    return NormalizedRecord(
        provider=record["provider"],
        record_id=record["record_id"],
        title=record["title"],
        authors=[RecordAuthor(**a) for a in record["authors"] or []],
        abstract=record["abstract"],
        publication_date=record["publication_date"],
        journal=record["journal"],
        url=record["url"],
        doi=record["doi"],
        keywords=list(record["keywords"] or []),
        is_open_access=record["is_open_access"],
        additional_metadata=dict(record["additional_metadata"] or {}),
        source_id=record["source_id"],
        is_active=record["is_active"],
    )


def _record_values(record: NormalizedRecord) -> tuple:
    """Column values shared by insert and update, in SQL parameter order."""
    return (
        record.title,
        [a.model_dump(exclude_none=True) for a in record.authors],
        record.abstract,
        record.publication_date,
        record.journal,
        record.url,
        record.doi,
        list(record.keywords),
        record.is_open_access,
        record.additional_metadata,
        record.source_id,
        record.is_active,
    )


class HarvestRepository:
    """Persistence for sources, run logs and harvested records."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create_tables(self) -> None:
        """Create tables and indexes (idempotent)."""
        await self._db.execute(_CREATE_TABLES_SQL)
        logger.info("Harvest tables ensured")

    # -- sources -----------------------------------------------------------

    async def create_source(self, source: HarvestSource) -> HarvestSource:
        row = await self._db.fetchrow(
            _INSERT_SOURCE_SQL,
            source.id,
            source.name,
            source.endpoint,
            source.metadata_prefix,
            source.set_spec,
            list(source.filter_providers),
            source.harvest_frequency,
            _enum_value(source.status),
            source.institution_id,
            source.settings,
        )
        return _record_to_source(row)

    async def get_source(self, source_id: str) -> HarvestSource | None:
        row = await self._db.fetchrow(
            "SELECT * FROM oai_sources WHERE id = $1", source_id
        )
        return _record_to_source(row) if row else None

    async def list_active_sources(self) -> list[HarvestSource]:
        """Sources eligible for scheduling (everything except paused)."""
        rows = await self._db.fetch(
            "SELECT * FROM oai_sources WHERE status <> 'paused' ORDER BY id"
        )
        return [_record_to_source(r) for r in rows]

    async def list_sources(
        self,
        institution_id: str | None = None,
    ) -> list[HarvestSource]:
        if institution_id:
            rows = await self._db.fetch(
                "SELECT * FROM oai_sources WHERE institution_id = $1 ORDER BY id",
                institution_id,
            )
        else:
            rows = await self._db.fetch("SELECT * FROM oai_sources ORDER BY id")
        return [_record_to_source(r) for r in rows]

    async def delete_source(self, source_id: str) -> bool:
        """Delete a source and its logs. Returns True if a row was removed."""
        result = await self._db.execute(
            "DELETE FROM oai_sources WHERE id = $1", source_id
        )
        return result.endswith(" 1")

    async def update_source_state(self, source_id: str, patch: dict[str, Any]) -> None:
        """
        Update harvest state columns.

        Only status, resumption_token and last_harvested may change here;
        None is written through so a token can be cleared.
        """
        unknown = set(patch) - _SOURCE_STATE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update source fields: {sorted(unknown)}")
        if not patch:
            return

        assignments = []
        params: list[Any] = [source_id]
        for idx, (name, value) in enumerate(patch.items(), start=2):
            assignments.append(f"{name} = ${idx}")
            params.append(_enum_value(value))

        await self._db.execute(
            f"UPDATE oai_sources SET {', '.join(assignments)}, updated_at = NOW() "
            "WHERE id = $1",
            *params,
        )

    async def claim_source(self, source_id: str) -> bool:
        """
        Move a source to 'harvesting' unless another run already holds it.

        The conditional UPDATE is the cross-process single-flight lock;
        returns False when the source is missing or already harvesting.
        """
        claimed = await self._db.fetchval(
            """
            UPDATE oai_sources SET status = 'harvesting', updated_at = NOW()
            WHERE id = $1 AND status <> 'harvesting'
            RETURNING id
            """,
            source_id,
        )
        return claimed is not None

    # -- run logs ----------------------------------------------------------

    async def create_run_log(self, run: HarvestRun) -> None:
        await self._db.execute(
            _INSERT_RUN_SQL,
            run.id,
            run.source_id,
            run.started_at,
            run.completed_at,
            _enum_value(run.status),
            run.records_processed,
            run.records_added,
            run.records_updated,
            run.records_failed,
            run.error_message,
            run.details,
        )

    async def update_run_log(self, run_id: str, patch: dict[str, Any]) -> None:
        """Update a running log row. Finished rows are left untouched."""
        unknown = set(patch) - _RUN_LOG_FIELDS
        if unknown:
            raise ValueError(f"Cannot update run log fields: {sorted(unknown)}")
        if not patch:
            return

        assignments = []
        params: list[Any] = [run_id]
        for idx, (name, value) in enumerate(patch.items(), start=2):
            assignments.append(f"{name} = ${idx}")
            params.append(_enum_value(value))

        await self._db.execute(
            f"UPDATE harvest_logs SET {', '.join(assignments)} "
            "WHERE id = $1 AND status = 'running'",
            *params,
        )

    async def get_harvest_logs(
        self,
        source_id: str,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[HarvestRun], int]:
        """Paginated run logs for a source, newest first. Returns (runs, total)."""
        page = max(page, 1)
        total = await self._db.fetchval(
            "SELECT COUNT(*) FROM harvest_logs WHERE source_id = $1", source_id
        )
        rows = await self._db.fetch(
            """
            SELECT * FROM harvest_logs
            WHERE source_id = $1
            ORDER BY started_at DESC
            LIMIT $2 OFFSET $3
            """,
            source_id,
            limit,
            (page - 1) * limit,
        )
        return [_record_to_run(r) for r in rows], total or 0

    async def has_running_log(self, source_id: str) -> bool:
        return bool(await self._db.fetchval(
            "SELECT EXISTS(SELECT 1 FROM harvest_logs WHERE source_id = $1 AND status = 'running')",
            source_id,
        ))

    async def fail_stale_runs(self, source_id: str, reason: str) -> int:
        """Close run logs left 'running' by a crashed process."""
        result = await self._db.execute(
            """
            UPDATE harvest_logs SET status = 'failed', completed_at = NOW(),
                error_message = $2
            WHERE source_id = $1 AND status = 'running'
            """,
            source_id,
            reason,
        )
        return int(result.split()[-1]) if result else 0

    # -- records -----------------------------------------------------------

    async def batch_upsert_records(
        self, records: list[NormalizedRecord]
    ) -> list[UpsertAction]:
        """
        Upsert a batch in one transaction.

        If any statement fails the whole batch rolls back, so the caller
        can retry it as a unit.
        """
        if not records:
            return []

        actions: list[UpsertAction] = []
        async with self._db.transaction() as conn:
            for record in records:
                actions.append(await self._upsert_one(conn, record))
        return actions

    async def _upsert_one(
        self, conn: asyncpg.Connection, record: NormalizedRecord
    ) -> UpsertAction:
        doi_row = None
        if record.doi:
            doi_row = await conn.fetchrow(_SELECT_BY_DOI_SQL, record.provider, record.doi)
        rid_row = await conn.fetchrow(
            _SELECT_BY_RECORD_ID_SQL, record.provider, record.record_id
        )

        if doi_row is not None and rid_row is not None and doi_row["id"] != rid_row["id"]:
            conflict = MergeConflict(
                f"{record.provider}:{record.record_id} doi={record.doi} "
                f"matches rows {doi_row['id']} and {rid_row['id']}",
                doi_match=doi_row["id"],
                record_match=rid_row["id"],
            )
            logger.warning(f"Merge conflict, preferring DOI match: {conflict}")

        existing = doi_row if doi_row is not None else rid_row
        if existing is None:
            await conn.execute(
                _INSERT_RECORD_SQL,
                record.provider,
                record.record_id,
                *_record_values(record),
            )
            return UpsertAction.ADDED

        merged = merge_records(_row_to_record(existing), record)
        await conn.execute(
            _UPDATE_RECORD_SQL,
            existing["id"],
            merged.provider,
            *_record_values(merged),
        )
        return UpsertAction.UPDATED

    async def deactivate_records(self, source_id: str, record_ids: list[str]) -> int:
        """Mark records deleted upstream as inactive. Returns rows changed."""
        if not record_ids:
            return 0
        result = await self._db.execute(
            """
            UPDATE harvested_records SET is_active = FALSE, updated_at = NOW()
            WHERE source_id = $1 AND record_id = ANY($2::text[]) AND is_active = TRUE
            """,
            source_id,
            record_ids,
        )
        return int(result.split()[-1]) if result else 0

    async def get_providers(
        self, institution_id: str | None = None
    ) -> list[dict[str, Any]]:
        """Record counts per provider, optionally limited to one institution's sources."""
        base = """
            SELECT r.provider, COUNT(*) AS record_count,
                   COUNT(*) FILTER (WHERE r.is_open_access) AS open_access_count,
                   MAX(r.updated_at) AS last_updated
            FROM harvested_records r
        """
        if institution_id:
            rows = await self._db.fetch(
                base
                + """
                JOIN oai_sources s ON s.id = r.source_id
                WHERE r.is_active AND s.institution_id = $1
                GROUP BY r.provider ORDER BY record_count DESC
                """,
                institution_id,
            )
        else:
            rows = await self._db.fetch(
                base + " WHERE r.is_active GROUP BY r.provider ORDER BY record_count DESC"
            )
        return [dict(r) for r in rows]

    async def search_records(
        self,
        term: str,
        limit: int = 50,
        date_from: date | None = None,
        date_to: date | None = None,
        authors: list[str] | None = None,
        journals: list[str] | None = None,
        providers: list[str] | None = None,
        institution_id: str | None = None,
    ) -> list[NormalizedRecord]:
        """Full-text search over active harvested records, best match first."""
        conditions = ["is_active", "search_vector @@ plainto_tsquery('english', $1)"]
        params: list[Any] = [term]
        idx = 2

        if date_from:
            conditions.append(f"publication_date >= ${idx}")
            params.append(date_from)
            idx += 1
        if date_to:
            conditions.append(f"publication_date <= ${idx}")
            params.append(date_to)
            idx += 1
        if authors:
            conditions.append(
                f"EXISTS (SELECT 1 FROM jsonb_array_elements(authors) a, "
                f"unnest(${idx}::text[]) q WHERE a->>'name' ILIKE '%' || q || '%')"
            )
            params.append(authors)
            idx += 1
        if journals:
            conditions.append(
                f"EXISTS (SELECT 1 FROM unnest(${idx}::text[]) q "
                f"WHERE journal ILIKE '%' || q || '%')"
            )
            params.append(journals)
            idx += 1
        if providers:
            conditions.append(f"provider = ANY(${idx}::text[])")
            params.append(providers)
            idx += 1
        if institution_id:
            conditions.append(
                f"source_id IN (SELECT id FROM oai_sources WHERE institution_id = ${idx})"
            )
            params.append(institution_id)
            idx += 1

        sql = f"""
            SELECT {_RECORD_COLUMNS} FROM harvested_records
            WHERE {' AND '.join(conditions)}
            ORDER BY ts_rank(search_vector, plainto_tsquery('english', $1)) DESC, id
            LIMIT ${idx}
        """
        params.append(limit)
        rows = await self._db.fetch(sql, *params)
        return [_row_to_record(r) for r in rows]

    async def get_record(self, provider: str, record_id: str) -> NormalizedRecord | None:
        """One harvested record by its natural key, active or not."""
        row = await self._db.fetchrow(
            f"SELECT {_RECORD_COLUMNS} FROM harvested_records "
            "WHERE provider = $1 AND record_id = $2",
            provider,
            record_id,
        )
        return _row_to_record(row) if row else None

    async def user_institutions(self, user_id: str) -> list[str]:
        rows = await self._db.fetch(
            "SELECT institution_id FROM user_institutions WHERE user_id = $1 "
            "ORDER BY institution_id",
            user_id,
        )
        return [r["institution_id"] for r in rows]

    async def count_records(self, source_id: str | None = None) -> int:
        if source_id:
            return await self._db.fetchval(
                "SELECT COUNT(*) FROM harvested_records WHERE source_id = $1", source_id
            )
        return await self._db.fetchval("SELECT COUNT(*) FROM harvested_records")
