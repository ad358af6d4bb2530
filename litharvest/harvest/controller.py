"""
Harvest run controller.

Drives one source through Idle -> Running -> Completed | Failed:

1. Create a run log and mark the source as harvesting.
2. Fetch pages strictly in order (the resumption token of page N is
   needed to ask for page N+1), retrying the same page on transient
   failures.
3. Per page: skip deleted headers, parse, filter by the provider
   allow-list, enrich with bounded parallelism, fold duplicates, then
   upsert in fixed-size batches, one transaction each.
4. Persist the page's resumption token only after all its batches
   committed, so a crash resumes from the last completed page.

A "noRecordsMatch" answer finalizes the run as completed.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from litharvest.harvest.config import HarvestConfig
from litharvest.harvest.merge import apply_patch, fold_duplicates
from litharvest.harvest.parsers import ParseError, parse_record
from litharvest.harvest.protocol import ListPage, OAIPMHClient, ProtocolError
from litharvest.harvest.schemas import (
    HarvestRun,
    HarvestSource,
    NormalizedRecord,
    RunStatus,
    SourceStatus,
    UpsertAction,
)
from litharvest.harvest.store import Enricher, HarvestStore
from litharvest.net.backoff import ExponentialBackoff
from litharvest.observability.logging import bind_context, restore_context
from litharvest.observability.metrics import get_metrics

logger = structlog.get_logger(__name__)

SHUTDOWN_REASON = "shutdown requested"


class HarvestInterrupted(Exception):
    """Raised inside a run when shutdown was requested between pages."""


@dataclass
class PageOutcome:
    """What happened to the records of one page."""

    processed: int = 0
    added: int = 0
    updated: int = 0
    failed: int = 0
    filtered: int = 0
    deleted: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HarvestRunController:
    """
    Runs harvests for any number of sources; each call to run() is one run.

    The controller itself holds no per-source state, so the scheduler can
    share one instance across concurrent runs of different sources.

    Usage:
        controller = HarvestRunController(store, client, enricher)
        run = await controller.run(source)
    """

    def __init__(
        self,
        store: HarvestStore,
        client: OAIPMHClient,
        enricher: Enricher | None = None,
        config: HarvestConfig | None = None,
    ):
        self._store = store
        self._client = client
        self._config = config or HarvestConfig()
        self._enricher = enricher if self._config.enrichment_enabled else None
        self._shutdown = asyncio.Event()
        self._metrics = get_metrics()

    def request_shutdown(self) -> None:
        """Stop every active run after its in-flight page."""
        self._shutdown.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    async def run(self, source: HarvestSource) -> HarvestRun:
        """
        Harvest one source to completion (or failure).

        Never raises for harvest failures; they are recorded on the
        returned run and on the source status.
        """
        run = HarvestRun(
            id=uuid.uuid4().hex,
            source_id=source.id,
            details={
                "endpoint": source.endpoint,
                "metadata_prefix": source.metadata_prefix,
                "set_spec": source.set_spec,
            },
        )
        token = source.resumption_token
        from_date = None
        if token:
            run.details["mode"] = "resume"
        elif source.last_harvested:
            from_date = source.last_harvested.date()
            run.details["mode"] = "incremental"
            run.details["from"] = from_date.isoformat()
        else:
            run.details["mode"] = "full"

        await self._store.create_run_log(run)
        await self._store.update_source_state(
            source.id, {"status": SourceStatus.HARVESTING}
        )

        log_tokens = bind_context(source_id=source.id, run_id=run.id)
        self._metrics.harvests_in_flight.inc()
        logger.info("Harvest started", mode=run.details["mode"], endpoint=source.endpoint)
        started = time.monotonic()
        pages = 0

        try:
            while True:
                if self._shutdown.is_set():
                    raise HarvestInterrupted()

                page = await self._fetch_page(source, token, from_date)
                if page.no_records_match:
                    break

                outcome = await self._process_page(source, page)
                self._apply_outcome(run, outcome)
                pages += 1

                token = page.resumption_token
                await self._store.update_source_state(
                    source.id, {"resumption_token": token}
                )
                await self._store.update_run_log(run.id, run.counters())
                logger.info(
                    "Page harvested",
                    page=pages,
                    records=len(page.records),
                    added=outcome.added,
                    updated=outcome.updated,
                    failed=outcome.failed,
                    filtered=outcome.filtered,
                    has_more=token is not None,
                )
                if token is None:
                    break

        except HarvestInterrupted:
            run.details["pages"] = pages
            await self._finalize(run, RunStatus.FAILED, error=SHUTDOWN_REASON)
            await self._store.update_source_state(
                source.id, {"status": SourceStatus.ACTIVE}
            )
            logger.warning("Harvest interrupted by shutdown", pages=pages)

        except ProtocolError as e:
            run.details["pages"] = pages
            patch: dict[str, Any] = {"status": SourceStatus.ERROR}
            if e.code == "badResumptionToken":
                # Next run restarts from the last_harvested boundary
                patch["resumption_token"] = None
            await self._finalize(run, RunStatus.FAILED, error=str(e))
            await self._store.update_source_state(source.id, patch)
            logger.error("Harvest failed", error=str(e), oai_code=e.code, pages=pages)

        except Exception as e:
            run.details["pages"] = pages
            await self._finalize(run, RunStatus.FAILED, error=f"{type(e).__name__}: {e}")
            await self._store.update_source_state(
                source.id, {"status": SourceStatus.ERROR}
            )
            logger.exception("Harvest failed", error=str(e), pages=pages)

        else:
            run.details["pages"] = pages
            await self._finalize(run, RunStatus.COMPLETED)
            await self._store.update_source_state(
                source.id,
                {
                    "status": SourceStatus.ACTIVE,
                    "last_harvested": run.completed_at,
                    "resumption_token": None,
                },
            )
            logger.info(
                "Harvest completed",
                pages=pages,
                elapsed=round(time.monotonic() - started, 2),
                **run.counters(),
            )

        finally:
            self._metrics.harvests_in_flight.dec()
            restore_context(log_tokens)

        return run

    async def _fetch_page(
        self,
        source: HarvestSource,
        token: str | None,
        from_date,
    ) -> ListPage:
        """Fetch one page, retrying the *same* request on transient errors."""
        backoff = ExponentialBackoff(
            base_delay=self._config.page_retry_base_delay,
            max_delay=self._config.page_retry_max_delay,
        )
        for attempt in range(self._config.page_retries + 1):
            start = time.monotonic()
            try:
                page = await self._client.list_page(
                    source.endpoint,
                    source.metadata_prefix,
                    set_spec=source.set_spec,
                    from_date=from_date,
                    resumption_token=token,
                )
            except ProtocolError as e:
                if not e.transient or attempt >= self._config.page_retries:
                    raise
                delay = backoff.next_delay()
                logger.warning(
                    "Page fetch failed, retrying same page",
                    attempt=attempt + 1,
                    delay=round(delay, 2),
                    error=str(e),
                )
                await asyncio.sleep(delay)
                continue
            self._metrics.record_page_latency(time.monotonic() - start)
            return page

        raise ProtocolError("page retries exhausted")

    async def _process_page(self, source: HarvestSource, page: ListPage) -> PageOutcome:
        outcome = PageOutcome()

        deleted_ids = []
        live = []
        for raw in page.records:
            header = raw.get("header") or {}
            if header.get("status") == "deleted":
                if header.get("identifier"):
                    deleted_ids.append(header["identifier"])
                continue
            live.append(raw)

        outcome.processed = len(live)
        if deleted_ids:
            outcome.deleted = await self._store.deactivate_records(source.id, deleted_ids)

        semaphore = asyncio.Semaphore(self._config.enrichment_workers)
        prepared = await asyncio.gather(
            *(self._prepare(source, raw, semaphore) for raw in live)
        )

        accepted: list[NormalizedRecord] = []
        for result in prepared:
            if isinstance(result, ParseError):
                outcome.failed += 1
                logger.warning("Record parse failed", record=result.record_id, error=str(result))
            elif result is None:
                outcome.filtered += 1
            else:
                accepted.append(result)

        # One upsert per identity key per page
        records = fold_duplicates(accepted)
        size = self._config.batch_size
        for i in range(0, len(records), size):
            actions = await self._upsert_batch(records[i:i + size])
            outcome.added += sum(1 for a in actions if a == UpsertAction.ADDED)
            outcome.updated += sum(1 for a in actions if a == UpsertAction.UPDATED)

        self._metrics.record_records("added", outcome.added)
        self._metrics.record_records("updated", outcome.updated)
        self._metrics.record_records("failed", outcome.failed)
        self._metrics.record_records("filtered", outcome.filtered)
        self._metrics.record_records("deleted", outcome.deleted)
        return outcome

    async def _prepare(
        self,
        source: HarvestSource,
        raw: dict[str, Any],
        semaphore: asyncio.Semaphore,
    ) -> NormalizedRecord | ParseError | None:
        """Parse, filter and enrich one record. None means filtered out."""
        try:
            record = parse_record(raw, source.metadata_prefix, source_id=source.id)
        except ParseError as e:
            return e

        if not source.allows_provider(record.provider):
            return None

        if self._enricher is not None and record.doi:
            async with semaphore:
                try:
                    patch = await self._enricher.enrich(record.doi)
                except Exception as e:
                    logger.warning("Enrichment failed", doi=record.doi, error=str(e))
                    patch = None
            if patch is not None:
                record = apply_patch(record, patch)

        return record

    async def _upsert_batch(self, batch: list[NormalizedRecord]) -> list[UpsertAction]:
        """Upsert one batch; a failed transaction is retried as a whole."""
        attempts = self._config.batch_retries + 1
        for attempt in range(attempts):
            try:
                return await self._store.batch_upsert_records(batch)
            except Exception as e:
                if attempt + 1 >= attempts:
                    raise
                logger.warning(
                    "Batch upsert failed, retrying batch",
                    size=len(batch),
                    attempt=attempt + 1,
                    error=str(e),
                )
        return []

    def _apply_outcome(self, run: HarvestRun, outcome: PageOutcome) -> None:
        run.records_processed += outcome.processed
        run.records_added += outcome.added
        run.records_updated += outcome.updated
        run.records_failed += outcome.failed
        stats = run.details.setdefault("stats", {"filtered": 0, "deleted": 0})
        stats["filtered"] += outcome.filtered
        stats["deleted"] += outcome.deleted

    async def _finalize(
        self,
        run: HarvestRun,
        status: RunStatus,
        error: str | None = None,
    ) -> None:
        run.status = status
        run.completed_at = _utc_now()
        run.error_message = error
        await self._store.update_run_log(
            run.id,
            {
                "status": status,
                "completed_at": run.completed_at,
                "error_message": error,
                "details": run.details,
                **run.counters(),
            },
        )
        self._metrics.record_harvest_run(status.value)
