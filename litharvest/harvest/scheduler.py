"""
Recurring harvest scheduling.

One APScheduler cron job per active source, keyed by source id. Runs are
single-flight per source: if a run is still going when its trigger
fires, the fire is skipped and logged rather than queued. Inside one
process the in-flight map guards this; across processes the store's
conditional claim on the source status does. Different
sources harvest concurrently.

Every fire re-reads the source from the store so the run picks up the
latest resumption token and last_harvested timestamp, which keeps
re-harvests incremental.

A run that changed the local store calls on_store_changed afterwards;
the CLI uses it to drop cached search results for harvested records.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from litharvest.harvest.config import HarvestConfig
from litharvest.harvest.controller import HarvestRunController
from litharvest.harvest.schemas import HarvestRun, HarvestSource, SourceStatus
from litharvest.harvest.store import HarvestStore
from litharvest.observability.metrics import get_metrics

logger = structlog.get_logger(__name__)

DUE_CHECK_JOB_ID = "harvest:due-check"


def job_id(source_id: str) -> str:
    return f"harvest:{source_id}"


def parse_cron(expression: str) -> CronTrigger:
    """
    Build a trigger from a five-field crontab expression.

    Raises:
        ValueError: The expression is not a valid crontab line.
    """
    return CronTrigger.from_crontab(expression, timezone=timezone.utc)


class HarvestScheduler:
    """
    Owns per-source triggers and the single-flight guard.

    Usage:
        scheduler = HarvestScheduler(store, controller)
        await scheduler.start()
        ...
        await scheduler.shutdown()
    """

    def __init__(
        self,
        store: HarvestStore,
        controller: HarvestRunController,
        config: HarvestConfig | None = None,
        scheduler: AsyncIOScheduler | None = None,
        on_store_changed: Callable[[HarvestRun], Awaitable[None]] | None = None,
    ):
        self._store = store
        self._controller = controller
        self._config = config or HarvestConfig()
        self._on_store_changed = on_store_changed
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._in_flight: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._metrics = get_metrics()

    async def start(self, due_check_interval: timedelta | None = timedelta(hours=1)) -> int:
        """Schedule every active source and start firing. Returns jobs scheduled."""
        count = await self.reschedule_all()
        if due_check_interval is not None:
            self._scheduler.add_job(
                self.check_due_sources,
                trigger=IntervalTrigger(seconds=due_check_interval.total_seconds()),
                id=DUE_CHECK_JOB_ID,
                name="Harvest stale sources",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info("Harvest scheduler started", sources=count)
        return count

    def schedule_source(self, source: HarvestSource) -> bool:
        """
        Create or replace the trigger for a source.

        Paused sources and invalid cron expressions are not scheduled;
        any previous trigger for the source is removed in that case.
        """
        if source.status == SourceStatus.PAUSED:
            self.unschedule_source(source.id)
            logger.info("Source paused, not scheduling", source_id=source.id)
            return False

        try:
            trigger = parse_cron(source.harvest_frequency)
        except ValueError as e:
            self.unschedule_source(source.id)
            logger.error(
                "Invalid harvest frequency, source not scheduled",
                source_id=source.id,
                frequency=source.harvest_frequency,
                error=str(e),
            )
            return False

        self._scheduler.add_job(
            self._fire,
            trigger=trigger,
            args=[source.id],
            id=job_id(source.id),
            name=f"Harvest {source.name}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        logger.info(
            "Source scheduled",
            source_id=source.id,
            frequency=source.harvest_frequency,
        )
        return True

    def unschedule_source(self, source_id: str) -> bool:
        """Cancel a source's trigger. Returns False if none existed."""
        try:
            self._scheduler.remove_job(job_id(source_id))
        except JobLookupError:
            return False
        logger.info("Source unscheduled", source_id=source_id)
        return True

    async def reschedule_all(self) -> int:
        """Drop every source trigger and rebuild from the store."""
        for job in self._scheduler.get_jobs():
            if job.id != DUE_CHECK_JOB_ID:
                self._scheduler.remove_job(job.id)
        sources = await self._store.list_active_sources()
        return sum(1 for source in sources if self.schedule_source(source))

    def scheduled_source_ids(self) -> list[str]:
        prefix = job_id("")
        return sorted(
            job.id[len(prefix):]
            for job in self._scheduler.get_jobs()
            if job.id.startswith(prefix) and job.id != DUE_CHECK_JOB_ID
        )

    def is_running(self, source_id: str) -> bool:
        return source_id in self._in_flight

    async def run_now(self, source_id: str) -> HarvestRun | None:
        """Harvest immediately unless a run is already active. None when skipped."""
        return await self._run_guarded(source_id, trigger="manual")

    async def check_due_sources(self, max_age: timedelta | None = None) -> list[str]:
        """
        Start runs for sources never harvested or older than max_age.

        Runs start in the background; returns the ids that were started.
        """
        max_age = max_age or timedelta(days=self._config.stale_after_days)
        cutoff = datetime.now(timezone.utc) - max_age
        started = []
        for source in await self._store.list_active_sources():
            if source.id in self._in_flight:
                continue
            if source.last_harvested is not None and source.last_harvested >= cutoff:
                continue
            task = asyncio.create_task(
                self._run_guarded(source.id, trigger="due"),
                name=f"harvest_due_{source.id}",
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            started.append(source.id)
        if started:
            logger.info("Started due harvests", sources=started)
        return started

    async def shutdown(self) -> None:
        """
        Stop triggers and let in-flight runs finish their current page.

        Interrupted runs persist their token and are logged as failed
        with a shutdown reason, so the next start resumes them.
        """
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._controller.request_shutdown()

        tasks = list(self._in_flight.values()) + list(self._background)
        if tasks:
            logger.info("Waiting for in-flight harvests", count=len(tasks))
            _, pending = await asyncio.wait(
                tasks, timeout=self._config.shutdown_timeout
            )
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Harvests did not stop in time", count=len(pending))
        logger.info("Harvest scheduler stopped")

    async def _fire(self, source_id: str) -> None:
        await self._run_guarded(source_id, trigger="schedule")

    async def _run_guarded(self, source_id: str, trigger: str) -> HarvestRun | None:
        # Check-and-claim has no await in between, so it is atomic on the loop
        if source_id in self._in_flight:
            logger.warning(
                "Harvest already running, skipping",
                source_id=source_id,
                trigger=trigger,
            )
            self._metrics.record_harvest_run("skipped")
            return None
        current = asyncio.current_task()
        if current is not None:
            self._in_flight[source_id] = current

        try:
            source = await self._store.get_source(source_id)
            if source is None:
                logger.warning("Scheduled source no longer exists", source_id=source_id)
                self.unschedule_source(source_id)
                return None
            if source.status == SourceStatus.PAUSED and trigger != "manual":
                logger.info("Source paused, skipping", source_id=source_id)
                return None
            # Another process (CLI or a second daemon) may hold the source
            if not await self._store.claim_source(source_id):
                logger.warning(
                    "Source already harvesting elsewhere, skipping",
                    source_id=source_id,
                    trigger=trigger,
                )
                self._metrics.record_harvest_run("skipped")
                return None
            try:
                run = await self._controller.run(source)
            except Exception:
                await self._store.update_source_state(
                    source_id, {"status": SourceStatus.ERROR}
                )
                raise
        finally:
            self._in_flight.pop(source_id, None)

        if run.changed_store and self._on_store_changed is not None:
            try:
                await self._on_store_changed(run)
            except Exception as e:
                logger.warning(
                    "Post-harvest hook failed",
                    source_id=source_id,
                    run_id=run.id,
                    error=str(e),
                )
        return run
