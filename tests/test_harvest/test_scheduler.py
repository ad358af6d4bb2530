"""Tests for HarvestScheduler."""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from litharvest.harvest.scheduler import (
    DUE_CHECK_JOB_ID,
    HarvestScheduler,
    job_id,
    parse_cron,
)
from litharvest.harvest.schemas import HarvestRun, SourceStatus


@pytest.fixture
def controller() -> MagicMock:
    controller = MagicMock()
    controller.run = AsyncMock(
        side_effect=lambda source: HarvestRun(id=f"run-{source.id}", source_id=source.id)
    )
    return controller


@pytest.fixture
def scheduler(store, controller) -> HarvestScheduler:
    return HarvestScheduler(store, controller)


class TestParseCron:
    """Tests for cron parsing."""

    def test_valid_expression(self):
        trigger = parse_cron("0 0 * * 0")
        assert trigger is not None

    @pytest.mark.parametrize("expression", ["", "every sunday", "61 * * * *", "* * *"])
    def test_invalid_expression(self, expression):
        with pytest.raises(ValueError):
            parse_cron(expression)


class TestTriggers:
    """Creating and cancelling per-source jobs."""

    def test_schedule_and_unschedule(self, scheduler, sample_source):
        assert scheduler.schedule_source(sample_source) is True
        assert scheduler.scheduled_source_ids() == ["src-1"]

        assert scheduler.unschedule_source("src-1") is True
        assert scheduler.unschedule_source("src-1") is False
        assert scheduler.scheduled_source_ids() == []

    def test_reschedule_replaces_existing_job(self, scheduler, sample_source):
        scheduler.schedule_source(sample_source)
        scheduler.schedule_source(replace(sample_source, harvest_frequency="0 6 * * *"))

        assert scheduler.scheduled_source_ids() == ["src-1"]

    def test_invalid_frequency_removes_previous_trigger(self, scheduler, sample_source):
        scheduler.schedule_source(sample_source)

        scheduled = scheduler.schedule_source(
            replace(sample_source, harvest_frequency="whenever")
        )

        assert scheduled is False
        assert scheduler.scheduled_source_ids() == []

    def test_paused_source_not_scheduled(self, scheduler, sample_source):
        paused = replace(sample_source, status=SourceStatus.PAUSED)
        assert scheduler.schedule_source(paused) is False
        assert scheduler.scheduled_source_ids() == []

    @pytest.mark.asyncio
    async def test_reschedule_all_from_store(self, scheduler, store, sample_source):
        store.sources["src-2"] = replace(sample_source, id="src-2", harvest_frequency="bad")
        store.sources["src-3"] = replace(sample_source, id="src-3")
        scheduler.schedule_source(replace(sample_source, id="gone"))

        count = await scheduler.reschedule_all()

        assert count == 2
        assert scheduler.scheduled_source_ids() == ["src-1", "src-3"]

    @pytest.mark.asyncio
    async def test_start_adds_due_check_and_shutdown(self, scheduler):
        count = await scheduler.start(due_check_interval=timedelta(minutes=30))

        job_ids = [job.id for job in scheduler._scheduler.get_jobs()]
        assert count == 1
        assert DUE_CHECK_JOB_ID in job_ids
        assert job_id("src-1") in job_ids
        assert scheduler.scheduled_source_ids() == ["src-1"]

        await scheduler.shutdown()
        assert not scheduler._scheduler.running


class TestSingleFlight:
    """At most one run per source at a time."""

    @pytest.mark.asyncio
    async def test_second_trigger_is_skipped(self, scheduler, controller):
        release = asyncio.Event()

        async def slow_run(source):
            await release.wait()
            return HarvestRun(id="run-1", source_id=source.id)

        controller.run.side_effect = slow_run

        first = asyncio.create_task(scheduler.run_now("src-1"))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert scheduler.is_running("src-1")
        assert await scheduler.run_now("src-1") is None

        release.set()
        run = await first

        assert run.id == "run-1"
        assert controller.run.await_count == 1
        assert not scheduler.is_running("src-1")

    @pytest.mark.asyncio
    async def test_guard_released_after_failure(self, scheduler, store, controller):
        controller.run.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await scheduler.run_now("src-1")

        assert not scheduler.is_running("src-1")
        assert store.sources["src-1"].status == SourceStatus.ERROR

    @pytest.mark.asyncio
    async def test_source_harvesting_in_another_process_is_skipped(
        self, store, controller, sample_source
    ):
        """A fresh scheduler (as the CLI builds) must not start a second run."""
        store.sources["src-1"] = replace(sample_source, status=SourceStatus.HARVESTING)
        await store.create_run_log(HarvestRun(id="daemon-run", source_id="src-1"))

        run = await HarvestScheduler(store, controller).run_now("src-1")

        assert run is None
        controller.run.assert_not_awaited()
        assert store.sources["src-1"].status == SourceStatus.HARVESTING
        assert store.runs["daemon-run"].status.value == "running"

    @pytest.mark.asyncio
    async def test_claim_taken_before_run(self, scheduler, store, controller):
        seen = []

        async def run(source):
            seen.append(store.sources[source.id].status)
            return HarvestRun(id="run-1", source_id=source.id)

        controller.run.side_effect = run

        await scheduler.run_now("src-1")

        assert seen == [SourceStatus.HARVESTING]

    @pytest.mark.asyncio
    async def test_missing_source_is_unscheduled(self, scheduler, controller, sample_source):
        scheduler.schedule_source(replace(sample_source, id="ghost"))

        assert await scheduler.run_now("ghost") is None

        controller.run.assert_not_awaited()
        assert "ghost" not in scheduler.scheduled_source_ids()

    @pytest.mark.asyncio
    async def test_paused_source_skips_scheduled_fire_but_not_manual(
        self, scheduler, store, controller, sample_source
    ):
        store.sources["src-1"] = replace(sample_source, status=SourceStatus.PAUSED)

        await scheduler._fire("src-1")
        controller.run.assert_not_awaited()

        run = await scheduler.run_now("src-1")
        assert run.source_id == "src-1"


class TestStoreChangedHook:
    """on_store_changed fires only when a run touched records."""

    @pytest.mark.asyncio
    async def test_called_after_run_that_added_records(self, store, controller):
        controller.run.side_effect = lambda source: HarvestRun(
            id="run-1", source_id=source.id, records_added=3
        )
        hook = AsyncMock()

        run = await HarvestScheduler(store, controller, on_store_changed=hook).run_now("src-1")

        hook.assert_awaited_once_with(run)

    @pytest.mark.asyncio
    async def test_deactivations_count_as_change(self, store, controller):
        controller.run.side_effect = lambda source: HarvestRun(
            id="run-1", source_id=source.id, details={"stats": {"filtered": 0, "deleted": 2}}
        )
        hook = AsyncMock()

        await HarvestScheduler(store, controller, on_store_changed=hook).run_now("src-1")

        hook.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_not_called_for_empty_run(self, store, controller):
        hook = AsyncMock()

        await HarvestScheduler(store, controller, on_store_changed=hook).run_now("src-1")

        hook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hook_failure_does_not_fail_run(self, store, controller):
        controller.run.side_effect = lambda source: HarvestRun(
            id="run-1", source_id=source.id, records_updated=1
        )
        hook = AsyncMock(side_effect=RuntimeError("cache down"))

        scheduler = HarvestScheduler(store, controller, on_store_changed=hook)
        run = await scheduler.run_now("src-1")

        assert run.id == "run-1"
        assert not scheduler.is_running("src-1")


class TestDueSources:
    """check_due_sources picks never-run and stale sources."""

    @pytest.mark.asyncio
    async def test_starts_only_due_sources(self, scheduler, store, controller, sample_source):
        now = datetime.now(timezone.utc)
        store.sources["fresh"] = replace(sample_source, id="fresh", last_harvested=now)
        store.sources["stale"] = replace(
            sample_source, id="stale", last_harvested=now - timedelta(days=30)
        )

        started = await scheduler.check_due_sources(max_age=timedelta(days=7))
        await scheduler.shutdown()

        assert sorted(started) == ["src-1", "stale"]
        ran = sorted(call.args[0].id for call in controller.run.await_args_list)
        assert ran == ["src-1", "stale"]
        controller.request_shutdown.assert_called_once()
