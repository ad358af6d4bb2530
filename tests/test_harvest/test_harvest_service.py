"""Tests for HarvestService."""

from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from litharvest.harvest.protocol import ProtocolError
from litharvest.harvest.schemas import HarvestRun, SourceStatus
from litharvest.harvest.service import (
    INTERRUPTED_REASON,
    HarvestAlreadyRunning,
    HarvestService,
    InvalidEndpointError,
    SourceNotFoundError,
)


@pytest.fixture
def repo() -> AsyncMock:
    repo = AsyncMock()
    repo.create_source = AsyncMock(side_effect=lambda source: source)
    repo.delete_source = AsyncMock(return_value=True)
    repo.get_source = AsyncMock(return_value=None)
    repo.list_sources = AsyncMock(return_value=[])
    repo.has_running_log = AsyncMock(return_value=False)
    repo.fail_stale_runs = AsyncMock(return_value=0)
    return repo


@pytest.fixture
def scheduler() -> MagicMock:
    scheduler = MagicMock()
    scheduler.run_now = AsyncMock()
    return scheduler


@pytest.fixture
def service(repo, scheduler) -> HarvestService:
    return HarvestService(repo, scheduler)


class TestAddSource:
    """Tests for add_source."""

    @pytest.mark.asyncio
    async def test_defaults_applied_and_scheduled(self, service, scheduler):
        source = await service.add_source("Repo", "https://oai.example.org/request")

        assert source.metadata_prefix == "oai_dc"
        assert source.filter_providers == ["jstor"]
        assert source.harvest_frequency == "0 0 * * 0"
        assert source.status == SourceStatus.ACTIVE
        scheduler.schedule_source.assert_called_once_with(source)

    @pytest.mark.asyncio
    async def test_explicit_empty_allow_list_kept(self, service):
        source = await service.add_source(
            "Repo", "https://oai.example.org/request", filter_providers=[]
        )
        assert source.filter_providers == []

    @pytest.mark.asyncio
    async def test_invalid_frequency_rejected_before_insert(self, service, repo):
        with pytest.raises(ValueError):
            await service.add_source(
                "Repo", "https://oai.example.org/request", harvest_frequency="daily"
            )
        repo.create_source.assert_not_awaited()


class TestEndpointVerification:
    """add_source checks the endpoint with verb=Identify first."""

    @pytest.fixture
    def client(self) -> AsyncMock:
        client = AsyncMock()
        client.identify = AsyncMock(return_value={
            "repository_name": "Example Repository",
            "base_url": "https://oai.example.org/request",
            "protocol_version": "2.0",
            "earliest_datestamp": "2001-01-01",
            "granularity": "YYYY-MM-DD",
            "admin_emails": [],
        })
        return client

    @pytest.mark.asyncio
    async def test_identify_result_kept_on_source(self, repo, scheduler, client):
        service = HarvestService(repo, scheduler, client=client)

        source = await service.add_source("Repo", "https://oai.example.org/request")

        client.identify.assert_awaited_once_with("https://oai.example.org/request")
        assert source.settings == {
            "repository_name": "Example Repository",
            "granularity": "YYYY-MM-DD",
        }

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_rejected_before_insert(self, repo, scheduler, client):
        client.identify.side_effect = ProtocolError("503 Service Unavailable", status_code=503)
        service = HarvestService(repo, scheduler, client=client)

        with pytest.raises(InvalidEndpointError, match="did not answer Identify"):
            await service.add_source("Repo", "https://not-oai.example.org")

        repo.create_source.assert_not_awaited()
        scheduler.schedule_source.assert_not_called()

    @pytest.mark.asyncio
    async def test_verify_can_be_skipped(self, repo, scheduler, client):
        service = HarvestService(repo, scheduler, client=client)

        source = await service.add_source(
            "Repo", "https://oai.example.org/request", verify=False
        )

        client.identify.assert_not_awaited()
        assert source.settings == {}


class TestRemoveAndTrigger:
    """Tests for remove_source and trigger_harvest."""

    @pytest.mark.asyncio
    async def test_remove_unschedules_first(self, service, scheduler, repo):
        calls = []
        scheduler.unschedule_source.side_effect = lambda sid: calls.append("unschedule")
        repo.delete_source.side_effect = lambda sid: calls.append("delete") or True

        await service.remove_source("src-1")

        assert calls == ["unschedule", "delete"]

    @pytest.mark.asyncio
    async def test_remove_unknown(self, service, repo):
        repo.delete_source.return_value = False

        with pytest.raises(SourceNotFoundError):
            await service.remove_source("nope")

    @pytest.mark.asyncio
    async def test_trigger_unknown(self, service, scheduler):
        with pytest.raises(SourceNotFoundError):
            await service.trigger_harvest("nope")
        scheduler.run_now.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trigger_already_running(self, service, repo, scheduler, sample_source):
        repo.get_source.return_value = sample_source
        scheduler.run_now.return_value = None

        with pytest.raises(HarvestAlreadyRunning):
            await service.trigger_harvest("src-1")

    @pytest.mark.asyncio
    async def test_trigger_returns_run(self, service, repo, scheduler, sample_source):
        repo.get_source.return_value = sample_source
        scheduler.run_now.return_value = HarvestRun(id="run-1", source_id="src-1")

        run = await service.trigger_harvest("src-1")

        assert run.id == "run-1"
        scheduler.run_now.assert_awaited_once_with("src-1")


class TestRecovery:
    """Startup recovery of runs left open by a crash."""

    @pytest.mark.asyncio
    async def test_recover_interrupted_runs(self, service, repo, sample_source):
        crashed = replace(sample_source, id="crashed", status=SourceStatus.HARVESTING)
        orphaned = replace(sample_source, id="orphaned", status=SourceStatus.HARVESTING)
        repo.list_sources.return_value = [sample_source, crashed, orphaned]
        repo.has_running_log.side_effect = lambda sid: sid == "crashed"
        repo.fail_stale_runs.return_value = 1

        recovered = await service.recover_interrupted_runs()

        assert recovered == 1
        repo.fail_stale_runs.assert_awaited_once_with("crashed", INTERRUPTED_REASON)
        released = [c.args[0] for c in repo.update_source_state.await_args_list]
        assert released == ["crashed", "orphaned"]
