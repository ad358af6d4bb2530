"""Harvest operations for collaborators and the CLI."""

import logging
import uuid

from litharvest.harvest.config import HarvestConfig
from litharvest.harvest.protocol import OAIPMHClient, ProtocolError
from litharvest.harvest.scheduler import HarvestScheduler, parse_cron
from litharvest.harvest.schemas import HarvestRun, HarvestSource, SourceStatus
from litharvest.storage.repository import HarvestRepository

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "process restarted during harvest"


class SourceNotFoundError(LookupError):
    """No harvest source with the given id."""


class HarvestAlreadyRunning(RuntimeError):
    """A manual trigger hit a source that is already harvesting."""


class InvalidEndpointError(Exception):
    """The endpoint did not answer verb=Identify as an OAI-PMH repository."""


class HarvestService:
    """
    Thin facade over the repository and the scheduler.

    Source removal always cancels the schedule before deleting, so a
    removed source can never fire again.
    """

    def __init__(
        self,
        repository: HarvestRepository,
        scheduler: HarvestScheduler,
        config: HarvestConfig | None = None,
        client: OAIPMHClient | None = None,
    ) -> None:
        self._repo = repository
        self._scheduler = scheduler
        self._config = config or HarvestConfig()
        self._client = client

    @property
    def repository(self) -> HarvestRepository:
        return self._repo

    async def add_source(
        self,
        name: str,
        endpoint: str,
        metadata_prefix: str | None = None,
        set_spec: str | None = None,
        filter_providers: list[str] | None = None,
        harvest_frequency: str | None = None,
        institution_id: str | None = None,
        source_id: str | None = None,
        verify: bool = True,
    ) -> HarvestSource:
        """
        Register a new source and schedule it.

        With verify (and an OAI-PMH client configured) the endpoint must
        answer verb=Identify before anything is stored; the repository
        name and datestamp granularity are kept in the source settings.

        Raises:
            ValueError: harvest_frequency is not a valid cron expression.
            InvalidEndpointError: The endpoint failed the Identify check.
        """
        frequency = harvest_frequency or self._config.default_frequency
        parse_cron(frequency)

        settings: dict = {}
        if verify and self._client is not None:
            try:
                identity = await self._client.identify(endpoint)
            except ProtocolError as e:
                raise InvalidEndpointError(
                    f"{endpoint} did not answer Identify: {e}"
                ) from e
            settings = {
                "repository_name": identity["repository_name"],
                "granularity": identity["granularity"],
            }

        source = HarvestSource(
            id=source_id or uuid.uuid4().hex,
            name=name,
            endpoint=endpoint,
            metadata_prefix=metadata_prefix or self._config.default_metadata_prefix,
            set_spec=set_spec,
            filter_providers=(
                list(filter_providers)
                if filter_providers is not None
                else list(self._config.default_filter_providers)
            ),
            harvest_frequency=frequency,
            institution_id=institution_id,
            settings=settings,
        )
        created = await self._repo.create_source(source)
        self._scheduler.schedule_source(created)
        logger.info(f"Added harvest source {created.id} ({created.endpoint})")
        return created

    async def remove_source(self, source_id: str) -> None:
        self._scheduler.unschedule_source(source_id)
        if not await self._repo.delete_source(source_id):
            raise SourceNotFoundError(source_id)
        logger.info(f"Removed harvest source {source_id}")

    async def trigger_harvest(self, source_id: str) -> HarvestRun:
        """
        Run a harvest now and return its log.

        Raises:
            SourceNotFoundError: Unknown source id.
            HarvestAlreadyRunning: The source is mid-run here or in another process.
        """
        if await self._repo.get_source(source_id) is None:
            raise SourceNotFoundError(source_id)
        run = await self._scheduler.run_now(source_id)
        if run is None:
            raise HarvestAlreadyRunning(source_id)
        return run

    async def get_harvest_logs(
        self,
        source_id: str,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[HarvestRun], int]:
        return await self._repo.get_harvest_logs(source_id, page=page, limit=limit)

    async def get_providers(self, institution_id: str | None = None) -> list[dict]:
        return await self._repo.get_providers(institution_id)

    async def recover_interrupted_runs(self) -> int:
        """
        Close run logs a crashed process left 'running' and release its sources.

        Call once at startup, before the scheduler fires anything.
        """
        recovered = 0
        for source in await self._repo.list_sources():
            if not await self._repo.has_running_log(source.id):
                if source.status == SourceStatus.HARVESTING:
                    await self._repo.update_source_state(
                        source.id, {"status": SourceStatus.ACTIVE}
                    )
                continue
            closed = await self._repo.fail_stale_runs(source.id, INTERRUPTED_REASON)
            await self._repo.update_source_state(source.id, {"status": SourceStatus.ACTIVE})
            logger.warning(f"Closed {closed} interrupted run(s) for source {source.id}")
            recovered += closed
        return recovered
