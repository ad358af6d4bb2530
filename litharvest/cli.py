"""
Command-line interface for litharvest.

Usage:
    litharvest init-db                      # Create tables
    litharvest add-source NAME ENDPOINT     # Register and schedule an OAI-PMH source
    litharvest harvest SOURCE_ID            # Run one harvest now
    litharvest scheduler                    # Run scheduled harvests until SIGTERM
    litharvest search "crispr off-target"   # Federated search
    litharvest record jstor:oai:x:1         # One harvested record
"""

import asyncio
import signal
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import click

from litharvest.config.settings import get_settings
from litharvest.observability.logging import setup_logging
from litharvest.observability.metrics import get_metrics


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """litharvest - OAI-PMH harvesting and federated literature search."""
    if debug:
        import os
        os.environ["LOG_LEVEL"] = "DEBUG"
        get_settings.cache_clear()

    setup_logging()


@asynccontextmanager
async def harvest_stack():
    """
    Build the harvest object graph once and tear it down afterwards.

    Yields (service, scheduler, cache).
    """
    from litharvest.harvest.config import HarvestConfig
    from litharvest.harvest.controller import HarvestRunController
    from litharvest.harvest.enrichment import CrossrefEnricher
    from litharvest.harvest.protocol import OAIPMHClient
    from litharvest.harvest.scheduler import HarvestScheduler
    from litharvest.harvest.service import HarvestService
    from litharvest.search.cache import SearchCache
    from litharvest.search.config import SearchConfig
    from litharvest.storage.cache import MemoryCache, build_cache
    from litharvest.storage.database import Database
    from litharvest.storage.repository import HarvestRepository

    settings = get_settings()
    config = HarvestConfig()

    db = Database()
    await db.connect()
    cache = build_cache(settings)
    if isinstance(cache, MemoryCache):
        await cache.start()

    try:
        repository = HarvestRepository(db)
        async with OAIPMHClient(
            timeout=config.request_timeout,
            user_agent=settings.crossref_user_agent,
        ) as client, CrossrefEnricher(
            cache,
            cache_ttl=config.enrichment_cache_ttl,
            settings=settings,
        ) as enricher:
            search_cache = SearchCache(cache, prefix=SearchConfig().cache_key_prefix)

            async def drop_harvested_results(run):
                await search_cache.invalidate_databases(["harvested"])

            controller = HarvestRunController(repository, client, enricher, config)
            scheduler = HarvestScheduler(
                repository, controller, config, on_store_changed=drop_harvested_results
            )
            service = HarvestService(repository, scheduler, config, client=client)
            yield service, scheduler, cache
    finally:
        await cache.close()
        await db.close()


@main.command("init-db")
def init_db() -> None:
    """Initialize the database schema."""
    from litharvest.storage.database import Database
    from litharvest.storage.repository import HarvestRepository

    async def run():
        db = Database()
        await db.connect()

        repo = HarvestRepository(db)
        await repo.create_tables()

        click.echo("Database initialized successfully")

        await db.close()

    asyncio.run(run())


@main.command("add-source")
@click.argument("name")
@click.argument("endpoint")
@click.option("--prefix", "metadata_prefix", default=None, help="OAI metadataPrefix (default oai_dc)")
@click.option("--set", "set_spec", default=None, help="OAI setSpec")
@click.option("--provider", multiple=True, help="Allowed provider (can repeat)")
@click.option("--all-providers", is_flag=True, help="Accept every provider")
@click.option("--frequency", default=None, help="Cron expression (default weekly)")
@click.option("--institution", default=None, help="Owning institution id")
@click.option("--no-verify", is_flag=True, help="Skip the Identify check on the endpoint")
def add_source(
    name: str,
    endpoint: str,
    metadata_prefix: str | None,
    set_spec: str | None,
    provider: tuple[str, ...],
    all_providers: bool,
    frequency: str | None,
    institution: str | None,
    no_verify: bool,
) -> None:
    """Register an OAI-PMH source after checking it answers Identify."""
    from litharvest.harvest.service import InvalidEndpointError

    if all_providers:
        providers: list[str] | None = []
    else:
        providers = list(provider) if provider else None

    async def run():
        async with harvest_stack() as (service, _, _):
            try:
                source = await service.add_source(
                    name=name,
                    endpoint=endpoint,
                    metadata_prefix=metadata_prefix,
                    set_spec=set_spec,
                    filter_providers=providers,
                    harvest_frequency=frequency,
                    institution_id=institution,
                    verify=not no_verify,
                )
            except ValueError as e:
                raise click.BadParameter(str(e), param_hint="--frequency")
            except InvalidEndpointError as e:
                raise click.BadParameter(str(e), param_hint="ENDPOINT")

            click.echo(f"Added source {source.id}")
            if source.settings.get("repository_name"):
                click.echo(f"  Repository: {source.settings['repository_name']}")
            click.echo(f"  Endpoint:  {source.endpoint}")
            click.echo(f"  Prefix:    {source.metadata_prefix}")
            click.echo(f"  Providers: {', '.join(source.filter_providers) or 'all'}")
            click.echo(f"  Schedule:  {source.harvest_frequency}")

    asyncio.run(run())


@main.command("remove-source")
@click.argument("source_id")
def remove_source(source_id: str) -> None:
    """Delete a source and cancel its schedule."""
    from litharvest.harvest.service import SourceNotFoundError

    async def run():
        async with harvest_stack() as (service, _, _):
            try:
                await service.remove_source(source_id)
            except SourceNotFoundError:
                click.echo(click.style(f"Source {source_id} not found", fg="red"))
                sys.exit(1)
            click.echo(f"Removed source {source_id}")

    asyncio.run(run())


@main.command()
@click.argument("source_id")
def harvest(source_id: str) -> None:
    """Run one harvest for a source now."""
    from litharvest.harvest.schemas import RunStatus
    from litharvest.harvest.service import HarvestAlreadyRunning, SourceNotFoundError

    async def run():
        async with harvest_stack() as (service, _, _):
            try:
                result = await service.trigger_harvest(source_id)
            except SourceNotFoundError:
                click.echo(click.style(f"Source {source_id} not found", fg="red"))
                sys.exit(1)
            except HarvestAlreadyRunning:
                click.echo(click.style(f"Source {source_id} is already harvesting", fg="yellow"))
                sys.exit(1)

            color = "green" if result.status == RunStatus.COMPLETED else "red"
            click.echo(click.style(f"Run {result.id}: {result.status.value}", fg=color))
            for name, value in result.counters().items():
                click.echo(f"  {name}: {value}")
            if result.error_message:
                click.echo(f"  error: {result.error_message}")
            if result.status != RunStatus.COMPLETED:
                sys.exit(1)

    asyncio.run(run())


@main.command()
@click.argument("source_id")
@click.option("--page", default=1, help="Page number")
@click.option("--limit", default=20, help="Runs per page")
def logs(source_id: str, page: int, limit: int) -> None:
    """Show harvest run logs for a source, newest first."""
    from litharvest.storage.database import Database
    from litharvest.storage.repository import HarvestRepository

    async def run():
        db = Database()
        await db.connect()
        try:
            runs, total = await HarvestRepository(db).get_harvest_logs(
                source_id, page=page, limit=limit
            )
        finally:
            await db.close()

        if not runs:
            click.echo("No harvest runs found.")
            return

        click.echo(f"\n{'Started':<20} {'Status':<10} {'Proc':>6} {'Add':>6} {'Upd':>6} {'Fail':>6}")
        click.echo("-" * 60)
        for r in runs:
            started = r.started_at.strftime("%Y-%m-%d %H:%M:%S") if r.started_at else "-"
            click.echo(
                f"{started:<20} {r.status.value:<10} {r.records_processed:>6} "
                f"{r.records_added:>6} {r.records_updated:>6} {r.records_failed:>6}"
            )
            if r.error_message:
                click.echo(f"    {r.error_message}")
        click.echo("-" * 60)
        click.echo(f"Page {page}, {len(runs)} of {total} runs")

    asyncio.run(run())


@main.command()
@click.option("--institution", default=None, help="Limit to one institution's sources")
def providers(institution: str | None) -> None:
    """List providers with harvested record counts."""
    from litharvest.storage.database import Database
    from litharvest.storage.repository import HarvestRepository

    async def run():
        db = Database()
        await db.connect()
        try:
            rows = await HarvestRepository(db).get_providers(institution)
        finally:
            await db.close()

        if not rows:
            click.echo("No harvested records yet.")
            return
        for row in rows:
            click.echo(f"  {row['provider']:<20} {row['record_count']:>8}")

    asyncio.run(run())


@main.command()
@click.option("--metrics/--no-metrics", default=True, help="Enable metrics server")
@click.option("--metrics-port", default=None, type=int, help="Metrics server port")
@click.option("--due-check/--no-due-check", default=True, help="Hourly catch-up of overdue sources")
def scheduler(metrics: bool, metrics_port: int | None, due_check: bool) -> None:
    """Run scheduled harvests until SIGINT/SIGTERM."""
    import structlog

    logger = structlog.get_logger()

    async def run():
        if metrics:
            get_metrics().start_server(port=metrics_port)

        async with harvest_stack() as (service, harvest_scheduler, _):
            recovered = await service.recover_interrupted_runs()
            if recovered:
                logger.warning("Recovered interrupted runs", count=recovered)

            stop = asyncio.Event()
            loop = asyncio.get_event_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, stop.set)

            scheduled = await harvest_scheduler.start(
                due_check_interval=timedelta(hours=1) if due_check else None
            )
            logger.info("Scheduler running", sources=scheduled)

            await stop.wait()
            logger.info("Shutdown requested, finishing in-flight pages")
            await harvest_scheduler.shutdown()

    asyncio.run(run())


@main.command()
@click.argument("term")
@click.option("--database", multiple=True, help="Connector id to query (can repeat)")
@click.option("--author", multiple=True, help="Filter by author (can repeat)")
@click.option("--journal", multiple=True, help="Filter by journal (can repeat)")
@click.option("--from", "date_from", default=None, type=click.DateTime(formats=["%Y-%m-%d"]),
              help="Earliest publication date")
@click.option("--to", "date_to", default=None, type=click.DateTime(formats=["%Y-%m-%d"]),
              help="Latest publication date")
@click.option("--page", default=1, help="Page number")
@click.option("--limit", default=10, help="Results per page")
@click.option("--user", "user_id", default=None, help="User id for access checks")
@click.option("--format", "output_format", type=click.Choice(["text", "csv", "bibtex"]),
              default="text", help="Output format")
@click.option("--abstracts", is_flag=True, help="Include abstracts in csv/bibtex output")
@click.option("--output", "-o", type=click.File("w"), default="-",
              help="Write csv/bibtex output to a file")
def search(
    term: str,
    database: tuple[str, ...],
    author: tuple[str, ...],
    journal: tuple[str, ...],
    date_from: datetime | None,
    date_to: datetime | None,
    page: int,
    limit: int,
    user_id: str | None,
    output_format: str,
    abstracts: bool,
    output,
) -> None:
    """Search PubMed, arXiv and harvested records at once.

    Example:
        litharvest search "crispr off-target" --limit 5
        litharvest search "graph neural networks" --database arxiv --from 2022-01-01
        litharvest search "crispr" --format bibtex -o crispr.bib
    """
    from litharvest.search.cache import SearchCache
    from litharvest.search.config import SearchConfig
    from litharvest.search.export import export_results
    from litharvest.search.schemas import DateRange, Pagination, SearchFilters, SearchQuery
    from litharvest.search.service import (
        NoDatabasesAvailable,
        SearchAggregator,
        build_default_registry,
    )
    from litharvest.storage.cache import MemoryCache, build_cache
    from litharvest.storage.database import Database
    from litharvest.storage.repository import HarvestRepository

    date_range = None
    if date_from or date_to:
        date_range = DateRange(
            start=date_from.date() if date_from else None,
            end=date_to.date() if date_to else None,
        )
    query = SearchQuery(
        term=term,
        filters=SearchFilters(date_range=date_range, authors=author, journals=journal),
        pagination=Pagination(page=page, limit=limit),
    )

    async def run():
        settings = get_settings()
        config = SearchConfig()

        db = None
        repository = None
        if "harvested" in {c.lower() for c in config.enabled_connectors}:
            db = Database()
            await db.connect()
            repository = HarvestRepository(db)

        backend = build_cache(settings)
        if isinstance(backend, MemoryCache):
            await backend.start()

        aggregator = SearchAggregator(
            build_default_registry(config, settings, repository),
            SearchCache(
                backend,
                ttl=config.cache_ttl_seconds,
                serve_stale=config.serve_stale,
                prefix=config.cache_key_prefix,
            ),
            config,
        )

        try:
            if output_format == "text":
                click.echo(f"\nSearching for: {term}")
                click.echo("-" * 60)
            try:
                response = await aggregator.search(user_id, query, list(database) or None)
            except NoDatabasesAvailable as e:
                click.echo(click.style(str(e), fg="red"), err=output_format != "text")
                sys.exit(1)

            if output_format != "text":
                output.write(export_results(
                    response.results, output_format, include_abstract=abstracts
                ))
                for error in response.errors or []:
                    click.echo(f"{error.source}: {error.type} ({error.message})", err=True)
                return

            if not response.results:
                click.echo("No results found.")
            for i, result in enumerate(response.results, start=query.pagination.offset + 1):
                published = (
                    result.publication_date.isoformat() if result.publication_date else "n.d."
                )
                click.echo(f"\n{i}. [{result.database_id}] {result.title}")
                if result.authors:
                    more = " et al." if len(result.authors) > 3 else ""
                    click.echo(f"   {', '.join(result.authors[:3])}{more}")
                click.echo(f"   {result.journal or '-'} | {published}")
                if result.doi:
                    click.echo(f"   DOI: {result.doi}")

            for error in response.errors or []:
                click.echo(click.style(
                    f"\n  ! {error.source}: {error.type} ({error.message})", fg="yellow"
                ))

            click.echo(f"\n{'-' * 60}")
            click.echo(
                f"Page {response.page}/{response.total_pages} of {response.total} results "
                f"from {', '.join(response.databases_searched)} "
                f"({'cached, ' if response.cached else ''}{response.execution_time_ms:.0f} ms)"
            )
        finally:
            await aggregator.close()
            await backend.close()
            if db is not None:
                await db.close()

    asyncio.run(run())


@main.command()
@click.argument("result_id")
@click.option("--user", "user_id", default=None, help="User id for access checks")
@click.option("--format", "output_format", type=click.Choice(["text", "csv", "bibtex"]),
              default="text", help="Output format")
def record(result_id: str, user_id: str | None, output_format: str) -> None:
    """Show one harvested record by its search result id (provider:record_id)."""
    from litharvest.search.config import SearchConfig
    from litharvest.search.connectors.harvested import HarvestedMetadataConnector
    from litharvest.search.export import export_results
    from litharvest.storage.database import Database
    from litharvest.storage.repository import HarvestRepository

    async def run():
        db = Database()
        await db.connect()
        try:
            connector = HarvestedMetadataConnector(
                HarvestRepository(db),
                institution_id=SearchConfig().harvested_institution_id,
            )
            if not await connector.validate_access(user_id):
                click.echo(click.style("Access denied", fg="red"))
                sys.exit(1)
            result = await connector.get_record(result_id)
            if result is None:
                click.echo(click.style(f"Record {result_id} not found", fg="red"))
                sys.exit(1)

            if output_format != "text":
                rendered = export_results([result], output_format, include_abstract=True)
                click.echo(rendered, nl=False)
                return
            click.echo(result.title)
            if result.authors:
                click.echo(f"  Authors:   {'; '.join(result.authors)}")
            click.echo(f"  Journal:   {result.journal or '-'}")
            published = result.publication_date.isoformat() if result.publication_date else "n.d."
            click.echo(f"  Published: {published}")
            if result.doi:
                click.echo(f"  DOI:       {result.doi}")
            if result.url:
                click.echo(f"  URL:       {result.url}")
            click.echo(f"  Provider:  {result.metadata['provider']}")
            if result.abstract:
                click.echo(f"\n{result.abstract}")
        finally:
            await db.close()

    asyncio.run(run())


if __name__ == "__main__":
    main()
