"""
Federated search aggregator.

Fans a query out to every selected connector in parallel, waits for all
of them, merges the hits newest first and slices the requested page.
A failing connector contributes an error entry and zero results; the
call only fails outright when no connector is available at all.

The full sorted result set is cached, not just the returned page, so
later pages of the same query are sliced locally.
"""

import asyncio
import math
import time

import structlog

from litharvest.config.settings import Settings, get_settings
from litharvest.observability.logging import log_context
from litharvest.observability.metrics import get_metrics
from litharvest.search.cache import CacheEntry, SearchCache
from litharvest.search.config import SearchConfig
from litharvest.search.connectors.arxiv import ARXIV_API_URL, ArxivConnector
from litharvest.search.connectors.base import (
    ConnectorConfig,
    ConnectorError,
    ConnectorHits,
    ConnectorRetryPolicy,
    DatabaseConnector,
)
from litharvest.search.connectors.harvested import HarvestedMetadataConnector
from litharvest.search.connectors.pubmed import EUTILS_BASE_URL, PubMedConnector
from litharvest.search.registry import DatabaseRegistry
from litharvest.search.schemas import SearchError, SearchQuery, SearchResponse, SearchResult

logger = structlog.get_logger(__name__)


class NoDatabasesAvailable(Exception):
    """No enabled, authorized connector matched the request."""


def sort_results(results: list[SearchResult]) -> list[SearchResult]:
    """Newest first, undated last. Ties keep their input order."""
    return sorted(
        results,
        key=lambda r: (0, -r.publication_date.toordinal()) if r.publication_date else (1, 0),
    )


def _to_search_error(error: ConnectorError) -> SearchError:
    return SearchError(
        source=error.source,
        type=error.type.value,
        message=error.message,
        retryable=error.retryable,
    )


class SearchAggregator:
    """
    Cache-first federated search.

    Usage:
        aggregator = SearchAggregator(registry, SearchCache(backend))
        response = await aggregator.search("user-1", SearchQuery(term="crispr"))
    """

    def __init__(
        self,
        registry: DatabaseRegistry,
        cache: SearchCache | None = None,
        config: SearchConfig | None = None,
    ):
        self._registry = registry
        self._config = config or SearchConfig()
        self._cache = cache if self._config.cache_enabled else None
        self._refresh_tasks: dict[str, asyncio.Task] = {}
        self._metrics = get_metrics()

    @property
    def registry(self) -> DatabaseRegistry:
        return self._registry

    async def search(
        self,
        user_id: str | None,
        query: SearchQuery,
        database_filter: list[str] | None = None,
    ) -> SearchResponse:
        """
        Run a federated search.

        Raises:
            NoDatabasesAvailable: The selected connector set is empty.
        """
        started = time.perf_counter()
        connectors = await self._select(user_id, database_filter)
        ids = sorted(c.id for c in connectors)
        end = query.pagination.end

        if self._cache is not None:
            lookup = await self._cache.get(query, ids)
            if lookup is not None and lookup.entry.covers(end):
                self._metrics.record_search("stale" if lookup.stale else "hit")
                if lookup.stale:
                    self._schedule_refresh(self._cache.key(query, ids), query, connectors)
                return self._respond(query, lookup.entry, ids, started, cached=True)

        self._metrics.record_search("miss")
        entry = await self._fetch(query, connectors)
        if self._cache is not None and len(entry.errors) < len(connectors):
            entry = await self._cache.set(
                query,
                ids,
                entry.results,
                depth=entry.depth,
                complete=entry.complete,
                errors=entry.errors,
            )
        return self._respond(query, entry, ids, started, cached=False)

    async def _select(
        self,
        user_id: str | None,
        database_filter: list[str] | None,
    ) -> list[DatabaseConnector]:
        connectors = await self._registry.get_enabled(user_id)
        if database_filter:
            wanted = {d.lower() for d in database_filter}
            connectors = [c for c in connectors if c.id.lower() in wanted]
        if not connectors:
            raise NoDatabasesAvailable(
                f"No databases available for user {user_id}"
                + (f" matching {sorted(database_filter)}" if database_filter else "")
            )
        return sorted(connectors, key=lambda c: c.id)

    def _depth(self, query: SearchQuery) -> int:
        wanted = max(self._config.fetch_depth, query.pagination.end)
        return min(wanted, self._config.max_fetch_depth)

    async def _fetch(
        self,
        query: SearchQuery,
        connectors: list[DatabaseConnector],
    ) -> CacheEntry:
        depth = self._depth(query)
        outcomes = await asyncio.gather(*(self._call(c, query, depth) for c in connectors))

        merged: list[SearchResult] = []
        errors: list[SearchError] = []
        complete = True
        for hits, error in outcomes:
            if error is not None:
                errors.append(error)
                complete = False
                continue
            merged.extend(hits.results)
            if not hits.exhausted:
                complete = False

        return CacheEntry(
            results=sort_results(merged),
            timestamp=time.time(),
            depth=depth,
            databases=[c.id for c in connectors],
            complete=complete,
            errors=errors,
        )

    async def _call(
        self,
        connector: DatabaseConnector,
        query: SearchQuery,
        depth: int,
    ) -> tuple[ConnectorHits, SearchError | None]:
        started = time.perf_counter()
        with log_context(connector=connector.id):
            try:
                hits = await connector.fetch(query, max_results=depth)
            except Exception as e:
                error = connector.transform_error(e)
                self._metrics.record_connector_call(
                    connector.id, time.perf_counter() - started, error.type.value
                )
                logger.warning(
                    "Connector search failed",
                    error_type=error.type.value,
                    error=error.message,
                )
                return ConnectorHits(results=[], exhausted=False), _to_search_error(error)

            self._metrics.record_connector_call(connector.id, time.perf_counter() - started)
            logger.debug(
                "Connector search done",
                results=len(hits.results),
                exhausted=hits.exhausted,
            )
        return hits, None

    def _respond(
        self,
        query: SearchQuery,
        entry: CacheEntry,
        ids: list[str],
        started: float,
        cached: bool,
    ) -> SearchResponse:
        page = query.pagination
        total = len(entry.results)
        return SearchResponse(
            results=entry.results[page.offset:page.end],
            total=total,
            page=page.page,
            total_pages=math.ceil(total / page.limit) if total else 0,
            databases_searched=ids,
            errors=list(entry.errors) or None,
            cached=cached,
            execution_time_ms=round((time.perf_counter() - started) * 1000, 2),
        )

    def _schedule_refresh(
        self,
        key: str,
        query: SearchQuery,
        connectors: list[DatabaseConnector],
    ) -> None:
        # One refresh per entry; later stale reads ride on the running one
        if key in self._refresh_tasks:
            return
        task = asyncio.create_task(self._refresh(query, connectors))
        self._refresh_tasks[key] = task
        task.add_done_callback(lambda _: self._refresh_tasks.pop(key, None))

    async def _refresh(self, query: SearchQuery, connectors: list[DatabaseConnector]) -> None:
        ids = [c.id for c in connectors]
        try:
            entry = await self._fetch(query, connectors)
            if len(entry.errors) < len(connectors):
                await self._cache.set(
                    query,
                    ids,
                    entry.results,
                    depth=entry.depth,
                    complete=entry.complete,
                    errors=entry.errors,
                )
                logger.info("Refreshed stale search entry", databases=ids)
        except Exception as e:
            logger.error("Stale search refresh failed", databases=ids, error=str(e))

    async def close(self) -> None:
        tasks = list(self._refresh_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._registry.close()


def _connector_config(config: SearchConfig, **kwargs) -> ConnectorConfig:
    return ConnectorConfig(
        timeout=config.connector_timeout,
        retry=ConnectorRetryPolicy(
            max_retries=config.connector_max_retries,
            backoff_seconds=config.connector_backoff_seconds,
        ),
        **kwargs,
    )


def build_default_registry(
    config: SearchConfig | None = None,
    settings: Settings | None = None,
    repository=None,
) -> DatabaseRegistry:
    """
    Register the built-in connectors named in config.enabled_connectors.

    The harvested-records connector is only added when a repository is given.
    """
    config = config or SearchConfig()
    settings = settings or get_settings()
    enabled = {c.lower() for c in config.enabled_connectors}
    registry = DatabaseRegistry()

    if "pubmed" in enabled:
        registry.register(PubMedConnector(
            config=_connector_config(
                config,
                id="pubmed",
                name="PubMed",
                auth_type="api_key" if settings.pubmed_configured else "none",
                base_url=EUTILS_BASE_URL,
                rate_limit=settings.pubmed_rate_limit,
            ),
            settings=settings,
        ))
    if "arxiv" in enabled:
        registry.register(ArxivConnector(
            config=_connector_config(
                config,
                id="arxiv",
                name="arXiv",
                base_url=ARXIV_API_URL,
                rate_limit=settings.arxiv_rate_limit,
            ),
            settings=settings,
        ))
    if "harvested" in enabled and repository is not None:
        registry.register(HarvestedMetadataConnector(
            repository,
            config=_connector_config(
                config,
                id="harvested",
                name="Harvested Metadata",
                auth_type="institutional",
                rate_limit=600,
            ),
            institution_id=config.harvested_institution_id,
        ))

    logger.info("Search connectors registered", connectors=[c.id for c in registry.all()])
    return registry
