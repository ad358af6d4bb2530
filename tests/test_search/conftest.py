"""Connector doubles for search tests."""

import asyncio
from datetime import date, timedelta

import httpx
import pytest

from litharvest.search.connectors.base import (
    ConnectorConfig,
    ConnectorRetryPolicy,
    DatabaseConnector,
)
from litharvest.search.schemas import SearchQuery, SearchResult


class FakeConnector(DatabaseConnector):
    """
    Connector answering from a fixed list, or failing with `error`.

    Every _search call is recorded with the max_results it was given.
    Setting `gate` holds calls until the event is set.
    """

    def __init__(
        self,
        connector_id: str,
        results: list[SearchResult] | None = None,
        error: Exception | None = None,
        enabled: bool = True,
        max_retries: int = 0,
    ):
        super().__init__(ConnectorConfig(
            id=connector_id,
            name=connector_id.title(),
            enabled=enabled,
            rate_limit=10_000,
            retry=ConnectorRetryPolicy(max_retries=max_retries, backoff_seconds=0.01),
        ))
        self.results = list(results or [])
        self.error = error
        self.calls: list[int] = []
        self.closed = False
        self.gate: asyncio.Event | None = None

    async def _search(self, query: SearchQuery, max_results: int) -> list[SearchResult]:
        self.calls.append(max_results)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.results[:max_results]

    async def close(self) -> None:
        self.closed = True
        await super().close()


def make_results(database_id: str, count: int, start_year: int = 2020) -> list[SearchResult]:
    return [
        SearchResult(
            id=f"{database_id}-{i}",
            database_id=database_id,
            title=f"{database_id} result {i}",
            publication_date=date(start_year - i, 1, 1),
        )
        for i in range(count)
    ]


def alternating_arxiv_feed(total: int):
    """
    respx side effect serving `total` arXiv entries honoring start/max_results.

    Even entries are published in 2021 (newest first), odd ones in 2010.
    """

    def respond(request: httpx.Request) -> httpx.Response:
        start = int(request.url.params["start"])
        size = int(request.url.params["max_results"])
        entries = []
        for i in range(start, min(start + size, total)):
            if i % 2 == 0:
                published = date(2021, 12, 31) - timedelta(days=i)
            else:
                published = date(2010, 1, 1)
            entries.append(
                f"<entry><id>http://arxiv.org/abs/2101.{i:05d}v1</id>"
                f"<published>{published.isoformat()}T00:00:00Z</published>"
                f"<title>Paper {i}</title><summary>Abstract {i}</summary></entry>"
            )
        body = '<feed xmlns="http://www.w3.org/2005/Atom">' + "".join(entries) + "</feed>"
        return httpx.Response(200, text=body)

    return respond


@pytest.fixture
def fake_connector():
    """Factory for FakeConnector."""
    return FakeConnector


@pytest.fixture
def results_for():
    """Factory for dated results, newest first."""
    return make_results


@pytest.fixture
def arxiv_feed():
    """Factory for a paging arXiv feed side effect."""
    return alternating_arxiv_feed
