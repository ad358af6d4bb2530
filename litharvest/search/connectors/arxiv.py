"""
arXiv connector over the public Atom API.

The API has no date or journal filter, so those are applied to the
parsed entries after the fetch, reading further upstream pages while
too few entries survive.
"""

import logging
import re
from datetime import date
from typing import Any

import feedparser

from litharvest.config.settings import Settings, get_settings
from litharvest.net.http_client import HTTPClient
from litharvest.search.connectors.base import (
    ConnectorConfig,
    ConnectorHits,
    DatabaseConnector,
)
from litharvest.search.schemas import SearchQuery, SearchResult

logger = logging.getLogger(__name__)

ARXIV_API_URL = "http://export.arxiv.org/api/query"

# Upstream pages read per call when date/journal filters thin the results
MAX_FILTER_PAGES = 5

_ARXIV_ID = re.compile(r"arxiv\.org/abs/(?P<id>.+?)(v\d+)?$")


def build_search_query(query: SearchQuery) -> str:
    """Translate the term and author filter to arXiv search_query syntax."""
    words = query.term.replace("&", " ").replace("|", " ").split()
    search = " AND ".join(f"all:{w}" for w in words)
    if query.filters.authors:
        authors = " OR ".join(f'au:"{a}"' for a in query.filters.authors)
        search = f"{search} AND ({authors})"
    return search


def _entry_date(entry: Any) -> date | None:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    return date(parsed.tm_year, parsed.tm_mon, parsed.tm_mday)


def _clean(value: str | None) -> str | None:
    if not value:
        return None
    return " ".join(value.split()) or None


def entry_to_result(entry: Any) -> SearchResult:
    """Map a feedparser entry to a SearchResult."""
    entry_id = entry.get("id", "")
    match = _ARXIV_ID.search(entry_id)
    arxiv_id = match.group("id") if match else entry_id

    pdf_url = None
    for link in entry.get("links", []):
        if link.get("type") == "application/pdf" or link.get("title") == "pdf":
            pdf_url = link.get("href")
            break

    doi = entry.get("arxiv_doi")
    primary = entry.get("arxiv_primary_category") or {}

    return SearchResult(
        id=arxiv_id,
        database_id="arxiv",
        title=_clean(entry.get("title")) or "",
        authors=[a.get("name") for a in entry.get("authors", []) if a.get("name")],
        abstract=_clean(entry.get("summary")),
        journal=_clean(entry.get("arxiv_journal_ref")),
        doi=doi.strip().lower() if doi else None,
        publication_date=_entry_date(entry),
        keywords=[t.get("term") for t in entry.get("tags", []) if t.get("term")],
        url=entry.get("link") or entry_id or None,
        metadata={
            "arxiv_id": arxiv_id,
            "primary_category": primary.get("term"),
            "pdf_url": pdf_url,
            "comment": _clean(entry.get("arxiv_comment")),
        },
    )


def has_local_filters(query: SearchQuery) -> bool:
    filters = query.filters
    dated = filters.date_range is not None and (
        filters.date_range.start is not None or filters.date_range.end is not None
    )
    return dated or bool(filters.journals)


def matches_filters(result: SearchResult, query: SearchQuery) -> bool:
    filters = query.filters
    if filters.date_range and (filters.date_range.start or filters.date_range.end):
        if not filters.date_range.contains(result.publication_date):
            return False
    if filters.journals:
        journal = (result.journal or "").lower()
        if not any(j.lower() in journal for j in filters.journals):
            return False
    return True


class ArxivConnector(DatabaseConnector):
    """Searches arXiv preprints."""

    def __init__(
        self,
        config: ConnectorConfig | None = None,
        settings: Settings | None = None,
        http_client: HTTPClient | None = None,
    ):
        settings = settings or get_settings()
        config = config or ConnectorConfig(
            id="arxiv",
            name="arXiv",
            base_url=ARXIV_API_URL,
            rate_limit=settings.arxiv_rate_limit,
        )
        super().__init__(config, http_client)
        self._url = config.base_url or ARXIV_API_URL

    async def _search(self, query: SearchQuery, max_results: int) -> list[SearchResult]:
        return (await self._fetch(query, max_results)).results

    async def _fetch(self, query: SearchQuery, max_results: int) -> ConnectorHits:
        """
        Fetch until max_results hits survive the local filters.

        Without date/journal filters this is a single request. With them,
        further upstream pages are requested (at most MAX_FILTER_PAGES)
        so a filtered query still fills the requested depth.
        """
        pages = MAX_FILTER_PAGES if has_local_filters(query) else 1
        kept: list[SearchResult] = []
        start = 0
        exhausted = False
        for page in range(pages):
            if page:
                await self._rate_limiter.acquire()
            entries = await self._fetch_entries(query, start, max_results)
            start += len(entries)
            kept.extend(r for r in map(entry_to_result, entries) if matches_filters(r, query))
            # A short raw page means arXiv has nothing further, whatever the filters kept
            if len(entries) < max_results:
                exhausted = True
                break
            if len(kept) >= max_results:
                break

        logger.debug(f"arXiv read {start} entries, {len(kept)} after filters")
        if len(kept) > max_results:
            return ConnectorHits(results=kept[:max_results], exhausted=False)
        return ConnectorHits(results=kept, exhausted=exhausted)

    async def _fetch_entries(self, query: SearchQuery, start: int, max_results: int) -> list:
        client = await self._client()
        response = await client.get(
            self._url,
            params={
                "search_query": build_search_query(query),
                "start": start,
                "max_results": max_results,
                "sortBy": "relevance",
                "sortOrder": "descending",
            },
        )
        feed = feedparser.parse(response.text)
        entries = feed.get("entries", [])
        if feed.get("bozo") and not entries:
            raise ValueError(f"Unparseable arXiv feed: {feed.get('bozo_exception')}")

        # arXiv reports query errors as a single entry under /api/errors
        if len(entries) == 1 and "/api/errors" in entries[0].get("id", ""):
            raise ValueError(f"arXiv query error: {_clean(entries[0].get('summary'))}")
        return entries
