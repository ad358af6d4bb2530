"""
Content-addressed cache of federated result sets.

The key is the SHA-256 of the normalized query (lower-cased, trimmed
term with page fixed to 1) plus the sorted connector ids, so every page
of a query shares one entry. The entry holds the full sorted superset
and the depth it was fetched to; the aggregator slices pages out of it.

Each entry's key is also added to an index set per connector id, so
invalidate_databases() can drop everything a connector contributed to
(after a harvest changes the local store, for example).

Expired entries are deleted when read. With stale serving enabled an
expired entry is returned once more and a refresh signal is published.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from litharvest.search.schemas import SearchError, SearchQuery, SearchResult
from litharvest.storage.cache import REFRESH_CHANNEL, CacheBackend

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    results: list[SearchResult]
    timestamp: float
    depth: int
    databases: list[str]
    complete: bool = False
    errors: list[SearchError] = field(default_factory=list)

    def covers(self, end: int) -> bool:
        """True if results[:end] is fully known from this entry."""
        return self.complete or self.depth >= end

    def to_json(self) -> dict[str, Any]:
        return {
            "results": [r.model_dump(mode="json") for r in self.results],
            "timestamp": self.timestamp,
            "depth": self.depth,
            "databases": self.databases,
            "complete": self.complete,
            "errors": [e.model_dump(mode="json") for e in self.errors],
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "CacheEntry":
        return cls(
            results=[SearchResult.model_validate(r) for r in data["results"]],
            timestamp=float(data["timestamp"]),
            depth=int(data["depth"]),
            databases=list(data.get("databases") or []),
            complete=bool(data.get("complete", False)),
            errors=[SearchError.model_validate(e) for e in data.get("errors") or []],
        )


@dataclass
class CacheLookup:
    entry: CacheEntry
    stale: bool = False


def make_cache_key(query: SearchQuery, database_ids: list[str], prefix: str = "search:") -> str:
    payload = json.dumps(
        {"query": query.normalized(), "databases": sorted(database_ids)},
        sort_keys=True,
        separators=(",", ":"),
    )
    return prefix + hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SearchCache:
    """
    Search result cache on top of a CacheBackend.

    Usage:
        cache = SearchCache(MemoryCache(), ttl=3600)
        lookup = await cache.get(query, ["pubmed", "arxiv"])
    """

    def __init__(
        self,
        backend: CacheBackend,
        ttl: int = 3600,
        serve_stale: bool = False,
        prefix: str = "search:",
        clock=time.time,
    ):
        self._backend = backend
        self._ttl = ttl
        self._serve_stale = serve_stale
        self._prefix = prefix
        self._clock = clock

    @property
    def ttl(self) -> int:
        return self._ttl

    def key(self, query: SearchQuery, database_ids: list[str]) -> str:
        return make_cache_key(query, database_ids, self._prefix)

    async def get(self, query: SearchQuery, database_ids: list[str]) -> CacheLookup | None:
        key = self.key(query, database_ids)
        data = await self._backend.get(key)
        if not data:
            return None

        try:
            entry = CacheEntry.from_json(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed search cache entry {key}: {e}")
            await self._backend.delete(key)
            return None

        if self._clock() - entry.timestamp < self._ttl:
            return CacheLookup(entry=entry)

        if self._serve_stale:
            await self._backend.publish(REFRESH_CHANNEL, key)
            logger.debug(f"Serving stale search entry {key}")
            return CacheLookup(entry=entry, stale=True)

        await self._backend.delete(key)
        return None

    async def set(
        self,
        query: SearchQuery,
        database_ids: list[str],
        results: list[SearchResult],
        depth: int,
        complete: bool = False,
        errors: list[SearchError] | None = None,
    ) -> CacheEntry:
        entry = CacheEntry(
            results=results,
            timestamp=self._clock(),
            depth=depth,
            databases=sorted(database_ids),
            complete=complete,
            errors=list(errors or []),
        )
        # Keep expired entries around long enough to be served stale once
        backend_ttl = self._ttl * 2 if self._serve_stale else self._ttl
        key = self.key(query, database_ids)
        await self._backend.set(key, entry.to_json(), backend_ttl)
        for database_id in entry.databases:
            await self._backend.add_to_index(self._index_key(database_id), key, backend_ttl)
        return entry

    async def invalidate(self, query: SearchQuery, database_ids: list[str]) -> None:
        await self._backend.delete(self.key(query, database_ids))

    async def invalidate_databases(self, database_ids: list[str]) -> int:
        """
        Drop every entry that includes results from any of these connectors.

        Returns the number of keys deleted. Keys already expired count too.
        """
        keys: set[str] = set()
        for database_id in database_ids:
            keys.update(await self._backend.pop_index(self._index_key(database_id)))
        for key in sorted(keys):
            await self._backend.delete(key)
        if keys:
            logger.info(f"Invalidated {len(keys)} search entries for {', '.join(database_ids)}")
        return len(keys)

    def _index_key(self, database_id: str) -> str:
        return f"{self._prefix}db:{database_id}"
