"""Federated search over external databases and harvested records."""

from litharvest.search.cache import CacheEntry, CacheLookup, SearchCache
from litharvest.search.config import SearchConfig
from litharvest.search.registry import DatabaseRegistry
from litharvest.search.schemas import (
    DateRange,
    Pagination,
    SearchError,
    SearchFilters,
    SearchQuery,
    SearchResponse,
    SearchResult,
)

__all__ = [
    "CacheEntry",
    "CacheLookup",
    "DateRange",
    "DatabaseRegistry",
    "Pagination",
    "SearchCache",
    "SearchConfig",
    "SearchError",
    "SearchFilters",
    "SearchQuery",
    "SearchResponse",
    "SearchResult",
]
