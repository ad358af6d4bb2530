"""
Search value types shared by connectors, cache and aggregator.

SearchQuery is immutable because it is hashed into cache keys.
"""

from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_PAGE_SIZE = 100


class DateRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: date | None = None
    end: date | None = None

    def contains(self, value: date | None) -> bool:
        if value is None:
            return False
        if self.start and value < self.start:
            return False
        if self.end and value > self.end:
            return False
        return True


class SearchFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    date_range: DateRange | None = None
    authors: tuple[str, ...] = ()
    journals: tuple[str, ...] = ()

    @field_validator("authors", "journals", mode="before")
    @classmethod
    def strip_blank(cls, v: Any) -> tuple[str, ...]:
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        return tuple(s.strip() for s in v if s and s.strip())


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=MAX_PAGE_SIZE)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def end(self) -> int:
        return self.page * self.limit


class SearchQuery(BaseModel):
    """Free-text term plus structured filters and pagination."""

    model_config = ConfigDict(frozen=True)

    term: str = Field(..., min_length=1)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    pagination: Pagination = Field(default_factory=Pagination)

    @field_validator("term")
    @classmethod
    def term_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("term must not be blank")
        return v

    def normalized(self) -> dict[str, Any]:
        """Page-independent form used for cache keys."""
        return {
            "term": self.term.strip().lower(),
            "filters": self.filters.model_dump(mode="json"),
            "pagination": {"page": 1, "limit": self.pagination.limit},
        }

    def with_page(self, page: int) -> "SearchQuery":
        return self.model_copy(
            update={"pagination": Pagination(page=page, limit=self.pagination.limit)}
        )


class SearchResult(BaseModel):
    """One hit, normalized across connectors. Cached, never persisted."""

    id: str
    database_id: str
    title: str
    authors: list[str] = Field(default_factory=list)
    abstract: str | None = None
    journal: str | None = None
    doi: str | None = None
    publication_date: date | None = None
    keywords: list[str] = Field(default_factory=list)
    url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchError(BaseModel):
    """A connector failure reported alongside partial results."""

    source: str
    type: str
    message: str
    retryable: bool = False


class SearchResponse(BaseModel):
    results: list[SearchResult]
    total: int
    page: int
    total_pages: int
    databases_searched: list[str]
    errors: list[SearchError] | None = None
    cached: bool = False
    execution_time_ms: float = 0.0
