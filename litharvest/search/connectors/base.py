"""
Database connector interface.

Each connector queries one external index and maps its hits to
SearchResult. Connectors own their rate limiting and retry policy;
the shared HTTP client is built with retries disabled so with_retry()
is the only place a failed call is repeated.

Error taxonomy: auth, rate_limit, timeout, parse, network, unknown.
Only rate_limit, timeout and network are retried by default.
"""

import asyncio
import logging
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import httpx

from litharvest.net.backoff import ExponentialBackoff
from litharvest.net.http_client import (
    HTTPClient,
    HTTPClientError,
    HTTPTimeoutError,
    RateLimitError,
    RetryConfig,
)
from litharvest.net.rate_limit import RateLimiter
from litharvest.search.schemas import SearchQuery, SearchResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectorErrorType(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    PARSE = "parse"
    NETWORK = "network"
    UNKNOWN = "unknown"


RETRYABLE_ERROR_TYPES = frozenset({
    ConnectorErrorType.RATE_LIMIT,
    ConnectorErrorType.TIMEOUT,
    ConnectorErrorType.NETWORK,
})


class ConnectorError(Exception):
    """A classified failure from one connector call."""

    def __init__(
        self,
        type: ConnectorErrorType,
        message: str,
        source: str,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.type = type
        self.message = message
        self.source = source
        self.retryable = type in RETRYABLE_ERROR_TYPES if retryable is None else retryable

    def __repr__(self) -> str:
        return f"ConnectorError({self.type.value}, {self.source}: {self.message})"


@dataclass
class ConnectorRetryPolicy:
    max_retries: int = 3
    backoff_seconds: float = 1.0


@dataclass
class ConnectorHits:
    """
    One fetch from a connector.

    `exhausted` is True when the upstream index has no hits beyond the
    ones requested, judged before any local filtering.
    """

    results: list[SearchResult]
    exhausted: bool


@dataclass
class ConnectorConfig:
    """Static description of a connector and its limits."""

    id: str
    name: str
    enabled: bool = True
    auth_type: str = "none"  # none, api_key, institutional
    base_url: str = ""
    rate_limit: int = 60  # requests per minute
    timeout: float = 30.0
    retry: ConnectorRetryPolicy = field(default_factory=ConnectorRetryPolicy)
    features: list[str] = field(default_factory=list)
    auth: dict[str, Any] = field(default_factory=dict)


class DatabaseConnector(ABC):
    """
    Base class for search connectors.

    Subclasses implement _search() (or _fetch() when they filter locally);
    the base class handles rate limiting, retries and error classification.
    """

    def __init__(self, config: ConnectorConfig, http_client: HTTPClient | None = None):
        self.config = config
        self._rate_limiter = RateLimiter(rate=config.rate_limit)
        self._http = http_client or HTTPClient(
            retry_config=RetryConfig(max_retries=0),
            timeout=config.timeout,
        )

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    async def is_enabled(self) -> bool:
        return self.config.enabled

    async def validate_access(self, user_id: str | None) -> bool:
        """Whether this user may query the connector. Open by default."""
        return True

    async def authenticate(self) -> None:
        """Acquire credentials/sessions. Nothing to do for open APIs."""

    async def search(
        self,
        query: SearchQuery,
        max_results: int | None = None,
    ) -> list[SearchResult]:
        """
        Run a query with rate limiting and retries.

        Raises:
            ConnectorError: Classified failure after retries.
        """
        return (await self.fetch(query, max_results)).results

    async def fetch(
        self,
        query: SearchQuery,
        max_results: int | None = None,
    ) -> ConnectorHits:
        """Like search(), but also reports whether the upstream had more hits."""
        limit = max_results or query.pagination.limit

        async def attempt() -> ConnectorHits:
            await self._rate_limiter.acquire()
            return await self._fetch(query, limit)

        return await self.with_retry(attempt)

    async def _fetch(self, query: SearchQuery, max_results: int) -> ConnectorHits:
        """
        One upstream call.

        Connectors that drop hits after fetching override this so the
        exhausted flag reflects the raw upstream count.
        """
        results = await self._search(query, max_results)
        return ConnectorHits(results=results, exhausted=len(results) < max_results)

    @abstractmethod
    async def _search(self, query: SearchQuery, max_results: int) -> list[SearchResult]:
        """Query the external index once."""

    async def with_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Retry retryable failures with backoff * 2^attempt.

        Non-retryable errors (auth, parse, unknown) raise immediately.
        """
        policy = self.config.retry
        backoff = ExponentialBackoff(
            base_delay=policy.backoff_seconds,
            max_delay=max(policy.backoff_seconds * 2**policy.max_retries, 0.0),
            multiplier=2.0,
        )
        for attempt in range(policy.max_retries + 1):
            try:
                return await operation()
            except Exception as e:
                error = e if isinstance(e, ConnectorError) else self.transform_error(e)
                if not error.retryable or attempt >= policy.max_retries:
                    if error is e:
                        raise
                    raise error from e
                delay = backoff.next_delay()
                logger.warning(
                    f"{self.id}: {error.type.value} error, retry "
                    f"{attempt + 1}/{policy.max_retries} in {delay:.2f}s: {error.message}"
                )
                await asyncio.sleep(delay)
        raise ConnectorError(ConnectorErrorType.UNKNOWN, "retries exhausted", self.id)

    def transform_error(self, exc: Exception) -> ConnectorError:
        """Classify an arbitrary exception into the connector taxonomy."""
        if isinstance(exc, ConnectorError):
            return exc
        if isinstance(exc, RateLimitError):
            return ConnectorError(ConnectorErrorType.RATE_LIMIT, str(exc), self.id)
        if isinstance(exc, (HTTPTimeoutError, httpx.TimeoutException, asyncio.TimeoutError)):
            return ConnectorError(ConnectorErrorType.TIMEOUT, str(exc), self.id)
        if isinstance(exc, HTTPClientError):
            status = exc.status_code
            if status in (401, 403):
                return ConnectorError(ConnectorErrorType.AUTH, str(exc), self.id)
            if status == 429:
                return ConnectorError(ConnectorErrorType.RATE_LIMIT, str(exc), self.id)
            if status is None or status >= 500:
                return ConnectorError(ConnectorErrorType.NETWORK, str(exc), self.id)
            return ConnectorError(ConnectorErrorType.UNKNOWN, str(exc), self.id)
        if isinstance(exc, httpx.TransportError):
            return ConnectorError(ConnectorErrorType.NETWORK, str(exc), self.id)
        if isinstance(exc, (ET.ParseError, ValueError, KeyError, TypeError)):
            return ConnectorError(ConnectorErrorType.PARSE, str(exc), self.id)
        return ConnectorError(ConnectorErrorType.UNKNOWN, str(exc) or type(exc).__name__, self.id)

    async def _client(self) -> HTTPClient:
        if not self._http.is_open:
            await self._http.__aenter__()
        return self._http

    async def close(self) -> None:
        await self._http.close()
