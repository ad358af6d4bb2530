"""
Shared HTTP layer for OAI-PMH endpoints, Crossref and search connectors.

Provides:
- APIKeyRotator: round-robin over comma-separated API keys
- RetryConfig: exponential backoff policy with jitter
- HTTPClient: async httpx wrapper that retries transient failures

Callers that own their retry policy (the OAI-PMH client, search
connectors) construct the client with ``RetryConfig(max_retries=0)``
so a failure surfaces on the first attempt.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
TRANSIENT_EXCEPTIONS = (httpx.TimeoutException, httpx.ConnectError, httpx.ReadError)


@dataclass
class APIKeyRotator:
    """
    Round-robin rotation over several keys for the same service.

    Example:
        rotator = APIKeyRotator.from_env_var("key1,key2")
        key = await rotator.get_key()
    """

    keys: list[str]
    _index: int = field(default=0, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @classmethod
    def from_env_var(cls, value: str | None) -> "APIKeyRotator | None":
        """Build a rotator from a comma-separated value, or None when empty."""
        if not value:
            return None
        keys = [k.strip() for k in value.split(",") if k.strip()]
        return cls(keys=keys) if keys else None

    async def get_key(self) -> str:
        async with self._lock:
            key = self.keys[self._index]
            self._index = (self._index + 1) % len(self.keys)
            return key

    @property
    def key_count(self) -> int:
        return len(self.keys)


@dataclass
class RetryConfig:
    """
    Exponential backoff configuration for HTTP retries.

    Formula: min(max_backoff, base_delay * 2^attempt) * (1 + random(0, jitter_factor))
    """

    max_retries: int = 3
    max_backoff_seconds: float = 60.0
    base_delay: float = 1.0
    jitter_factor: float = 0.1

    def calculate_backoff(self, attempt: int) -> float:
        """Backoff in seconds for a 0-indexed retry attempt."""
        delay = min(self.base_delay * (2**attempt), self.max_backoff_seconds)
        return delay + delay * self.jitter_factor * random.random()

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code in RETRYABLE_STATUS

    def is_retryable_exception(self, exc: Exception) -> bool:
        return isinstance(exc, TRANSIENT_EXCEPTIONS)


class HTTPClientError(Exception):
    """Base exception for HTTP client errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.retryable = retryable


class RateLimitError(HTTPClientError):
    """Raised when the remote side keeps answering 429."""


class HTTPTimeoutError(HTTPClientError):
    """Raised when the request timed out on every attempt."""


class HTTPClient:
    """
    Async HTTP client with retry logic and API key rotation.

    Example:
        async with HTTPClient(RetryConfig(max_retries=2), headers=ua) as client:
            response = await client.get(url, params={"verb": "Identify"})
    """

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
    ):
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self._headers = dict(headers or {})
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "HTTPClient":
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            headers=self._headers,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        api_key_rotator: APIKeyRotator | None = None,
        api_key_param: str | None = None,
    ) -> httpx.Response:
        """
        Perform a GET request, retrying transient failures.

        Args:
            url: Request URL
            params: Query parameters
            headers: Extra request headers
            api_key_rotator: Optional key rotator; a fresh key per attempt
            api_key_param: Query parameter carrying the API key

        Raises:
            HTTPClientError: On non-retryable status or after retries exhausted
            RateLimitError: When still rate limited after retries
            HTTPTimeoutError: When every attempt timed out
        """
        if not self._client:
            raise RuntimeError("HTTPClient must be used as async context manager")

        attempts = self.retry_config.max_retries + 1
        for attempt in range(attempts):
            request_params = dict(params or {})
            if api_key_rotator and api_key_param:
                request_params[api_key_param] = await api_key_rotator.get_key()

            try:
                response = await self._client.get(
                    url,
                    params=request_params or None,
                    headers=headers,
                )
            except TRANSIENT_EXCEPTIONS as e:
                if attempt + 1 < attempts:
                    await self._backoff(url, attempt, type(e).__name__)
                    continue
                error_cls = (
                    HTTPTimeoutError
                    if isinstance(e, httpx.TimeoutException)
                    else HTTPClientError
                )
                raise error_cls(
                    f"Request to {url} failed after {attempt + 1} attempts: {e}",
                    retryable=True,
                ) from e
            except httpx.HTTPError as e:
                raise HTTPClientError(f"Request to {url} failed: {e}") from e

            status = response.status_code
            if self.retry_config.is_retryable_status(status):
                if attempt + 1 < attempts:
                    await self._backoff(url, attempt, f"status {status}")
                    continue
                error_cls = RateLimitError if status == 429 else HTTPClientError
                raise error_cls(
                    f"Request to {url} failed with status {status} "
                    f"after {attempt + 1} attempts",
                    status_code=status,
                    response_body=response.text,
                    retryable=True,
                )

            if status >= 400:
                raise HTTPClientError(
                    f"Request to {url} failed with status {status}",
                    status_code=status,
                    response_body=response.text,
                )

            return response

        # range() above always returns or raises
        raise HTTPClientError(f"Request to {url} failed")

    async def _backoff(self, url: str, attempt: int, reason: str) -> None:
        delay = self.retry_config.calculate_backoff(attempt)
        logger.warning(
            f"Retryable {reason} from {url}, attempt "
            f"{attempt + 1}/{self.retry_config.max_retries + 1}, backing off {delay:.2f}s"
        )
        await asyncio.sleep(delay)
