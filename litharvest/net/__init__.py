"""Network plumbing: HTTP client, backoff, rate limiting."""

from litharvest.net.backoff import ExponentialBackoff
from litharvest.net.http_client import (
    APIKeyRotator,
    HTTPClient,
    HTTPClientError,
    HTTPTimeoutError,
    RateLimitError,
    RetryConfig,
)
from litharvest.net.rate_limit import RateLimiter

__all__ = [
    "APIKeyRotator",
    "ExponentialBackoff",
    "HTTPClient",
    "HTTPClientError",
    "HTTPTimeoutError",
    "RateLimitError",
    "RateLimiter",
    "RetryConfig",
]
