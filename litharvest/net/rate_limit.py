"""Token bucket rate limiter shared by connectors and the Crossref client."""

import asyncio
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RateLimiter:
    """
    Simple token bucket rate limiter.

    Allows `rate` requests per minute; the bucket starts full so short
    bursts up to `rate` go through immediately.
    """

    rate: int  # requests per minute
    _tokens: float = field(init=False)
    _last_update: float = field(init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self) -> None:
        if self.rate <= 0:
            raise ValueError("rate must be positive")
        self._tokens = float(self.rate)
        self._last_update = time.monotonic()

    async def acquire(self) -> None:
        """Wait until a token is available, then consume it."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_update
            self._last_update = now

            self._tokens = min(
                float(self.rate),
                self._tokens + elapsed * (self.rate / 60.0),
            )

            if self._tokens < 1:
                wait_time = (1 - self._tokens) * 60.0 / self.rate
                logger.debug(f"Rate limited, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)
                self._tokens = 0
                self._last_update = time.monotonic()
            else:
                self._tokens -= 1

    @property
    def available(self) -> float:
        return self._tokens
