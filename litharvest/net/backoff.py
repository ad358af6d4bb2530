"""
Exponential backoff utility for retry loops.

Used by the harvest controller to retry the same OAI-PMH page and by
connectors to space out retried searches.
"""

import random


class ExponentialBackoff:
    """
    Exponential backoff with optional jitter.

    Computes delays as: min(base * multiplier^attempt, max_delay) + jitter.
    Call reset() after a successful operation to zero the attempt counter.

    Usage:
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=30.0)
        for _ in range(retries):
            try:
                return await fetch_page()
            except ProtocolError:
                await asyncio.sleep(backoff.next_delay())
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        jitter_range: float = 0.0,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter_range = jitter_range
        self._attempt = 0

    @property
    def attempt(self) -> int:
        """Current attempt count."""
        return self._attempt

    def delay_for(self, attempt: int) -> float:
        """Delay for a given attempt without jitter or state change."""
        return min(self.base_delay * (self.multiplier**attempt), self.max_delay)

    def next_delay(self) -> float:
        """Return the next delay and advance the attempt counter."""
        delay = self.delay_for(self._attempt)
        if self.jitter_range:
            delay += delay * random.uniform(-self.jitter_range, self.jitter_range)
        self._attempt += 1
        return max(0.0, delay)

    def reset(self) -> None:
        """Reset the attempt counter after a successful operation."""
        self._attempt = 0
