"""
Capped exponential backoff for change stream reconnects.
"""

import random
from typing import Callable, Optional


class ReconnectBackoff:
    """
    Reconnect delay calculator.

    ``delay(failures) = min(base * 2**failures, max_delay)``, spread by a
    symmetric jitter of at most ``jitter * delay``. With the defaults the
    sequence for 0..5 consecutive failures is 1, 2, 4, 8, 16, 30 seconds.

    Args:
        base: Delay after the first failure, in seconds
        max_delay: Upper bound of the un-jittered delay
        jitter: Jitter fraction between 0.0 and 1.0
        rng: Source of uniform floats in [0, 1), replaceable in tests
    """

    def __init__(
        self,
        base: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.0,
        rng: Optional[Callable[[], float]] = None,
    ):
        if base <= 0:
            raise ValueError("base must be positive")
        if max_delay < base:
            raise ValueError("max_delay must be at least base")
        if not 0.0 <= jitter <= 1.0:
            raise ValueError("jitter must be between 0.0 and 1.0")
        self.base = base
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.random

    def raw_delay(self, failures: int) -> float:
        """Delay before jitter is applied."""
        failures = max(0, failures)
        # base * 2**failures overflows a float for very large counts
        if failures >= 64:
            return self.max_delay
        return min(self.base * (2 ** failures), self.max_delay)

    def delay(self, failures: int) -> float:
        """Delay to wait after ``failures`` consecutive failed attempts."""
        delay = self.raw_delay(failures)
        if self.jitter:
            spread = delay * self.jitter
            delay += (self._rng() * 2 - 1) * spread
        return max(0.0, delay)
