"""Sliding-window request counter keyed by client identity."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-identity sliding window of request timestamps.

    Every call to admit() evicts stale timestamps for that identity and
    records the current one. Identities whose window drains are dropped
    by an occasional sweep so the table does not grow without bound.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests: int = 10,
        sweep_probability: float = 0.01,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            window_seconds: Length of the trailing window.
            max_requests: Ceiling a caller compares admit() results against.
            sweep_probability: Chance that any admit() call also sweeps.
            clock: Monotonic time source in seconds.
            rng: Random source deciding when to sweep.
        """
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.sweep_probability = sweep_probability
        self._clock = clock
        self._rng = rng or random.Random()
        self._windows: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def admit(self, identity: str) -> int:
        """Record a request and return how many fall inside the window.

        Args:
            identity: The client identity, normally its IP address.

        Returns:
            The number of requests from this identity in the current window,
            including this one.
        """
        now = self._clock()
        with self._lock:
            recent = self._evict(self._windows.get(identity, []), now)
            recent.append(now)
            self._windows[identity] = recent
            count = len(recent)

        if self._rng.random() < self.sweep_probability:
            self.sweep()
        return count

    def exceeded(self, count: int) -> bool:
        """Whether a count returned by admit() is over the ceiling."""
        return count > self.max_requests

    def sweep(self) -> int:
        """Drop identities with no requests left inside the window.

        Returns:
            The number of identities removed.
        """
        now = self._clock()
        removed = 0
        with self._lock:
            for identity in list(self._windows):
                recent = self._evict(self._windows[identity], now)
                if recent:
                    self._windows[identity] = recent
                else:
                    del self._windows[identity]
                    removed += 1
        if removed:
            logger.debug("Rate limiter sweep removed %d idle identities", removed)
        return removed

    def _evict(self, timestamps: list[float], now: float) -> list[float]:
        return [t for t in timestamps if now - t < self.window_seconds]

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
