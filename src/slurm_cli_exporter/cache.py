"""Thread-safe throttled cache for Slurm command output.

Provides a generic cache that prevents excessive command invocations by
throttling refreshes and returning cached data when within the throttle
window. The lock is held across the refresh, so concurrent callers share
one upstream call instead of each issuing their own.
"""

import time
from collections.abc import Callable
from threading import Lock
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class AtomicThrottledCache(Generic[T]):
    """Thread-safe cache with throttling to prevent excessive Slurm queries.

    Ensures that expensive data fetching operations are rate-limited,
    returning cached data when requests occur within the throttle window.
    A failed refresh leaves the previous data and timestamp untouched and
    is not cached, so the next call tries again.
    """

    def __init__(self, limit: float):
        """Initialize the cache.

        Args:
            limit: Minimum seconds between cache refreshes.
        """
        self._lock = Lock()
        self._last_fetch: float | None = None
        self._limit = limit
        self._cache: T | None = None
        self._duration = 0.0

    @property
    def limit(self) -> float:
        return self._limit

    @property
    def duration(self) -> float:
        """Duration in seconds of the last successful refresh."""
        with self._lock:
            return self._duration

    def fetch_or_throttle(self, fetch_func: Callable[[], T]) -> T:
        """Fetch data or return cached data if within throttle limit.

        Thread-safe operation that either returns cached data (if still fresh)
        or calls fetch_func to retrieve new data and updates the cache.
        Exceptions raised by fetch_func propagate to the caller.

        Args:
            fetch_func: Function to fetch fresh data.

        Returns:
            Cached or fresh data of type T.
        """
        with self._lock:
            elapsed: float | None = (
                time.monotonic() - self._last_fetch
                if self._last_fetch is not None
                else None
            )
            if (
                self._cache is not None
                and elapsed is not None
                and elapsed < self._limit
            ):
                logger.debug("Using cached data", age_seconds=round(elapsed, 2))
                return self._cache

            start = time.monotonic()
            data = fetch_func()
            self._duration = time.monotonic() - start
            self._cache = data
            self._last_fetch = time.monotonic()
            logger.debug(
                "Fetched fresh data",
                duration_seconds=round(self._duration, 3),
            )
            return data
