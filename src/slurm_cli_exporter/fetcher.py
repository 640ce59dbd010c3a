"""Fetcher contract shared by every Slurm resource domain.

A fetcher turns raw scraper output into a typed metric snapshot. Each
domain ships two variants, one decoding ``--json`` output and one parsing
the legacy text output, and both put their refresh behind an
AtomicThrottledCache so that callers only ever see cached or freshly
computed snapshots.
"""

import abc
import csv
import io
from typing import Generic, TypeVar

import pydantic
import structlog
from prometheus_client import Counter

from .cache import AtomicThrottledCache
from .slurmcli import types

logger = structlog.get_logger(__name__)

T = TypeVar("T")
ResponseT = TypeVar("ResponseT", bound=types.SlurmResponse)


class UpstreamError(RuntimeError):
    """Raised when a Slurm ``--json`` response carries a non-empty errors list."""


class MalformedOutputError(ValueError):
    """Raised when legacy delimited output cannot be split into rows."""


def new_error_counter(name: str, documentation: str) -> Counter:
    """Create an unregistered scrape error counter.

    The counter is registered explicitly alongside its collector, never on
    the global registry.
    """
    return Counter(name, documentation, registry=None)


class SlurmMetricFetcher(abc.ABC, Generic[T]):
    """Base class for JSON and CLI-fallback fetchers.

    Subclasses implement ``_fetch`` (scrape and parse) and
    ``scrape_duration``; caching, throttling and error accounting live here.
    """

    def __init__(self, cache: AtomicThrottledCache[T], error_counter: Counter):
        self._cache = cache
        self._error_counter = error_counter

    def fetch_metrics(self) -> T:
        """Return the current snapshot, refreshing it if the cache is stale.

        Raises:
            Exception: Whatever the underlying scrape or parse raised. The
                previous snapshot stays cached.
        """
        return self._cache.fetch_or_throttle(self._fetch)

    def scrape_error(self) -> Counter:
        """Monotonic count of upstream errors and malformed output."""
        return self._error_counter

    @property
    def cache(self) -> AtomicThrottledCache[T]:
        return self._cache

    @abc.abstractmethod
    def scrape_duration(self) -> float:
        """Wall time in seconds of the most recent underlying command."""

    @abc.abstractmethod
    def _fetch(self) -> T:
        """Scrape and parse a fresh snapshot."""

    def _decode(self, raw: bytes, model: type[ResponseT], source: str) -> ResponseT:
        """Decode a ``--json`` payload and apply the upstream error policy.

        Args:
            raw: Command output.
            model: Response envelope to validate against.
            source: Command name used in log events.

        Returns:
            The validated response.

        Raises:
            pydantic.ValidationError: If the payload is not valid JSON or
                does not match the envelope.
            UpstreamError: If the response reports errors. The error counter
                is incremented once per reported error.
        """
        try:
            response = model.model_validate_json(raw)
        except pydantic.ValidationError as e:
            logger.error(
                "Failed to decode JSON output",
                source=source,
                error_count=e.error_count(),
            )
            raise

        if response.errors:
            for error in response.errors:
                logger.error(
                    "Slurm error response",
                    source=source,
                    error_message=error,
                )
            self._error_counter.inc(len(response.errors))
            raise UpstreamError(response.errors[0])
        return response

    def _read_delimited(
        self,
        raw: bytes,
        delimiter: str,
        source: str,
    ) -> list[list[str]]:
        """Split legacy delimited output into rows.

        Quoting is permissive. Blank lines are skipped and empty or
        whitespace-only output yields no rows. Every row must have the same
        number of fields as the first.

        Raises:
            MalformedOutputError: If the rows are inconsistent. The error
                counter is incremented by one.
        """
        text = raw.decode(errors="replace").strip()
        if not text:
            return []

        try:
            rows = [
                row
                for row in csv.reader(
                    io.StringIO(text),
                    delimiter=delimiter,
                    strict=False,
                    skipinitialspace=True,
                )
                if row
            ]
            expected = len(rows[0])
            for line_number, row in enumerate(rows, start=1):
                if len(row) != expected:
                    msg = (
                        f"line {line_number}: expected {expected} fields, "
                        f"got {len(row)}"
                    )
                    raise MalformedOutputError(msg)
        except (csv.Error, MalformedOutputError) as e:
            logger.error(
                "Failed to parse delimited output",
                source=source,
                error=str(e),
            )
            self._error_counter.inc()
            if isinstance(e, MalformedOutputError):
                raise
            raise MalformedOutputError(str(e)) from e
        return rows
