"""Prometheus collector implementation using composition pattern.

Provides a reusable collector that separates concerns between data fetching
(a cached SlurmMetricFetcher), metric description and metric generation.
"""

from collections.abc import Callable, Iterator
from typing import Generic, TypeAlias, TypeVar

import structlog
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .fetcher import SlurmMetricFetcher

logger = structlog.get_logger(__name__)

T = TypeVar("T")


MetricsDescriber: TypeAlias = Callable[[], Iterator[Metric]]
MetricsGenerator: TypeAlias = Callable[[T], Iterator[Metric]]


class SlurmCollector(Collector, Generic[T]):
    """Prometheus collector for one Slurm resource domain.

    Separates concerns through dependency injection:
    - Data fetching, parsing and caching (via the injected fetcher, which
      is either the JSON or the CLI-fallback variant)
    - Metric identity (via MetricsDescriber, independent of fetch outcome)
    - Metric generation (via MetricsGenerator)

    Collection is best-effort: a failed fetch is logged and yields nothing,
    leaving other collectors on the same registry unaffected.
    """

    def __init__(
        self,
        fetcher: SlurmMetricFetcher[T],
        describer: MetricsDescriber,
        generator: MetricsGenerator[T],
        domain: str,
    ):
        """Initialize the Slurm collector.

        Args:
            fetcher: Cached fetcher producing the domain snapshot.
            describer: Function yielding empty metric families, one per
                metric this collector can produce.
            generator: Function that generates Prometheus metrics from data.
            domain: Domain name for logging (e.g., "gpu", "node").
        """
        self.fetcher = fetcher
        self._describer = describer
        self._generator = generator
        self.domain = domain

    def describe(self) -> Iterator[Metric]:
        """Yield the static identity of every metric of this domain."""
        yield from self._describer()

    def collect(self) -> Iterator[Metric]:
        """Collect metrics for a Prometheus scrape.

        Yields:
            Domain metrics on success, nothing if the fetch failed.
        """
        try:
            data = self.fetcher.fetch_metrics()
        except Exception:
            logger.exception(
                "Failed to fetch metrics for collection",
                domain=self.domain,
            )
            return

        logger.debug(
            "Collected metrics",
            domain=self.domain,
            scrape_duration_seconds=round(self.fetcher.scrape_duration(), 3),
        )
        yield from self._generator(data)
