"""Job metrics collector for Slurm.

Fetches job information from squeue and generates Prometheus metrics for
job counts per state and CPU/memory allocation of running jobs per user
and account.
"""

import re
from collections.abc import Iterator
from dataclasses import dataclass

import pydantic
import structlog
from prometheus_client import Counter
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.metrics_core import Metric

from .. import slurmcli
from ..cache import AtomicThrottledCache
from ..collector import SlurmCollector
from ..config import ExporterConfig
from ..fetcher import MalformedOutputError, SlurmMetricFetcher, new_error_counter

logger = structlog.get_logger(__name__)

RUNNING = "running"

MEMORY_PATTERN = re.compile(
    r"^(?P<value>\d+(?:\.\d+)?)(?P<unit>[KMGT]?)$",
    re.IGNORECASE,
)
MEMORY_UNITS_MB = {"k": 1 / 1024, "": 1, "m": 1, "g": 1024, "t": 1024 * 1024}

# (metric name, help text, label, JobMetric grouping attribute, summed attribute)
ALLOCATION_GAUGES = (
    (
        "slurm_user_cpus_alloc",
        "cpus allocated to running jobs per user",
        "username",
        "user_name",
        "cpus",
    ),
    (
        "slurm_user_mem_alloc",
        "MiB allocated to running jobs per user",
        "username",
        "user_name",
        "total_memory_mb",
    ),
    (
        "slurm_account_cpus_alloc",
        "cpus allocated to running jobs per account",
        "account",
        "account",
        "cpus",
    ),
)


@dataclass(frozen=True)
class JobMetric:
    """Represents metrics for a single Slurm job.

    Normalized job data from squeue with computed fields.
    """

    job_id: int
    account: str = ""
    partition: str = ""
    user_name: str = ""
    job_state: str = ""
    cpus: int | None = None
    memory_per_node: int | None = None
    memory_per_cpu: int | None = None

    @property
    def total_memory_mb(self) -> int:
        """Calculate total memory in MiB.

        Returns memory_per_node if set, otherwise memory_per_cpu * cpus,
        or 0 if neither is available.
        """
        if self.memory_per_node is not None and self.memory_per_node > 0:
            return self.memory_per_node
        if (
            self.memory_per_cpu is not None
            and self.memory_per_cpu > 0
            and self.cpus is not None
            and self.cpus > 0
        ):
            return self.memory_per_cpu * self.cpus
        return 0


def _parse_memory_mb(mem: str) -> int | None:
    """Parse squeue's min-memory field (e.g. "4000M", "4G") into MiB."""
    match = MEMORY_PATTERN.match(mem.strip())
    if match is None:
        logger.debug("Failed to parse job memory", mem=mem)
        return None
    value = float(match.group("value"))
    return int(value * MEMORY_UNITS_MB[match.group("unit").lower()])


def _transform_job(raw: slurmcli.types.RawJobData) -> JobMetric:
    """Transform a raw squeue --json job record into JobMetric.

    Args:
        raw: Raw job data from squeue --json.

    Returns:
        Transformed JobMetric with normalized fields.
    """
    return JobMetric(
        job_id=raw.job_id or 0,
        account=raw.account,
        partition=raw.partition,
        user_name=raw.user_name,
        job_state=raw.job_state.lower(),
        cpus=raw.cpus,
        memory_per_node=raw.memory_per_node,
        memory_per_cpu=raw.memory_per_cpu,
    )


def _transform_line(raw: slurmcli.types.RawJobLine) -> JobMetric:
    """Transform one fallback squeue line into JobMetric."""
    return JobMetric(
        job_id=raw.job_id,
        account=raw.account,
        partition=raw.partition,
        user_name=raw.user_name,
        job_state=raw.job_state.lower(),
        cpus=raw.cpus,
        memory_per_node=_parse_memory_mb(raw.mem),
    )


class JobJsonFetcher(SlurmMetricFetcher[list[JobMetric]]):
    """Reads jobs from ``squeue --json``."""

    def __init__(
        self,
        scraper: slurmcli.SlurmByteScraper,
        cache: AtomicThrottledCache[list[JobMetric]],
        error_counter: Counter,
    ):
        super().__init__(cache, error_counter)
        self._scraper = scraper

    def _fetch(self) -> list[JobMetric]:
        raw = self._scraper.fetch_raw_bytes()
        response = self._decode(raw, slurmcli.types.SqueueResponse, source="squeue")
        return [_transform_job(job) for job in response.jobs]

    def scrape_duration(self) -> float:
        return self._scraper.duration()


class JobCliFallbackFetcher(SlurmMetricFetcher[list[JobMetric]]):
    """Reads jobs from squeue output with one JSON object per line."""

    def __init__(
        self,
        scraper: slurmcli.SlurmByteScraper,
        cache: AtomicThrottledCache[list[JobMetric]],
        error_counter: Counter,
    ):
        super().__init__(cache, error_counter)
        self._scraper = scraper

    def _fetch(self) -> list[JobMetric]:
        raw = self._scraper.fetch_raw_bytes()
        jobs = []
        text = raw.decode(errors="replace")
        for line_number, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                job = slurmcli.types.RawJobLine.model_validate_json(line)
            except pydantic.ValidationError as e:
                logger.error(
                    "Failed to parse squeue line",
                    source="squeue",
                    line_number=line_number,
                    error_count=e.error_count(),
                )
                self._error_counter.inc()
                msg = f"line {line_number}: invalid squeue record"
                raise MalformedOutputError(msg) from e
            jobs.append(_transform_line(job))
        return jobs

    def scrape_duration(self) -> float:
        return self._scraper.duration()


def _sum_by(jobs: list[JobMetric], key: str, value: str) -> dict[str, float]:
    """Sum a numeric attribute of running jobs grouped by another attribute."""
    totals: dict[str, float] = {}
    for job in jobs:
        if job.job_state != RUNNING:
            continue
        group = getattr(job, key)
        totals[group] = totals.get(group, 0.0) + float(getattr(job, value) or 0)
    return totals


def describe_metrics() -> Iterator[Metric]:
    """Yield empty families for every job gauge."""
    yield GaugeMetricFamily(
        "slurm_job_count_per_state",
        "jobs per state",
        labels=["state"],
    )
    for name, documentation, label, _, _ in ALLOCATION_GAUGES:
        yield GaugeMetricFamily(name, documentation, labels=[label])


def generate_metrics(jobs: list[JobMetric]) -> Iterator[Metric]:
    """Generate Prometheus metrics from job data.

    Args:
        jobs: List of job metrics.

    Yields:
        Prometheus Metric objects.
    """
    job_count_per_state = GaugeMetricFamily(
        "slurm_job_count_per_state",
        "jobs per state",
        labels=["state"],
    )
    counts: dict[str, int] = {}
    for job in jobs:
        counts[job.job_state] = counts.get(job.job_state, 0) + 1
    for state, count in counts.items():
        job_count_per_state.add_metric([state], count)
    yield job_count_per_state

    for name, documentation, label, key, value in ALLOCATION_GAUGES:
        family = GaugeMetricFamily(name, documentation, labels=[label])
        for group, total in _sum_by(jobs, key, value).items():
            family.add_metric([group], total)
        yield family


def new_job_fetcher(config: ExporterConfig) -> SlurmMetricFetcher[list[JobMetric]]:
    """Build the job fetcher variant selected by ``cli_fallback``."""
    cli_opts = config.cli_opts()
    scraper = slurmcli.CliScraper(*cli_opts.squeue, timeout=cli_opts.timeout)
    cache = AtomicThrottledCache[list[JobMetric]](config.poll_limit)
    error_counter = new_error_counter("job_scrape_errors", "job scrape errors")

    if cli_opts.fallback:
        return JobCliFallbackFetcher(scraper, cache, error_counter)
    return JobJsonFetcher(scraper, cache, error_counter)


def new_job_collector(config: ExporterConfig) -> SlurmCollector[list[JobMetric]]:
    """Create the job collector for the configured mode."""
    return SlurmCollector(
        fetcher=new_job_fetcher(config),
        describer=describe_metrics,
        generator=generate_metrics,
        domain="job",
    )
