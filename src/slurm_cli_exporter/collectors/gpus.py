"""GPU metrics collector for Slurm.

Totals GPUs from the per-node GRES strings reported by sinfo and allocated
GPUs from the per-job GRES/TRES strings reported by sacct, then exposes
allocated, idle, total and utilization gauges for the whole cluster.
"""

import math
from collections.abc import Iterator
from dataclasses import dataclass

import structlog
from prometheus_client import Counter
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.metrics_core import Metric

from .. import slurmcli
from ..cache import AtomicThrottledCache
from ..collector import SlurmCollector
from ..config import ExporterConfig
from ..fetcher import SlurmMetricFetcher, new_error_counter

logger = structlog.get_logger(__name__)

GRES_SENTINELS = frozenset({"", "N/A", "(null)"})
TRES_GPU_PREFIX = "gres/gpu"
MIN_GRES_PARTS = 2  # Minimum parts needed: "gpu:count"
SINFO_GRES_COLUMN = 0

# (metric name, help text, GpuMetrics attribute)
GPU_GAUGES = (
    ("slurm_gpus_alloc", "Allocated GPUs", "alloc"),
    ("slurm_gpus_idle", "Idle GPUs", "idle"),
    ("slurm_gpus_total", "Total GPUs", "total"),
    ("slurm_gpus_utilization", "Total GPU utilization", "utilization"),
)


@dataclass(frozen=True)
class GpuMetrics:
    """Cluster-wide GPU allocation at one point in time."""

    alloc: float = 0.0
    idle: float = 0.0
    total: float = 0.0
    utilization: float = 0.0

    @classmethod
    def from_counts(cls, total: float, alloc: float) -> "GpuMetrics":
        """Build a snapshot, deriving idle GPUs and utilization."""
        return cls(
            alloc=alloc,
            idle=total - alloc,
            total=total,
            utilization=alloc / total if total > 0 else 0.0,
        )


def parse_gres_gpu_count(gres: str) -> float:
    """Parse the GPU count from a GRES or TRES string.

    Never raises: malformed tokens count as zero so one bad record cannot
    fail a whole scrape.

    Format examples:
        "" / "N/A" / "(null)" -> 0.0
        "cpu=4,mem=1024M,gres/gpu=2" -> 2.0  (TRES, first gres/gpu key)
        "gpu:2,gpu:tesla:1" -> 3.0  (legacy GRES, summed)
        "gpu:a100:8(IDX:0-7)" -> 8.0  (index annotation ignored)
        "GPU:3" -> 3.0

    Args:
        gres: GRES or TRES string from sinfo or sacct.

    Returns:
        Number of GPUs, 0.0 if none could be parsed.
    """
    if gres in GRES_SENTINELS:
        return 0.0

    if "=" in gres:
        return _parse_tres_gpu_count(gres)

    if "," in gres:
        return sum(parse_gres_gpu_count(part.strip()) for part in gres.split(","))

    # Remove trailing index info like (IDX:0-1)
    token = gres.split("(", 1)[0]
    if "gpu" not in token.lower():
        return 0.0

    # gpu:count or gpu:type:count, the count is always last
    parts = token.split(":")
    if len(parts) < MIN_GRES_PARTS:
        return 0.0

    count = _parse_count(parts[-1])
    if count is None:
        logger.debug("Failed to parse GPU count from GRES string", gres=gres)
        return 0.0
    return count


def _parse_tres_gpu_count(tres: str) -> float:
    """Return the first parseable gres/gpu value of a TRES string."""
    for part in tres.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep or not value or not key.startswith(TRES_GPU_PREFIX):
            continue
        count = _parse_count(value)
        if count is not None:
            return count
        logger.debug("Failed to parse GPU count from TRES string", tres=tres)
    return 0.0


def _parse_count(value: str) -> float | None:
    """Parse a GPU count, rejecting negative and non-finite numbers."""
    try:
        count = float(value)
    except ValueError:
        return None
    if not math.isfinite(count) or count < 0:
        return None
    return count


class GpuJsonFetcher(SlurmMetricFetcher[GpuMetrics]):
    """Reads GPU totals from ``sinfo --json`` and allocations from ``sacct --json``."""

    def __init__(
        self,
        sinfo_scraper: slurmcli.SlurmByteScraper,
        sacct_scraper: slurmcli.SlurmByteScraper,
        cache: AtomicThrottledCache[GpuMetrics],
        error_counter: Counter,
    ):
        super().__init__(cache, error_counter)
        self._sinfo_scraper = sinfo_scraper
        self._sacct_scraper = sacct_scraper

    def _fetch(self) -> GpuMetrics:
        total = self._fetch_total_gpus()
        alloc = self._fetch_allocated_gpus()
        return GpuMetrics.from_counts(total=total, alloc=alloc)

    def _fetch_total_gpus(self) -> float:
        raw = self._sinfo_scraper.fetch_raw_bytes()
        response = self._decode(raw, slurmcli.types.SinfoGpuResponse, source="sinfo")
        return sum(parse_gres_gpu_count(node.gres) for node in response.nodes)

    def _fetch_allocated_gpus(self) -> float:
        raw = self._sacct_scraper.fetch_raw_bytes()
        response = self._decode(raw, slurmcli.types.SacctGpuResponse, source="sacct")
        return sum(parse_gres_gpu_count(job.allocated_gres) for job in response.jobs)

    def scrape_duration(self) -> float:
        return self._sinfo_scraper.duration()


class GpuCliFallbackFetcher(SlurmMetricFetcher[GpuMetrics]):
    """Reads GPU counts from legacy sinfo ``-O Gres`` and sacct ``--parsable2`` output.

    sinfo rows are pipe-delimited with the GRES string in the first column;
    sacct prints one optionally quoted AllocGRES value per line.
    """

    def __init__(
        self,
        sinfo_scraper: slurmcli.SlurmByteScraper,
        sacct_scraper: slurmcli.SlurmByteScraper,
        cache: AtomicThrottledCache[GpuMetrics],
        error_counter: Counter,
        delimiter: str = "|",
    ):
        super().__init__(cache, error_counter)
        self._sinfo_scraper = sinfo_scraper
        self._sacct_scraper = sacct_scraper
        self._delimiter = delimiter

    def _fetch(self) -> GpuMetrics:
        total = self._fetch_total_gpus()
        alloc = self._fetch_allocated_gpus()
        return GpuMetrics.from_counts(total=total, alloc=alloc)

    def _fetch_total_gpus(self) -> float:
        raw = self._sinfo_scraper.fetch_raw_bytes()
        rows = self._read_delimited(raw, self._delimiter, source="sinfo")
        return sum(parse_gres_gpu_count(row[SINFO_GRES_COLUMN].strip()) for row in rows)

    def _fetch_allocated_gpus(self) -> float:
        raw = self._sacct_scraper.fetch_raw_bytes()
        total = 0.0
        for line in raw.decode(errors="replace").splitlines():
            line = line.strip()
            if not line:
                continue
            total += parse_gres_gpu_count(line.strip('"'))
        return total

    def scrape_duration(self) -> float:
        return self._sinfo_scraper.duration()


def describe_metrics() -> Iterator[Metric]:
    """Yield empty families for every GPU gauge."""
    for name, documentation, _ in GPU_GAUGES:
        yield GaugeMetricFamily(name, documentation)


def generate_metrics(metrics: GpuMetrics) -> Iterator[Metric]:
    """Generate one unlabelled gauge per GpuMetrics field.

    Args:
        metrics: GPU snapshot.

    Yields:
        Prometheus Metric objects.
    """
    for name, documentation, attribute in GPU_GAUGES:
        yield GaugeMetricFamily(name, documentation, value=getattr(metrics, attribute))


def new_gpu_fetcher(config: ExporterConfig) -> SlurmMetricFetcher[GpuMetrics]:
    """Build the GPU fetcher variant selected by ``cli_fallback``."""
    cli_opts = config.cli_opts()
    sinfo_scraper = slurmcli.CliScraper(*cli_opts.sinfo_gpu, timeout=cli_opts.timeout)
    sacct_scraper = slurmcli.CliScraper(*cli_opts.sacct_gpu, timeout=cli_opts.timeout)
    cache = AtomicThrottledCache[GpuMetrics](config.poll_limit)
    error_counter = new_error_counter("gpu_scrape_errors", "GPU scrape errors")

    if cli_opts.fallback:
        return GpuCliFallbackFetcher(sinfo_scraper, sacct_scraper, cache, error_counter)
    return GpuJsonFetcher(sinfo_scraper, sacct_scraper, cache, error_counter)


def new_gpu_collector(config: ExporterConfig) -> SlurmCollector[GpuMetrics]:
    """Create the GPU collector for the configured mode."""
    return SlurmCollector(
        fetcher=new_gpu_fetcher(config),
        describer=describe_metrics,
        generator=generate_metrics,
        domain="gpu",
    )
