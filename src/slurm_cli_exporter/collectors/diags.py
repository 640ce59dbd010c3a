"""Scheduler diagnostics collector for Slurm.

Reads slurmctld statistics from ``sdiag`` and exposes daemon queue sizes,
job counters, main and backfill scheduler cycle times and RPC statistics
per message type and per user. All counters are reset by slurmctld at its
statistics interval, so everything is exposed as a gauge.
"""

import math
import re
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
from ..fetcher import MalformedOutputError, SlurmMetricFetcher, new_error_counter

logger = structlog.get_logger(__name__)

# (metric name, help text, DiagMetrics attribute)
DIAG_GAUGES = (
    ("slurm_daemon_thread_count", "slurmctld server thread count", "thread_count"),
    ("slurm_daemon_agent_queue_size", "slurmctld agent queue size", "agent_queue_size"),
    ("slurm_dbd_agent_queue_size", "slurmdbd agent queue size", "dbd_agent_queue_size"),
    ("slurm_sdiag_jobs_submitted", "jobs submitted since reset", "jobs_submitted"),
    ("slurm_sdiag_jobs_started", "jobs started since reset", "jobs_started"),
    ("slurm_sdiag_jobs_completed", "jobs completed since reset", "jobs_completed"),
    ("slurm_sdiag_jobs_canceled", "jobs canceled since reset", "jobs_canceled"),
    ("slurm_sdiag_jobs_failed", "jobs failed since reset", "jobs_failed"),
    (
        "slurm_sched_last_cycle",
        "main scheduler last cycle in microseconds",
        "sched_last_cycle",
    ),
    (
        "slurm_sched_mean_cycle",
        "main scheduler mean cycle in microseconds",
        "sched_mean_cycle",
    ),
    (
        "slurm_backfill_last_cycle",
        "backfill scheduler last cycle in microseconds",
        "backfill_last_cycle",
    ),
    (
        "slurm_backfill_mean_cycle",
        "backfill scheduler mean cycle in microseconds",
        "backfill_mean_cycle",
    ),
    ("slurm_backfilled_jobs", "jobs started by backfill", "backfilled_jobs"),
)

# (metric name, help text, label, DiagMetrics attribute, RpcStat attribute)
RPC_GAUGES = (
    ("slurm_rpc_msg_type_count", "rpc count per type", "type", "rpc_types", "count"),
    (
        "slurm_rpc_msg_type_avg_time",
        "rpc average time per message type in microseconds",
        "type",
        "rpc_types",
        "average_time",
    ),
    (
        "slurm_rpc_msg_type_total_time",
        "rpc total time per message type in microseconds",
        "type",
        "rpc_types",
        "total_time",
    ),
    ("slurm_rpc_user_count", "rpc count per user", "user", "rpc_users", "count"),
    (
        "slurm_rpc_user_avg_time",
        "rpc average time per user in microseconds",
        "user",
        "rpc_users",
        "average_time",
    ),
    (
        "slurm_rpc_user_total_time",
        "rpc total time per user in microseconds",
        "user",
        "rpc_users",
        "total_time",
    ),
)

# Plain sdiag output: section headers and the "Key: value" lines read in each.
SECTION_HEADERS = {
    "Main schedule statistics": "main",
    "Backfilling stats": "backfill",
    "Remote Procedure Call statistics by message type": "rpc_type",
    "Remote Procedure Call statistics by user": "rpc_user",
    "Pending RPC statistics": "other",
}
TEXT_FIELDS = {
    (None, "Server thread count"): "thread_count",
    (None, "Agent queue size"): "agent_queue_size",
    (None, "DBD Agent queue size"): "dbd_agent_queue_size",
    (None, "Jobs submitted"): "jobs_submitted",
    (None, "Jobs started"): "jobs_started",
    (None, "Jobs completed"): "jobs_completed",
    (None, "Jobs canceled"): "jobs_canceled",
    (None, "Jobs failed"): "jobs_failed",
    ("main", "Last cycle"): "sched_last_cycle",
    ("main", "Mean cycle"): "sched_mean_cycle",
    ("backfill", "Total backfilled jobs (since last slurm start)"): "backfilled_jobs",
    ("backfill", "Last cycle"): "backfill_last_cycle",
    ("backfill", "Mean cycle"): "backfill_mean_cycle",
}
RPC_LINE = re.compile(
    r"^\s*(?P<name>\S+)\s+\(\s*\d+\)\s+count:(?P<count>\S+)\s+"
    r"ave_time:(?P<average_time>\S+)\s+total_time:(?P<total_time>\S+)",
)


@dataclass(frozen=True)
class RpcStat:
    """RPC statistics for one message type or one user."""

    name: str
    count: float = 0.0
    average_time: float = 0.0
    total_time: float = 0.0


@dataclass(frozen=True)
class DiagMetrics:
    """slurmctld statistics at one point in time."""

    thread_count: float = 0.0
    agent_queue_size: float = 0.0
    dbd_agent_queue_size: float = 0.0
    jobs_submitted: float = 0.0
    jobs_started: float = 0.0
    jobs_completed: float = 0.0
    jobs_canceled: float = 0.0
    jobs_failed: float = 0.0
    sched_last_cycle: float = 0.0
    sched_mean_cycle: float = 0.0
    backfill_last_cycle: float = 0.0
    backfill_mean_cycle: float = 0.0
    backfilled_jobs: float = 0.0
    rpc_types: tuple[RpcStat, ...] = ()
    rpc_users: tuple[RpcStat, ...] = ()


def _parse_quantity(value: str | float | None) -> float:
    """Parse a statistic; missing, negative or non-finite values are zero."""
    if value is None:
        return 0.0
    try:
        quantity = float(value)
    except ValueError:
        logger.debug("Failed to parse sdiag value", value=value)
        return 0.0
    if not math.isfinite(quantity) or quantity < 0:
        logger.debug("Failed to parse sdiag value", value=value)
        return 0.0
    return quantity


def _transform_rpc(raw: slurmcli.types.RawRpcStat, name: str) -> RpcStat:
    return RpcStat(
        name=name,
        count=_parse_quantity(raw.count),
        average_time=_parse_quantity(raw.average_time),
        total_time=_parse_quantity(raw.total_time),
    )


def _transform_statistics(raw: slurmcli.types.RawDiagStatistics) -> DiagMetrics:
    """Transform the sdiag --json statistics object into DiagMetrics."""
    return DiagMetrics(
        thread_count=_parse_quantity(raw.server_thread_count),
        agent_queue_size=_parse_quantity(raw.agent_queue_size),
        dbd_agent_queue_size=_parse_quantity(raw.dbd_agent_queue_size),
        jobs_submitted=_parse_quantity(raw.jobs_submitted),
        jobs_started=_parse_quantity(raw.jobs_started),
        jobs_completed=_parse_quantity(raw.jobs_completed),
        jobs_canceled=_parse_quantity(raw.jobs_canceled),
        jobs_failed=_parse_quantity(raw.jobs_failed),
        sched_last_cycle=_parse_quantity(raw.schedule_cycle_last),
        sched_mean_cycle=_parse_quantity(raw.schedule_cycle_mean),
        backfill_last_cycle=_parse_quantity(raw.bf_cycle_last),
        backfill_mean_cycle=_parse_quantity(raw.bf_cycle_mean),
        backfilled_jobs=_parse_quantity(raw.bf_backfilled_jobs),
        rpc_types=tuple(
            _transform_rpc(rpc, rpc.message_type) for rpc in raw.rpcs_by_message_type
        ),
        rpc_users=tuple(_transform_rpc(rpc, rpc.user) for rpc in raw.rpcs_by_user),
    )


def parse_sdiag_text(text: str) -> DiagMetrics | None:
    """Parse plain ``sdiag`` output.

    Returns:
        The parsed statistics, or None if the text holds no recognizable
        slurmctld statistics.
    """
    values: dict[str, float] = {}
    rpcs: dict[str, list[RpcStat]] = {"rpc_type": [], "rpc_user": []}
    section = None

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        header = next((h for h in SECTION_HEADERS if stripped.startswith(h)), None)
        if header is not None:
            section = SECTION_HEADERS[header]
            continue

        if section in rpcs:
            match = RPC_LINE.match(line)
            if match is None:
                logger.debug("Skipping sdiag RPC line", line=stripped)
                continue
            rpcs[section].append(
                RpcStat(
                    name=match.group("name"),
                    count=_parse_quantity(match.group("count")),
                    average_time=_parse_quantity(match.group("average_time")),
                    total_time=_parse_quantity(match.group("total_time")),
                ),
            )
            continue

        key, sep, value = stripped.partition(":")
        attribute = TEXT_FIELDS.get((section, key.strip()))
        if sep and attribute is not None:
            tokens = value.split()
            values[attribute] = _parse_quantity(tokens[0] if tokens else None)

    if "thread_count" not in values:
        return None
    return DiagMetrics(
        **values,
        rpc_types=tuple(rpcs["rpc_type"]),
        rpc_users=tuple(rpcs["rpc_user"]),
    )


class DiagJsonFetcher(SlurmMetricFetcher[DiagMetrics]):
    """Reads scheduler statistics from ``sdiag --json``."""

    def __init__(
        self,
        scraper: slurmcli.SlurmByteScraper,
        cache: AtomicThrottledCache[DiagMetrics],
        error_counter: Counter,
    ):
        super().__init__(cache, error_counter)
        self._scraper = scraper

    def _fetch(self) -> DiagMetrics:
        raw = self._scraper.fetch_raw_bytes()
        response = self._decode(raw, slurmcli.types.SdiagResponse, source="sdiag")
        return _transform_statistics(response.statistics)

    def scrape_duration(self) -> float:
        return self._scraper.duration()


class DiagCliFallbackFetcher(SlurmMetricFetcher[DiagMetrics]):
    """Reads scheduler statistics from plain ``sdiag`` output."""

    def __init__(
        self,
        scraper: slurmcli.SlurmByteScraper,
        cache: AtomicThrottledCache[DiagMetrics],
        error_counter: Counter,
    ):
        super().__init__(cache, error_counter)
        self._scraper = scraper

    def _fetch(self) -> DiagMetrics:
        text = self._scraper.fetch_raw_bytes().decode(errors="replace").strip()
        if not text:
            return DiagMetrics()

        metrics = parse_sdiag_text(text)
        if metrics is None:
            msg = "no slurmctld statistics in sdiag output"
            logger.error("Failed to parse sdiag output", source="sdiag", error=msg)
            self._error_counter.inc()
            raise MalformedOutputError(msg)
        return metrics

    def scrape_duration(self) -> float:
        return self._scraper.duration()


def describe_metrics() -> Iterator[Metric]:
    """Yield empty families for every diagnostics gauge."""
    for name, documentation, _ in DIAG_GAUGES:
        yield GaugeMetricFamily(name, documentation)
    for name, documentation, label, _, _ in RPC_GAUGES:
        yield GaugeMetricFamily(name, documentation, labels=[label])


def generate_metrics(metrics: DiagMetrics) -> Iterator[Metric]:
    """Generate Prometheus metrics from a diagnostics snapshot.

    Args:
        metrics: Diagnostics snapshot.

    Yields:
        Prometheus Metric objects.
    """
    for name, documentation, attribute in DIAG_GAUGES:
        yield GaugeMetricFamily(name, documentation, value=getattr(metrics, attribute))

    for name, documentation, label, group, value in RPC_GAUGES:
        family = GaugeMetricFamily(name, documentation, labels=[label])
        for rpc in getattr(metrics, group):
            family.add_metric([rpc.name], getattr(rpc, value))
        yield family


def new_diag_fetcher(config: ExporterConfig) -> SlurmMetricFetcher[DiagMetrics]:
    """Build the diagnostics fetcher variant selected by ``cli_fallback``."""
    cli_opts = config.cli_opts()
    scraper = slurmcli.CliScraper(*cli_opts.sdiag, timeout=cli_opts.timeout)
    cache = AtomicThrottledCache[DiagMetrics](config.poll_limit)
    error_counter = new_error_counter("diag_scrape_errors", "sdiag scrape errors")

    if cli_opts.fallback:
        return DiagCliFallbackFetcher(scraper, cache, error_counter)
    return DiagJsonFetcher(scraper, cache, error_counter)


def new_diag_collector(config: ExporterConfig) -> SlurmCollector[DiagMetrics]:
    """Create the scheduler diagnostics collector for the configured mode."""
    return SlurmCollector(
        fetcher=new_diag_fetcher(config),
        describer=describe_metrics,
        generator=generate_metrics,
        domain="diag",
    )
