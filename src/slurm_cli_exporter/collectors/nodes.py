"""Node metrics collector for Slurm.

Fetches node information from sinfo and generates Prometheus metrics for
node states, CPU and memory, aggregated across all nodes. The JSON variant
reads ``sinfo --json``; the fallback variant reads the pipe-delimited
``sinfo -O`` output, which has one row per node and partition.
"""

from collections.abc import Iterator
from dataclasses import dataclass, replace

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

MB = 1e6

# (metric name, help text, labels)
NODE_GAUGES = (
    ("slurm_node_count_per_state", "nodes per state", ["state"]),
    ("slurm_cpus_total", "Total cpus", []),
    ("slurm_cpus_idle", "Total idle cpus", []),
    ("slurm_cpus_allocated", "Total allocated cpus", []),
    ("slurm_cpu_load", "Total cpu load", []),
    ("slurm_mem_real", "Total real memory in bytes", []),
    ("slurm_mem_free", "Total free memory in bytes", []),
    ("slurm_mem_alloc", "Total allocated memory in bytes", []),
)


@dataclass(frozen=True)
class NodeMetric:
    """Represents metrics for a single Slurm node.

    Memory values are in bytes, CPU counts are floats to support fractional
    allocations. Instances live in a shared cached snapshot and are never
    modified.
    """

    name: str
    state: str
    cpus: float = 0.0
    alloc_cpus: float = 0.0
    idle_cpus: float = 0.0
    cpu_load: float = 0.0
    real_memory: float = 0.0
    free_memory: float = 0.0
    alloc_memory: float = 0.0
    partitions: tuple[str, ...] = ()


@dataclass
class NodeSummaryMetric:
    """Aggregated CPU and memory metrics across all nodes."""

    cpus: float = 0.0
    idle_cpus: float = 0.0
    alloc_cpus: float = 0.0
    cpu_load: float = 0.0
    real_memory: float = 0.0
    free_memory: float = 0.0
    alloc_memory: float = 0.0


def _to_float(value: str | float | None) -> float:
    """Convert a numeric field, treating unset or malformed values as zero."""
    if value is None:
        return 0.0
    try:
        return float(value)
    except ValueError:
        logger.debug("Failed to parse numeric node field", value=value)
        return 0.0


def _transform_node(raw: slurmcli.types.RawNodeData) -> NodeMetric:
    """Transform a raw sinfo --json node record into NodeMetric.

    Applies unit conversions (MB to bytes, cpu_load scaling) and computes
    idle CPUs.

    Args:
        raw: Raw node data from sinfo --json.

    Returns:
        Transformed NodeMetric with all derived fields.
    """
    # cpu_load is reported as an integer (load * 100)
    cpu_load = _to_float(raw.cpu_load) / 100.0

    cpus = _to_float(raw.cpus)
    alloc_cpus = _to_float(raw.alloc_cpus)

    return NodeMetric(
        name=raw.hostname or raw.name,
        state=raw.state.lower(),
        cpus=cpus,
        alloc_cpus=alloc_cpus,
        idle_cpus=cpus - alloc_cpus,
        cpu_load=cpu_load,
        real_memory=_to_float(raw.real_memory) * MB,
        free_memory=_to_float(raw.free_mem) * MB,
        alloc_memory=_to_float(raw.alloc_memory) * MB,
        partitions=tuple(raw.partitions or ()),
    )


def _parse_cpus_state(cpus_state: str) -> tuple[float, float, float]:
    """Parse sinfo's CPUsState "allocated/idle/other/total" field.

    Returns:
        Tuple of (allocated, idle, total), zeros if malformed.
    """
    parts = cpus_state.split("/")
    if len(parts) != 4:  # noqa: PLR2004
        logger.debug("Unexpected CPUsState field", cpus_state=cpus_state)
        return 0.0, 0.0, 0.0
    alloc, idle, _other, total = (_to_float(p) for p in parts)
    return alloc, idle, total


def _transform_row(row: list[str]) -> NodeMetric:
    """Transform one sinfo -O row into NodeMetric.

    Columns: StateCompact, Memory, NodeHost, CPUsLoad, Partition, FreeMem,
    CPUsState, Weight, AllocMem.
    """
    (
        state,
        memory,
        host,
        cpu_load,
        partition,
        free_mem,
        cpus_state,
        _weight,
        alloc_mem,
    ) = (column.strip() for column in row[:9])
    alloc_cpus, idle_cpus, cpus = _parse_cpus_state(cpus_state)
    return NodeMetric(
        name=host,
        state=state.lower(),
        cpus=cpus,
        alloc_cpus=alloc_cpus,
        idle_cpus=idle_cpus,
        cpu_load=_to_float(cpu_load),
        real_memory=_to_float(memory) * MB,
        free_memory=_to_float(free_mem) * MB,
        alloc_memory=_to_float(alloc_mem) * MB,
        partitions=(partition,) if partition else (),
    )


class NodeJsonFetcher(SlurmMetricFetcher[list[NodeMetric]]):
    """Reads nodes from ``sinfo --json``."""

    def __init__(
        self,
        scraper: slurmcli.SlurmByteScraper,
        cache: AtomicThrottledCache[list[NodeMetric]],
        error_counter: Counter,
    ):
        super().__init__(cache, error_counter)
        self._scraper = scraper

    def _fetch(self) -> list[NodeMetric]:
        raw = self._scraper.fetch_raw_bytes()
        response = self._decode(raw, slurmcli.types.SinfoNodeResponse, source="sinfo")
        return [_transform_node(node) for node in response.nodes]

    def scrape_duration(self) -> float:
        return self._scraper.duration()


class NodeCliFallbackFetcher(SlurmMetricFetcher[list[NodeMetric]]):
    """Reads nodes from pipe-delimited ``sinfo -h -O`` output.

    A node in several partitions appears once per partition; rows are
    merged so every node is counted once.
    """

    columns = 9

    def __init__(
        self,
        scraper: slurmcli.SlurmByteScraper,
        cache: AtomicThrottledCache[list[NodeMetric]],
        error_counter: Counter,
        delimiter: str = "|",
    ):
        super().__init__(cache, error_counter)
        self._scraper = scraper
        self._delimiter = delimiter

    def _fetch(self) -> list[NodeMetric]:
        raw = self._scraper.fetch_raw_bytes()
        rows = self._read_delimited(raw, self._delimiter, source="sinfo")
        if rows and len(rows[0]) < self.columns:
            msg = f"expected {self.columns} sinfo columns, got {len(rows[0])}"
            logger.error("Failed to parse delimited output", source="sinfo", error=msg)
            self._error_counter.inc()
            raise MalformedOutputError(msg)

        nodes: dict[str, NodeMetric] = {}
        for row in rows:
            node = _transform_row(row)
            seen = nodes.get(node.name)
            if seen is not None:
                node = replace(
                    seen,
                    partitions=seen.partitions + node.partitions,
                )
            nodes[node.name] = node
        return list(nodes.values())

    def scrape_duration(self) -> float:
        return self._scraper.duration()


def _aggregate(nodes: list[NodeMetric]) -> NodeSummaryMetric:
    """Aggregate CPU and memory metrics across all nodes."""
    summary = NodeSummaryMetric()

    for node in nodes:
        summary.cpus += node.cpus
        summary.idle_cpus += node.idle_cpus
        summary.alloc_cpus += node.alloc_cpus
        summary.cpu_load += node.cpu_load
        summary.real_memory += node.real_memory
        summary.free_memory += node.free_memory
        summary.alloc_memory += node.alloc_memory

    return summary


def _count_nodes_by_state(nodes: list[NodeMetric]) -> dict[str, int]:
    """Count nodes grouped by state.

    Args:
        nodes: List of node metrics.

    Returns:
        Dictionary mapping state name to node count.
    """
    node_count_per_state: dict[str, int] = {}

    for node in nodes:
        node_count_per_state[node.state] = node_count_per_state.get(node.state, 0) + 1

    return node_count_per_state


def describe_metrics() -> Iterator[Metric]:
    """Yield empty families for every node gauge."""
    for name, documentation, labels in NODE_GAUGES:
        yield GaugeMetricFamily(name, documentation, labels=labels)


def generate_metrics(nodes: list[NodeMetric]) -> Iterator[Metric]:
    """Generate Prometheus metrics from node data.

    Creates aggregate metrics for node counts by state, total/idle/allocated
    CPUs, CPU load and memory.

    Args:
        nodes: List of node metrics.

    Yields:
        Prometheus Metric objects.
    """
    # Export node count per state metric
    node_count_per_state = GaugeMetricFamily(
        "slurm_node_count_per_state",
        "nodes per state",
        labels=["state"],
    )
    for state, count in _count_nodes_by_state(nodes).items():
        node_count_per_state.add_metric([state], count)
    yield node_count_per_state

    summary = _aggregate(nodes)
    yield GaugeMetricFamily("slurm_cpus_total", "Total cpus", value=summary.cpus)
    yield GaugeMetricFamily(
        "slurm_cpus_idle",
        "Total idle cpus",
        value=summary.idle_cpus,
    )
    yield GaugeMetricFamily(
        "slurm_cpus_allocated",
        "Total allocated cpus",
        value=summary.alloc_cpus,
    )
    yield GaugeMetricFamily("slurm_cpu_load", "Total cpu load", value=summary.cpu_load)
    yield GaugeMetricFamily(
        "slurm_mem_real",
        "Total real memory in bytes",
        value=summary.real_memory,
    )
    yield GaugeMetricFamily(
        "slurm_mem_free",
        "Total free memory in bytes",
        value=summary.free_memory,
    )
    yield GaugeMetricFamily(
        "slurm_mem_alloc",
        "Total allocated memory in bytes",
        value=summary.alloc_memory,
    )


def new_node_fetcher(config: ExporterConfig) -> SlurmMetricFetcher[list[NodeMetric]]:
    """Build the node fetcher variant selected by ``cli_fallback``."""
    cli_opts = config.cli_opts()
    scraper = slurmcli.CliScraper(*cli_opts.sinfo, timeout=cli_opts.timeout)
    cache = AtomicThrottledCache[list[NodeMetric]](config.poll_limit)
    error_counter = new_error_counter("node_scrape_errors", "node scrape errors")

    if cli_opts.fallback:
        return NodeCliFallbackFetcher(scraper, cache, error_counter)
    return NodeJsonFetcher(scraper, cache, error_counter)


def new_node_collector(config: ExporterConfig) -> SlurmCollector[list[NodeMetric]]:
    """Create the node collector for the configured mode."""
    return SlurmCollector(
        fetcher=new_node_fetcher(config),
        describer=describe_metrics,
        generator=generate_metrics,
        domain="node",
    )
