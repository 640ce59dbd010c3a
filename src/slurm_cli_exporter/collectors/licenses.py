"""License metrics collector for Slurm.

Reads cluster license counts from ``scontrol show lic`` and exposes total,
used, free and reserved counts per license name.
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
from ..fetcher import MalformedOutputError, SlurmMetricFetcher, new_error_counter

logger = structlog.get_logger(__name__)

NO_LICENSES = "No licenses configured"

# (metric name, help text, LicenseMetric attribute)
LICENSE_GAUGES = (
    ("slurm_lic_total", "slurm license total", "total"),
    ("slurm_lic_used", "slurm license used", "used"),
    ("slurm_lic_free", "slurm license free", "free"),
    ("slurm_lic_reserved", "slurm license reserved", "reserved"),
)


@dataclass(frozen=True)
class LicenseMetric:
    """Counts for one cluster or remote license."""

    name: str
    total: float = 0.0
    used: float = 0.0
    free: float = 0.0
    reserved: float = 0.0
    remote: bool = False


def _parse_quantity(value: str | int | None) -> float:
    """Parse a license count; missing, negative or non-finite values are zero."""
    if value is None:
        return 0.0
    try:
        quantity = float(value)
    except ValueError:
        logger.debug("Failed to parse license count", value=value)
        return 0.0
    if not math.isfinite(quantity) or quantity < 0:
        logger.debug("Failed to parse license count", value=value)
        return 0.0
    return quantity


def _transform_license(raw: slurmcli.types.RawLicenseData) -> LicenseMetric:
    return LicenseMetric(
        name=raw.name,
        total=_parse_quantity(raw.total),
        used=_parse_quantity(raw.used),
        free=_parse_quantity(raw.free),
        reserved=_parse_quantity(raw.reserved),
        remote=raw.remote,
    )


def _transform_line(fields: dict[str, str]) -> LicenseMetric:
    """Transform the key=value fields of one ``scontrol -o`` line."""
    return LicenseMetric(
        name=fields["LicenseName"],
        total=_parse_quantity(fields.get("Total")),
        used=_parse_quantity(fields.get("Used")),
        free=_parse_quantity(fields.get("Free")),
        reserved=_parse_quantity(fields.get("Reserved")),
        remote=fields.get("Remote", "no").lower() == "yes",
    )


class LicenseJsonFetcher(SlurmMetricFetcher[list[LicenseMetric]]):
    """Reads licenses from ``scontrol show lic --json``."""

    def __init__(
        self,
        scraper: slurmcli.SlurmByteScraper,
        cache: AtomicThrottledCache[list[LicenseMetric]],
        error_counter: Counter,
    ):
        super().__init__(cache, error_counter)
        self._scraper = scraper

    def _fetch(self) -> list[LicenseMetric]:
        raw = self._scraper.fetch_raw_bytes()
        response = self._decode(raw, slurmcli.types.LicenseResponse, source="scontrol")
        return [_transform_license(lic) for lic in response.licenses]

    def scrape_duration(self) -> float:
        return self._scraper.duration()


class LicenseCliFallbackFetcher(SlurmMetricFetcher[list[LicenseMetric]]):
    """Reads licenses from ``scontrol show lic --oneliner`` output.

    Each line holds space separated ``Key=Value`` pairs, for example
    ``LicenseName=matlab Total=10 Used=3 Free=7 Reserved=0 Remote=no``.
    """

    def __init__(
        self,
        scraper: slurmcli.SlurmByteScraper,
        cache: AtomicThrottledCache[list[LicenseMetric]],
        error_counter: Counter,
    ):
        super().__init__(cache, error_counter)
        self._scraper = scraper

    def _fetch(self) -> list[LicenseMetric]:
        text = self._scraper.fetch_raw_bytes().decode(errors="replace").strip()
        if not text or text.startswith(NO_LICENSES):
            return []

        licenses = []
        for line_number, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            fields = dict(
                token.partition("=")[::2] for token in line.split() if "=" in token
            )
            if not fields.get("LicenseName"):
                msg = f"line {line_number}: missing LicenseName"
                logger.error(
                    "Failed to parse license line",
                    source="scontrol",
                    error=msg,
                )
                self._error_counter.inc()
                raise MalformedOutputError(msg)
            licenses.append(_transform_line(fields))
        return licenses

    def scrape_duration(self) -> float:
        return self._scraper.duration()


def describe_metrics() -> Iterator[Metric]:
    """Yield empty families for every license gauge."""
    for name, documentation, _ in LICENSE_GAUGES:
        yield GaugeMetricFamily(name, documentation, labels=["name"])


def generate_metrics(licenses: list[LicenseMetric]) -> Iterator[Metric]:
    """Generate one gauge family per count, labelled by license name."""
    for name, documentation, attribute in LICENSE_GAUGES:
        family = GaugeMetricFamily(name, documentation, labels=["name"])
        for lic in licenses:
            family.add_metric([lic.name], getattr(lic, attribute))
        yield family


def new_license_fetcher(
    config: ExporterConfig,
) -> SlurmMetricFetcher[list[LicenseMetric]]:
    """Build the license fetcher variant selected by ``cli_fallback``."""
    cli_opts = config.cli_opts()
    scraper = slurmcli.CliScraper(*cli_opts.lic, timeout=cli_opts.timeout)
    cache = AtomicThrottledCache[list[LicenseMetric]](config.poll_limit)
    error_counter = new_error_counter("license_scrape_errors", "license scrape errors")

    if cli_opts.fallback:
        return LicenseCliFallbackFetcher(scraper, cache, error_counter)
    return LicenseJsonFetcher(scraper, cache, error_counter)


def new_license_collector(
    config: ExporterConfig,
) -> SlurmCollector[list[LicenseMetric]]:
    """Create the license collector for the configured mode."""
    return SlurmCollector(
        fetcher=new_license_fetcher(config),
        describer=describe_metrics,
        generator=generate_metrics,
        domain="license",
    )
