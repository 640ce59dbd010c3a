"""HTTP server for the Slurm CLI exporter."""

import logging
import os
import re
from collections.abc import Iterator

import prometheus_client
import prometheus_client.core
import starlette.applications
import starlette.requests
import starlette.responses
import starlette.routing
import structlog
from prometheus_client.metrics_core import Metric

from .collector import SlurmCollector
from .collectors import diags, gpus, jobs, licenses, nodes
from .config import CONFIG_ENV_VAR, ExporterConfig, load_config

logger = structlog.get_logger(__name__)


def configure_logging(log_level_name: str) -> None:
    """Configure structlog for logfmt output."""
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.EventRenamer("msg"),
            structlog.processors.format_exc_info,
            structlog.processors.LogfmtRenderer(
                key_order=("timestamp", "level", "msg"),
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def create_collectors(config: ExporterConfig) -> list[SlurmCollector]:
    """Create one collector per enabled domain.

    Every collector picks its JSON or CLI-fallback fetcher here, once.

    Args:
        config: Validated exporter configuration.

    Returns:
        Collectors in registration order.
    """
    collectors: list[SlurmCollector] = []
    if config.nodes_enabled:
        collectors.append(nodes.new_node_collector(config))
    if config.jobs_enabled:
        collectors.append(jobs.new_job_collector(config))
    if config.gpus_enabled:
        collectors.append(gpus.new_gpu_collector(config))
    if config.licenses_enabled:
        collectors.append(licenses.new_license_collector(config))
    if config.diags_enabled:
        collectors.append(diags.new_diag_collector(config))

    for c in collectors:
        logger.info(
            "Created collector",
            domain=c.domain,
            fetcher=type(c.fetcher).__name__,
        )
    return collectors


def create_registry(
    collectors: list[SlurmCollector],
) -> prometheus_client.core.CollectorRegistry:
    """Create a Prometheus registry holding the given collectors.

    Creates a custom registry (not the global one) and registers each
    collector together with its fetcher's scrape error counter.

    Args:
        collectors: Collectors returned by create_collectors.

    Returns:
        Configured Prometheus registry.
    """
    registry = prometheus_client.core.CollectorRegistry()
    for c in collectors:
        registry.register(c)
        registry.register(c.fetcher.scrape_error())
        logger.info("Registered collector", domain=c.domain)
    return registry


class FilteredRegistry:
    """Registry view that drops metric families whose name matches a regex."""

    def __init__(
        self,
        registry: prometheus_client.core.CollectorRegistry,
        exclude_filter: str,
    ):
        self._registry = registry
        self._exclude = re.compile(exclude_filter)

    def collect(self) -> Iterator[Metric]:
        for metric in self._registry.collect():
            if not self._exclude.search(metric.name):
                yield metric


def create_starlette_app(
    metrics_path: str,
    registry: prometheus_client.core.CollectorRegistry | FilteredRegistry,
) -> starlette.applications.Starlette:
    """Create a Starlette application for serving Prometheus metrics.

    Args:
        metrics_path: URL path for metrics endpoint (e.g., "/metrics").
        registry: Prometheus collector registry.

    Returns:
        Configured Starlette application.
    """

    def metrics_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Generate and serve Prometheus metrics.

        Args:
            request: The incoming HTTP request.

        Returns:
            PlainTextResponse with metrics in Prometheus exposition format.
        """
        metrics_output = prometheus_client.generate_latest(registry)
        logger.info(
            "HTTP request",
            client_ip=request.client.host if request.client else "unknown",
            method=request.method,
            path=request.url.path,
        )
        return starlette.responses.PlainTextResponse(
            content=metrics_output,
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    routes = [
        starlette.routing.Route(metrics_path, metrics_endpoint, methods=["GET"]),
    ]

    return starlette.applications.Starlette(routes=routes)


def create_exporter(config: ExporterConfig) -> starlette.applications.Starlette:
    """Construct the exporter ASGI app from validated config."""
    registry = create_registry(create_collectors(config))

    if config.metrics_exclude_filter:
        logger.info(
            "Filtering metrics",
            exclude_filter=config.metrics_exclude_filter,
        )
        return create_starlette_app(
            metrics_path=config.metrics_path,
            registry=FilteredRegistry(registry, config.metrics_exclude_filter),
        )

    return create_starlette_app(
        metrics_path=config.metrics_path,
        registry=registry,
    )


def create_app(config_path: str | None = None) -> starlette.applications.Starlette:
    """Create the exporter ASGI app using a config path or environment default."""
    config = load_config(config_path or os.environ.get(CONFIG_ENV_VAR))
    configure_logging(config.log_level)
    return create_exporter(config)
