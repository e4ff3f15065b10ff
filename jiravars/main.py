"""Application entry-point for the jiravars exporter.

Builds the FastAPI application that serves ``/metrics``, wires the poll
scheduler into its lifespan, and exposes the ``jiravars`` command line.

Run::

    jiravars --config config.yml --http-addr 0.0.0.0:9300
    cat config.yml | python -m jiravars.main --config -

On SIGINT/SIGTERM uvicorn stops accepting connections, then the lifespan
shutdown stops the poll scheduler and waits for every polling task to exit.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, NoReturn

import click
import httpx
import structlog
import uvicorn
from fastapi import FastAPI

from jiravars import __version__
from jiravars.api.routes import router
from jiravars.config import (
    ExporterConfig,
    Settings,
    apply_credentials,
    load_configuration,
)
from jiravars.errors import ConfigurationError
from jiravars.logging_config import RequestLoggingMiddleware, setup_logging
from jiravars.metrics import ExporterMetrics
from jiravars.query import QueryExecutor
from jiravars.registry import MetricRegistry
from jiravars.scheduler import PollScheduler

DEFAULT_HTTP_ADDR = "127.0.0.1:9300"


def create_app(
    config: ExporterConfig,
    registry: MetricRegistry,
    metrics: ExporterMetrics | None = None,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Create the exporter application.

    Parameters:
        config: Loaded configuration, with credentials applied.
        registry: Registry already set up for ``config.metrics``.
        metrics: Optional exporter self-metrics.
        client: HTTP client to poll with.  When omitted one is created on
                startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger = structlog.get_logger("jiravars.startup")
        http_client = client or httpx.AsyncClient(timeout=config.timeout)
        scheduler = PollScheduler(
            config.metrics,
            registry,
            QueryExecutor.from_config(http_client, config),
            metrics,
        )
        stop = asyncio.Event()
        app.state.stop_event = stop
        poller = asyncio.create_task(scheduler.run(stop), name="poll-scheduler")
        await logger.ainfo(
            "server_starting",
            version=__version__,
            metrics=len(config.metrics),
        )
        try:
            yield
        finally:
            await logger.ainfo("server_shutting_down")
            stop.set()
            await poller
            if client is None:
                await http_client.aclose()
            await logger.ainfo("pollers_drained")

    app = FastAPI(
        title="jiravars",
        description="Jira search results exported as Prometheus gauges.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.exporter_metrics = metrics
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)
    return app


def parse_http_addr(addr: str) -> tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` for IPv6) into its parts.

    Raises:
        ConfigurationError: If *addr* is not a valid listen address.
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit() or not 0 < int(port) < 65536:
        raise ConfigurationError(f"invalid listen address {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host or "0.0.0.0", int(port)


def build_registry(config: ExporterConfig) -> tuple[MetricRegistry, ExporterMetrics]:
    """Register a gauge family per metric plus the exporter's own metrics.

    Raises:
        ConfigurationError: If the metric definitions cannot be registered.
    """
    registry = MetricRegistry()
    registry.setup(config.metrics)
    return registry, ExporterMetrics(registry.registry)


def _startup_failed(exc: ConfigurationError) -> NoReturn:
    structlog.get_logger("jiravars.startup").error("startup_failed", error=str(exc))
    raise click.exceptions.Exit(1) from exc


@click.command()
@click.option(
    "--config",
    "config_path",
    required=True,
    help="Path to configuration file ('-' reads from stdin).",
)
@click.option(
    "--http-addr",
    default=DEFAULT_HTTP_ADDR,
    show_default=True,
    help="HTTP server address.",
)
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(config_path: str, http_addr: str, verbose: bool) -> None:
    """Export Jira search result counts as Prometheus metrics."""
    settings = Settings()
    log_level = "DEBUG" if verbose else settings.LOG_LEVEL
    try:
        setup_logging(log_level=log_level)
    except ConfigurationError as exc:
        setup_logging()
        _startup_failed(exc)
    logger = structlog.get_logger("jiravars.startup")

    try:
        host, port = parse_http_addr(http_addr)
        config = apply_credentials(load_configuration(config_path), settings)
        registry, metrics = build_registry(config)
    except ConfigurationError as exc:
        _startup_failed(exc)

    logger.info("http_server_starting", address=http_addr)
    uvicorn.run(
        create_app(config, registry, metrics),
        host=host,
        port=port,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    cli()
