"""Structured logging configuration using *structlog*.

Provides ``setup_logging`` to initialise structlog with JSON output and a
lightweight ASGI middleware class that logs every scrape request with
method, path, status code, and duration.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from jiravars.errors import ConfigurationError


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structlog with JSON rendering.

    Parameters:
        log_level: Minimum log level to emit (e.g. ``"DEBUG"``, ``"INFO"``).

    Raises:
        ConfigurationError: If *log_level* is not a known level name.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ConfigurationError(f"unknown log level {log_level!r}")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that emits a structured log line for every request.

    Each log entry contains:
    - ``method``: HTTP method (GET, HEAD, ...)
    - ``path``: Request path
    - ``status_code``: Response status code
    - ``duration_ms``: Round-trip time in milliseconds

    When the application state carries ``exporter_metrics`` the request is
    also counted there.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        logger = structlog.get_logger("jiravars.access")
        start = time.perf_counter()

        response: Response = await call_next(request)

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        await logger.adebug(
            "request_handled",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )

        exporter_metrics = getattr(request.app.state, "exporter_metrics", None)
        if exporter_metrics is not None:
            exporter_metrics.scrape_requests.labels(
                endpoint=request.url.path,
                status_code=str(response.status_code),
            ).inc()

        return response
