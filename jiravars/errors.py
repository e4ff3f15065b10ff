"""Exception types raised by the exporter.

Two families exist:

- ``ConfigurationError`` is fatal and only raised during startup (config
  loading, gauge registration).
- ``QueryError`` and its subclasses describe a failed poll cycle.  They are
  raised by the query executor and caught by the poll scheduler; they never
  terminate the process.
"""

from __future__ import annotations


class JiravarsError(Exception):
    """Base class for all exporter errors."""


class ConfigurationError(JiravarsError):
    """The configuration is unreadable, invalid, or inconsistent."""


class QueryError(JiravarsError):
    """A single search request for one metric failed.

    Attributes:
        metric: Name of the metric definition being polled.
        url: The request URL, when it could be built.
        stage: Short identifier of the step that failed.
    """

    stage = "query"

    def __init__(self, message: str, *, metric: str, url: str | None = None) -> None:
        super().__init__(message)
        self.metric = metric
        self.url = url


class RequestBuildError(QueryError):
    """The search request could not be constructed (e.g. bad base URL)."""

    stage = "build"


class TransportError(QueryError):
    """The request could not be delivered or the connection failed."""

    stage = "transport"


class UnexpectedStatusError(QueryError):
    """The server answered with something other than ``200 OK``."""

    stage = "status"

    def __init__(
        self,
        message: str,
        *,
        metric: str,
        url: str | None = None,
        status_code: int,
    ) -> None:
        super().__init__(message, metric=metric, url=url)
        self.status_code = status_code


class DecodeError(QueryError):
    """The response body is not the expected search result document."""

    stage = "decode"
