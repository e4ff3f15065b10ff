"""Query executor for the Jira search REST API.

``QueryExecutor.fetch`` issues exactly one bounded search request for a
metric definition and turns the response into an observation set: a
mapping from a categorical value (e.g. a component name) to the number of
issues carrying it.  Failures are raised as typed ``QueryError`` subclasses
so that the caller can log them and keep its previous state.
"""

from __future__ import annotations

from collections import Counter
from typing import Any

import httpx
import structlog

from jiravars.config import ExporterConfig, MetricDefinition
from jiravars.errors import (
    DecodeError,
    RequestBuildError,
    TransportError,
    UnexpectedStatusError,
)

logger = structlog.get_logger(__name__)

SEARCH_PATH = "/rest/api/2/search"

ObservationSet = dict[str | None, float]
"""Categorical value -> issue count.  ``None`` keys the ungrouped total."""


def extract_values(raw: Any) -> set[str]:
    """Return the distinct categorical values of one issue field.

    Jira represents such fields in several shapes: a list of objects with a
    ``name`` (components, fixVersions), a list of plain strings (labels), a
    single object (status, priority) or a single string.  Objects without a
    ``name`` fall back to ``value`` (custom select fields).
    """
    if raw is None:
        return set()
    items = raw if isinstance(raw, list) else [raw]
    values: set[str] = set()
    for item in items:
        if isinstance(item, dict):
            value = item.get("name", item.get("value"))
        else:
            value = item
        if value is not None:
            values.add(str(value))
    return values


def count_observations(
    definition: MetricDefinition, payload: Any, url: str | None = None
) -> ObservationSet:
    """Aggregate a decoded search response into an observation set.

    Raises:
        DecodeError: If *payload* does not look like a search result.
    """
    if not isinstance(payload, dict):
        raise DecodeError(
            "search response is not a JSON object", metric=definition.name, url=url
        )

    issues = payload.get("issues") or []
    if not isinstance(issues, list):
        raise DecodeError(
            "'issues' is not a list", metric=definition.name, url=url
        )

    if definition.group_by is None:
        total = payload.get("total")
        if isinstance(total, bool) or not isinstance(total, (int, float)):
            total = len(issues)
        return {None: float(total)}

    counts: Counter[str] = Counter()
    for issue in issues:
        if not isinstance(issue, dict):
            raise DecodeError(
                "issue entry is not a JSON object", metric=definition.name, url=url
            )
        fields = issue.get("fields") or {}
        if not isinstance(fields, dict):
            raise DecodeError(
                "issue 'fields' is not a JSON object",
                metric=definition.name,
                url=url,
            )
        counts.update(extract_values(fields.get(definition.group_by)))
    return {value: float(count) for value, count in counts.items()}


class QueryExecutor:
    """Runs search requests against one Jira server.

    The executor holds no per-request state, so a single instance (and its
    ``httpx.AsyncClient``) is shared by all polling tasks.

    Parameters:
        client: Shared async HTTP client.
        base_url: Root URL of the Jira server.
        login: Basic-auth user name.
        password: Basic-auth password or API token.
        headers: Static headers attached to every request.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        login: str,
        password: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._client = client
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self._auth = httpx.BasicAuth(login, password)

    @classmethod
    def from_config(
        cls, client: httpx.AsyncClient, config: ExporterConfig
    ) -> QueryExecutor:
        """Build an executor from a loaded configuration."""
        return cls(
            client,
            base_url=config.base_url,
            login=config.login,
            password=config.password or "",
            headers=config.http_headers,
        )

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def build_request(self, definition: MetricDefinition) -> httpx.Request:
        """Build the search request for *definition*.

        Only the field needed for aggregation is requested.  Authentication
        is not part of the built request; it is applied when sending so that
        it always wins over a static ``Authorization`` header.

        Raises:
            RequestBuildError: If the base URL is not an absolute http(s) URL.
        """
        raw_url = f"{self.base_url}{SEARCH_PATH}"
        try:
            url = httpx.URL(raw_url)
        except (httpx.InvalidURL, TypeError, ValueError) as exc:
            raise RequestBuildError(
                f"invalid search URL: {exc}", metric=definition.name, url=raw_url
            ) from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise RequestBuildError(
                "base URL must be an absolute http(s) URL",
                metric=definition.name,
                url=raw_url,
            )

        params = {
            "jql": definition.jql,
            "maxResults": str(definition.max_results),
            "fields": definition.group_by or "id",
        }
        return self._client.build_request(
            "GET", url, params=params, headers=self.headers
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def fetch(self, definition: MetricDefinition) -> ObservationSet:
        """Run the search for *definition* and aggregate the result.

        Returns:
            The observation set of this poll.

        Raises:
            RequestBuildError: The request could not be built.
            TransportError: The request failed on the network level.
            UnexpectedStatusError: The server did not answer ``200 OK``.
            DecodeError: The body is not a valid search result.
        """
        request = self.build_request(definition)
        url = str(request.url)
        await logger.adebug("search_request", metric=definition.name, url=url)

        try:
            response = await self._client.send(request, auth=self._auth)
        except httpx.RequestError as exc:
            raise TransportError(
                f"request failed: {exc!r}", metric=definition.name, url=url
            ) from exc

        if response.status_code != httpx.codes.OK:
            raise UnexpectedStatusError(
                f"received status {response.status_code}",
                metric=definition.name,
                url=url,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise DecodeError(
                f"failed to decode response: {exc}", metric=definition.name, url=url
            ) from exc

        return count_observations(definition, payload, url=url)
