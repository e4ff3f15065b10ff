"""Shared pytest fixtures for the jiravars test suite."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Callable, Iterator

import httpx
import pytest
import pytest_asyncio
import structlog

from jiravars.config import ExporterConfig, MetricDefinition
from jiravars.query import QueryExecutor

JIRA_URL = "https://jira.example.com"


class FakeJira:
    """In-process stand-in for the Jira search endpoint.

    Responses are served per JQL query from ``routes``; a callable route is
    invoked with the request and may return a response, raise, or be a
    coroutine function.
    """

    def __init__(self) -> None:
        self.routes: dict[str, Any] = {}
        self.requests: list[httpx.Request] = []

    def respond(self, jql: str, payload: Any = None, status_code: int = 200) -> None:
        self.routes[jql] = httpx.Response(
            status_code, content=json.dumps(payload).encode()
        )

    def calls(self, jql: str) -> int:
        return sum(1 for r in self.requests if r.url.params.get("jql") == jql)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.params.get("jql"))
        if route is None:
            return httpx.Response(404, json={"errorMessages": ["no route"]})
        if callable(route):
            result = route(request)
            if hasattr(result, "__await__"):
                result = await result
            return result
        return route


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


@pytest.fixture()
def base_url() -> str:
    return JIRA_URL


@pytest.fixture()
def make_definition() -> Callable[..., MetricDefinition]:
    """Return a factory for metric definitions with test defaults."""

    def factory(**overrides: Any) -> MetricDefinition:
        data: dict[str, Any] = {
            "name": "open_bugs",
            "help": "Open bugs",
            "jql": "project = TEST",
            "interval": "1h",
        }
        data.update(overrides)
        return MetricDefinition.model_validate(data)

    return factory


@pytest.fixture()
def issues_payload() -> Callable[..., dict[str, Any]]:
    """Return a builder for search responses, one issue per component list."""

    def build(*components: list[str]) -> dict[str, Any]:
        return {
            "total": len(components),
            "issues": [
                {"fields": {"components": [{"name": name} for name in names]}}
                for names in components
            ],
        }

    return build


@pytest.fixture()
def fake_jira() -> FakeJira:
    return FakeJira()


@pytest_asyncio.fixture()
async def http_client(fake_jira: FakeJira) -> AsyncIterator[httpx.AsyncClient]:
    """Yield an async HTTP client wired to ``fake_jira``."""
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(fake_jira.handler)
    ) as client:
        yield client


@pytest.fixture()
def executor(http_client: httpx.AsyncClient) -> QueryExecutor:
    return QueryExecutor(http_client, JIRA_URL, "login", "password")


@pytest.fixture()
def exporter_config() -> ExporterConfig:
    return ExporterConfig.model_validate(
        {
            "baseURL": JIRA_URL,
            "login": "login",
            "password": "password",
            "metrics": [
                {
                    "name": "open_bugs",
                    "help": "Open bugs",
                    "jql": "project = TEST",
                    "groupBy": "components",
                }
            ],
        }
    )
