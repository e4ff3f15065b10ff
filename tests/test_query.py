"""Tests for the QueryExecutor against an in-process fake Jira."""

from __future__ import annotations

import base64
from typing import Callable

import httpx
import pytest

from jiravars.config import MetricDefinition
from jiravars.errors import (
    DecodeError,
    RequestBuildError,
    TransportError,
    UnexpectedStatusError,
)
from jiravars.query import QueryExecutor, count_observations, extract_values

DefinitionFactory = Callable[..., MetricDefinition]


@pytest.mark.asyncio
async def test_build_request_encodes_search_parameters(
    executor: QueryExecutor, make_definition: DefinitionFactory, base_url: str
) -> None:
    definition = make_definition(groupBy="components", maxResults=50)

    request = executor.build_request(definition)

    assert request.method == "GET"
    assert str(request.url).startswith(f"{base_url}/rest/api/2/search?")
    assert request.url.params["jql"] == "project = TEST"
    assert request.url.params["maxResults"] == "50"
    assert request.url.params["fields"] == "components"


@pytest.mark.asyncio
async def test_build_request_without_grouping_asks_for_minimal_fields(
    executor: QueryExecutor, make_definition: DefinitionFactory
) -> None:
    request = executor.build_request(make_definition())

    assert request.url.params["fields"] == "id"
    assert request.url.params["maxResults"] == "100"


@pytest.mark.asyncio
async def test_trailing_slash_in_base_url_is_ignored(
    http_client: httpx.AsyncClient, make_definition: DefinitionFactory, base_url: str
) -> None:
    executor = QueryExecutor(http_client, f"{base_url}/", "login", "password")

    request = executor.build_request(make_definition())

    assert request.url.path == "/rest/api/2/search"


@pytest.mark.parametrize("bad_url", ["", "jira.example.com", "ftp://jira.example.com"])
@pytest.mark.asyncio
async def test_malformed_base_url_is_a_build_error(
    http_client: httpx.AsyncClient, make_definition: DefinitionFactory, bad_url: str
) -> None:
    executor = QueryExecutor(http_client, bad_url, "login", "password")

    with pytest.raises(RequestBuildError) as exc_info:
        executor.build_request(make_definition())

    assert exc_info.value.stage == "build"
    assert exc_info.value.metric == "open_bugs"


@pytest.mark.asyncio
async def test_static_headers_are_sent_and_auth_is_applied_last(
    http_client: httpx.AsyncClient,
    fake_jira,
    make_definition: DefinitionFactory,
    base_url: str,
) -> None:
    fake_jira.respond("project = TEST", {"total": 0, "issues": []})
    executor = QueryExecutor(
        http_client,
        base_url,
        "login",
        "password",
        headers={"X-Atlassian-Token": "no-check", "Authorization": "Bearer bogus"},
    )

    await executor.fetch(make_definition())

    (request,) = fake_jira.requests
    expected = base64.b64encode(b"login:password").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"
    assert request.headers["X-Atlassian-Token"] == "no-check"


@pytest.mark.asyncio
async def test_fetch_counts_issues_per_component(
    executor: QueryExecutor, fake_jira, make_definition: DefinitionFactory, issues_payload
) -> None:
    fake_jira.respond("project = TEST", issues_payload(["A"], ["A", "B"], []))

    observations = await executor.fetch(make_definition(groupBy="components"))

    assert observations == {"A": 2.0, "B": 1.0}


@pytest.mark.asyncio
async def test_fetch_without_grouping_reports_total(
    executor: QueryExecutor, fake_jira, make_definition: DefinitionFactory
) -> None:
    fake_jira.respond("project = TEST", {"total": 5})

    observations = await executor.fetch(make_definition())

    assert observations == {None: 5.0}


@pytest.mark.asyncio
async def test_non_ok_status_is_a_status_error(
    executor: QueryExecutor, fake_jira, make_definition: DefinitionFactory
) -> None:
    fake_jira.respond("project = TEST", {"errorMessages": ["bad jql"]}, status_code=400)

    with pytest.raises(UnexpectedStatusError) as exc_info:
        await executor.fetch(make_definition())

    assert exc_info.value.status_code == 400
    assert exc_info.value.stage == "status"
    assert "jql=project" in exc_info.value.url


@pytest.mark.asyncio
async def test_invalid_json_is_a_decode_error(
    executor: QueryExecutor, fake_jira, make_definition: DefinitionFactory
) -> None:
    fake_jira.routes["project = TEST"] = httpx.Response(200, content=b"<html>login</html>")

    with pytest.raises(DecodeError):
        await executor.fetch(make_definition())


@pytest.mark.asyncio
async def test_connection_failure_is_a_transport_error(
    executor: QueryExecutor, fake_jira, make_definition: DefinitionFactory
) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    fake_jira.routes["project = TEST"] = refuse

    with pytest.raises(TransportError) as exc_info:
        await executor.fetch(make_definition())

    assert exc_info.value.stage == "transport"
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


def test_count_observations_handles_field_shapes(make_definition: DefinitionFactory) -> None:
    payload = {
        "issues": [
            {"fields": {"labels": ["backend", "urgent"]}},
            {"fields": {"labels": ["backend", "backend"]}},
            {"fields": {"labels": None}},
            {"fields": {}},
            {},
        ]
    }

    observations = count_observations(make_definition(groupBy="labels"), payload)

    assert observations == {"backend": 2.0, "urgent": 1.0}


def test_count_observations_single_object_field(make_definition: DefinitionFactory) -> None:
    payload = {
        "issues": [
            {"fields": {"status": {"name": "Open"}}},
            {"fields": {"status": {"name": "Open"}}},
            {"fields": {"status": {"value": "Done"}}},
        ]
    }

    observations = count_observations(make_definition(groupBy="status"), payload)

    assert observations == {"Open": 2.0, "Done": 1.0}


def test_count_observations_falls_back_to_issue_count(make_definition: DefinitionFactory) -> None:
    payload = {"issues": [{"fields": {}}, {"fields": {}}]}

    assert count_observations(make_definition(), payload) == {None: 2.0}


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "an", "object"],
        {"issues": "nope"},
        {"issues": ["nope"]},
        {"issues": [{"fields": "nope"}]},
    ],
)
def test_count_observations_rejects_unexpected_shapes(
    make_definition: DefinitionFactory, payload: object
) -> None:
    with pytest.raises(DecodeError):
        count_observations(make_definition(groupBy="components"), payload)


def test_extract_values() -> None:
    assert extract_values(None) == set()
    assert extract_values("High") == {"High"}
    assert extract_values([{"name": "A"}, {"id": "1"}, "B"]) == {"A", "B"}
