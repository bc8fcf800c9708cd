"""
Shared fixtures for the load-test harness.

The fake GraphQL server answers the authentication mutation and every other
query through ``httpx.MockTransport`` so no test touches the network.
"""

import json
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import pytest

from catalog import QueryCatalog, RequestTemplate
from metrics import MetricsCollector, register_builtin_metrics

TEST_TOKEN = "test-token"

PUBLICATIONS_QUERY = "query publicationsByPerson($personId: ID!) { publicationsByPerson(personId: $personId) { total } }"
KEYWORD_QUERY = "query keywordSearch($query: String!) { keywordSearch(query: $query) { total } }"


# ============================================================================
# Fake GraphQL server
# ============================================================================


def ok_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"data": {"publicationsByPerson": {"total": 3}}})


def error_list_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={"data": None, "errors": [{"message": "Cannot query field", "path": ["x"]}]},
    )


class FakeGraphQLServer:
    def __init__(
        self,
        *,
        token: Optional[str] = TEST_TOKEN,
        auth_status: int = 200,
        respond: Callable[[httpx.Request], httpx.Response] = ok_response,
    ) -> None:
        self.token = token
        self.auth_status = auth_status
        self.respond = respond
        self.auth_requests: list[dict[str, Any]] = []
        self.query_requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if "authenticateUser" in payload["query"]:
            self.auth_requests.append(payload)
            auth_payload: dict[str, Any] = {"token": self.token} if self.token else {}
            return httpx.Response(
                self.auth_status, json={"data": {"authenticateUser": auth_payload}}
            )
        self.query_requests.append(request)
        return self.respond(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_server() -> FakeGraphQLServer:
    return FakeGraphQLServer()


# ============================================================================
# Core fixtures
# ============================================================================


@pytest.fixture
def collector() -> MetricsCollector:
    return register_builtin_metrics(MetricsCollector())


@pytest.fixture
def catalog() -> QueryCatalog:
    return QueryCatalog(
        [
            RequestTemplate(
                name="publicationsByPerson",
                body=PUBLICATIONS_QUERY,
                variables={"personId": "1001"},
            ),
            RequestTemplate(name="keywordSearch", body=KEYWORD_QUERY, variables={"query": "x"}),
        ]
    )


@pytest.fixture
def queries_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "queries"
    directory.mkdir()
    (directory / "publicationsByPerson.graphql").write_text(PUBLICATIONS_QUERY, encoding="utf-8")
    (directory / "keywordSearch.graphql").write_text(KEYWORD_QUERY, encoding="utf-8")
    return directory


@pytest.fixture
def variables_file(tmp_path: Path) -> Path:
    path = tmp_path / "local.json"
    path.write_text(
        json.dumps({"publicationsByPerson": {"personId": "1001"}, "keywordSearch": {"query": "x"}}),
        encoding="utf-8",
    )
    return path


def run_for(iterations: int) -> Callable[[], bool]:
    """keep_running callable that allows exactly ``iterations`` loop turns."""
    calls = {"count": 0}

    def keep_running() -> bool:
        calls["count"] += 1
        return calls["count"] <= iterations

    return keep_running
