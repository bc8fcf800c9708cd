import gzip
import json
import logging

import httpx
import pytest

from conftest import TEST_TOKEN, FakeGraphQLServer, error_list_response, run_for
from executor import VirtualUser
from loadgen import (
    CHECK_NO_ERRORS,
    CHECK_STATUS_OK,
    HttpTransport,
    ParseError,
    ParsedBody,
    RequestDispatcher,
    RequestSettings,
    extract_application_errors,
    parse_body,
    percentile,
    timings_from_trace,
    virtual_user_loop,
)
from metrics import (
    CHECKS,
    DATA_RECEIVED,
    DATA_SENT,
    GRAPHQL_ERROR_COUNT,
    GRAPHQL_RESPONSE_TIME,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    ITERATION_DURATION,
    ITERATIONS,
)

URL = "http://graphql.test/graphql"


def test_percentile_interpolates():
    assert percentile([], 50) is None
    assert percentile([4.0, 1.0, 3.0, 2.0], 50) == 2.5
    assert percentile([1.0, 2.0, 3.0], 0) == 1.0
    assert percentile([1.0, 2.0, 3.0], 100) == 3.0
    assert percentile(list(range(1, 101)), 95) == pytest.approx(95.05)


def test_parse_body():
    assert parse_body('{"data": {}}') == ParsedBody({"data": {}})
    assert isinstance(parse_body("<html>oops</html>"), ParseError)
    assert isinstance(parse_body(""), ParseError)
    assert isinstance(parse_body(None), ParseError)


def test_extract_application_errors():
    assert extract_application_errors({"data": {}}) == []
    assert extract_application_errors({"errors": []}) == []
    assert extract_application_errors({"errors": [{"message": "x"}]}) == [{"message": "x"}]
    assert extract_application_errors({"errors": {"message": "x"}}) == [{"message": "x"}]
    assert extract_application_errors(["not", "a", "dict"]) == []


def test_timings_from_trace_phases():
    marks = {
        "connect_tcp.started": 1.010,
        "connect_tcp.complete": 1.030,
        "start_tls.started": 1.030,
        "start_tls.complete": 1.050,
        "send_request_headers.started": 1.050,
        "send_request_body.complete": 1.055,
        "receive_response_headers.complete": 1.155,
        "receive_response_body.complete": 1.160,
    }

    timings = timings_from_trace(marks, started=1.0, finished=1.2)

    assert timings.blocked == pytest.approx(10.0)
    assert timings.connecting == pytest.approx(20.0)
    assert timings.tls_handshaking == pytest.approx(20.0)
    assert timings.sending == pytest.approx(5.0)
    assert timings.waiting == pytest.approx(100.0)
    assert timings.receiving == pytest.approx(5.0)
    assert timings.duration == pytest.approx(110.0)


def test_timings_without_trace_use_wall_clock():
    timings = timings_from_trace({}, started=2.0, finished=2.25)

    assert timings.duration == pytest.approx(250.0)
    assert timings.waiting == 0.0
    assert timings.connecting == 0.0


def _dispatcher(client, collector, **settings) -> RequestDispatcher:
    return RequestDispatcher(
        HttpTransport(client), RequestSettings(url=URL, **settings), collector
    )


@pytest.mark.asyncio
async def test_dispatch_success_records_metrics(collector, catalog, fake_server):
    async with httpx.AsyncClient(transport=fake_server.transport()) as client:
        dispatcher = _dispatcher(client, collector, extra_headers={"X-Trace": "1"})
        outcome = await dispatcher.dispatch(catalog.get("publicationsByPerson"), TEST_TOKEN)

    assert outcome.passed
    assert outcome.status_code == 200
    request = fake_server.query_requests[0]
    assert request.headers["Authorization"] == f"Bearer {TEST_TOKEN}"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Trace"] == "1"
    assert json.loads(request.content)["variables"] == {"personId": "1001"}

    tag = "publicationsByPerson"
    assert collector.counter(HTTP_REQS).total(tag) == 1
    assert collector.rate(HTTP_REQ_FAILED).counts(tag) == (0, 1)
    assert len(collector.trend(HTTP_REQ_DURATION).samples(tag)) == 1
    assert len(collector.trend(GRAPHQL_RESPONSE_TIME).samples(tag)) == 1
    assert collector.counter(DATA_SENT).total() > len(request.content)
    assert collector.counter(DATA_RECEIVED).total() > 0
    assert collector.counter(GRAPHQL_ERROR_COUNT).total() == 0
    assert collector.rate(CHECKS).counts(CHECK_STATUS_OK) == (1, 1)
    assert collector.rate(CHECKS).counts(CHECK_NO_ERRORS) == (1, 1)


@pytest.mark.asyncio
async def test_dispatch_application_errors(collector, catalog, caplog):
    server = FakeGraphQLServer(respond=error_list_response)
    async with httpx.AsyncClient(transport=server.transport()) as client:
        with caplog.at_level(logging.ERROR, logger="loadgen"):
            outcome = await _dispatcher(client, collector).dispatch(
                catalog.get("keywordSearch"), TEST_TOKEN
            )

    assert not outcome.failed
    assert not outcome.passed
    assert outcome.application_errors == [{"message": "Cannot query field", "path": ["x"]}]
    assert collector.counter(GRAPHQL_ERROR_COUNT).total("keywordSearch") == 1
    assert collector.rate(HTTP_REQ_FAILED).counts() == (0, 1)
    assert collector.rate(CHECKS).counts(CHECK_STATUS_OK) == (1, 1)
    assert collector.rate(CHECKS).counts(CHECK_NO_ERRORS) == (0, 1)
    assert "Cannot query field" in caplog.text


@pytest.mark.asyncio
async def test_dispatch_server_error_counts_as_failed(collector, catalog, caplog):
    server = FakeGraphQLServer(respond=lambda request: httpx.Response(500, text="boom"))
    async with httpx.AsyncClient(transport=server.transport()) as client:
        with caplog.at_level(logging.ERROR, logger="loadgen"):
            outcome = await _dispatcher(client, collector).dispatch(
                catalog.get("keywordSearch"), TEST_TOKEN
            )

    assert outcome.status_code == 500
    assert outcome.failed
    assert not outcome.body_parsed
    assert collector.rate(HTTP_REQ_FAILED).counts() == (1, 1)
    assert collector.rate(CHECKS).counts(CHECK_STATUS_OK) == (0, 1)
    assert collector.counter(GRAPHQL_ERROR_COUNT).total() == 0
    assert "HTTP 500" in caplog.text


@pytest.mark.asyncio
async def test_dispatch_unparseable_body_counts_as_failed(collector, catalog):
    server = FakeGraphQLServer(respond=lambda request: httpx.Response(200, text="not json"))
    async with httpx.AsyncClient(transport=server.transport()) as client:
        outcome = await _dispatcher(client, collector).dispatch(
            catalog.get("keywordSearch"), TEST_TOKEN
        )

    assert outcome.status_ok
    assert outcome.failed
    assert collector.rate(HTTP_REQ_FAILED).counts() == (1, 1)
    assert collector.rate(CHECKS).counts(CHECK_NO_ERRORS) == (0, 1)


@pytest.mark.asyncio
async def test_dispatch_timeout_is_a_transport_failure(collector, catalog):
    def respond(request):
        raise httpx.ReadTimeout("timed out", request=request)

    server = FakeGraphQLServer(respond=respond)
    async with httpx.AsyncClient(transport=server.transport()) as client:
        outcome = await _dispatcher(client, collector, timeout_s=0.5).dispatch(
            catalog.get("keywordSearch"), TEST_TOKEN
        )

    assert outcome.status_code is None
    assert outcome.failed
    assert "ReadTimeout" in outcome.transport_error
    assert collector.counter(HTTP_REQS).total() == 1
    assert collector.rate(HTTP_REQ_FAILED).counts() == (1, 1)


@pytest.mark.asyncio
async def test_bytes_received_counts_encoded_body():
    body = json.dumps({"data": {"items": ["x" * 10_000]}}).encode("utf-8")
    compressed = gzip.compress(body)

    def handler(request):
        return httpx.Response(
            200,
            content=compressed,
            headers={"Content-Encoding": "gzip", "Content-Type": "application/json"},
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        response = await HttpTransport(client).send(URL, "{}", {}, 5.0)

    assert json.loads(response.text) == json.loads(body)
    assert response.bytes_received > len(compressed)
    assert response.bytes_received < len(compressed) + 1_000
    assert response.bytes_received < len(body)


@pytest.mark.asyncio
async def test_bytes_sent_matches_between_success_and_transport_failure():
    def failing(request):
        raise httpx.ConnectError("connection refused", request=request)

    headers = {"Content-Type": "application/json", "Authorization": "Bearer t"}
    async with httpx.AsyncClient(transport=FakeGraphQLServer().transport()) as client:
        delivered = await HttpTransport(client).send(URL, '{"query": "{ a }"}', headers, 5.0)
    async with httpx.AsyncClient(transport=httpx.MockTransport(failing)) as client:
        refused = await HttpTransport(client).send(URL, '{"query": "{ a }"}', headers, 5.0)

    assert refused.status == "error"
    assert delivered.status == "ok"
    assert refused.bytes_sent == delivered.bytes_sent
    assert refused.bytes_received == 0


@pytest.mark.asyncio
async def test_loop_skips_missing_template(collector, catalog, fake_server, caplog):
    async with httpx.AsyncClient(transport=fake_server.transport()) as client:
        with caplog.at_level(logging.ERROR, logger="loadgen"):
            await virtual_user_loop(
                VirtualUser(id=1),
                run_for(2),
                catalog=catalog,
                query_name="doesNotExist",
                dispatcher=_dispatcher(client, collector),
                token=TEST_TOKEN,
                collector=collector,
                think_time_s=0,
            )

    assert fake_server.query_requests == []
    assert collector.counter(ITERATIONS).total() == 0
    assert "doesNotExist" in caplog.text


@pytest.mark.asyncio
async def test_loop_keeps_going_after_application_errors(collector, catalog):
    server = FakeGraphQLServer(respond=error_list_response)
    vu = VirtualUser(id=1)
    async with httpx.AsyncClient(transport=server.transport()) as client:
        await virtual_user_loop(
            vu,
            run_for(3),
            catalog=catalog,
            query_name="publicationsByPerson",
            dispatcher=_dispatcher(client, collector),
            token=TEST_TOKEN,
            collector=collector,
            think_time_s=0,
        )

    assert vu.iteration_count == 3
    assert len(server.query_requests) == 3
    assert collector.counter(ITERATIONS).total() == 3
    assert collector.counter(GRAPHQL_ERROR_COUNT).total() == 3
    assert len(collector.trend(ITERATION_DURATION).samples()) == 3


@pytest.mark.asyncio
async def test_loop_survives_dispatcher_exception(collector, catalog, caplog):
    class ExplodingDispatcher:
        async def dispatch(self, template, token):
            raise RuntimeError("boom")

    vu = VirtualUser(id=7)
    with caplog.at_level(logging.ERROR, logger="loadgen"):
        await virtual_user_loop(
            vu,
            run_for(2),
            catalog=catalog,
            query_name="publicationsByPerson",
            dispatcher=ExplodingDispatcher(),
            token=TEST_TOKEN,
            collector=collector,
            think_time_s=0,
        )

    assert vu.iteration_count == 2
    assert "Virtual user 7" in caplog.text


@pytest.mark.asyncio
async def test_think_time_is_cut_short_by_stop(collector, catalog, fake_server):
    vu = VirtualUser(id=1)
    vu.request_stop()
    async with httpx.AsyncClient(transport=fake_server.transport()) as client:
        await virtual_user_loop(
            vu,
            run_for(1),
            catalog=catalog,
            query_name="publicationsByPerson",
            dispatcher=_dispatcher(client, collector),
            token=TEST_TOKEN,
            collector=collector,
            think_time_s=30,
        )

    assert vu.iteration_count == 1
    assert collector.trend(ITERATION_DURATION).samples()[0] < 30_000
