from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import httpx

from catalog import QueryCatalog, RequestTemplate
from executor import VirtualUser
from metrics import (
    CHECKS,
    CONTAINS_DATA,
    CONTAINS_TIME,
    DATA_RECEIVED,
    DATA_SENT,
    GRAPHQL_ERROR_COUNT,
    GRAPHQL_RESPONSE_TIME,
    HTTP_REQ_BLOCKED,
    HTTP_REQ_CONNECTING,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQ_RECEIVING,
    HTTP_REQ_SENDING,
    HTTP_REQ_TLS_HANDSHAKING,
    HTTP_REQ_WAITING,
    HTTP_REQS,
    ITERATION_DURATION,
    ITERATIONS,
    MetricsCollector,
)


LOG = logging.getLogger(__name__)

CHECK_STATUS_OK = "is status 200"
CHECK_NO_ERRORS = "response has no errors"


def percentile(values: list[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return float(min(values))
    if pct >= 100:
        return float(max(values))
    ordered = sorted(values)
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


@dataclass
class TimingBreakdown:
    blocked: float = 0.0
    connecting: float = 0.0
    tls_handshaking: float = 0.0
    sending: float = 0.0
    waiting: float = 0.0
    receiving: float = 0.0
    duration: float = 0.0

    def as_metrics(self) -> dict[str, float]:
        return {
            HTTP_REQ_BLOCKED: self.blocked,
            HTTP_REQ_CONNECTING: self.connecting,
            HTTP_REQ_TLS_HANDSHAKING: self.tls_handshaking,
            HTTP_REQ_SENDING: self.sending,
            HTTP_REQ_WAITING: self.waiting,
            HTTP_REQ_RECEIVING: self.receiving,
            HTTP_REQ_DURATION: self.duration,
        }


def _span_ms(marks: dict[str, float], start: str, end: str) -> float:
    if start not in marks or end not in marks:
        return 0.0
    return max(0.0, (marks[end] - marks[start]) * 1000.0)


def timings_from_trace(
    marks: dict[str, float], started: float, finished: float
) -> TimingBreakdown:
    """Derive phase timings from httpcore trace marks (perf_counter seconds).

    Transports that emit no trace events get zero phases and a wall-clock total.
    """
    first_event = marks.get("connect_tcp.started", marks.get("send_request_headers.started"))
    blocked = max(0.0, (first_event - started) * 1000.0) if first_event is not None else 0.0
    sending = _span_ms(marks, "send_request_headers.started", "send_request_body.complete")
    waiting = _span_ms(marks, "send_request_body.complete", "receive_response_headers.complete")
    receiving = _span_ms(
        marks, "receive_response_headers.complete", "receive_response_body.complete"
    )
    if "send_request_headers.started" in marks:
        duration = sending + waiting + receiving
    else:
        duration = max(0.0, (finished - started) * 1000.0)
    return TimingBreakdown(
        blocked=blocked,
        connecting=_span_ms(marks, "connect_tcp.started", "connect_tcp.complete"),
        tls_handshaking=_span_ms(marks, "start_tls.started", "start_tls.complete"),
        sending=sending,
        waiting=waiting,
        receiving=receiving,
        duration=duration,
    )


class _TraceRecorder:
    def __init__(self) -> None:
        self.marks: dict[str, float] = {}

    async def __call__(self, event_name: str, info: dict[str, Any]) -> None:
        # "http11.send_request_headers.started" -> "send_request_headers.started"
        _, _, name = event_name.partition(".")
        self.marks.setdefault(name, time.perf_counter())


@dataclass
class TransportResponse:
    status: str
    http_status: Optional[int]
    text: Optional[str]
    timings: TimingBreakdown
    bytes_sent: int = 0
    bytes_received: int = 0
    error: Optional[str] = None


def _header_bytes(headers: Any) -> int:
    return sum(len(key) + len(value) + 4 for key, value in headers)


class HttpTransport:
    """POSTs a serialized body and captures a phase timing breakdown."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def send(
        self,
        url: str,
        body: str,
        headers: dict[str, str],
        timeout_s: float,
    ) -> TransportResponse:
        content = body.encode("utf-8")
        recorder = _TraceRecorder()
        status = "ok"
        error_text: Optional[str] = None
        response: Optional[httpx.Response] = None

        request = self._client.build_request(
            "POST",
            url,
            content=content,
            headers=headers,
            timeout=timeout_s,
            extensions={"trace": recorder},
        )
        bytes_sent = len(content) + _header_bytes(request.headers.raw)

        started = time.perf_counter()
        try:
            response = await self._client.send(request)
        except httpx.TimeoutException as exc:
            status = "timeout"
            error_text = f"{type(exc).__name__}: {exc}"
        except httpx.HTTPError as exc:
            status = "error"
            error_text = f"{type(exc).__name__}: {exc}"
        finished = time.perf_counter()

        timings = timings_from_trace(recorder.marks, started, finished)
        if response is None:
            return TransportResponse(
                status=status,
                http_status=None,
                text=None,
                timings=timings,
                bytes_sent=bytes_sent,
                bytes_received=0,
                error=error_text,
            )
        # num_bytes_downloaded is the encoded body as read off the wire
        return TransportResponse(
            status=status,
            http_status=int(response.status_code),
            text=response.text,
            timings=timings,
            bytes_sent=bytes_sent,
            bytes_received=response.num_bytes_downloaded + _header_bytes(response.headers.raw),
            error=None,
        )


@dataclass(frozen=True)
class ParsedBody:
    data: Any


@dataclass(frozen=True)
class ParseError:
    message: str


def parse_body(text: Optional[str]) -> Union[ParsedBody, ParseError]:
    if text is None or not text.strip():
        return ParseError("empty response body")
    try:
        return ParsedBody(json.loads(text))
    except json.JSONDecodeError as exc:
        return ParseError(str(exc))


def extract_application_errors(data: Any) -> list[Any]:
    if not isinstance(data, dict):
        return []
    errors = data.get("errors")
    if not errors:
        return []
    if isinstance(errors, list):
        return errors
    return [errors]


def _is_success(http_status: Optional[int]) -> bool:
    return http_status is not None and 200 <= http_status < 300


@dataclass
class RequestOutcome:
    query_name: str
    status_code: Optional[int]
    timings: TimingBreakdown
    body_parsed: bool
    application_errors: list[Any] = field(default_factory=list)
    transport_error: Optional[str] = None

    @property
    def status_ok(self) -> bool:
        return _is_success(self.status_code)

    @property
    def failed(self) -> bool:
        return not self.status_ok or not self.body_parsed

    @property
    def passed(self) -> bool:
        return not self.failed and not self.application_errors


@dataclass
class RequestSettings:
    url: str
    timeout_s: float = 30.0
    extra_headers: dict[str, str] = field(default_factory=dict)


def _headers(token: str, extra_headers: dict[str, str]) -> dict[str, str]:
    base = {"Content-Type": "application/json"}
    base.update(extra_headers)
    base["Authorization"] = f"Bearer {token}"
    return base


class RequestDispatcher:
    def __init__(
        self,
        transport: HttpTransport,
        settings: RequestSettings,
        collector: MetricsCollector,
    ) -> None:
        self.transport = transport
        self.settings = settings
        self.collector = collector

    async def dispatch(self, template: RequestTemplate, token: str) -> RequestOutcome:
        response = await self.transport.send(
            self.settings.url,
            json.dumps(template.payload()),
            _headers(token, self.settings.extra_headers),
            self.settings.timeout_s,
        )
        tag = template.name
        self._record_transfer(response, tag)

        application_errors: list[Any] = []
        body_parsed = False
        if response.status != "ok":
            LOG.error(
                "Request for query %s failed (%s): %s", tag, response.status, response.error
            )
        else:
            parsed = parse_body(response.text)
            if isinstance(parsed, ParseError):
                LOG.error("Failed to parse response for query %s: %s", tag, parsed.message)
            else:
                body_parsed = True
                application_errors = extract_application_errors(parsed.data)
            if not _is_success(response.http_status):
                LOG.error(
                    "Query %s returned HTTP %s: %s",
                    tag,
                    response.http_status,
                    (response.text or "")[:2000],
                )

        if application_errors:
            self.collector.counter(GRAPHQL_ERROR_COUNT).add(1, tag=tag)
            LOG.error("GraphQL error for query %s: %s", tag, json.dumps(application_errors))

        outcome = RequestOutcome(
            query_name=tag,
            status_code=response.http_status,
            timings=response.timings,
            body_parsed=body_parsed,
            application_errors=application_errors,
            transport_error=response.error,
        )
        self.collector.rate(HTTP_REQ_FAILED).add(outcome.failed, tag=tag)
        checks = self.collector.rate(CHECKS)
        checks.add(outcome.status_ok, tag=CHECK_STATUS_OK)
        checks.add(body_parsed and not application_errors, tag=CHECK_NO_ERRORS)
        return outcome

    def _record_transfer(self, response: TransportResponse, tag: str) -> None:
        self.collector.counter(HTTP_REQS).add(1, tag=tag)
        for name, value in response.timings.as_metrics().items():
            self.collector.trend(name, CONTAINS_TIME).add(value, tag=tag)
        self.collector.trend(GRAPHQL_RESPONSE_TIME, CONTAINS_TIME).add(
            response.timings.duration, tag=tag
        )
        self.collector.counter(DATA_SENT, CONTAINS_DATA).add(response.bytes_sent, tag=tag)
        self.collector.counter(DATA_RECEIVED, CONTAINS_DATA).add(
            response.bytes_received, tag=tag
        )


async def _think(vu: VirtualUser, think_time_s: float) -> None:
    if think_time_s <= 0:
        return
    try:
        await asyncio.wait_for(vu.stop_event.wait(), timeout=think_time_s)
    except asyncio.TimeoutError:
        pass


async def virtual_user_loop(
    vu: VirtualUser,
    keep_running: Callable[[], bool],
    *,
    catalog: QueryCatalog,
    query_name: str,
    dispatcher: RequestDispatcher,
    token: str,
    collector: MetricsCollector,
    think_time_s: float = 1.0,
) -> None:
    while keep_running():
        started = time.perf_counter()
        template = catalog.get(query_name)
        if template is None:
            LOG.error("Query '%s' not found in catalog, skipping iteration.", query_name)
            await _think(vu, think_time_s)
            continue

        try:
            await dispatcher.dispatch(template, token)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            LOG.exception(
                "Virtual user %d iteration %d raised", vu.id, vu.iteration_count + 1
            )
        await _think(vu, think_time_s)

        vu.iteration_count += 1
        collector.counter(ITERATIONS).add(1)
        collector.trend(ITERATION_DURATION, CONTAINS_TIME).add(
            (time.perf_counter() - started) * 1000.0
        )
