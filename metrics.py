from __future__ import annotations

import math
import threading
from typing import Optional, TypeVar


TREND = "trend"
COUNTER = "counter"
RATE = "rate"
GAUGE = "gauge"

CONTAINS_TIME = "time"
CONTAINS_DATA = "data"
CONTAINS_DEFAULT = "default"


class Metric:
    """Named series with an optional per-tag partition.

    Every write lands in the overall series and, when tagged, in the tag's
    sub-series too. Each metric guards its own state with its own lock.
    """

    kind = ""

    def __init__(self, name: str, contains: str = CONTAINS_DEFAULT) -> None:
        self.name = name
        self.contains = contains
        self._lock = threading.Lock()

    def tags(self) -> list[str]:
        raise NotImplementedError


class Trend(Metric):
    kind = TREND

    def __init__(self, name: str, contains: str = CONTAINS_DEFAULT) -> None:
        super().__init__(name, contains)
        self._samples: list[float] = []
        self._tagged: dict[str, list[float]] = {}

    def add(self, value: float, tag: Optional[str] = None) -> None:
        value = float(value)
        if math.isnan(value):
            raise ValueError(f"Trend {self.name} cannot record NaN")
        with self._lock:
            self._samples.append(value)
            if tag is not None:
                self._tagged.setdefault(tag, []).append(value)

    def samples(self, tag: Optional[str] = None) -> list[float]:
        with self._lock:
            if tag is None:
                return list(self._samples)
            return list(self._tagged.get(tag, []))

    def tags(self) -> list[str]:
        with self._lock:
            return list(self._tagged)


class Counter(Metric):
    kind = COUNTER

    def __init__(self, name: str, contains: str = CONTAINS_DEFAULT) -> None:
        super().__init__(name, contains)
        self._total = 0.0
        self._tagged: dict[str, float] = {}

    def add(self, amount: float = 1, tag: Optional[str] = None) -> None:
        amount = float(amount)
        if amount < 0 or math.isnan(amount):
            raise ValueError(f"Counter {self.name} only accepts amounts >= 0, got {amount}")
        with self._lock:
            self._total += amount
            if tag is not None:
                self._tagged[tag] = self._tagged.get(tag, 0.0) + amount

    def total(self, tag: Optional[str] = None) -> float:
        with self._lock:
            if tag is None:
                return self._total
            return self._tagged.get(tag, 0.0)

    def tags(self) -> list[str]:
        with self._lock:
            return list(self._tagged)


class Rate(Metric):
    kind = RATE

    def __init__(self, name: str, contains: str = CONTAINS_DEFAULT) -> None:
        super().__init__(name, contains)
        self._counts = [0, 0]
        self._tagged: dict[str, list[int]] = {}

    def add(self, passed: bool, tag: Optional[str] = None) -> None:
        # [non-zero samples, total samples]
        hit = 1 if passed else 0
        with self._lock:
            self._counts[0] += hit
            self._counts[1] += 1
            if tag is not None:
                counts = self._tagged.setdefault(tag, [0, 0])
                counts[0] += hit
                counts[1] += 1

    def counts(self, tag: Optional[str] = None) -> tuple[int, int]:
        """Return ``(passes, total)``."""
        with self._lock:
            if tag is None:
                return self._counts[0], self._counts[1]
            counts = self._tagged.get(tag, [0, 0])
            return counts[0], counts[1]

    def tags(self) -> list[str]:
        with self._lock:
            return list(self._tagged)


class Gauge(Metric):
    kind = GAUGE

    def __init__(self, name: str, contains: str = CONTAINS_DEFAULT) -> None:
        super().__init__(name, contains)
        self._values: dict[Optional[str], tuple[float, float, float]] = {}

    def set(self, value: float, tag: Optional[str] = None) -> None:
        value = float(value)
        with self._lock:
            self._update(None, value)
            if tag is not None:
                self._update(tag, value)

    def _update(self, key: Optional[str], value: float) -> None:
        current = self._values.get(key)
        if current is None:
            self._values[key] = (value, value, value)
        else:
            self._values[key] = (value, min(current[1], value), max(current[2], value))

    def snapshot(self, tag: Optional[str] = None) -> Optional[tuple[float, float, float]]:
        """Return ``(last, min, max)`` or None when never set."""
        with self._lock:
            return self._values.get(tag)

    def tags(self) -> list[str]:
        with self._lock:
            return [key for key in self._values if key is not None]


MetricT = TypeVar("MetricT", bound=Metric)


class MetricsCollector:
    """Process-wide accumulator shared by every virtual user of a run."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, cls: type[MetricT], name: str, contains: str) -> MetricT:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = cls(name, contains)
                self._metrics[name] = metric
        if not isinstance(metric, cls):
            raise TypeError(
                f"Metric {name} is already registered as a {metric.kind}, not a {cls.kind}"
            )
        return metric

    def trend(self, name: str, contains: str = CONTAINS_DEFAULT) -> Trend:
        return self._get_or_create(Trend, name, contains)

    def counter(self, name: str, contains: str = CONTAINS_DEFAULT) -> Counter:
        return self._get_or_create(Counter, name, contains)

    def rate(self, name: str, contains: str = CONTAINS_DEFAULT) -> Rate:
        return self._get_or_create(Rate, name, contains)

    def gauge(self, name: str, contains: str = CONTAINS_DEFAULT) -> Gauge:
        return self._get_or_create(Gauge, name, contains)

    def get(self, name: str) -> Optional[Metric]:
        with self._lock:
            return self._metrics.get(name)

    def metrics(self) -> list[Metric]:
        with self._lock:
            return [self._metrics[name] for name in sorted(self._metrics)]


# Metric names shared by the dispatcher, executor and report.
VUS = "vus"
VUS_MAX = "vus_max"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
HTTP_REQS = "http_reqs"
HTTP_REQ_FAILED = "http_req_failed"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_BLOCKED = "http_req_blocked"
HTTP_REQ_CONNECTING = "http_req_connecting"
HTTP_REQ_TLS_HANDSHAKING = "http_req_tls_handshaking"
HTTP_REQ_SENDING = "http_req_sending"
HTTP_REQ_WAITING = "http_req_waiting"
HTTP_REQ_RECEIVING = "http_req_receiving"
DATA_SENT = "data_sent"
DATA_RECEIVED = "data_received"
CHECKS = "checks"
AUTH_DURATION = "auth_duration"
GRAPHQL_RESPONSE_TIME = "graphql_response_time"
GRAPHQL_ERROR_COUNT = "graphql_error_count"

BUILTIN_METRICS: tuple[tuple[str, str, str], ...] = (
    (VUS, GAUGE, CONTAINS_DEFAULT),
    (VUS_MAX, GAUGE, CONTAINS_DEFAULT),
    (ITERATIONS, COUNTER, CONTAINS_DEFAULT),
    (ITERATION_DURATION, TREND, CONTAINS_TIME),
    (HTTP_REQS, COUNTER, CONTAINS_DEFAULT),
    (HTTP_REQ_FAILED, RATE, CONTAINS_DEFAULT),
    (HTTP_REQ_DURATION, TREND, CONTAINS_TIME),
    (HTTP_REQ_BLOCKED, TREND, CONTAINS_TIME),
    (HTTP_REQ_CONNECTING, TREND, CONTAINS_TIME),
    (HTTP_REQ_TLS_HANDSHAKING, TREND, CONTAINS_TIME),
    (HTTP_REQ_SENDING, TREND, CONTAINS_TIME),
    (HTTP_REQ_WAITING, TREND, CONTAINS_TIME),
    (HTTP_REQ_RECEIVING, TREND, CONTAINS_TIME),
    (DATA_SENT, COUNTER, CONTAINS_DATA),
    (DATA_RECEIVED, COUNTER, CONTAINS_DATA),
    (CHECKS, RATE, CONTAINS_DEFAULT),
    (AUTH_DURATION, TREND, CONTAINS_TIME),
    (GRAPHQL_RESPONSE_TIME, TREND, CONTAINS_TIME),
    (GRAPHQL_ERROR_COUNT, COUNTER, CONTAINS_DEFAULT),
)


def register_builtin_metrics(collector: MetricsCollector) -> MetricsCollector:
    factories = {
        TREND: collector.trend,
        COUNTER: collector.counter,
        RATE: collector.rate,
        GAUGE: collector.gauge,
    }
    for name, kind, contains in BUILTIN_METRICS:
        factories[kind](name, contains)
    return collector
