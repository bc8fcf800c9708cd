from __future__ import annotations

import json
import math
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loadgen import percentile
from metrics import (
    AUTH_DURATION,
    CHECKS,
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
    VUS_MAX,
    Counter,
    Gauge,
    Metric,
    MetricsCollector,
    Rate,
    Trend,
)


NOT_AVAILABLE = "N/A"
DEFAULT_TAG_KEY = "query"
TREND_PERCENTILES = (90.0, 95.0, 99.0)

COLLECTING = "collecting"
FINALIZING = "finalizing"
RENDERED = "rendered"


def _pct_key(pct: float) -> str:
    return f"p({pct:g})"


def _trend_values(samples: list[float]) -> dict[str, Optional[float]]:
    values: dict[str, Optional[float]] = {"count": float(len(samples))}
    if not samples:
        values.update({"avg": None, "min": None, "med": None, "max": None})
        values.update({_pct_key(pct): None for pct in TREND_PERCENTILES})
        return values
    values["avg"] = float(statistics.fmean(samples))
    values["min"] = float(min(samples))
    values["med"] = percentile(samples, 50.0)
    values["max"] = float(max(samples))
    for pct in TREND_PERCENTILES:
        values[_pct_key(pct)] = percentile(samples, pct)
    return values


def _counter_values(total: float, duration_s: float) -> dict[str, Optional[float]]:
    return {
        "count": float(total),
        "rate": float(total / duration_s) if duration_s > 0 else None,
    }


def _rate_values(passes: int, total: int) -> dict[str, Optional[float]]:
    return {
        "rate": float(passes / total) if total else None,
        "passes": float(passes),
        "fails": float(total - passes),
    }


def _gauge_values(snapshot: Optional[tuple[float, float, float]]) -> dict[str, Optional[float]]:
    if snapshot is None:
        return {"value": None, "min": None, "max": None}
    last, low, high = snapshot
    return {"value": last, "min": low, "max": high}


@dataclass(frozen=True)
class MetricSummary:
    name: str
    kind: str
    contains: str
    values: dict[str, Optional[float]]
    tag: Optional[str] = None

    def get(self, stat: str) -> Optional[float]:
        return self.values.get(stat)


def summarize_metric(
    metric: Metric, duration_s: float, tag: Optional[str] = None
) -> MetricSummary:
    if isinstance(metric, Trend):
        values = _trend_values(metric.samples(tag))
    elif isinstance(metric, Counter):
        values = _counter_values(metric.total(tag), duration_s)
    elif isinstance(metric, Rate):
        values = _rate_values(*metric.counts(tag))
    elif isinstance(metric, Gauge):
        values = _gauge_values(metric.snapshot(tag))
    else:
        raise TypeError(f"Unsupported metric type for {metric.name}: {type(metric).__name__}")
    return MetricSummary(
        name=metric.name, kind=metric.kind, contains=metric.contains, values=values, tag=tag
    )


@dataclass(frozen=True)
class CheckResult:
    name: str
    passes: int
    fails: int


@dataclass(frozen=True)
class SummaryReport:
    generated_at: str
    run_name: str
    duration_s: float
    scenarios: tuple[str, ...]
    query: Optional[str]
    metrics: dict[str, MetricSummary]
    submetrics: dict[str, dict[str, MetricSummary]]
    checks: tuple[CheckResult, ...]
    tag_key: str = DEFAULT_TAG_KEY
    options: dict[str, Any] = field(default_factory=dict)

    def value(self, name: str, stat: str, tag: Optional[str] = None) -> Optional[float]:
        if tag is None:
            summary = self.metrics.get(name)
        else:
            summary = self.submetrics.get(name, {}).get(tag)
        if summary is None:
            return None
        return summary.get(stat)

    def tags(self, name: str) -> list[str]:
        return sorted(self.submetrics.get(name, {}))


def build_report(
    collector: MetricsCollector,
    *,
    duration_s: float,
    generated_at: str,
    run_name: str = "run",
    scenarios: tuple[str, ...] = (),
    query: Optional[str] = None,
    tag_key: str = DEFAULT_TAG_KEY,
    options: Optional[dict[str, Any]] = None,
) -> SummaryReport:
    """Reduce the collector's final state to a report; pure for a given input."""
    metrics: dict[str, MetricSummary] = {}
    submetrics: dict[str, dict[str, MetricSummary]] = {}
    checks: list[CheckResult] = []
    for metric in collector.metrics():
        metrics[metric.name] = summarize_metric(metric, duration_s)
        tags = sorted(metric.tags())
        if metric.name == CHECKS and isinstance(metric, Rate):
            for check_name in tags:
                passes, total = metric.counts(check_name)
                checks.append(CheckResult(name=check_name, passes=passes, fails=total - passes))
            continue
        if tags:
            submetrics[metric.name] = {
                tag: summarize_metric(metric, duration_s, tag) for tag in tags
            }
    return SummaryReport(
        generated_at=generated_at,
        run_name=run_name,
        duration_s=duration_s,
        scenarios=tuple(scenarios),
        query=query,
        metrics=metrics,
        submetrics=submetrics,
        checks=tuple(checks),
        tag_key=tag_key,
        options=dict(options or {}),
    )


def _available(value: Optional[float]) -> bool:
    return value is not None and not math.isnan(value)


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if not _available(value):
        return NOT_AVAILABLE
    return f"{value:.{digits}f}"


def _seconds(value_ms: Optional[float]) -> str:
    if not _available(value_ms):
        return NOT_AVAILABLE
    return f"{value_ms / 1000.0:.2f} s"


def _count(value: Optional[float]) -> str:
    if not _available(value):
        return NOT_AVAILABLE
    return f"{value:.0f}"


def _bytes(value: Optional[float]) -> str:
    if not _available(value):
        return NOT_AVAILABLE
    return f"{value:.0f} bytes"


def render_text(report: SummaryReport) -> str:
    v = report.value
    lines: list[str] = []
    lines.append("Test Report")
    lines.append("===================================")
    lines.append(f"Executed at: {report.generated_at}")
    lines.append(f"Run: {report.run_name}")
    lines.append(f"Scenarios: {', '.join(report.scenarios) or NOT_AVAILABLE}")
    lines.append(f"Query: {report.query or NOT_AVAILABLE}")
    lines.append("")
    lines.append(f"Total VUs: {_count(v(VUS_MAX, 'max'))}")
    lines.append(f"Total iterations: {_count(v(ITERATIONS, 'count'))}")
    lines.append("")

    lines.append("High-level Metrics")
    lines.append("-----------------------------------")
    lines.append(f"Failure rate: {_fmt(v(HTTP_REQ_FAILED, 'rate'), 4)}")
    lines.append(f"Requests per second: {_fmt(v(HTTP_REQS, 'rate'))}")
    lines.append(f"Total requests: {_count(v(HTTP_REQS, 'count'))}")
    lines.append(f"Duration (avg): {_seconds(v(HTTP_REQ_DURATION, 'avg'))}")
    for pct in TREND_PERCENTILES:
        lines.append(
            f"Duration (p{pct:g}): {_seconds(v(HTTP_REQ_DURATION, _pct_key(pct)))}"
        )
    lines.append("")

    lines.append("Custom Metrics")
    lines.append("-----------------------------------")
    lines.append(f"Auth Duration (p95): {_seconds(v(AUTH_DURATION, 'p(95)'))}")
    lines.append(f"GraphQL Errors: {_count(v(GRAPHQL_ERROR_COUNT, 'count'))}")
    lines.append(f"Checks passed: {_fmt(v(CHECKS, 'rate'), 4)}")
    for check in report.checks:
        lines.append(f"  {check.name}: {check.passes} passed, {check.fails} failed")
    lines.append("")

    lines.append("Detailed HTTP Timings (avg)")
    lines.append("-----------------------------------")
    lines.append(f"Blocked: {_seconds(v(HTTP_REQ_BLOCKED, 'avg'))}")
    lines.append(f"TCP connect: {_seconds(v(HTTP_REQ_CONNECTING, 'avg'))}")
    lines.append(f"TLS handshake: {_seconds(v(HTTP_REQ_TLS_HANDSHAKING, 'avg'))}")
    lines.append(f"Sending: {_seconds(v(HTTP_REQ_SENDING, 'avg'))}")
    lines.append(f"TTFB (waiting): {_seconds(v(HTTP_REQ_WAITING, 'avg'))}")
    lines.append(f"Receiving: {_seconds(v(HTTP_REQ_RECEIVING, 'avg'))}")
    lines.append("")

    lines.append("Data Transfer")
    lines.append("-----------------------------------")
    lines.append(f"Data sent: {_bytes(v(DATA_SENT, 'count'))}")
    lines.append(f"Data received: {_bytes(v(DATA_RECEIVED, 'count'))}")
    lines.append("")

    lines.append("Iteration Durations")
    lines.append("-----------------------------------")
    lines.append(f"Avg: {_seconds(v(ITERATION_DURATION, 'avg'))}")
    lines.append(f"p95: {_seconds(v(ITERATION_DURATION, 'p(95)'))}")
    lines.append(f"p90: {_seconds(v(ITERATION_DURATION, 'p(90)'))}")
    lines.append("")

    lines.append("GraphQL Response Times (per query)")
    lines.append("-----------------------------------")
    query_tags = report.tags(GRAPHQL_RESPONSE_TIME)
    if not query_tags:
        lines.append(NOT_AVAILABLE)
    for tag in query_tags:
        row = " ".join(
            f"p{pct:g}={_seconds(v(GRAPHQL_RESPONSE_TIME, _pct_key(pct), tag))}"
            for pct in TREND_PERCENTILES
        )
        lines.append(f"{tag}: {row}")

    return "\n".join(lines) + "\n"


def _metric_key(report: SummaryReport, name: str, tag: Optional[str]) -> str:
    if tag is None:
        return name
    return f"{name}{{{report.tag_key}:{tag}}}"


def _metric_payload(summary: MetricSummary) -> dict[str, Any]:
    return {"type": summary.kind, "contains": summary.contains, "values": dict(summary.values)}


def to_dict(report: SummaryReport, text: Optional[str] = None) -> dict[str, Any]:
    metrics: dict[str, Any] = {}
    for name, summary in report.metrics.items():
        metrics[_metric_key(report, name, None)] = _metric_payload(summary)
        for tag, tagged in sorted(report.submetrics.get(name, {}).items()):
            metrics[_metric_key(report, name, tag)] = _metric_payload(tagged)
    return {
        "state": {
            "generatedAt": report.generated_at,
            "runName": report.run_name,
            "testRunDurationMs": report.duration_s * 1000.0,
            "scenarios": list(report.scenarios),
            "query": report.query,
        },
        "options": report.options,
        "metrics": metrics,
        "checks": [
            {"name": check.name, "passes": check.passes, "fails": check.fails}
            for check in report.checks
        ],
        "text": render_text(report) if text is None else text,
    }


class SummaryReporter:
    """Turns a run's collector into its report once every virtual user stopped."""

    def __init__(
        self,
        collector: MetricsCollector,
        *,
        run_name: str = "run",
        scenarios: tuple[str, ...] = (),
        query: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> None:
        self.collector = collector
        self.run_name = run_name
        self.scenarios = tuple(scenarios)
        self.query = query
        self.options = dict(options or {})
        self.state = COLLECTING
        self._report: Optional[SummaryReport] = None

    def finalize(self, duration_s: float, generated_at: Optional[str] = None) -> SummaryReport:
        if self._report is not None:
            return self._report
        self.state = FINALIZING
        self._report = build_report(
            self.collector,
            duration_s=duration_s,
            generated_at=generated_at or datetime.now(timezone.utc).isoformat(),
            run_name=self.run_name,
            scenarios=self.scenarios,
            query=self.query,
            options=self.options,
        )
        return self._report

    def render(self) -> tuple[str, dict[str, Any]]:
        if self._report is None:
            raise RuntimeError("finalize() must be called before render()")
        text = render_text(self._report)
        structured = to_dict(self._report, text)
        self.state = RENDERED
        return text, structured


def write_summary_text(output_path: Path, text: str) -> None:
    output_path.write_text(text, encoding="utf-8")


def write_summary_json(output_path: Path, structured: dict[str, Any]) -> None:
    output_path.write_text(json.dumps(structured, indent=2), encoding="utf-8")
