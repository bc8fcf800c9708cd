from __future__ import annotations

import re
from pathlib import Path
from typing import Iterator, Optional

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.parser import text_string_to_metric_families

from metrics import COUNTER
from report import MetricSummary, SummaryReport


DEFAULT_PREFIX = "loadtest"

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")


def _family_name(prefix: str, name: str) -> str:
    return _INVALID_NAME_CHARS.sub("_", f"{prefix}_{name}")


def _summaries(report: SummaryReport, name: str, summary: MetricSummary) -> list[MetricSummary]:
    return [summary] + [
        report.submetrics[name][tag] for tag in report.tags(name)
    ]


class SummaryReportCollector:
    """Exposes a finalized report through the prometheus_client collector API."""

    def __init__(self, report: SummaryReport, prefix: str = DEFAULT_PREFIX) -> None:
        self.report = report
        self.prefix = prefix

    def collect(self) -> Iterator[Metric]:
        for name, summary in self.report.metrics.items():
            family_name = _family_name(self.prefix, name)
            documentation = f"{summary.kind} {name} ({summary.contains})"
            summaries = _summaries(self.report, name, summary)
            if summary.kind == COUNTER:
                counter = CounterMetricFamily(family_name, documentation, labels=["tag"])
                for item in summaries:
                    count = item.get("count")
                    if count is not None:
                        counter.add_metric([item.tag or ""], count)
                yield counter
                continue

            gauge = GaugeMetricFamily(family_name, documentation, labels=["tag", "stat"])
            for item in summaries:
                for stat, value in item.values.items():
                    if value is None:
                        continue
                    gauge.add_metric([item.tag or "", stat], value)
            yield gauge


def render_exposition(report: SummaryReport, prefix: str = DEFAULT_PREFIX) -> str:
    registry = CollectorRegistry(auto_describe=False)
    registry.register(SummaryReportCollector(report, prefix))
    return generate_latest(registry).decode("utf-8")


def parse_exposition(text: str) -> dict[tuple[str, str, Optional[str]], float]:
    """Index exposition samples by ``(sample name, tag, stat)``."""
    values: dict[tuple[str, str, Optional[str]], float] = {}
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            if sample.name.endswith("_created"):
                continue
            key = (sample.name, sample.labels.get("tag", ""), sample.labels.get("stat"))
            values[key] = float(sample.value)
    return values


def write_exposition(output_path: Path, report: SummaryReport, prefix: str = DEFAULT_PREFIX) -> None:
    output_path.write_text(render_exposition(report, prefix), encoding="utf-8")
