from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import httpx

from auth import AuthCredentials, AuthSettings, acquire
from catalog import QueryCatalog, load_catalog
from executor import Executor, ExecutorResult, VirtualUser
from loadgen import HttpTransport, RequestDispatcher, RequestSettings, virtual_user_loop
from metrics import MetricsCollector, register_builtin_metrics
from metrics_prom import write_exposition
from report import SummaryReport, SummaryReporter, write_summary_json, write_summary_text
from scenarios import NamedScenario, select_scenarios


LOG = logging.getLogger(__name__)


@dataclass
class RunConfig:
    url: str = "http://localhost:4000/graphql"
    scenario: Optional[str] = None
    query: Optional[str] = None
    queries_dir: Path = Path("queries")
    variables_file: Optional[Path] = Path("config/local.json")
    auth_email: str = ""
    auth_password: str = ""
    auth_project_id: str = "1"
    auth_app: str = "MAIN"
    headers: dict[str, str] = field(default_factory=dict)
    think_time_s: float = 1.0
    timeout_s: float = 30.0
    auth_timeout_s: float = 60.0
    graceful_stop_s: Optional[float] = None
    tick_s: float = 0.1
    output_dir: Path = Path("runs")
    run_name: Optional[str] = None


@dataclass
class RunResult:
    output_dir: Path
    report: SummaryReport
    text: str
    executor_results: list[ExecutorResult]


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _resolved_config_dict(config: RunConfig, output_dir: Path) -> dict[str, Any]:
    payload = asdict(config)
    payload["auth_password"] = "***" if config.auth_password else ""
    payload["headers"] = {name: "***" for name in config.headers}
    payload["queries_dir"] = str(config.queries_dir)
    payload["variables_file"] = str(config.variables_file) if config.variables_file else None
    payload["output_dir"] = str(config.output_dir)
    payload["resolved_run_dir"] = str(output_dir)
    payload["started_at_utc"] = datetime.now(timezone.utc).isoformat()
    return payload


def _scenario_query(config: RunConfig, scenario: NamedScenario) -> str:
    return config.query or scenario.query


async def _run_scenario(
    *,
    scenario: NamedScenario,
    config: RunConfig,
    catalog: QueryCatalog,
    dispatcher: RequestDispatcher,
    token: str,
    collector: MetricsCollector,
) -> ExecutorResult:
    query_name = _scenario_query(config, scenario)

    async def worker(vu: VirtualUser, keep_running: Callable[[], bool]) -> None:
        await virtual_user_loop(
            vu,
            keep_running,
            catalog=catalog,
            query_name=query_name,
            dispatcher=dispatcher,
            token=token,
            collector=collector,
            think_time_s=config.think_time_s,
        )

    executor = Executor(
        scenario.profile,
        worker,
        collector,
        name=scenario.name,
        tick_s=config.tick_s,
        graceful_stop_s=config.graceful_stop_s,
    )
    return await executor.run()


async def run_load_test(
    config: RunConfig,
    *,
    scenarios: Optional[list[NamedScenario]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    collector: Optional[MetricsCollector] = None,
) -> RunResult:
    """Authenticate, drive every selected scenario, then write the reports.

    Raises ``AuthFailure`` before any traffic when no token can be acquired.
    """
    selected = scenarios if scenarios is not None else select_scenarios(config.scenario)
    if not selected:
        raise ValueError("No scenario selected")
    catalog = load_catalog(config.queries_dir, config.variables_file)
    for scenario in selected:
        query_name = _scenario_query(config, scenario)
        if query_name not in catalog:
            LOG.warning(
                "Query '%s' for scenario %s is not in the catalog (%s)",
                query_name,
                scenario.name,
                ", ".join(catalog.names()) or "empty",
            )

    collector = register_builtin_metrics(collector or MetricsCollector())

    peak_users = max(scenario.profile.max_virtual_users for scenario in selected)
    max_connections = max(peak_users * 2, 64)
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max(max_connections // 2, 32),
    )

    executor_results: list[ExecutorResult] = []
    async with httpx.AsyncClient(limits=limits, transport=transport) as client:
        http = HttpTransport(client)
        session = await acquire(
            http,
            AuthSettings(
                url=config.url,
                credentials=AuthCredentials(
                    email=config.auth_email,
                    password=config.auth_password,
                    project_id=config.auth_project_id,
                    app=config.auth_app,
                ),
                timeout_s=config.auth_timeout_s,
                extra_headers=dict(config.headers),
            ),
            collector,
        )
        output_dir = _ensure_output_dir(config.output_dir, config.run_name)
        _write_json(output_dir / "config.json", _resolved_config_dict(config, output_dir))
        dispatcher = RequestDispatcher(
            http,
            RequestSettings(
                url=config.url,
                timeout_s=config.timeout_s,
                extra_headers=dict(config.headers),
            ),
            collector,
        )
        for scenario in selected:
            executor_results.append(
                await _run_scenario(
                    scenario=scenario,
                    config=config,
                    catalog=catalog,
                    dispatcher=dispatcher,
                    token=session.token,
                    collector=collector,
                )
            )

    queries = sorted({_scenario_query(config, scenario) for scenario in selected})
    reporter = SummaryReporter(
        collector,
        run_name=config.run_name or "run",
        scenarios=tuple(scenario.name for scenario in selected),
        query=", ".join(queries),
        options={"scenarios": {scenario.name: scenario.describe() for scenario in selected}},
    )
    report = reporter.finalize(sum(result.elapsed_s for result in executor_results))
    text, structured = reporter.render()

    write_summary_text(output_dir / "summary.txt", text)
    write_summary_json(output_dir / "summary.json", structured)
    write_exposition(output_dir / "metrics.prom", report)
    return RunResult(
        output_dir=output_dir,
        report=report,
        text=text,
        executor_results=executor_results,
    )
