from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from auth import AuthFailure
from runner import RunConfig, RunResult, run_load_test
from scenarios import SCENARIOS


LOG = logging.getLogger("graphql_loadtest")


def _parse_header(value: str) -> tuple[str, str]:
    name, separator, header_value = value.partition(":")
    if not separator or not name.strip():
        raise argparse.ArgumentTypeError(
            f"Invalid header '{value}'. Expected 'Name: value'."
        )
    return name.strip(), header_value.strip()


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(name)
    return value if value else default


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Scenario-driven load test for an authenticated GraphQL endpoint."
    )

    parser.add_argument(
        "--url", default=_env("LOADTEST_URL", "http://localhost:4000/graphql")
    )
    parser.add_argument(
        "--scenario",
        choices=sorted(SCENARIOS),
        default=_env("LOADTEST_SCENARIO"),
        help="Scenario to run. All registered scenarios run one after another when omitted.",
    )
    parser.add_argument(
        "--query",
        default=_env("LOADTEST_QUERY"),
        help="Query name from the catalog. Defaults to the scenario's query.",
    )
    parser.add_argument("--queries-dir", type=Path, default=Path("queries"))
    parser.add_argument("--variables-file", type=Path, default=Path("config/local.json"))

    parser.add_argument("--auth-email", default=_env("LOADTEST_AUTH_EMAIL", ""))
    parser.add_argument("--auth-password", default=_env("LOADTEST_AUTH_PASSWORD", ""))
    parser.add_argument("--auth-project-id", default="1")
    parser.add_argument("--auth-app", default="MAIN")
    parser.add_argument(
        "--header",
        dest="headers",
        type=_parse_header,
        action="append",
        default=[],
        help="Extra request header 'Name: value'; repeatable.",
    )

    parser.add_argument("--think-time-s", type=float, default=1.0)
    parser.add_argument("--timeout-s", type=float, default=30.0)
    parser.add_argument("--auth-timeout-s", type=float, default=60.0)
    parser.add_argument("--graceful-stop-s", type=float, default=None)

    parser.add_argument("--output-dir", type=Path, default=Path("runs"))
    parser.add_argument("--run-name", default=None)
    parser.add_argument(
        "--log-level",
        default=_env("LOADTEST_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
    )

    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.scenario and args.scenario not in SCENARIOS:
        parser.error(f"--scenario must be one of: {', '.join(sorted(SCENARIOS))}")
    if args.think_time_s < 0:
        parser.error("--think-time-s must be >= 0")
    if args.timeout_s <= 0 or args.auth_timeout_s <= 0:
        parser.error("--timeout-s and --auth-timeout-s must be > 0")
    if args.graceful_stop_s is not None and args.graceful_stop_s < 0:
        parser.error("--graceful-stop-s must be >= 0 when set")
    if not args.queries_dir.is_dir():
        parser.error(f"--queries-dir not found: {args.queries_dir}")
    if args.variables_file is not None and not args.variables_file.exists():
        parser.error(f"--variables-file not found: {args.variables_file}")
    if not args.auth_email or not args.auth_password:
        parser.error(
            "--auth-email and --auth-password (or LOADTEST_AUTH_EMAIL / LOADTEST_AUTH_PASSWORD) are required"
        )


def config_from_args(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        url=args.url,
        scenario=args.scenario,
        query=args.query,
        queries_dir=args.queries_dir,
        variables_file=args.variables_file,
        auth_email=args.auth_email,
        auth_password=args.auth_password,
        auth_project_id=args.auth_project_id,
        auth_app=args.auth_app,
        headers=dict(args.headers),
        think_time_s=args.think_time_s,
        timeout_s=args.timeout_s,
        auth_timeout_s=args.auth_timeout_s,
        graceful_stop_s=args.graceful_stop_s,
        output_dir=args.output_dir,
        run_name=args.run_name,
    )


async def _run_from_args(args: argparse.Namespace) -> RunResult:
    return await run_load_test(config_from_args(args))


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    _validate_args(parser, args)
    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        result = asyncio.run(_run_from_args(args))
    except AuthFailure as exc:
        LOG.error("Run aborted before any traffic: %s", exc)
        raise SystemExit(1) from exc
    print(result.text)
    print(f"Run complete. Outputs written to: {result.output_dir}")


if __name__ == "__main__":
    main()
