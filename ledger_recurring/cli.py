"""
Command-line entry point for the recurring processor.

Usage:
    ledger-recurring [--config PATH] run [--as-of TS] [--deadline S] [--workers N] [--policy P]
    ledger-recurring [--config PATH] check [--limit N]
    ledger-recurring [--config PATH] init-db
    ledger-recurring [--config PATH] serve [--host H] [--port P]

The CLI is an operator tool run where the database credentials already
live, so it talks to the runner directly and does not ask for CRON_SECRET.

Exit codes:
    0  pass completed (including nothing due and partial completion)
    1  invocation failure (configuration, bad arguments, store unavailable)
    2  every attempted template failed
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from typing import Sequence

from sqlalchemy.exc import SQLAlchemyError

from ledger_kernel.config import Settings, load_settings
from ledger_kernel.db.engine import (
    create_tables,
    get_session,
    get_session_factory,
    init_engine_from_url,
)
from ledger_kernel.domain.clock import SystemClock
from ledger_kernel.exceptions import LedgerError
from ledger_kernel.logging_config import LogContext, configure_logging

EXIT_OK = 0
EXIT_INVOCATION_FAILURE = 1
EXIT_ALL_FAILED = 2


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ledger-recurring",
        description="Materialize due recurring transactions into ledger entries.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML settings file (default: LEDGER_RECURRING_CONFIG env, if set).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one pass over due templates.")
    run.add_argument(
        "--as-of",
        default=None,
        help="Reference time (ISO-8601). Default: now (UTC).",
    )
    run.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Stop starting new templates after this many seconds.",
    )
    run.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Worker threads (default: RECURRING_MAX_WORKERS or 1).",
    )
    run.add_argument(
        "--policy",
        choices=["single_step", "catch_up"],
        default=None,
        help="Backlog policy (default: RECURRING_BACKLOG_POLICY or single_step).",
    )

    check = sub.add_parser("check", help="Print the diagnostic report.")
    check.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Number of recent entries to show (default: RECURRING_RECENT_LIMIT or 10).",
    )

    sub.add_parser("init-db", help="Create the tables if they do not exist.")

    serve = sub.add_parser("serve", help="Serve the HTTP API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser.parse_args(argv)


def _init_store(settings: Settings) -> None:
    settings.require("database_url")
    init_engine_from_url(settings.database_url, echo=settings.sql_echo)


def _cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    from ledger_recurring.domain.types import RunStatus
    from ledger_recurring.services.runner import RecurringJobRunner
    from ledger_recurring.trigger import parse_as_of

    if args.policy is not None:
        settings = replace(settings, backlog_policy=args.policy)
    if args.workers is not None:
        settings = replace(settings, max_workers=args.workers)
    deadline = args.deadline if args.deadline is not None else settings.pass_timeout_seconds

    clock = SystemClock()
    now = parse_as_of(args.as_of, clock)
    _init_store(settings)
    runner = RecurringJobRunner.from_settings(settings, get_session_factory(), clock=clock)

    with LogContext.bind(trigger="cli"):
        summary = runner.run_pass(now=now, deadline_seconds=deadline)

    print(json.dumps(summary.to_response(), indent=2))
    if summary.status is RunStatus.FAILED:
        return EXIT_ALL_FAILED
    return EXIT_OK


def _cmd_check(args: argparse.Namespace, settings: Settings) -> int:
    from ledger_recurring.selectors.recurring_selector import RecurringSelector

    _init_store(settings)
    session = get_session()
    try:
        report = RecurringSelector(session).report(
            SystemClock().now_utc(),
            recent_limit=args.limit or settings.recent_limit,
        )
    finally:
        session.close()

    print(json.dumps(report.to_response(), indent=2))
    return EXIT_OK


def _cmd_init_db(args: argparse.Namespace, settings: Settings) -> int:
    import ledger_recurring.models  # noqa: F401  (registers tables on Base.metadata)

    _init_store(settings)
    create_tables()
    print("Tables created.")
    return EXIT_OK


def _cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    from ledger_recurring.api import create_app

    uvicorn.run(create_app(settings), host=args.host, port=args.port)
    return EXIT_OK


_COMMANDS = {
    "run": _cmd_run,
    "check": _cmd_check,
    "init-db": _cmd_init_db,
    "serve": _cmd_serve,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    try:
        settings = load_settings(args.config)
        configure_logging(level=settings.log_level)
        return _COMMANDS[args.command](args, settings)
    except LedgerError as e:
        print(f"ERROR [{e.code}]: {e}", file=sys.stderr)
        return EXIT_INVOCATION_FAILURE
    except SQLAlchemyError as e:
        print(f"ERROR [STORE]: {e}", file=sys.stderr)
        return EXIT_INVOCATION_FAILURE


if __name__ == "__main__":
    sys.exit(main())
