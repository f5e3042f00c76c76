"""CLI main: argument parsing and command dispatch."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence

from solar_batch.scheduler import SweepScheduler
from solar_batch.tasks import default_task_registry, previous_month
from solar_config import SolarConfig, get_active_config
from solar_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_config,
    session_scope,
)
from solar_kernel.domain.clock import SystemClock
from solar_kernel.exceptions import SolarKernelError
from solar_kernel.logging_config import configure_logging
from solar_kernel.services.billing_service import BillingService
from solar_kernel.services.expiry_sweeper import ExpirySweeper


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, default=str, sort_keys=True))


def _parse_decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a decimal: {value!r}") from None


def _parse_when(value: str) -> datetime:
    when = datetime.fromisoformat(value)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_init_db(args, config: SolarConfig) -> int:
    create_tables()
    _emit({"command": "init-db", "database": config.database.url})
    return 0


def cmd_sweep(args, config: SolarConfig) -> int:
    clock = SystemClock()
    with session_scope("cli_sweep") as session:
        report = ExpirySweeper(session, clock).sweep_expired_sessions(args.now)
    _emit(
        {
            "command": "sweep",
            "swept_at": report.swept_at.isoformat(),
            "sessions_expired": report.sessions_expired,
            "bids_expired": report.bids_expired,
        }
    )
    return 0


def cmd_mark_overdue(args, config: SolarConfig) -> int:
    clock = SystemClock()
    with session_scope("cli_mark_overdue") as session:
        count = ExpirySweeper(session, clock).sweep_overdue_invoices(args.now)
    _emit({"command": "mark-overdue", "invoices_overdue": count})
    return 0


def cmd_generate_bills(args, config: SolarConfig) -> int:
    clock = SystemClock()
    year, month = args.year, args.month
    if year is None or month is None:
        default_year, default_month = previous_month(clock.now())
        year = default_year if year is None else year
        month = default_month if month is None else month

    with session_scope("cli_generate_bills") as session:
        run = BillingService(
            session,
            clock,
            rate_per_kwh=config.billing.rate_per_kwh,
            credit_rate_per_kwh=config.billing.credit_rate_per_kwh,
            due_days=config.billing.monthly_bill_due_days,
        ).generate_monthly_bills(
            month,
            year,
            rate_per_kwh=args.rate,
            credit_rate_per_kwh=args.credit_rate,
        )
    _emit(
        {
            "command": "generate-bills",
            "year": run.year,
            "month": run.month,
            "bills_created": len(run.created),
            "bills_skipped": len(run.skipped_application_ids),
            "invoice_ids": [str(i.id) for i in run.created],
        }
    )
    return 0


def cmd_scheduler(args, config: SolarConfig) -> int:
    scheduler = SweepScheduler(
        get_session_factory(),
        default_task_registry(config),
        tick_interval_seconds=args.interval or config.scheduler.sweep_interval_seconds,
    )
    if args.once:
        _emit({"command": "scheduler", "results": scheduler.tick()})
        return 0

    scheduler.start()
    try:
        while scheduler.is_running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
    return 0


COMMANDS = {
    "init-db": cmd_init_db,
    "sweep": cmd_sweep,
    "mark-overdue": cmd_mark_overdue,
    "generate-bills": cmd_generate_bills,
    "scheduler": cmd_scheduler,
}


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="solar-admin",
        description="Operate the solar portal: sweeps, billing, schema.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML file merged over the packaged defaults",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override logging.level from the config (DEBUG, INFO, ...)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create every table")

    sweep = sub.add_parser("sweep", help="Expire bid sessions past their deadline")
    sweep.add_argument("--now", type=_parse_when, default=None, help="ISO timestamp")

    overdue = sub.add_parser("mark-overdue", help="Mark unpaid invoices past due")
    overdue.add_argument("--now", type=_parse_when, default=None, help="ISO timestamp")

    bills = sub.add_parser("generate-bills", help="Generate monthly net-metering bills")
    bills.add_argument("--year", type=int, default=None)
    bills.add_argument("--month", type=int, default=None)
    bills.add_argument("--rate", type=_parse_decimal, default=None, help="Rate per imported kWh")
    bills.add_argument(
        "--credit-rate", type=_parse_decimal, default=None, help="Credit per exported kWh"
    )

    sched = sub.add_parser("scheduler", help="Run the recurring tasks in the foreground")
    sched.add_argument("--interval", type=int, default=None, help="Seconds between ticks")
    sched.add_argument("--once", action="store_true", help="Run a single tick and exit")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = get_active_config(args.config)

    level_name = (args.log_level or config.logging.level).upper()
    configure_logging(level=getattr(logging, level_name, logging.INFO))
    init_engine_from_config(config.database)

    try:
        return COMMANDS[args.command](args, config)
    except SolarKernelError as exc:
        print(f"{exc.code}: {exc}", file=sys.stderr)
        return 1
