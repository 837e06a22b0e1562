"""
cli.py
------

Command line entry point for schedulers and operators. Production cron
runs ``sync`` daily at 02:00 and ``check-alerts`` after it.

Usage:

    python cli.py init-db
    python cli.py sync [--account-id 3] [--start-date 2025-01-01] [--end-date 2025-06-30]
    python cli.py check-alerts [--user-id u1 --email me@example.com --name Me]
    python cli.py weekly-summary --user-id u1 --email me@example.com --name Me
    python cli.py serve [--port 8001]
"""

import argparse
import json
import sys
from dataclasses import asdict
from datetime import date
from typing import List, Optional

import config
from alerts import check_alerts_for_all_users, check_budget_alerts, send_weekly_summary
from database import SessionLocal, init_db
from logging_setup import setup_logging
from notifier import EmailNotifier, Recipient
from plaid_integration import PlaidProvider
from sync import SyncPipeline


def _date(value: str) -> date:
    return date.fromisoformat(value)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Transaction sync and budget alerting")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="Python log level name")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create any missing tables")

    sync = commands.add_parser("sync", help="Sync transactions from Plaid")
    sync.add_argument("--account-id", type=int, default=None, help="Sync a single stored account")
    sync.add_argument("--start-date", type=_date, default=None, help="Override the incremental start date")
    sync.add_argument("--end-date", type=_date, default=None, help="Defaults to today")

    check = commands.add_parser("check-alerts", help="Evaluate budgets and create alerts")
    check.add_argument("--user-id", default=None, help="Only this user; all users when omitted")
    check.add_argument("--email", default=None)
    check.add_argument("--name", default=None)

    weekly = commands.add_parser("weekly-summary", help="Send a user's weekly budget digest")
    weekly.add_argument("--user-id", required=True)
    weekly.add_argument("--email", required=True)
    weekly.add_argument("--name", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8001)

    return parser.parse_args(argv)


def run_sync(args: argparse.Namespace) -> int:
    pipeline = SyncPipeline(PlaidProvider.from_env())
    if args.account_id is not None:
        result = pipeline.sync_account(args.account_id, start_date=args.start_date, end_date=args.end_date)
        print(json.dumps(asdict(result), default=str, indent=2))
        return 0 if result.ok else 1

    report = pipeline.sync_all_accounts()
    print(json.dumps(report.summary(), default=str, indent=2))
    return 0 if not report.failed else 1


def run_check_alerts(args: argparse.Namespace) -> int:
    notifier = EmailNotifier()
    if args.user_id is None:
        outcome = check_alerts_for_all_users(notifier=notifier)
        print(json.dumps(outcome))
        return 0 if not outcome["failed"] else 1

    recipient = Recipient(email=args.email, name=args.name) if args.email and args.name else None
    with SessionLocal() as db:
        created = check_budget_alerts(db, args.user_id, notifier=notifier, recipient=recipient)
        print(f"Created {len(created)} alerts for user {args.user_id}")
    return 0


def run_weekly_summary(args: argparse.Namespace) -> int:
    with SessionLocal() as db:
        sent = send_weekly_summary(db, args.user_id, Recipient(args.email, args.name), EmailNotifier())
    return 0 if sent else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "init-db":
        init_db()
        print("Database initialized.")
        return 0
    if args.command == "sync":
        return run_sync(args)
    if args.command == "check-alerts":
        return run_check_alerts(args)
    if args.command == "weekly-summary":
        return run_weekly_summary(args)
    if args.command == "serve":
        import uvicorn

        uvicorn.run("api_server:app", host=args.host, port=args.port)
        return 0
    return 2


if __name__ == "__main__":
    sys.exit(main())
