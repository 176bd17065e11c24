"""Cron entry point: ``python -m keyledger.cron`` syncs the accounts that are due."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys

from dotenv import load_dotenv

from keyledger.accounts import load_accounts
from keyledger.config import (
    CRON_SYNC_INTERVAL_SECONDS,
    DEFAULT_ACCOUNTS_FILE,
    DEFAULT_SQLITE_PATH,
    ENV_ACCOUNTS_FILE,
    ENV_SQLITE_PATH,
    MAX_ACCOUNTS_PER_RUN,
)
from keyledger.orchestrator import SyncOrchestrator
from keyledger.scheduler import AutoSyncScheduler
from keyledger.store import SQLiteStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync per-key token usage for due platform accounts.")
    parser.add_argument("--accounts", default=os.getenv(ENV_ACCOUNTS_FILE, DEFAULT_ACCOUNTS_FILE))
    parser.add_argument("--db", default=os.getenv(ENV_SQLITE_PATH, DEFAULT_SQLITE_PATH))
    parser.add_argument("--interval", type=int, default=CRON_SYNC_INTERVAL_SECONDS, help="Seconds between syncs")
    parser.add_argument("--max-accounts", type=int, default=MAX_ACCOUNTS_PER_RUN)
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = build_parser().parse_args(argv)

    store = SQLiteStore(args.db)
    for account in load_accounts(args.accounts):
        store.save_account(account)

    scheduler = AutoSyncScheduler(
        SyncOrchestrator(store),
        interval_seconds=args.interval,
        max_accounts_per_run=args.max_accounts,
    )
    report = scheduler.run_due()
    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.fail_count else 0


if __name__ == "__main__":
    sys.exit(main())
