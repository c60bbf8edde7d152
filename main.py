from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from pathlib import Path

from dotenv import load_dotenv

from marketauth.core.clock import SystemClock
from marketauth.core.config import AppConfig
from marketauth.core.logging import setup_logging
from marketauth.core.migrations import apply_migrations
from marketauth.core.mongo_migrations import apply_mongo_migrations
from marketauth.otp.store import SQLiteOTPStore
from marketauth.pipeline.audit import SecurityAuditLog

APP_ROOT = Path(__file__).resolve().parent


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Operator commands for the marketplace auth state stores."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("migrate", help="Apply SQLite and MongoDB migrations.")
    sub.add_parser("otp-stats", help="Print OTP record counts.")
    cleanup = sub.add_parser("otp-cleanup", help="Delete OTP records past expiry plus grace.")
    cleanup.add_argument(
        "--grace-seconds",
        type=int,
        default=None,
        help="Override OTP_GC_GRACE_SECONDS for this run.",
    )
    audit = sub.add_parser("audit-export", help="Print security audit entries as JSON.")
    audit.add_argument("--limit", type=int, default=100)
    audit.add_argument("--offset", type=int, default=0)
    audit.add_argument("--actor", default="", help="Only entries of this user id.")
    audit.add_argument("--outcome", default="", choices=["", "allowed", "denied"])
    return parser


def main() -> None:
    load_dotenv()
    config = AppConfig.from_env()
    setup_logging(config.logging.level)
    logger = logging.getLogger("main")
    args = build_parser().parse_args()

    state_db_path = (APP_ROOT / config.storage.sqlite_path).resolve()
    state_db_path.parent.mkdir(parents=True, exist_ok=True)
    timeout = config.storage.sqlite_timeout_seconds
    now = SystemClock().now()

    if args.command == "migrate":
        summary = {
            "sqlite": apply_migrations(state_db_path),
            "mongo": apply_mongo_migrations(config.storage),
        }
    elif args.command == "otp-stats":
        store = SQLiteOTPStore(database_path=state_db_path, timeout_seconds=timeout)
        try:
            summary = dataclasses.asdict(store.statistics(now=now))
        finally:
            store.close()
    elif args.command == "otp-cleanup":
        grace = config.otp.gc_grace_seconds if args.grace_seconds is None else args.grace_seconds
        store = SQLiteOTPStore(database_path=state_db_path, timeout_seconds=timeout)
        try:
            summary = {"removed": store.purge(now=now, grace_seconds=grace)}
        finally:
            store.close()
    else:
        audit_log = SecurityAuditLog(database_path=state_db_path, timeout_seconds=timeout)
        try:
            entries, total = audit_log.export(
                limit=args.limit, offset=args.offset, actor_id=args.actor, outcome=args.outcome
            )
        finally:
            audit_log.close()
        summary = {"total": total, "items": [entry.model_dump() for entry in entries]}

    logger.info("command_completed", extra={"action": args.command})
    print(json.dumps(summary, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
