"""Operator CLI for the session store.

Usage:
    python -m threadbridge.engine.cli list
    python -m threadbridge.engine.cli history --platform default
    python -m threadbridge.engine.cli clean-stale --max-age 3600
    python -m threadbridge.engine.cli clean-history --retention-days 30
"""
from __future__ import annotations

import argparse
import logging
import sys

from rich.console import Console
from rich.table import Table

from threadbridge.shared.services.persistence import SessionStore

from .config import BridgeConfig
from .logging_setup import configure_logging
from .models import PersistedSession


def _session_table(title: str, records: list[PersistedSession]) -> Table:
    table = Table(title=title)
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Started by")
    table.add_column("Title")
    table.add_column("Directory")
    table.add_column("Last activity")
    table.add_column("Status")
    for record in records:
        if record.cleaned_at:
            status = "ended"
        elif record.timeout_post_id:
            status = "timed out"
        else:
            status = "active"
        table.add_row(
            record.session_id,
            f"@{record.started_by}",
            record.title or "",
            record.working_dir,
            (record.last_activity_at or "")[:19],
            status,
        )
    return table


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="threadbridge",
        description="Inspect and maintain the persisted session store",
    )
    parser.add_argument(
        "--store",
        default=None,
        help="Path to sessions.json (default: BRIDGE_STORE_PATH or ~/.threadbridge)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to a rotating file (default: BRIDGE_LOG_FILE)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List resumable sessions")

    history = sub.add_parser("history", help="List ended and timed-out sessions")
    history.add_argument("--platform", default="default", help="Platform id")

    stale = sub.add_parser("clean-stale", help="Soft-delete long idle records")
    stale.add_argument(
        "--max-age",
        type=float,
        default=None,
        help="Idle seconds before a record is stale (default: 2x session timeout)",
    )

    retention = sub.add_parser("clean-history", help="Remove expired history records")
    retention.add_argument(
        "--retention-days",
        type=float,
        default=None,
        help="Days of history to keep (default: BRIDGE_HISTORY_RETENTION)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    config = BridgeConfig.from_env()
    log_file = args.log_file or config.log_file
    if log_file:
        configure_logging("DEBUG" if args.verbose else config.log_level, log_file)
    else:
        level = logging.DEBUG if args.verbose else logging.WARNING
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%H:%M:%S",
        )

    store = SessionStore(args.store or config.store_path)
    console = Console()

    if args.command == "list":
        records = sorted(
            store.load().values(),
            key=lambda r: r.last_activity_at or "",
            reverse=True,
        )
        if not records:
            console.print("No resumable sessions.")
            return 0
        console.print(_session_table("Resumable sessions", records))
        return 0

    if args.command == "history":
        records = store.get_history(args.platform, active_ids=set())
        if not records:
            console.print(f"No history for platform {args.platform!r}.")
            return 0
        console.print(_session_table(f"History ({args.platform})", records))
        return 0

    if args.command == "clean-stale":
        max_age = args.max_age if args.max_age is not None else config.stale_age_seconds
        cleaned = store.clean_stale(max_age)
        console.print(f"Soft-deleted {len(cleaned)} stale session(s).")
        for session_id in cleaned:
            console.print(f"  {session_id}")
        return 0

    if args.command == "clean-history":
        retention = (
            args.retention_days * 86400 if args.retention_days is not None
            else config.history_retention_seconds
        )
        removed = store.clean_history(retention)
        console.print(f"Removed {removed} history record(s).")
        return 0

    return 1


if __name__ == "__main__":
    sys.exit(main())
