"""
Command line entry point.

Examples:
    python -m listing_sync migrate
    python -m listing_sync sync --source trulia --input trulia_listings.json --locality chicago
    python -m listing_sync status 5d41402abc4b2a76b9719d911017c592
    python -m listing_sync release-stale --older-than-minutes 15
"""

from __future__ import annotations

import argparse
import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Sequence

from loguru import logger

from listing_sync.config import load_settings
from listing_sync.db import create_tables
from listing_sync.enrichment import EnrichmentStateManager
from listing_sync.errors import StoreUnavailableError, SyncInProgressError
from listing_sync.logging import setup_default_logging
from listing_sync.reconcile import ReconciliationEngine
from listing_sync.sources import LOCALITY_PRESETS, SOURCE_FIELD_MAP
from listing_sync.sql_store import SqlListingStore
from listing_sync.time import iso


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str), flush=True)


def load_records(path: Path) -> list[dict[str, Any]]:
    """Scraper output: a JSON list, or an object with a ``listings`` list."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("listings") or []
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of listings")
    return [item for item in data if isinstance(item, dict)]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="listing_sync",
        description="Reconcile scraped listings and manage owner-enrichment state.",
    )
    parser.add_argument("--dsn", help="Database DSN (default from LISTING_SYNC_PG_DSN)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("migrate", help="Create tables if they do not exist.")

    sync_cmd = sub.add_parser("sync", help="Run one reconciliation pass for a source.")
    sync_cmd.add_argument("--source", required=True, help=f"One of {sorted(SOURCE_FIELD_MAP)}")
    sync_cmd.add_argument("--input", type=Path, required=True, help="Scraper JSON output")
    sync_cmd.add_argument(
        "--locality",
        choices=sorted(LOCALITY_PRESETS),
        default=None,
        help="Keep only listings inside this locality.",
    )

    status_cmd = sub.add_parser("status", help="Effective enrichment status per address hash.")
    status_cmd.add_argument("hashes", nargs="+")

    sub.add_parser("orphans", help="Mark enrichment rows with no active listing as orphaned.")

    stale_cmd = sub.add_parser("release-stale", help="Fail enrichment locks older than a threshold.")
    stale_cmd.add_argument(
        "--older-than-minutes",
        type=int,
        default=None,
        help="Lock age threshold (default LISTING_SYNC_LOCK_TTL_SECONDS).",
    )

    history_cmd = sub.add_parser("history", help="Recent enrichment attempts.")
    history_cmd.add_argument("--limit", type=int, default=50)
    history_cmd.add_argument("--offset", type=int, default=0)

    return parser


def run_command(args: argparse.Namespace, store: SqlListingStore) -> Any:
    settings = load_settings()
    manager = EnrichmentStateManager.from_settings(store, settings)

    if args.command == "migrate":
        create_tables(store.engine)
        return {"migrated": True}

    if args.command == "sync":
        engine = ReconciliationEngine(
            store,
            locality=LOCALITY_PRESETS[args.locality] if args.locality else None,
            lease_seconds=settings.lease_seconds,
        )
        stats = engine.run_pass(args.source, load_records(args.input))
        return stats.as_dict()

    if args.command == "status":
        return {h: view.as_dict() for h, view in manager.lookup(args.hashes).items()}

    if args.command == "orphans":
        return {"orphaned": manager.mark_orphaned()}

    if args.command == "release-stale":
        older_than = (
            timedelta(minutes=args.older_than_minutes) if args.older_than_minutes else None
        )
        stale = manager.stale_locks(older_than)
        released = manager.release_stale_locks(older_than)
        return {
            "released": released,
            "locks": [
                {"address_hash": s.address_hash, "locked_at": iso(s.locked_at)} for s in stale
            ],
        }

    if args.command == "history":
        return [view.as_dict() for view in manager.history(args.limit, args.offset)]

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_default_logging()

    store = SqlListingStore(args.dsn)
    try:
        _print(run_command(args, store))
    except (StoreUnavailableError, SyncInProgressError) as exc:
        logger.error("{} failed: {}", args.command, exc)
        _print({"error": str(exc), "command": args.command})
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
