from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date

from posledger.app.config import configure_logging, load_settings
from posledger.app.db import session_scope
from posledger.app.errors import ConnectionNotFound
from posledger.app.services.sync_service import SyncEngine


logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Pull POS orders into the canonical ledger.")
    parser.add_argument("--restaurant-id", help="Sync one restaurant instead of the due-connection batch.")
    parser.add_argument("--provider", help="Limit a restaurant sync to one provider.")
    parser.add_argument("--action", choices=["initial_sync", "daily_sync", "hourly_sync"])
    parser.add_argument("--start-date", type=date.fromisoformat)
    parser.add_argument("--end-date", type=date.fromisoformat)
    parser.add_argument("--limit", type=int, help="Connections per bulk run (default SYNC_BULK_CONNECTION_LIMIT).")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _parse_args(argv)
    if (args.start_date is None) != (args.end_date is None):
        print("--start-date and --end-date must be given together", file=sys.stderr)
        return 2
    if args.start_date and not args.restaurant_id:
        print("a date range needs --restaurant-id", file=sys.stderr)
        return 2

    settings = load_settings()
    if args.limit:
        settings = settings.with_overrides(bulk_connection_limit=args.limit)

    engine = SyncEngine(settings)
    try:
        with session_scope() as db:
            if args.restaurant_id:
                date_range = (args.start_date, args.end_date) if args.start_date else None
                try:
                    summary = engine.run_manual_sync(
                        db,
                        restaurant_id=args.restaurant_id,
                        action=args.action,
                        date_range=date_range,
                        provider=args.provider,
                    )
                except ConnectionNotFound as exc:
                    print(str(exc), file=sys.stderr)
                    return 1
                ok = summary["success"]
            else:
                result = engine.run_bulk_sync(db)
                summary = result.as_dict()
                ok = result.failed_syncs == 0
    finally:
        engine.close()

    print(json.dumps(summary, indent=2, default=str))
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
