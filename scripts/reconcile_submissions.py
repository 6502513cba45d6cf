#!/usr/bin/env python3
"""Report, and optionally repair, stage submissions no exam record references."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

import dataclasses

from examflow.config import get_settings
from examflow.errors import StoreUnavailableError
from examflow.log_config import configure_logging
from examflow.reconcile import find_orphan_submissions, repair_orphans
from examflow.store import SqlDocumentStore


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--database-url",
        help="SQLAlchemy URL of the record store (defaults to EXAMFLOW_DATABASE_URL)",
    )
    parser.add_argument("--record-id", help="Only inspect submissions for this exam record")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Attach repairable orphans to their records instead of only reporting them",
    )
    return parser.parse_args(argv)


async def reconcile(store: SqlDocumentStore, record_id: Optional[str], apply: bool) -> Dict[str, Any]:
    orphans = await find_orphan_submissions(store, record_id)
    repaired: List[str] = []
    if apply:
        repaired = await repair_orphans(store, orphans)
    return {
        "orphans": [orphan.to_dict() for orphan in orphans],
        "repaired": repaired,
        "applied": apply,
    }


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    if args.database_url:
        settings = dataclasses.replace(settings, database_url=args.database_url)
    store = SqlDocumentStore.from_settings(settings)
    try:
        summary = asyncio.run(reconcile(store, args.record_id, args.apply))
    except StoreUnavailableError as exc:
        print(f"Record store unavailable: {exc}", file=sys.stderr)
        return 1
    finally:
        store.engine.dispose()
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
