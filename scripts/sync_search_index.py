#!/usr/bin/env python3
"""Push stored patients and exams to the remote search index."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from typing import List, Optional

from examflow.config import get_settings
from examflow.errors import SearchDegradedError, StoreUnavailableError
from examflow.log_config import configure_logging
from examflow.search import SEARCH_COLLECTIONS
from examflow.search_service import INDEX_BATCH_SIZE, HttpSearchService, sync_search_index
from examflow.store import SqlDocumentStore


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--database-url",
        help="SQLAlchemy URL of the record store (defaults to EXAMFLOW_DATABASE_URL)",
    )
    parser.add_argument(
        "--kind",
        choices=sorted(SEARCH_COLLECTIONS) + ["all"],
        default="all",
        help="Which documents to index",
    )
    parser.add_argument("--batch-size", type=int, default=INDEX_BATCH_SIZE)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    if args.database_url:
        settings = dataclasses.replace(settings, database_url=args.database_url)
    if not settings.search_api_url:
        print("SEARCH_API_URL is not configured", file=sys.stderr)
        return 2
    kinds = sorted(SEARCH_COLLECTIONS) if args.kind == "all" else [args.kind]
    store = SqlDocumentStore.from_settings(settings)
    service = HttpSearchService.from_settings(settings)
    try:
        counts = asyncio.run(sync_search_index(store, service, kinds, batch_size=args.batch_size))
    except StoreUnavailableError as exc:
        print(f"Record store unavailable: {exc}", file=sys.stderr)
        return 1
    except SearchDegradedError as exc:
        print(f"Search index rejected the push: {exc}", file=sys.stderr)
        return 1
    finally:
        store.engine.dispose()
    print(json.dumps({"indexed": counts}, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
