#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from procureflow.db.schema import TABLES
from procureflow.store import PostgresBackedStore, SqliteBackedStore


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the case workflow tables on sqlite or PostgreSQL")
    parser.add_argument("--backend", choices=("sqlite", "postgres"), default="sqlite")
    parser.add_argument(
        "--sqlite-path",
        default=os.getenv("PROCUREFLOW_STORE_SQLITE_PATH", ".local/procureflow.sqlite3"),
        help="sqlite database file",
    )
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    args = parser.parse_args()

    if args.backend == "postgres":
        dsn = str(args.dsn or "").strip()
        if not dsn:
            raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")
        PostgresBackedStore(dsn=dsn)
        target = "postgres"
    else:
        SqliteBackedStore(args.sqlite_path)
        target = str(Path(args.sqlite_path).resolve())

    print(
        json.dumps(
            {"backend": args.backend, "target": target, "tables": list(TABLES)},
            ensure_ascii=True,
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
