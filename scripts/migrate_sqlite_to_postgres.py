#!/usr/bin/env python3
"""Copy PMO Dashboard data from SQLite into PostgreSQL.

Usage:
  PMO_DATABASE_URL=postgresql://... python3 scripts/migrate_sqlite_to_postgres.py
  python3 scripts/migrate_sqlite_to_postgres.py --source /path/to/pmo_dashboard.db --truncate

The destination schema is created first through the app's own bootstrap, then rows are
copied table by table (parents before children) and id sequences are moved past the
imported ids.
"""

from __future__ import annotations

import argparse
import os
import sqlite3
import sys
from pathlib import Path
from typing import Dict, List

try:
    import psycopg
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"psycopg is required: {exc}")

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Parents first so foreign keys resolve during the copy.
TABLE_ORDER = [
    "project_types",
    "projects",
    "project_daily_updates",
    "project_updates",
    "milestones",
    "ma_logs",
    "project_billings",
    "audit_log",
]


def sqlite_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    return [str(r[1]) for r in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def pg_columns(cur, table: str) -> List[str]:
    cur.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_schema = current_schema() AND table_name = %s
        ORDER BY ordinal_position
        """,
        (table,),
    )
    return [str(r[0]) for r in cur.fetchall()]


def copy_table(src: sqlite3.Connection, dcur, table: str, truncate: bool) -> int:
    src_cols = sqlite_columns(src, table)
    if not src_cols:
        return 0
    dst_cols = set(pg_columns(dcur, table))
    cols = [c for c in src_cols if c in dst_cols]
    if not cols:
        return 0
    if truncate:
        dcur.execute(f'TRUNCATE TABLE "{table}" RESTART IDENTITY CASCADE')

    qcols = ", ".join(f'"{c}"' for c in cols)
    placeholders = ", ".join(["%s"] * len(cols))
    rows = src.execute(f'SELECT {qcols} FROM "{table}" ORDER BY id').fetchall()
    if rows:
        dcur.executemany(
            f'INSERT INTO "{table}" ({qcols}) VALUES ({placeholders}) ON CONFLICT DO NOTHING',
            [tuple(row[c] for c in cols) for row in rows],
        )
    if "id" in cols:
        dcur.execute(
            f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), COALESCE((SELECT MAX(id) FROM \"{table}\"), 0) + 1, false)"
        )
    return len(rows)


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--source", default=str(ROOT / "data" / "pmo_dashboard.db"))
    parser.add_argument("--truncate", action="store_true", help="truncate destination tables before import")
    args = parser.parse_args()

    db_url = os.environ.get("PMO_DATABASE_URL", os.environ.get("DATABASE_URL", "")).strip()
    if not db_url:
        raise SystemExit("Set PMO_DATABASE_URL (or DATABASE_URL) first.")
    source_path = Path(args.source)
    if not source_path.exists():
        raise SystemExit(f"SQLite source not found: {source_path}")

    # The settings module reads the URL at import time, so the schema lands in PostgreSQL.
    from pmo.server import DB_BACKEND, init_db

    if DB_BACKEND != "postgres":
        raise SystemExit("Database URL must start with postgres:// or postgresql://")
    init_db()

    src = sqlite3.connect(str(source_path))
    src.row_factory = sqlite3.Row
    dst = psycopg.connect(db_url, autocommit=False)
    migrated: Dict[str, int] = {}
    try:
        with dst.cursor() as dcur:
            for table in TABLE_ORDER:
                migrated[table] = copy_table(src, dcur, table, args.truncate)
        dst.commit()
    finally:
        src.close()
        dst.close()

    print(f"MIGRATION_COMPLETE tables={len(migrated)} rows={sum(migrated.values())}")
    for table in TABLE_ORDER:
        print(f"- {table}: {migrated[table]}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
