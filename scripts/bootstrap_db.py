#!/usr/bin/env python3
"""Create or upgrade the PMO Dashboard schema and print per-table row counts."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pmo.server import DATABASE_URL, DB_BACKEND, DB_PATH, db_connect, ensure_bootstrap

TABLES = (
    "project_types",
    "projects",
    "project_daily_updates",
    "project_updates",
    "milestones",
    "ma_logs",
    "project_billings",
    "audit_log",
)


def main() -> int:
    ensure_bootstrap()
    conn = db_connect()
    try:
        counts = {table: int(conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"]) for table in TABLES}
    finally:
        conn.close()

    print("BOOTSTRAP_OK")
    print("backend:", DB_BACKEND)
    if DB_BACKEND == "postgres":
        print("database_url_set:", bool(DATABASE_URL))
    else:
        print("db_path:", DB_PATH)
    print("counts:", counts)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
