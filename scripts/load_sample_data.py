#!/usr/bin/env python3
"""Load a deterministic sample portfolio for demos and dashboard checks.

Sample projects carry a `[SAMPLE]` name prefix so they can be removed again with
`--cleanup-only` without touching real data.
"""

import argparse
import datetime as dt
import random
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pmo.server import create_project, db_connect, ensure_bootstrap, insert_daily_update, iso, log_action
from pmo.settings import local_today
from pmo.status import BILLING_STATUSES, DAILY_STATUSES, MA_CATEGORIES

RANDOM_SEED = 20260216
SAMPLE_TAG = "[SAMPLE]"

OWNERS = ["Somchai P.", "Ananya K.", "Jordan Lee", "Priya Shah", "Niran T.", "Maya Thompson"]
PROJECTS = [
    ("Citizen Portal Revamp", "Digital"),
    ("Provincial Data Lake", "Digital"),
    ("E-Procurement Rollout", "Digital"),
    ("Smart Parking Pilot", "Digital"),
    ("HR Self-Service App", "Digital"),
    ("Tax Records Migration", "Digital"),
    ("Hospital Queue System", "Digital"),
    ("Open Data Catalogue", "Digital"),
]
NOTES = [
    "Completed UAT round with the finance team.",
    "Deployed build to staging and ran regression tests.",
    "Integration with the payment gateway finished.",
    "Held a steering meeting to confirm scope.",
    "Data mapping for legacy tables is half done.",
    "Training material drafted for district officers.",
]
BLOCKERS = [
    "Waiting on vendor API credentials.",
    "Two district users have not completed UAT.",
    "Budget approval pending after the election.",
]


def clear_previous_sample(conn):
    rows = conn.execute("SELECT id FROM projects WHERE project_name LIKE ?", (f"{SAMPLE_TAG}%",)).fetchall()
    for row in rows:
        for table in ("project_daily_updates", "project_updates", "milestones", "ma_logs", "project_billings"):
            conn.execute(f"DELETE FROM {table} WHERE project_id = ?", (row["id"],))
        conn.execute("DELETE FROM projects WHERE id = ?", (row["id"],))
    log_action(conn, "sample_data_cleared", "projects", None, f"removed={len(rows)}")
    return len(rows)


def load_project(conn, name, project_type, today):
    start = today - dt.timedelta(days=random.randint(20, 120))
    end = start + dt.timedelta(days=random.choice([90, 120, 180, 240]))
    ok, result = create_project(
        conn,
        {
            "project_name": f"{SAMPLE_TAG} {name}",
            "owner": random.choice(OWNERS),
            "type": project_type,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "progress": random.randint(5, 100),
            "total_budget": random.choice([250000, 480000, 1200000, 3500000]),
            "budget_consumed_percent": random.randint(10, 95),
            "billing_cycle_count": random.choice([1, 2, 3, 4]),
        },
    )
    if not ok:
        raise SystemExit(f"Could not create {name}: {result}")
    project_id = int(result)

    for back in range(random.randint(3, 9), 0, -1):
        status = random.choices(DAILY_STATUSES[:3], weights=[6, 3, 1], k=1)[0]
        blocker = random.choice(BLOCKERS) if status != "On Track" else None
        insert_daily_update(
            conn,
            project_id,
            {
                "update_date": (today - dt.timedelta(days=back)).isoformat(),
                "status_today": status,
                "progress_note": random.choice(NOTES),
                "blocker_today": blocker,
            },
            "sample",
        )

    for idx in range(1, 4):
        conn.execute(
            "INSERT INTO milestones (project_id, name, status, due_date, created_at) VALUES (?, ?, ?, ?, ?)",
            (project_id, f"Phase {idx}", "Completed" if idx == 1 else "Pending", (start + dt.timedelta(days=30 * idx)).isoformat(), iso()),
        )

    for idx in range(1, random.randint(2, 4)):
        conn.execute(
            "INSERT INTO project_billings (project_id, name, amount, due_date, status, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (project_id, f"Installment {idx}", random.choice([50000, 120000, 300000]), (start + dt.timedelta(days=45 * idx)).isoformat(), random.choice(BILLING_STATUSES), iso()),
        )

    if random.random() < 0.4:
        ma_start = end
        ma_end = ma_start + dt.timedelta(days=random.choice([20, 180, 365]))
        conn.execute(
            "UPDATE projects SET has_ma = 1, ma_start_date = ?, ma_end_date = ? WHERE id = ?",
            (ma_start.isoformat(), ma_end.isoformat(), project_id),
        )
        conn.execute(
            "INSERT INTO ma_logs (project_id, service_date, description, hours_used, category, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (project_id, ma_start.isoformat(), "Post go-live health check.", 2.5, random.choice(MA_CATEGORIES), iso()),
        )
    return project_id


def parse_args():
    parser = argparse.ArgumentParser(description="Load a deterministic sample portfolio.")
    parser.add_argument(
        "--cleanup-only",
        action="store_true",
        help=f"Only remove {SAMPLE_TAG} projects; do not generate new sample rows.",
    )
    return parser.parse_args()


def main():
    args = parse_args()
    random.seed(RANDOM_SEED)
    ensure_bootstrap()
    conn = db_connect()
    try:
        removed = clear_previous_sample(conn)
        if args.cleanup_only:
            conn.commit()
            print("SAMPLE_DATA_CLEARED", {"projects": removed})
            return
        today = local_today()
        project_ids = [load_project(conn, name, project_type, today) for name, project_type in PROJECTS]
        conn.commit()
        summary = {
            "projects": len(project_ids),
            "daily_updates": conn.execute(
                "SELECT COUNT(*) FROM project_daily_updates WHERE source = ?", ("sample",)
            ).fetchone()[0],
            "ma_projects": conn.execute(
                "SELECT COUNT(*) FROM projects WHERE has_ma = 1 AND project_name LIKE ?", (f"{SAMPLE_TAG}%",)
            ).fetchone()[0],
        }
        print("SAMPLE_DATA_LOADED", summary)
    finally:
        conn.close()


if __name__ == "__main__":
    main()
