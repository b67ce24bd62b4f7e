#!/usr/bin/env python3
"""Create the TeamBoard schema if needed and report what the database holds."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.server import DB_PATH, db_connect, ensure_bootstrap
from app.task_workflow import TASK_STATUSES


def main() -> int:
    ensure_bootstrap()
    conn = db_connect()
    try:
        tables = {}
        for table in ("users", "projects", "project_members", "tasks", "audit_log"):
            tables[table] = int(conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"])
        by_status = {status: 0 for status in TASK_STATUSES}
        for row in conn.execute("SELECT status, COUNT(*) AS c FROM tasks GROUP BY status"):
            by_status[str(row["status"])] = int(row["c"])
    finally:
        conn.close()

    print("BOOTSTRAP_OK")
    print("db_path:", DB_PATH)
    print("tables:", tables)
    print("tasks by status:", by_status)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
