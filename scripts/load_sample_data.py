#!/usr/bin/env python3
"""Load deterministic sample data: one owner, a few collaborators, one project board."""

import argparse
import random
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.server import (
    add_project_member,
    create_project,
    create_task_record,
    create_user,
    db_connect,
    ensure_bootstrap,
    find_user_by_email,
    update_task_record,
)
from app.task_workflow import TASK_SIZES, TASK_STATUSES
import datetime as dt

RANDOM_SEED = 20260216

NAMES = [
    "Alex Rivera",
    "Priya Shah",
    "Jordan Lee",
    "Maya Thompson",
    "Samir Patel",
]

TITLES = [
    "Wire up login page",
    "Draft onboarding checklist",
    "Fix flaky export",
    "Review invoice template",
    "Design project settings",
    "Write API docs",
    "Migrate legacy tasks",
    "Tune board performance",
]


def rand_date(days_back: int = 10, days_forward: int = 45) -> str:
    today = dt.date.today()
    offset = random.randint(-days_back, days_forward)
    return (today + dt.timedelta(days=offset)).isoformat()


def upsert_sample_users(conn):
    user_ids = []
    for idx, name in enumerate(NAMES, start=1):
        email = f"sample{idx}@teamboard.local"
        row = find_user_by_email(conn, email)
        if row:
            user_ids.append(int(row["id"]))
            continue
        user_id, error = create_user(conn, email, name)
        if error:
            raise RuntimeError(f"could not create {email}: {error}")
        user_ids.append(int(user_id))
    return user_ids


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--tasks", type=int, default=24, help="Number of tasks to create")
    args = parser.parse_args()

    random.seed(RANDOM_SEED)
    ensure_bootstrap()
    conn = db_connect()
    try:
        user_ids = upsert_sample_users(conn)
        owner_id = user_ids[0]
        project, error = create_project(conn, owner_id, "Sample Board", "Seeded by load_sample_data.py")
        if error or project is None:
            raise RuntimeError(f"could not create project: {error}")
        project_id = int(project["id"])
        for idx in range(1, len(NAMES)):
            add_project_member(conn, owner_id, project_id, f"sample{idx + 1}@teamboard.local")

        for n in range(args.tasks):
            task, error = create_task_record(
                conn,
                owner_id,
                {
                    "project_id": project_id,
                    "title": f"{random.choice(TITLES)} #{n + 1}",
                    "size": random.choice(TASK_SIZES),
                    "priority": random.randint(1, 4),
                    "due_date": rand_date(),
                    "assigned_to": random.choice(user_ids),
                },
            )
            if error or task is None:
                raise RuntimeError(f"could not create task: {error}")
            target = random.choice(TASK_STATUSES)
            if target != task["status"]:
                update_task_record(conn, owner_id, int(task["id"]), {"status": target})
        conn.commit()
    finally:
        conn.close()

    print(f"SAMPLE_DATA_OK project={project_id} tasks={args.tasks}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
