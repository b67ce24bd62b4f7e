#!/usr/bin/env python3
"""TeamBoard task service

JSON API behind the team task board: projects, memberships and tasks whose
status changes are gated by the shared transition policy.
It uses Python stdlib + SQLite so it can run in restricted environments.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import json
import os
import re
import sqlite3
import threading
import traceback
from pathlib import Path
from socketserver import ThreadingMixIn
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote
from wsgiref.simple_server import WSGIServer, make_server

from app.task_workflow import (
    DEFAULT_TASK_SIZE,
    DEFAULT_TASK_STATUS,
    PRIORITY_LABELS,
    TASK_SIZES,
    TASK_STATUSES,
    can_delete_task_by_status,
    can_transition_task_status,
    get_allowed_task_transitions,
    is_task_status,
)

APP_NAME = "TeamBoard"
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
DB_PATH = Path(os.environ.get("TEAMBOARD_DB_PATH", str(DATA_DIR / "teamboard.db")))
SECRET_KEY = os.environ.get("TEAMBOARD_SECRET_KEY", "change-this-secret-in-production")
COOKIE_SECURE = os.environ.get("TEAMBOARD_COOKIE_SECURE", "0") == "1"
SESSION_DAYS = int(os.environ.get("TEAMBOARD_SESSION_DAYS", "14"))
# Generic container vars are honoured; TEAMBOARD_* take precedence where set.
HOST = os.environ.get("TEAMBOARD_HOST", os.environ.get("HOST", "127.0.0.1"))
PORT = int(os.environ.get("TEAMBOARD_PORT", os.environ.get("PORT", "8080")))
WSGI_THREADED = os.environ.get("TEAMBOARD_WSGI_THREADED", "1") == "1"
DB_BUSY_TIMEOUT_MS = max(1000, int(os.environ.get("TEAMBOARD_DB_BUSY_TIMEOUT_MS", "6000")))
DB_JOURNAL_MODE = os.environ.get("TEAMBOARD_DB_JOURNAL_MODE", "WAL").strip().upper()
DB_SYNCHRONOUS = os.environ.get("TEAMBOARD_DB_SYNCHRONOUS", "NORMAL").strip().upper()

ACTOR_COOKIE = "actor"
TASK_TEXT_FIELDS = ("description", "git_repo", "git_branch", "git_pull_request")
TASK_UPDATABLE_FIELDS = ("title", "size", "priority", "due_date", "assigned_to", "status") + TASK_TEXT_FIELDS

ERROR_STATUS: Dict[str, str] = {
    "unauthorized": "401 Unauthorized",
    "forbidden": "403 Forbidden",
    "transition_forbidden": "403 Forbidden",
    "delete_forbidden": "403 Forbidden",
    "not_found": "404 Not Found",
    "already_exists": "409 Conflict",
}
ERROR_MESSAGES: Dict[str, str] = {
    "unauthorized": "Sign in to continue",
    "forbidden": "You are not allowed to do this in this project",
    "transition_forbidden": "This task cannot be moved to the selected column with your current permissions",
    "delete_forbidden": "This task cannot be deleted in its current status",
    "not_found": "Not found",
    "already_exists": "Already exists",
}

BOOTSTRAPPED = False
BOOTSTRAP_LOCK = threading.Lock()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def iso(ts: Optional[dt.datetime] = None) -> str:
    value = ts or utcnow()
    return value.replace(microsecond=0).isoformat()


def sign_value(value: str) -> str:
    digest = hmac.new(SECRET_KEY.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{value}.{digest}"


def verify_signed_value(signed: str) -> Optional[str]:
    if not signed or "." not in signed:
        return None
    value, digest = signed.rsplit(".", 1)
    expected = hmac.new(SECRET_KEY.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()
    if hmac.compare_digest(digest, expected):
        return value
    return None


def parse_date(value: object) -> Optional[str]:
    if not value:
        return None
    text = str(value).strip()
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d"):
        try:
            return dt.datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def to_int(value: object, default: Optional[int] = None) -> Optional[int]:
    if value in (None, "") or isinstance(value, bool):
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def error_status_code(error: str) -> int:
    return int(ERROR_STATUS.get(error, "400 Bad Request").split()[0])


def db_connect() -> sqlite3.Connection:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_BUSY_TIMEOUT_MS / 1000.0)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {DB_BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys = ON")

    safe_journal_mode = DB_JOURNAL_MODE if DB_JOURNAL_MODE in {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"} else "WAL"
    safe_synchronous = DB_SYNCHRONOUS if DB_SYNCHRONOUS in {"OFF", "NORMAL", "FULL", "EXTRA"} else "NORMAL"
    conn.execute(f"PRAGMA journal_mode = {safe_journal_mode}")
    conn.execute(f"PRAGMA synchronous = {safe_synchronous}")
    return conn


class ThreadedWSGIServer(ThreadingMixIn, WSGIServer):
    """Thread-per-request WSGI server for small-team deployments."""

    daemon_threads = True


def ensure_bootstrap() -> None:
    """Initialize database once per process.

    WSGI workers may process concurrent requests; the lock prevents duplicate init work.
    """
    global BOOTSTRAPPED
    if BOOTSTRAPPED:
        return
    with BOOTSTRAP_LOCK:
        if BOOTSTRAPPED:
            return
        try:
            init_db()
            BOOTSTRAPPED = True
        except Exception:
            traceback.print_exc()
            raise


def init_db() -> None:
    """Create the schema. Safe to call repeatedly."""
    status_list = ", ".join(f"'{s}'" for s in TASK_STATUSES)
    size_list = ", ".join(f"'{s}'" for s in TASK_SIZES)
    conn = db_connect()
    try:
        conn.executescript(
            f"""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS projects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                created_by INTEGER NOT NULL REFERENCES users(id),
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS project_members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                user_id INTEGER NOT NULL REFERENCES users(id),
                role TEXT NOT NULL DEFAULT 'COLLABORATOR' CHECK (role IN ('OWNER', 'COLLABORATOR')),
                created_at TEXT NOT NULL,
                UNIQUE (project_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                description TEXT,
                size TEXT NOT NULL DEFAULT '{DEFAULT_TASK_SIZE}' CHECK (size IN ({size_list})),
                priority INTEGER,
                due_date TEXT,
                assigned_to INTEGER REFERENCES users(id),
                status TEXT NOT NULL DEFAULT '{DEFAULT_TASK_STATUS}' CHECK (status IN ({status_list})),
                validated_at TEXT,
                validated_by INTEGER REFERENCES users(id),
                git_repo TEXT,
                git_branch TEXT,
                git_pull_request TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id, status);

            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER,
                user_id INTEGER,
                action TEXT NOT NULL,
                entity TEXT,
                entity_id TEXT,
                details TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity, entity_id);
            """
        )
        conn.commit()
    finally:
        conn.close()


def log_action(
    conn: sqlite3.Connection,
    project_id: Optional[int],
    user_id: Optional[int],
    action: str,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    details: Optional[str] = None,
) -> None:
    conn.execute(
        "INSERT INTO audit_log (project_id, user_id, action, entity, entity_id, details, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
        (project_id, user_id, action, entity, entity_id, details, iso()),
    )


def snapshot_row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, object]]:
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def parse_audit_details(details: Optional[str]) -> Dict[str, object]:
    raw = str(details or "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"summary": raw}
    return parsed if isinstance(parsed, dict) else {}


def log_change(
    conn: sqlite3.Connection,
    project_id: int,
    user_id: int,
    action: str,
    entity: str,
    entity_id: object,
    before: Optional[Dict[str, object]],
    after: Optional[Dict[str, object]],
    summary: str,
    source: str = "api",
) -> None:
    payload: Dict[str, object] = {
        "source": source,
        "summary": summary[:220],
        "before": before,
        "after": after,
    }
    log_action(
        conn,
        project_id,
        user_id,
        action,
        entity,
        str(entity_id),
        json.dumps(payload, ensure_ascii=True)[:14000],
    )


# ---------------------------------------------------------------------
# Users, projects and membership
# ---------------------------------------------------------------------


def create_user(conn: sqlite3.Connection, email: str, name: str) -> Tuple[Optional[int], Optional[str]]:
    clean_email = str(email or "").strip().lower()
    clean_name = str(name or "").strip()
    if "@" not in clean_email:
        return None, "invalid_email"
    if not clean_name:
        return None, "invalid_name"
    try:
        cursor = conn.execute(
            "INSERT INTO users (email, name, created_at) VALUES (?, ?, ?)",
            (clean_email, clean_name[:120], iso()),
        )
    except sqlite3.IntegrityError:
        return None, "already_exists"
    return int(cursor.lastrowid), None


def find_user_by_email(conn: sqlite3.Connection, email: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT id, email, name FROM users WHERE email = ?",
        (str(email or "").strip().lower(),),
    ).fetchone()


def find_project(conn: sqlite3.Connection, project_id: Optional[int]) -> Optional[sqlite3.Row]:
    if project_id is None:
        return None
    return conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()


def is_project_member(conn: sqlite3.Connection, project_id: int, user_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM project_members WHERE project_id = ? AND user_id = ?",
        (project_id, user_id),
    ).fetchone()
    return row is not None


def is_project_owner(project: Optional[sqlite3.Row], user_id: int) -> bool:
    # Ownership follows the project creator, looked up on every request.
    return project is not None and int(project["created_by"]) == int(user_id)


def create_project(conn: sqlite3.Connection, user_id: int, name: str, description: str = "") -> Tuple[Optional[Dict[str, object]], Optional[str]]:
    clean_name = str(name or "").strip()
    if not clean_name:
        return None, "invalid_name"
    cursor = conn.execute(
        "INSERT INTO projects (name, description, created_by, created_at) VALUES (?, ?, ?, ?)",
        (clean_name[:200], str(description or "").strip()[:2000] or None, user_id, iso()),
    )
    project_id = int(cursor.lastrowid)
    conn.execute(
        "INSERT INTO project_members (project_id, user_id, role, created_at) VALUES (?, ?, 'OWNER', ?)",
        (project_id, user_id, iso()),
    )
    log_action(conn, project_id, user_id, "project_created", "projects", str(project_id), clean_name)
    return snapshot_row(find_project(conn, project_id)), None


def add_project_member(conn: sqlite3.Connection, actor_id: int, project_id: int, email: str) -> Tuple[Optional[Dict[str, object]], Optional[str]]:
    project = find_project(conn, project_id)
    if project is None:
        return None, "not_found"
    if not is_project_owner(project, actor_id):
        return None, "forbidden"
    user = find_user_by_email(conn, email)
    if user is None:
        return None, "not_found"
    if is_project_member(conn, project_id, int(user["id"])):
        return None, "already_exists"
    conn.execute(
        "INSERT INTO project_members (project_id, user_id, role, created_at) VALUES (?, ?, 'COLLABORATOR', ?)",
        (project_id, int(user["id"]), iso()),
    )
    log_action(conn, project_id, actor_id, "member_added", "project_members", str(user["id"]), str(user["email"]))
    return {"project_id": project_id, "user_id": int(user["id"]), "email": user["email"], "role": "COLLABORATOR"}, None


def list_projects_for_user(conn: sqlite3.Connection, user_id: int) -> List[Dict[str, object]]:
    rows = conn.execute(
        """
        SELECT p.id, p.name, p.description, p.created_by, p.created_at, m.role,
               (SELECT COUNT(*) FROM tasks t WHERE t.project_id = p.id) AS task_count
        FROM projects p
        JOIN project_members m ON m.project_id = p.id
        WHERE m.user_id = ?
        ORDER BY p.created_at DESC, p.id DESC
        """,
        (user_id,),
    ).fetchall()
    projects = []
    for row in rows:
        item = snapshot_row(row) or {}
        item["is_owner"] = int(row["created_by"]) == int(user_id)
        projects.append(item)
    return projects


# ---------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------


def find_task(conn: sqlite3.Connection, task_id: Optional[int]) -> Optional[sqlite3.Row]:
    if task_id is None:
        return None
    return conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()


def list_project_tasks(conn: sqlite3.Connection, project_id: int) -> List[Dict[str, object]]:
    rows = conn.execute(
        """
        SELECT * FROM tasks
        WHERE project_id = ?
        ORDER BY CASE WHEN priority IS NULL THEN 1 ELSE 0 END, priority ASC, created_at DESC, id DESC
        """,
        (project_id,),
    ).fetchall()
    return [snapshot_row(row) or {} for row in rows]


def _clean_task_fields(
    conn: sqlite3.Connection,
    project_id: int,
    payload: Dict[str, Any],
) -> Tuple[Dict[str, object], Optional[str]]:
    """Validate the editable task fields present in `payload`."""
    values: Dict[str, object] = {}
    if "title" in payload:
        title = str(payload.get("title") or "").strip()
        if not title:
            return {}, "invalid_title"
        values["title"] = title[:300]
    if "size" in payload:
        size = payload.get("size")
        if size not in TASK_SIZES:
            return {}, "invalid_size"
        values["size"] = size
    if "priority" in payload:
        priority = payload.get("priority")
        if priority is not None and (isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= len(PRIORITY_LABELS)):
            return {}, "invalid_priority"
        values["priority"] = priority
    if "due_date" in payload:
        raw_due = payload.get("due_date")
        due_date = parse_date(raw_due)
        if raw_due and due_date is None:
            return {}, "invalid_due_date"
        values["due_date"] = due_date
    if "assigned_to" in payload:
        assignee = payload.get("assigned_to")
        if assignee is not None:
            assignee = to_int(assignee)
            if assignee is None or not is_project_member(conn, project_id, assignee):
                return {}, "invalid_assignee"
        values["assigned_to"] = assignee
    for key in TASK_TEXT_FIELDS:
        if key in payload:
            text = str(payload.get(key) or "").strip()
            values[key] = text[:5000] or None
    if "status" in payload and not is_task_status(payload.get("status")):
        return {}, "invalid_status"
    return values, None


def create_task_record(conn: sqlite3.Connection, user_id: int, payload: Dict[str, Any]) -> Tuple[Optional[Dict[str, object]], Optional[str]]:
    project_id = to_int(payload.get("project_id"))
    project = find_project(conn, project_id)
    if project is None or project_id is None:
        return None, "invalid_project"
    if not is_project_member(conn, project_id, user_id):
        return None, "forbidden"
    if not str(payload.get("title") or "").strip():
        return None, "invalid_title"
    values, error = _clean_task_fields(conn, project_id, payload)
    if error:
        return None, error

    status = payload.get("status") or DEFAULT_TASK_STATUS
    if status != DEFAULT_TASK_STATUS and not can_transition_task_status(
        DEFAULT_TASK_STATUS, status, is_project_owner(project, user_id)
    ):
        return None, "transition_forbidden"
    now = iso()
    cursor = conn.execute(
        """
        INSERT INTO tasks
        (project_id, title, description, size, priority, due_date, assigned_to, status,
         validated_at, validated_by, git_repo, git_branch, git_pull_request, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            project_id,
            values["title"],
            values.get("description"),
            values.get("size", DEFAULT_TASK_SIZE),
            values.get("priority"),
            values.get("due_date"),
            values.get("assigned_to"),
            status,
            now if status == "VALIDATED" else None,
            user_id if status == "VALIDATED" else None,
            values.get("git_repo"),
            values.get("git_branch"),
            values.get("git_pull_request"),
            now,
            now,
        ),
    )
    task_id = int(cursor.lastrowid)
    created = snapshot_row(find_task(conn, task_id))
    log_change(conn, project_id, user_id, "task_created", "tasks", task_id, None, created, f"Task created: {values['title']}")
    return created, None


def update_task_record(
    conn: sqlite3.Connection,
    user_id: int,
    task_id: Optional[int],
    payload: Dict[str, Any],
) -> Tuple[Optional[Dict[str, object]], Optional[str]]:
    """Apply a partial update; status changes must pass the transition policy."""
    current = find_task(conn, task_id)
    if current is None:
        return None, "not_found"
    project_id = int(current["project_id"])
    if not is_project_member(conn, project_id, user_id):
        return None, "forbidden"
    values, error = _clean_task_fields(conn, project_id, {k: v for k, v in payload.items() if k in TASK_UPDATABLE_FIELDS})
    if error:
        return None, error

    before = snapshot_row(current)
    status = payload.get("status")
    if status is not None and status != current["status"]:
        project = find_project(conn, project_id)
        if not can_transition_task_status(current["status"], status, is_project_owner(project, user_id)):
            return None, "transition_forbidden"
        values["status"] = status
        if status == "VALIDATED":
            values["validated_at"] = iso()
            values["validated_by"] = user_id
        elif current["validated_at"]:
            values["validated_at"] = None
            values["validated_by"] = None

    if not values:
        return before, None
    values["updated_at"] = iso()
    assignments = ", ".join(f"{key} = ?" for key in values)
    conn.execute(f"UPDATE tasks SET {assignments} WHERE id = ?", tuple(values.values()) + (task_id,))
    after = snapshot_row(find_task(conn, task_id))

    changed: List[str] = []
    if "status" in values:
        changed.append(f"status -> {values['status']}")
    if "assigned_to" in values and values["assigned_to"] != current["assigned_to"]:
        changed.append("assignee changed")
    if "title" in values and values["title"] != current["title"]:
        changed.append("title updated")
    summary = f"Task updated ({', '.join(changed)})" if changed else "Task updated"
    log_change(conn, project_id, user_id, "task_saved", "tasks", task_id, before, after, summary)
    return after, None


def delete_task_record(conn: sqlite3.Connection, user_id: int, task_id: Optional[int]) -> Tuple[Optional[Dict[str, object]], Optional[str]]:
    current = find_task(conn, task_id)
    if current is None:
        return None, "not_found"
    project_id = int(current["project_id"])
    if not is_project_member(conn, project_id, user_id):
        return None, "forbidden"
    if not is_project_owner(find_project(conn, project_id), user_id):
        return None, "forbidden"
    if not can_delete_task_by_status(current["status"]):
        return None, "delete_forbidden"
    before = snapshot_row(current)
    conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    log_change(conn, project_id, user_id, "task_deleted", "tasks", task_id, before, None, f"Task deleted: {current['title']}")
    return before, None


def task_transition_info(conn: sqlite3.Connection, user_id: int, task_id: Optional[int]) -> Tuple[Optional[Dict[str, object]], Optional[str]]:
    current = find_task(conn, task_id)
    if current is None:
        return None, "not_found"
    project = find_project(conn, int(current["project_id"]))
    if not is_project_member(conn, int(current["project_id"]), user_id):
        return None, "forbidden"
    owner = is_project_owner(project, user_id)
    return {
        "task_id": int(current["id"]),
        "status": current["status"],
        "is_project_owner": owner,
        "allowed_transitions": get_allowed_task_transitions(current["status"], owner),
        "can_delete": owner and can_delete_task_by_status(current["status"]),
    }, None


def task_history(conn: sqlite3.Connection, user_id: int, task_id: Optional[int]) -> Tuple[Optional[List[Dict[str, object]]], Optional[str]]:
    rows = conn.execute(
        "SELECT * FROM audit_log WHERE entity = 'tasks' AND entity_id = ? ORDER BY id ASC",
        (str(task_id),),
    ).fetchall()
    if not rows:
        return None, "not_found"
    if not is_project_member(conn, int(rows[0]["project_id"]), user_id):
        return None, "forbidden"
    entries = []
    for row in rows:
        details = parse_audit_details(row["details"])
        entries.append(
            {
                "id": row["id"],
                "action": row["action"],
                "user_id": row["user_id"],
                "summary": details.get("summary", ""),
                "created_at": row["created_at"],
            }
        )
    return entries, None


# ---------------------------------------------------------------------
# HTTP plumbing
# ---------------------------------------------------------------------


class Request:
    """Thin wrapper over WSGI environ with lazy JSON body parsing."""

    def __init__(self, environ: dict):
        self.environ = environ
        self.method = environ.get("REQUEST_METHOD", "GET").upper()
        self.path = environ.get("PATH_INFO", "/")
        self.query = {k: v[0] for k, v in parse_qs(environ.get("QUERY_STRING", "")).items()}
        self.cookies = self._parse_cookies(environ.get("HTTP_COOKIE", ""))
        self._json: Optional[object] = None
        self._json_loaded = False

    def _parse_cookies(self, raw_cookie: str) -> Dict[str, str]:
        cookies: Dict[str, str] = {}
        if not raw_cookie:
            return cookies
        for token in raw_cookie.split(";"):
            if "=" not in token:
                continue
            key, value = token.split("=", 1)
            cookies[key.strip()] = unquote(value.strip())
        return cookies

    @property
    def json(self) -> Optional[object]:
        """Decoded JSON body, or None when the body is empty or malformed."""
        if not self._json_loaded:
            self._json_loaded = True
            try:
                length = int(self.environ.get("CONTENT_LENGTH") or 0)
            except ValueError:
                length = 0
            body = self.environ["wsgi.input"].read(length) if length else b""
            if body:
                try:
                    self._json = json.loads(body.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError):
                    self._json = None
        return self._json


class Response:
    """Simple response object that centralizes security headers."""

    def __init__(
        self,
        body: str = "",
        status: str = "200 OK",
        content_type: str = "application/json; charset=utf-8",
        headers: Optional[List[Tuple[str, str]]] = None,
    ):
        self.body = body.encode("utf-8") if isinstance(body, str) else body
        self.status = status
        self.content_type = content_type
        self.headers = headers or []

    def wsgi(self, start_response):
        sec_headers = [
            ("Content-Type", self.content_type),
            ("X-Frame-Options", "DENY"),
            ("X-Content-Type-Options", "nosniff"),
            ("Referrer-Policy", "strict-origin-when-cross-origin"),
            ("Cache-Control", "no-store"),
        ]
        start_response(self.status, sec_headers + self.headers)
        return [self.body]


def json_response(payload: object, status: str = "200 OK", headers: Optional[List[Tuple[str, str]]] = None) -> Response:
    return Response(json.dumps(payload), status=status, headers=headers)


def error_response(error: str) -> Response:
    return json_response(
        {"ok": False, "error": error, "message": ERROR_MESSAGES.get(error, error.replace("_", " "))},
        status=ERROR_STATUS.get(error, "400 Bad Request"),
    )


def set_cookie(name: str, value: str, max_age: Optional[int] = None, path: str = "/") -> str:
    parts = [f"{name}={quote(value)}", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if COOKIE_SECURE:
        parts.append("Secure")
    if max_age is not None:
        parts.append(f"Max-Age={max_age}")
    return "; ".join(parts)


def clear_cookie(name: str, path: str = "/") -> str:
    parts = [f"{name}=", "Max-Age=0", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if COOKIE_SECURE:
        parts.append("Secure")
    return "; ".join(parts)


def issue_actor_token(user_id: int) -> str:
    return sign_value(str(user_id))


def get_actor(conn: sqlite3.Connection, req: Request) -> Optional[sqlite3.Row]:
    user_id = to_int(verify_signed_value(req.cookies.get(ACTOR_COOKIE, "")))
    if user_id is None:
        return None
    return conn.execute("SELECT id, email, name FROM users WHERE id = ?", (user_id,)).fetchone()


def _json_object(req: Request) -> Optional[Dict[str, Any]]:
    body = req.json
    return body if isinstance(body, dict) else None


TASK_PATH = re.compile(r"^/api/tasks/(\d+)$")
TASK_SUB_PATH = re.compile(r"^/api/tasks/(\d+)/(transitions|history)$")
PROJECT_TASKS_PATH = re.compile(r"^/api/projects/(\d+)/tasks$")
PROJECT_MEMBERS_PATH = re.compile(r"^/api/projects/(\d+)/members$")


def app(environ, start_response):
    """WSGI entrypoint.

    Route dispatch is explicit (`if req.path == ...`) rather than framework-based.
    Service helpers return `(result, error)`; only this function turns errors into HTTP.
    """
    req = Request(environ)

    if req.path == "/healthz":
        return json_response({"ok": True}).wsgi(start_response)

    try:
        ensure_bootstrap()
    except Exception as exc:
        return json_response(
            {"ok": False, "error": "bootstrap_failed", "message": str(exc)},
            status="503 Service Unavailable",
        ).wsgi(start_response)

    conn = db_connect()
    try:
        if req.path == "/api/session" and req.method == "POST":
            body = _json_object(req) or {}
            user = find_user_by_email(conn, str(body.get("email") or ""))
            if user is None:
                return error_response("not_found").wsgi(start_response)
            token = issue_actor_token(int(user["id"]))
            cookie = set_cookie(ACTOR_COOKIE, token, max_age=SESSION_DAYS * 86400)
            return json_response(
                {"ok": True, "user": snapshot_row(user), "token": token},
                headers=[("Set-Cookie", cookie)],
            ).wsgi(start_response)

        if req.path == "/api/session" and req.method == "DELETE":
            return json_response({"ok": True}, headers=[("Set-Cookie", clear_cookie(ACTOR_COOKIE))]).wsgi(start_response)

        actor = get_actor(conn, req)
        if actor is None:
            return error_response("unauthorized").wsgi(start_response)
        user_id = int(actor["id"])

        if req.path == "/api/projects" and req.method == "GET":
            return json_response({"ok": True, "projects": list_projects_for_user(conn, user_id)}).wsgi(start_response)

        if req.path == "/api/projects" and req.method == "POST":
            body = _json_object(req)
            if body is None:
                return error_response("invalid_json").wsgi(start_response)
            project, error = create_project(conn, user_id, str(body.get("name") or ""), str(body.get("description") or ""))
            if error:
                return error_response(error).wsgi(start_response)
            conn.commit()
            return json_response({"ok": True, "project": project}, status="201 Created").wsgi(start_response)

        match = PROJECT_MEMBERS_PATH.match(req.path)
        if match and req.method == "POST":
            body = _json_object(req) or {}
            member, error = add_project_member(conn, user_id, int(match.group(1)), str(body.get("email") or ""))
            if error:
                return error_response(error).wsgi(start_response)
            conn.commit()
            return json_response({"ok": True, "member": member}, status="201 Created").wsgi(start_response)

        match = PROJECT_TASKS_PATH.match(req.path)
        if match and req.method == "GET":
            project_id = int(match.group(1))
            project = find_project(conn, project_id)
            if project is None:
                return error_response("not_found").wsgi(start_response)
            if not is_project_member(conn, project_id, user_id):
                return error_response("forbidden").wsgi(start_response)
            return json_response(
                {
                    "ok": True,
                    "is_project_owner": is_project_owner(project, user_id),
                    "tasks": list_project_tasks(conn, project_id),
                }
            ).wsgi(start_response)

        if req.path == "/api/tasks" and req.method == "POST":
            body = _json_object(req)
            if body is None:
                return error_response("invalid_json").wsgi(start_response)
            task, error = create_task_record(conn, user_id, body)
            if error:
                return error_response(error).wsgi(start_response)
            conn.commit()
            return json_response({"ok": True, "task": task}, status="201 Created").wsgi(start_response)

        match = TASK_PATH.match(req.path)
        if match and req.method in {"PUT", "PATCH"}:
            body = _json_object(req)
            if body is None:
                return error_response("invalid_json").wsgi(start_response)
            task, error = update_task_record(conn, user_id, int(match.group(1)), body)
            if error:
                return error_response(error).wsgi(start_response)
            conn.commit()
            return json_response({"ok": True, "task": task}).wsgi(start_response)

        if match and req.method == "DELETE":
            task, error = delete_task_record(conn, user_id, int(match.group(1)))
            if error:
                return error_response(error).wsgi(start_response)
            conn.commit()
            return json_response({"ok": True, "task_id": task["id"] if task else None}).wsgi(start_response)

        match = TASK_SUB_PATH.match(req.path)
        if match and req.method == "GET":
            task_id = int(match.group(1))
            if match.group(2) == "transitions":
                info, error = task_transition_info(conn, user_id, task_id)
                if error:
                    return error_response(error).wsgi(start_response)
                return json_response({"ok": True, **(info or {})}).wsgi(start_response)
            entries, error = task_history(conn, user_id, task_id)
            if error:
                return error_response(error).wsgi(start_response)
            return json_response({"ok": True, "entries": entries}).wsgi(start_response)

        return error_response("not_found").wsgi(start_response)
    except Exception:
        traceback.print_exc()
        return json_response(
            {"ok": False, "error": "server_error", "message": "An unexpected server error occurred."},
            status="500 Internal Server Error",
        ).wsgi(start_response)
    finally:
        conn.close()


def run() -> None:
    ensure_bootstrap()
    server_mode = "threaded" if WSGI_THREADED else "single-threaded"
    print(f"{APP_NAME} running on http://{HOST}:{PORT} (db={DB_PATH}, mode={server_mode}, journal={DB_JOURNAL_MODE})")
    if WSGI_THREADED:
        server = make_server(HOST, PORT, app, server_class=ThreadedWSGIServer)
    else:
        server = make_server(HOST, PORT, app)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("Shutting down")


if __name__ == "__main__":
    run()
