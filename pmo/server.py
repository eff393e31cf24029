#!/usr/bin/env python3
"""PMO Dashboard service

A small WSGI app that keeps the project portfolio, records daily and weekly status updates,
normalizes free-text updates into structured records and serves the numbers behind the
PMO dashboards. It uses Python stdlib + SQLite by default so it runs in restricted
environments; PostgreSQL is used when a database URL is configured.
"""

from __future__ import annotations

import datetime as dt
import json
import re
import sqlite3
import threading
import traceback
from socketserver import ThreadingMixIn
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs
from wsgiref.simple_server import WSGIServer, make_server

from pmo import ai
from pmo.analytics import (
    billing_totals,
    dashboard_counts,
    dashboard_projects,
    ma_summary,
    pipeline_metrics,
    portfolio_report,
    s_curve,
)
from pmo.normalize import checklist_to_note, clean_blocker, coerce_date, collapse
from pmo.settings import (
    APP_NAME,
    BASE_DIR,
    DATABASE_URL,
    DB_BACKEND,
    DB_BUSY_TIMEOUT_MS,
    DB_JOURNAL_MODE,
    DB_PATH,
    DEFAULT_PROJECT_DAYS,
    GEMINI_API_KEY,
    GEMINI_MODEL,
    HOST,
    PORT,
    RECENT_UPDATES_LIMIT,
    WSGI_THREADED,
    local_today,
)
from pmo.status import (
    BILLING_STATUSES,
    DAILY_STATUSES,
    MA_CATEGORIES,
    MILESTONE_STATUSES,
    PROJECT_STATUSES,
    canonical_status,
    help_needed_for,
    next_billing_status,
    risk_signal_for,
)

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional dependency path
    psycopg = None
    dict_row = None

__all__ = ["APP_NAME", "BASE_DIR", "DB_PATH", "HOST", "PORT", "app", "db_connect", "ensure_bootstrap", "init_db"]

DEFAULT_PROJECT_TYPES = ["Digital"]
BOOTSTRAPPED = False
BOOTSTRAP_LOCK = threading.Lock()
BOOTSTRAP_ERROR = ""


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def iso(ts: Optional[dt.datetime] = None) -> str:
    value = ts or utcnow()
    return value.replace(microsecond=0).isoformat()


def parse_date(value: object) -> Optional[str]:
    if not value:
        return None
    # Same day-first reading as free-text updates so one request never stores two orders.
    return coerce_date(str(value).strip())


def to_int(value: object, default: Optional[int] = None) -> Optional[int]:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def to_float(value: object, default: float = 0.0) -> float:
    if value in (None, ""):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_bool(value: object, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value in (None, ""):
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def clamp_int(value: object, default: int, minimum: int, maximum: int) -> int:
    parsed = to_int(value, default)
    if parsed is None:
        parsed = default
    return max(minimum, min(maximum, parsed))


class CompatRow(dict):
    """Row mapping that also supports numeric index access like sqlite3.Row."""

    def __init__(self, data: Dict[str, Any], order: List[str]):
        super().__init__(data)
        self._order = order

    def __getitem__(self, key: object) -> Any:  # type: ignore[override]
        if isinstance(key, int):
            return super().__getitem__(self._order[key])
        return super().__getitem__(str(key))


class CompatCursor:
    """Cursor wrapper with sqlite-like row behavior for PostgreSQL."""

    def __init__(self, cursor: Any, order: Optional[List[str]] = None, lastrowid: Optional[int] = None):
        self._cursor = cursor
        self._order = order or []
        self.lastrowid = lastrowid

    @property
    def rowcount(self) -> int:
        return int(getattr(self._cursor, "rowcount", -1))

    def _wrap(self, row: Any) -> Any:
        if isinstance(row, dict):
            return CompatRow(row, self._order)
        if isinstance(row, tuple):
            return CompatRow(dict(zip(self._order, row)), self._order)
        return row

    def fetchone(self):
        row = self._cursor.fetchone()
        return None if row is None else self._wrap(row)

    def fetchall(self):
        return [self._wrap(row) for row in self._cursor.fetchall()]


def _outside_quotes(sql: str):
    """Yield (char, quoted) pairs so callers can act on characters outside string literals."""
    in_single = False
    in_double = False
    for ch in sql:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        yield ch, in_single or in_double


def _split_sql_script(script: str) -> List[str]:
    chunks: List[str] = []
    buf: List[str] = []
    for ch, quoted in _outside_quotes(script):
        if ch == ";" and not quoted:
            if "".join(buf).strip():
                chunks.append("".join(buf).strip())
            buf = []
        else:
            buf.append(ch)
    if "".join(buf).strip():
        chunks.append("".join(buf).strip())
    return chunks


def _adapt_sql_for_postgres(sql: str) -> str:
    text = sql.strip()
    if re.match(r"PRAGMA\s+table_info\(", text, flags=re.IGNORECASE):
        return (
            "SELECT column_name AS name, data_type AS type "
            "FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = %s "
            "ORDER BY ordinal_position"
        )
    text = re.sub(r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT", "BIGSERIAL PRIMARY KEY", text, flags=re.IGNORECASE)
    return "".join("%s" if ch == "?" and not quoted else ch for ch, quoted in _outside_quotes(text))


class PostgresCompatConnection:
    """Small DB-API compatibility layer so sqlite-style calls work against PostgreSQL."""

    def __init__(self, conn: Any):
        self._conn = conn

    def execute(self, sql: str, params: Tuple[Any, ...] = ()):
        pg_sql = _adapt_sql_for_postgres(sql)
        pragma = re.match(r"PRAGMA\s+table_info\(([^)]+)\)", sql.strip(), flags=re.IGNORECASE)
        if pragma:
            params = (pragma.group(1).strip().strip('"'),)
        is_insert = pg_sql.upper().startswith("INSERT")
        if is_insert and " RETURNING " not in pg_sql.upper():
            pg_sql = f"{pg_sql} RETURNING id"
        cur = self._conn.cursor()
        try:
            cur.execute(pg_sql, params)
        except Exception as exc:
            # Keep sqlite IntegrityError handlers working on both backends.
            if str(getattr(exc, "sqlstate", "") or "").startswith("23"):
                raise sqlite3.IntegrityError(str(exc))
            raise
        order = [d.name for d in (cur.description or [])]
        last_id = None
        if is_insert:
            row = cur.fetchone()
            if row:
                last_id = int(row["id"] if isinstance(row, dict) else row[0])
        return CompatCursor(cur, order=order, lastrowid=last_id)

    def executescript(self, script: str):
        for stmt in _split_sql_script(script):
            self.execute(stmt)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def db_connect():
    if DB_BACKEND == "postgres":
        if psycopg is None:
            raise RuntimeError("PostgreSQL backend requested but psycopg is not installed.")
        raw = psycopg.connect(DATABASE_URL, row_factory=dict_row, autocommit=False)
        return PostgresCompatConnection(raw)

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_BUSY_TIMEOUT_MS / 1000.0)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {DB_BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys = ON")
    safe_journal_mode = DB_JOURNAL_MODE if DB_JOURNAL_MODE in {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"} else "WAL"
    conn.execute(f"PRAGMA journal_mode = {safe_journal_mode}")
    return conn


class ThreadedWSGIServer(ThreadingMixIn, WSGIServer):
    """Thread-per-request WSGI server for small-team deployments."""

    daemon_threads = True


def ensure_column(conn, table: str, column: str, ddl: str) -> None:
    existing = {str(row["name"] or "").lower() for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column.lower() in existing:
        return
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    except Exception as exc:
        msg = str(exc).lower()
        if "duplicate column name" not in msg and "already exists" not in msg:
            raise


def run_schema_upgrades(conn) -> None:
    """Additive, idempotent upgrades for databases created by earlier releases.

    The first release stored daily updates with only status, note and blocker; the
    normalization fields were added later.
    """
    ensure_column(conn, "project_daily_updates", "target_date", "TEXT")
    ensure_column(conn, "project_daily_updates", "help_needed", "INTEGER NOT NULL DEFAULT 0")
    ensure_column(conn, "project_daily_updates", "risk_signal", "TEXT NOT NULL DEFAULT 'none'")
    ensure_column(conn, "project_daily_updates", "source", "TEXT NOT NULL DEFAULT 'manual'")
    ensure_column(conn, "projects", "description", "TEXT NOT NULL DEFAULT ''")
    ensure_column(conn, "projects", "has_ma", "INTEGER NOT NULL DEFAULT 0")
    ensure_column(conn, "projects", "ma_start_date", "TEXT")
    ensure_column(conn, "projects", "ma_end_date", "TEXT")
    conn.executescript(
        """
        CREATE INDEX IF NOT EXISTS idx_daily_updates_project_date
        ON project_daily_updates (project_id, update_date);

        CREATE INDEX IF NOT EXISTS idx_weekly_updates_project
        ON project_updates (project_id, week_ending);
        """
    )


def ensure_bootstrap() -> None:
    """Initialize the database once per process."""
    global BOOTSTRAPPED, BOOTSTRAP_ERROR
    if BOOTSTRAPPED:
        return
    with BOOTSTRAP_LOCK:
        if BOOTSTRAPPED:
            return
        try:
            init_db()
            BOOTSTRAPPED = True
            BOOTSTRAP_ERROR = ""
        except Exception as exc:
            BOOTSTRAP_ERROR = str(exc)
            traceback.print_exc()
            raise


def init_db() -> None:
    """Create the schema and seed defaults. Safe to call repeatedly."""
    conn = db_connect()
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS project_types (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS projects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_name TEXT NOT NULL,
                owner TEXT NOT NULL DEFAULT '',
                type TEXT NOT NULL DEFAULT 'Digital',
                start_date TEXT,
                end_date TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                progress INTEGER NOT NULL DEFAULT 0,
                total_budget REAL NOT NULL DEFAULT 0,
                budget_consumed_percent REAL NOT NULL DEFAULT 0,
                billing_cycle_count INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL DEFAULT 'On Track',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS project_daily_updates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                update_date TEXT NOT NULL,
                status_today TEXT NOT NULL,
                progress_note TEXT NOT NULL,
                blocker_today TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS project_updates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                week_ending TEXT NOT NULL,
                summary_text TEXT NOT NULL DEFAULT '',
                risks_blockers TEXT NOT NULL DEFAULT '',
                next_steps TEXT NOT NULL DEFAULT '',
                rag_status TEXT NOT NULL DEFAULT 'On Track',
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS milestones (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'Pending',
                due_date TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS ma_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                service_date TEXT NOT NULL,
                description TEXT NOT NULL,
                hours_used REAL NOT NULL DEFAULT 0,
                category TEXT NOT NULL DEFAULT 'Request',
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS project_billings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                amount REAL NOT NULL DEFAULT 0,
                due_date TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'Pending',
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action TEXT NOT NULL,
                entity TEXT,
                entity_id TEXT,
                details TEXT,
                created_at TEXT NOT NULL
            );
            """
        )
        run_schema_upgrades(conn)
        seed_defaults(conn)
        conn.commit()
    finally:
        conn.close()


def seed_defaults(conn) -> None:
    for name in DEFAULT_PROJECT_TYPES:
        exists = conn.execute("SELECT id FROM project_types WHERE name = ?", (name,)).fetchone()
        if not exists:
            conn.execute("INSERT INTO project_types (name, created_at) VALUES (?, ?)", (name, iso()))


def log_action(conn, action: str, entity: Optional[str] = None, entity_id: object = None, details: Optional[str] = None) -> None:
    conn.execute(
        "INSERT INTO audit_log (action, entity, entity_id, details, created_at) VALUES (?, ?, ?, ?, ?)",
        (action, entity, None if entity_id is None else str(entity_id), details, iso()),
    )


def row_dict(row) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def project_row(row) -> Optional[Dict[str, Any]]:
    data = row_dict(row)
    if data is None:
        return None
    data["active"] = bool(data.get("active"))
    data["has_ma"] = bool(data.get("has_ma"))
    return data


def update_row(row) -> Dict[str, Any]:
    data = dict(row)
    data["help_needed"] = bool(data.get("help_needed"))
    return data


def fetch_projects(conn, where: str = "1 = 1", params: Tuple = ()) -> List[Dict[str, Any]]:
    rows = conn.execute(f"SELECT * FROM projects WHERE {where} ORDER BY project_name", params).fetchall()
    return [project_row(r) for r in rows]


def get_project(conn, project_id: Optional[int]) -> Optional[Dict[str, Any]]:
    if project_id is None:
        return None
    return project_row(conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone())


def fetch_daily_updates(conn, project_id: Optional[int] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM project_daily_updates"
    params: List[object] = []
    if project_id is not None:
        sql += " WHERE project_id = ?"
        params.append(project_id)
    sql += " ORDER BY update_date DESC, created_at DESC, id DESC"
    if limit:
        sql += f" LIMIT {int(limit)}"
    return [update_row(r) for r in conn.execute(sql, tuple(params)).fetchall()]


def fetch_children(conn, table: str, project_id: int, order: str) -> List[Dict[str, Any]]:
    return [dict(r) for r in conn.execute(f"SELECT * FROM {table} WHERE project_id = ? ORDER BY {order}", (project_id,)).fetchall()]


def project_type_names(conn) -> List[str]:
    return [str(r["name"]) for r in conn.execute("SELECT name FROM project_types ORDER BY name").fetchall()]


def known_projects(conn) -> List[Dict[str, Any]]:
    return [{"id": p["id"], "name": p["project_name"]} for p in fetch_projects(conn, "active = 1")]


def insert_daily_update(conn, project_id: int, record: Dict[str, Any], source: str) -> int:
    status = canonical_status(record.get("status_today"))
    blocker = clean_blocker(record.get("blocker_today"))
    signal = record.get("risk_signal") or risk_signal_for(status)
    if blocker and signal == "none":
        signal = "emerging"
    help_needed = record.get("help_needed")
    if help_needed is None:
        help_needed = help_needed_for(status)
    cur = conn.execute(
        """
        INSERT INTO project_daily_updates
            (project_id, update_date, status_today, progress_note, blocker_today, target_date,
             help_needed, risk_signal, source, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            project_id,
            record.get("update_date") or local_today().isoformat(),
            status,
            str(record.get("progress_note") or "")[:5000],
            blocker,
            coerce_date(record.get("target_date")),
            1 if to_bool(help_needed) else 0,
            signal,
            source,
            iso(),
        ),
    )
    update_id = int(cur.lastrowid)
    log_action(conn, "daily_update_created", "project_daily_updates", update_id, f"project={project_id} status={status} source={source}")
    return update_id


def create_project(conn, form: Dict[str, Any]) -> Tuple[bool, str]:
    name = collapse(form.get("project_name"))
    if not name:
        return False, "missing_project_name"
    types = project_type_names(conn)
    project_type = collapse(form.get("type")) or (types[0] if types else DEFAULT_PROJECT_TYPES[0])
    if project_type not in types:
        return False, "unknown_type"
    start = parse_date(form.get("start_date")) or local_today().isoformat()
    end = parse_date(form.get("end_date")) or (
        dt.date.fromisoformat(start) + dt.timedelta(days=DEFAULT_PROJECT_DAYS)
    ).isoformat()
    if end < start:
        return False, "invalid_date_range"
    status = canonical_status(form.get("status"))
    now = iso()
    cur = conn.execute(
        """
        INSERT INTO projects
            (project_name, owner, type, start_date, end_date, active, progress, total_budget,
             budget_consumed_percent, billing_cycle_count, status, description, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            name[:200],
            collapse(form.get("owner"))[:200],
            project_type,
            start,
            end,
            clamp_int(form.get("progress"), 0, 0, 100),
            max(0.0, to_float(form.get("total_budget"))),
            max(0.0, min(100.0, to_float(form.get("budget_consumed_percent")))),
            clamp_int(form.get("billing_cycle_count"), 1, 0, 120),
            status,
            str(form.get("description") or "")[:5000],
            now,
            now,
        ),
    )
    project_id = int(cur.lastrowid)
    log_action(conn, "project_created", "projects", project_id, f"Project created: {name}")
    return True, str(project_id)


def save_project(conn, current: Dict[str, Any], form: Dict[str, Any]) -> Tuple[bool, str]:
    def pval(key: str) -> object:
        return form[key] if key in form else current.get(key)

    name = collapse(pval("project_name"))
    if not name:
        return False, "missing_project_name"
    project_type = collapse(pval("type"))
    if "type" in form and project_type not in project_type_names(conn):
        return False, "unknown_type"
    start = parse_date(form.get("start_date")) if "start_date" in form else current.get("start_date")
    end = parse_date(form.get("end_date")) if "end_date" in form else current.get("end_date")
    if start and end and str(end) < str(start):
        return False, "invalid_date_range"
    status = canonical_status(pval("status")) if "status" in form else current.get("status")
    conn.execute(
        """
        UPDATE projects
        SET project_name = ?, owner = ?, type = ?, start_date = ?, end_date = ?, progress = ?,
            total_budget = ?, budget_consumed_percent = ?, billing_cycle_count = ?, status = ?,
            description = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            name[:200],
            collapse(pval("owner"))[:200],
            project_type,
            start,
            end,
            clamp_int(pval("progress"), int(current.get("progress") or 0), 0, 100),
            max(0.0, to_float(pval("total_budget"))),
            max(0.0, min(100.0, to_float(pval("budget_consumed_percent")))),
            clamp_int(pval("billing_cycle_count"), int(current.get("billing_cycle_count") or 1), 0, 120),
            status if status in PROJECT_STATUSES else current.get("status"),
            str(pval("description") or "")[:5000],
            iso(),
            current["id"],
        ),
    )
    log_action(conn, "project_saved", "projects", current["id"], f"Project updated: {name}")
    return True, str(current["id"])


def daily_record_from_form(form: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], str]:
    checklist = form.get("checklist")
    if isinstance(checklist, str) and checklist.strip():
        try:
            checklist = json.loads(checklist)
        except json.JSONDecodeError:
            return None, "invalid_checklist"
    if isinstance(checklist, list) and checklist:
        note = checklist_to_note(checklist)
    else:
        note = str(form.get("progress_note") or "").strip()
    if not note:
        return None, "missing_progress_note"
    status = canonical_status(form.get("status_today"))
    if status not in DAILY_STATUSES:
        status = DAILY_STATUSES[0]
    update_date = parse_date(form.get("update_date")) or local_today().isoformat()
    help_needed = to_bool(form["help_needed"]) if "help_needed" in form else None
    return (
        {
            "update_date": update_date,
            "status_today": status,
            "progress_note": note,
            "blocker_today": form.get("blocker_today"),
            "target_date": form.get("target_date"),
            "help_needed": help_needed,
        },
        "",
    )


class Request:
    """Thin wrapper over the WSGI environ with lazy body parsing (form-encoded or JSON)."""

    def __init__(self, environ: dict):
        self.environ = environ
        self.method = environ.get("REQUEST_METHOD", "GET").upper()
        self.path = environ.get("PATH_INFO", "/")
        self.query = {k: v[0] for k, v in parse_qs(environ.get("QUERY_STRING", "")).items()}
        self._form: Optional[Dict[str, Any]] = None
        self._body_error = ""

    @property
    def form(self) -> Dict[str, Any]:
        if self._form is None:
            self._form = self._parse_body()
        return self._form

    @property
    def body_error(self) -> str:
        """Error code for a request body that could not be read, or an empty string."""
        if self._form is None:
            self._form = self._parse_body()
        return self._body_error

    def _parse_body(self) -> Dict[str, Any]:
        if self.method not in {"POST", "PUT", "PATCH", "DELETE"}:
            return {}
        try:
            length = int(self.environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        raw = self.environ["wsgi.input"].read(length) if length else b""
        try:
            body = raw.decode("utf-8")
        except UnicodeDecodeError:
            self._body_error = "invalid_body"
            return {}
        if "application/json" in self.environ.get("CONTENT_TYPE", ""):
            try:
                parsed = json.loads(body) if body else {}
            except json.JSONDecodeError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        return {k: v[0] for k, v in parse_qs(body, keep_blank_values=True).items()}


class Response:
    """Simple response object that centralizes security headers."""

    def __init__(
        self,
        body: str = "",
        status: str = "200 OK",
        content_type: str = "text/plain; charset=utf-8",
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


def json_response(payload: object, status: str = "200 OK") -> Response:
    return Response(json.dumps(payload, default=str), status=status, content_type="application/json; charset=utf-8")


def api_error(code: str, status: str = "400 Bad Request", **extra: object) -> Response:
    payload: Dict[str, object] = {"ok": False, "error": code}
    payload.update(extra)
    return json_response(payload, status=status)


API_ROUTES: Dict[str, str] = {
    "/api/projects": "GET",
    "/api/project": "GET",
    "/api/projects/create": "POST",
    "/api/projects/save": "POST",
    "/api/projects/archive": "POST",
    "/api/projects/delete": "POST",
    "/api/project-types": "GET",
    "/api/project-types/create": "POST",
    "/api/project-types/delete": "POST",
    "/api/daily-updates/create": "POST",
    "/api/daily-updates/save": "POST",
    "/api/daily-updates/delete": "POST",
    "/api/daily-update": "POST",
    "/api/ai/daily-log": "POST",
    "/api/ai/risk-analysis": "POST",
    "/api/ai/risk-pattern": "POST",
    "/api/weekly-reports/draft": "POST",
    "/api/weekly-reports/create": "POST",
    "/api/milestones/create": "POST",
    "/api/milestones/save": "POST",
    "/api/ma/enable": "POST",
    "/api/ma-logs/create": "POST",
    "/api/ma-logs/delete": "POST",
    "/api/billings/save": "POST",
    "/api/billings/delete": "POST",
    "/api/billings/cycle": "POST",
    "/api/reports": "GET",
    "/api/reports/briefing": "POST",
    "/api/ma-tracking": "GET",
    "/api/pipeline": "GET",
}


def report_window(req: Request) -> Tuple[str, str, str]:
    today = local_today()
    end = parse_date(req.query.get("end") or req.form.get("end")) or today.isoformat()
    start = parse_date(req.query.get("start") or req.form.get("start")) or (today - dt.timedelta(days=30)).isoformat()
    type_filter = str(req.query.get("type") or req.form.get("type") or "All")
    return start, end, type_filter


def project_detail(conn, project: Dict[str, Any], view: str) -> Dict[str, Any]:
    project_id = project["id"]
    daily = fetch_daily_updates(conn, project_id)
    billings = fetch_children(conn, "project_billings", project_id, "due_date ASC, id ASC")
    return {
        "project": project,
        "current_status": daily[0]["status_today"] if daily else "On Track",
        "milestones": fetch_children(conn, "milestones", project_id, "due_date ASC, id ASC"),
        "daily_updates": daily,
        "weekly_reports": fetch_children(conn, "project_updates", project_id, "week_ending DESC, id DESC"),
        "ma_logs": fetch_children(conn, "ma_logs", project_id, "service_date DESC, id DESC") if project["has_ma"] else [],
        "billings": billings,
        "billing_totals": billing_totals(billings),
        "progress_curve": s_curve(project.get("start_date"), project.get("end_date"), project.get("progress"), view, local_today()),
        "suggest_ma": int(project.get("progress") or 0) == 100 and not project["has_ma"],
    }


def handle_api(req: Request, conn) -> Response:
    form = req.form
    path = req.path

    if path == "/api/projects":
        projects = fetch_projects(conn)
        updates = fetch_daily_updates(conn)
        rows = dashboard_projects(
            projects,
            updates,
            lifecycle=req.query.get("lifecycle", "Active"),
            type_filter=req.query.get("type", "All"),
            status_filter=req.query.get("status", "All"),
            search=req.query.get("q", ""),
        )
        return json_response({"ok": True, "projects": rows, "counts": dashboard_counts(projects, updates)})

    if path == "/api/project":
        project = get_project(conn, to_int(req.query.get("id")))
        if not project:
            return api_error("not_found", "404 Not Found")
        view = "month" if req.query.get("view") == "month" else "week"
        return json_response(dict({"ok": True}, **project_detail(conn, project, view)))

    if path == "/api/projects/create":
        ok, result = create_project(conn, form)
        if not ok:
            return api_error(result)
        conn.commit()
        return json_response({"ok": True, "project": get_project(conn, int(result))})

    if path == "/api/project-types":
        rows = [dict(r) for r in conn.execute("SELECT * FROM project_types ORDER BY name").fetchall()]
        return json_response({"ok": True, "types": rows})

    if path == "/api/project-types/create":
        name = collapse(form.get("name"))
        if not name:
            return api_error("missing_name")
        try:
            cur = conn.execute("INSERT INTO project_types (name, created_at) VALUES (?, ?)", (name[:120], iso()))
        except sqlite3.IntegrityError:
            conn.rollback()
            return api_error("duplicate_type", "409 Conflict", message="Error adding type. Name must be unique.")
        log_action(conn, "project_type_created", "project_types", cur.lastrowid, name)
        conn.commit()
        return json_response({"ok": True, "id": cur.lastrowid, "name": name})

    if path == "/api/project-types/delete":
        row = conn.execute("SELECT * FROM project_types WHERE id = ?", (to_int(form.get("type_id")),)).fetchone()
        if not row:
            return api_error("not_found", "404 Not Found")
        in_use = int(conn.execute("SELECT COUNT(*) FROM projects WHERE type = ?", (row["name"],)).fetchone()[0])
        if in_use:
            return api_error(
                "type_in_use",
                "409 Conflict",
                message=f'Cannot delete "{row["name"]}" because it is currently used by {in_use} project(s).',
            )
        conn.execute("DELETE FROM project_types WHERE id = ?", (row["id"],))
        log_action(conn, "project_type_deleted", "project_types", row["id"], row["name"])
        conn.commit()
        return json_response({"ok": True})

    if path == "/api/daily-update":
        text = str(form.get("text") or "").strip()
        if not text:
            return api_error("missing_text")
        smart = ai.process_data_ingestion(text, known_projects(conn))
        if to_bool(form.get("dry_run")):
            return json_response({"ok": True, "dry_run": True, "update": smart})
        if smart["project_id"] is None:
            return api_error("project_not_found", "404 Not Found", update=smart)
        update_id = insert_daily_update(conn, int(smart["project_id"]), smart, smart["source"])
        conn.commit()
        return json_response({"ok": True, "update_id": update_id, "update": smart})

    if path in {"/api/ma-logs/delete", "/api/billings/delete", "/api/billings/cycle", "/api/milestones/save", "/api/daily-updates/save", "/api/daily-updates/delete"}:
        return handle_child_item(req, conn)

    if path == "/api/reports":
        start, end, type_filter = report_window(req)
        report = portfolio_report(fetch_projects(conn), fetch_daily_updates(conn), start, end, type_filter, RECENT_UPDATES_LIMIT)
        return json_response({"ok": True, "start": start, "end": end, "type": type_filter, **report})

    if path == "/api/reports/briefing":
        start, end, type_filter = report_window(req)
        report = portfolio_report(fetch_projects(conn), fetch_daily_updates(conn), start, end, type_filter, RECENT_UPDATES_LIMIT)
        html_report = ai.generate_monday_briefing(report["projects"], report["recent_updates"])
        return json_response({"ok": True, "start": start, "end": end, "briefing_html": html_report})

    if path == "/api/ma-tracking":
        return json_response(dict({"ok": True}, **ma_summary(fetch_projects(conn, "has_ma = 1"), local_today())))

    if path == "/api/pipeline":
        projects = fetch_projects(conn)
        status_filter = req.query.get("status", "All")
        type_filter = req.query.get("type", "All")
        query = req.query.get("q", "").strip().lower()
        if status_filter != "All":
            projects = [p for p in projects if p.get("status") == status_filter]
        if type_filter != "All":
            projects = [p for p in projects if p.get("type") == type_filter]
        if query:
            projects = [
                p
                for p in projects
                if query in str(p.get("project_name") or "").lower() or query in str(p.get("owner") or "").lower()
            ]
        projects.sort(key=lambda p: float(p.get("total_budget") or 0), reverse=True)
        return json_response({"ok": True, "projects": projects, "metrics": pipeline_metrics(projects)})

    # Everything below operates on one project.
    project = get_project(conn, to_int(form.get("project_id")))
    if not project:
        return api_error("project_not_found", "404 Not Found")
    project_id = project["id"]

    if path == "/api/projects/save":
        ok, result = save_project(conn, project, form)
        if not ok:
            return api_error(result)
        conn.commit()
        return json_response({"ok": True, "project": get_project(conn, project_id)})

    if path == "/api/projects/archive":
        active = not project["active"]
        conn.execute("UPDATE projects SET active = ?, updated_at = ? WHERE id = ?", (1 if active else 0, iso(), project_id))
        log_action(conn, "project_archived" if not active else "project_restored", "projects", project_id)
        conn.commit()
        return json_response({"ok": True, "active": active})

    if path == "/api/projects/delete":
        for table in ("project_daily_updates", "project_updates", "milestones", "ma_logs", "project_billings"):
            conn.execute(f"DELETE FROM {table} WHERE project_id = ?", (project_id,))
        conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        log_action(conn, "project_deleted", "projects", project_id, project["project_name"])
        conn.commit()
        return json_response({"ok": True})

    if path == "/api/daily-updates/create":
        record, error = daily_record_from_form(form)
        if record is None:
            return api_error(error)
        update_id = insert_daily_update(conn, project_id, record, "manual")
        conn.commit()
        return json_response({"ok": True, "update_id": update_id})

    if path == "/api/ai/daily-log":
        log = ai.generate_daily_log(
            project["project_name"],
            canonical_status(form.get("status_today")),
            str(form.get("progress_note") or ""),
            form.get("blocker_today"),
            to_bool(form.get("help_needed")),
        )
        return json_response({"ok": True, "log": log})

    if path == "/api/ai/risk-analysis":
        daily = fetch_daily_updates(conn, project_id, limit=1)
        context = {
            "name": project["project_name"],
            "status": daily[0]["status_today"] if daily else project["status"],
            "budget_consumed_percent": project["budget_consumed_percent"],
            "updates": fetch_children(conn, "project_updates", project_id, "week_ending DESC, id DESC"),
        }
        return json_response({"ok": True, "analysis": ai.generate_executive_risk_analysis(context)})

    if path == "/api/ai/risk-pattern":
        logs = fetch_daily_updates(conn, project_id, limit=7)
        return json_response({"ok": True, "analysis": ai.analyze_risk_pattern(project["project_name"], logs)})

    if path == "/api/weekly-reports/draft":
        logs = fetch_daily_updates(conn, project_id, limit=7)
        draft = ai.generate_weekly_report(project["project_name"], logs)
        draft.update({"week_ending": local_today().isoformat(), "progress": project["progress"]})
        return json_response({"ok": True, "draft": draft})

    if path == "/api/weekly-reports/create":
        rag = canonical_status(form.get("rag_status"))
        week_ending = parse_date(form.get("week_ending")) or local_today().isoformat()
        cur = conn.execute(
            """
            INSERT INTO project_updates (project_id, week_ending, summary_text, risks_blockers, next_steps, rag_status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project_id,
                week_ending,
                str(form.get("summary_text") or "")[:5000],
                str(form.get("risks_blockers") or "")[:5000],
                str(form.get("next_steps") or "")[:5000],
                rag,
                iso(),
            ),
        )
        progress = clamp_int(form.get("progress"), int(project["progress"] or 0), 0, 100)
        conn.execute(
            "UPDATE projects SET progress = ?, status = ?, updated_at = ? WHERE id = ?",
            (progress, rag, iso(), project_id),
        )
        log_action(conn, "weekly_report_created", "project_updates", cur.lastrowid, f"project={project_id} rag={rag}")
        conn.commit()
        return json_response({"ok": True, "report_id": cur.lastrowid, "progress": progress, "rag_status": rag})

    if path == "/api/milestones/create":
        name = collapse(form.get("name"))
        due_date = parse_date(form.get("due_date"))
        if not name or not due_date:
            return api_error("missing_fields", message="Name and Due Date are required.")
        status = str(form.get("status") or "Pending")
        if status not in MILESTONE_STATUSES:
            status = "Pending"
        cur = conn.execute(
            "INSERT INTO milestones (project_id, name, status, due_date, created_at) VALUES (?, ?, ?, ?, ?)",
            (project_id, name[:200], status, due_date, iso()),
        )
        log_action(conn, "milestone_created", "milestones", cur.lastrowid, name)
        conn.commit()
        return json_response({"ok": True, "milestone_id": cur.lastrowid})

    if path == "/api/ma/enable":
        start = parse_date(form.get("ma_start_date"))
        end = parse_date(form.get("ma_end_date"))
        if not start or not end:
            return api_error("missing_fields", message="MA start and end dates are required.")
        if end <= start:
            return api_error("invalid_date_range")
        conn.execute(
            "UPDATE projects SET has_ma = 1, ma_start_date = ?, ma_end_date = ?, updated_at = ? WHERE id = ?",
            (start, end, iso(), project_id),
        )
        log_action(conn, "ma_enabled", "projects", project_id, f"{start}..{end}")
        conn.commit()
        return json_response({"ok": True, "project": get_project(conn, project_id)})

    if path == "/api/ma-logs/create":
        service_date = parse_date(form.get("service_date"))
        description = str(form.get("description") or "").strip()
        if not service_date or not description:
            return api_error("missing_fields", message="Service date and description are required.")
        category = str(form.get("category") or "Request")
        if category not in MA_CATEGORIES:
            category = "Request"
        cur = conn.execute(
            "INSERT INTO ma_logs (project_id, service_date, description, hours_used, category, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (project_id, service_date, description[:5000], max(0.0, to_float(form.get("hours_used"))), category, iso()),
        )
        log_action(conn, "ma_log_created", "ma_logs", cur.lastrowid, f"project={project_id}")
        conn.commit()
        return json_response({"ok": True, "log_id": cur.lastrowid})

    if path == "/api/billings/save":
        name = collapse(form.get("name"))
        due_date = parse_date(form.get("due_date"))
        if not name or not due_date:
            return api_error("missing_fields", message="Name and Due Date are required.")
        status = str(form.get("status") or "Pending")
        if status not in BILLING_STATUSES:
            status = "Pending"
        amount = max(0.0, to_float(form.get("amount")))
        billing_id = to_int(form.get("billing_id"))
        if billing_id:
            cur = conn.execute(
                "UPDATE project_billings SET name = ?, amount = ?, due_date = ?, status = ? WHERE id = ? AND project_id = ?",
                (name[:200], amount, due_date, status, billing_id, project_id),
            )
            if cur.rowcount == 0:
                return api_error("not_found", "404 Not Found")
        else:
            cur = conn.execute(
                "INSERT INTO project_billings (project_id, name, amount, due_date, status, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (project_id, name[:200], amount, due_date, status, iso()),
            )
            billing_id = int(cur.lastrowid)
        log_action(conn, "billing_saved", "project_billings", billing_id, f"{name} {amount:.2f} {status}")
        conn.commit()
        return json_response({"ok": True, "billing_id": billing_id})

    return api_error("not_found", "404 Not Found")


CHILD_ITEMS: Dict[str, Tuple[str, str]] = {
    "/api/ma-logs/delete": ("ma_logs", "log_id"),
    "/api/billings/delete": ("project_billings", "billing_id"),
    "/api/billings/cycle": ("project_billings", "billing_id"),
    "/api/milestones/save": ("milestones", "milestone_id"),
    "/api/daily-updates/save": ("project_daily_updates", "update_id"),
    "/api/daily-updates/delete": ("project_daily_updates", "update_id"),
}


def handle_child_item(req: Request, conn) -> Response:
    """Routes addressed by a child row id rather than a project id."""
    table, key = CHILD_ITEMS[req.path]
    form = req.form
    row = row_dict(conn.execute(f"SELECT * FROM {table} WHERE id = ?", (to_int(form.get(key)),)).fetchone())
    if not row:
        return api_error("not_found", "404 Not Found")
    item_id = row["id"]

    if req.path.endswith("/delete"):
        conn.execute(f"DELETE FROM {table} WHERE id = ?", (item_id,))
        log_action(conn, f"{table}_deleted", table, item_id, f"project={row['project_id']}")
        conn.commit()
        return json_response({"ok": True})

    if req.path == "/api/billings/cycle":
        status = next_billing_status(row["status"])
        conn.execute("UPDATE project_billings SET status = ? WHERE id = ?", (status, item_id))
        log_action(conn, "billing_status_changed", table, item_id, f"{row['status']} -> {status}")
        conn.commit()
        return json_response({"ok": True, "status": status})

    if req.path == "/api/milestones/save":
        status = str(form.get("status") or row["status"])
        if status not in MILESTONE_STATUSES:
            status = row["status"]
        name = collapse(form.get("name")) or row["name"]
        due_date = parse_date(form.get("due_date")) or row["due_date"]
        conn.execute("UPDATE milestones SET name = ?, status = ?, due_date = ? WHERE id = ?", (name[:200], status, due_date, item_id))
        log_action(conn, "milestone_saved", table, item_id, f"{name} {status}")
        conn.commit()
        return json_response({"ok": True, "status": status})

    merged = dict(row)
    merged.update({k: v for k, v in form.items() if k != key})
    record, error = daily_record_from_form(merged)
    if record is None:
        return api_error(error)
    blocker = clean_blocker(record["blocker_today"])
    signal = risk_signal_for(record["status_today"])
    if blocker and signal == "none":
        signal = "emerging"
    help_needed = record["help_needed"]
    if help_needed is None:
        help_needed = help_needed_for(record["status_today"])
    conn.execute(
        """
        UPDATE project_daily_updates
        SET update_date = ?, status_today = ?, progress_note = ?, blocker_today = ?, target_date = ?,
            help_needed = ?, risk_signal = ?
        WHERE id = ?
        """,
        (
            record["update_date"],
            record["status_today"],
            record["progress_note"][:5000],
            blocker,
            coerce_date(record["target_date"]),
            1 if to_bool(help_needed) else 0,
            signal,
            item_id,
        ),
    )
    log_action(conn, "daily_update_saved", table, item_id, f"status={record['status_today']}")
    conn.commit()
    return json_response({"ok": True, "update_id": item_id})


def app(environ, start_response):
    """WSGI entrypoint with explicit path dispatch."""
    req = Request(environ)

    if req.path == "/healthz":
        return Response("ok").wsgi(start_response)
    if req.path == "/readyz":
        try:
            ensure_bootstrap()
            probe = db_connect()
            probe.execute("SELECT 1").fetchone()
            probe.close()
            return Response("ready").wsgi(start_response)
        except Exception as exc:
            return Response(f"not-ready: {exc}", status="503 Service Unavailable").wsgi(start_response)

    allowed = API_ROUTES.get(req.path)
    if allowed is None:
        return api_error("not_found", "404 Not Found").wsgi(start_response)
    if req.method != allowed:
        return api_error("method_not_allowed", "405 Method Not Allowed", allowed=allowed).wsgi(start_response)

    try:
        ensure_bootstrap()
    except Exception as exc:
        return api_error("bootstrap_failed", "503 Service Unavailable", message=str(exc)).wsgi(start_response)

    if req.body_error:
        return api_error(req.body_error).wsgi(start_response)

    conn = db_connect()
    try:
        return handle_api(req, conn).wsgi(start_response)
    except Exception:
        traceback.print_exc()
        return api_error("server_error", "500 Internal Server Error", message="An unexpected server error occurred.").wsgi(start_response)
    finally:
        conn.close()


def run() -> None:
    ensure_bootstrap()
    server_mode = "threaded" if WSGI_THREADED else "single-threaded"
    model = GEMINI_MODEL if GEMINI_API_KEY else "disabled (heuristic fallback)"
    target = DB_PATH if DB_BACKEND == "sqlite" else "postgres"
    print(f"{APP_NAME} running on http://{HOST}:{PORT} (db={target}, mode={server_mode}, model={model})")
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
