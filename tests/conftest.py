"""Shared fixtures: an isolated SQLite file, an in-process WSGI client and a fake Gemini client.

Settings are read at import time, so the environment is pinned here before any `pmo`
module is imported.
"""

from __future__ import annotations

import io
import json
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_TMP_DIR = tempfile.mkdtemp(prefix="pmo-tests-")
os.environ["PMO_DB_PATH"] = str(Path(_TMP_DIR) / "pmo_test.db")
os.environ["PMO_AI_MAX_RETRIES"] = "2"
for key in ("PMO_DATABASE_URL", "DATABASE_URL", "PMO_GEMINI_API_KEY", "GEMINI_API_KEY", "API_KEY"):
    os.environ.pop(key, None)

from pmo.server import app, db_connect, ensure_bootstrap  # noqa: E402

DATA_TABLES = (
    "project_daily_updates",
    "project_updates",
    "milestones",
    "ma_logs",
    "project_billings",
    "projects",
    "audit_log",
)


class WSGIClient:
    """Cookie-less in-process client that builds environ dicts by hand."""

    def request(
        self,
        path: str,
        method: str = "GET",
        data: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        raw_body: Optional[bytes] = None,
    ) -> Tuple[str, Dict[str, str], str]:
        method = method.upper()
        path_info, _, query = path.partition("?")
        if raw_body is not None:
            body = raw_body
            content_type = "application/x-www-form-urlencoded"
        elif json_body is not None:
            body = json.dumps(json_body).encode("utf-8")
            content_type = "application/json"
        elif method == "POST":
            body = urlencode(data or {}).encode("utf-8")
            content_type = "application/x-www-form-urlencoded"
        else:
            body = b""
            content_type = "application/x-www-form-urlencoded"

        environ = {
            "REQUEST_METHOD": method,
            "PATH_INFO": path_info,
            "QUERY_STRING": query,
            "wsgi.input": io.BytesIO(body),
            "CONTENT_LENGTH": str(len(body)),
            "CONTENT_TYPE": content_type,
            "REMOTE_ADDR": "127.0.0.1",
            "HTTP_USER_AGENT": "pmo-tests",
            "wsgi.url_scheme": "http",
            "SERVER_NAME": "localhost",
            "SERVER_PORT": "80",
            "SCRIPT_NAME": "",
            "wsgi.version": (1, 0),
            "wsgi.errors": io.StringIO(),
            "wsgi.multithread": False,
            "wsgi.multiprocess": False,
            "wsgi.run_once": False,
        }
        captured: Dict[str, Any] = {"status": "", "headers": []}

        def start_response(status, headers):
            captured["status"] = status
            captured["headers"] = headers

        payload = b"".join(app(environ, start_response)).decode("utf-8", errors="ignore")
        return captured["status"], dict(captured["headers"]), payload

    def get(self, path: str) -> Tuple[int, Any]:
        status, _, payload = self.request(path)
        return int(status.split()[0]), json.loads(payload)

    def post(self, path: str, data: Optional[Dict[str, Any]] = None, json_body: Optional[Any] = None) -> Tuple[int, Any]:
        status, _, payload = self.request(path, "POST", data=data, json_body=json_body)
        return int(status.split()[0]), json.loads(payload)


class FakeModels:
    def __init__(self, replies: List[Any]):
        self.replies = list(replies)
        self.calls: List[Dict[str, Any]] = []

    def generate_content(self, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(text=reply)


class FakeGeminiClient:
    """Stands in for `genai.Client`; replies are returned in order, exceptions are raised."""

    def __init__(self, *replies: Any):
        self.models = FakeModels(list(replies))


@pytest.fixture
def fake_client():
    return FakeGeminiClient


@pytest.fixture
def clean_db():
    ensure_bootstrap()
    conn = db_connect()
    try:
        for table in DATA_TABLES:
            conn.execute(f"DELETE FROM {table}")
        conn.execute("DELETE FROM project_types WHERE name != ?", ("Digital",))
        conn.commit()
    finally:
        conn.close()
    yield


@pytest.fixture
def client(clean_db):
    return WSGIClient()


@pytest.fixture
def make_project(client):
    def _make(name: str = "Citizen Portal", **fields: Any) -> Dict[str, Any]:
        form = {"project_name": name}
        form.update(fields)
        status, payload = client.post("/api/projects/create", form)
        assert status == 200, payload
        return payload["project"]

    return _make
