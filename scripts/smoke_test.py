#!/usr/bin/env python3
"""Fast health smoke test for local/dev CI.

Calls the WSGI app in-process, so no server or network is needed.
"""

import io
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pmo.server import app, ensure_bootstrap


def run_request(path="/healthz", method="GET", query="", body=b""):
    """Execute a minimal WSGI request against the app callable."""
    status_holder = {}

    def start_response(status, headers):
        status_holder["status"] = status
        status_holder["headers"] = headers

    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "QUERY_STRING": query,
        "wsgi.input": io.BytesIO(body),
        "CONTENT_LENGTH": str(len(body)),
        "CONTENT_TYPE": "application/x-www-form-urlencoded",
        "REMOTE_ADDR": "127.0.0.1",
        "HTTP_USER_AGENT": "smoke-test",
    }

    payload = b"".join(app(environ, start_response))
    return status_holder["status"], payload.decode("utf-8", errors="ignore")


if __name__ == "__main__":
    ensure_bootstrap()
    status, body = run_request("/healthz")
    assert status.startswith("200"), f"health failed: {status}"
    assert "ok" in body.lower(), "health payload missing"
    status, body = run_request("/readyz")
    assert status.startswith("200"), f"readiness failed: {status} {body}"
    status, body = run_request("/api/projects")
    assert status.startswith("200"), f"project list failed: {status}"
    assert json.loads(body)["ok"] is True, "project list payload not ok"
    print("SMOKE_OK")
