#!/usr/bin/env python3
"""PMO Dashboard - Flask Application

Runs the WSGI service under Flask so it can be served by gunicorn or waitress, and adds
operator commands to the Flask CLI.
"""

from __future__ import annotations

import datetime as dt
import json
import os
from typing import Any, Dict

import click
from flask import Flask, request

from pmo import ai
from pmo.server import (
    APP_NAME,
    HOST,
    PORT,
    app as wsgi_app,
    db_connect,
    ensure_bootstrap,
    fetch_daily_updates,
    fetch_projects,
    insert_daily_update,
    known_projects,
)
from pmo.settings import local_today

flask_app = Flask(__name__, static_folder=None, template_folder=None)
flask_app.config["JSON_SORT_KEYS"] = False


class FlaskWSGIBridge:
    """Lets Flask middleware wrap the plain WSGI service without changing its routing."""

    def __init__(self, wsgi_application):
        self.wsgi_app = wsgi_application

    def __call__(self, environ: Dict[str, Any], start_response):
        return self.wsgi_app(environ, start_response)


bridge = FlaskWSGIBridge(wsgi_app)


# Bootstrap happens inside the WSGI service so its failures come back as JSON 503s.
@flask_app.route("/", defaults={"path": ""}, methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
@flask_app.route("/<path:path>", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
def catch_all(path):
    """Delegate every path to the WSGI service and copy its status, headers and body."""
    response_data: Dict[str, Any] = {}

    def start_response(status, headers, exc_info=None):
        response_data["status"] = status
        response_data["headers"] = headers
        return lambda s: None

    body = b"".join(bridge(request.environ, start_response))
    status_code = int(response_data.get("status", "200 OK").split()[0])
    response = flask_app.make_response((body, status_code))
    for header_name, header_value in response_data.get("headers", []):
        response.headers[header_name] = header_value
    return response


@flask_app.cli.command("init-db")
def init_db_command():
    """Create or upgrade the database schema."""
    from pmo.server import init_db

    init_db()
    click.echo("Database initialized successfully!")


@flask_app.cli.command("ingest-update")
@click.argument("text")
@click.option("--dry-run", is_flag=True, help="Print the normalized update without storing it.")
def ingest_update_command(text, dry_run):
    """Normalize a free-text update and store it against the matched project."""
    ensure_bootstrap()
    conn = db_connect()
    try:
        update = ai.process_data_ingestion(text, known_projects(conn))
        click.echo(json.dumps(update, indent=2, ensure_ascii=False))
        if dry_run:
            return
        if update["project_id"] is None:
            raise click.ClickException(f"No project matched '{update['project_name'] or text[:40]}'.")
        update_id = insert_daily_update(conn, int(update["project_id"]), update, update["source"])
        conn.commit()
        click.echo(f"Stored daily update #{update_id} for {update['project_name']}.")
    finally:
        conn.close()


@flask_app.cli.command("briefing")
@click.option("--days", default=7, show_default=True, help="Days of daily updates to include.")
def briefing_command(days):
    """Print the Monday executive briefing for active projects."""
    ensure_bootstrap()
    since = (local_today() - dt.timedelta(days=max(1, days))).isoformat()
    conn = db_connect()
    try:
        projects = fetch_projects(conn, "active = 1")
        updates = [
            u
            for u in fetch_daily_updates(conn)
            if str(u.get("update_date") or "") >= since
        ]
    finally:
        conn.close()
    click.echo(ai.generate_monday_briefing(projects, updates))


if __name__ == "__main__":
    print(f"{APP_NAME} (Flask) on http://{HOST}:{PORT}")
    flask_app.run(host=HOST, port=PORT, debug=os.environ.get("FLASK_DEBUG", "0") == "1", threaded=True)
