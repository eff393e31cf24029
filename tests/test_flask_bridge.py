"""The Flask wrapper must serve exactly what the plain WSGI app serves."""

import json

import pytest

from pmo import ai
from pmo.flask_app import flask_app


@pytest.fixture(autouse=True)
def no_configured_client(monkeypatch):
    monkeypatch.setattr(ai, "get_client", lambda: None)


@pytest.fixture
def flask_client(clean_db):
    with flask_app.test_client() as test_client:
        yield test_client


def test_health_matches_plain_wsgi(client, flask_client):
    _, _, wsgi_body = client.request("/healthz")
    response = flask_client.get("/healthz")
    assert response.status_code == 200
    assert response.data.decode() == wsgi_body == "ok"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_api_through_flask(flask_client):
    response = flask_client.post("/api/projects/create", data={"project_name": "Citizen Portal"})
    assert response.status_code == 200
    listing = flask_client.get("/api/projects").get_json()
    assert [p["project_name"] for p in listing["projects"]] == ["Citizen Portal"]

    wrong = flask_client.get("/api/projects/create")
    assert wrong.status_code == 405
    assert wrong.headers["Content-Type"].startswith("application/json")


def test_bootstrap_failure_is_a_json_503_through_flask(flask_client, monkeypatch):
    def broken():
        raise RuntimeError("disk full")

    monkeypatch.setattr("pmo.server.ensure_bootstrap", broken)
    response = flask_client.get("/api/projects")
    assert response.status_code == 503
    assert response.get_json() == {"ok": False, "error": "bootstrap_failed", "message": "disk full"}
    assert flask_client.get("/healthz").status_code == 200


def test_cli_ingest_update(client, make_project):
    project = make_project("ERP")
    runner = flask_app.test_cli_runner()

    dry = runner.invoke(args=["ingest-update", "ERP config deployed to staging.", "--dry-run"])
    assert dry.exit_code == 0, dry.output
    assert json.loads(dry.output)["project_id"] == project["id"]
    _, detail = client.get(f"/api/project?id={project['id']}")
    assert detail["daily_updates"] == []

    stored = runner.invoke(args=["ingest-update", "ERP cutover delayed by a week."])
    assert stored.exit_code == 0, stored.output
    assert "Stored daily update" in stored.output
    _, detail = client.get(f"/api/project?id={project['id']}")
    assert detail["daily_updates"][0]["status_today"] == "Delayed"

    missing = runner.invoke(args=["ingest-update", "Nothing recognizable here."])
    assert missing.exit_code == 1
    assert "No project matched" in missing.output


def test_cli_init_db_and_briefing(clean_db):
    runner = flask_app.test_cli_runner()
    result = runner.invoke(args=["init-db"])
    assert result.exit_code == 0
    assert "Database initialized" in result.output
    briefing = runner.invoke(args=["briefing", "--days", "3"])
    assert briefing.exit_code == 0
    assert ai.NO_KEY_BRIEFING in briefing.output
