import datetime as dt

from pmo.analytics import (
    billing_totals,
    briefing_context,
    dashboard_counts,
    dashboard_projects,
    latest_status_by_project,
    ma_status,
    ma_summary,
    pipeline_metrics,
    portfolio_report,
    s_curve,
)

PROJECTS = [
    {"id": 1, "project_name": "Citizen Portal", "owner": "Ananya", "type": "Digital", "active": True},
    {"id": 2, "project_name": "ERP", "owner": "Niran", "type": "Infra", "active": True},
    {"id": 3, "project_name": "Old Intranet", "owner": "Ananya", "type": "", "active": False},
]
UPDATES = [
    {"id": 1, "project_id": 1, "update_date": "2026-03-01", "created_at": "2026-03-01T02:00:00", "status_today": "At Risk"},
    {"id": 2, "project_id": 1, "update_date": "2026-03-02", "created_at": "2026-03-02T02:00:00", "status_today": "On Track"},
    {"id": 3, "project_id": 2, "update_date": "2026-02-10", "created_at": "2026-02-10T02:00:00", "status_today": "delayed"},
]


def test_latest_status_by_project_uses_newest_update():
    latest = latest_status_by_project(UPDATES)
    assert latest[1]["id"] == 2
    assert latest[2]["id"] == 3
    assert 3 not in latest


def test_dashboard_filters():
    active = dashboard_projects(PROJECTS, UPDATES)
    assert [p["id"] for p in active] == [1, 2]
    assert active[0]["latest_update"] == {"status_today": "On Track", "update_date": "2026-03-02"}

    archived = dashboard_projects(PROJECTS, UPDATES, lifecycle="Archived")
    assert [p["id"] for p in archived] == [3]
    assert archived[0]["latest_update"] is None

    assert [p["id"] for p in dashboard_projects(PROJECTS, UPDATES, status_filter="Delayed")] == [2]
    assert [p["id"] for p in dashboard_projects(PROJECTS, UPDATES, lifecycle="All", status_filter="No Update")] == [3]
    assert [p["id"] for p in dashboard_projects(PROJECTS, UPDATES, type_filter="Infra")] == [2]
    assert [p["id"] for p in dashboard_projects(PROJECTS, UPDATES, lifecycle="All", search="ananya")] == [1, 3]


def test_dashboard_counts():
    assert dashboard_counts(PROJECTS, UPDATES) == {"total": 3, "active": 2, "at_risk": 1}


def test_portfolio_report_counts_and_window():
    report = portfolio_report(PROJECTS, UPDATES, "2026-03-01", "2026-03-31")
    assert {row["name"]: row["value"] for row in report["status_counts"]} == {"On Track": 1, "Delayed": 1, "No Update": 1}
    assert {row["name"]: row["value"] for row in report["type_counts"]} == {"Digital": 1, "Infra": 1, "Other": 1}
    assert [u["id"] for u in report["recent_updates"]] == [2, 1]
    assert report["recent_updates"][0]["project_name"] == "Citizen Portal"

    limited = portfolio_report(PROJECTS, UPDATES, None, None, limit=1)
    assert [u["id"] for u in limited["recent_updates"]] == [2]

    empty = portfolio_report(PROJECTS, UPDATES, None, None, type_filter="Hardware")
    assert empty == {"status_counts": [], "type_counts": [], "recent_updates": [], "projects": []}


def test_s_curve_weekly():
    points = s_curve("2026-01-01", "2026-03-01", 50, "week", dt.date(2026, 1, 29))
    assert points[0]["date"] == "2026-01-01"
    assert points[-1]["date"] == "2026-03-01"
    assert points[0]["planned"] == 0 and points[-1]["planned"] == 100
    by_date = {p["date"]: p for p in points}
    assert by_date["2026-01-01"]["actual"] == 0
    assert by_date["2026-01-29"]["actual"] == 50
    assert by_date["2026-02-05"]["actual"] is None
    planned = [p["planned"] for p in points]
    assert planned == sorted(planned)


def test_s_curve_long_range_is_capped_and_still_ends_on_end_date():
    points = s_curve("2000-01-01", "2026-01-01", 10, "week", dt.date(2026, 1, 1))
    assert len(points) == 500
    assert points[0]["date"] == "2000-01-01"
    assert points[-1]["date"] == "2026-01-01"
    assert points[-1]["planned"] == 100
    dates = [p["date"] for p in points]
    assert dates == sorted(set(dates))


def test_s_curve_monthly_and_invalid_ranges():
    points = s_curve("2026-01-31", "2026-05-31", 20, "month", dt.date(2026, 3, 1))
    assert [p["date"] for p in points] == ["2026-01-31", "2026-02-28", "2026-03-28", "2026-04-28", "2026-05-28", "2026-05-31"]
    assert s_curve("2026-05-01", "2026-01-01", 10) == []
    assert s_curve(None, "2026-01-01", 10) == []


def test_ma_status_and_summary():
    today = dt.date(2026, 3, 1)
    projects = [
        {"id": 1, "project_name": "A", "ma_start_date": "2026-01-01", "ma_end_date": "2026-12-31", "total_budget": 100},
        {"id": 2, "project_name": "B", "ma_start_date": "2026-01-01", "ma_end_date": "2026-03-20", "total_budget": 50.5},
        {"id": 3, "project_name": "C", "ma_start_date": "2025-01-01", "ma_end_date": "2026-02-01", "total_budget": 0},
        {"id": 4, "project_name": "D", "ma_start_date": "2026-06-01", "ma_end_date": "2027-06-01", "total_budget": 0},
    ]
    assert ma_status(projects[0], today)["ma_status"] == "Active"
    expiring = ma_status(projects[1], today)
    assert expiring["ma_status"] == "Expiring Soon"
    assert expiring["days_remaining"] == 19
    expired = ma_status(projects[2], today)
    assert (expired["ma_status"], expired["days_remaining"], expired["progress_percent"]) == ("Expired", 0, 100.0)
    assert ma_status(projects[3], today)["ma_status"] == "Pending"

    summary = ma_summary(projects, today)
    assert summary["stats"] == {"active": 1, "expiring": 1, "expired": 1, "total_budget": 150.5}
    assert [p["id"] for p in summary["projects"]] == [3, 2, 1, 4]


def test_default_today_follows_the_configured_timezone(monkeypatch):
    monkeypatch.setattr("pmo.analytics.local_today", lambda: dt.date(2026, 1, 29))
    project = {"id": 2, "project_name": "B", "ma_start_date": "2026-01-01", "ma_end_date": "2026-03-20"}
    assert ma_status(project)["days_remaining"] == 50
    points = s_curve("2026-01-01", "2026-03-01", 50, "week")
    assert [p["date"] for p in points if p["actual"] == 50] == ["2026-01-29"]


def test_pipeline_metrics():
    projects = [
        {"project_name": "Very Long Project Name Here", "status": "At Risk", "total_budget": 300, "budget_consumed_percent": 50, "active": True},
        {"project_name": "B", "status": "On Track", "total_budget": 100, "budget_consumed_percent": 20, "active": True},
        {"project_name": "C", "status": "Exploration", "total_budget": 0, "budget_consumed_percent": 0, "active": False},
    ]
    metrics = pipeline_metrics(projects)
    assert metrics["total_projects"] == 3
    assert metrics["active_projects"] == 2
    assert metrics["total_budget"] == 400
    assert metrics["utilized_budget_percent"] == 23
    assert metrics["at_risk_count"] == 1
    assert metrics["at_risk_percent"] == 33
    assert {d["name"]: d["value"] for d in metrics["status_distribution"]} == {"At Risk": 1, "In progress": 1, "Stand-by": 1}
    assert metrics["top_budgets"][0] == {"name": "Very Long Proje...", "value": 300.0}
    assert pipeline_metrics([])["utilized_budget_percent"] == 0


def test_briefing_context_marks_status_changes():
    context = briefing_context(PROJECTS[:2], UPDATES)
    portal, erp = context
    assert portal["current_status"] == "On Track"
    assert portal["previous_status"] == "At Risk"
    assert portal["status_changed"] is True
    assert erp["previous_status"] == "Unknown"
    assert erp["status_changed"] is False
    assert erp["latest_summary"] == "No updates"


def test_billing_totals():
    totals = billing_totals(
        [
            {"status": "Pending", "amount": 100},
            {"status": "Paid", "amount": 250.5},
            {"status": "Paid", "amount": "49.5"},
        ]
    )
    assert totals == {"Pending": 100.0, "Invoiced": 0.0, "Paid": 300.0, "total": 400.0}
