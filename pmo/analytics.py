"""Portfolio computations behind the dashboard, reports, MA tracking and pipeline views.

Functions here take plain row dicts and return JSON-ready structures; chart drawing is the
client's job.
"""

from __future__ import annotations

import calendar
import datetime as dt
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pmo.normalize import coerce_date
from pmo.settings import local_today
from pmo.status import NO_UPDATE, canonical_status, is_at_risk

MAX_CURVE_POINTS = 500
MA_EXPIRING_DAYS = 30
TOP_BUDGETS = 5
PIPELINE_STATUS_GROUPS = {
    "Exploration": "Stand-by",
    "Negotiation": "Stand-by",
    "On Track": "In progress",
}


def _as_date(value: object) -> Optional[dt.date]:
    raw = coerce_date(value)
    return dt.date.fromisoformat(raw) if raw else None


def _update_sort_key(update: Dict[str, Any]) -> Tuple[str, str]:
    return (str(update.get("update_date") or ""), str(update.get("created_at") or ""))


def latest_status_by_project(updates: Iterable[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
    latest: Dict[Any, Dict[str, Any]] = {}
    for update in sorted(updates, key=_update_sort_key, reverse=True):
        latest.setdefault(update.get("project_id"), update)
    return latest


def _latest_label(project: Dict[str, Any], latest: Dict[Any, Dict[str, Any]]) -> str:
    row = latest.get(project.get("id"))
    if not row:
        return NO_UPDATE
    return canonical_status(row.get("status_today"))


def dashboard_projects(
    projects: List[Dict[str, Any]],
    updates: List[Dict[str, Any]],
    lifecycle: str = "Active",
    type_filter: str = "All",
    status_filter: str = "All",
    search: str = "",
) -> List[Dict[str, Any]]:
    latest = latest_status_by_project(updates)
    query = (search or "").strip().lower()
    wanted_status = status_filter if status_filter in {"All", NO_UPDATE} else canonical_status(status_filter)
    rows: List[Dict[str, Any]] = []
    for project in projects:
        active = bool(project.get("active"))
        if lifecycle == "Active" and not active:
            continue
        if lifecycle == "Archived" and active:
            continue
        if type_filter and type_filter != "All" and project.get("type") != type_filter:
            continue
        label = _latest_label(project, latest)
        if wanted_status != "All" and label != wanted_status:
            continue
        if query:
            name = str(project.get("project_name") or "").lower()
            owner = str(project.get("owner") or "").lower()
            if query not in name and query not in owner:
                continue
        row = dict(project)
        update = latest.get(project.get("id"))
        row["latest_update"] = (
            {"status_today": label, "update_date": update.get("update_date")} if update else None
        )
        rows.append(row)
    return rows


def dashboard_counts(projects: List[Dict[str, Any]], updates: List[Dict[str, Any]]) -> Dict[str, int]:
    latest = latest_status_by_project(updates)
    active = [p for p in projects if p.get("active")]
    at_risk = [p for p in active if is_at_risk(_latest_label(p, latest))]
    return {"total": len(projects), "active": len(active), "at_risk": len(at_risk)}


def portfolio_report(
    projects: List[Dict[str, Any]],
    updates: List[Dict[str, Any]],
    start_date: Optional[str],
    end_date: Optional[str],
    type_filter: str = "All",
    limit: int = 100,
) -> Dict[str, Any]:
    if type_filter and type_filter != "All":
        projects = [p for p in projects if p.get("type") == type_filter]
    if not projects:
        return {"status_counts": [], "type_counts": [], "recent_updates": [], "projects": []}

    ids = {p.get("id") for p in projects}
    scoped = [u for u in updates if u.get("project_id") in ids]
    latest = latest_status_by_project(scoped)

    status_map: Dict[str, int] = {}
    type_map: Dict[str, int] = {}
    for project in projects:
        label = _latest_label(project, latest)
        status_map[label] = status_map.get(label, 0) + 1
        kind = str(project.get("type") or "").strip() or "Other"
        type_map[kind] = type_map.get(kind, 0) + 1

    names = {p.get("id"): p.get("project_name") for p in projects}
    recent = [
        u
        for u in scoped
        if (not start_date or str(u.get("update_date") or "") >= start_date)
        and (not end_date or str(u.get("update_date") or "") <= end_date)
    ]
    recent.sort(key=_update_sort_key, reverse=True)
    enriched = []
    for update in recent[:limit]:
        row = dict(update)
        row["project_name"] = names.get(update.get("project_id")) or "Unknown Project"
        enriched.append(row)

    return {
        "status_counts": [{"name": k, "value": v} for k, v in status_map.items()],
        "type_counts": [{"name": k, "value": v} for k, v in type_map.items()],
        "recent_updates": enriched,
        "projects": projects,
    }


def _add_month(day: dt.date) -> dt.date:
    year = day.year + (1 if day.month == 12 else 0)
    month = 1 if day.month == 12 else day.month + 1
    return dt.date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def s_curve(
    start_date: object,
    end_date: object,
    progress: object,
    view: str = "week",
    today: Optional[dt.date] = None,
) -> List[Dict[str, Any]]:
    """Planned (ease-in-out) versus actual progress points for the project S-curve."""
    start, end = _as_date(start_date), _as_date(end_date)
    if not start or not end or start > end:
        return []
    today = today or local_today()
    try:
        current = max(0.0, min(100.0, float(progress or 0)))
    except (TypeError, ValueError):
        current = 0.0
    monthly = view == "month"
    period_days = 30 if monthly else 7

    points: List[dt.date] = []
    cursor = start
    while cursor <= end and len(points) < MAX_CURVE_POINTS:
        points.append(cursor)
        cursor = _add_month(cursor) if monthly else cursor + dt.timedelta(days=7)
    if points and points[-1] < end:
        # The end date always closes the curve, even when the cap is reached.
        if len(points) >= MAX_CURVE_POINTS:
            points[-1] = end
        else:
            points.append(end)

    total = (end - start).days
    elapsed_total = (today - start).days
    past = [p for p in points if p <= today]
    pinned = None
    if past and (today - past[-1]).days < period_days:
        pinned = past[-1]

    out: List[Dict[str, Any]] = []
    for point in points:
        ratio = max(0.0, min(1.0, (point - start).days / total)) if total > 0 else 0.0
        planned_ratio = 2 * ratio * ratio if ratio < 0.5 else -1 + (4 - 2 * ratio) * ratio
        actual = None
        if (point - today).days <= 1:
            point_ratio = min(1.0, (point - start).days / elapsed_total) if elapsed_total > 0 else 0.0
            value = current * point_ratio
            if point <= start:
                value = 0.0
            if point == pinned:
                value = current
            actual = int(round(max(0.0, min(100.0, value))))
        out.append(
            {
                "name": point.strftime("%b %d") if not monthly else point.strftime("%b %y"),
                "date": point.isoformat(),
                "planned": int(round(planned_ratio * 100)),
                "actual": actual,
            }
        )
    return out


def ma_status(project: Dict[str, Any], today: Optional[dt.date] = None) -> Dict[str, Any]:
    today = today or local_today()
    start, end = _as_date(project.get("ma_start_date")), _as_date(project.get("ma_end_date"))
    row = dict(project)
    status, days_remaining, percent = "Pending", 0, 0.0
    if start and end:
        total = (end - start).days
        elapsed = (today - start).days
        days_remaining = (end - today).days
        percent = min(100.0, max(0.0, (elapsed / total) * 100)) if total > 0 else 100.0
        if today < start:
            status = "Pending"
        elif today > end:
            status, days_remaining, percent = "Expired", 0, 100.0
        elif days_remaining <= MA_EXPIRING_DAYS:
            status = "Expiring Soon"
        else:
            status = "Active"
    row.update({"ma_status": status, "days_remaining": days_remaining, "progress_percent": round(percent, 1)})
    return row


def ma_summary(projects: List[Dict[str, Any]], today: Optional[dt.date] = None) -> Dict[str, Any]:
    rows = [ma_status(p, today) for p in projects]
    rows.sort(key=lambda r: str(r.get("ma_end_date") or "9999-12-31"))
    return {
        "projects": rows,
        "stats": {
            "active": sum(1 for r in rows if r["ma_status"] == "Active"),
            "expiring": sum(1 for r in rows if r["ma_status"] == "Expiring Soon"),
            "expired": sum(1 for r in rows if r["ma_status"] == "Expired"),
            "total_budget": round(sum(float(r.get("total_budget") or 0) for r in rows), 2),
        },
    }


def pipeline_metrics(projects: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(projects)
    budget = sum(float(p.get("total_budget") or 0) for p in projects)
    consumed = sum(float(p.get("budget_consumed_percent") or 0) for p in projects)
    at_risk = sum(1 for p in projects if is_at_risk(p.get("status")))

    distribution: Dict[str, int] = {}
    for project in projects:
        label = str(project.get("status") or "On Track")
        label = PIPELINE_STATUS_GROUPS.get(label, label)
        distribution[label] = distribution.get(label, 0) + 1

    ranked = sorted(projects, key=lambda p: float(p.get("total_budget") or 0), reverse=True)
    top = []
    for project in ranked[:TOP_BUDGETS]:
        name = str(project.get("project_name") or "")
        top.append({"name": name[:15] + "..." if len(name) > 15 else name, "value": float(project.get("total_budget") or 0)})

    return {
        "total_projects": total,
        "active_projects": sum(1 for p in projects if p.get("active")),
        "total_budget": round(budget, 2),
        "utilized_budget_percent": int(round(consumed / total)) if total else 0,
        "at_risk_count": at_risk,
        "at_risk_percent": int(round(at_risk * 100 / total)) if total else 0,
        "status_distribution": [{"name": k, "value": v} for k, v in distribution.items()],
        "top_budgets": top,
    }


def briefing_context(projects: List[Dict[str, Any]], updates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Per-project inputs for the Monday briefing prompt, newest update first."""
    by_project: Dict[Any, List[Dict[str, Any]]] = {}
    for update in sorted(updates, key=_update_sort_key, reverse=True):
        by_project.setdefault(update.get("project_id"), []).append(update)
    context = []
    for project in projects:
        history = by_project.get(project.get("id"), [])
        current = canonical_status(history[0].get("status_today")) if history else "Unknown"
        previous = canonical_status(history[1].get("status_today")) if len(history) > 1 else "Unknown"
        context.append(
            {
                "name": project.get("project_name"),
                "current_status": current,
                "previous_status": previous,
                "status_changed": previous != "Unknown" and previous != current,
                "latest_summary": (history[0].get("progress_note") if history else None) or "No updates",
                "latest_risks": (history[0].get("blocker_today") if history else None) or "None",
                "owner": project.get("owner") or "Unassigned",
            }
        )
    return context


def billing_totals(billings: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    totals = {"Pending": 0.0, "Invoiced": 0.0, "Paid": 0.0}
    for billing in billings:
        key = str(billing.get("status") or "Pending")
        totals[key] = round(totals.get(key, 0.0) + float(billing.get("amount") or 0), 2)
    totals["total"] = round(sum(v for k, v in totals.items() if k != "total"), 2)
    return totals
