"""Risk-pattern rules over a project's recent daily updates."""

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

from pmo.normalize import clean_blocker, coerce_date
from pmo.status import RISK_TRENDS, help_needed_for, severity, status_key

RISK_WINDOW = 7
CONSECUTIVE_AT_RISK_DAYS = 2
BLOCKER_PERSIST_DAYS = 3


def _log_date(log: Dict[str, Any]) -> Optional[dt.date]:
    raw = coerce_date(log.get("update_date"))
    return dt.date.fromisoformat(raw) if raw else None


def recent_window(logs: List[Dict[str, Any]], size: int = RISK_WINDOW) -> List[Dict[str, Any]]:
    """Return up to `size` most recent logs, oldest first; undated logs are dropped."""
    dated = [log for log in logs if _log_date(log)]
    dated.sort(key=lambda log: (_log_date(log), str(log.get("created_at") or "")))
    return dated[-size:]


def _consecutive_at_risk(window: List[Dict[str, Any]]) -> bool:
    # Consecutive update days, so a Friday/Monday pair counts.
    run = 0
    previous: Optional[dt.date] = None
    for log in window:
        day = _log_date(log)
        if status_key(log.get("status_today")) != "at_risk":
            run = 0
            previous = None
            continue
        if day == previous:
            continue
        run += 1
        previous = day
        if run >= CONSECUTIVE_AT_RISK_DAYS:
            return True
    return False


def blocker_streak_days(window: List[Dict[str, Any]]) -> int:
    """Days covered by the trailing run of updates that all report a blocker."""
    streak: List[dt.date] = []
    for log in reversed(window):
        if not clean_blocker(log.get("blocker_today")):
            break
        day = _log_date(log)
        if day is not None:
            streak.append(day)
    if not streak:
        return 0
    return (max(streak) - min(streak)).days + 1


def _log_help_needed(log: Dict[str, Any]) -> bool:
    value = log.get("help_needed")
    if value is None:
        return help_needed_for(log.get("status_today"))
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def evaluate_risk_pattern(project_name: str, logs: List[Dict[str, Any]]) -> Dict[str, Any]:
    window = recent_window(logs)
    reasons: List[str] = []
    escalate = False
    executive_attention = False
    decision_queue = False
    risk_level = "none"

    if not window:
        return {
            "project_name": project_name,
            "risk_trend": "stable",
            "escalation_required": False,
            "reason": "No daily updates in the review window.",
            "risk_level": risk_level,
            "executive_attention": False,
            "decision_queue": False,
        }

    latest = window[-1]
    if _consecutive_at_risk(window):
        escalate = True
        risk_level = "critical"
        reasons.append("At Risk for 2 consecutive days; escalated to critical.")
    if status_key(latest.get("status_today")) == "delayed":
        escalate = True
        risk_level = "critical"
        reasons.append("Latest update reports the project as Delayed.")
    streak = blocker_streak_days(window)
    if streak > BLOCKER_PERSIST_DAYS:
        escalate = True
        executive_attention = True
        reasons.append(f"Blockers have persisted for {streak} days; executive attention required.")
    if _log_help_needed(latest):
        decision_queue = True
        reasons.append("Team has asked for help; added to the decision queue.")

    if risk_level == "none" and (decision_queue or status_key(latest.get("status_today")) == "at_risk"):
        risk_level = "emerging"

    first, last = severity(window[0].get("status_today")), severity(latest.get("status_today"))
    if last > first:
        trend = "worsening"
    elif last < first:
        trend = "improving"
    else:
        trend = "stable"

    return {
        "project_name": project_name,
        "risk_trend": trend,
        "escalation_required": escalate,
        "reason": " ".join(reasons) or "No risk pattern detected in recent updates.",
        "risk_level": risk_level,
        "executive_attention": executive_attention,
        "decision_queue": decision_queue,
    }


def merge_risk_analysis(local: Dict[str, Any], model: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Combine the model's reading with the local rules; the model can add an escalation but not drop one."""
    if not isinstance(model, dict):
        return dict(local)
    merged = dict(local)
    trend = str(model.get("risk_trend") or "").strip().lower()
    if trend in RISK_TRENDS:
        merged["risk_trend"] = trend
    model_escalates = model.get("escalation_required") is True
    merged["escalation_required"] = bool(local["escalation_required"] or model_escalates)
    reason = str(model.get("reason") or "").strip()
    if reason:
        if local["escalation_required"]:
            reason = f"{reason} {local['reason']}"
        merged["reason"] = reason
    if model_escalates and merged["risk_level"] == "none":
        merged["risk_level"] = "emerging"
    return merged
