from pmo.risk import blocker_streak_days, evaluate_risk_pattern, merge_risk_analysis, recent_window


def log(day, status="On Track", blocker=None, help_needed=None):
    row = {"update_date": f"2026-03-{day:02d}", "status_today": status, "blocker_today": blocker}
    if help_needed is not None:
        row["help_needed"] = help_needed
    return row


def test_two_consecutive_at_risk_days_escalate_to_critical():
    logs = [
        log(3, "At Risk", "Vendor late", help_needed=True),
        log(2, "At Risk", "Vendor late", help_needed=False),
        log(1, "On Track", help_needed=False),
    ]
    out = evaluate_risk_pattern("Citizen Portal", logs)
    assert out["escalation_required"] is True
    assert out["risk_level"] == "critical"
    assert out["risk_trend"] == "worsening"
    assert out["decision_queue"] is True
    assert out["executive_attention"] is False
    assert "2 consecutive days" in out["reason"]


def test_single_at_risk_day_is_only_emerging():
    out = evaluate_risk_pattern("ERP", [log(1, "On Track", help_needed=False), log(2, "At Risk", help_needed=False)])
    assert out["escalation_required"] is False
    assert out["risk_level"] == "emerging"


def test_blockers_persisting_more_than_three_days_need_executive_attention():
    logs = [log(day, "On Track", "Waiting on DBA", help_needed=False) for day in range(1, 6)]
    assert blocker_streak_days(recent_window(logs)) == 5
    out = evaluate_risk_pattern("ERP", logs)
    assert out["executive_attention"] is True
    assert out["escalation_required"] is True

    short = [log(day, "On Track", "Waiting on DBA", help_needed=False) for day in range(1, 4)]
    assert evaluate_risk_pattern("ERP", short)["executive_attention"] is False


def test_latest_delayed_escalates():
    out = evaluate_risk_pattern("ERP", [log(1, "On Track", help_needed=False), log(2, "Delayed", help_needed=False)])
    assert out["escalation_required"] is True
    assert out["risk_level"] == "critical"


def test_window_uses_last_seven_updates_only():
    logs = [log(day, "Delayed") for day in range(1, 4)] + [log(day, "On Track", help_needed=False) for day in range(4, 11)]
    out = evaluate_risk_pattern("ERP", logs)
    assert out["escalation_required"] is False
    assert out["risk_trend"] == "stable"
    assert len(recent_window(logs)) == 7


def test_improving_trend_and_empty_logs():
    out = evaluate_risk_pattern("ERP", [log(1, "Delayed"), log(2, "On Track", help_needed=False)])
    assert out["risk_trend"] == "improving"
    empty = evaluate_risk_pattern("ERP", [])
    assert empty["risk_trend"] == "stable"
    assert empty["escalation_required"] is False


def test_model_cannot_remove_an_escalation():
    local = evaluate_risk_pattern("ERP", [log(1, "On Track", help_needed=False), log(2, "Delayed", help_needed=False)])
    merged = merge_risk_analysis(local, {"risk_trend": "stable", "escalation_required": False, "reason": "Looks fine."})
    assert merged["escalation_required"] is True
    assert merged["risk_trend"] == "stable"
    assert merged["reason"].startswith("Looks fine.")
    assert "Delayed" in merged["reason"]


def test_model_can_add_an_escalation():
    local = evaluate_risk_pattern("ERP", [log(1, "On Track", help_needed=False)])
    merged = merge_risk_analysis(local, {"risk_trend": "worsening", "escalation_required": True, "reason": "Scope creep."})
    assert merged["escalation_required"] is True
    assert merged["risk_level"] == "emerging"
    assert merge_risk_analysis(local, None) == local


def test_local_reason_survives_when_both_sides_escalate():
    logs = [log(day, "On Track", "Waiting on DBA", help_needed=False) for day in range(1, 6)]
    local = evaluate_risk_pattern("ERP", logs)
    merged = merge_risk_analysis(local, {"risk_trend": "worsening", "escalation_required": True, "reason": "Scope creep."})
    assert merged["escalation_required"] is True
    assert merged["reason"].startswith("Scope creep.")
    assert "Blockers have persisted for 5 days" in merged["reason"]
