import datetime as dt

from pmo.normalize import (
    checklist_to_note,
    clean_blocker,
    coerce_date,
    extract_target_date,
    heuristic_extract,
    limit_sentences,
    local_daily_log,
    match_project,
    normalize_daily_log,
    normalize_smart_update,
    parse_model_json,
    text_signals,
)

TODAY = dt.date(2026, 3, 2)
PROJECTS = [
    {"id": 1, "name": "Citizen Portal"},
    {"id": 2, "name": "ERP"},
    {"id": 3, "name": "ERP Migration Phase 2"},
]


def test_clean_blocker_nulls_placeholders():
    for value in (None, "", "  none ", "N/A", "-", "No blockers.", "ไม่มี"):
        assert clean_blocker(value) is None
    assert clean_blocker("  Waiting   on vendor ") == "Waiting on vendor"
    assert len(clean_blocker("x" * 900)) == 500


def test_coerce_date_formats():
    assert coerce_date("2026-04-15") == "2026-04-15"
    assert coerce_date("due 2026/4/5") == "2026-04-05"
    assert coerce_date("15/04/2026") == "2026-04-15"
    assert coerce_date("15/04/2569") == "2026-04-15"
    assert coerce_date("2026-13-40") is None
    assert coerce_date("next week") is None
    assert coerce_date(dt.date(2026, 1, 2)) == "2026-01-02"


def test_extract_target_date_prefers_next_upcoming():
    text = "Kickoff was 2026-02-01, UAT by 2026-04-30 and go-live 2026-03-20."
    assert extract_target_date(text, TODAY) == "2026-03-20"
    assert extract_target_date("Finished on 2026-01-10", TODAY) == "2026-01-10"
    assert extract_target_date("no dates here", TODAY) is None


def test_limit_sentences_keeps_two():
    assert limit_sentences("One.  Two!\nThree? Four.", 2) == "One. Two!"


def test_text_signals():
    assert {"blocker", "external_wait"} <= text_signals("Waiting on the vendor for API keys")
    assert "meeting_only" in text_signals("Had a meeting with the steering committee")
    assert "meeting_only" not in text_signals("Met with finance and deployed the build")
    assert "incomplete" in text_signals("Some users have not finished training")
    assert "blocker" not in text_signals("Deployed to staging, no issues")
    assert "done" in text_signals("Deployed to staging, no issues")


def test_match_project_exact_then_longest_containment():
    assert match_project("citizen portal", PROJECTS)["id"] == 1
    assert match_project("ERP migration phase 2 rollout", PROJECTS)["id"] == 3
    assert match_project("erp", PROJECTS)["id"] == 2
    assert match_project("", PROJECTS) is None
    assert match_project("Hospital Queue", PROJECTS) is None


def test_parse_model_json_tolerates_fences_and_preamble():
    assert parse_model_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_model_json('Sure, here it is: {"a": {"b": "}"}} thanks') == {"a": {"b": "}"}}
    assert parse_model_json("[1, 2]") is None
    assert parse_model_json("") is None
    assert parse_model_json("not json") is None


def test_normalize_blocker_forces_at_risk():
    raw = {
        "project_name": "Citizen Portal",
        "status_today": "on_track",
        "progress_note": "Finished the login flow.",
        "blocker_today": "Security review not scheduled",
        "target_date": None,
    }
    out = normalize_smart_update(raw, "Citizen Portal login done", PROJECTS, TODAY)
    assert out["status_today"] == "at_risk"
    assert out["project_id"] == 1
    assert out["help_needed"] is True
    assert out["risk_signal"] == "emerging"
    assert "blocker_not_on_track" in out["corrections"]
    assert out["confidence_level"] == "medium"


def test_normalize_external_wait_and_incomplete():
    waiting = normalize_smart_update(
        {"project_name": "ERP", "status_today": "on_track", "progress_note": "Config ready.", "blocker_today": None},
        "ERP config ready, rollout paused until after the election",
        PROJECTS,
        TODAY,
    )
    assert waiting["status_today"] == "at_risk"
    assert waiting["corrections"] == ["external_wait_at_risk"]

    incomplete = normalize_smart_update(
        {"project_name": "ERP", "status_today": "on_track", "progress_note": "Training ran.", "blocker_today": "none"},
        "ERP training ran but some users have not completed it",
        PROJECTS,
        TODAY,
    )
    assert incomplete["status_today"] == "at_risk"
    assert incomplete["blocker_today"] is None
    assert incomplete["corrections"] == ["incomplete_not_on_track"]


def test_normalize_coerces_unknown_status_and_trims():
    out = normalize_smart_update(
        {
            "project_name": "Citizen Portal",
            "status_today": "great",
            "progress_note": "One. Two. Three.",
            "blocker_today": None,
            "target_date": "sometime soon",
        },
        "Citizen Portal update",
        PROJECTS,
        TODAY,
    )
    assert out["status_today"] == "at_risk"
    assert out["progress_note"] == "One. Two."
    assert out["target_date"] is None
    assert out["corrections"] == ["status_coerced", "progress_note_trimmed", "target_date_dropped"]


def test_normalize_completed_becomes_on_track_and_clean_update_is_high_confidence():
    out = normalize_smart_update(
        {
            "project_name": "Citizen Portal",
            "status_today": "on_track",
            "progress_note": "Deployed release 2.1.",
            "blocker_today": None,
            "target_date": "2026-03-20",
        },
        "Citizen Portal deployed release 2.1",
        PROJECTS,
        TODAY,
    )
    assert out["status_today"] == "on_track"
    assert out["target_date"] == "2026-03-20"
    assert out["help_needed"] is False
    assert out["risk_signal"] == "none"
    assert out["confidence_level"] == "high"

    done = normalize_smart_update({"status_today": "completed"}, "Citizen Portal handed over", PROJECTS, TODAY)
    assert done["status_today"] == "on_track"
    assert "status_coerced" in done["corrections"]


def test_normalize_unmatched_project_is_low_confidence():
    out = normalize_smart_update(
        {"project_name": "Unknown Thing", "status_today": "on_track", "progress_note": "Worked."},
        "Worked on stuff",
        PROJECTS,
        TODAY,
    )
    assert out["project_id"] is None
    assert out["project_name"] == "Unknown Thing"
    assert out["confidence_level"] == "low"


def test_heuristic_extract_reads_status_blocker_and_date():
    text = "Citizen Portal: deployed build to staging. Waiting on vendor API keys, target 2026-03-20."
    proposal = heuristic_extract(text, PROJECTS, TODAY)
    assert proposal["project_name"] == "Citizen Portal"
    assert proposal["status_today"] == "at_risk"
    assert proposal["blocker_today"].startswith("Waiting on vendor")
    assert proposal["progress_note"] == "Citizen Portal: deployed build to staging."
    assert proposal["target_date"] == "2026-03-20"

    late = heuristic_extract("ERP cutover delayed by two weeks.", PROJECTS, TODAY)
    assert late["status_today"] == "delayed"


def test_local_and_model_daily_log():
    fallback = local_daily_log("On Track", "Built  the API", "Waiting on DBA", False, TODAY)
    assert fallback["risk_signal"] == "emerging"
    assert fallback["progress_note"] == "Built the API"
    assert fallback["update_date"] == "2026-03-02"

    merged = normalize_daily_log(
        {"status_today": "delayed", "risk_signal": "bogus", "help_needed": "yes", "blocker_today": "none"},
        fallback,
    )
    assert merged["status_today"] == "Delayed"
    assert merged["risk_signal"] == "critical"
    assert merged["help_needed"] is True
    assert merged["blocker_today"] is None
    assert merged["progress_note"] == "Built the API"


def test_checklist_to_note():
    note = checklist_to_note(
        [
            {"text": "Design review", "completed": True, "percentage": 100},
            {"text": "Build API", "completed": False, "percentage": 40, "dueDate": "2026-03-10"},
            {"text": "   "},
            "junk",
        ]
    )
    assert note == "- [x] Design review\n- [ ] Build API (40%) [Due: 2026-03-10]"


def test_thai_install_and_follow_up_words_are_not_blockers():
    out = heuristic_extract("ERP: ติดตั้งระบบเสร็จแล้ว", PROJECTS, TODAY)
    assert out["status_today"] == "on_track"
    assert out["blocker_today"] is None
    assert "blocker" not in text_signals("ติดต่อผู้ขายและติดตามงานแล้ว")
    assert "blocker" in text_signals("ERP ติดปัญหาเรื่องสิทธิ์")


def test_coerce_date_reads_iso_datetimes():
    assert coerce_date("2026-04-30T00:00:00Z") == "2026-04-30"
    assert coerce_date("2026/04/30T09:15") == "2026-04-30"
    assert coerce_date("20260430") is None
