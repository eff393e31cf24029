"""Update normalization: free-text project updates to structured status records.

A proposal (model JSON or the local heuristic) is never trusted as-is. It passes through
`normalize_smart_update`, which repairs the shape and enforces the PMO status rules:

- a blocker means the project cannot be on track
- work waiting on an external party is at risk
- unfinished users or stakeholders mean the project cannot be on track
- progress notes are at most two sentences
- "none"-style blockers and unparseable target dates become null

Input is often Thai or informal English, so the signal patterns cover both.
"""

from __future__ import annotations

import datetime as dt
import json
import re
from typing import Any, Dict, Iterable, List, Optional, Set

from pmo.settings import local_today
from pmo.status import (
    INGEST_STATUSES,
    RISK_SIGNALS,
    canonical_status,
    risk_signal_for,
    status_key,
)

NULL_BLOCKERS = {
    "",
    "-",
    "none",
    "null",
    "nil",
    "n/a",
    "na",
    "no",
    "no blocker",
    "no blockers",
    "nothing",
    "ไม่มี",
}
MAX_BLOCKER_CHARS = 500
MAX_NOTE_CHARS = 600

_NEGATED = re.compile(r"\b(?:no|without|zero|not any)\s+(?:blockers?|issues?|problems?|delays?)\b", re.IGNORECASE)

SIGNAL_PATTERNS: Dict[str, re.Pattern[str]] = {
    "blocker": re.compile(
        r"\b(?:blocked|blocker|blocking|stuck|waiting|issues?|problems?|depends on|dependency)\b|ติดปัญหา|ติด(?!ตั้ง|ต่อ|ตาม)|ปัญหา",
        re.IGNORECASE,
    ),
    "external_wait": re.compile(
        r"\b(?:waiting (?:on|for)|pending (?:approval|vendor|customer|client|sign-?off)|third[- ]party|"
        r"vendor|election|approval from|customer sign-?off)\b|รอ(?!บ)",
        re.IGNORECASE,
    ),
    "incomplete": re.compile(
        r"\b(?:not (?:yet )?(?:completed?|done|finished)|incomplete|remaining (?:users|stakeholders)|"
        r"(?:some|several|few) (?:users|stakeholders) (?:have not|haven't|are not|aren't))\b|ยังไม่",
        re.IGNORECASE,
    ),
    "delay": re.compile(
        r"\b(?:delay(?:ed|s)?|late|behind schedule|slipp?(?:ed|ing)|overdue|postponed|missed (?:the )?deadline)\b|ล่าช้า|เลื่อน",
        re.IGNORECASE,
    ),
    "meeting": re.compile(
        r"\b(?:meetings?|met with|call with|sync(?:ed)?|workshop|kick-?off|discuss(?:ed|ion)?)\b|ประชุม",
        re.IGNORECASE,
    ),
    "progress": re.compile(
        r"\b(?:completed?|finished|delivered|deployed|implemented|built|fixed|released|tested|migrated|"
        r"launched|drafted|configured|integrated|installed|shipped|done)\b|เสร็จ|ส่งมอบ|ทดสอบ|ติดตั้ง",
        re.IGNORECASE,
    ),
}

_DATE_PATTERNS = [
    (re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})(?!\d)"), ("y", "m", "d")),
    (re.compile(r"\b(\d{4})/(\d{1,2})/(\d{1,2})(?!\d)"), ("y", "m", "d")),
    (re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})(?!\d)"), ("d", "m", "y")),
]

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")


def collapse(value: object) -> str:
    return re.sub(r"\s+", " ", str(value or "")).strip()


def split_sentences(text: object) -> List[str]:
    return [collapse(part) for part in _SENTENCE_SPLIT.split(str(text or "")) if collapse(part)]


def limit_sentences(text: object, limit: int = 2) -> str:
    sentences = split_sentences(text)
    return " ".join(sentences[:limit])[:MAX_NOTE_CHARS]


def text_signals(text: object) -> Set[str]:
    """Return the rule-relevant signals present in a free-text update."""
    scrubbed = _NEGATED.sub(" ", str(text or ""))
    found = {name for name, pattern in SIGNAL_PATTERNS.items() if pattern.search(scrubbed)}
    if "incomplete" in found:
        found.discard("progress")
    if "meeting" in found and "progress" not in found:
        found.add("meeting_only")
    if "progress" in found and not found & {"blocker", "delay", "incomplete"}:
        found.add("done")
    return found


def clean_blocker(value: object) -> Optional[str]:
    if value is None:
        return None
    text = collapse(value)
    if text.lower().rstrip(".") in NULL_BLOCKERS:
        return None
    return text[:MAX_BLOCKER_CHARS]


def _find_dates(text: str) -> List[dt.date]:
    found: List[tuple] = []
    for pattern, order in _DATE_PATTERNS:
        for match in pattern.finditer(text):
            parts = dict(zip(order, (int(g) for g in match.groups())))
            year = parts["y"]
            if year >= 2400:
                # Thai Buddhist-era years.
                year -= 543
            try:
                found.append((match.start(), dt.date(year, parts["m"], parts["d"])))
            except ValueError:
                continue
    return [d for _, d in sorted(found, key=lambda item: item[0])]


def coerce_date(value: object) -> Optional[str]:
    """Return the first real date in `value` as YYYY-MM-DD, or None."""
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    dates = _find_dates(str(value))
    return dates[0].isoformat() if dates else None


def extract_target_date(text: object, today: Optional[dt.date] = None) -> Optional[str]:
    today = today or local_today()
    dates = _find_dates(str(text or ""))
    if not dates:
        return None
    upcoming = [d for d in dates if d >= today]
    return (min(upcoming) if upcoming else max(dates)).isoformat()


def _project_name(project: Dict[str, Any]) -> str:
    return str(project.get("name") or project.get("project_name") or "").strip()


def match_project(name: object, projects: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Match a proposed project name against the known projects.

    Exact (case-insensitive) wins; otherwise containment in either direction, preferring the
    longest known name so "ERP Migration Phase 2" beats "ERP".
    """
    wanted = collapse(name).lower()
    if not wanted:
        return None
    candidates = [p for p in projects if _project_name(p)]
    for project in candidates:
        if _project_name(project).lower() == wanted:
            return project
    partial = [
        p
        for p in candidates
        if _project_name(p).lower() in wanted or wanted in _project_name(p).lower()
    ]
    if not partial:
        return None
    return max(partial, key=lambda p: len(_project_name(p)))


def find_project_in_text(text: object, projects: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    haystack = collapse(text).lower()
    hits = [p for p in projects if _project_name(p) and _project_name(p).lower() in haystack]
    if not hits:
        return None
    return max(hits, key=lambda p: len(_project_name(p)))


def parse_model_json(text: object) -> Optional[Dict[str, Any]]:
    """Parse a model reply that should be a JSON object.

    Replies sometimes arrive wrapped in ```json fences or with a sentence of preamble.
    """
    raw = str(text or "").strip()
    if not raw:
        return None
    raw = re.sub(r"^```(?:json)?\s*|\s*```$", "", raw, flags=re.IGNORECASE).strip()
    try:
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass
    start = raw.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(raw)):
            ch = raw[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    try:
                        parsed = json.loads(raw[start : idx + 1])
                    except json.JSONDecodeError:
                        break
                    return parsed if isinstance(parsed, dict) else None
        start = raw.find("{", start + 1)
    return None


def heuristic_extract(
    raw_text: str,
    projects: List[Dict[str, Any]],
    today: Optional[dt.date] = None,
) -> Dict[str, Any]:
    """Local stand-in for the model: produce the same raw proposal shape from keywords."""
    today = today or local_today()
    sentences = split_sentences(raw_text)
    signals = text_signals(raw_text)

    project = find_project_in_text(raw_text, projects)
    if project:
        project_name = _project_name(project)
    else:
        head = str(raw_text or "").strip().splitlines()[0] if str(raw_text or "").strip() else ""
        project_name = collapse(head.split(":", 1)[0]) if ":" in head else ""

    blocker_sentences = [
        s
        for s in sentences
        if SIGNAL_PATTERNS["blocker"].search(_NEGATED.sub(" ", s))
        or SIGNAL_PATTERNS["external_wait"].search(s)
        or SIGNAL_PATTERNS["delay"].search(s)
    ]
    progress_sentences = [s for s in sentences if s not in blocker_sentences]

    if "delay" in signals:
        status = "delayed"
    elif signals & {"blocker", "external_wait", "incomplete"}:
        status = "at_risk"
    else:
        status = "on_track"

    return {
        "project_name": project_name,
        "status_today": status,
        "progress_note": " ".join(progress_sentences[:2]) or " ".join(sentences[:1]),
        "blocker_today": blocker_sentences[0] if blocker_sentences else None,
        "target_date": extract_target_date(raw_text, today),
    }


def normalize_smart_update(
    raw: Optional[Dict[str, Any]],
    raw_text: str,
    projects: List[Dict[str, Any]],
    today: Optional[dt.date] = None,
) -> Dict[str, Any]:
    today = today or local_today()
    raw = raw if isinstance(raw, dict) else {}
    corrections: List[str] = []
    signals = text_signals(raw_text)

    proposed_name = collapse(raw.get("project_name"))
    project = match_project(proposed_name, projects) or find_project_in_text(raw_text, projects)
    project_name = _project_name(project) if project else proposed_name

    key = status_key(raw.get("status_today"))
    if key not in INGEST_STATUSES:
        key = "on_track" if key == "completed" else "at_risk"
        corrections.append("status_coerced")

    blocker = clean_blocker(raw.get("blocker_today"))
    if key == "on_track":
        if blocker:
            key = "at_risk"
            corrections.append("blocker_not_on_track")
        elif "external_wait" in signals:
            key = "at_risk"
            corrections.append("external_wait_at_risk")
        elif "incomplete" in signals:
            key = "at_risk"
            corrections.append("incomplete_not_on_track")

    note_source = raw.get("progress_note") or ""
    progress_note = limit_sentences(note_source, 2)
    if len(split_sentences(note_source)) > 2:
        corrections.append("progress_note_trimmed")
    if not progress_note:
        progress_note = limit_sentences(raw_text, 1)

    raw_target = raw.get("target_date")
    target_date = coerce_date(raw_target)
    if clean_blocker(raw_target) and not target_date:
        corrections.append("target_date_dropped")

    if not project:
        confidence = "low"
    elif corrections or "meeting_only" in signals:
        confidence = "medium"
    else:
        confidence = "high"

    return {
        "project_id": project.get("id") if project else None,
        "project_name": project_name,
        "update_date": today.isoformat(),
        "status_today": key,
        "progress_note": progress_note,
        "blocker_today": blocker,
        "target_date": target_date,
        "help_needed": key != "on_track",
        "risk_signal": risk_signal_for(key),
        "confidence_level": confidence,
        "corrections": corrections,
    }


def _as_bool(value: object, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def local_daily_log(
    status: str,
    progress: str,
    blockers: Optional[str],
    help_needed: bool,
    today: Optional[dt.date] = None,
) -> Dict[str, Any]:
    today = today or local_today()
    blocker = clean_blocker(blockers)
    label = canonical_status(status)
    signal = risk_signal_for(label)
    if blocker and signal == "none":
        signal = "emerging"
    return {
        "update_date": today.isoformat(),
        "status_today": label,
        "progress_note": collapse(progress),
        "blocker_today": blocker,
        "help_needed": bool(help_needed),
        "risk_signal": signal,
    }


def normalize_daily_log(raw: Optional[Dict[str, Any]], fallback: Dict[str, Any]) -> Dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    status = canonical_status(raw.get("status_today"), default=canonical_status(fallback.get("status_today")))
    blocker = clean_blocker(raw["blocker_today"]) if "blocker_today" in raw else fallback.get("blocker_today")
    signal = str(raw.get("risk_signal") or "").strip().lower()
    if signal not in RISK_SIGNALS:
        signal = risk_signal_for(status)
    if blocker and signal == "none":
        signal = "emerging"
    return {
        "update_date": coerce_date(raw.get("update_date")) or fallback["update_date"],
        "status_today": status,
        "progress_note": collapse(raw.get("progress_note")) or fallback.get("progress_note", ""),
        "blocker_today": blocker,
        "help_needed": _as_bool(raw.get("help_needed"), bool(fallback.get("help_needed"))),
        "risk_signal": signal,
    }


def checklist_to_note(items: Iterable[Dict[str, Any]]) -> str:
    """Serialize daily-log checklist rows as `- [x] Task (50%) [Due: YYYY-MM-DD]` lines."""
    lines: List[str] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        text = collapse(item.get("text"))
        if not text:
            continue
        meta: List[str] = []
        try:
            pct = int(float(item.get("percentage") or 0))
        except (TypeError, ValueError):
            pct = 0
        if 0 < pct < 100:
            meta.append(f"({pct}%)")
        due = coerce_date(item.get("due_date") or item.get("dueDate"))
        if due:
            meta.append(f"[Due: {due}]")
        mark = "x" if _as_bool(item.get("completed")) else " "
        suffix = f" {' '.join(meta)}" if meta else ""
        lines.append(f"- [{mark}] {text}{suffix}")
    return "\n".join(lines)
