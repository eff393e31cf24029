"""Gemini-backed drafting for PMO updates, risk reads and executive briefings.

Every operation has a local fallback so the dashboard keeps working without a key, and
every structured reply is re-validated by the rules in `pmo.normalize` / `pmo.risk`.
"""

from __future__ import annotations

import json
import re
import sys
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import types

from pmo.analytics import briefing_context
from pmo.normalize import (
    clean_blocker,
    collapse,
    heuristic_extract,
    local_daily_log,
    normalize_daily_log,
    normalize_smart_update,
    parse_model_json,
)
from pmo.risk import evaluate_risk_pattern, merge_risk_analysis, recent_window
from pmo.settings import AI_MAX_RETRIES, GEMINI_API_KEY, GEMINI_MODEL, local_today
from pmo.status import (
    INGEST_STATUSES,
    RISK_TRENDS,
    canonical_status,
    most_severe,
    severity,
)

NO_KEY_ANALYSIS = "Gemini API Key not configured. Unable to generate analysis."
FAILED_ANALYSIS = "Failed to generate analysis due to an API error."
EMPTY_ANALYSIS = "No analysis generated."
NO_KEY_BRIEFING = "<p>Gemini API Key not configured.</p>"
FAILED_BRIEFING = "<p>Failed to generate briefing.</p>"
EMPTY_BRIEFING = "<p>No briefing generated.</p>"


def get_client():
    if not GEMINI_API_KEY:
        return None
    return genai.Client(api_key=GEMINI_API_KEY)


def _resolve(client):
    return client if client is not None else get_client()


def _schema(properties: Dict[str, types.Schema], required: List[str]) -> types.Schema:
    return types.Schema(type=types.Type.OBJECT, properties=properties, required=required)


def _string(description: Optional[str] = None, enum: Optional[List[str]] = None, nullable: bool = False) -> types.Schema:
    return types.Schema(type=types.Type.STRING, description=description, enum=enum, nullable=nullable or None)


def call_model(client, prompt: str, operation: str, schema: Optional[types.Schema] = None) -> Optional[str]:
    """Send one prompt; return the reply text, or None after all attempts fail."""
    config = None
    if schema is not None:
        config = types.GenerateContentConfig(response_mime_type="application/json", response_schema=schema)
    for attempt in range(1, AI_MAX_RETRIES + 1):
        try:
            response = client.models.generate_content(model=GEMINI_MODEL, contents=prompt, config=config)
            return getattr(response, "text", None) or ""
        except Exception as exc:
            print(f"Gemini API error ({operation}, attempt {attempt}/{AI_MAX_RETRIES}): {exc}", file=sys.stderr)
    return None


def strip_code_fences(text: str) -> str:
    return re.sub(r"^\s*```(?:html|json)?\s*|\s*```\s*$", "", text or "", flags=re.IGNORECASE).strip()


def executive_risk_prompt(project: Dict[str, Any]) -> str:
    updates = project.get("updates") or []
    latest = updates[0] if updates else {}
    return f"""
Role: Senior PMO Analyst.
Task: Analyze the following project data and provide a concise, 2-sentence executive risk assessment.

Project: {project.get('name') or project.get('project_name')}
Current Status: {canonical_status(project.get('status'))}
Budget Consumed: {project.get('budget_consumed_percent') or 0}%

Latest Update:
"{latest.get('summary_text') or 'No recent updates'}"

Reported Risks:
"{latest.get('risks_blockers') or 'None'}"

Format:
[Risk Level]: [Assessment]
"""


def generate_executive_risk_analysis(project: Dict[str, Any], client=None) -> str:
    client = _resolve(client)
    if client is None:
        return NO_KEY_ANALYSIS
    text = call_model(client, executive_risk_prompt(project), "risk analysis")
    if text is None:
        return FAILED_ANALYSIS
    return text.strip() or EMPTY_ANALYSIS


DAILY_LOG_SCHEMA = _schema(
    {
        "update_date": _string("YYYY-MM-DD"),
        "status_today": _string(),
        "progress_note": _string(),
        "blocker_today": _string(),
        "help_needed": types.Schema(type=types.Type.BOOLEAN),
        "risk_signal": _string("must be one of: none, emerging, critical"),
    },
    ["update_date", "status_today", "progress_note", "blocker_today", "help_needed", "risk_signal"],
)


def daily_log_prompt(project_name: str, status: str, progress: str, blockers: str, help_needed: bool) -> str:
    return f"""
You are a PMO assistant.

Summarize today's project update into a structured daily log.

Input:
- Project name: {project_name}
- Status today: {status}
- Progress note: {progress}
- Blockers: {blockers or 'None'}
- Help needed: {'Yes' if help_needed else 'No'}

Rules:
- If blockers exist, risk_signal cannot be 'none'
- Keep language concise and executive-readable
"""


def generate_daily_log(
    project_name: str,
    status: str,
    progress: str,
    blockers: Optional[str],
    help_needed: bool,
    client=None,
) -> Dict[str, Any]:
    fallback = local_daily_log(status, progress, blockers, help_needed, local_today())
    client = _resolve(client)
    if client is None:
        return dict(fallback, source="local")
    text = call_model(
        client,
        daily_log_prompt(project_name, status, progress, blockers or "", help_needed),
        "daily log",
        DAILY_LOG_SCHEMA,
    )
    parsed = parse_model_json(text) if text else None
    if parsed is None:
        return dict(fallback, source="local")
    return dict(normalize_daily_log(parsed, fallback), source="model")


def monday_briefing_prompt(context: List[Dict[str, Any]]) -> str:
    blocks = []
    for item in context:
        blocks.append(
            f"""
Project: {item['name']}
Current Status: {item['current_status']}
Previous Status (prior update): {item['previous_status']}
Status Changed: {'YES' if item['status_changed'] else 'NO'}
Latest Summary: {item['latest_summary']}
Latest Risks: {item['latest_risks']}
Owner: {item['owner']}
"""
        )
    projects_context = "\n---\n".join(blocks) or "No projects in scope."
    return f"""
You are a PMO executive reporting assistant.

Input Data (Daily updates from past 7 days aggregated):
{projects_context}

Goal: Generate an executive-level PMO summary using the last 7 days of daily updates.

Focus on:
- Status changes
- Risk escalation
- Projects needing decision

Output Structure (Return pure HTML with Tailwind CSS):

1. Portfolio Health Overview: a summary section highlighting the overall health trend, in a large headline style.
2. Table of Critical Projects: an HTML table of projects that are At Risk, Delayed, or recently changed status.
   Columns: Project Name, Status (distinct colors), Risk/Escalation Details, Action Owner.
3. Recommended Actions: a list of decisions or approvals needed from the executive team, styled as a call-to-action box.

Design Constraints:
- Use Tailwind CSS classes.
- No markdown formatting (like ```), just the HTML string.
- Ensure contrast and readability.
"""


def generate_monday_briefing(
    projects: List[Dict[str, Any]],
    updates: List[Dict[str, Any]],
    client=None,
) -> str:
    client = _resolve(client)
    if client is None:
        return NO_KEY_BRIEFING
    text = call_model(client, monday_briefing_prompt(briefing_context(projects, updates)), "monday briefing")
    if text is None:
        return FAILED_BRIEFING
    return strip_code_fences(text) or EMPTY_BRIEFING


INGESTION_SCHEMA = _schema(
    {
        "project_name": _string(),
        "status_today": _string(enum=INGEST_STATUSES),
        "progress_note": _string(),
        "blocker_today": _string(nullable=True),
        "target_date": _string("YYYY-MM-DD format", nullable=True),
    },
    ["project_name", "status_today", "progress_note", "blocker_today", "target_date"],
)


def ingestion_prompt(raw_text: str, projects: List[Dict[str, Any]]) -> str:
    names = [str(p.get("name") or p.get("project_name") or "") for p in projects]
    return f"""
You are a PMO daily update assistant.

Context - Known Projects:
{json.dumps(names, ensure_ascii=False)}

Input:
"{raw_text}"
(Free-text project update written by a human, Thai language or informal allowed)

Your tasks:
1. Identify the project name (match with Known Projects if possible)
2. Summarize progress in executive-readable language
3. Detect blockers, dependencies, or delays
4. Infer project status: on_track, at_risk, or delayed
5. Extract any mentioned deadline or target date

Rules:
- If some users or stakeholders are not completed, status cannot be on_track
- If work is waiting on an external factor (e.g. election, third party), status must be at_risk
- Meetings alone do not count as progress
- Keep progress_note concise (max 2 sentences)
- If no blocker exists, set blocker_today to null
- If no target date is mentioned, set target_date to null
- Do not include any explanation outside JSON

Output format (STRICT JSON ONLY):
{{
  "project_name": "",
  "status_today": "on_track | at_risk | delayed",
  "progress_note": "",
  "blocker_today": "",
  "target_date": "YYYY-MM-DD or null"
}}
"""


def process_data_ingestion(raw_text: str, projects: List[Dict[str, Any]], client=None) -> Dict[str, Any]:
    today = local_today()
    client = _resolve(client)
    proposal = None
    source = "heuristic"
    if client is not None:
        text = call_model(client, ingestion_prompt(raw_text, projects), "data ingestion", INGESTION_SCHEMA)
        proposal = parse_model_json(text) if text else None
        if proposal is not None:
            source = "model"
    if proposal is None:
        proposal = heuristic_extract(raw_text, projects, today)
    return dict(normalize_smart_update(proposal, raw_text, projects, today), source=source)


RISK_PATTERN_SCHEMA = _schema(
    {
        "project_name": _string(),
        "risk_trend": _string(enum=RISK_TRENDS),
        "escalation_required": types.Schema(type=types.Type.BOOLEAN),
        "reason": _string(),
    },
    ["project_name", "risk_trend", "escalation_required", "reason"],
)


def risk_pattern_prompt(project_name: str, logs: List[Dict[str, Any]]) -> str:
    return f"""
You are a PMO risk monitoring assistant.

Analyze daily project updates over the last 3 days for project: "{project_name}".

Input Data (Daily Logs):
{json.dumps(logs, indent=2, ensure_ascii=False, default=str)}

Objectives:
- Detect early risk patterns
- Escalate when necessary

Rules:
- If status is at_risk for 2 consecutive days -> escalate to critical
- If blockers persist more than 3 days -> flag executive attention
- If help_needed is true -> include in decision queue

Output must be valid JSON.
"""


def _log_for_prompt(log: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "update_date": log.get("update_date"),
        "status_today": canonical_status(log.get("status_today")),
        "progress_note": log.get("progress_note") or "",
        "blocker_today": clean_blocker(log.get("blocker_today")),
        "help_needed": bool(log.get("help_needed")),
        "risk_signal": log.get("risk_signal") or "none",
    }


def analyze_risk_pattern(project_name: str, logs: List[Dict[str, Any]], client=None) -> Dict[str, Any]:
    local = evaluate_risk_pattern(project_name, logs)
    client = _resolve(client)
    if client is None:
        return dict(local, source="local")
    window = [_log_for_prompt(log) for log in recent_window(logs)]
    text = call_model(client, risk_pattern_prompt(project_name, window), "risk pattern", RISK_PATTERN_SCHEMA)
    parsed = parse_model_json(text) if text else None
    if parsed is None:
        return dict(local, source="local")
    return dict(merge_risk_analysis(local, parsed), source="model")


WEEKLY_REPORT_SCHEMA = _schema(
    {
        "summary_text": _string(),
        "risks_blockers": _string(),
        "next_steps": _string(),
        "rag_status": _string(enum=["On Track", "At Risk", "Delayed", "Completed"]),
    },
    ["summary_text", "risks_blockers", "next_steps", "rag_status"],
)


def local_weekly_report(logs: List[Dict[str, Any]]) -> Dict[str, Any]:
    newest_first = list(reversed(recent_window(logs)))
    if not newest_first:
        return {"summary_text": "", "risks_blockers": "", "next_steps": "", "rag_status": "On Track"}
    rag = most_severe([log.get("status_today") for log in newest_first[:3]])
    blockers: List[str] = []
    for log in newest_first:
        blocker = clean_blocker(log.get("blocker_today"))
        if blocker and blocker not in blockers:
            blockers.append(blocker)
    notes = [collapse(log.get("progress_note")) for log in newest_first[:3] if collapse(log.get("progress_note"))]
    if blockers:
        next_steps = "\n".join(f"- Resolve: {b}" for b in blockers[:3])
    else:
        next_steps = "- Continue with the current plan."
    return {
        "summary_text": " ".join(notes),
        "risks_blockers": "; ".join(blockers) or "None",
        "next_steps": next_steps,
        "rag_status": rag,
    }


def weekly_report_prompt(project_name: str, logs: List[Dict[str, Any]]) -> str:
    return f"""
You are a PMO reporting assistant.

Draft this week's status report for project "{project_name}" from its daily logs.

Daily Logs (newest last):
{json.dumps(logs, indent=2, ensure_ascii=False, default=str)}

Rules:
- summary_text: 2-3 executive-readable sentences on what moved this week
- risks_blockers: open blockers and dependencies, or "None"
- next_steps: short bullet list of next actions
- rag_status: On Track, At Risk, Delayed or Completed; if blockers are still open it cannot be On Track
"""


def generate_weekly_report(project_name: str, logs: List[Dict[str, Any]], client=None) -> Dict[str, Any]:
    local = local_weekly_report(logs)
    client = _resolve(client)
    if client is None or not logs:
        return dict(local, source="local")
    window = [_log_for_prompt(log) for log in recent_window(logs)]
    text = call_model(client, weekly_report_prompt(project_name, window), "weekly report", WEEKLY_REPORT_SCHEMA)
    parsed = parse_model_json(text) if text else None
    if parsed is None:
        return dict(local, source="local")
    rag = canonical_status(parsed.get("rag_status"), default=local["rag_status"])
    if severity(rag) < severity(local["rag_status"]):
        rag = local["rag_status"]
    return {
        "summary_text": collapse(parsed.get("summary_text")) or local["summary_text"],
        "risks_blockers": str(parsed.get("risks_blockers") or "").strip() or local["risks_blockers"],
        "next_steps": str(parsed.get("next_steps") or "").strip() or local["next_steps"],
        "rag_status": rag,
        "source": "model",
    }
