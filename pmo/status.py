"""Status vocabularies shared by the store, the normalization rules and the reports.

Statuses arrive in three spellings: display labels from forms ("At Risk"), upper snake keys
from older rows ("AT_RISK") and lower snake keys from the model ("at_risk"). Everything is
stored and returned as the display label; the model contract uses the lower snake key.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional

ON_TRACK = "On Track"
AT_RISK = "At Risk"
DELAYED = "Delayed"
COMPLETED = "Completed"
ON_HOLD = "On Hold"

PROJECT_STATUSES = [ON_TRACK, AT_RISK, DELAYED, COMPLETED, ON_HOLD]
DAILY_STATUSES = [ON_TRACK, AT_RISK, DELAYED, COMPLETED]
INGEST_STATUSES = ["on_track", "at_risk", "delayed"]
NO_UPDATE = "No Update"

RISK_SIGNALS = ["none", "emerging", "critical"]
RISK_TRENDS = ["stable", "worsening", "improving"]
MILESTONE_STATUSES = ["Completed", "Missed", "Pending"]
BILLING_STATUSES = ["Pending", "Invoiced", "Paid"]
MA_CATEGORIES = ["Request", "Incident", "Maintenance", "Consulting"]

_KEY_TO_LABEL: Dict[str, str] = {
    "on_track": ON_TRACK,
    "at_risk": AT_RISK,
    "delayed": DELAYED,
    "completed": COMPLETED,
    "on_hold": ON_HOLD,
}

# Loose spellings seen in imported sheets and model output.
_ALIASES: Dict[str, str] = {
    "ontrack": "on_track",
    "green": "on_track",
    "atrisk": "at_risk",
    "amber": "at_risk",
    "yellow": "at_risk",
    "red": "delayed",
    "late": "delayed",
    "complete": "completed",
    "done": "completed",
    "onhold": "on_hold",
    "hold": "on_hold",
    "paused": "on_hold",
}

_SEVERITY: Dict[str, int] = {
    "on_track": 0,
    "completed": 0,
    "on_hold": 1,
    "at_risk": 1,
    "delayed": 2,
}


def _slug(value: object) -> str:
    text = str(value or "").strip().lower()
    return re.sub(r"[\s\-]+", "_", text)


def status_key(value: object) -> Optional[str]:
    """Return the lower snake key for any known spelling, or None."""
    slug = _slug(value)
    if not slug:
        return None
    if slug in _KEY_TO_LABEL:
        return slug
    return _ALIASES.get(slug.replace("_", ""))


def canonical_status(value: object, default: str = ON_TRACK) -> str:
    key = status_key(value)
    if key is None:
        return default
    return _KEY_TO_LABEL[key]


def severity(value: object) -> int:
    return _SEVERITY.get(status_key(value) or "", 0)


def is_at_risk(value: object) -> bool:
    return status_key(value) in {"at_risk", "delayed"}


def risk_signal_for(value: object) -> str:
    key = status_key(value)
    if key == "delayed":
        return "critical"
    if key == "at_risk":
        return "emerging"
    return "none"


def help_needed_for(value: object) -> bool:
    return status_key(value) not in {"on_track", "completed"}


def most_severe(values: List[object], default: str = ON_TRACK) -> str:
    known = [v for v in values if status_key(v)]
    if not known:
        return default
    # max() keeps the first of equal severities, i.e. the newest when callers pass newest first.
    return canonical_status(max(known, key=severity))


def next_billing_status(value: object) -> str:
    current = str(value or "").strip().title()
    if current == "Pending":
        return "Invoiced"
    if current == "Invoiced":
        return "Paid"
    return "Pending"
