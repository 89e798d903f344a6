"""
action_extraction.py — Approval signal detection on completion text.

Best-effort and regex based: the completion text is scanned for mutating
verbs and a quoted resource name.  Everything lives behind
``extract_action()`` so it can be swapped for structured function calling
without touching the request handler.
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

from query_intents import Intent

MUTATING_KEYWORDS = (
    "scale", "restart", "stop", "start", "delete",
    "update", "modify", "change", "remove", "create",
)

# inflected forms ("restarting", "stopped", "scales") count as the base verb
_INFLECTIONS = {
    "scale": r"scal(?:e|es|ed|ing)",
    "restart": r"restart(?:s|ed|ing)?",
    "stop": r"stop(?:s|ped|ping)?",
    "start": r"start(?:s|ed|ing)?",
    "delete": r"delet(?:e|es|ed|ing)",
    "update": r"updat(?:e|es|ed|ing)",
    "modify": r"modif(?:y|ies|ied|ying)",
    "change": r"chang(?:e|es|ed|ing)",
    "remove": r"remov(?:e|es|ed|ing)",
    "create": r"creat(?:e|es|ed|ing)",
}
_KEYWORD_RE = re.compile(
    r"\b(?:" + "|".join(f"(?P<{k}>{_INFLECTIONS[k]})" for k in MUTATING_KEYWORDS) + r")\b",
    re.IGNORECASE,
)
_RESOURCE_RE = re.compile(r"\bresource\s+[\"'`]([^\"'`]+)[\"'`]", re.IGNORECASE)
_GROUP_RE = re.compile(r"\b(?:resource\s+)?group\s+[\"'`]([^\"'`]+)[\"'`]", re.IGNORECASE)


def find_mutating_keyword(text: str) -> Optional[str]:
    """First mutating keyword in ``text`` (reading order), lower-cased."""
    m = _KEYWORD_RE.search(text or "")
    return m.lastgroup if m else None


def extract_action(text: str, intent: Intent) -> Tuple[bool, Optional[dict]]:
    """
    Return ``(requires_approval, action)``.
    ``action`` is None when no mutating keyword appears in ``text``.
    """
    operation = find_mutating_keyword(text)
    if operation is None:
        return False, None

    resource = _RESOURCE_RE.search(text)
    group = _GROUP_RE.search(text)
    return True, {
        "type": intent.value,
        "operation": operation,
        "resource": resource.group(1).strip() if resource else None,
        "resourceGroup": group.group(1).strip() if group else None,
    }
