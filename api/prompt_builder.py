"""
prompt_builder.py — Message list assembly for the completion service.

The completion service weighs later messages as more recent intent, so
the order is fixed:

  1. system prompt (intent-specific role + response conventions)
  2. fetched cloud data as a system message (only when present)
  3. prior conversation history, original order
  4. the new user message

When ``redact=True`` (default for external backends) IPs, e-mails and
API-key-like strings in the data context are masked.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from query_intents import Intent, refine_prompt


RESPONSE_CONVENTIONS = (
    "Answer concisely using the provided Azure data when it is present. "
    "Format figures with units and currency. If the data is marked as an error "
    "or is missing, say so instead of guessing. Never claim to have changed a "
    "resource: any change (scale, restart, stop, start, delete, update) must be "
    "proposed and requires the user's explicit approval. When proposing a change, "
    "name the target as resource \"<name>\" in group \"<resource group>\"."
)


# ---------------------------------------------------------------------------
# Redaction helpers
# ---------------------------------------------------------------------------

_IP_RE = re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}\b")
_EMAIL_RE = re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.]+\b")
_KEY_RE = re.compile(r"(sk-|ak-|AKIA|ghp_|glpat-|xox[bpsa]-)[A-Za-z0-9_\-]{8,}")


def redact_text(text: str) -> str:
    """Mask IPs, emails and API-key-like strings."""
    text = _IP_RE.sub("[REDACTED_IP]", text)
    text = _EMAIL_RE.sub("[REDACTED_EMAIL]", text)
    text = _KEY_RE.sub("[REDACTED_KEY]", text)
    return text


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

def system_prompt(intent: Intent) -> str:
    return f"{refine_prompt(intent)} {RESPONSE_CONVENTIONS}"


def data_context(envelope: Dict[str, Any], redact: bool = False) -> str:
    text = json.dumps(envelope, default=str, separators=(",", ":"))
    if redact:
        text = redact_text(text)
    return f"Current Azure data: {text}"


def build_messages(
    history: List[Dict[str, str]],
    new_user_message: str,
    envelope: Optional[Dict[str, Any]],
    intent: Intent,
    redact: bool = False,
) -> List[Dict[str, str]]:
    """Return the ordered message list sent to the completion service."""
    messages = [{"role": "system", "content": system_prompt(intent)}]
    if envelope is not None:
        messages.append({"role": "system", "content": data_context(envelope, redact=redact)})
    messages.extend({"role": m["role"], "content": m["content"]} for m in history)
    messages.append({"role": "user", "content": new_user_message})
    return messages
