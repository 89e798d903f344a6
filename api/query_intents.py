"""
query_intents.py — Keyword intent classifier for the query pipeline.

Each intent defines:
  • the category / subtype it belongs to
  • keywords matched as case-insensitive substrings of the user's text
  • the system prompt used to bias the completion request

Matching walks ``INTENTS`` in order and returns the first hit, so the
specific subtype of a category (e.g. ``cost_vm``) must be listed before
that category's general fallback (``cost_general``).  Table order is the
only tie-break; there is no scoring.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List


class Intent(str, Enum):
    COST_VM = "cost_vm"
    COST_STORAGE = "cost_storage"
    COST_GENERAL = "cost_general"
    PERFORMANCE_VM = "performance_vm"
    PERFORMANCE_GENERAL = "performance_general"
    RESOURCES_LIST = "resources_list"
    RESOURCES_DETAILS = "resources_details"
    UNKNOWN = "unknown"

    @property
    def category(self) -> str:
        return self.value.split("_", 1)[0]

    @property
    def subtype(self) -> str:
        return self.value.split("_", 1)[1] if "_" in self.value else ""


@dataclass(frozen=True)
class IntentDef:
    """Definition of a single intent pattern."""
    intent: Intent
    keywords: tuple
    prompt: str


# ---------------------------------------------------------------------------
# Intent definitions (priority order)
# ---------------------------------------------------------------------------

INTENTS: List[IntentDef] = [
    # ── Cost ───────────────────────────────────────────────────────────
    IntentDef(
        intent=Intent.COST_VM,
        keywords=("vm cost", "virtual machine cost", "compute cost"),
        prompt="You are an Azure cost analyst. Help analyze VM costs and suggest optimizations.",
    ),
    IntentDef(
        intent=Intent.COST_STORAGE,
        keywords=("storage cost", "disk cost"),
        prompt="You are an Azure cost analyst. Help analyze storage costs and suggest optimizations.",
    ),
    IntentDef(
        intent=Intent.COST_GENERAL,
        keywords=("cost", "spend", "bill", "charge", "expense", "pricing"),
        prompt="You are an Azure cost analyst. Help analyze overall costs and suggest optimizations.",
    ),
    # ── Performance ────────────────────────────────────────────────────
    IntentDef(
        intent=Intent.PERFORMANCE_VM,
        keywords=("vm performance", "cpu usage", "memory usage"),
        prompt="You are an Azure performance expert. Help analyze VM metrics and suggest improvements.",
    ),
    IntentDef(
        intent=Intent.PERFORMANCE_GENERAL,
        keywords=("performance", "metrics", "monitoring", "health"),
        prompt="You are an Azure performance expert. Help analyze system metrics and suggest improvements.",
    ),
    # ── Resources ──────────────────────────────────────────────────────
    IntentDef(
        intent=Intent.RESOURCES_LIST,
        keywords=("list", "show", "get", "what", "resources"),
        prompt="You are an Azure resource manager. Help list and organize Azure resources.",
    ),
    IntentDef(
        intent=Intent.RESOURCES_DETAILS,
        keywords=("details", "information", "about"),
        prompt="You are an Azure resource expert. Help provide detailed information about Azure resources.",
    ),
]

DEFAULT_PROMPT = (
    "You are an Azure infrastructure assistant. "
    "Help the user with their Azure-related query."
)

_PROMPTS: Dict[Intent, str] = {d.intent: d.prompt for d in INTENTS}


# ---------------------------------------------------------------------------
# Matching engine
# ---------------------------------------------------------------------------

def detect_intent(text: str) -> Intent:
    """Return the first intent whose keyword list hits ``text``; UNKNOWN otherwise."""
    q = (text or "").lower()
    if not q.strip():
        return Intent.UNKNOWN
    for definition in INTENTS:
        if any(kw in q for kw in definition.keywords):
            return definition.intent
    return Intent.UNKNOWN


def refine_prompt(intent: Intent) -> str:
    """System prompt biasing the completion toward the detected intent."""
    return _PROMPTS.get(intent, DEFAULT_PROMPT)


def get_suggestion_chips() -> dict:
    """
    Return categorized quick-suggestion chips for the chat UI,
    plus help tips.
    """
    return {
        "categories": [
            {
                "name": "Costs",
                "icon": "💰",
                "chips": [
                    {"label": "Current spending", "question": "What's my current Azure spending?"},
                    {"label": "VM costs", "question": "Break down my VM cost"},
                    {"label": "Storage costs", "question": "What is my storage cost this month?"},
                ],
            },
            {
                "name": "Performance",
                "icon": "📊",
                "chips": [
                    {"label": "CPU usage", "question": "Show CPU usage for my VMs"},
                    {"label": "Resource health", "question": "How is the health of my environment?"},
                ],
            },
            {
                "name": "Resources",
                "icon": "🖥️",
                "chips": [
                    {"label": "List resources", "question": "List my resources"},
                    {"label": "Resource details", "question": "Give me details about resource ", "template": True},
                ],
            },
        ],
        "tips": [
            "Mention cost, spend or bill for spending questions",
            "Say \"vm cost\" or \"storage cost\" to narrow a cost question",
            "Ask about cpu usage or memory usage for VM performance",
            "Changes such as restart or scale always ask for approval first",
        ],
    }
