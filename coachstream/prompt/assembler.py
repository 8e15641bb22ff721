"""
Prompt Assembler

Pure, deterministic merge of the turn context into one system prompt. No I/O,
no clock reads: the caller passes `now`. Section order:

    identity -> persona directive -> user context -> memory -> knowledge
    -> health metrics -> recent conversation (+ style override)
    -> response rules -> current date

Every section is followed by a blank line; empty sections are left out.
Truncation budgets live in PromptBudgets.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..context.sources import DomainMetric, KnowledgeSnippet
from ..memory.models import Insight

IDENTITY_TEMPLATE = "You are {name} - Elite AI Fitness & Health Coach."

MEMORY_CATEGORY_ORDER = (
    "goals", "health", "training", "nutrition", "body", "sleep", "stress", "habits",
)
UNORDERED_CATEGORY_RANK = 99

IMPORTANCE_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}
IMPORTANCE_MARKERS = {"critical": "⚠️ ", "high": "❗ "}

RESPONSE_RULES = (
    "- Answer in ENGLISH",
    "- Be CONCRETE with numbers and data",
    "- Refer to the user's data when available",
    "- 100-300 words, depending on complexity",
    "- End with a follow-up question when it makes sense",
)

STYLE_OVERRIDE = (
    "== CRITICAL: STYLE ==",
    "Use ONLY the style from your persona definition.",
    "NEVER copy the language style of earlier messages.",
)

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
MONTHS = (
    "January", "February", "March", "April", "May", "June", "July",
    "August", "September", "October", "November", "December",
)


@dataclass(frozen=True)
class PromptBudgets:
    history_turns: int = 6
    history_chars: int = 200
    knowledge_top_k: int = 5
    knowledge_chars: int = 400
    insights_per_category: int = 3


@dataclass
class PromptInputs:
    coach_name: str
    now: datetime
    persona_directive: str = ""
    health_summary: Optional[str] = None
    insights: Sequence[Insight] = field(default_factory=list)
    knowledge: Sequence[KnowledgeSnippet] = field(default_factory=list)
    metrics: Sequence[DomainMetric] = field(default_factory=list)
    history: Sequence[Dict[str, str]] = field(default_factory=list)


def format_time_ago(then: datetime, now: datetime) -> str:
    """Natural phrase for how long ago `then` was ("yesterday", "3 weeks ago")."""
    seconds = max(0, int((now - then).total_seconds()))
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    weeks = days // 7
    months = days // 30

    if days == 0:
        if hours == 0:
            if minutes < 5:
                return "just now"
            return f"{minutes} minutes ago"
        if hours == 1:
            return "an hour ago"
        return f"{hours} hours ago"

    if days == 1:
        return "yesterday"
    if days == 2:
        return "the day before yesterday"
    if days < 7:
        return f"{days} days ago"

    if weeks == 1:
        return "last week"
    if weeks < 4:
        return f"{weeks} weeks ago"

    # 28 and 29 days give weeks == 4 but months == 0
    if months <= 1:
        return "last month"
    if months < 12:
        return f"{months} months ago"

    years = months // 12
    if years == 1:
        return "last year"
    return f"{years} years ago"


def _category_rank(category: str) -> int:
    if category in MEMORY_CATEGORY_ORDER:
        return MEMORY_CATEGORY_ORDER.index(category)
    return UNORDERED_CATEGORY_RANK


def build_memory_section(insights: Sequence[Insight], now: datetime, per_category: int = 3) -> List[str]:
    if not insights:
        return []

    by_category: Dict[str, List[Insight]] = {}
    for insight in insights:
        by_category.setdefault(insight.category, []).append(insight)

    lines = [
        "== YOUR MEMORY OF THE USER ==",
        "(Use this actively and refer to when you learned it!)",
        "",
    ]
    # stable sort keeps first-seen order among unranked categories
    for category in sorted(by_category, key=_category_rank):
        ranked = sorted(
            by_category[category],
            key=lambda i: (IMPORTANCE_RANK.get(i.importance, len(IMPORTANCE_RANK)), -i.extracted_at.timestamp()),
        )
        lines.append(f"### {category.upper()}")
        for insight in ranked[:per_category]:
            marker = IMPORTANCE_MARKERS.get(insight.importance, "")
            lines.append(f"- {marker}{insight.text} ({format_time_ago(insight.extracted_at, now)})")
        lines.append("")
    return lines


def build_knowledge_section(snippets: Sequence[KnowledgeSnippet], top_k: int, max_chars: int) -> List[str]:
    if not snippets:
        return []
    lines = ["== RELEVANT KNOWLEDGE =="]
    for snippet in list(snippets)[:top_k]:
        lines.append(f"### {snippet.title}")
        lines.append(snippet.content[:max_chars])
    lines.append("")
    return lines


def _format_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def build_metrics_section(metrics: Sequence[DomainMetric]) -> List[str]:
    if not metrics:
        return []
    lines = ["== HEALTH METRICS =="]
    for metric in metrics:
        line = f"- {metric.name}: {_format_value(metric.value)}"
        if metric.unit:
            line += f" {metric.unit}"
        if metric.status:
            line += f" ({metric.status})"
        lines.append(line)
    lines.append("")
    return lines


def build_history_section(history: Sequence[Dict[str, str]], turns: int, max_chars: int) -> List[str]:
    if not history:
        return []
    lines = ["== RECENT CONVERSATION =="]
    for message in list(history)[-turns:]:
        role = "USER" if message.get("role") == "user" else "YOU"
        content = message.get("content") or ""
        if len(content) > max_chars:
            content = content[:max_chars] + "..."
        lines.append(f"{role}: {content}")
    lines.append("")
    lines.extend(STYLE_OVERRIDE)
    lines.append("")
    return lines


def format_current_date(now: datetime) -> str:
    return f"Today is {WEEKDAYS[now.weekday()]}, {now.day} {MONTHS[now.month - 1]} {now.year}."


def assemble(inputs: PromptInputs, budgets: Optional[PromptBudgets] = None) -> str:
    """Build the system prompt for one turn."""
    budgets = budgets or PromptBudgets()
    parts: List[str] = [IDENTITY_TEMPLATE.format(name=inputs.coach_name), ""]

    if inputs.persona_directive:
        parts.extend([inputs.persona_directive, ""])

    if inputs.health_summary:
        parts.extend(["== USER CONTEXT ==", inputs.health_summary, ""])

    parts.extend(build_memory_section(inputs.insights, inputs.now, budgets.insights_per_category))
    parts.extend(build_knowledge_section(inputs.knowledge, budgets.knowledge_top_k, budgets.knowledge_chars))
    parts.extend(build_metrics_section(inputs.metrics))
    parts.extend(build_history_section(inputs.history, budgets.history_turns, budgets.history_chars))

    parts.append("== RESPONSE RULES ==")
    parts.extend(RESPONSE_RULES)
    parts.append("")

    parts.append(format_current_date(inputs.now))
    return "\n".join(parts)
