"""
Turn Signals

Deterministic detectors over the user's message. They feed the persona
resolution context, the semantic model override, the max-token budget and
the redirect check for messages that need tool execution.

Nothing here does I/O; every function takes the text (and, where needed,
the current time) and returns plain values.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

# =============================================================================
# Mood, topic and time of day
# =============================================================================

MOOD_KEYWORDS = (
    ("frustrated", ("frustrated", "annoyed", "annoying", "sucks", "give up", "giving up")),
    ("overwhelmed", ("overwhelmed", "too much", "exhausted", "no energy", "burned out")),
    ("positive", ("great", "awesome", "amazing", "nailed it", "done it", "motivated")),
)

TOPIC_KEYWORDS = (
    ("training", ("training", "workout", "exercise", "gym", "strength", "reps")),
    ("nutrition", ("nutrition", "eat", "calories", "protein", "macros", "diet")),
    ("motivation", ("motivation", "give up", "goal", "success")),
    ("supplements", ("supplement", "vitamin", "creatine")),
    ("recovery", ("recovery", "sleep", "regeneration", "rest day")),
    ("peptides", ("peptide", "semaglutide", "tirzepatide", "glp-1", "retatrutide")),
)


def _starts_word(lowered: str, keyword: str) -> bool:
    # "eat" matches "eating" but not "great"
    return re.search(r"\b" + re.escape(keyword), lowered) is not None


def detect_mood(text: str) -> str:
    """One of frustrated, overwhelmed, positive or neutral (first match wins)."""
    lowered = text.lower()
    for mood, keywords in MOOD_KEYWORDS:
        if any(_starts_word(lowered, keyword) for keyword in keywords):
            return mood
    return "neutral"


def detect_topic(text: str) -> Optional[str]:
    lowered = text.lower()
    for topic, keywords in TOPIC_KEYWORDS:
        if any(_starts_word(lowered, keyword) for keyword in keywords):
            return topic
    return None


def time_of_day(now: datetime) -> str:
    hour = now.hour
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


# =============================================================================
# Fast-path conversation analysis
# =============================================================================

INTENTS = (
    "confirmation", "rejection", "question", "deep_dive",
    "chit_chat", "emotion", "command", "followup",
)
SENTIMENTS = ("positive", "neutral", "negative", "frustrated")
DETAIL_LEVELS = ("ultra_short", "concise", "moderate", "extensive")

FAST_PATH_MAX_CHARS = 30

INSTANT_CONFIRMATIONS = frozenset({
    "ok", "okay", "k", "yes", "yep", "yeah", "sure", "fine", "good", "top",
    "nice", "cool", "great", "perfect", "thanks", "thank you", "thx", "check",
    "done", "got it", "roger", "exactly", "right", "correct", "absolutely",
    "definitely", "sounds good", "alright", "all right", "deal",
})

INSTANT_REJECTIONS = frozenset({
    "no", "nope", "nah", "not", "rather not", "no thanks", "doesn't work",
    "does not work", "not really", "different", "something else", "never",
})

GREETING = re.compile(
    r"^(hi|hey|hello|morning|good\s*(morning|afternoon|evening)|what'?s\s*up|yo)[\s!?.]*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ConversationAnalysis:
    """Intent and required answer length for one message."""
    intent: str = "question"
    sentiment: str = "neutral"
    references_previous: bool = False
    required_detail_level: str = "moderate"
    reasoning: str = ""

    def __post_init__(self):
        if self.intent not in INTENTS:
            object.__setattr__(self, "intent", "question")
        if self.sentiment not in SENTIMENTS:
            object.__setattr__(self, "sentiment", "neutral")
        if self.required_detail_level not in DETAIL_LEVELS:
            object.__setattr__(self, "required_detail_level", "moderate")

    def to_dict(self) -> Dict:
        return {
            "intent": self.intent,
            "sentiment": self.sentiment,
            "referencesPrevious": self.references_previous,
            "requiredDetailLevel": self.required_detail_level,
            "reasoning": self.reasoning,
        }


def _normalize(text: str) -> str:
    return text.lower().strip().rstrip(".!?,").strip()


def fast_path(text: str) -> Optional[ConversationAnalysis]:
    """Pattern match very short messages; None when no rule applies."""
    if len(text) >= FAST_PATH_MAX_CHARS:
        return None

    normalized = _normalize(text)

    if (normalized in INSTANT_CONFIRMATIONS or normalized.startswith("ok ")
            or "fits" in normalized or "works for me" in normalized):
        return ConversationAnalysis(
            intent="confirmation",
            sentiment="positive",
            references_previous=True,
            required_detail_level="ultra_short",
            reasoning="Fast path: instant confirmation",
        )

    if normalized in INSTANT_REJECTIONS or ("not" in normalized.split() and "?" not in text):
        return ConversationAnalysis(
            intent="rejection",
            sentiment="neutral",
            references_previous=True,
            required_detail_level="concise",
            reasoning="Fast path: rejection",
        )

    if GREETING.match(text.strip()):
        return ConversationAnalysis(
            intent="chit_chat",
            sentiment="positive",
            required_detail_level="concise",
            reasoning="Fast path: greeting",
        )

    return None


def heuristic_analysis(text: str) -> ConversationAnalysis:
    """Length and punctuation based fallback when the fast path has no answer."""
    stripped = text.strip()
    if len(stripped) < 20 and "?" not in stripped:
        return ConversationAnalysis(
            intent="confirmation",
            references_previous=True,
            required_detail_level="concise",
            reasoning="Heuristic: short statement",
        )
    if "?" in stripped and len(stripped) > 50:
        return ConversationAnalysis(
            intent="question",
            required_detail_level="moderate",
            reasoning="Heuristic: longer question",
        )
    return ConversationAnalysis(
        intent="question",
        required_detail_level="moderate",
        reasoning="Heuristic: default",
    )


def analyze_message(text: str) -> ConversationAnalysis:
    return fast_path(text) or heuristic_analysis(text)


_DETAIL_INSTRUCTIONS = {
    "ultra_short": (
        "== RESPONSE LENGTH: ULTRA SHORT ==\n"
        "Answer in at most 1-2 sentences (about 30-50 words). No lists, no headings, "
        "no follow-up explanations."
    ),
    "concise": (
        "== RESPONSE LENGTH: CONCISE ==\n"
        "Answer in 3-4 sentences (about 80-100 words). Only the essentials, no deep dives."
    ),
    "moderate": (
        "== RESPONSE LENGTH: MODERATE ==\n"
        "Answer in about 150-200 words. Explain the key points, use a short list only when it helps."
    ),
    "extensive": (
        "== RESPONSE LENGTH: EXTENSIVE ==\n"
        "Answer thoroughly in about 250-350 words. Explain background, mechanisms and "
        "concrete next steps."
    ),
}

_INTENT_HINTS = {
    "confirmation": "The user is confirming. Acknowledge briefly and move on, do not repeat what was already said.",
    "rejection": "The user declined. Accept it and offer one short alternative.",
    "emotion": "The user is sharing a feeling. Respond with empathy first, advice second.",
}


def detail_level_instruction(level: str, intent: Optional[str] = None) -> str:
    """Response-length instruction appended after the assembled prompt."""
    instruction = _DETAIL_INSTRUCTIONS.get(level, _DETAIL_INSTRUCTIONS["moderate"])
    hint = _INTENT_HINTS.get(intent or "")
    if hint:
        instruction += "\n" + hint
    return instruction


@dataclass(frozen=True)
class ModelRecommendation:
    model: str
    max_tokens: int
    reason: str


FLASH_MODEL = "google/gemini-2.5-flash"
PRO_MODEL = "google/gemini-3-pro-preview"


def optimal_model_for_analysis(
    analysis: ConversationAnalysis,
    flash_model: str = FLASH_MODEL,
    pro_model: str = PRO_MODEL,
) -> ModelRecommendation:
    level = analysis.required_detail_level
    intent = analysis.intent

    if level == "ultra_short" or intent in ("confirmation", "chit_chat"):
        return ModelRecommendation(flash_model, 300, "Short reply, fast model is enough")
    if level == "concise" and intent != "deep_dive":
        return ModelRecommendation(flash_model, 600, "Concise reply, fast model")
    if level == "extensive" or intent == "deep_dive":
        return ModelRecommendation(pro_model, 4000, "Deep dive, reasoning model with full budget")
    return ModelRecommendation(pro_model, 2500, "Standard reply")


# =============================================================================
# Token budget
# =============================================================================

MIN_MAX_TOKENS = 2500

COMPLEX_KEYWORDS = (
    "explain", "analysis", "analyze", "study", "research", "science",
    "compare", "difference", "relationship", "mechanism", "strategy", "plan",
    "protocol", "optimiz", "detailed", "why exactly", "how does", "step by step",
)


def detect_question_complexity(text: str):
    """Complexity level and max-token budget; never below MIN_MAX_TOKENS.

    Returns:
        (level, max_tokens) with level in simple, moderate, complex
    """
    lowered = text.lower()
    matches = sum(1 for keyword in COMPLEX_KEYWORDS if keyword in lowered)
    is_long = len(text) > 150

    if matches >= 2 or (matches >= 1 and is_long):
        return "complex", 5000
    if matches >= 1 or is_long:
        return "moderate", 4000
    return "simple", MIN_MAX_TOKENS


# =============================================================================
# Tool redirect
# =============================================================================

TOOL_TRIGGERS = (
    # plan creation
    "create a", "make me a", "training plan", "workout plan",
    "nutrition plan", "meal plan", "supplement plan", "calculate my macros",
    # meta analysis
    "analyze", "analyse", "overview", "summary", "summarize",
    "how am i doing", "my progress",
    # peptide protocols
    "peptide protocol", "titration",
    # research
    "study", "studies", "evidence", "pubmed", "peer-reviewed", "meta-analysis",
    "research shows", "according to research", "scientific", "clinical",
    "rct", "clinical trial", "proven",
)

# Questions about the user's own protocol are answered from prompt context
PROTOCOL_KEYWORDS = (
    "protocol phase", "phase 0", "phase 1", "phase 2", "phase 3",
    "foundation phase", "recomposition", "longevity", "checklist",
    "what am i missing", "next phase", "how far am i", "progress in the protocol",
)

RESEARCH_KEYWORDS = (
    "study", "studies", "evidence", "pubmed", "meta-analysis", "research",
    "scientific", "clinical", "rct", "peer-reviewed", "clinical trial", "proven",
)


def requires_tool_execution(text: str) -> bool:
    lowered = text.lower()
    if any(keyword in lowered for keyword in PROTOCOL_KEYWORDS):
        return False
    return any(trigger in lowered for trigger in TOOL_TRIGGERS)


def tool_execution_reason(text: str) -> str:
    lowered = text.lower()
    if any(keyword in lowered for keyword in RESEARCH_KEYWORDS):
        return "research_scientific_evidence"
    if "training plan" in lowered or "workout plan" in lowered:
        return "create_workout_plan"
    if "nutrition plan" in lowered or "meal plan" in lowered:
        return "create_nutrition_plan"
    if "peptide protocol" in lowered or "titration" in lowered:
        return "create_peptide_protocol"
    if "analy" in lowered or "progress" in lowered or "overview" in lowered:
        return "meta_analysis"
    return "tool_execution"
