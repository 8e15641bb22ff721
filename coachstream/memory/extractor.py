"""Insight extraction from user messages."""
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..core.errors import ProviderChainExhausted
from ..routing.executor import FallbackExecutor, FallbackPolicy
from ..routing.router import ModelChoice
from .models import CATEGORIES, IMPORTANCE_LEVELS, InsightCandidate, clamp_confidence
from .parser import parse_candidate_list

logger = logging.getLogger(__name__)

MAX_NEGATIVE_EXAMPLES = 50

SYSTEM_PROMPT = (
    "You extract durable facts about a coaching client from their messages "
    "and answer with JSON only."
)


def build_extraction_prompt(text: str, existing: Sequence[str]) -> str:
    """Prompt asking for new, durable facts; existing facts are listed as negatives."""
    known = "\n".join(f"- {line}" for line in list(existing)[:MAX_NEGATIVE_EXAMPLES])
    known_block = known if known else "- (none yet)"

    return f"""Analyze the client's message and extract durable facts about them.

MESSAGE:
{text}

ALREADY KNOWN (do NOT extract these again, not even reworded, unless the fact changed):
{known_block}

For each NEW fact return:
- category: one of {", ".join(CATEGORIES)}
- subcategory: optional short label
- insight: the fact in one short third-person sentence
- raw_quote: the part of the message it came from
- confidence: 0.0-1.0
- importance: one of {", ".join(IMPORTANCE_LEVELS)} (critical = medical or safety relevant)
- updates: only when the message changes an ALREADY KNOWN fact (a new body weight,
  a new goal): that known fact copied exactly. Omit otherwise.

Format as a JSON array:
[
  {{
    "category": "nutrition",
    "insight": "Drinks 4 cups of coffee daily",
    "raw_quote": "I have like 4 coffees a day",
    "confidence": 0.85,
    "importance": "medium"
  }}
]

IMPORTANT:
- Skip small talk, questions and one-off moods
- If nothing durable was said, return []

JSON OUTPUT:"""


def validate_candidate(raw: Any, min_length: int) -> Optional[InsightCandidate]:
    """Turn one parsed record into a candidate, or None if it is unusable."""
    if not isinstance(raw, dict):
        return None

    category = str(raw.get("category") or "").strip().lower()
    if category not in CATEGORIES:
        return None

    text = str(raw.get("insight") or raw.get("text") or raw.get("content") or "").strip()
    if len(text) < min_length:
        return None

    importance = str(raw.get("importance") or "").strip().lower()
    subcategory = raw.get("subcategory")
    raw_quote = raw.get("raw_quote") or raw.get("rawQuote")
    supersedes = str(raw.get("updates") or raw.get("supersedes") or "").strip()

    return InsightCandidate(
        category=category,
        text=text,
        confidence=clamp_confidence(raw.get("confidence")),
        importance=importance if importance in IMPORTANCE_LEVELS else "medium",
        subcategory=str(subcategory) if subcategory else None,
        raw_quote=str(raw_quote) if raw_quote else None,
        supersedes=supersedes or None,
    )


class InsightExtractor:
    """Classifies a message into insight candidates through a completion call."""

    def __init__(
        self,
        executor: FallbackExecutor,
        provider: str,
        model: str,
        min_message_length: int = 15,
        min_insight_length: int = 10,
    ):
        self.executor = executor
        self.choice = ModelChoice(provider=provider, model=model, reason="Insight extraction", task_type="tools")
        self.min_message_length = min_message_length
        self.min_insight_length = min_insight_length

    async def extract(self, text: str, user_id: str, existing: Sequence[str] = ()) -> List[InsightCandidate]:
        """
        Extract insight candidates from a user message.

        Args:
            text: The user's message
            user_id: Owner, for logging
            existing: Known insight texts, passed as negative examples

        Returns:
            Validated candidates (possibly empty)
        """
        if len((text or "").strip()) < self.min_message_length:
            logger.debug(f"[MEMORY] Message too short for extraction (user={user_id})")
            return []

        messages: List[Dict[str, str]] = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_extraction_prompt(text, existing)},
        ]

        try:
            response = await self.executor.complete(
                self.choice,
                messages,
                max_tokens=1000,
                policy=FallbackPolicy.STOP_ON_NON_RETRYABLE,
                temperature=0.2,
            )
        except ProviderChainExhausted as e:
            logger.warning(f"[MEMORY] Extraction call failed for user={user_id}: {e}")
            return []

        candidates = []
        for record in parse_candidate_list(response):
            candidate = validate_candidate(record, self.min_insight_length)
            if candidate is not None:
                candidates.append(candidate)

        logger.info(f"[MEMORY] Extracted {len(candidates)} insights for user={user_id}")
        return candidates
