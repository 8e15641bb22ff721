"""
Context Sources

Read-only loaders the aggregator fans out to on every turn. Each loader is an
async callable so they can run side by side; the tables they read are owned
by other systems and never written here.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..core.database import Database, from_iso
from ..memory.conversations import ConversationStore
from ..memory.models import Insight
from ..memory.store import InsightStore
from ..persona.models import PersonaDefinition

logger = logging.getLogger(__name__)

MIN_SEARCH_TERM = 4

STOPWORDS = frozenset({
    "about", "after", "also", "been", "could", "does", "from", "have", "just",
    "like", "much", "should", "that", "than", "them", "then", "there", "they",
    "this", "want", "what", "when", "which", "will", "with", "would", "your",
})


@dataclass
class KnowledgeSnippet:
    id: str
    title: str
    content: str
    score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "score": self.score}


@dataclass
class DomainMetric:
    """Latest value of one tracked health metric."""
    name: str
    value: float
    unit: Optional[str] = None
    status: Optional[str] = None
    recorded_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "unit": self.unit,
            "status": self.status,
            "recordedAt": self.recorded_at,
        }


def search_terms(text: str) -> List[str]:
    """Lowercased content words worth matching against the knowledge base."""
    words = re.findall(r"[a-z0-9][a-z0-9\-]+", text.lower())
    terms = []
    for word in words:
        if len(word) < MIN_SEARCH_TERM or word in STOPWORDS or word in terms:
            continue
        terms.append(word)
    return terms


class ContextSources:
    """Per-turn loaders over the collaborator tables.

    The `fetch_*` methods are plain blocking queries. The `load_*` coroutines
    run them in a worker thread, so the aggregator's fan-out and per-loader
    timeout apply to the queries themselves and the event loop keeps serving
    other streams meanwhile.
    """

    def __init__(
        self,
        db: Database,
        insights: InsightStore,
        conversations: ConversationStore,
        knowledge_top_k: int = 5,
        history_fetch: int = 12,
        insight_limit: int = 30,
    ):
        self.db = db
        self.insights = insights
        self.conversations = conversations
        self.knowledge_top_k = knowledge_top_k
        self.history_fetch = history_fetch
        self.insight_limit = insight_limit

    # =========================================================================
    # Queries
    # =========================================================================

    def fetch_persona(self, user_id: str, coach_id: str) -> Optional[PersonaDefinition]:
        """The user's selected persona, else the coach's own, else None."""
        row = self.db.fetchone(
            "SELECT p.* FROM user_personas up JOIN personas p ON p.id = up.persona_id "
            "WHERE up.user_id = :user_id",
            {"user_id": user_id},
        )
        if row is None:
            row = self.db.fetchone(
                "SELECT * FROM personas WHERE coach_id = :coach_id OR id = :coach_id "
                "ORDER BY CASE WHEN coach_id = :coach_id THEN 0 ELSE 1 END LIMIT 1",
                {"coach_id": coach_id},
            )
        if row is None:
            logger.debug(f"[CONTEXT] No persona for user={user_id} coach={coach_id}")
            return None
        return PersonaDefinition.from_row(row)

    def fetch_health_summary(self, user_id: str) -> Optional[str]:
        row = self.db.fetchone(
            "SELECT summary FROM health_summaries WHERE user_id = :user_id",
            {"user_id": user_id},
        )
        if row is None or not (row["summary"] or "").strip():
            return None
        return row["summary"].strip()

    def fetch_knowledge(self, text: str) -> List[KnowledgeSnippet]:
        """Keyword search: snippets ranked by how many message terms they contain."""
        terms = search_terms(text)
        if not terms:
            return []

        rows = self.db.fetchall("SELECT id, title, content, keywords FROM knowledge_snippets")
        scored = []
        for row in rows:
            haystack = f"{row['title']} {row['keywords']} {row['content']}".lower()
            score = sum(1 for term in terms if term in haystack)
            # Keyword hits count double
            score += sum(1 for term in terms if term in (row["keywords"] or "").lower())
            if score > 0:
                scored.append(KnowledgeSnippet(
                    id=row["id"], title=row["title"], content=row["content"], score=score,
                ))

        scored.sort(key=lambda s: (-s.score, s.title))
        return scored[:self.knowledge_top_k]

    def fetch_metrics(self, user_id: str) -> List[DomainMetric]:
        """Most recent reading per metric name."""
        rows = self.db.fetchall(
            "SELECT m.name, m.value, m.unit, m.status, m.recorded_at FROM domain_metrics m "
            "JOIN (SELECT name, MAX(recorded_at) AS latest FROM domain_metrics "
            "      WHERE user_id = :user_id GROUP BY name) l "
            "ON m.name = l.name AND m.recorded_at = l.latest "
            "WHERE m.user_id = :user_id ORDER BY m.name",
            {"user_id": user_id},
        )
        seen = set()
        metrics = []
        for row in rows:
            if row["name"] in seen:
                continue
            seen.add(row["name"])
            metrics.append(DomainMetric(
                name=row["name"],
                value=row["value"],
                unit=row["unit"],
                status=row["status"],
                recorded_at=row["recorded_at"],
            ))
        return metrics

    def tenure_days(self, user_id: str, now) -> Optional[int]:
        """Days since the user's first stored message, None for new users."""
        first = from_iso(self.conversations.first_message_at(user_id))
        if first is None:
            return None
        return max(0, (now - first).days)

    # =========================================================================
    # Loaders
    # =========================================================================

    async def load_persona(self, user_id: str, coach_id: str) -> Optional[PersonaDefinition]:
        return await asyncio.to_thread(self.fetch_persona, user_id, coach_id)

    async def load_health_summary(self, user_id: str) -> Optional[str]:
        return await asyncio.to_thread(self.fetch_health_summary, user_id)

    async def load_knowledge(self, text: str) -> List[KnowledgeSnippet]:
        return await asyncio.to_thread(self.fetch_knowledge, text)

    async def load_metrics(self, user_id: str) -> List[DomainMetric]:
        return await asyncio.to_thread(self.fetch_metrics, user_id)

    async def load_history(self, user_id: str, coach_id: str) -> List[Dict[str, str]]:
        return await asyncio.to_thread(self.conversations.recent, user_id, coach_id, self.history_fetch)

    async def load_insights(self, user_id: str, text: str) -> List[Insight]:
        return await asyncio.to_thread(self.insights.load_relevant, user_id, text, self.insight_limit)

    async def load_tenure_days(self, user_id: str, now) -> Optional[int]:
        return await asyncio.to_thread(self.tenure_days, user_id, now)
