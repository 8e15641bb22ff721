"""
Insight Store

Persists insights and serves them back for prompt context.

Save modes:
- soft: insert unconditionally; duplicates are kept out by the negative
  examples in the extraction prompt
- semantic: embed the candidate and compare it against the user's active
  insights in the same category; a match at or above the dedup threshold
  bumps the existing row's reference_count instead of inserting

A changed fact supersedes the insight it replaces: the old row stays active
but is no longer current, and every read serves current rows only.

Saves for the same user are serialized within the process so a
find-then-insert cannot interleave with another turn's.
"""

import asyncio
import logging
import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from math import ceil
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.database import Database, dumps, loads, to_iso, utcnow
from ..core.embeddings import EmbeddingBackend, cosine_similarity
from .models import Insight, InsightCandidate, SaveResult

logger = logging.getLogger(__name__)

SAVE_MODES = ("soft", "semantic")
DEFAULT_DEDUP_THRESHOLD = 0.92

TOPIC_CATEGORY_RULES: List[Tuple[re.Pattern, Tuple[str, ...]]] = [
    (re.compile(r"training|workout|exercise|sport|strength|cardio|gym|lift"), ("training", "body")),
    (re.compile(r"eat|food|nutrition|diet|calorie|protein|meal|hunger|hungry"), ("nutrition", "habits")),
    (re.compile(r"sleep|tired|energy|recover|night"), ("sleep", "stress")),
    (re.compile(r"stress|work|time|pressure|overwhelm"), ("stress", "emotions")),
    (re.compile(r"goal|lose weight|gain|muscle|weight"), ("goals", "body")),
    (re.compile(r"medication|doctor|sick|pain|injur"), ("health",)),
]
DEFAULT_TOPIC_CATEGORIES = ("goals", "habits", "body")


def categories_for_topic(topic: str) -> List[str]:
    """Map free text to the insight categories worth loading for it."""
    lowered = (topic or "").lower()
    categories: List[str] = []
    for pattern, mapped in TOPIC_CATEGORY_RULES:
        if pattern.search(lowered):
            for category in mapped:
                if category not in categories:
                    categories.append(category)
    return categories or list(DEFAULT_TOPIC_CATEGORIES)


def normalize_insight_text(text: str) -> str:
    """Case, whitespace and trailing punctuation insensitive form of an insight."""
    return re.sub(r"\s+", " ", (text or "").strip().lower()).rstrip(".!")


class InsightStore:
    """SQL-backed insight persistence with optional semantic deduplication."""

    def __init__(
        self,
        db: Database,
        embeddings: Optional[EmbeddingBackend] = None,
        mode: str = "semantic",
        dedup_threshold: float = DEFAULT_DEDUP_THRESHOLD,
    ):
        if mode not in SAVE_MODES:
            raise ValueError(f"Unknown save mode: {mode}")
        self.db = db
        self.embeddings = embeddings
        self.mode = mode
        self.dedup_threshold = dedup_threshold
        # user_id -> (lock, holders); an entry lives only while a save for that user runs
        self._user_locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        lock, holders = self._user_locks.get(user_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._user_locks[user_id] = (lock, holders + 1)
        try:
            async with lock:
                yield
        finally:
            lock, holders = self._user_locks[user_id]
            if holders <= 1:
                del self._user_locks[user_id]
            else:
                self._user_locks[user_id] = (lock, holders - 1)

    # =========================================================================
    # Writes
    # =========================================================================

    def insert(
        self,
        user_id: str,
        candidate: InsightCandidate,
        source: str = "chat",
        source_id: Optional[str] = None,
        embedding: Optional[List[float]] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Insert a new active insight and return its id."""
        stamp = to_iso(now or utcnow())
        insight_id = str(uuid.uuid4())
        self.db.insert("insights", {
            "id": insight_id,
            "user_id": user_id,
            "category": candidate.category,
            "subcategory": candidate.subcategory,
            "insight": candidate.text,
            "raw_quote": candidate.raw_quote,
            "confidence": candidate.confidence,
            "importance": candidate.importance,
            "source": source,
            "source_id": source_id,
            "is_active": 1,
            "is_current": 1,
            "reference_count": 1,
            "embedding": dumps(embedding) if embedding else None,
            "extracted_at": stamp,
            "last_relevant_at": stamp,
        })
        return insight_id

    def bump_reference(self, insight_id: str, now: Optional[datetime] = None) -> int:
        """Count one more mention of an existing insight."""
        return self.db.execute(
            "UPDATE insights SET reference_count = reference_count + 1, "
            "last_relevant_at = :now WHERE id = :id",
            {"id": insight_id, "now": to_iso(now or utcnow())},
        )

    def find_superseded(self, user_id: str, text: str) -> Optional[str]:
        """Id of the user's current insight whose text matches `text`, if any."""
        target = normalize_insight_text(text)
        if not target:
            return None
        rows = self.db.fetchall(
            "SELECT id, insight FROM insights "
            "WHERE user_id = :user_id AND is_active = 1 AND is_current = 1 "
            "ORDER BY extracted_at DESC",
            {"user_id": user_id},
        )
        for row in rows:
            if normalize_insight_text(row["insight"]) == target:
                return row["id"]
        return None

    def supersede(self, old_id: str, new_id: str, now: Optional[datetime] = None) -> int:
        """Mark `old_id` as no longer current and link it to its replacement."""
        return self.db.execute(
            "UPDATE insights SET is_current = 0, superseded_by = :new_id, superseded_at = :now "
            "WHERE id = :old_id AND is_current = 1",
            {"old_id": old_id, "new_id": new_id, "now": to_iso(now or utcnow())},
        )

    def find_similar(
        self,
        user_id: str,
        category: str,
        embedding: Sequence[float],
    ) -> Optional[Tuple[str, float]]:
        """Best current same-category match at or above the dedup threshold."""
        rows = self.db.fetchall(
            "SELECT id, embedding FROM insights "
            "WHERE user_id = :user_id AND category = :category "
            "AND is_active = 1 AND is_current = 1 AND embedding IS NOT NULL",
            {"user_id": user_id, "category": category},
        )

        best: Optional[Tuple[str, float]] = None
        for row in rows:
            vector = loads(row["embedding"])
            if not vector:
                continue
            similarity = cosine_similarity(embedding, vector)
            if similarity >= self.dedup_threshold and (best is None or similarity > best[1]):
                best = (row["id"], similarity)
        return best

    async def save(
        self,
        user_id: str,
        candidate: InsightCandidate,
        source: str = "chat",
        source_id: Optional[str] = None,
    ) -> SaveResult:
        """Save one candidate according to the configured mode.

        A candidate naming a current insight it supersedes is always inserted;
        the old row stops being current and points at the new one.
        """
        async with self._user_lock(user_id):
            if candidate.supersedes:
                old_id = await asyncio.to_thread(self.find_superseded, user_id, candidate.supersedes)
                if old_id is not None:
                    return await self._save_update(user_id, candidate, old_id, source, source_id)
                logger.debug(f"[MEMORY] Nothing current to supersede for: {candidate.supersedes[:50]}")

            if self.mode == "soft" or self.embeddings is None:
                insight_id = await asyncio.to_thread(self.insert, user_id, candidate, source, source_id)
                return SaveResult(saved=True, insight_id=insight_id)
            return await self._save_semantic(user_id, candidate, source, source_id)

    async def _save_update(
        self,
        user_id: str,
        candidate: InsightCandidate,
        old_id: str,
        source: str,
        source_id: Optional[str],
    ) -> SaveResult:
        embedding = None
        if self.mode == "semantic" and self.embeddings is not None:
            embedding = await self.embeddings.embed(candidate.text)

        insight_id = await asyncio.to_thread(
            self.insert, user_id, candidate, source, source_id, embedding,
        )
        await asyncio.to_thread(self.supersede, old_id, insight_id)
        logger.info(f"[MEMORY] Superseded {old_id} -> {insight_id}: {candidate.text[:50]}")
        return SaveResult(saved=True, insight_id=insight_id, superseded=old_id)

    async def _save_semantic(
        self,
        user_id: str,
        candidate: InsightCandidate,
        source: str,
        source_id: Optional[str],
    ) -> SaveResult:
        embedding = await self.embeddings.embed(candidate.text)

        if not embedding:
            logger.warning("[MEMORY] No embedding available, saving without it")
            insight_id = await asyncio.to_thread(self.insert, user_id, candidate, source, source_id)
            return SaveResult(saved=True, insight_id=insight_id)

        match = await asyncio.to_thread(self.find_similar, user_id, candidate.category, embedding)
        if match is not None:
            existing_id, similarity = match
            await asyncio.to_thread(self.bump_reference, existing_id)
            logger.info(
                f"[MEMORY] Duplicate of {existing_id} (similarity={similarity:.3f}): {candidate.text[:50]}"
            )
            return SaveResult(saved=False, duplicate_of=existing_id)

        insight_id = await asyncio.to_thread(
            self.insert, user_id, candidate, source, source_id, embedding,
        )
        logger.info(f"[MEMORY] Saved insight with embedding: {candidate.text[:50]}")
        return SaveResult(saved=True, insight_id=insight_id)

    async def save_many(
        self,
        user_id: str,
        candidates: Sequence[InsightCandidate],
        source: str = "chat",
        source_id: Optional[str] = None,
    ) -> List[SaveResult]:
        results = []
        for candidate in candidates:
            results.append(await self.save(user_id, candidate, source, source_id))
        return results

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, insight_id: str) -> Optional[Insight]:
        row = self.db.fetchone("SELECT * FROM insights WHERE id = :id", {"id": insight_id})
        return Insight.from_row(row) if row else None

    def load_relevant(
        self,
        user_id: str,
        topic: str,
        limit: int = 30,
        now: Optional[datetime] = None,
    ) -> List[Insight]:
        """
        Insights worth putting in front of the model for this turn.

        Merges critical/high insights (newest first) with insights from the
        topic's categories (most recently relevant first), dedups by id,
        truncates to `limit` and touches last_relevant_at on what is returned.
        """
        if limit <= 0:
            return []
        half = ceil(limit / 2)
        categories = categories_for_topic(topic)

        important = self.db.fetchall(
            "SELECT * FROM insights WHERE user_id = :user_id AND is_active = 1 AND is_current = 1 "
            "AND importance IN ('critical', 'high') "
            "ORDER BY extracted_at DESC LIMIT :limit",
            {"user_id": user_id, "limit": half},
        )

        placeholders = ", ".join(f":cat{i}" for i in range(len(categories)))
        params = {"user_id": user_id, "limit": half}
        params.update({f"cat{i}": category for i, category in enumerate(categories)})
        topical = self.db.fetchall(
            "SELECT * FROM insights WHERE user_id = :user_id AND is_active = 1 AND is_current = 1 "
            f"AND category IN ({placeholders}) "
            "ORDER BY last_relevant_at DESC LIMIT :limit",
            params,
        )

        seen = set()
        merged = []
        for row in important + topical:
            if row["id"] in seen:
                continue
            seen.add(row["id"])
            merged.append(row)
        merged = merged[:limit]

        if merged:
            stamp = to_iso(now or utcnow())
            id_params = {f"id{i}": row["id"] for i, row in enumerate(merged)}
            id_list = ", ".join(f":{key}" for key in id_params)
            self.db.execute(
                f"UPDATE insights SET last_relevant_at = :now WHERE id IN ({id_list})",
                {"now": stamp, **id_params},
            )
            for row in merged:
                row["last_relevant_at"] = stamp

        return [Insight.from_row(row) for row in merged]

    def existing_strings(self, user_id: str, limit: int = 50) -> List[str]:
        """Latest active insight texts, used as extraction negatives."""
        rows = self.db.fetchall(
            "SELECT insight FROM insights WHERE user_id = :user_id AND is_active = 1 AND is_current = 1 "
            "ORDER BY extracted_at DESC LIMIT :limit",
            {"user_id": user_id, "limit": limit},
        )
        return [row["insight"] for row in rows]

    def all_active(self, user_id: str, limit: int = 100) -> List[Insight]:
        rows = self.db.fetchall(
            "SELECT * FROM insights WHERE user_id = :user_id AND is_active = 1 AND is_current = 1 "
            "ORDER BY extracted_at DESC LIMIT :limit",
            {"user_id": user_id, "limit": limit},
        )
        return [Insight.from_row(row) for row in rows]

    def count_active(self, user_id: str) -> int:
        row = self.db.fetchone(
            "SELECT COUNT(*) AS n FROM insights WHERE user_id = :user_id AND is_active = 1 AND is_current = 1",
            {"user_id": user_id},
        )
        return int(row["n"]) if row else 0
