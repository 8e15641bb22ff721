"""
Post-turn Memory Pipeline

Runs after a turn completed, through the task executor:

    extract -> save (soft, semantic, supersede) -> load current insights -> detect patterns

Usage:
    pipeline = MemoryPipeline(extractor, insights, patterns)
    result = await pipeline.process(user_id, text, source="chat", source_id=trace_id)
"""

import asyncio
import logging
from typing import Optional

from .extractor import InsightExtractor
from .models import PipelineResult
from .patterns import PatternStore, detect
from .store import InsightStore

logger = logging.getLogger(__name__)


class MemoryPipeline:
    """Extraction, deduplicated persistence and pattern detection for one message."""

    def __init__(
        self,
        extractor: InsightExtractor,
        insights: InsightStore,
        patterns: PatternStore,
        existing_limit: int = 50,
        pattern_source_limit: int = 100,
    ):
        self.extractor = extractor
        self.insights = insights
        self.patterns = patterns
        self.existing_limit = existing_limit
        self.pattern_source_limit = pattern_source_limit

    async def process(
        self,
        user_id: str,
        text: str,
        source: str = "chat",
        source_id: Optional[str] = None,
    ) -> PipelineResult:
        """Run every stage for one message.

        A failing stage is logged and recorded in `result.errors`; the stages
        after it still run with what is available.
        """
        result = PipelineResult()

        try:
            existing = await asyncio.to_thread(self.insights.existing_strings, user_id, self.existing_limit)
        except Exception as e:
            logger.warning(f"[MEMORY] Loading known insights failed for user={user_id}: {e}")
            result.errors.append(f"existing: {e}")
            existing = []

        try:
            candidates = await self.extractor.extract(text, user_id, existing)
        except Exception as e:
            logger.error(f"[MEMORY] Extraction failed for user={user_id}: {e}")
            result.errors.append(f"extract: {e}")
            return result
        result.extracted = len(candidates)
        if not candidates:
            return result

        try:
            saves = await self.insights.save_many(user_id, candidates, source=source, source_id=source_id)
            result.saved = sum(1 for s in saves if s.saved)
            result.duplicates = sum(1 for s in saves if s.duplicate_of)
            result.superseded = sum(1 for s in saves if s.superseded)
        except Exception as e:
            logger.error(f"[MEMORY] Saving insights failed for user={user_id}: {e}")
            result.errors.append(f"save: {e}")

        try:
            active = await asyncio.to_thread(self.insights.all_active, user_id, self.pattern_source_limit)
            detected = detect(candidates, active)
            saved_patterns = await asyncio.to_thread(self.patterns.save_new, user_id, detected)
            result.patterns = len(saved_patterns)
        except Exception as e:
            logger.error(f"[MEMORY] Pattern detection failed for user={user_id}: {e}")
            result.errors.append(f"patterns: {e}")

        logger.info(
            f"[MEMORY] user={user_id} extracted={result.extracted} saved={result.saved} "
            f"duplicates={result.duplicates} superseded={result.superseded} patterns={result.patterns}"
        )
        return result
