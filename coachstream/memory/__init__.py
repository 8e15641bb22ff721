"""Insight extraction, deduplication, pattern detection and retention."""

from .models import CATEGORIES, IMPORTANCE_LEVELS, Insight, InsightCandidate, Pattern
from .store import InsightStore

# MemoryPipeline depends on routing, which imports context, which imports
# this package; import it directly from coachstream.memory.pipeline

__all__ = [
    "CATEGORIES",
    "IMPORTANCE_LEVELS",
    "Insight",
    "InsightCandidate",
    "InsightStore",
    "Pattern",
]
