"""Per-turn context loading and message signal detection."""

from .aggregator import ContextAggregator, ContextBundle, Loader, LoaderOutcome, settle_loaders
from .sources import ContextSources, DomainMetric, KnowledgeSnippet

__all__ = [
    "ContextAggregator",
    "ContextBundle",
    "ContextSources",
    "DomainMetric",
    "KnowledgeSnippet",
    "Loader",
    "LoaderOutcome",
    "settle_loaders",
]
