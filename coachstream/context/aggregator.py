"""
Context Aggregator

Fans out every context loader at once and reports each one as it settles,
in completion order. A loader that raises or runs past the per-loader
timeout contributes its neutral default instead of failing the turn.

Usage:
    aggregator = ContextAggregator(sources, timeout=5.0)

    # progress-aware (the relay turns outcomes into `thinking` events)
    outcomes = []
    async for outcome in aggregator.settle(user_id, coach_id, text):
        outcomes.append(outcome)
    bundle = ContextBundle.from_outcomes(outcomes, coach_id)

    # or all at once
    bundle = await aggregator.aggregate(user_id, coach_id, text)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from ..memory.models import Insight
from ..persona.models import PersonaDefinition
from .sources import ContextSources, DomainMetric, KnowledgeSnippet

logger = logging.getLogger(__name__)

DEFAULT_LOADER_TIMEOUT = 5.0


@dataclass
class Loader:
    """One context source: how to load it, its fallback and its progress text."""
    name: str
    load: Callable[[], Awaitable[Any]]
    default: Any = None
    ready_message: Callable[[Any], str] = lambda value: "Loaded"

    def is_loaded(self, value: Any) -> bool:
        if value is None:
            return False
        if isinstance(value, (list, tuple, dict, str)):
            return len(value) > 0
        return True


@dataclass
class LoaderOutcome:
    name: str
    value: Any
    loaded: bool
    message: str = ""
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class ContextBundle:
    """Everything loaded for one turn. Partially populated is fine."""
    persona: PersonaDefinition
    health_summary: Optional[str] = None
    knowledge: List[KnowledgeSnippet] = field(default_factory=list)
    metrics: List[DomainMetric] = field(default_factory=list)
    insights: List[Insight] = field(default_factory=list)
    history: List[Dict[str, str]] = field(default_factory=list)
    loaded_modules: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    # bundle attribute per loader name
    FIELDS = {
        "persona": "persona",
        "health": "health_summary",
        "knowledge": "knowledge",
        "metrics": "metrics",
        "memory": "insights",
        "history": "history",
    }

    @classmethod
    def from_outcomes(cls, outcomes: Sequence[LoaderOutcome], coach_id: str = "default") -> "ContextBundle":
        bundle = cls(persona=PersonaDefinition.neutral(coach_id))
        for outcome in outcomes:
            attr = cls.FIELDS.get(outcome.name)
            if attr is None:
                continue
            if outcome.value is not None:
                setattr(bundle, attr, outcome.value)
            # history is context for the prompt, not a reported module
            if outcome.loaded and outcome.name != "history":
                bundle.loaded_modules.append(outcome.name)
            if outcome.error:
                bundle.errors[outcome.name] = outcome.error
        return bundle


def _plural(count: int, singular: str, plural: str) -> str:
    return f"{count} {singular if count == 1 else plural}"


async def _settle_one(loader: Loader, timeout: Optional[float]) -> LoaderOutcome:
    started = time.monotonic()
    try:
        value = await asyncio.wait_for(loader.load(), timeout)
    except asyncio.CancelledError:
        raise
    except asyncio.TimeoutError:
        logger.warning(f"[CONTEXT] {loader.name} timed out after {timeout}s")
        return LoaderOutcome(
            name=loader.name, value=loader.default, loaded=False, error="timeout",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
    except Exception as e:
        logger.warning(f"[CONTEXT] {loader.name} failed: {e}")
        return LoaderOutcome(
            name=loader.name, value=loader.default, loaded=False, error=str(e) or type(e).__name__,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    loaded = loader.is_loaded(value)
    return LoaderOutcome(
        name=loader.name,
        value=value if value is not None else loader.default,
        loaded=loaded,
        message=loader.ready_message(value) if loaded else "",
        duration_ms=int((time.monotonic() - started) * 1000),
    )


async def settle_loaders(
    loaders: Sequence[Loader],
    timeout: Optional[float] = DEFAULT_LOADER_TIMEOUT,
) -> AsyncIterator[LoaderOutcome]:
    """Run all loaders concurrently, yielding outcomes in completion order."""
    tasks = [asyncio.ensure_future(_settle_one(loader, timeout)) for loader in loaders]
    try:
        for next_done in asyncio.as_completed(tasks):
            yield await next_done
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()


class ContextAggregator:
    """Concurrent, failure-isolated context loading for one turn."""

    def __init__(self, sources: ContextSources, timeout: Optional[float] = DEFAULT_LOADER_TIMEOUT):
        self.sources = sources
        self.timeout = timeout

    def loaders(self, user_id: str, coach_id: str, text: str) -> List[Loader]:
        s = self.sources
        return [
            Loader("persona", lambda: s.load_persona(user_id, coach_id), None,
                   lambda p: "Persona loaded"),
            Loader("health", lambda: s.load_health_summary(user_id), None,
                   lambda h: "Health data analyzed"),
            Loader("knowledge", lambda: s.load_knowledge(text), [],
                   lambda k: f"{_plural(len(k), 'knowledge source', 'knowledge sources')} found"),
            Loader("metrics", lambda: s.load_metrics(user_id), [],
                   lambda m: f"{_plural(len(m), 'metric', 'metrics')} checked"),
            Loader("memory", lambda: s.load_insights(user_id, text), [],
                   lambda i: f"{_plural(len(i), 'memory', 'memories')} loaded"),
            Loader("history", lambda: s.load_history(user_id, coach_id), [],
                   lambda h: "Conversation history loaded"),
        ]

    async def settle(self, user_id: str, coach_id: str, text: str) -> AsyncIterator[LoaderOutcome]:
        async for outcome in settle_loaders(self.loaders(user_id, coach_id, text), self.timeout):
            yield outcome

    async def aggregate(
        self,
        user_id: str,
        coach_id: str,
        text: str,
        on_ready: Optional[Callable[[LoaderOutcome], None]] = None,
    ) -> ContextBundle:
        started = time.monotonic()
        outcomes = []
        async for outcome in self.settle(user_id, coach_id, text):
            outcomes.append(outcome)
            if on_ready is not None and outcome.loaded:
                on_ready(outcome)

        bundle = ContextBundle.from_outcomes(outcomes, coach_id)
        logger.info(
            f"[CONTEXT] Loaded in {int((time.monotonic() - started) * 1000)}ms. "
            f"Modules: {', '.join(bundle.loaded_modules) or '(none)'}"
        )
        return bundle
