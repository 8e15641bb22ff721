"""Tests for the context sources and the concurrent aggregator."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest


@pytest.fixture
def sources(db, embeddings):
    from coachstream.context.sources import ContextSources
    from coachstream.memory.conversations import ConversationStore
    from coachstream.memory.store import InsightStore

    return ContextSources(db, InsightStore(db, mode="soft"), ConversationStore(db), knowledge_top_k=2)


def loader(name, value=None, delay=0.0, error=None, default=None):
    from coachstream.context.aggregator import Loader

    async def load():
        await asyncio.sleep(delay)
        if error is not None:
            raise error
        return value

    return Loader(name, load, default, lambda v: f"{name} ready")


async def collect(loaders, timeout=1.0):
    from coachstream.context.aggregator import settle_loaders

    return [outcome async for outcome in settle_loaders(loaders, timeout)]


class TestSearchTerms:
    """Tests for search_terms."""

    def test_drops_short_words_and_stopwords(self):
        from coachstream.context.sources import search_terms

        assert search_terms("What about creatine loading with a low-carb diet?") == ["creatine", "loading", "low-carb", "diet"]

    def test_dedups(self):
        from coachstream.context.sources import search_terms

        assert search_terms("sleep sleep SLEEP") == ["sleep"]


@pytest.mark.asyncio
class TestContextSources:
    """Tests for ContextSources loaders."""

    async def test_user_persona_preferred(self, sources, seed_persona):
        seed_persona("ares-classic", coach_id="ares")
        seed_persona("ares-soft", name="Soft Ares", coach_id="ares", user_id="user-1", energy=3)

        persona = await sources.load_persona("user-1", "ares")
        assert persona.id == "ares-soft"
        assert persona.dials.energy == 3

    async def test_coach_persona_fallback(self, sources, seed_persona):
        seed_persona("ares-classic", coach_id="ares")

        assert (await sources.load_persona("user-2", "ares")).id == "ares-classic"
        assert await sources.load_persona("user-2", "freya") is None

    async def test_health_summary(self, sources, db):
        assert await sources.load_health_summary("user-1") is None

        db.insert("health_summaries", {"user_id": "user-1", "summary": "  Blood pressure normal.  "})
        db.insert("health_summaries", {"user_id": "user-2", "summary": "   "})

        assert await sources.load_health_summary("user-1") == "Blood pressure normal."
        assert await sources.load_health_summary("user-2") is None

    async def test_knowledge_ranked_and_limited(self, sources, db):
        db.insert("knowledge_snippets", {"id": "k1", "title": "Sleep hygiene", "content": "Dark, cool room.", "keywords": "sleep,bedroom"})
        db.insert("knowledge_snippets", {"id": "k2", "title": "Caffeine", "content": "Caffeine hurts sleep quality.", "keywords": "coffee"})
        db.insert("knowledge_snippets", {"id": "k3", "title": "Deadlift form", "content": "Neutral spine.", "keywords": "deadlift"})
        db.insert("knowledge_snippets", {"id": "k4", "title": "Naps", "content": "Short naps help sleep debt.", "keywords": ""})

        snippets = await sources.load_knowledge("Any tips for better sleep tonight?")

        assert [s.id for s in snippets][0] == "k1"
        assert len(snippets) == 2
        assert "k3" not in [s.id for s in snippets]

    async def test_knowledge_without_terms(self, sources):
        assert await sources.load_knowledge("ok") == []

    async def test_latest_metric_per_name(self, sources, db):
        for name, value, day in (("hrv", 40, 1), ("hrv", 55, 3), ("weight", 82.5, 2)):
            db.insert("domain_metrics", {
                "user_id": "user-1", "name": name, "value": value, "unit": "ms" if name == "hrv" else "kg",
                "recorded_at": f"2024-05-0{day}T08:00:00.000000+00:00",
            })
        db.insert("domain_metrics", {"user_id": "user-2", "name": "hrv", "value": 99, "recorded_at": "2024-05-09T08:00:00.000000+00:00"})

        metrics = await sources.load_metrics("user-1")
        assert [(m.name, m.value) for m in metrics] == [("hrv", 55), ("weight", 82.5)]

    async def test_tenure_days(self, sources):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        assert sources.tenure_days("user-1", now) is None

        sources.conversations.add_turn("user-1", "ares", "hi", "hello", now=now - timedelta(days=45))
        assert sources.tenure_days("user-1", now) == 45


@pytest.mark.asyncio
class TestSettleLoaders:
    """Tests for concurrent loader settlement."""

    async def test_completion_order(self):
        outcomes = await collect([
            loader("slow", "a", delay=0.05),
            loader("fast", "b"),
        ])
        assert [o.name for o in outcomes] == ["fast", "slow"]
        assert all(o.loaded for o in outcomes)
        assert outcomes[0].message == "fast ready"

    async def test_failure_isolated(self):
        outcomes = await collect([
            loader("broken", error=RuntimeError("db down"), default=[]),
            loader("fine", ["x"]),
        ])
        by_name = {o.name: o for o in outcomes}

        assert by_name["broken"].loaded is False
        assert by_name["broken"].value == []
        assert by_name["broken"].error == "db down"
        assert by_name["fine"].loaded

    async def test_timeout_uses_default(self):
        outcomes = await collect([loader("stuck", "late", delay=1.0, default=[])], timeout=0.01)

        assert outcomes[0].loaded is False
        assert outcomes[0].error == "timeout"
        assert outcomes[0].value == []

    async def test_empty_value_not_loaded(self):
        outcomes = await collect([loader("memory", [], default=[]), loader("health", None)])
        assert not any(o.loaded for o in outcomes)


class TestContextBundle:
    """Tests for ContextBundle.from_outcomes."""

    def test_history_not_reported(self):
        from coachstream.context.aggregator import ContextBundle, LoaderOutcome

        bundle = ContextBundle.from_outcomes([
            LoaderOutcome("history", [{"role": "user", "content": "hi"}], True),
            LoaderOutcome("memory", [], False),
            LoaderOutcome("health", "Fine", True),
        ], "ares")

        assert bundle.loaded_modules == ["health"]
        assert len(bundle.history) == 1
        assert bundle.health_summary == "Fine"

    def test_neutral_persona_when_missing(self):
        from coachstream.context.aggregator import ContextBundle, LoaderOutcome

        bundle = ContextBundle.from_outcomes([LoaderOutcome("persona", None, False, error="timeout")], "ares")

        assert bundle.persona.id == "ares-neutral"
        assert bundle.errors == {"persona": "timeout"}
        assert "persona" not in bundle.loaded_modules


@pytest.mark.asyncio
class TestContextAggregator:
    """Tests for ContextAggregator over real sources."""

    async def test_aggregate(self, components, seed_persona, db):
        seed_persona("ares-classic", coach_id="ares")
        db.insert("health_summaries", {"user_id": "user-1", "summary": "Recovering from a cold."})
        components.conversations.add_turn("user-1", "ares", "hi", "hello")
        ready = []

        bundle = await components.relay.aggregator.aggregate(
            "user-1", "ares", "Any tips for better sleep tonight?", on_ready=ready.append,
        )

        assert sorted(bundle.loaded_modules) == ["health", "persona"]
        assert bundle.persona.id == "ares-classic"
        assert len(bundle.history) == 2
        assert {o.name for o in ready} == {"persona", "health", "history"}

    async def test_failing_source_does_not_fail_turn(self, components, seed_persona, monkeypatch):
        seed_persona("ares-classic", coach_id="ares")

        async def broken(user_id):
            raise RuntimeError("metrics store offline")

        monkeypatch.setattr(components.relay.aggregator.sources, "load_metrics", broken)
        bundle = await components.relay.aggregator.aggregate("user-1", "ares", "hello")

        assert bundle.loaded_modules == ["persona"]
        assert bundle.errors["metrics"] == "metrics store offline"
        assert bundle.metrics == []

    async def test_slow_queries_time_out_concurrently(self, db):
        import time

        from coachstream.context.aggregator import ContextAggregator
        from coachstream.context.sources import ContextSources
        from coachstream.memory.conversations import ConversationStore
        from coachstream.memory.store import InsightStore

        class SlowDatabase:
            """Blocking database whose every read takes 0.3s."""

            def __init__(self, inner):
                self.inner = inner

            def fetchone(self, *args, **kwargs):
                time.sleep(0.3)
                return self.inner.fetchone(*args, **kwargs)

            def fetchall(self, *args, **kwargs):
                time.sleep(0.3)
                return self.inner.fetchall(*args, **kwargs)

            def __getattr__(self, name):
                return getattr(self.inner, name)

        slow = SlowDatabase(db)
        sources = ContextSources(slow, InsightStore(slow, mode="soft"), ConversationStore(slow))
        aggregator = ContextAggregator(sources, timeout=0.1)

        ticks = 0

        async def heartbeat():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        beat = asyncio.ensure_future(heartbeat())
        started = time.monotonic()
        bundle = await aggregator.aggregate("user-1", "ares", "Any tips for better sleep tonight?")
        elapsed = time.monotonic() - started
        beat.cancel()

        assert elapsed < 0.6
        assert bundle.loaded_modules == []
        assert bundle.errors == {
            name: "timeout" for name in ("persona", "health", "knowledge", "metrics", "memory", "history")
        }
        assert bundle.persona.id == "ares-neutral"
        # the event loop kept running while the queries blocked their threads
        assert ticks >= 3
