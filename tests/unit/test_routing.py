"""Tests for model routing and provider fallback."""
import pytest

from conftest import GATEWAY_HOST, OPENAI_HOST, PERPLEXITY_HOST

MESSAGES = [{"role": "user", "content": "Any tips for better sleep tonight?"}]


@pytest.fixture
def router():
    from coachstream.core.config import Config
    from coachstream.routing.router import ModelRouter

    config = Config()
    return ModelRouter(config.router, config.providers)


def choice(provider="gateway", model="google/gemini-3-flash-preview"):
    from coachstream.routing.router import ModelChoice
    return ModelChoice(provider=provider, model=model, reason="test")


class TestClassify:
    """Tests for ModelRouter.classify."""

    def test_short_question_uses_fast_model(self, router):
        from coachstream.routing.router import RoutingContext

        text = "Any tips for better sleep tonight?"
        result = router.classify(text, RoutingContext(message_length=len(text), conversation_length=0))

        assert result.task_type == "chat"
        assert (result.provider, result.model) == ("gateway", "google/gemini-3-flash-preview")

    def test_long_conversation_uses_standard_model(self, router):
        from coachstream.routing.router import RoutingContext

        result = router.classify("Any tips for better sleep tonight?", RoutingContext(conversation_length=5))
        assert result.model == "google/gemini-3-pro-preview"

    def test_long_message_uses_standard_model(self, router):
        assert router.classify("sleep " * 30).model == "google/gemini-3-pro-preview"

    @pytest.mark.parametrize("text,task", [
        ("Are there studies on creatine and cognition?", "research"),
        ("What does the science say about fasting?", "research"),
        ("Log my run from this morning", "tools"),
        ("How many calories are in a banana?", "tools"),
        ("Compare high-bar and low-bar squats", "analysis"),
        ("What's a good long-term approach?", "analysis"),
        ("Hi coach", "chat"),
    ])
    def test_task_types(self, router, text, task):
        assert router.detect_task_type(text) == task

    def test_research_goes_to_perplexity(self, router):
        result = router.classify("Is there evidence for cold plunges?")
        assert (result.provider, result.model) == ("perplexity", "sonar-deep-research")

    def test_images_take_priority(self, router):
        from coachstream.routing.router import RoutingContext

        result = router.classify("Are there studies on this meal?", RoutingContext(has_images=True))
        assert result.task_type == "vision"
        assert result.model == "google/gemini-3-pro-preview"

    def test_tool_flag(self, router):
        from coachstream.routing.router import RoutingContext
        assert router.detect_task_type("hello", RoutingContext(requires_tools=True)) == "tools"

    def test_complexity_score(self, router):
        from coachstream.routing.router import RoutingContext

        assert router.detect_task_type("hello", RoutingContext(complexity=0.8)) == "analysis"
        assert router.detect_task_type("hello", RoutingContext(complexity=0.7)) == "chat"

    def test_to_dict(self, router):
        assert router.classify("Hi coach").to_dict()["taskType"] == "chat"


class TestFallbackChain:
    """Tests for fallback_chain and model_for."""

    def test_configured_chains(self, router):
        assert router.fallback_chain("gateway") == ["gateway", "openai"]
        assert router.fallback_chain("perplexity") == ["perplexity", "gateway"]

    def test_chain_without_configuration(self):
        from coachstream.core.config import Config, RouterConfig
        from coachstream.routing.router import ModelRouter

        config = Config()
        bare = ModelRouter(RouterConfig(fallback_chains={}), config.providers)

        assert bare.fallback_chain("gateway") == ["gateway"]
        assert bare.fallback_chain("openai") == ["openai", "gateway"]

    def test_unknown_providers_dropped(self):
        from coachstream.core.config import Config, RouterConfig
        from coachstream.routing.router import ModelRouter

        config = Config()
        router = ModelRouter(
            RouterConfig(fallback_chains={"gateway": ["gateway", "mystery", "openai", "gateway"]}),
            config.providers,
        )
        assert router.fallback_chain("gateway") == ["gateway", "openai"]

    def test_model_for(self, router):
        primary = choice()
        assert router.model_for("gateway", primary) == "google/gemini-3-flash-preview"
        assert router.model_for("openai", primary) == "gpt-4o-mini"
        assert router.model_for("perplexity", choice("openai", "gpt-4o")) == "gpt-4o"

    def test_unconfigured_default_provider_rejected(self):
        from coachstream.core.config import RouterConfig
        from coachstream.routing.router import ModelRouter

        with pytest.raises(ValueError):
            ModelRouter(RouterConfig(), {})


class TestApplyAnalysis:
    """Tests for the semantic override."""

    def test_no_analysis(self, router):
        original = choice()
        assert router.apply_analysis(original, None) == (original, None)

    def test_moderate_question_keeps_choice(self, router):
        from coachstream.context.signals import ConversationAnalysis

        original = choice()
        assert router.apply_analysis(original, ConversationAnalysis()) == (original, None)

    def test_confirmation_uses_flash(self, router):
        from coachstream.context.signals import ConversationAnalysis

        result, max_tokens = router.apply_analysis(
            choice(model="google/gemini-3-pro-preview"),
            ConversationAnalysis(intent="confirmation", required_detail_level="ultra_short"),
        )
        assert result.model == "google/gemini-2.5-flash"
        assert result.reason.startswith("Semantic:")
        assert max_tokens == 300

    def test_deep_dive_uses_pro(self, router):
        from coachstream.context.signals import ConversationAnalysis
        from coachstream.routing.router import ModelChoice

        original = ModelChoice("gateway", "google/gemini-3-flash-preview", "test", task_type="analysis")
        result, max_tokens = router.apply_analysis(original, ConversationAnalysis(intent="deep_dive"))

        assert result.model == "google/gemini-3-pro-preview"
        assert result.task_type == "analysis"
        assert max_tokens == 4000


@pytest.mark.asyncio
class TestFallbackExecutor:
    """Tests for FallbackExecutor over scripted providers."""

    async def read(self, session):
        return (await session.response.aread()).decode()

    async def test_primary_succeeds(self, components, upstream):
        upstream.stream(GATEWAY_HOST, ["Hi"])

        async with components.fallback.open_stream(choice(), MESSAGES, 2500) as session:
            assert "Hi" in await self.read(session)
            assert (session.provider, session.model) == ("gateway", "google/gemini-3-flash-preview")
            assert not session.used_fallback

        assert upstream.hosts() == [GATEWAY_HOST]
        assert upstream.payloads()[0]["max_tokens"] == 2500
        assert components.breaker.status().success_count == 1

    async def test_rate_limit_falls_back(self, components, upstream):
        upstream.stream(GATEWAY_HOST, status=429)
        upstream.stream(OPENAI_HOST, ["Hello"])

        async with components.fallback.open_stream(choice(), MESSAGES, 2500) as session:
            assert session.provider == "openai"
            assert session.model == "gpt-4o-mini"
            assert session.used_fallback
            assert [a.outcome for a in session.attempts] == ["failed", "ok"]
            assert session.attempts[0].status == 429

        assert upstream.hosts() == [GATEWAY_HOST, OPENAI_HOST]
        assert upstream.payloads()[1]["model"] == "gpt-4o-mini"
        status = components.breaker.status()
        assert (status.error_count, status.success_count) == (1, 1)

    async def test_missing_credential_skipped(self, components, upstream):
        upstream.stream(GATEWAY_HOST, ["Evidence says..."])

        async with components.fallback.open_stream(
            choice("perplexity", "sonar-deep-research"), MESSAGES, 2500,
        ) as session:
            assert session.provider == "gateway"
            assert session.attempts[0].outcome == "skipped"

        assert PERPLEXITY_HOST not in upstream.hosts()
        assert components.breaker.status().error_count == 0

    async def test_non_retryable_advances_when_streaming(self, components, upstream):
        upstream.stream(GATEWAY_HOST, status=400)
        upstream.stream(OPENAI_HOST, ["ok"])

        async with components.fallback.open_stream(choice(), MESSAGES, 2500) as session:
            assert session.provider == "openai"

    async def test_stop_policy(self, components, upstream):
        from coachstream.core.errors import ProviderChainExhausted
        from coachstream.routing.executor import FallbackPolicy

        upstream.stream(GATEWAY_HOST, status=400)
        upstream.stream(OPENAI_HOST, ["ok"])

        with pytest.raises(ProviderChainExhausted) as exc:
            async with components.fallback.open_stream(
                choice(), MESSAGES, 2500, policy=FallbackPolicy.STOP_ON_NON_RETRYABLE,
            ):
                pass

        assert upstream.hosts() == [GATEWAY_HOST]
        assert [a.status for a in exc.value.attempts] == [400]

    async def test_exhausted(self, components, upstream):
        from coachstream.core.errors import ProviderChainExhausted

        upstream.stream(GATEWAY_HOST, status=503)
        upstream.stream(OPENAI_HOST, status=500)

        with pytest.raises(ProviderChainExhausted) as exc:
            async with components.fallback.open_stream(choice(), MESSAGES, 2500):
                pass

        assert exc.value.message == "All AI providers failed"
        assert [a.provider for a in exc.value.attempts] == ["gateway", "openai"]
        assert components.breaker.status().error_count == 2

    async def test_complete_stops_on_bad_request(self, components, upstream):
        from coachstream.core.errors import ProviderChainExhausted

        upstream.complete(GATEWAY_HOST, status=400)

        with pytest.raises(ProviderChainExhausted):
            await components.fallback.complete(choice(), MESSAGES)
        assert upstream.hosts() == [GATEWAY_HOST]

    async def test_complete_returns_content(self, components, upstream):
        upstream.complete(GATEWAY_HOST, content="Sleep in a dark room.")
        assert await components.fallback.complete(choice(), MESSAGES) == "Sleep in a dark room."
