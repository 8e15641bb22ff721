"""Integration tests for the turn relay over scripted providers."""
import json

import pytest

from conftest import GATEWAY_HOST, OPENAI_HOST, sse_body

SLEEP_QUESTION = "Any tips for better sleep tonight?"


def turn(text=SLEEP_QUESTION, **kwargs):
    from coachstream.streaming.relay import TurnRequest
    from coachstream.streaming.traces import new_trace_id

    kwargs.setdefault("trace_id", new_trace_id())
    return TurnRequest(user_id="user-1", coach_id="ares", text=text, **kwargs)


async def run_turn(relay, request):
    return [event async for event in relay.run(request)]


def content_of(events):
    return "".join(e["delta"] for e in events if e["type"] == "content")


@pytest.mark.integration
@pytest.mark.asyncio
class TestTurnRelay:
    """Full turns through context, prompt, routing and streaming."""

    async def test_sleep_question_streams_from_fast_model(self, components, upstream, seed_persona):
        seed_persona("ares-classic", coach_id="ares", directness=9)
        upstream.stream(GATEWAY_HOST, ["Keep your room ", "cool and dark."])
        request = turn()

        events = await run_turn(components.relay, request)

        types = [e["type"] for e in events]
        assert types[0] == "thinking" and events[0]["done"] is False
        assert {"type": "thinking", "step": "persona", "message": "Persona loaded", "done": True} in events
        ready = events[types.index("context_ready")]
        assert ready == {"type": "context_ready", "loadedModules": ["persona"], "traceId": request.trace_id}
        assert events[types.index("context_ready") - 1]["message"] == "Composing answer..."
        assert types[-1] == "done"
        assert events[-1]["traceId"] == request.trace_id
        assert events[-1]["metrics"]["totalTokens"] == 2
        assert content_of(events) == "Keep your room cool and dark."

        trace = components.traces.get(request.trace_id)
        assert trace.status == "completed"
        assert (trace.provider, trace.model) == ("gateway", "google/gemini-3-flash-preview")
        assert trace.loaded_modules == ["persona"]
        assert trace.routing["taskType"] == "chat"
        assert trace.routing["maxTokens"] == 2500
        assert trace.routing["semantic"]["requiredDetailLevel"] == "moderate"
        assert trace.output_snapshot == "Keep your room cool and dark."
        assert trace.first_token_ms is not None

        payload = upstream.payloads()[0]
        system_prompt = payload["messages"][0]["content"]
        assert payload["stream"] is True
        assert payload["max_tokens"] == 2500
        assert payload["messages"][1] == {"role": "user", "content": SLEEP_QUESTION}
        assert "## YOUR PERSONALITY TODAY: Ares" in system_prompt
        assert "Be very direct. Plain talk without sugarcoating." in system_prompt
        assert system_prompt.rstrip().endswith(
            "Answer in about 150-200 words. Explain the key points, use a short list only when it helps."
        )

    async def test_long_reply_snapshot_capped_but_streamed_whole(self, components, upstream):
        chunks = [f"{i:04d}" + "z" * 996 for i in range(12)]
        upstream.stream(GATEWAY_HOST, chunks)
        request = turn()

        events = await run_turn(components.relay, request)

        assert content_of(events) == "".join(chunks)
        assert events[-1]["metrics"]["totalTokens"] == 12

        trace = components.traces.get(request.trace_id)
        assert trace.status == "completed"
        assert trace.output_snapshot == "".join(chunks)[:10000]
        assert len(trace.output_snapshot) == 10000

        history = components.conversations.recent("user-1", "ares")
        assert history[-1]["content"] == "".join(chunks)

    async def test_rate_limited_gateway_falls_back_to_openai(self, components, upstream):
        upstream.stream(GATEWAY_HOST, status=429)
        upstream.stream(OPENAI_HOST, ["Try magnesium."])
        request = turn()

        events = await run_turn(components.relay, request)

        assert content_of(events) == "Try magnesium."
        assert events[-1]["type"] == "done"
        trace = components.traces.get(request.trace_id)
        assert trace.status == "completed"
        assert trace.routing["used"] == {"provider": "openai", "model": "gpt-4o-mini"}
        assert [a["outcome"] for a in trace.routing["attempts"]] == ["failed", "ok"]
        assert upstream.hosts()[:2] == [GATEWAY_HOST, OPENAI_HOST]

    async def test_no_persona_uses_neutral_prompt(self, components, upstream):
        upstream.stream(GATEWAY_HOST, ["Sure."])
        request = turn()

        events = await run_turn(components.relay, request)

        ready = next(e for e in events if e["type"] == "context_ready")
        assert ready["loadedModules"] == []
        assert "YOUR PERSONALITY TODAY" not in upstream.payloads()[0]["messages"][0]["content"]

    async def test_long_message_skips_analysis(self, components, upstream):
        upstream.stream(GATEWAY_HOST, ["Noted."])
        text = "Yesterday I slept badly again, woke up twice and felt groggy all morning " * 3

        events = await run_turn(components.relay, turn(text=text.strip()))

        assert not [e for e in events if e.get("step") == "analyze"]
        assert events[-1]["type"] == "done"

    async def test_short_confirmation_uses_flash(self, components, upstream):
        upstream.stream(GATEWAY_HOST, ["Good."])
        request = turn(text="ok")

        events = await run_turn(components.relay, request)

        assert {"type": "thinking", "step": "analyze", "message": "Intent: confirmation", "done": True} in events
        trace = components.traces.get(request.trace_id)
        assert trace.model == "google/gemini-2.5-flash"
        assert trace.routing["maxTokens"] == 2500
        assert "ULTRA SHORT" in upstream.payloads()[0]["messages"][0]["content"]

    async def test_chunked_upstream(self, components, upstream):
        raw = sse_body(["Grüße ", "💪"])
        cut = raw.index("💪".encode("utf-8")) + 1
        upstream.stream(GATEWAY_HOST, chunks=[raw[:cut], raw[cut:]])

        events = await run_turn(components.relay, turn())
        assert content_of(events) == "Grüße 💪"

    async def test_all_providers_fail(self, components, upstream):
        upstream.stream(GATEWAY_HOST, status=503)
        upstream.stream(OPENAI_HOST, status=500)
        request = turn()

        events = await run_turn(components.relay, request)

        assert events[-1] == {"type": "error", "error": "All AI providers failed", "traceId": request.trace_id}
        assert not [e for e in events if e["type"] == "content"]
        trace = components.traces.get(request.trace_id)
        assert trace.status == "failed"
        assert trace.error.startswith("provider_chain_exhausted")
        assert components.conversations.recent("user-1", "ares") == []

    async def test_unexpected_error_is_hidden(self, components, upstream, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("template exploded")

        monkeypatch.setattr(components.relay, "build_prompt", broken)
        request = turn()

        events = await run_turn(components.relay, request)

        assert events[-1] == {"type": "error", "error": "Internal error", "traceId": request.trace_id}
        trace = components.traces.get(request.trace_id)
        assert trace.status == "failed"
        assert trace.error == "template exploded"
        assert upstream.requests == []

    async def test_client_disconnect_fails_trace(self, components, upstream):
        upstream.stream(GATEWAY_HOST, ["one ", "two ", "three"])
        request = turn()

        stream = components.relay.run(request)
        async for event in stream:
            if event["type"] == "content":
                break
        await stream.aclose()

        trace = components.traces.get(request.trace_id)
        assert trace.status == "failed"
        assert trace.error == "client_disconnected"
        assert components.conversations.recent("user-1", "ares") == []

    async def test_completed_turn_is_remembered(self, components, upstream):
        upstream.stream(GATEWAY_HOST, ["Cut coffee after noon."])
        upstream.complete(GATEWAY_HOST, content=json.dumps([
            {"category": "nutrition", "insight": "Drinks 4 cups of coffee daily", "importance": "medium"},
        ]))
        text = "I drink 4 coffees a day, could that hurt my sleep?"

        await run_turn(components.relay, turn(text=text))

        history = components.conversations.recent("user-1", "ares")
        assert [m["content"] for m in history] == [text, "Cut coffee after noon."]
        assert [i.text for i in components.insights.all_active("user-1")] == ["Drinks 4 cups of coffee daily"]

    async def test_next_turn_sees_memory_and_history(self, components, upstream, seed_persona):
        from coachstream.memory.models import InsightCandidate

        seed_persona("ares-classic", coach_id="ares")
        components.insights.insert("user-1", InsightCandidate(category="sleep", text="Wakes up at 3 am most nights", importance="high"))
        components.conversations.add_turn("user-1", "ares", "hi", "Hey, ready to work?")
        upstream.stream(GATEWAY_HOST, ["Noted."])

        events = await run_turn(components.relay, turn())

        ready = next(e for e in events if e["type"] == "context_ready")
        assert sorted(ready["loadedModules"]) == ["memory", "persona"]
        assert {"type": "thinking", "step": "memory", "message": "1 memory loaded", "done": True} in events
        system_prompt = upstream.payloads()[0]["messages"][0]["content"]
        assert "- ❗ Wakes up at 3 am most nights (just now)" in system_prompt
        assert "YOU: Hey, ready to work?" in system_prompt


@pytest.mark.integration
class TestRedirect:
    """Turns that belong on the tool-executing endpoint."""

    def test_tool_request(self, components):
        relay = components.relay
        request = turn(text="Make me a training plan for next week")

        reason = relay.redirect_reason(request)
        relay.redirect(request, reason)

        assert reason == "create_workout_plan"
        trace = components.traces.get(request.trace_id)
        assert trace.status == "failed"
        assert trace.error == "redirected:create_workout_plan"

    def test_research_plus(self, components):
        assert components.relay.redirect_reason(turn(research_plus=True)) == "research_scientific_evidence"

    def test_plain_question_streams(self, components):
        assert components.relay.redirect_reason(turn()) is None
