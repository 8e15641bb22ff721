"""Tests for the message signal detectors."""
from datetime import datetime

import pytest


class TestMoodAndTopic:
    """Tests for detect_mood, detect_topic and time_of_day."""

    @pytest.mark.parametrize("text,mood", [
        ("This plateau is so annoying", "frustrated"),
        ("Work is too much right now", "overwhelmed"),
        ("I nailed it today!", "positive"),
        ("Any tips for better sleep tonight?", "neutral"),
    ])
    def test_mood(self, text, mood):
        from coachstream.context.signals import detect_mood
        assert detect_mood(text) == mood

    def test_first_mood_wins(self):
        from coachstream.context.signals import detect_mood
        assert detect_mood("Great, I'm frustrated again") == "frustrated"

    @pytest.mark.parametrize("text,topic", [
        ("Any tips for better sleep tonight?", "recovery"),
        ("How many reps should I do?", "training"),
        ("What should I eat after the gym?", "training"),
        ("Is creatine safe?", "supplements"),
        ("What about semaglutide?", "peptides"),
        ("Hello there", None),
    ])
    def test_topic(self, text, topic):
        from coachstream.context.signals import detect_topic
        assert detect_topic(text) == topic

    def test_keyword_matches_word_start_only(self):
        from coachstream.context.signals import detect_topic

        assert detect_topic("I keep eating late") == "nutrition"
        assert detect_topic("That sounds great") is None

    @pytest.mark.parametrize("hour,expected", [
        (5, "morning"), (11, "morning"), (12, "afternoon"),
        (17, "evening"), (21, "night"), (2, "night"),
    ])
    def test_time_of_day(self, hour, expected):
        from coachstream.context.signals import time_of_day
        assert time_of_day(datetime(2024, 6, 1, hour, 0)) == expected


class TestAnalyzeMessage:
    """Tests for the fast path and heuristic analysis."""

    @pytest.mark.parametrize("text", ["ok", "Thanks!", "sounds good.", "ok let's do it"])
    def test_confirmations(self, text):
        from coachstream.context.signals import analyze_message

        analysis = analyze_message(text)
        assert analysis.intent == "confirmation"
        assert analysis.required_detail_level == "ultra_short"
        assert analysis.references_previous

    def test_rejection(self):
        from coachstream.context.signals import analyze_message

        analysis = analyze_message("nope")
        assert analysis.intent == "rejection"
        assert analysis.required_detail_level == "concise"

    def test_greeting(self):
        from coachstream.context.signals import analyze_message

        analysis = analyze_message("Good morning!")
        assert analysis.intent == "chit_chat"
        assert analysis.required_detail_level == "concise"

    def test_scenario_question_is_moderate(self):
        from coachstream.context.signals import analyze_message

        analysis = analyze_message("Any tips for better sleep tonight?")
        assert analysis.intent == "question"
        assert analysis.required_detail_level == "moderate"

    def test_short_statement(self):
        from coachstream.context.signals import heuristic_analysis

        analysis = heuristic_analysis("did legs today")
        assert analysis.intent == "confirmation"
        assert analysis.required_detail_level == "concise"

    def test_invalid_values_fall_back(self):
        from coachstream.context.signals import ConversationAnalysis

        analysis = ConversationAnalysis(intent="shouting", sentiment="meh", required_detail_level="huge")
        assert (analysis.intent, analysis.sentiment, analysis.required_detail_level) == ("question", "neutral", "moderate")

    def test_to_dict(self):
        from coachstream.context.signals import ConversationAnalysis

        assert ConversationAnalysis().to_dict()["requiredDetailLevel"] == "moderate"


class TestDetailInstruction:
    """Tests for detail_level_instruction."""

    def test_level_and_intent_hint(self):
        from coachstream.context.signals import detail_level_instruction

        text = detail_level_instruction("ultra_short", "confirmation")
        assert text.startswith("== RESPONSE LENGTH: ULTRA SHORT ==")
        assert "The user is confirming." in text

    def test_unknown_level_is_moderate(self):
        from coachstream.context.signals import detail_level_instruction

        assert detail_level_instruction("novel", None).startswith("== RESPONSE LENGTH: MODERATE ==")


class TestOptimalModel:
    """Tests for optimal_model_for_analysis."""

    @pytest.mark.parametrize("intent,level,model,tokens", [
        ("confirmation", "ultra_short", "google/gemini-2.5-flash", 300),
        ("question", "concise", "google/gemini-2.5-flash", 600),
        ("deep_dive", "concise", "google/gemini-3-pro-preview", 4000),
        ("question", "extensive", "google/gemini-3-pro-preview", 4000),
        ("question", "moderate", "google/gemini-3-pro-preview", 2500),
    ])
    def test_table(self, intent, level, model, tokens):
        from coachstream.context.signals import ConversationAnalysis, optimal_model_for_analysis

        rec = optimal_model_for_analysis(ConversationAnalysis(intent=intent, required_detail_level=level))
        assert (rec.model, rec.max_tokens) == (model, tokens)


class TestQuestionComplexity:
    """Tests for detect_question_complexity."""

    def test_simple(self):
        from coachstream.context.signals import MIN_MAX_TOKENS, detect_question_complexity
        assert detect_question_complexity("Any tips for better sleep tonight?") == ("simple", MIN_MAX_TOKENS)

    def test_moderate(self):
        from coachstream.context.signals import detect_question_complexity
        assert detect_question_complexity("Can you explain deloads?") == ("moderate", 4000)

    def test_complex(self):
        from coachstream.context.signals import detect_question_complexity
        assert detect_question_complexity("Explain the mechanism behind muscle soreness") == ("complex", 5000)

    def test_long_with_keyword_is_complex(self):
        from coachstream.context.signals import detect_question_complexity
        text = "Could you explain " + "this " * 40
        assert detect_question_complexity(text)[0] == "complex"


class TestToolRedirect:
    """Tests for requires_tool_execution and tool_execution_reason."""

    @pytest.mark.parametrize("text,reason", [
        ("Make me a training plan for 4 days", "create_workout_plan"),
        ("I need a meal plan for cutting", "create_nutrition_plan"),
        ("What does the evidence say on creatine?", "research_scientific_evidence"),
        ("Please analyze my last month", "meta_analysis"),
        ("Set up a titration schedule", "create_peptide_protocol"),
    ])
    def test_reasons(self, text, reason):
        from coachstream.context.signals import requires_tool_execution, tool_execution_reason

        assert requires_tool_execution(text)
        assert tool_execution_reason(text) == reason

    def test_plain_question_stays(self):
        from coachstream.context.signals import requires_tool_execution
        assert not requires_tool_execution("Any tips for better sleep tonight?")

    def test_protocol_question_answered_from_context(self):
        from coachstream.context.signals import requires_tool_execution
        assert not requires_tool_execution("Give me a summary of what am i missing in the next phase")
