"""Tests for extraction response parsing and candidate validation."""
import pytest


class TestParseCandidateList:
    """Tests for the array -> wrapper key -> first array -> empty cascade."""

    def test_bare_array(self):
        from coachstream.memory.parser import parse_candidate_list

        assert parse_candidate_list('[{"category": "sleep"}]') == [{"category": "sleep"}]

    def test_known_wrapper_key(self):
        from coachstream.memory.parser import parse_candidate_list

        raw = '{"meta": [1], "insights": [{"category": "goals"}]}'
        assert parse_candidate_list(raw) == [{"category": "goals"}]

    def test_first_array_valued_field(self):
        from coachstream.memory.parser import parse_candidate_list

        raw = '{"count": 1, "extracted": [{"category": "body"}]}'
        assert parse_candidate_list(raw) == [{"category": "body"}]

    def test_code_fence(self):
        from coachstream.memory.parser import parse_candidate_list

        raw = 'Here you go:\n```json\n[{"category": "stress"}]\n```'
        assert parse_candidate_list(raw) == [{"category": "stress"}]

    def test_prose_around_array(self):
        from coachstream.memory.parser import parse_candidate_list

        raw = 'I found these: [{"category": "habits"}] hope that helps'
        assert parse_candidate_list(raw) == [{"category": "habits"}]

    @pytest.mark.parametrize("raw", ["", "   ", "no json here", '{"ok": true}', "42", "[broken"])
    def test_unusable_responses_give_empty_list(self, raw):
        from coachstream.memory.parser import parse_candidate_list

        assert parse_candidate_list(raw) == []


class TestValidateCandidate:
    """Tests for per-record validation."""

    def test_valid_record(self):
        from coachstream.memory.extractor import validate_candidate

        candidate = validate_candidate({
            "category": "Nutrition",
            "insight": "Drinks 4 cups of coffee daily",
            "raw_quote": "like 4 coffees a day",
            "confidence": 0.85,
            "importance": "HIGH",
        }, min_length=10)

        assert candidate.category == "nutrition"
        assert candidate.text == "Drinks 4 cups of coffee daily"
        assert candidate.confidence == 0.85
        assert candidate.importance == "high"
        assert candidate.raw_quote == "like 4 coffees a day"

    def test_unknown_category_rejected(self):
        from coachstream.memory.extractor import validate_candidate

        assert validate_candidate({"category": "hobbies", "insight": "Plays chess on weekends"}, 10) is None

    def test_short_text_rejected(self):
        from coachstream.memory.extractor import validate_candidate

        assert validate_candidate({"category": "sleep", "insight": "Tired"}, 10) is None

    def test_confidence_clamped_and_importance_defaulted(self):
        from coachstream.memory.extractor import validate_candidate

        candidate = validate_candidate(
            {"category": "sleep", "text": "Sleeps about six hours", "confidence": 3, "importance": "urgent"}, 10
        )
        assert candidate.confidence == 1.0
        assert candidate.importance == "medium"

    def test_non_numeric_confidence_defaults(self):
        from coachstream.memory.extractor import validate_candidate

        candidate = validate_candidate(
            {"category": "sleep", "insight": "Sleeps about six hours", "confidence": "very"}, 10
        )
        assert candidate.confidence == 0.8

    def test_non_dict_rejected(self):
        from coachstream.memory.extractor import validate_candidate

        assert validate_candidate("sleep", 10) is None

    def test_updates_names_superseded_fact(self):
        from coachstream.memory.extractor import validate_candidate

        candidate = validate_candidate(
            {"category": "body", "insight": "Weighs 85 kg", "updates": " Weighs 80 kg "}, 10
        )
        assert candidate.supersedes == "Weighs 80 kg"

    def test_blank_updates_ignored(self):
        from coachstream.memory.extractor import validate_candidate

        candidate = validate_candidate({"category": "body", "insight": "Weighs 85 kg", "updates": "  "}, 10)
        assert candidate.supersedes is None


class TestInsightCandidate:
    """Tests for candidate invariants."""

    def test_rejects_unknown_category(self):
        from coachstream.memory.models import InsightCandidate

        with pytest.raises(ValueError):
            InsightCandidate(category="hobbies", text="Plays chess")

    def test_clamps_negative_confidence(self):
        from coachstream.memory.models import InsightCandidate

        assert InsightCandidate(category="sleep", text="Sleeps late", confidence=-0.5).confidence == 0.0
