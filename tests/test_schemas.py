"""
Tests for AI payload schemas and token estimates.
"""
import pytest

from launch_pilot.core.schemas import (
    DeepAnalysis,
    IdeaResult,
    ProjectAnalysis,
    SchemaMismatch,
    validate_many,
    validate_payload,
)
from launch_pilot.core.token_counter import TokenUsage, count_messages_tokens, count_tokens


IDEA = {"title": "X", "description": "d", "investment": "$1", "timeframe": "1 week", "rating": 8}


class TestIdeaSchema:
    """Test idea validation."""

    def test_valid_idea(self):
        idea = validate_payload(IDEA, IdeaResult)

        assert idea.title == "X"
        assert idea.risks == []

    def test_numeric_investment_stringified(self):
        idea = validate_payload(dict(IDEA, investment=900), IdeaResult)

        assert idea.investment == "900"

    def test_extra_fields_kept(self):
        idea = validate_payload(dict(IDEA, marketSize="Large"), IdeaResult)

        assert idea.model_dump()["marketSize"] == "Large"

    @pytest.mark.parametrize("payload", [
        {"title": "X"},
        dict(IDEA, rating=11),
        dict(IDEA, title=""),
        ["not", "an", "object"],
    ])
    def test_mismatch_rejected(self, payload):
        with pytest.raises(SchemaMismatch) as excinfo:
            validate_payload(payload, IdeaResult)

        assert excinfo.value.payload == payload

    def test_validate_many_rejects_whole_list(self):
        with pytest.raises(SchemaMismatch):
            validate_many([IDEA, {"title": "broken"}], IdeaResult)

    def test_validate_many_requires_list(self):
        with pytest.raises(SchemaMismatch, match="Expected a list"):
            validate_many(IDEA, IdeaResult)


class TestAnalysisSchemas:
    """Test analysis validation."""

    def test_project_analysis_sections(self):
        analysis = ProjectAnalysis.from_payload({"legality": {"summary": "OK"}})

        assert analysis.riskAssessment is None
        assert analysis.sections() == {"legality": {"summary": "OK"}}

    @pytest.mark.parametrize("payload", [{}, [], "text", None])
    def test_project_analysis_requires_object(self, payload):
        with pytest.raises(SchemaMismatch):
            ProjectAnalysis.from_payload(payload)

    def test_deep_analysis_budget_lines(self):
        analysis = validate_payload({
            "opportunity": "o",
            "pros": [],
            "cons": [],
            "recommendations": [],
            "budget": {"breakdown": [{"category": "Ads", "amount": 300}]},
        }, DeepAnalysis)

        lines = analysis.budget_lines()
        assert lines[0].category == "Ads"
        assert lines[0].amount == 300
        assert lines[0].type == ""

    def test_deep_analysis_without_budget(self):
        analysis = validate_payload(
            {"opportunity": "o", "pros": [], "cons": [], "recommendations": []}, DeepAnalysis
        )

        assert analysis.budget_lines() == []


class TestTokenCounter:
    """Test token estimates."""

    def test_count_tokens(self):
        assert count_tokens("") == 0
        assert count_tokens(None) == 0
        assert count_tokens("abcd") == 1
        assert count_tokens("abcde") == 2

    def test_count_messages_tokens(self):
        messages = [{"role": "system", "content": "a" * 8}, {"role": "user", "content": "b" * 3}]

        assert count_messages_tokens(messages) == 3
        assert count_messages_tokens([]) == 0

    def test_total_tokens(self):
        assert TokenUsage(prompt_tokens=100, completion_tokens=50).total_tokens == 150
