"""Tolerant parsing of model output."""
import json

import pytest

from core.exceptions import CompletionParseError
from services.llm_output import (
    coerce_evidence_items,
    coerce_kb_judgments,
    coerce_narrative,
    coerce_summary,
    extract_json_text,
    parse_json,
    parse_json_object,
)


class TestExtractJson:
    def test_strips_code_fences_and_prose(self):
        text = 'Here you go:\n```json\n{"evidence": []}\n```\nHope this helps.'
        assert extract_json_text(text) == '{"evidence": []}'

    def test_top_level_array_before_object(self):
        assert extract_json_text('[{"kb": "a"}]') == '[{"kb": "a"}]'

    def test_bracketed_prose_before_object(self):
        text = (
            "Based on the transcript [Case Study], here is the result:\n"
            + json.dumps({"evidence": [{"kb": "Defines the problem", "quote": "I mapped the causes"}]})
        )
        items = coerce_evidence_items(parse_json(text))
        assert [(i.kb, i.quote) for i in items] == [("Defines the problem", "I mapped the causes")]

    def test_bracketed_prose_after_object(self):
        text = '{"overview": "O"} [end of summary] and {note}'
        assert parse_json(text) == {"overview": "O"}

    def test_garbage_raises(self):
        with pytest.raises(CompletionParseError):
            parse_json("I could not find any evidence.")
        with pytest.raises(CompletionParseError):
            parse_json("")

    def test_parse_json_object_rejects_list(self):
        with pytest.raises(CompletionParseError):
            parse_json_object("[1, 2]")


class TestCoerceEvidence:
    def test_evidence_key_any_casing(self):
        items = coerce_evidence_items({"Evidence": [{"kb": "A", "quote": "q1"}]})
        assert [(i.kb, i.quote) for i in items] == [("A", "q1")]

    def test_bare_list_and_key_aliases(self):
        items = coerce_evidence_items([{"key_behavior": "A", "quote": "q1", "reasoning": "r"}])
        assert items[0].kb == "A"
        assert items[0].reasoning == "r"

    def test_single_object(self):
        items = coerce_evidence_items({"kb": "A", "quote": "q1"})
        assert len(items) == 1

    def test_malformed_items_are_dropped(self):
        items = coerce_evidence_items({"evidence": [{"kb": "A", "quote": "  "}, "junk", {"kb": "B", "quote": "q"}]})
        assert [i.kb for i in items] == ["B"]

    def test_no_list_is_parse_error(self):
        with pytest.raises(CompletionParseError):
            coerce_evidence_items({"result": "none"})


class TestCoerceJudgments:
    def test_status_enum_maps_to_fulfilled(self):
        judgments = coerce_kb_judgments({
            "keyBehaviors": [
                {"kb": "A", "status": "FULFILLED", "evidence_ids": "e1"},
                {"kb": "B", "status": "NOT_OBSERVED"},
            ]
        })
        assert [j.fulfilled for j in judgments] == [True, False]
        assert judgments[0].evidence_quote_ids == ["e1"]

    def test_missing_list_raises(self):
        with pytest.raises(CompletionParseError):
            coerce_kb_judgments({"verdict": "ok"})


class TestCoerceNarrative:
    def test_nested_recommendations(self):
        narrative = coerce_narrative({
            "explanation": "Solid analysis.",
            "recommendations": {"personal_development": "Read", "assignment": "Lead", "training": "Course"},
        })
        assert narrative.recommendations.training == "Course"

    def test_flattened_recommendations(self):
        narrative = coerce_narrative({"explanation": "Ok.", "individual": "Read", "Assignment": "Lead"})
        assert narrative.recommendations.personal_development == "Read"
        assert narrative.recommendations.assignment == "Lead"
        assert narrative.recommendations.training == ""

    def test_blank_explanation_is_parse_error(self):
        with pytest.raises(CompletionParseError):
            coerce_narrative({"explanation": " ", "recommendations": {}})


class TestCoerceSummary:
    def test_capitalized_keys_and_lists(self):
        summary = coerce_summary({
            "Overview": "Balanced profile.",
            "Strengths": ["Analytical", "Calm"],
            "Areas_for_improvement": "Delegation",
            "RECOMMENDATIONS": "Coach others",
        })
        assert summary.strengths == "- Analytical\n- Calm"
        assert summary.weaknesses == "Delegation"
        assert summary.recommendations == "Coach others"

    def test_wrapped_object(self):
        summary = coerce_summary({"summary": {"overview": "O", "strengths": "S", "weaknesses": "W", "recommendations": "R"}})
        assert summary.overview == "O"

    def test_missing_overview_raises(self):
        with pytest.raises(CompletionParseError):
            coerce_summary({"strengths": "S"})
