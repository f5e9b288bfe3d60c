"""
Tests for the LLM analyst: JSON extraction, schema validation and the
five-call analysis sequence.
"""
import json
from unittest.mock import AsyncMock, MagicMock

import ollama
import pytest

from contentscout.discovery.llm_analyst import LLMAnalyst, extract_json
from contentscout.discovery.models import ConceptDraft, GapAnalysis, PatternAnalysis
from contentscout.errors import ExternalCallError, ParseError


def _reply(content):
    response = MagicMock()
    response.message.content = content if isinstance(content, str) else json.dumps(content)
    return response


PATTERNS = {
    "title_patterns": ["Numbers in titles"],
    "description_patterns": ["Timestamps"],
    "keyword_clusters": [{"name": "gear", "keywords": ["grinder", "machine"]}],
    "common_elements": ["Face in thumbnail"],
}
GAPS = {
    "scores": {"title_score": 80, "description_score": 60, "tags_score": 40},
    "gaps": [{"area": "tags", "issue": "Too few tags", "recommendation": "Add 10 more"}],
    "strengths": ["Clear title"],
}
TITLES = {"variants": [
    {"title": "7 Espresso Mistakes", "rationale": "Number hook"},
    {"title": "Espresso in 5 Minutes", "rationale": "Speed"},
]}
DESCRIPTION = {"optimized_description": "Better description", "key_changes": ["Hook first"]}
TAGS = {"suggested_tags": ["espresso", "barista"], "rationale": "High volume"}


def _analyst(*replies):
    client = MagicMock()
    client.chat = AsyncMock(side_effect=[_reply(r) for r in replies])
    return LLMAnalyst(model="qwen2.5:7b", client=client), client


def _concept():
    return ConceptDraft(title="My espresso video", description="Tips", tags=["coffee"])


class TestExtractJson:
    def test_plain(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_code_fence(self):
        assert extract_json('```json\n{"a": 1}\n```') == {"a": 1}
        assert extract_json('```\n[1, 2]\n```') == [1, 2]

    def test_embedded_in_chatter(self):
        assert extract_json('Sure! Here you go: {"a": {"b": 2}} Hope it helps') == {"a": {"b": 2}}

    def test_no_json(self):
        with pytest.raises(ParseError):
            extract_json("I cannot help with that")
        with pytest.raises(ParseError):
            extract_json("")

    def test_broken_json(self):
        with pytest.raises(ParseError):
            extract_json("result: {not: valid}")


class TestAsk:
    @pytest.mark.asyncio
    async def test_sends_schema_as_format(self, make_candidate):
        analyst, client = _analyst(PATTERNS)
        result = await analyst.extract_patterns([make_candidate("v1")])

        assert isinstance(result, PatternAnalysis)
        assert result.keyword_clusters[0].keywords == ["grinder", "machine"]
        kwargs = client.chat.call_args.kwargs
        assert kwargs["model"] == "qwen2.5:7b"
        assert kwargs["format"] == PatternAnalysis.model_json_schema()
        assert kwargs["messages"][0]["role"] == "system"

    @pytest.mark.asyncio
    async def test_validation_failure_is_parse_error(self):
        analyst, _ = _analyst({"scores": {"title_score": "high"}})
        with pytest.raises(ParseError):
            await analyst.analyze_gaps(PatternAnalysis(), _concept())

    @pytest.mark.asyncio
    async def test_response_error_is_external_call_error(self, make_candidate):
        client = MagicMock()
        client.chat = AsyncMock(side_effect=ollama.ResponseError("overloaded", 503))
        analyst = LLMAnalyst(client=client)
        with pytest.raises(ExternalCallError) as exc:
            await analyst.extract_patterns([make_candidate("v1")])
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_gap_scores_clamped(self):
        gaps = {"scores": {"title_score": 140, "description_score": -5, "tags_score": 50}}
        analyst, _ = _analyst(gaps)
        result = await analyst.analyze_gaps(PatternAnalysis(), _concept())
        assert isinstance(result, GapAnalysis)
        assert result.scores.title_score == 100
        assert result.scores.description_score == 0

    @pytest.mark.asyncio
    async def test_pattern_prompt_limited_to_ten_videos(self, make_candidate):
        analyst, client = _analyst(PATTERNS)
        await analyst.extract_patterns([make_candidate(f"v{i:02d}") for i in range(15)])
        prompt = client.chat.call_args.kwargs["messages"][1]["content"]
        assert "Video v09" in prompt
        assert "Video v10" not in prompt


class TestRunAnalysis:
    @pytest.mark.asyncio
    async def test_full_sequence(self, make_candidate):
        analyst, client = _analyst(PATTERNS, GAPS, TITLES, DESCRIPTION, TAGS)
        top = [make_candidate("v1", tags=["espresso"]), make_candidate("v2")]

        result = await analyst.run_analysis(_concept(), top, topic="espresso")

        assert client.chat.await_count == 5
        assert result.top_video_ids == ["v1", "v2"]
        assert result.pattern_summary["title_patterns"] == ["Numbers in titles"]
        assert result.gap_scores == {"title": 80, "description": 60, "tags": 40}
        assert result.validation_score == pytest.approx(60.0)
        assert result.gaps == ["tags: Too few tags"]
        assert result.title_variants == ["7 Espresso Mistakes", "Espresso in 5 Minutes"]
        assert result.optimized_description == "Better description"
        assert result.suggested_tags == ["espresso", "barista"]

        insights = result.extended_insights
        assert insights["strengths"] == ["Clear title"]
        assert insights["gap_recommendations"] == ["Add 10 more"]
        assert insights["title_rationales"]["7 Espresso Mistakes"] == "Number hook"
        assert insights["description_key_changes"] == ["Hook first"]
        assert insights["tag_rationale"] == "High volume"
        assert insights["keyword_clusters"][0]["name"] == "gear"

    @pytest.mark.asyncio
    async def test_unparseable_reply_degrades_one_entry(self, make_candidate):
        analyst, _ = _analyst(PATTERNS, GAPS, "no json here", DESCRIPTION, TAGS)
        result = await analyst.run_analysis(_concept(), [make_candidate("v1")])
        assert result.title_variants == []
        assert result.optimized_description == "Better description"
        assert result.suggested_tags == ["espresso", "barista"]
        assert result.validation_score == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_missing_gap_analysis_scores_zero(self, make_candidate):
        analyst, _ = _analyst(PATTERNS, "```json\n{broken\n```", TITLES, DESCRIPTION, TAGS)
        result = await analyst.run_analysis(_concept(), [make_candidate("v1")])
        assert result.gap_scores == {}
        assert result.gaps == []
        assert result.validation_score == 0.0
        assert result.extended_insights["strengths"] == []

    @pytest.mark.asyncio
    async def test_external_error_propagates(self, make_candidate):
        client = MagicMock()
        client.chat = AsyncMock(side_effect=[
            _reply(PATTERNS), ollama.ResponseError("boom", 500),
        ])
        analyst = LLMAnalyst(client=client)
        with pytest.raises(ExternalCallError):
            await analyst.run_analysis(_concept(), [make_candidate("v1")])
