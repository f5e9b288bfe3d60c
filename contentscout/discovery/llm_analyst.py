"""
LLM-based competitor analysis using Ollama + Qwen.

Extracts metadata patterns from the closest competitor videos, scores a
concept against them and proposes an optimized title, description and tags.
"""
import json
import logging
import re
from typing import Any, Optional, Type, TypeVar

import httpx
import ollama
from pydantic import BaseModel, ValidationError

from ..errors import ExternalCallError, ParseError
from .models import (
    AnalysisResult,
    Candidate,
    ConceptDraft,
    DescriptionOptimization,
    GapAnalysis,
    PatternAnalysis,
    TagSuggestions,
    TitleOptimization,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MAX_PATTERN_VIDEOS = 10

SYSTEM_PROMPT = (
    "You are an expert YouTube SEO analyst. You study the metadata of "
    "top-performing videos in a niche and help a creator position a new video "
    "against them. Respond in the exact JSON format requested."
)

PATTERN_PROMPT_TEMPLATE = """\
Top-performing videos in this niche:

{videos}

Extract the patterns that make these videos successful: recurring title
structures, description conventions, clusters of related keywords and other
elements most of them share.

Respond with JSON:
{{
  "title_patterns": ["<pattern>"],
  "description_patterns": ["<pattern>"],
  "keyword_clusters": [{{"name": "<cluster>", "keywords": ["<keyword>"]}}],
  "common_elements": ["<element>"]
}}"""

GAP_PROMPT_TEMPLATE = """\
Successful patterns in this niche:
{patterns}

The creator's planned video:
- Title: {title}
- Description: {description}
- Tags: {tags}

Compare the planned video against the successful patterns and score its
title, description and tags from 0 to 100.

Respond with JSON:
{{
  "scores": {{"title_score": <0-100>, "description_score": <0-100>, "tags_score": <0-100>}},
  "gaps": [{{"area": "title|description|tags|keyword", "issue": "<issue>", "recommendation": "<fix>"}}],
  "strengths": ["<what already works>"]
}}"""

TITLE_PROMPT_TEMPLATE = """\
Successful patterns in this niche:
{patterns}

Current title: {title}
Topic: {topic}

Write 5 title variants that follow the successful patterns, keep the core
message and stay within 50-70 characters.

Respond with JSON:
{{
  "variants": [{{"title": "<title>", "rationale": "<why it works>"}}]
}}"""

DESCRIPTION_PROMPT_TEMPLATE = """\
Successful patterns in this niche:
{patterns}

Video title: {title}
Video tags: {tags}
Current description:
{description}

Rewrite the description with a compelling first line, relevant keywords,
a clear structure and a call to action (500-1000 characters).

Respond with JSON:
{{
  "optimized_description": "<description>",
  "key_changes": ["<what changed>"]
}}"""

TAGS_PROMPT_TEMPLATE = """\
Tags used by the top-performing videos:
{competitor_tags}

The creator's planned video:
- Title: {title}
- Description: {description}
- Current tags: {tags}

Suggest 15-30 tags mixing broad and specific terms, drawing on the
high-volume keywords of the successful videos.

Respond with JSON:
{{
  "suggested_tags": ["<tag>"],
  "rationale": "<short explanation>"
}}"""

_FENCE_START = re.compile(r"^\s*```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```\s*$")
_JSON_BLOCK = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")


def extract_json(text: str) -> Any:
    """Parse JSON from an LLM reply, tolerating code fences and chatter."""
    if not text or not text.strip():
        raise ParseError("Empty reply")
    cleaned = _FENCE_END.sub("", _FENCE_START.sub("", text))
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    match = _JSON_BLOCK.search(cleaned)
    if not match:
        raise ParseError("No JSON found in reply")
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ParseError(f"Extracted text was not valid JSON: {e}") from e


def _format_videos(candidates: list[Candidate]) -> str:
    rows = [
        {
            "title": c.title,
            "description": (c.description or "")[:500],
            "tags": list(c.tags),
            "views": c.views,
        }
        for c in candidates
    ]
    return json.dumps(rows, indent=2, ensure_ascii=False)


def _clamp_score(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


class LLMAnalyst:
    """Runs the competitor analysis prompts against a local LLM via Ollama."""

    def __init__(
        self,
        model: str = "qwen2.5:7b",
        host: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        self.model = model
        self._client = client or ollama.AsyncClient(host=host)

    async def _ask(self, prompt: str, schema: Type[T]) -> T:
        """Send one prompt and validate the reply against ``schema``."""
        try:
            response = await self._client.chat(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                format=schema.model_json_schema(),
            )
        except ollama.ResponseError as e:
            raise ExternalCallError(
                f"Ollama chat failed: {e.error}",
                service="ollama",
                status_code=e.status_code,
            ) from e
        except (httpx.HTTPError, ConnectionError) as e:
            raise ExternalCallError(f"Cannot reach Ollama: {e}", service="ollama") from e

        content = response.message.content or ""
        data = extract_json(content)
        try:
            return schema.model_validate(data)
        except ValidationError as e:
            raise ParseError(f"{schema.__name__} reply failed validation: {e}") from e

    async def extract_patterns(self, top_candidates: list[Candidate]) -> PatternAnalysis:
        prompt = PATTERN_PROMPT_TEMPLATE.format(
            videos=_format_videos(top_candidates[:MAX_PATTERN_VIDEOS])
        )
        return await self._ask(prompt, PatternAnalysis)

    async def analyze_gaps(
        self, patterns: PatternAnalysis, concept: ConceptDraft
    ) -> GapAnalysis:
        prompt = GAP_PROMPT_TEMPLATE.format(
            patterns=patterns.model_dump_json(indent=2),
            title=concept.title,
            description=concept.description,
            tags=", ".join(concept.tags),
        )
        result = await self._ask(prompt, GapAnalysis)
        scores = result.scores
        scores.title_score = _clamp_score(scores.title_score)
        scores.description_score = _clamp_score(scores.description_score)
        scores.tags_score = _clamp_score(scores.tags_score)
        return result

    async def optimize_title(
        self, patterns: PatternAnalysis, concept: ConceptDraft, topic: str = ""
    ) -> TitleOptimization:
        prompt = TITLE_PROMPT_TEMPLATE.format(
            patterns=patterns.model_dump_json(indent=2),
            title=concept.title,
            topic=topic or concept.title,
        )
        return await self._ask(prompt, TitleOptimization)

    async def optimize_description(
        self, patterns: PatternAnalysis, concept: ConceptDraft
    ) -> DescriptionOptimization:
        prompt = DESCRIPTION_PROMPT_TEMPLATE.format(
            patterns=patterns.model_dump_json(indent=2),
            title=concept.title,
            tags=", ".join(concept.tags),
            description=concept.description,
        )
        return await self._ask(prompt, DescriptionOptimization)

    async def suggest_tags(
        self, top_candidates: list[Candidate], concept: ConceptDraft
    ) -> TagSuggestions:
        competitor_tags = sorted({t for c in top_candidates for t in c.tags})
        prompt = TAGS_PROMPT_TEMPLATE.format(
            competitor_tags=", ".join(competitor_tags) or "(none)",
            title=concept.title,
            description=concept.description,
            tags=", ".join(concept.tags),
        )
        return await self._ask(prompt, TagSuggestions)

    async def run_analysis(
        self,
        concept: ConceptDraft,
        top_candidates: list[Candidate],
        topic: str = "",
    ) -> AnalysisResult:
        """Run the five analysis calls in order and assemble the result.

        A reply that cannot be parsed degrades only its own part of the
        result. Transport and provider errors propagate.
        """
        top_candidates = top_candidates[:MAX_PATTERN_VIDEOS]

        try:
            patterns = await self.extract_patterns(top_candidates)
        except ParseError as e:
            logger.warning("Pattern extraction reply unusable: %s", e)
            patterns = PatternAnalysis()

        gap_analysis: Optional[GapAnalysis]
        try:
            gap_analysis = await self.analyze_gaps(patterns, concept)
        except ParseError as e:
            logger.warning("Gap analysis reply unusable: %s", e)
            gap_analysis = None

        try:
            titles = await self.optimize_title(patterns, concept, topic)
        except ParseError as e:
            logger.warning("Title optimization reply unusable: %s", e)
            titles = TitleOptimization()

        try:
            description = await self.optimize_description(patterns, concept)
        except ParseError as e:
            logger.warning("Description optimization reply unusable: %s", e)
            description = None

        try:
            tags = await self.suggest_tags(top_candidates, concept)
        except ParseError as e:
            logger.warning("Tag suggestion reply unusable: %s", e)
            tags = TagSuggestions()

        gap_scores: dict[str, float] = {}
        gaps: list[str] = []
        if gap_analysis is not None:
            gap_scores = {
                "title": gap_analysis.scores.title_score,
                "description": gap_analysis.scores.description_score,
                "tags": gap_analysis.scores.tags_score,
            }
            gaps = [f"{g.area}: {g.issue}" for g in gap_analysis.gaps]
        validation_score = (
            sum(gap_scores.values()) / len(gap_scores) if gap_scores else 0.0
        )

        extended = {
            "keyword_clusters": [k.model_dump() for k in patterns.keyword_clusters],
            "strengths": gap_analysis.strengths if gap_analysis else [],
            "gap_recommendations": (
                [g.recommendation for g in gap_analysis.gaps if g.recommendation]
                if gap_analysis else []
            ),
            "title_rationales": {v.title: v.rationale for v in titles.variants},
            "description_key_changes": description.key_changes if description else [],
            "tag_rationale": tags.rationale,
        }

        logger.info(
            "Analysis complete: %d gaps, %d title variants, %d tags, score %.1f",
            len(gaps), len(titles.variants), len(tags.suggested_tags), validation_score,
        )
        return AnalysisResult(
            top_video_ids=[c.video_id for c in top_candidates],
            pattern_summary=patterns.model_dump(),
            gaps=gaps,
            gap_scores=gap_scores,
            title_variants=[v.title for v in titles.variants],
            optimized_description=description.optimized_description if description else "",
            suggested_tags=list(tags.suggested_tags),
            validation_score=validation_score,
            extended_insights=extended,
        )
