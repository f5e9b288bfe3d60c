"""
Data models for the research pipeline.

Dataclasses carry pipeline state between stages; pydantic models describe
the JSON the AI oracle is asked to return.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


@dataclass
class SearchHit:
    """A lightweight search result; statistics are resolved later."""
    video_id: str
    title: str
    channel_id: str
    channel_title: str
    description: str
    published_at: str
    thumbnail_url: str


@dataclass
class Candidate:
    """A competitor video with full statistics and derived metrics."""
    video_id: str
    title: str
    description: str
    tags: list[str]
    category_id: str
    channel_id: str
    channel_title: str
    thumbnail_url: str
    views: int
    likes: int
    comments: int
    duration_seconds: int
    published_at: str
    # list/ndarray once parsed; may arrive as a JSON string from storage
    embedding: Optional[Any] = None
    engagement_rate: float = 0.0
    view_velocity: float = 0.0
    days_since_publish: int = 0
    tag_overlap_score: float = 50.0
    category_match: bool = True
    combined_score: float = 0.0

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None and len(self.embedding) > 0


@dataclass
class ResearchProject:
    """A research project and its workflow status."""
    project_id: Optional[int]
    name: str
    niche_query: str
    country_code: str = "US"
    candidate_limit: int = 50
    time_window: str = "30d"
    status: str = "draft"
    source_video_id: Optional[str] = None
    remove_outliers: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ConceptDraft:
    """The user's own content idea."""
    title: str
    description: str
    tags: list[str] = field(default_factory=list)
    embedding: Optional[list[float]] = None


@dataclass
class SimilarityMatch:
    """A candidate ranked by similarity to the concept."""
    video_id: str
    similarity: float


@dataclass
class AnalysisResult:
    """Outcome of the AI analysis stage."""
    top_video_ids: list[str]
    pattern_summary: dict
    gaps: list[str]
    gap_scores: dict
    title_variants: list[str]
    optimized_description: str
    suggested_tags: list[str]
    validation_score: float
    extended_insights: Optional[dict] = None
    analysis_id: Optional[int] = None
    created_at: Optional[datetime] = None


# ── AI oracle reply schemas ──────────────────────────────────────────


class KeywordCluster(BaseModel):
    name: str
    keywords: list[str] = Field(default_factory=list)


class PatternAnalysis(BaseModel):
    """Patterns shared by the top competitor videos."""
    title_patterns: list[str] = Field(default_factory=list)
    description_patterns: list[str] = Field(default_factory=list)
    keyword_clusters: list[KeywordCluster] = Field(default_factory=list)
    common_elements: list[str] = Field(default_factory=list)


class GapScores(BaseModel):
    title_score: float  # 0-100
    description_score: float  # 0-100
    tags_score: float  # 0-100


class GapItem(BaseModel):
    area: str
    issue: str
    recommendation: str = ""


class GapAnalysis(BaseModel):
    """How the concept compares against the competitor patterns."""
    scores: GapScores
    gaps: list[GapItem] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)


class TitleVariant(BaseModel):
    title: str
    rationale: str = ""


class TitleOptimization(BaseModel):
    variants: list[TitleVariant] = Field(default_factory=list)


class DescriptionOptimization(BaseModel):
    optimized_description: str
    key_changes: list[str] = Field(default_factory=list)


class TagSuggestions(BaseModel):
    suggested_tags: list[str] = Field(default_factory=list)
    rationale: str = ""
