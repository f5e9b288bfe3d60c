"""
Composite scoring of competitor candidates.

Per-candidate metrics are computed first, view-count outliers are optionally
dropped, then engagement, velocity and tag overlap are min-max normalized to
[0, 100] across the survivors and combined with a flat category bonus:

    combined = eng * w_e + vel * w_v + tag * w_t + (w_c * 100 if category match)
"""
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable, Optional

import numpy as np

from ..discovery.models import Candidate

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50.0  # tag overlap without source tags, and degenerate normalization
OUTLIER_MIN_COUNT = 10  # outlier removal only runs above this many candidates
IQR_MULTIPLIER = 1.5
SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class ScoreWeights:
    """Weights of the combined score signals."""
    engagement: float = 0.4
    velocity: float = 0.3
    tag: float = 0.2
    category: float = 0.1

    @property
    def category_bonus(self) -> float:
        return self.category * 100


DEFAULT_WEIGHTS = ScoreWeights()


def _parse_published_at(published_at: str) -> Optional[datetime]:
    if not published_at:
        return None
    try:
        parsed = datetime.fromisoformat(published_at.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_engagement_rate(likes: int, comments: int, views: int) -> float:
    """(likes + comments) / views as a percentage; 0 when there are no views."""
    if views <= 0:
        return 0.0
    return (likes + comments) / views * 100


def days_since_publish(published_at: str, now: Optional[datetime] = None) -> int:
    """Whole days since publication, at least 1."""
    published = _parse_published_at(published_at)
    if published is None:
        return 1
    now = now or datetime.now(timezone.utc)
    elapsed = (now - published).total_seconds() / SECONDS_PER_DAY
    return max(1, math.floor(elapsed))


def calculate_view_velocity(
    views: int, published_at: str, now: Optional[datetime] = None
) -> float:
    """Views per day since publication."""
    return views / days_since_publish(published_at, now)


def normalize_tags(tags: Optional[Iterable[str]]) -> set[str]:
    return {t.strip().lower() for t in tags or [] if t and t.strip()}


def calculate_tag_overlap(
    source_tags: Optional[Iterable[str]], video_tags: Optional[Iterable[str]]
) -> float:
    """Jaccard similarity of two tag sets, scaled to 0-100."""
    source = normalize_tags(source_tags)
    video = normalize_tags(video_tags)
    if not source or not video:
        return 0.0
    union = source | video
    return len(source & video) / len(union) * 100


def iqr_bounds(
    values: Iterable[float], multiplier: float = IQR_MULTIPLIER
) -> tuple[float, float]:
    """Return (Q1 - k*IQR, Q3 + k*IQR) using index quartiles of the sorted values."""
    ordered = np.sort(np.asarray(list(values), dtype=float))
    if ordered.size == 0:
        return (0.0, 0.0)
    if ordered.size < 4:
        return (float(ordered[0]), float(ordered[-1]))
    q1 = ordered[int(ordered.size * 0.25)]
    q3 = ordered[int(ordered.size * 0.75)]
    iqr = q3 - q1
    return (float(q1 - iqr * multiplier), float(q3 + iqr * multiplier))


def remove_view_outliers(candidates: list[Candidate]) -> list[Candidate]:
    """Drop candidates whose view count falls outside the IQR fences."""
    if len(candidates) <= OUTLIER_MIN_COUNT:
        return list(candidates)
    low, high = iqr_bounds(c.views for c in candidates)
    kept = [c for c in candidates if low <= c.views <= high]
    dropped = len(candidates) - len(kept)
    if dropped:
        logger.info(
            "Removed %d view-count outliers outside [%.0f, %.0f]", dropped, low, high
        )
    return kept


def normalize(value: float, low: float, high: float) -> float:
    """Min-max scale a value to [0, 100]; a degenerate range maps to 50."""
    if high == low:
        return NEUTRAL_SCORE
    return max(0.0, min(100.0, (value - low) / (high - low) * 100))


def _normalize_all(values: list[float]) -> list[float]:
    arr = np.asarray(values, dtype=float)
    low, high = float(arr.min()), float(arr.max())
    return [normalize(float(v), low, high) for v in arr]


def compute_metrics(
    candidate: Candidate,
    source_tags: Optional[list[str]] = None,
    source_category_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Candidate:
    """Return a copy of the candidate with its raw metrics filled in."""
    days = days_since_publish(candidate.published_at, now)
    if source_tags:
        tag_score = calculate_tag_overlap(source_tags, candidate.tags)
    else:
        tag_score = NEUTRAL_SCORE
    if source_category_id:
        category_match = str(candidate.category_id) == str(source_category_id)
    else:
        category_match = True

    return replace(
        candidate,
        tags=list(candidate.tags),
        engagement_rate=calculate_engagement_rate(
            candidate.likes, candidate.comments, candidate.views
        ),
        view_velocity=calculate_view_velocity(
            candidate.views, candidate.published_at, now
        ),
        days_since_publish=days,
        tag_overlap_score=tag_score,
        category_match=category_match,
        combined_score=0.0,
    )


def score_candidates(
    candidates: list[Candidate],
    top_n: int = 50,
    weights: Optional[ScoreWeights] = None,
    source_tags: Optional[list[str]] = None,
    source_category_id: Optional[str] = None,
    remove_outliers: bool = True,
    now: Optional[datetime] = None,
) -> list[Candidate]:
    """Score, rank and truncate candidates.

    Args:
        candidates: Candidates with full statistics. Not modified.
        top_n: Number of candidates to return.
        weights: Signal weights (defaults 0.4 / 0.3 / 0.2 / 0.1).
        source_tags: Tags of a reference video; without them tag overlap
            is a neutral 50 for everyone.
        source_category_id: Category of a reference video; without it every
            candidate counts as a category match.
        remove_outliers: Drop view-count outliers (only above 10 candidates).
        now: Reference time for view velocity, for reproducible scoring.

    Returns:
        Up to ``top_n`` new Candidate objects sorted by combined score,
        ties keeping their input order.
    """
    if not candidates or top_n <= 0:
        return []

    weights = weights or DEFAULT_WEIGHTS
    now = now or datetime.now(timezone.utc)

    scored = [
        compute_metrics(c, source_tags, source_category_id, now) for c in candidates
    ]

    if remove_outliers:
        scored = remove_view_outliers(scored)
    if not scored:
        return []

    norm_engagement = _normalize_all([c.engagement_rate for c in scored])
    norm_velocity = _normalize_all([c.view_velocity for c in scored])
    norm_tags = _normalize_all([c.tag_overlap_score for c in scored])

    for i, c in enumerate(scored):
        bonus = weights.category_bonus if c.category_match else 0.0
        c.combined_score = (
            norm_engagement[i] * weights.engagement
            + norm_velocity[i] * weights.velocity
            + norm_tags[i] * weights.tag
            + bonus
        )

    # sorted() is stable, so equal scores keep input order
    ranked = sorted(scored, key=lambda c: -c.combined_score)
    logger.info(
        "Scored %d candidates (%d after outlier removal), returning top %d",
        len(candidates), len(scored), min(top_n, len(ranked)),
    )
    return ranked[:top_n]
