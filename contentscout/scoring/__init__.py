# Scoring module
from .scorer import (
    DEFAULT_WEIGHTS,
    ScoreWeights,
    calculate_engagement_rate,
    calculate_tag_overlap,
    calculate_view_velocity,
    iqr_bounds,
    normalize,
    score_candidates,
)
