"""
Concept-to-candidate similarity ranking.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..discovery.models import Candidate, ConceptDraft, SimilarityMatch
from ..errors import ParseError
from .embeddings import Embedder, parse_embedding, prepare_text_for_embedding

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 10


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0 when either has zero magnitude."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        raise ValueError(f"Vector length mismatch: {a.shape} vs {b.shape}")
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


@dataclass
class MatchResult:
    concept_embedding: list[float]
    matches: list[SimilarityMatch]
    # every candidate's similarity, including unusable ones at 0
    similarities: dict[str, float] = field(default_factory=dict)


class EmbeddingMatcher:
    """Embeds a concept and ranks candidates by cosine similarity."""

    def __init__(self, embedder: Optional[Embedder] = None, top_k: int = DEFAULT_TOP_K):
        self.embedder = embedder
        self.top_k = top_k

    def rank(
        self,
        concept_embedding,
        candidates: list[Candidate],
        top_k: Optional[int] = None,
    ) -> MatchResult:
        """Rank candidates against an already computed concept vector.

        Candidates without a usable embedding (absent, malformed or of a
        different dimension) get similarity 0 and are left out of the top-K.
        Ties keep candidate order.
        """
        top_k = self.top_k if top_k is None else top_k
        concept = parse_embedding(concept_embedding)
        if concept is None:
            raise ParseError("Concept embedding is empty")

        similarities: dict[str, float] = {}
        usable: list[SimilarityMatch] = []
        skipped = 0
        for candidate in candidates:
            try:
                vector = parse_embedding(candidate.embedding)
            except ParseError as e:
                logger.warning("Candidate %s has a malformed embedding: %s", candidate.video_id, e)
                vector = None
            if vector is None or vector.shape != concept.shape:
                similarities[candidate.video_id] = 0.0
                skipped += 1
                continue
            score = cosine_similarity(concept, vector)
            similarities[candidate.video_id] = score
            usable.append(SimilarityMatch(video_id=candidate.video_id, similarity=score))

        if skipped:
            logger.info("%d of %d candidates had no usable embedding", skipped, len(candidates))

        ranked = sorted(usable, key=lambda m: -m.similarity)
        return MatchResult(
            concept_embedding=concept.tolist(),
            matches=ranked[:max(0, top_k)],
            similarities=similarities,
        )

    async def embed_concept(self, concept: ConceptDraft) -> list[float]:
        if self.embedder is None:
            raise ValueError("EmbeddingMatcher has no embedder configured")
        text = prepare_text_for_embedding(concept.title, concept.description, concept.tags)
        return await self.embedder.embed_one(text)

    async def match(
        self,
        concept: ConceptDraft,
        candidates: list[Candidate],
        top_k: Optional[int] = None,
    ) -> MatchResult:
        """Embed the concept (unless it already has a vector) and rank."""
        embedding = concept.embedding
        if not embedding:
            embedding = await self.embed_concept(concept)
        return self.rank(embedding, candidates, top_k)
