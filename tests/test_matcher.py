"""
Tests for cosine similarity and concept matching.
"""
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from contentscout.discovery.models import ConceptDraft
from contentscout.errors import ParseError
from contentscout.matching.matcher import EmbeddingMatcher, cosine_similarity


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([0.3, 0.4, 0.5], [0.3, 0.4, 0.5]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1, 2], [-1, -2]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0, 0], [1, 1]) == 0.0

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1, 2, 3], [1, 2])


class TestRank:
    def test_malformed_vectors_isolated(self, make_candidate):
        candidates = [
            make_candidate("good1", embedding=[1.0, 0.0]),
            make_candidate("bad_json", embedding="not json"),
            make_candidate("missing", embedding=None),
            make_candidate("wrong_dim", embedding=[1.0, 0.0, 0.0]),
            make_candidate("good2", embedding="[0.0, 1.0]"),
        ]
        result = EmbeddingMatcher(top_k=10).rank([1.0, 0.0], candidates)

        assert [m.video_id for m in result.matches] == ["good1", "good2"]
        assert result.matches[0].similarity == pytest.approx(1.0)
        assert result.matches[1].similarity == pytest.approx(0.0)
        assert result.similarities["bad_json"] == 0.0
        assert result.similarities["missing"] == 0.0
        assert result.similarities["wrong_dim"] == 0.0
        assert set(result.similarities) == {c.video_id for c in candidates}

    def test_valid_scores_unaffected_by_bad_neighbors(self, make_candidate):
        clean = [make_candidate(f"c{i}", embedding=[1.0, float(i)]) for i in range(4)]
        noisy = clean[:2] + [make_candidate("bad", embedding="[1, NaN]")] + clean[2:]
        matcher = EmbeddingMatcher()
        a = matcher.rank([1.0, 1.0], clean)
        b = matcher.rank([1.0, 1.0], noisy)
        assert [(m.video_id, m.similarity) for m in a.matches] == \
               [(m.video_id, m.similarity) for m in b.matches]

    def test_top_k_is_min_of_k_and_valid(self, make_candidate):
        rng = np.random.default_rng(7)
        candidates = [
            make_candidate(f"v{i}", embedding=rng.normal(size=8).tolist()) for i in range(15)
        ]
        concept = rng.normal(size=8).tolist()
        result = EmbeddingMatcher(top_k=10).rank(concept, candidates)
        assert len(result.matches) == 10
        sims = [m.similarity for m in result.matches]
        assert sims == sorted(sims, reverse=True)

        few = EmbeddingMatcher(top_k=10).rank(concept, candidates[:3])
        assert len(few.matches) == 3

    def test_ties_keep_candidate_order(self, make_candidate):
        candidates = [make_candidate(f"v{i}", embedding=[2.0, 2.0]) for i in range(3)]
        result = EmbeddingMatcher().rank([1.0, 1.0], candidates)
        assert [m.video_id for m in result.matches] == ["v0", "v1", "v2"]

    def test_empty_concept_embedding(self, make_candidate):
        with pytest.raises(ParseError):
            EmbeddingMatcher().rank([], [make_candidate("v1", embedding=[1.0])])


class TestMatch:
    @pytest.mark.asyncio
    async def test_embeds_concept_once(self, make_candidate):
        embedder = MagicMock()
        embedder.embed_one = AsyncMock(return_value=[1.0, 0.0])
        matcher = EmbeddingMatcher(embedder, top_k=1)
        concept = ConceptDraft(title="Espresso guide", description="How to", tags=["coffee"])
        candidates = [
            make_candidate("a", embedding=[0.0, 1.0]),
            make_candidate("b", embedding=[1.0, 0.1]),
        ]

        result = await matcher.match(concept, candidates)

        embedder.embed_one.assert_awaited_once_with(
            "Title: Espresso guide\nDescription: How to\nTags: coffee"
        )
        assert result.concept_embedding == [1.0, 0.0]
        assert [m.video_id for m in result.matches] == ["b"]

    @pytest.mark.asyncio
    async def test_reuses_stored_concept_embedding(self, make_candidate):
        embedder = MagicMock()
        embedder.embed_one = AsyncMock()
        concept = ConceptDraft(title="t", description="", embedding=[0.0, 1.0])
        result = await EmbeddingMatcher(embedder).match(
            concept, [make_candidate("a", embedding=[0.0, 2.0])]
        )
        embedder.embed_one.assert_not_called()
        assert result.matches[0].similarity == pytest.approx(1.0)
