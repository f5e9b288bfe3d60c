"""
End-to-end run of the research pipeline against fake providers.
"""
import numpy as np
import pytest

from contentscout.config import Settings
from contentscout.discovery.models import AnalysisResult, SearchHit
from contentscout.discovery.query_planner import QueryPlanner
from contentscout.discovery.youtube_search import MAX_DETAIL_BATCH, SearchPage
from contentscout.matching.embeddings import Embedder
from contentscout.matching.matcher import EmbeddingMatcher
from contentscout.scoring.scorer import DEFAULT_WEIGHTS, score_candidates
from contentscout.workflow.controller import StagePhase, WorkflowController
from contentscout.workflow.stages import Stage

PAGE = 50


def _hit(video_id):
    return SearchHit(video_id, f"Video {video_id}", "UC1", "Chan", "", "2026-01-01T00:00:00Z", "")


class FakeProvider:
    """Search and detail provider with fixed pages per query."""

    def __init__(self, results_by_query, details):
        self.pages_by_query = {
            q: [hits[i:i + PAGE] for i in range(0, len(hits), PAGE)] or [[]]
            for q, hits in results_by_query.items()
        }
        self.details = {c.video_id: c for c in details}
        self.search_calls = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def search_page(self, query, order="relevance", max_results=PAGE,
                          region_code=None, published_after=None,
                          category_id=None, page_token=None):
        self.search_calls += 1
        pages = self.pages_by_query.get(query, [[]])
        index = int(page_token) if page_token else 0
        next_token = str(index + 1) if index + 1 < len(pages) else None
        return SearchPage(hits=pages[index][:max_results], next_page_token=next_token)

    async def fetch_video_details(self, video_ids, on_progress=None):
        found = []
        for start in range(0, len(video_ids), MAX_DETAIL_BATCH):
            batch = video_ids[start:start + MAX_DETAIL_BATCH]
            found.extend(self.details[v] for v in batch if v in self.details)
            if on_progress:
                on_progress(start + len(batch), len(video_ids))
        return found


class TitleEmbedder(Embedder):
    def __init__(self, vectors):
        self.vectors = vectors

    async def embed(self, texts):
        titles = [t.split("\n")[0][len("Title: "):] for t in texts]
        return [list(self.vectors[title]) for title in titles]


class FakeAnalyst:
    async def run_analysis(self, concept, top, topic=""):
        return AnalysisResult(
            top_video_ids=[c.video_id for c in top],
            pattern_summary={}, gaps=[], gap_scores={"title": 50.0},
            title_variants=[], optimized_description="", suggested_tags=[],
            validation_score=50.0,
        )


def _raw_results():
    """120 raw hits over two queries, 15 of the secondary ones repeating primary ids."""
    primary = [_hit(f"p{i:04d}") for i in range(90)]
    secondary = [_hit(f"p{i:04d}") for i in range(75, 90)] + [_hit(f"s{i:04d}") for i in range(15)]
    return primary, secondary


def _details(make_candidate, ids):
    rng = np.random.default_rng(42)
    candidates = []
    for i, video_id in enumerate(ids):
        views = int(rng.integers(5_000, 20_000))
        candidates.append(make_candidate(
            video_id,
            views=views,
            likes=int(views * rng.uniform(0.01, 0.08)),
            comments=int(views * rng.uniform(0.001, 0.01)),
            tags=["espresso", "coffee"] if i % 3 else ["tea"],
            category_id="26" if i % 4 else "22",
            published_at=f"2026-01-{(i % 28) + 1:02d}T00:00:00Z",
        ))
    # one extreme view count
    candidates[7].views = 500_000_000
    return candidates


@pytest.mark.asyncio
async def test_component_properties(make_candidate):
    primary, secondary = _raw_results()
    provider = FakeProvider({"espresso": primary, "latte barista": secondary}, details=[])
    planner = QueryPlanner(provider)

    hits = await planner.search("espresso", ["latte", "barista"], desired_count=120)

    assert len(primary) + len(secondary) == 120
    assert len(hits) == 105
    assert len({h.video_id for h in hits}) == 105
    assert [h.video_id for h in hits[:90]] == [h.video_id for h in primary]

    candidates = _details(make_candidate, [h.video_id for h in hits])
    scored = score_candidates(
        candidates, top_n=50, source_tags=["espresso", "coffee"],
        source_category_id="26", remove_outliers=True,
    )
    assert len(scored) <= 50
    scores = [c.combined_score for c in scored]
    assert scores == sorted(scores, reverse=True)
    assert all(0 <= s <= 100 + DEFAULT_WEIGHTS.category_bonus for s in scores)
    assert candidates[7].video_id not in {c.video_id for c in scored}

    rng = np.random.default_rng(3)
    for c in scored[:30]:
        c.embedding = rng.normal(size=16).tolist()
    scored[30].embedding = "[broken"
    concept = rng.normal(size=16).tolist()
    result = EmbeddingMatcher(top_k=10).rank(concept, scored)
    assert len(result.matches) == min(10, 30)
    sims = [m.similarity for m in result.matches]
    assert sims == sorted(sims, reverse=True)
    assert result.similarities[scored[30].video_id] == 0.0


@pytest.mark.asyncio
async def test_full_workflow(temp_db, make_candidate):
    primary, secondary = _raw_results()
    ids = [h.video_id for h in primary] + [f"s{i:04d}" for i in range(15)]
    details = _details(make_candidate, ids)
    source = make_candidate("srcsrcsrc01", tags=["latte", "barista"], category_id="26")
    provider = FakeProvider(
        {"espresso": primary, "latte barista": secondary}, details=details + [source],
    )

    rng = np.random.default_rng(11)
    vectors = {f"Video {v}": rng.normal(size=8) for v in ids}
    vectors["My espresso concept"] = rng.normal(size=8)

    config = Settings(YOUTUBE_API_KEY="k", SEARCH_OVERSAMPLE=2.0, TOP_K=10, EMBED_BATCH_SIZE=5)
    project = temp_db.create_project(name="E2E", niche_query="espresso", candidate_limit=60)
    controller = WorkflowController(
        temp_db,
        project.project_id,
        youtube_factory=lambda: provider,
        embedder=TitleEmbedder(vectors),
        analyst=FakeAnalyst(),
        config=config,
    )

    controller.load()
    assert controller.current_stage == Stage.CONFIG
    controller.configure(remove_outliers=True, source_video_id="srcsrcsrc01")

    controller.go_to(Stage.SEARCH)
    scored = await controller.run_search()
    assert scored is not None
    assert len(scored) <= 60
    assert "p0007" not in {c.video_id for c in scored}
    stored = temp_db.get_candidates(project.project_id)
    assert len({c.video_id for c in stored}) == len(stored)

    controller.go_to(Stage.FILTER)
    controller.exclude(stored[0].video_id)
    kept = await controller.advance_from_filter()
    assert len(kept) == len(stored) - 1
    assert controller.current_stage == Stage.EMBED

    await controller.run_embed()
    assert all(c.has_embedding for c in temp_db.get_candidates(project.project_id))

    controller.next()
    controller.set_concept("My espresso concept", "Dialing in a new grinder", ["espresso"])
    controller.next()
    analysis = await controller.run_analysis()
    assert analysis is not None
    assert len(analysis.top_video_ids) == 10

    controller.next()
    assert controller.current_stage == Stage.VALIDATION
    assert controller.validation_result().analysis_id == analysis.analysis_id
    assert temp_db.get_project(project.project_id).status == "done"
    for stage in (Stage.SEARCH, Stage.FILTER, Stage.EMBED, Stage.ANALYSIS):
        assert controller.stage_state(stage).phase == StagePhase.DONE

    # a new session resumes at the last persisted stage
    resumed = WorkflowController(temp_db, project.project_id, config=config)
    resumed.load()
    assert resumed.current_stage == Stage.VALIDATION
