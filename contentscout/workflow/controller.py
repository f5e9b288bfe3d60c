"""
Resumable workflow controller for one research project.

Drives CONFIG -> SEARCH -> FILTER -> EMBED -> INPUT -> ANALYSIS -> VALIDATION.
Each expensive stage persists its artifact and advances the project status
only on success; a failure is captured as the stage's error state. Every stage
invocation and every navigation bumps a generation counter, and a stage only
applies its result while its generation is still current.
"""
import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Optional

from ..config import Settings, require_youtube_api_key, settings as default_settings
from ..db.database import Database
from ..discovery.llm_analyst import LLMAnalyst
from ..discovery.models import AnalysisResult, Candidate, ConceptDraft, ResearchProject
from ..discovery.query_planner import QueryPlanner
from ..discovery.youtube_search import (
    YouTubeClient,
    extract_video_id,
    published_after_for_window,
)
from ..errors import EmptyResultError, ExternalCallError, TransitionError
from ..matching.embeddings import Embedder, build_embedder, embed_candidates
from ..matching.matcher import EmbeddingMatcher
from ..scoring.scorer import score_candidates
from .stages import (
    FIRST_STAGE,
    LAST_STAGE,
    STAGE_COMPLETION_STATUS,
    Stage,
    can_navigate,
    parse_stage,
    stage_for_status,
)

logger = logging.getLogger(__name__)

REVIEW_SORT_KEYS = {
    "score": lambda c: -c.combined_score,
    "views": lambda c: -c.views,
    "engagement": lambda c: -c.engagement_rate,
}

CONFIG_FIELDS = {
    "name", "niche_query", "country_code", "candidate_limit",
    "time_window", "source_video_id", "remove_outliers",
}

# Stages a stage operation may be invoked from. The first entry is also the
# earliest stage the persisted status must have reached.
OPERATION_STAGES = {
    Stage.SEARCH: (Stage.SEARCH,),
    Stage.FILTER: (Stage.FILTER,),
    Stage.EMBED: (Stage.EMBED,),
    Stage.ANALYSIS: (Stage.INPUT, Stage.ANALYSIS),
}


class StagePhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


@dataclass
class StageState:
    """Progress and outcome of a stage within the current session."""
    phase: StagePhase = StagePhase.IDLE
    progress: int = 0
    status_text: str = ""
    error: Optional[str] = None
    error_kind: Optional[str] = None


class StaleInvocation(Exception):
    """Raised inside a stage when a newer invocation or navigation superseded it."""


StageListener = Callable[[Stage, StageState], None]


class WorkflowController:
    """Session-scoped state machine over a persisted research project."""

    def __init__(
        self,
        db: Database,
        project_id: int,
        youtube_factory: Optional[Callable[[], YouTubeClient]] = None,
        planner_factory: Callable[[YouTubeClient], QueryPlanner] = QueryPlanner,
        embedder: Optional[Embedder] = None,
        matcher: Optional[EmbeddingMatcher] = None,
        analyst: Optional[LLMAnalyst] = None,
        listener: Optional[StageListener] = None,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.project_id = project_id
        self.config = config or default_settings
        self._youtube_factory = youtube_factory or self._default_youtube_client
        self._planner_factory = planner_factory
        self._embedder = embedder
        self._matcher = matcher
        self._analyst = analyst
        self.listener = listener

        self.project: Optional[ResearchProject] = None
        self._loaded = False
        self._current: Stage = FIRST_STAGE
        self._watermark: Stage = FIRST_STAGE
        self._generation = 0
        self._states: dict[Stage, StageState] = {stage: StageState() for stage in Stage}
        self._excluded: set[str] = set()
        self._last_call: Optional[tuple[Stage, Callable[[], Awaitable]]] = None
        self._stage_tokens: dict[Stage, int] = {}

    # Collaborators

    def _default_youtube_client(self) -> YouTubeClient:
        return YouTubeClient(require_youtube_api_key(self.config.YOUTUBE_API_KEY))

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = build_embedder(self.config)
        return self._embedder

    @property
    def matcher(self) -> EmbeddingMatcher:
        if self._matcher is None:
            self._matcher = EmbeddingMatcher(self.embedder, top_k=self.config.TOP_K)
        return self._matcher

    @property
    def analyst(self) -> LLMAnalyst:
        if self._analyst is None:
            self._analyst = LLMAnalyst(self.config.LLM_MODEL, host=self.config.OLLAMA_HOST)
        return self._analyst

    # Session

    def load(self) -> ResearchProject:
        """Load the project and derive the resume stage; runs once per session."""
        if self._loaded:
            return self.project
        project = self.db.get_project(self.project_id)
        if project is None:
            raise KeyError(f"Project {self.project_id} not found")
        stage = stage_for_status(project.status)
        self.project = project
        self._current = stage
        self._watermark = stage
        self._loaded = True
        logger.info(
            "Loaded project %d '%s' at stage %s (status %s)",
            project.project_id, project.name, stage.label, project.status,
        )
        return project

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise RuntimeError("Workflow not loaded; call load() first")

    @property
    def current_stage(self) -> Stage:
        self._require_loaded()
        return self._current

    @property
    def watermark(self) -> Stage:
        self._require_loaded()
        return self._watermark

    @property
    def generation(self) -> int:
        return self._generation

    def stage_state(self, stage) -> StageState:
        return self._states[parse_stage(stage)]

    # Navigation

    def can_go_to(self, stage) -> bool:
        self._require_loaded()
        return can_navigate(self._current, parse_stage(stage), self._watermark)

    def go_to(self, stage) -> Stage:
        target = parse_stage(stage)
        if not self.can_go_to(target):
            raise TransitionError(
                f"Cannot jump from {self._current.label} to {target.label} "
                f"(furthest reached: {self._watermark.label})"
            )
        self._bump()
        self._current = target
        if target > self._watermark:
            self._watermark = target
        return target

    def next(self) -> Stage:
        self._require_loaded()
        if self._current == LAST_STAGE:
            raise TransitionError("Already at the last stage")
        return self.go_to(Stage(self._current + 1))

    def back(self) -> Stage:
        self._require_loaded()
        if self._current == FIRST_STAGE:
            raise TransitionError("Already at the first stage")
        return self.go_to(Stage(self._current - 1))

    # Generation tokens and stage state

    def _bump(self) -> int:
        self._generation += 1
        return self._generation

    def _check_current(self, token: int) -> None:
        if token != self._generation:
            raise StaleInvocation(f"invocation {token} superseded by {self._generation}")

    def _set_state(self, stage: Stage, **changes) -> None:
        state = self._states[stage]
        for key, value in changes.items():
            setattr(state, key, value)
        if self.listener:
            self.listener(stage, state)

    def _progress(self, stage: Stage, token: int, percent: float, text: str) -> None:
        if token != self._generation:
            return
        self._set_state(stage, progress=max(0, min(100, int(percent))), status_text=text)

    def _complete(self, stage: Stage) -> None:
        """Persist the status that follows a successful stage."""
        status = STAGE_COMPLETION_STATUS[stage]
        self.project = self.db.update_project(self.project_id, status=status.value)
        reached = stage_for_status(status)
        if reached > self._watermark:
            self._watermark = reached

    def _require_stage(self, stage: Stage) -> None:
        """Reject a stage operation outside its stage or ahead of the persisted status."""
        self._require_loaded()
        allowed = OPERATION_STAGES[stage]
        if self._current not in allowed:
            raise TransitionError(
                f"Cannot run {stage.label} while at {self._current.label}"
            )
        reached = stage_for_status(self.project.status)
        if reached < allowed[0]:
            raise TransitionError(
                f"Cannot run {stage.label} before the previous stage is complete "
                f"(status {self.project.status})"
            )

    def _discard(self, stage: Stage, token: int) -> None:
        logger.warning("Discarding stale %s result", stage.label)
        if self._stage_tokens.get(stage) == token:
            self._set_state(stage, phase=StagePhase.IDLE, status_text="Superseded")

    async def _execute(self, stage: Stage, operation, *args):
        """Run a stage operation under a fresh generation token.

        Failures become the stage's error state; stale results are dropped
        and leave the stage idle.
        """
        self._require_stage(stage)
        token = self._bump()
        self._stage_tokens[stage] = token
        self._last_call = (stage, lambda: self._execute(stage, operation, *args))
        self._set_state(
            stage, phase=StagePhase.RUNNING, progress=0,
            status_text="Starting", error=None, error_kind=None,
        )
        try:
            result = await operation(token, *args)
        except StaleInvocation:
            self._discard(stage, token)
            return None
        except Exception as e:
            logger.exception("Stage %s failed", stage.label)
            if token == self._generation:
                self._set_state(
                    stage, phase=StagePhase.ERROR, status_text="Failed",
                    error=str(e), error_kind=type(e).__name__,
                )
            else:
                self._discard(stage, token)
            return None

        if token != self._generation:
            self._discard(stage, token)
            return None
        self._set_state(stage, phase=StagePhase.DONE, progress=100, status_text="Done")
        return result

    async def retry(self):
        """Re-invoke the last stage operation with its original arguments."""
        if self._last_call is None:
            raise TransitionError("No stage operation to retry")
        _, call = self._last_call
        return await call()

    # CONFIG

    def configure(self, **fields) -> ResearchProject:
        """Save the project configuration and mark it ready to search."""
        self._require_loaded()
        unknown = set(fields) - CONFIG_FIELDS
        if unknown:
            raise ValueError(f"Unknown configuration fields: {sorted(unknown)}")
        if "source_video_id" in fields and fields["source_video_id"]:
            video_id = extract_video_id(fields["source_video_id"])
            if video_id is None:
                raise ValueError(f"Not a video URL or id: {fields['source_video_id']}")
            fields["source_video_id"] = video_id
        if "candidate_limit" in fields and int(fields["candidate_limit"]) <= 0:
            raise ValueError("candidate_limit must be positive")

        niche = fields.get("niche_query", self.project.niche_query)
        if not (niche or "").strip():
            raise ValueError("A niche query is required")

        self._bump()
        self.project = self.db.update_project(self.project_id, **fields)
        self._complete(Stage.CONFIG)
        self._set_state(Stage.CONFIG, phase=StagePhase.DONE, progress=100, status_text="Saved")
        return self.project

    # SEARCH

    async def run_search(self) -> Optional[list[Candidate]]:
        return await self._execute(Stage.SEARCH, self._search)

    async def _search(self, token: int) -> list[Candidate]:
        project = self.project
        if not (project.niche_query or "").strip():
            raise EmptyResultError("Project has no niche query")

        desired = math.ceil(project.candidate_limit * self.config.SEARCH_OVERSAMPLE)
        published_after = published_after_for_window(project.time_window)
        source_tags: list[str] = []
        source_category: Optional[str] = None

        async with self._youtube_factory() as client:
            if project.source_video_id:
                self._progress(Stage.SEARCH, token, 5, "Fetching source video")
                try:
                    source = await client.fetch_video_details([project.source_video_id])
                except ExternalCallError as e:
                    logger.warning("Could not resolve source video %s: %s", project.source_video_id, e)
                    source = []
                if source:
                    source_tags = source[0].tags
                    source_category = source[0].category_id or None

            planner = self._planner_factory(client)
            hits = await planner.search(
                project.niche_query,
                tags=source_tags,
                region_code=project.country_code,
                published_after=published_after,
                desired_count=desired,
                category_id=source_category,
                on_progress=lambda q, i, n: self._progress(
                    Stage.SEARCH, token, 10 + 40 * (i - 1) / n, f"Searching '{q}' ({i}/{n})"
                ),
            )
            if not hits:
                raise EmptyResultError(f"No videos found for '{project.niche_query}'")

            self._check_current(token)
            self._progress(Stage.SEARCH, token, 50, f"Fetching details for {len(hits)} videos")
            details = await client.fetch_video_details(
                [h.video_id for h in hits],
                on_progress=lambda done, total: self._progress(
                    Stage.SEARCH, token, 50 + 40 * done / total, f"Fetched {done}/{total} details"
                ),
            )

        if not details:
            raise EmptyResultError("None of the found videos had details")

        scored = score_candidates(
            details,
            top_n=project.candidate_limit,
            source_tags=source_tags,
            source_category_id=source_category,
            remove_outliers=project.remove_outliers,
        )
        if not scored:
            raise EmptyResultError("No candidates left after scoring")

        self._check_current(token)
        self.db.replace_candidates(self.project_id, scored)
        self._excluded.clear()
        self._complete(Stage.SEARCH)
        logger.info("Saved %d scored candidates for project %d", len(scored), self.project_id)
        return scored

    # FILTER

    def candidates(self) -> list[Candidate]:
        return self.db.get_candidates(self.project_id)

    @property
    def excluded(self) -> frozenset:
        return frozenset(self._excluded)

    def _known_ids(self) -> set[str]:
        return {c.video_id for c in self.candidates()}

    def toggle_exclusion(self, video_id: str) -> bool:
        """Flip a candidate's exclusion; returns True if it is now excluded."""
        if video_id not in self._known_ids():
            raise ValueError(f"Unknown candidate: {video_id}")
        if video_id in self._excluded:
            self._excluded.discard(video_id)
            return False
        self._excluded.add(video_id)
        return True

    def exclude(self, *video_ids: str) -> None:
        known = self._known_ids()
        unknown = [v for v in video_ids if v not in known]
        if unknown:
            raise ValueError(f"Unknown candidates: {unknown}")
        self._excluded.update(video_ids)

    def include(self, *video_ids: str) -> None:
        self._excluded.difference_update(video_ids)

    def review(self, sort_by: str = "score") -> list[tuple[Candidate, bool]]:
        """Candidates in review order, each paired with its exclusion flag."""
        try:
            key = REVIEW_SORT_KEYS[sort_by]
        except KeyError:
            raise ValueError(f"Unknown sort key: {sort_by}") from None
        ordered = sorted(self.candidates(), key=key)
        return [(c, c.video_id in self._excluded) for c in ordered]

    async def advance_from_filter(self) -> Optional[list[Candidate]]:
        """Drop excluded candidates from the persisted set and move to EMBED."""
        kept = await self._execute(Stage.FILTER, self._apply_filter)
        self._last_call = (Stage.FILTER, self.advance_from_filter)
        if kept is not None:
            self._current = Stage.EMBED
            self._bump()
        return kept

    async def _apply_filter(self, token: int) -> list[Candidate]:
        candidates = self.candidates()
        kept = [c for c in candidates if c.video_id not in self._excluded]
        if not kept:
            raise EmptyResultError("Every candidate is excluded")
        self._check_current(token)
        removed = self.db.retain_candidates(self.project_id, [c.video_id for c in kept])
        self._excluded.clear()
        self._complete(Stage.FILTER)
        logger.info("Filter kept %d candidates, removed %d", len(kept), removed)
        return kept

    # EMBED

    async def run_embed(self, force: bool = False) -> Optional[list[Candidate]]:
        return await self._execute(Stage.EMBED, self._embed, force)

    async def _embed(self, token: int, force: bool) -> list[Candidate]:
        candidates = self.candidates()
        if not candidates:
            raise EmptyResultError("No candidates to embed")

        async def persist(batch: list[Candidate]) -> None:
            self._check_current(token)
            self.db.save_candidate_embeddings(self.project_id, batch)

        embedded = await embed_candidates(
            self.embedder,
            candidates,
            batch_size=self.config.EMBED_BATCH_SIZE,
            force=force,
            on_batch=persist,
            on_progress=lambda done, total: self._progress(
                Stage.EMBED, token, 100 * done / total, f"Embedded {done}/{total}"
            ),
        )
        self._check_current(token)
        self._complete(Stage.EMBED)
        return embedded

    # INPUT

    def set_concept(self, title: str, description: str = "", tags=None) -> ConceptDraft:
        """Save the user's concept; a changed concept needs a new embedding."""
        self._require_loaded()
        if not (title or "").strip():
            raise ValueError("Concept title is required")
        self._bump()
        concept = ConceptDraft(
            title=title.strip(),
            description=description or "",
            tags=[t.strip() for t in tags or [] if t and t.strip()],
        )
        self.db.save_concept(self.project_id, concept)
        self._set_state(Stage.INPUT, phase=StagePhase.DONE, progress=100, status_text="Saved")
        return concept

    def concept(self) -> Optional[ConceptDraft]:
        return self.db.get_concept(self.project_id)

    # ANALYSIS

    async def run_analysis(self, force: bool = False) -> Optional[AnalysisResult]:
        """Match the concept against the candidates and run the AI analysis.

        Runs once; later calls return the saved result unless ``force``.
        """
        self._require_stage(Stage.ANALYSIS)
        if not force:
            existing = self.db.get_latest_analysis(self.project_id)
            if existing is not None:
                self._set_state(
                    Stage.ANALYSIS, phase=StagePhase.DONE, progress=100, status_text="Done"
                )
                return existing
        return await self._execute(Stage.ANALYSIS, self._analyze)

    async def _analyze(self, token: int) -> AnalysisResult:
        concept = self.concept()
        if concept is None:
            raise EmptyResultError("No concept saved for this project")
        candidates = self.candidates()
        if not candidates:
            raise EmptyResultError("No candidates to compare against")

        self._progress(Stage.ANALYSIS, token, 10, "Matching concept to competitors")
        match = await self.matcher.match(concept, candidates)
        self._check_current(token)
        self.db.save_concept(self.project_id, replace(concept, embedding=match.concept_embedding))
        if not match.matches:
            raise EmptyResultError("No candidate has a usable embedding")

        by_id = {c.video_id: c for c in candidates}
        top = [by_id[m.video_id] for m in match.matches]
        self._progress(Stage.ANALYSIS, token, 30, f"Analyzing {len(top)} closest competitors")
        result = await self.analyst.run_analysis(concept, top, topic=self.project.niche_query)

        self._check_current(token)
        saved = self.db.save_analysis(self.project_id, result)
        self._complete(Stage.ANALYSIS)
        return saved

    # VALIDATION

    def validation_result(self) -> Optional[AnalysisResult]:
        """The latest saved analysis (read-only)."""
        return self.db.get_latest_analysis(self.project_id)
