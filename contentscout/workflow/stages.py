"""
Pipeline stages, persisted project statuses and the mapping between them.
"""
from enum import Enum

from ..errors import UnknownStatusError


class Stage(int, Enum):
    """Workflow stages in forward order."""
    CONFIG = 0
    SEARCH = 1
    FILTER = 2
    EMBED = 3
    INPUT = 4
    ANALYSIS = 5
    VALIDATION = 6

    @property
    def label(self) -> str:
        return self.name.lower()


class ProjectStatus(str, Enum):
    """Statuses persisted on a research project."""
    DRAFT = "draft"
    SEARCHING = "searching"
    FILTERING = "filtering"
    EMBEDDING = "embedding"
    ANALYZING = "analyzing"
    DONE = "done"


# Total mapping; several stages share a status (INPUT and ANALYSIS both
# resume from "analyzing").
STATUS_TO_STAGE = {
    ProjectStatus.DRAFT: Stage.CONFIG,
    ProjectStatus.SEARCHING: Stage.SEARCH,
    ProjectStatus.FILTERING: Stage.FILTER,
    ProjectStatus.EMBEDDING: Stage.EMBED,
    ProjectStatus.ANALYZING: Stage.INPUT,
    ProjectStatus.DONE: Stage.VALIDATION,
}

# Status persisted once a stage's work has succeeded
STAGE_COMPLETION_STATUS = {
    Stage.CONFIG: ProjectStatus.SEARCHING,
    Stage.SEARCH: ProjectStatus.FILTERING,
    Stage.FILTER: ProjectStatus.EMBEDDING,
    Stage.EMBED: ProjectStatus.ANALYZING,
    Stage.ANALYSIS: ProjectStatus.DONE,
}

FIRST_STAGE = Stage.CONFIG
LAST_STAGE = Stage.VALIDATION


def stage_for_status(status) -> Stage:
    """Map a persisted status to the stage a session resumes at."""
    try:
        return STATUS_TO_STAGE[ProjectStatus(status)]
    except ValueError:
        raise UnknownStatusError(f"Unknown project status: {status!r}") from None


def parse_stage(value) -> Stage:
    """Accept a Stage, its index or its (case-insensitive) name."""
    if isinstance(value, Stage):
        return value
    if isinstance(value, int):
        return Stage(value)
    try:
        return Stage[str(value).strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown stage: {value!r}") from None


def can_navigate(current: Stage, target: Stage, watermark: Stage) -> bool:
    """Backward always; forward by one always; further only up to the watermark."""
    if target <= current:
        return True
    if target == current + 1:
        return True
    return target <= watermark
