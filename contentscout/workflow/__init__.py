# Workflow module
from .controller import StagePhase, StageState, WorkflowController
from .stages import ProjectStatus, Stage, stage_for_status
