"""CI pipeline core: triggers, stages, merge gate, artifacts.

Key exports:
    PipelineEngine — Core execution engine
    PipelineRegistry — SQLite persistence
    TriggerEvaluator — Decides whether an event starts a run
    MergeGate, GateCheckRegistry — Merge allow/deny evaluation
    ArtifactStore — Build outputs with retention
    WorkflowRun, StageResult, Artifact — Runtime state models
"""

from cigate.pipeline.artifacts import ArtifactStore
from cigate.pipeline.engine import PipelineEngine
from cigate.pipeline.gates import (
    GateCheckContext,
    GateCheckRegistry,
    GateCheckResult,
    MergeGate,
    effective_approvals,
)
from cigate.pipeline.models import (
    BUILD_STAGE,
    TEST_STAGE,
    Artifact,
    CheckState,
    GateDecision,
    PullRequestState,
    PushDecision,
    Review,
    ReviewState,
    RunStatus,
    StageOutcome,
    StageResult,
    StatusCheck,
    StepResult,
    WorkflowRun,
)
from cigate.pipeline.protection import check_push
from cigate.pipeline.registry import PipelineRegistry
from cigate.pipeline.stages import (
    BuildStage,
    CommandRunner,
    StepSequence,
    TestStage,
    build_preconditions_met,
    run_command,
)
from cigate.pipeline.triggers import TriggerEvaluator
from cigate.pipeline.workspace import GitWorktreeManager, WorkspaceProvider

__all__ = [
    # Engine
    "PipelineEngine",
    # Registry
    "PipelineRegistry",
    # Triggers
    "TriggerEvaluator",
    # Stages
    "BuildStage",
    "CommandRunner",
    "StepSequence",
    "TestStage",
    "build_preconditions_met",
    "run_command",
    # Gate
    "GateCheckContext",
    "GateCheckRegistry",
    "GateCheckResult",
    "MergeGate",
    "effective_approvals",
    "check_push",
    # Artifacts & workspaces
    "ArtifactStore",
    "GitWorktreeManager",
    "WorkspaceProvider",
    # Runtime state models
    "Artifact",
    "CheckState",
    "GateDecision",
    "PullRequestState",
    "PushDecision",
    "Review",
    "ReviewState",
    "RunStatus",
    "StageOutcome",
    "StageResult",
    "StatusCheck",
    "StepResult",
    "WorkflowRun",
    "BUILD_STAGE",
    "TEST_STAGE",
]
