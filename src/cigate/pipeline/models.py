"""Pipeline Pydantic models — runtime state, gate results, artifacts.

Key exports:
    Runtime state models: WorkflowRun, RunStatus, StageResult, StageOutcome,
        StepResult, StatusCheck, CheckState
    Review / gate models: Review, ReviewState, PullRequestState, GateDecision,
        PushDecision
    Artifacts: Artifact
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from cigate.models import EventKind

# ── Enums ────────────────────────────────────────────────────────────────────


class RunStatus(str, Enum):
    """Workflow run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StageOutcome(str, Enum):
    """Stage result outcomes."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class CheckState(str, Enum):
    """Status-check states, named as GitHub's commit status API names them."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class ReviewState(str, Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    COMMENTED = "commented"
    DISMISSED = "dismissed"


# Stage names as they appear in StageResult.stage_name
TEST_STAGE = "test"
BUILD_STAGE = "build"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Runtime State Models (persisted in SQLite) ───────────────────────────────


class StepResult(BaseModel):
    """Outcome of one shell step inside a stage."""

    name: str
    command: str
    exit_code: int | None = None  # None = timed out / never started
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class StageResult(BaseModel):
    """Runtime state of a single stage within a run."""

    id: int | None = None  # DB auto-increment
    run_id: str
    stage_name: str
    outcome: StageOutcome = StageOutcome.PENDING
    log_ref: str | None = None  # path of the stage log file
    steps: list[StepResult] = []
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class WorkflowRun(BaseModel):
    """One execution of the pipeline for a commit/event."""

    run_id: str
    event_kind: EventKind
    branch: str
    commit_sha: str
    pr_number: int | None = None
    sender: str | None = None
    delivery_id: str | None = None

    status: RunStatus = RunStatus.PENDING
    stages: list[StageResult] = []
    error_message: str | None = None

    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def is_final(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED)

    def stage(self, name: str) -> StageResult | None:
        for result in self.stages:
            if result.stage_name == name:
                return result
        return None


class StatusCheck(BaseModel):
    """Latest state of a named check on a commit."""

    commit_sha: str
    name: str
    state: CheckState
    run_id: str | None = None
    description: str = ""
    updated_at: datetime = Field(default_factory=_utcnow)


class PullRequestState(BaseModel):
    number: int
    base_branch: str
    head_branch: str | None = None
    head_sha: str
    updated_at: datetime = Field(default_factory=_utcnow)


class Review(BaseModel):
    """A reviewer's latest review on a pull request."""

    pr_number: int
    reviewer: str
    state: ReviewState
    commit_sha: str
    submitted_at: datetime = Field(default_factory=_utcnow)


class GateDecision(BaseModel):
    """Merge allow/deny with the reasons for a deny."""

    allowed: bool
    reasons: list[str] = []
    checks: dict[str, str] = {}  # check name → state ("missing" if never reported)
    approvals: int = 0
    required_approvals: int = 0
    head_sha: str | None = None
    data: dict[str, Any] = {}


class PushDecision(BaseModel):
    allowed: bool
    reason: str = ""


class Artifact(BaseModel):
    """A stored build output. Immutable once created."""

    id: int | None = None  # DB auto-increment
    run_id: str
    name: str
    path: str
    size_bytes: int = 0
    retention_days: int
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(days=self.retention_days)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _utcnow()) >= self.expires_at
