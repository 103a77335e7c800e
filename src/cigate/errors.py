"""Pipeline error catalog.

Every error carries a stable code and a human message. None of these are
retried automatically — they are surfaced through status checks, the HTTP
API and the logs, and a human pushes a fix or obtains a new approval.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base error with a structured code."""

    code = "PIPELINE_ERROR"

    def __init__(self, message: str, detail: Any = None):
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "error_code": self.code,
            "message": self.message,
        }
        if self.detail:
            d["detail"] = self.detail
        return d


class TriggerMismatch(PipelineError):
    """The event does not start a run. A no-op, not a failure."""

    code = "TRIGGER_MISMATCH"

    def __init__(self, event_kind: str, branch: str):
        self.event_kind = event_kind
        self.branch = branch
        super().__init__(f"No workflow trigger matches {event_kind} on '{branch}'")


class StageFailure(PipelineError):
    code = "STAGE_FAILED"

    def __init__(self, stage: str, step: str, exit_code: int | None = None, reason: str = ""):
        self.stage = stage
        self.step = step
        self.exit_code = exit_code
        msg = f"Stage '{stage}' failed at step '{step}'"
        if exit_code is not None:
            msg += f" (exit code {exit_code})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, detail={"stage": stage, "step": step, "exit_code": exit_code})


class BuildFailure(StageFailure):
    """Build/publish failed. Terminal for the run; no artifact is recorded."""

    code = "BUILD_FAILED"

    def __init__(self, step: str, exit_code: int | None = None, reason: str = ""):
        super().__init__("build", step, exit_code, reason)


class GateDenied(PipelineError):
    code = "GATE_DENIED"

    def __init__(self, pr_number: int, reasons: list[str]):
        self.pr_number = pr_number
        self.reasons = reasons
        super().__init__(
            f"Merge blocked for PR #{pr_number}: {'; '.join(reasons)}",
            detail=reasons,
        )


class RunFinalizedError(PipelineError):
    code = "RUN_FINALIZED"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Workflow run {run_id} is finalized and cannot be modified")
