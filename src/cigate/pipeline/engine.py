"""Pipeline engine — trigger → test stage → (conditionally) build/publish, plus the merge gate.

Key exports:
    PipelineEngine — handle_event(), execute_run(), record_pull_request(),
        record_review(), evaluate_gate(), require_mergeable(), check_push(),
        recover_interrupted_runs(), purge_expired_artifacts().

Each run executes in its own task and shares no mutable state with other
runs beyond the registry; a semaphore caps how many run at once. Stages
within a run are strictly sequential. Failures are recorded and reported
through status checks, never retried.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from cigate.config import CigateConfig
from cigate.errors import BuildFailure, GateDenied, StageFailure, TriggerMismatch
from cigate.models import EventKind, TriggerEvent
from cigate.pipeline.artifacts import ArtifactStore
from cigate.pipeline.gates import GateCheckRegistry, MergeGate
from cigate.pipeline.models import (
    BUILD_STAGE,
    TEST_STAGE,
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
)
from cigate.pipeline.triggers import TriggerEvaluator
from cigate.pipeline.workspace import WorkspaceProvider

if TYPE_CHECKING:
    from cigate.github_client import GitHubClient

logger = logging.getLogger("cigate.pipeline.engine")


class PipelineEngine:
    """Core pipeline execution engine.

    Usage:
        engine = PipelineEngine(config, registry, artifacts, workspaces=worktrees)
        run = await engine.handle_event(trigger_event)   # None if no trigger matched
        decision = await engine.evaluate_gate(pr_number)
    """

    def __init__(
        self,
        config: CigateConfig,
        registry: PipelineRegistry,
        artifacts: ArtifactStore,
        *,
        workspaces: WorkspaceProvider,
        runner: CommandRunner | None = None,
        gate_registry: GateCheckRegistry | None = None,
        github_client: GitHubClient | None = None,
    ):
        self.config = config
        self._registry = registry
        self._artifacts = artifacts
        self._workspaces = workspaces
        self._github = github_client

        self.triggers = TriggerEvaluator(config.triggers, config.protected_branch)
        steps = StepSequence(runner, default_timeout=config.runtime.step_timeout)
        self.test_stage = TestStage(config.test, steps)
        self.build_stage = BuildStage(config.build, steps, artifacts)
        self.gate = MergeGate(config.protection, gate_registry)

        self._log_dir = Path(config.runtime.log_dir or Path(config.runtime.data_dir) / "logs")
        self._semaphore = asyncio.Semaphore(config.runtime.max_concurrent_runs)
        self._tasks: set[asyncio.Task] = set()

    # ── Event Handling ───────────────────────────────────────────────────────

    async def handle_event(self, event: TriggerEvent) -> WorkflowRun | None:
        """Start and execute a run if the event matches a trigger.

        A trigger mismatch is a no-op and returns None.
        """
        if event.kind == EventKind.PULL_REQUEST and event.pr_number:
            await self.record_pull_request(
                PullRequestState(
                    number=event.pr_number,
                    base_branch=event.branch,
                    head_branch=event.head_branch,
                    head_sha=event.commit_sha,
                )
            )

        try:
            self.triggers.check(event.kind, event.branch)
        except TriggerMismatch as exc:
            logger.info("%s — no run started", exc.message)
            return None

        run = await self.create_run(event)
        return await self.execute_run(run)

    def submit(self, event: TriggerEvent) -> asyncio.Task:
        """Handle an event in its own task."""
        task = asyncio.create_task(
            self.handle_event(event), name=f"run-{event.kind.value}-{event.commit_sha[:12]}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every submitted run to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Run Lifecycle ────────────────────────────────────────────────────────

    async def create_run(self, event: TriggerEvent) -> WorkflowRun:
        run = WorkflowRun(
            run_id=f"run-{uuid.uuid4().hex[:12]}",
            event_kind=event.kind,
            branch=event.branch,
            commit_sha=event.commit_sha,
            pr_number=event.pr_number,
            sender=event.sender,
            delivery_id=event.delivery_id,
        )
        await self._registry.create_run(run)
        logger.info(
            "Created run %s for %s on '%s' at %s",
            run.run_id,
            run.event_kind.value,
            run.branch,
            run.commit_sha[:12],
        )
        return run

    async def execute_run(self, run: WorkflowRun) -> WorkflowRun:
        """Execute the stages of a created run and finalize it."""
        async with self._semaphore:
            run.status = RunStatus.RUNNING
            await self._registry.update_run(run)
            try:
                async with self._workspaces(run.run_id, run.commit_sha) as workspace:
                    await self._run_stages(run, workspace)
            except Exception as exc:
                if run.is_final:
                    logger.exception("Workspace cleanup failed after run %s", run.run_id)
                else:
                    logger.exception("Run %s aborted", run.run_id)
                    await self._abort_pending_stages(run, str(exc))
                    await self._fail_run(run, f"Run aborted: {exc}")
        return run

    async def _run_stages(self, run: WorkflowRun, workspace: Path) -> None:
        test_result = await self._begin_stage(run, TEST_STAGE)
        await self._publish(run, self.test_stage.check_name, CheckState.PENDING, "Tests running")
        try:
            await self.test_stage.execute(test_result, workspace, self._log_path(run, TEST_STAGE))
        except StageFailure as exc:
            await self._registry.update_stage_result(test_result)
            await self._publish(run, self.test_stage.check_name, CheckState.FAILURE, exc.message)
            await self._skip_stage(run, BUILD_STAGE, "Test stage failed")
            await self._fail_run(run, exc.message)
            return

        await self._registry.update_stage_result(test_result)
        await self._publish(run, self.test_stage.check_name, CheckState.SUCCESS, "Tests passed")

        default_branch = self.config.project.default_branch
        if not self.config.build.enabled:
            await self._skip_stage(run, BUILD_STAGE, "Build stage disabled")
            await self._complete_run(run)
            return
        if not build_preconditions_met(run, default_branch):
            await self._skip_stage(
                run, BUILD_STAGE, f"Build runs only for pushes to '{default_branch}'"
            )
            await self._complete_run(run)
            return

        build_result = await self._begin_stage(run, BUILD_STAGE)
        await self._publish(run, self.build_stage.check_name, CheckState.PENDING, "Building")
        try:
            artifact = await self.build_stage.execute(
                build_result, workspace, self._log_path(run, BUILD_STAGE)
            )
        except BuildFailure as exc:
            await self._registry.update_stage_result(build_result)
            await self._publish(run, self.build_stage.check_name, CheckState.FAILURE, exc.message)
            await self._fail_run(run, exc.message)
            return

        await self._registry.update_stage_result(build_result)
        await self._publish(
            run,
            self.build_stage.check_name,
            CheckState.SUCCESS,
            f"Artifact '{artifact.name}' stored",
        )
        await self._complete_run(run)

    async def _begin_stage(self, run: WorkflowRun, stage_name: str) -> StageResult:
        result = StageResult(run_id=run.run_id, stage_name=stage_name)
        result.id = await self._registry.add_stage_result(result)
        run.stages.append(result)
        logger.info("Stage '%s' started (run %s)", stage_name, run.run_id)
        return result

    async def _skip_stage(self, run: WorkflowRun, stage_name: str, reason: str) -> None:
        now = datetime.now(timezone.utc)
        result = StageResult(
            run_id=run.run_id,
            stage_name=stage_name,
            outcome=StageOutcome.SKIPPED,
            error_message=reason,
            started_at=now,
            completed_at=now,
        )
        result.id = await self._registry.add_stage_result(result)
        run.stages.append(result)
        logger.info("Stage '%s' skipped (run %s): %s", stage_name, run.run_id, reason)

    async def _abort_pending_stages(self, run: WorkflowRun, reason: str) -> None:
        for result in run.stages:
            if result.outcome != StageOutcome.PENDING:
                continue
            result.outcome = StageOutcome.FAILURE
            result.error_message = reason
            result.completed_at = datetime.now(timezone.utc)
            await self._registry.update_stage_result(result)
            check = (
                self.test_stage.check_name
                if result.stage_name == TEST_STAGE
                else self.build_stage.check_name
            )
            await self._publish(run, check, CheckState.FAILURE, reason)
        if run.stage(TEST_STAGE) is None:
            # Never reached the test stage (e.g. checkout failed)
            await self._publish(run, self.test_stage.check_name, CheckState.FAILURE, reason)

    async def _complete_run(self, run: WorkflowRun) -> None:
        run.status = RunStatus.COMPLETED
        run.completed_at = datetime.now(timezone.utc)
        await self._registry.update_run(run)
        logger.info("Run %s completed", run.run_id)

    async def _fail_run(self, run: WorkflowRun, error_message: str) -> None:
        run.status = RunStatus.FAILED
        run.completed_at = datetime.now(timezone.utc)
        run.error_message = error_message
        await self._registry.update_run(run)
        logger.error("Run %s failed: %s", run.run_id, error_message)

    def _log_path(self, run: WorkflowRun, stage_name: str) -> Path:
        return self._log_dir / run.run_id / f"{stage_name}.log"

    # ── Status Checks ────────────────────────────────────────────────────────

    async def _publish(
        self, run: WorkflowRun, name: str, state: CheckState, description: str
    ) -> None:
        """Record a status check and mirror it to GitHub when enabled."""
        await self._registry.set_status_check(
            StatusCheck(
                commit_sha=run.commit_sha,
                name=name,
                state=state,
                run_id=run.run_id,
                description=description,
            )
        )
        logger.info(
            "Status '%s' = %s on %s (run %s)", name, state.value, run.commit_sha[:12], run.run_id
        )

        project = self.config.project
        if not (self._github and self.config.runtime.report_statuses and project.full_name):
            return
        try:
            await self._github.create_commit_status(
                project.owner,
                project.repo,
                run.commit_sha,
                state=state.value,
                context=name,
                description=description,
            )
        except Exception:
            logger.warning(
                "Failed to mirror status '%s' to GitHub for %s",
                name,
                run.commit_sha[:12],
                exc_info=True,
            )

    # ── Pull Requests, Reviews, Gate ─────────────────────────────────────────

    async def record_pull_request(self, pr: PullRequestState) -> int:
        """Record a PR's head commit; dismisses approvals on older commits
        when stale reviews are dismissed. Returns the number dismissed."""
        await self._registry.upsert_pull_request(pr)
        if not self.config.protection.reviews.dismiss_stale_reviews:
            return 0
        dismissed = await self._registry.dismiss_stale_reviews(pr.number, pr.head_sha)
        if dismissed:
            logger.info(
                "Dismissed %d stale approval(s) on PR #%s after new commit %s",
                dismissed,
                pr.number,
                pr.head_sha[:12],
            )
        return dismissed

    async def record_review(
        self,
        pr_number: int,
        reviewer: str,
        state: ReviewState | str,
        commit_sha: str | None = None,
    ) -> Review:
        """Store a review. Without *commit_sha* it is taken as given on the PR head.

        Raises:
            ValueError: If no commit is given and the PR is unknown.
        """
        if commit_sha is None:
            pr = await self._registry.get_pull_request(pr_number)
            if pr is None:
                raise ValueError(f"Unknown pull request #{pr_number}")
            commit_sha = pr.head_sha

        review = Review(
            pr_number=pr_number,
            reviewer=reviewer,
            state=ReviewState(state),
            commit_sha=commit_sha,
        )
        await self._registry.record_review(review)
        logger.info(
            "Review on PR #%s by %s: %s at %s",
            pr_number,
            reviewer,
            review.state.value,
            commit_sha[:12],
        )
        return review

    async def evaluate_gate(self, pr_number: int) -> GateDecision:
        """Evaluate the merge gate against the PR's current head commit."""
        pr = await self._registry.get_pull_request(pr_number)
        if pr is None:
            return GateDecision(
                allowed=False,
                reasons=[f"Unknown pull request #{pr_number}"],
                required_approvals=self.gate.required_approvals,
            )

        checks = await self._registry.get_status_checks(pr.head_sha)
        reviews = await self._registry.get_reviews(pr_number)
        return await self.gate.evaluate(
            pr_number=pr_number,
            head_sha=pr.head_sha,
            statuses={c.name: c.state for c in checks},
            reviews=reviews,
        )

    async def require_mergeable(self, pr_number: int) -> GateDecision:
        """Evaluate the gate and raise ``GateDenied`` on deny."""
        decision = await self.evaluate_gate(pr_number)
        if not decision.allowed:
            raise GateDenied(pr_number, decision.reasons)
        return decision

    def check_push(
        self, branch: str, pusher: str, *, forced: bool = False, deleted: bool = False
    ) -> PushDecision:
        return check_push(
            self.config.protection.restrictions,
            self.config.protected_branch,
            branch=branch,
            pusher=pusher,
            forced=forced,
            deleted=deleted,
        )

    # ── Maintenance ──────────────────────────────────────────────────────────

    async def recover_interrupted_runs(self) -> int:
        """Fail runs left pending/running by a previous process. They are not retried."""
        runs = await self._registry.get_active_runs()
        for run in runs:
            run.stages = await self._registry.get_stage_results(run.run_id)
            await self._abort_pending_stages(run, "Interrupted by restart")
            await self._fail_run(run, "Interrupted by restart")
        if runs:
            logger.warning("Marked %d interrupted run(s) as failed", len(runs))
        return len(runs)

    async def purge_expired_artifacts(self) -> int:
        return await self._artifacts.purge_expired()
