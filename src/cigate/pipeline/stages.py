"""Stage execution — sequential shell steps for the test and build stages.

The Test Stage runs setup → install → test; the Build/Publish Stage runs
install → build and then stores the configured artifact. Within a stage the
first failing step stops it, and nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Protocol

from cigate.config import BuildStageConfig, StepConfig, TestStageConfig
from cigate.errors import BuildFailure, StageFailure
from cigate.models import EventKind
from cigate.pipeline.models import (
    BUILD_STAGE,
    TEST_STAGE,
    Artifact,
    StageOutcome,
    StageResult,
    StepResult,
    WorkflowRun,
)

if TYPE_CHECKING:
    from cigate.pipeline.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


# ── Command Runner ────────────────────────────────────────────────────────────


class CommandRunner(Protocol):
    """Runs one shell command and returns (exit_code, stdout, stderr)."""

    def __call__(
        self,
        command: str,
        *,
        cwd: Path,
        env: dict[str, str] | None = None,
        timeout: int = 1800,
    ) -> Awaitable[tuple[int, str, str]]: ...


async def run_command(
    command: str,
    *,
    cwd: Path,
    env: dict[str, str] | None = None,
    timeout: int = 1800,
) -> tuple[int, str, str]:
    """Run a shell command asynchronously without blocking the event loop.

    Raises:
        asyncio.TimeoutError: If the command outlives *timeout* (it is killed).
    """
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd),
        env={**os.environ, **(env or {})},
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode or 0,
        (stdout_bytes or b"").decode(errors="replace"),
        (stderr_bytes or b"").decode(errors="replace"),
    )


class StepSequence:
    """Runs a list of steps in order, recording each into a StageResult."""

    def __init__(self, runner: CommandRunner | None = None, *, default_timeout: int = 1800):
        self._runner: CommandRunner = runner or run_command
        self._default_timeout = default_timeout

    async def run(
        self,
        result: StageResult,
        steps: list[StepConfig],
        *,
        cwd: Path,
        log_path: Path,
    ) -> None:
        """Run *steps* sequentially, appending a StepResult per step.

        Raises:
            StageFailure: At the first step that exits non-zero or times out.
        """
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as log:
            for step in steps:
                log.write(f"$ {step.run}\n")
                timeout = step.timeout or self._default_timeout
                started = time.monotonic()
                try:
                    exit_code, stdout, stderr = await self._runner(
                        step.run, cwd=cwd, env=step.env, timeout=timeout
                    )
                except asyncio.TimeoutError:
                    exit_code, stdout, stderr = None, "", f"Timed out after {timeout}s\n"

                result.steps.append(
                    StepResult(
                        name=step.name,
                        command=step.run,
                        exit_code=exit_code,
                        duration_seconds=round(time.monotonic() - started, 3),
                    )
                )
                log.write(stdout)
                log.write(stderr)
                log.write(f"[{step.name}] exit={exit_code}\n")
                log.flush()

                if exit_code != 0:
                    logger.warning(
                        "Step '%s' of stage '%s' failed (run %s, exit=%s)",
                        step.name,
                        result.stage_name,
                        result.run_id,
                        exit_code,
                    )
                    raise StageFailure(result.stage_name, step.name, exit_code)
                logger.debug("Step '%s' passed (run %s)", step.name, result.run_id)


# ── Stages ────────────────────────────────────────────────────────────────────


def _start(result: StageResult, log_path: Path) -> None:
    result.started_at = datetime.now(timezone.utc)
    result.log_ref = str(log_path)


class TestStage:
    """Provision environment, install dependencies, run the test suite."""

    __test__ = False  # keep pytest from collecting this class

    name = TEST_STAGE

    def __init__(self, config: TestStageConfig, steps: StepSequence):
        self.config = config
        self._steps = steps

    @property
    def check_name(self) -> str:
        return self.config.check_name

    def all_steps(self) -> list[StepConfig]:
        return [*self.config.setup, *self.config.install, *self.config.test]

    async def execute(self, result: StageResult, workspace: Path, log_path: Path) -> None:
        """Run every step; sets the outcome on *result*.

        Raises:
            StageFailure: If any step fails (the outcome is already set).
        """
        _start(result, log_path)
        try:
            await self._steps.run(result, self.all_steps(), cwd=workspace, log_path=log_path)
        except StageFailure as exc:
            result.outcome = StageOutcome.FAILURE
            result.error_message = exc.message
            raise
        finally:
            result.completed_at = datetime.now(timezone.utc)
        result.outcome = StageOutcome.SUCCESS


def build_preconditions_met(run: WorkflowRun, default_branch: str) -> bool:
    """Build/publish runs only after a successful test stage on a push to the default branch."""
    test = run.stage(TEST_STAGE)
    return (
        test is not None
        and test.outcome == StageOutcome.SUCCESS
        and run.event_kind == EventKind.PUSH
        and run.branch == default_branch
    )


class BuildStage:
    """Install build tooling, build distributables, store the artifact."""

    name = BUILD_STAGE

    def __init__(self, config: BuildStageConfig, steps: StepSequence, artifacts: ArtifactStore):
        self.config = config
        self._steps = steps
        self._artifacts = artifacts

    @property
    def check_name(self) -> str:
        return self.config.check_name

    def all_steps(self) -> list[StepConfig]:
        return [*self.config.install, *self.config.build]

    async def execute(self, result: StageResult, workspace: Path, log_path: Path) -> Artifact:
        """Run the build and store its output.

        Raises:
            BuildFailure: If a step fails or the artifact path is missing.
                No artifact is recorded in either case.
        """
        _start(result, log_path)
        try:
            try:
                await self._steps.run(
                    result, self.all_steps(), cwd=workspace, log_path=log_path
                )
            except StageFailure as exc:
                raise BuildFailure(exc.step, exc.exit_code) from exc

            artifact_config = self.config.artifact
            source = workspace / artifact_config.path
            if not source.exists():
                raise BuildFailure(
                    "collect-artifact", reason=f"artifact path '{artifact_config.path}' not found"
                )

            artifact = await self._artifacts.store(
                result.run_id,
                artifact_config.name,
                source,
                retention_days=artifact_config.retention_days,
            )
        except BuildFailure as exc:
            result.outcome = StageOutcome.FAILURE
            result.error_message = exc.message
            raise
        finally:
            result.completed_at = datetime.now(timezone.utc)

        result.outcome = StageOutcome.SUCCESS
        return artifact
