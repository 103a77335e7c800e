"""Tests for step sequencing and the test / build stages."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from cigate.config import ArtifactConfig, BuildStageConfig, StepConfig, TestStageConfig
from cigate.errors import BuildFailure, StageFailure
from cigate.models import EventKind
from cigate.pipeline.models import (
    BUILD_STAGE,
    TEST_STAGE,
    Artifact,
    StageOutcome,
    StageResult,
    WorkflowRun,
)
from cigate.pipeline.stages import (
    BuildStage,
    StepSequence,
    TestStage,
    build_preconditions_met,
    run_command,
)


# ── Helpers ──────────────────────────────────────────────────────────────────


class FakeRunner:
    """Records commands; exits non-zero for commands listed in *failing*."""

    def __init__(self, failing: dict[str, int] | None = None, timeouts: set[str] | None = None):
        self.failing = failing or {}
        self.timeouts = timeouts or set()
        self.calls: list[tuple[str, Path, int]] = []

    async def __call__(self, command, *, cwd, env=None, timeout=1800):
        self.calls.append((command, cwd, timeout))
        if command in self.timeouts:
            raise asyncio.TimeoutError
        code = self.failing.get(command, 0)
        return code, f"out:{command}\n", "" if code == 0 else f"err:{command}\n"

    @property
    def commands(self) -> list[str]:
        return [c for c, _, _ in self.calls]


def make_test_config(**overrides) -> TestStageConfig:
    defaults = dict(
        setup=[StepConfig(name="setup", run="setup-env")],
        install=[StepConfig(name="install", run="install-deps")],
        test=[StepConfig(name="test", run="run-tests")],
    )
    defaults.update(overrides)
    return TestStageConfig(**defaults)


def build_config(path: str = "dist") -> BuildStageConfig:
    return BuildStageConfig(
        install=[StepConfig(name="install-build", run="install-build")],
        build=[StepConfig(name="build", run="build-dist")],
        artifact=ArtifactConfig(name="dist", path=path, retention_days=30),
    )


def make_run(kind=EventKind.PUSH, branch="main", test_outcome=StageOutcome.SUCCESS):
    run = WorkflowRun(run_id="run-1", event_kind=kind, branch=branch, commit_sha="a" * 40)
    if test_outcome is not None:
        run.stages.append(
            StageResult(run_id="run-1", stage_name=TEST_STAGE, outcome=test_outcome)
        )
    return run


# ── StepSequence ─────────────────────────────────────────────────────────────


class TestStepSequence:
    async def test_runs_steps_in_order_and_logs(self, tmp_path):
        runner = FakeRunner()
        steps = StepSequence(runner, default_timeout=120)
        result = StageResult(run_id="run-1", stage_name=TEST_STAGE)
        log_path = tmp_path / "logs" / "test.log"

        await steps.run(
            result,
            [StepConfig(name="a", run="cmd-a"), StepConfig(name="b", run="cmd-b", timeout=5)],
            cwd=tmp_path,
            log_path=log_path,
        )

        assert runner.calls == [("cmd-a", tmp_path, 120), ("cmd-b", tmp_path, 5)]
        assert [s.name for s in result.steps] == ["a", "b"]
        assert all(s.succeeded for s in result.steps)
        log = log_path.read_text()
        assert "$ cmd-a" in log
        assert "out:cmd-b" in log

    async def test_stops_at_first_failure(self, tmp_path):
        runner = FakeRunner(failing={"cmd-a": 2})
        steps = StepSequence(runner)
        result = StageResult(run_id="run-1", stage_name=TEST_STAGE)

        with pytest.raises(StageFailure) as exc_info:
            await steps.run(
                result,
                [StepConfig(name="a", run="cmd-a"), StepConfig(name="b", run="cmd-b")],
                cwd=tmp_path,
                log_path=tmp_path / "test.log",
            )

        assert runner.commands == ["cmd-a"]
        assert exc_info.value.step == "a"
        assert exc_info.value.exit_code == 2
        assert "err:cmd-a" in (tmp_path / "test.log").read_text()

    async def test_timeout_is_failure(self, tmp_path):
        runner = FakeRunner(timeouts={"slow"})
        result = StageResult(run_id="run-1", stage_name=TEST_STAGE)

        with pytest.raises(StageFailure) as exc_info:
            await StepSequence(runner).run(
                result,
                [StepConfig(name="slow", run="slow")],
                cwd=tmp_path,
                log_path=tmp_path / "test.log",
            )

        assert exc_info.value.exit_code is None
        assert result.steps[0].exit_code is None
        assert not result.steps[0].succeeded


# ── TestStage ────────────────────────────────────────────────────────────────


class TestTestStage:
    async def test_success(self, tmp_path):
        runner = FakeRunner()
        stage = TestStage(make_test_config(), StepSequence(runner))
        result = StageResult(run_id="run-1", stage_name=TEST_STAGE)
        log_path = tmp_path / "test.log"

        await stage.execute(result, tmp_path, log_path)

        assert runner.commands == ["setup-env", "install-deps", "run-tests"]
        assert result.outcome == StageOutcome.SUCCESS
        assert result.log_ref == str(log_path)
        assert result.started_at is not None
        assert result.completed_at is not None

    @pytest.mark.parametrize("failing", ["setup-env", "install-deps", "run-tests"])
    async def test_any_phase_failure_fails_stage(self, tmp_path, failing):
        runner = FakeRunner(failing={failing: 1})
        stage = TestStage(make_test_config(), StepSequence(runner))
        result = StageResult(run_id="run-1", stage_name=TEST_STAGE)

        with pytest.raises(StageFailure):
            await stage.execute(result, tmp_path, tmp_path / "test.log")

        assert result.outcome == StageOutcome.FAILURE
        assert runner.commands[-1] == failing
        assert "exit code 1" in result.error_message

    def test_check_name(self):
        stage = TestStage(make_test_config(check_name="ci/tests"), StepSequence(FakeRunner()))
        assert stage.check_name == "ci/tests"


# ── Build preconditions ─────────────────────────────────────────────────────


class TestBuildPreconditions:
    def test_push_to_default_after_success(self):
        assert build_preconditions_met(make_run(), "main")

    def test_other_branch(self):
        assert not build_preconditions_met(make_run(branch="feature/x"), "main")

    def test_pull_request(self):
        assert not build_preconditions_met(make_run(kind=EventKind.PULL_REQUEST), "main")

    def test_failed_tests(self):
        assert not build_preconditions_met(make_run(test_outcome=StageOutcome.FAILURE), "main")

    def test_no_test_stage(self):
        assert not build_preconditions_met(make_run(test_outcome=None), "main")


# ── BuildStage ───────────────────────────────────────────────────────────────


class TestBuildStage:
    async def test_success_stores_artifact(self, tmp_path):
        (tmp_path / "dist").mkdir()
        (tmp_path / "dist" / "pkg.whl").write_bytes(b"wheel")
        stored = Artifact(run_id="run-1", name="dist", path="/store/dist", retention_days=30)
        artifacts = AsyncMock()
        artifacts.store.return_value = stored

        runner = FakeRunner()
        stage = BuildStage(build_config(), StepSequence(runner), artifacts)
        result = StageResult(run_id="run-1", stage_name=BUILD_STAGE)

        artifact = await stage.execute(result, tmp_path, tmp_path / "build.log")

        assert artifact is stored
        assert runner.commands == ["install-build", "build-dist"]
        assert result.outcome == StageOutcome.SUCCESS
        artifacts.store.assert_awaited_once_with(
            "run-1", "dist", tmp_path / "dist", retention_days=30
        )

    async def test_failed_step_is_build_failure(self, tmp_path):
        artifacts = AsyncMock()
        runner = FakeRunner(failing={"build-dist": 1})
        stage = BuildStage(build_config(), StepSequence(runner), artifacts)
        result = StageResult(run_id="run-1", stage_name=BUILD_STAGE)

        with pytest.raises(BuildFailure) as exc_info:
            await stage.execute(result, tmp_path, tmp_path / "build.log")

        assert exc_info.value.code == "BUILD_FAILED"
        assert exc_info.value.step == "build"
        assert result.outcome == StageOutcome.FAILURE
        artifacts.store.assert_not_awaited()

    async def test_missing_artifact_path_is_build_failure(self, tmp_path):
        artifacts = AsyncMock()
        stage = BuildStage(build_config("out"), StepSequence(FakeRunner()), artifacts)
        result = StageResult(run_id="run-1", stage_name=BUILD_STAGE)

        with pytest.raises(BuildFailure, match="artifact path 'out' not found"):
            await stage.execute(result, tmp_path, tmp_path / "build.log")

        assert result.outcome == StageOutcome.FAILURE
        artifacts.store.assert_not_awaited()


# ── run_command ──────────────────────────────────────────────────────────────


class TestRunCommand:
    async def test_exit_code_and_output(self, tmp_path):
        code, out, _ = await run_command("echo hello", cwd=tmp_path)
        assert code == 0
        assert out.strip() == "hello"

    async def test_nonzero_exit(self, tmp_path):
        code, _, _ = await run_command("exit 3", cwd=tmp_path)
        assert code == 3

    async def test_env_is_merged(self, tmp_path):
        _, out, _ = await run_command(
            "echo $CIGATE_TEST_VAR", cwd=tmp_path, env={"CIGATE_TEST_VAR": "x1"}
        )
        assert out.strip() == "x1"

    async def test_timeout(self, tmp_path):
        with pytest.raises(asyncio.TimeoutError):
            await run_command("sleep 5", cwd=tmp_path, timeout=0.2)
