"""Configuration loading for cigate.

Reads .cigate/config.yaml. Pydantic models validate the schema for the
trigger filters, the test and build stages, branch protection (required
checks, review policy, push restrictions) and runtime settings.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


# ── Project ──────────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str
    owner: str = ""  # GitHub org/user
    repo: str = ""  # GitHub repo name
    default_branch: str = "main"

    @property
    def full_name(self) -> str:
        if self.owner and self.repo:
            return f"{self.owner}/{self.repo}"
        return ""


# ── Triggers ─────────────────────────────────────────────────────────────────


class PushTriggerConfig(BaseModel):
    """Branch filter for push events. Default: every branch."""

    enabled: bool = True
    branches: list[str] = Field(default_factory=lambda: ["*"])


class PullRequestTriggerConfig(BaseModel):
    """Base-branch filter for pull_request events.

    ``branches: null`` means "the protected branch only".
    """

    enabled: bool = True
    branches: list[str] | None = None


class TriggersConfig(BaseModel):
    push: PushTriggerConfig = Field(default_factory=PushTriggerConfig)
    pull_request: PullRequestTriggerConfig = Field(default_factory=PullRequestTriggerConfig)


# ── Stages ───────────────────────────────────────────────────────────────────


class StepConfig(BaseModel):
    """A single shell step within a stage."""

    name: str
    run: str
    timeout: int | None = None  # seconds; None → runtime.step_timeout
    env: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data):
        # Accept the shorthand `- pytest -q` for {name: "pytest -q", run: "pytest -q"}
        if isinstance(data, str):
            return {"name": data, "run": data}
        return data


class TestStageConfig(BaseModel):
    """Environment setup → dependency install → test execution."""

    __test__ = False  # keep pytest from collecting this model

    check_name: str = "test"
    setup: list[StepConfig] = Field(
        default_factory=lambda: [StepConfig(name="python-version", run="python --version")]
    )
    install: list[StepConfig] = Field(
        default_factory=lambda: [
            StepConfig(name="install-deps", run="python -m pip install -r requirements.txt")
        ]
    )
    test: list[StepConfig] = Field(
        default_factory=lambda: [StepConfig(name="pytest", run="python -m pytest")]
    )


class ArtifactConfig(BaseModel):
    name: str = "dist"
    path: str = "dist"  # relative to the workspace root
    retention_days: int = Field(default=90, ge=1)

    @field_validator("path")
    @classmethod
    def _validate_path(cls, v: str) -> str:
        p = PurePosixPath(v)
        if p.is_absolute():
            raise ValueError(f"ArtifactConfig.path must be a relative path, got absolute: {v!r}")
        if ".." in p.parts:
            raise ValueError(
                f"ArtifactConfig.path must not contain directory traversal components (..): {v!r}"
            )
        return v


class BuildStageConfig(BaseModel):
    """Build/publish — only ever runs for pushes to the default branch."""

    enabled: bool = True
    check_name: str = "build"
    install: list[StepConfig] = Field(
        default_factory=lambda: [
            StepConfig(name="install-build", run="python -m pip install build")
        ]
    )
    build: list[StepConfig] = Field(
        default_factory=lambda: [StepConfig(name="build", run="python -m build")]
    )
    artifact: ArtifactConfig = Field(default_factory=ArtifactConfig)


# ── Branch protection ────────────────────────────────────────────────────────


class ReviewPolicyConfig(BaseModel):
    required_approving_review_count: int = Field(default=1, ge=0)
    dismiss_stale_reviews: bool = True
    require_code_owner_reviews: bool = False
    code_owners: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _code_owners_present(self) -> ReviewPolicyConfig:
        if self.require_code_owner_reviews and not self.code_owners:
            raise ValueError("require_code_owner_reviews is set but no code_owners are listed")
        return self


class BranchRestrictionsConfig(BaseModel):
    allow_force_pushes: bool = False
    allow_deletions: bool = False
    restrict_pushes_to_admins: bool = False
    admins: list[str] = Field(default_factory=list)
    push_allowlist: list[str] = Field(default_factory=list)  # empty = anyone


class BranchProtectionConfig(BaseModel):
    branch: str | None = None  # None → project.default_branch
    required_status_checks: list[str] = Field(default_factory=lambda: ["test"])
    reviews: ReviewPolicyConfig = Field(default_factory=ReviewPolicyConfig)
    restrictions: BranchRestrictionsConfig = Field(default_factory=BranchRestrictionsConfig)


# ── Runtime ──────────────────────────────────────────────────────────────────


class RuntimeConfig(BaseModel):
    data_dir: str = ".cigate-data"
    db_path: str | None = None  # default: <data_dir>/cigate.db
    workspace_dir: str | None = None  # default: <data_dir>/workspaces
    artifact_dir: str | None = None  # default: <data_dir>/artifacts
    log_dir: str | None = None  # default: <data_dir>/logs
    max_concurrent_runs: int = Field(default=4, ge=1)
    step_timeout: int = 1800  # seconds
    artifact_cleanup_interval: int = 3600  # seconds
    report_statuses: bool = False  # mirror status checks to GitHub
    webhook_rate_limit: int = 60  # deliveries per minute (0 = unlimited)

    def resolve(self, base: Path) -> None:
        """Fill unset paths relative to *base*."""
        data = Path(self.data_dir)
        if not data.is_absolute():
            data = base / data
        self.data_dir = str(data)
        self.db_path = self.db_path or str(data / "cigate.db")
        self.workspace_dir = self.workspace_dir or str(data / "workspaces")
        self.artifact_dir = self.artifact_dir or str(data / "artifacts")
        self.log_dir = self.log_dir or str(data / "logs")


class CigateConfig(BaseModel):
    project: ProjectConfig
    triggers: TriggersConfig = Field(default_factory=TriggersConfig)
    test: TestStageConfig = Field(default_factory=TestStageConfig)
    build: BuildStageConfig = Field(default_factory=BuildStageConfig)
    protection: BranchProtectionConfig = Field(default_factory=BranchProtectionConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @property
    def protected_branch(self) -> str:
        return self.protection.branch or self.project.default_branch


# ── Config Loader ────────────────────────────────────────────────────────────


def load_config(config_dir: Path) -> CigateConfig:
    """Load cigate configuration from a .cigate/ directory.

    Args:
        config_dir: Path to the .cigate/ directory.

    Returns:
        Validated CigateConfig with runtime paths resolved against the
        repository root (the parent of *config_dir*).

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ValueError: If config validation fails.
    """
    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"cigate config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = CigateConfig(**raw)

    # Environment variable overrides for deployment
    for env_name, attr in (
        ("CIGATE_DB_PATH", "db_path"),
        ("CIGATE_ARTIFACT_DIR", "artifact_dir"),
        ("CIGATE_WORKSPACE_DIR", "workspace_dir"),
    ):
        value = os.environ.get(env_name)
        if value:
            setattr(config.runtime, attr, value)

    config.runtime.resolve(config_dir.parent)

    logger.info(
        "Loaded cigate config: project=%s protected_branch=%s",
        config.project.name,
        config.protected_branch,
    )
    return config
