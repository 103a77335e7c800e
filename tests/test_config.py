"""Tests for config loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from cigate.config import (
    ArtifactConfig,
    CigateConfig,
    ReviewPolicyConfig,
    StepConfig,
    load_config,
)


def write_config(tmp_path: Path, content: str) -> Path:
    config_dir = tmp_path / ".cigate"
    config_dir.mkdir()
    (config_dir / "config.yaml").write_text(content)
    return config_dir


MINIMAL = """\
project:
  name: widgets
  owner: acme
  repo: widgets
"""


class TestLoadConfig:
    def test_minimal_config_defaults(self, tmp_path):
        config = load_config(write_config(tmp_path, MINIMAL))

        assert config.project.name == "widgets"
        assert config.project.full_name == "acme/widgets"
        assert config.project.default_branch == "main"
        assert config.protected_branch == "main"
        assert config.triggers.push.branches == ["*"]
        assert config.triggers.pull_request.branches is None
        assert config.protection.required_status_checks == ["test"]
        assert config.protection.reviews.required_approving_review_count == 1
        assert config.protection.reviews.dismiss_stale_reviews is True
        assert config.test.check_name == "test"
        assert [s.name for s in config.test.test] == ["pytest"]
        assert config.build.artifact.retention_days == 90

    def test_runtime_paths_resolved_against_repo_root(self, tmp_path):
        config = load_config(write_config(tmp_path, MINIMAL))

        data_dir = tmp_path / ".cigate-data"
        assert config.runtime.data_dir == str(data_dir)
        assert config.runtime.db_path == str(data_dir / "cigate.db")
        assert config.runtime.artifact_dir == str(data_dir / "artifacts")
        assert config.runtime.workspace_dir == str(data_dir / "workspaces")
        assert config.runtime.log_dir == str(data_dir / "logs")

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CIGATE_DB_PATH", "/srv/cigate/db.sqlite")
        monkeypatch.setenv("CIGATE_ARTIFACT_DIR", "/srv/cigate/artifacts")
        monkeypatch.setenv("CIGATE_WORKSPACE_DIR", "/srv/cigate/ws")

        config = load_config(write_config(tmp_path, MINIMAL))

        assert config.runtime.db_path == "/srv/cigate/db.sqlite"
        assert config.runtime.artifact_dir == "/srv/cigate/artifacts"
        assert config.runtime.workspace_dir == "/srv/cigate/ws"

    def test_missing_config_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / ".cigate")

    def test_protected_branch_override(self, tmp_path):
        config = load_config(
            write_config(
                tmp_path,
                MINIMAL
                + """\
protection:
  branch: release
  required_status_checks: [test, lint]
""",
            )
        )
        assert config.protected_branch == "release"
        assert config.protection.required_status_checks == ["test", "lint"]

    def test_step_shorthand(self, tmp_path):
        config = load_config(
            write_config(
                tmp_path,
                MINIMAL
                + """\
test:
  setup: []
  install:
    - pip install -e .
  test:
    - name: unit
      run: pytest -q tests/unit
      timeout: 60
""",
            )
        )
        assert config.test.setup == []
        assert config.test.install[0].name == "pip install -e ."
        assert config.test.install[0].run == "pip install -e ."
        assert config.test.test[0].timeout == 60


class TestValidation:
    def test_negative_approval_count_rejected(self):
        with pytest.raises(ValidationError):
            ReviewPolicyConfig(required_approving_review_count=-1)

    def test_code_owner_reviews_need_owners(self):
        with pytest.raises(ValidationError, match="code_owners"):
            ReviewPolicyConfig(require_code_owner_reviews=True)

        policy = ReviewPolicyConfig(require_code_owner_reviews=True, code_owners=["alice"])
        assert policy.code_owners == ["alice"]

    @pytest.mark.parametrize("path", ["/abs/dist", "../outside", "build/../../x"])
    def test_artifact_path_must_stay_in_workspace(self, path):
        with pytest.raises(ValidationError):
            ArtifactConfig(path=path)

    def test_artifact_retention_at_least_one_day(self):
        with pytest.raises(ValidationError):
            ArtifactConfig(retention_days=0)

    def test_step_requires_run(self):
        with pytest.raises(ValidationError):
            StepConfig(name="broken")

    def test_project_required(self):
        with pytest.raises(ValidationError):
            CigateConfig()
