"""Tests for the cigate CLI — init scaffolding and one-shot commands."""

from __future__ import annotations

import json

import pytest

from cigate.__main__ import _parse_github_remote, main
from cigate.config import load_config


@pytest.fixture(autouse=True)
def no_config_dir_override(monkeypatch):
    monkeypatch.delenv("CIGATE_CONFIG_DIR", raising=False)
    for var in ("CIGATE_DB_PATH", "CIGATE_ARTIFACT_DIR", "CIGATE_WORKSPACE_DIR"):
        monkeypatch.delenv(var, raising=False)


class TestParseGithubRemote:
    @pytest.mark.parametrize(
        "url",
        [
            "git@github.com:acme/widgets.git",
            "https://github.com/acme/widgets.git",
            "https://github.com/acme/widgets",
            "ssh://git@github.com/acme/widgets.git",
        ],
    )
    def test_github_urls(self, url):
        assert _parse_github_remote(url) == ("acme", "widgets")

    def test_non_github(self):
        assert _parse_github_remote("https://gitlab.com/acme/widgets.git") is None

    def test_incomplete_path(self):
        assert _parse_github_remote("https://github.com/acme") is None


class TestInit:
    def test_init_scaffolds_loadable_config(self, tmp_path, capsys):
        main(["init", "--repo-root", str(tmp_path)])

        config_file = tmp_path / ".cigate" / "config.yaml"
        assert config_file.exists()
        assert "Initialized cigate project" in capsys.readouterr().out

        config = load_config(tmp_path / ".cigate")
        assert config.project.name == tmp_path.name
        assert config.protected_branch == "main"
        assert config.protection.required_status_checks == ["test"]
        assert config.build.artifact.retention_days == 90

    def test_init_refuses_existing(self, tmp_path):
        (tmp_path / ".cigate").mkdir()
        with pytest.raises(SystemExit) as exc:
            main(["init", "--repo-root", str(tmp_path)])
        assert exc.value.code == 1


class TestCommands:
    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main([])
        assert exc.value.code == 1
        assert "usage: cigate" in capsys.readouterr().out

    @pytest.mark.parametrize(
        "argv",
        [
            ["gate", "--pr", "1"],
            ["cleanup"],
            ["run", "--branch", "main", "--sha", "a" * 40],
        ],
    )
    def test_missing_config_exits(self, tmp_path, argv):
        with pytest.raises(SystemExit) as exc:
            main([*argv, "--repo-root", str(tmp_path)])
        assert exc.value.code == 1

    def test_cleanup_on_fresh_project(self, tmp_path, capsys):
        main(["init", "--repo-root", str(tmp_path)])
        capsys.readouterr()

        with pytest.raises(SystemExit) as exc:
            main(["cleanup", "--repo-root", str(tmp_path)])

        assert exc.value.code == 0
        assert "Purged 0 expired artifact(s)" in capsys.readouterr().out
        assert (tmp_path / ".cigate-data" / "cigate.db").exists()

    def test_gate_unknown_pr_denied(self, tmp_path, capsys):
        main(["init", "--repo-root", str(tmp_path)])
        capsys.readouterr()

        with pytest.raises(SystemExit) as exc:
            main(["gate", "--pr", "7", "--repo-root", str(tmp_path)])

        assert exc.value.code == 1
        decision = json.loads(capsys.readouterr().out)
        assert decision["allowed"] is False
        assert decision["reasons"]

    def test_run_without_matching_trigger(self, tmp_path, capsys):
        main(["init", "--repo-root", str(tmp_path)])
        capsys.readouterr()

        with pytest.raises(SystemExit) as exc:
            main(
                [
                    "run",
                    "--event",
                    "pull_request",
                    "--branch",
                    "develop",
                    "--sha",
                    "a" * 40,
                    "--pr",
                    "3",
                    "--head-branch",
                    "feature/x",
                    "--repo-root",
                    str(tmp_path),
                ]
            )

        assert exc.value.code == 0
        assert "nothing to run" in capsys.readouterr().out
