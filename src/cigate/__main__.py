"""cigate CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import subprocess
import sys
from pathlib import Path

# ── Default template for `cigate init` ──────────────────────────────────────

_DEFAULT_CONFIG = """\
# .cigate/config.yaml — cigate project configuration

project:
  name: "{project_name}"
  owner: "{owner}"
  repo: "{repo}"
  default_branch: main

triggers:
  push:
    branches: ["*"]
  pull_request:
    branches: null  # the protected branch only

test:
  check_name: test
  setup:
    - python --version
  install:
    - python -m pip install -r requirements.txt
  test:
    - python -m pytest

build:
  enabled: true
  check_name: build
  install:
    - python -m pip install build
  build:
    - python -m build
  artifact:
    name: dist
    path: dist
    retention_days: 90

protection:
  required_status_checks: [test]
  reviews:
    required_approving_review_count: 1
    dismiss_stale_reviews: true
    require_code_owner_reviews: false
    code_owners: []
  restrictions:
    allow_force_pushes: false
    allow_deletions: false
    restrict_pushes_to_admins: false
    admins: []

runtime:
  data_dir: .cigate-data
  max_concurrent_runs: 4
  step_timeout: 1800
  artifact_cleanup_interval: 3600
  report_statuses: false
"""


def _parse_github_remote(url: str) -> tuple[str, str] | None:
    """Parse (owner, repo) from an SSH or HTTPS github.com remote URL."""
    if "github.com" not in url:
        return None
    path = url.split("github.com")[-1].lstrip("/:").removesuffix(".git")
    parts = path.split("/")
    if len(parts) >= 2 and parts[0] and parts[1]:
        return parts[0], parts[1]
    return None


def _init_project(repo_root: Path) -> None:
    """Scaffold a .cigate/ directory with default configuration."""
    cigate_dir = repo_root / ".cigate"

    if cigate_dir.exists():
        print(f"Error: {cigate_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    project_name = repo_root.name
    owner = ""
    repo = project_name

    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=str(repo_root),
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        result = None
    if result is not None and result.returncode == 0:
        parsed = _parse_github_remote(result.stdout.strip())
        if parsed:
            owner, repo = parsed

    cigate_dir.mkdir(parents=True)
    (cigate_dir / "config.yaml").write_text(
        _DEFAULT_CONFIG.format(project_name=project_name, owner=owner, repo=repo)
    )

    print(f"Initialized cigate project at {cigate_dir}")
    print(f"  Project: {project_name}")
    if owner:
        print(f"  Owner:   {owner}")
    print(f"  Repo:    {repo}")
    print()
    print("Next steps:")
    print(f"  1. Review {cigate_dir / 'config.yaml'}")
    print("  2. Set GITHUB_WEBHOOK_SECRET (and GITHUB_TOKEN to report statuses)")
    print(f"  3. Run: cigate serve --repo-root {repo_root}")


# ── One-shot commands ────────────────────────────────────────────────────────


def _load(repo_root: Path):
    from cigate.config import load_config
    from cigate.server import config_dir_for

    try:
        return load_config(config_dir_for(repo_root))
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print("Run 'cigate init' to create one, or specify --repo-root", file=sys.stderr)
        sys.exit(1)


async def _run_once(args) -> int:
    """Evaluate triggers and execute a run locally for one event."""
    from cigate.models import EventKind, TriggerEvent
    from cigate.pipeline.models import RunStatus
    from cigate.server import open_pipeline

    config = _load(args.repo_root)
    event = TriggerEvent(
        kind=EventKind(args.event),
        branch=args.branch,
        commit_sha=args.sha,
        pr_number=args.pr,
        head_branch=args.head_branch,
        sender=args.sender,
    )

    db, _, engine = await open_pipeline(config, args.repo_root)
    try:
        run = await engine.handle_event(event)
    finally:
        await db.close()

    if run is None:
        print(f"No trigger matches {event.kind.value} on '{event.branch}' — nothing to run")
        return 0

    print(json.dumps(run.model_dump(mode="json"), indent=2))
    return 0 if run.status == RunStatus.COMPLETED else 1


async def _gate(args) -> int:
    """Evaluate the merge gate for a PR from stored state."""
    from cigate.server import open_pipeline

    config = _load(args.repo_root)
    db, _, engine = await open_pipeline(config, args.repo_root)
    try:
        decision = await engine.evaluate_gate(args.pr)
    finally:
        await db.close()

    print(json.dumps(decision.model_dump(mode="json"), indent=2))
    return 0 if decision.allowed else 1


async def _cleanup(args) -> int:
    from cigate.server import open_pipeline

    config = _load(args.repo_root)
    db, _, engine = await open_pipeline(config, args.repo_root)
    try:
        purged = await engine.purge_expired_artifacts()
    finally:
        await db.close()

    print(f"Purged {purged} expired artifact(s)")
    return 0


def _add_repo_root(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="cigate",
        description="cigate — test/build pipeline with a protected-branch merge gate",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser("init", help="Initialize a new cigate project")
    _add_repo_root(init_parser)

    serve_parser = subparsers.add_parser("serve", help="Start the cigate webhook server")
    _add_repo_root(serve_parser)
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")

    run_parser = subparsers.add_parser("run", help="Run the pipeline locally for one event")
    _add_repo_root(run_parser)
    run_parser.add_argument("--event", choices=["push", "pull_request"], default="push")
    run_parser.add_argument(
        "--branch", required=True, help="Pushed branch, or the PR's target branch"
    )
    run_parser.add_argument("--sha", required=True, help="Commit to test")
    run_parser.add_argument("--pr", type=int, default=None, help="Pull request number")
    run_parser.add_argument("--head-branch", default=None, help="PR source branch")
    run_parser.add_argument("--sender", default=None)

    gate_parser = subparsers.add_parser("gate", help="Evaluate the merge gate for a PR")
    _add_repo_root(gate_parser)
    gate_parser.add_argument("--pr", type=int, required=True, help="Pull request number")

    cleanup_parser = subparsers.add_parser("cleanup", help="Purge expired artifacts")
    _add_repo_root(cleanup_parser)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_project(args.repo_root)
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "run":
        sys.exit(asyncio.run(_run_once(args)))
    if args.command == "gate":
        sys.exit(asyncio.run(_gate(args)))
    if args.command == "cleanup":
        sys.exit(asyncio.run(_cleanup(args)))

    # serve
    _load(args.repo_root)

    import uvicorn

    from cigate.server import create_app

    app = create_app(repo_root=args.repo_root)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
