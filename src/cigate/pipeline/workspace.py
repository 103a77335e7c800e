"""Run workspaces — a detached git worktree of the commit under test."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncContextManager, AsyncIterator, Protocol

logger = logging.getLogger(__name__)


class WorkspaceProvider(Protocol):
    """Yields a directory holding the commit snapshot for a run."""

    def __call__(self, run_id: str, commit_sha: str) -> AsyncContextManager[Path]: ...


class GitWorktreeManager:
    """Checks out each run's commit into its own worktree under *base_dir*."""

    def __init__(self, repo_root: Path, base_dir: Path):
        self.repo_root = repo_root
        self.base_dir = base_dir

    @asynccontextmanager
    async def __call__(self, run_id: str, commit_sha: str) -> AsyncIterator[Path]:
        path = self.base_dir / run_id
        self.base_dir.mkdir(parents=True, exist_ok=True)

        # The commit may not be local yet when it arrives by webhook
        rc, _, err = await self._run_git("fetch", "--quiet", "origin", commit_sha)
        if rc != 0:
            logger.debug("git fetch %s failed (using local objects): %s", commit_sha, err.strip())

        rc, _, err = await self._run_git("worktree", "add", "--detach", str(path), commit_sha)
        if rc != 0:
            raise RuntimeError(f"Failed to check out {commit_sha}: {err.strip()}")
        logger.info("Checked out %s for run %s at %s", commit_sha[:12], run_id, path)

        try:
            yield path
        finally:
            rc, _, err = await self._run_git("worktree", "remove", "--force", str(path))
            if rc != 0:
                logger.warning("Failed to remove worktree %s: %s", path, err.strip())

    async def _run_git(self, *args: str, timeout: int = 300) -> tuple[int, str, str]:
        """Run a git command asynchronously without blocking the event loop.

        Returns (returncode, stdout, stderr).
        """
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(self.repo_root),
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
            (stdout_bytes or b"").decode(),
            (stderr_bytes or b"").decode(),
        )
