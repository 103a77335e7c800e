"""cigate server — FastAPI application that ties all components together.

Startup sequence:
1. Load .cigate/ config
2. Initialize SQLite database
3. Start the GitHub client (signature checks, status mirroring)
4. Create the pipeline engine; fail runs interrupted by a previous process
5. Start the Event Router consumer loop and the artifact cleanup loop
6. Begin accepting webhooks

Shutdown:
1. Stop the loops
2. Let in-flight runs finish
3. Close the GitHub client and database
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
from fastapi import FastAPI

from cigate.api import configure as configure_api
from cigate.api import router as api_router
from cigate.cleanup import ArtifactCleanupLoop
from cigate.config import CigateConfig, load_config
from cigate.event_router import EventRouter
from cigate.github_client import GitHubClient
from cigate.models import GitHubEvent
from cigate.pipeline import (
    ArtifactStore,
    CommandRunner,
    GitWorktreeManager,
    PipelineEngine,
    PipelineRegistry,
    WorkspaceProvider,
)
from cigate.webhook import configure as configure_webhook
from cigate.webhook import router as webhook_router

logger = logging.getLogger(__name__)


def config_dir_for(repo_root: Path) -> Path:
    """``CIGATE_CONFIG_DIR`` if set, else ``<repo_root>/.cigate``."""
    config_dir = os.environ.get("CIGATE_CONFIG_DIR", "").strip()
    return Path(config_dir) if config_dir else repo_root / ".cigate"


def github_client_from_env() -> GitHubClient:
    return GitHubClient(
        token=os.environ.get("GITHUB_TOKEN"),
        app_id=os.environ.get("GITHUB_APP_ID"),
        private_key=os.environ.get("GITHUB_PRIVATE_KEY"),
        installation_id=os.environ.get("GITHUB_INSTALLATION_ID"),
        webhook_secret=os.environ.get("GITHUB_WEBHOOK_SECRET"),
    )


async def open_pipeline(
    config: CigateConfig,
    repo_root: Path,
    *,
    github_client: GitHubClient | None = None,
    workspaces: WorkspaceProvider | None = None,
    runner: CommandRunner | None = None,
) -> tuple[aiosqlite.Connection, PipelineRegistry, PipelineEngine]:
    """Open the database and build a pipeline engine over it.

    The caller owns the returned connection and must close it.
    """
    runtime = config.runtime
    db_path = Path(runtime.db_path or Path(runtime.data_dir) / "cigate.db")
    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Registry DB path: %s", db_path)

    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    registry = PipelineRegistry(db)
    await registry.initialize()

    artifacts = ArtifactStore(
        Path(runtime.artifact_dir or Path(runtime.data_dir) / "artifacts"), registry
    )
    if workspaces is None:
        workspaces = GitWorktreeManager(
            repo_root, Path(runtime.workspace_dir or Path(runtime.data_dir) / "workspaces")
        )

    engine = PipelineEngine(
        config,
        registry,
        artifacts,
        workspaces=workspaces,
        runner=runner,
        github_client=github_client,
    )
    return db, registry, engine


class CigateServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, repo_root: Path | None = None):
        self.repo_root = repo_root or Path.cwd()
        self.config_dir = config_dir_for(self.repo_root)

        # Components (initialized in start())
        self.config: CigateConfig | None = None
        self.db: aiosqlite.Connection | None = None
        self.registry: PipelineRegistry | None = None
        self.engine: PipelineEngine | None = None
        self.github: GitHubClient | None = None
        self.event_queue: asyncio.Queue[GitHubEvent] | None = None
        self.router: EventRouter | None = None
        self.cleanup: ArtifactCleanupLoop | None = None

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        logger.info("cigate server starting (repo=%s)", self.repo_root)

        self.config = load_config(self.config_dir)

        self.github = github_client_from_env()
        await self.github.start()
        if self.config.runtime.report_statuses and not self.config.project.full_name:
            logger.warning("report_statuses is set but project owner/repo are not configured")

        self.db, self.registry, self.engine = await open_pipeline(
            self.config, self.repo_root, github_client=self.github
        )

        interrupted = await self.engine.recover_interrupted_runs()
        if interrupted:
            logger.info("Failed %d run(s) interrupted by the previous process", interrupted)

        self.event_queue = asyncio.Queue(maxsize=1000)
        self.router = EventRouter(self.event_queue, self.engine, self.registry)

        configure_webhook(
            self.event_queue,
            self.github,
            expected_repo_full_name=self.config.project.full_name,
            rate_limit_max=self.config.runtime.webhook_rate_limit,
        )
        configure_api(self.engine, self.registry)

        self.cleanup = ArtifactCleanupLoop(
            self.engine, interval=self.config.runtime.artifact_cleanup_interval
        )

        await self.router.start()
        await self.cleanup.start()

        logger.info(
            "cigate server started (project=%s, protected branch=%s)",
            self.config.project.name,
            self.config.protected_branch,
        )

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("cigate server shutting down")

        if self.router:
            await self.router.stop()
        if self.cleanup:
            await self.cleanup.stop()
        if self.engine:
            await self.engine.drain()
        if self.github:
            await self.github.close()
        if self.db:
            await self.db.close()

        logger.info("cigate server stopped")


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = CigateServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(repo_root: Path | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = CigateServer(repo_root)

    app = FastAPI(
        title="cigate",
        version="0.1.0",
        description="Push/PR-triggered test and build pipeline with a protected-branch merge gate",
        lifespan=lifespan,
    )

    app.include_router(webhook_router)
    app.include_router(api_router)
    return app
