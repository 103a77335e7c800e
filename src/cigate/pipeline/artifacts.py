"""Artifact store — build outputs kept on local disk with a retention window.

Layout: ``<root>/<run_id>/<artifact name>/`` holding a copy of the file or
directory the build produced. Artifacts are never modified after storing;
expired ones are removed by :meth:`ArtifactStore.purge_expired`.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from datetime import datetime
from pathlib import Path

from cigate.pipeline.models import Artifact
from cigate.pipeline.registry import PipelineRegistry

logger = logging.getLogger(__name__)


class ArtifactStore:
    def __init__(self, root: Path, registry: PipelineRegistry):
        self.root = root
        self._registry = registry

    async def store(
        self, run_id: str, name: str, source: Path, *, retention_days: int
    ) -> Artifact:
        """Copy *source* into the store and record it for *run_id*."""
        dest = self.root / run_id / name
        size = await asyncio.to_thread(_copy, source, dest)

        artifact = Artifact(
            run_id=run_id,
            name=name,
            path=str(dest),
            size_bytes=size,
            retention_days=retention_days,
        )
        artifact.id = await self._registry.create_artifact(artifact)
        logger.info(
            "Stored artifact '%s' for run %s (%d bytes, retained %d days)",
            name,
            run_id,
            size,
            retention_days,
        )
        return artifact

    async def list_for_run(self, run_id: str) -> list[Artifact]:
        """Unexpired artifacts of a run."""
        return await self._registry.get_artifacts_for_run(run_id)

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete expired artifacts from disk and the registry. Returns the count."""
        expired = await self._registry.get_expired_artifacts(now)
        for artifact in expired:
            await asyncio.to_thread(_remove, Path(artifact.path))
            await self._registry.delete_artifact(artifact.id)  # type: ignore[arg-type]
            logger.info(
                "Purged expired artifact '%s' of run %s", artifact.name, artifact.run_id
            )
        return len(expired)


def _copy(source: Path, dest: Path) -> int:
    dest.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir():
        shutil.copytree(source, dest)
        return sum(p.stat().st_size for p in dest.rglob("*") if p.is_file())
    dest.mkdir(parents=True, exist_ok=True)
    target = dest / source.name
    shutil.copy2(source, target)
    return target.stat().st_size


def _remove(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()
    # Drop the per-run directory once it is empty
    parent = path.parent
    if parent.exists() and not any(parent.iterdir()):
        parent.rmdir()
