"""Tests for the artifact store and the cleanup loop."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import aiosqlite
import pytest_asyncio

from cigate.cleanup import ArtifactCleanupLoop
from cigate.models import EventKind
from cigate.pipeline.artifacts import ArtifactStore
from cigate.pipeline.models import WorkflowRun
from cigate.pipeline.registry import PipelineRegistry


@pytest_asyncio.fixture
async def registry(tmp_path):
    async with aiosqlite.connect(str(tmp_path / "artifacts.db")) as conn:
        reg = PipelineRegistry(conn)
        await reg.initialize()
        await reg.create_run(
            WorkflowRun(
                run_id="run-1", event_kind=EventKind.PUSH, branch="main", commit_sha="a" * 40
            )
        )
        yield reg


@pytest_asyncio.fixture
async def store(tmp_path, registry):
    return ArtifactStore(tmp_path / "store", registry)


class TestArtifactStore:
    async def test_store_directory(self, tmp_path, store):
        dist = tmp_path / "ws" / "dist"
        dist.mkdir(parents=True)
        (dist / "pkg-1.0.tar.gz").write_bytes(b"12345")
        (dist / "pkg-1.0-py3-none-any.whl").write_bytes(b"123")

        artifact = await store.store("run-1", "dist", dist, retention_days=30)

        assert artifact.id is not None
        assert artifact.size_bytes == 8
        assert artifact.retention_days == 30
        stored = tmp_path / "store" / "run-1" / "dist"
        assert artifact.path == str(stored)
        assert sorted(p.name for p in stored.iterdir()) == [
            "pkg-1.0-py3-none-any.whl",
            "pkg-1.0.tar.gz",
        ]
        assert [a.name for a in await store.list_for_run("run-1")] == ["dist"]

    async def test_store_single_file(self, tmp_path, store):
        wheel = tmp_path / "pkg.whl"
        wheel.write_bytes(b"wheel")

        artifact = await store.store("run-1", "wheel", wheel, retention_days=1)

        assert artifact.size_bytes == 5
        assert (tmp_path / "store" / "run-1" / "wheel" / "pkg.whl").read_bytes() == b"wheel"

    async def test_source_is_copied_not_moved(self, tmp_path, store):
        wheel = tmp_path / "pkg.whl"
        wheel.write_bytes(b"wheel")
        await store.store("run-1", "wheel", wheel, retention_days=1)
        assert wheel.exists()

    async def test_purge_expired(self, tmp_path, store, registry):
        wheel = tmp_path / "pkg.whl"
        wheel.write_bytes(b"wheel")
        artifact = await store.store("run-1", "wheel", wheel, retention_days=7)

        assert await store.purge_expired() == 0

        later = datetime.now(timezone.utc) + timedelta(days=8)
        assert await store.purge_expired(now=later) == 1
        assert not (tmp_path / "store" / "run-1").exists()
        assert await registry.get_artifacts_for_run("run-1", include_expired=True) == []
        assert artifact.is_expired(later)


class TestArtifactCleanupLoop:
    async def test_cleanup_pass(self):
        engine = AsyncMock()
        engine.purge_expired_artifacts.return_value = 2
        loop = ArtifactCleanupLoop(engine, interval=3600)

        assert await loop.cleanup() == 2
        engine.purge_expired_artifacts.assert_awaited_once()

    async def test_start_stop(self):
        engine = AsyncMock()
        loop = ArtifactCleanupLoop(engine, interval=3600)
        await loop.start()
        await loop.stop()
        engine.purge_expired_artifacts.assert_not_awaited()
