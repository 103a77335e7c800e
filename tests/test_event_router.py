"""Tests for the event router — dedup, trigger dispatch, review bookkeeping."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiosqlite
import pytest
import pytest_asyncio

from cigate.config import CigateConfig, ProjectConfig, RuntimeConfig
from cigate.event_router import EventRouter
from cigate.models import EventKind, GitHubEvent
from cigate.pipeline.artifacts import ArtifactStore
from cigate.pipeline.engine import PipelineEngine
from cigate.pipeline.models import CheckState, PullRequestState, ReviewState, StatusCheck
from cigate.pipeline.registry import PipelineRegistry

SHA = "a" * 40


@pytest_asyncio.fixture
async def registry(tmp_path):
    async with aiosqlite.connect(str(tmp_path / "router.db")) as conn:
        reg = PipelineRegistry(conn)
        await reg.initialize()
        yield reg


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.submit = MagicMock()
    engine.record_review = AsyncMock()
    return engine


@pytest.fixture
def router(engine, registry):
    return EventRouter(asyncio.Queue(), engine, registry)


def push_event(delivery: str = "d-1", ref: str = "refs/heads/main", **extra) -> GitHubEvent:
    return GitHubEvent(
        delivery_id=delivery,
        event_type="push",
        payload={"ref": ref, "after": SHA, "sender": {"login": "alice"}, **extra},
    )


def review_event(
    state: str = "APPROVED", action: str = "submitted", delivery: str = "d-r"
) -> GitHubEvent:
    return GitHubEvent(
        delivery_id=delivery,
        event_type="pull_request_review",
        action=action,
        payload={
            "action": action,
            "pull_request": {"number": 42},
            "review": {"state": state, "user": {"login": "bob"}, "commit_id": SHA},
        },
    )


class TestRouting:
    async def test_push_submits_run(self, router, engine):
        await router.route_event(push_event())

        engine.submit.assert_called_once()
        trigger = engine.submit.call_args.args[0]
        assert trigger.kind == EventKind.PUSH
        assert trigger.branch == "main"
        assert trigger.commit_sha == SHA

    async def test_pull_request_submits_run(self, router, engine):
        event = GitHubEvent(
            delivery_id="d-pr",
            event_type="pull_request",
            action="synchronize",
            payload={
                "pull_request": {
                    "number": 42,
                    "base": {"ref": "main"},
                    "head": {"ref": "feature/x", "sha": SHA},
                },
            },
        )

        await router.route_event(event)

        trigger = engine.submit.call_args.args[0]
        assert trigger.kind == EventKind.PULL_REQUEST
        assert trigger.pr_number == 42

    async def test_duplicate_delivery_ignored(self, router, engine, registry):
        await router.route_event(push_event("d-1"))
        await router.route_event(push_event("d-1"))

        assert engine.submit.call_count == 1
        assert await registry.has_seen_delivery("d-1")

    async def test_branch_deletion_ignored(self, router, engine):
        await router.route_event(push_event(deleted=True))
        engine.submit.assert_not_called()

    async def test_tag_push_ignored(self, router, engine):
        await router.route_event(push_event(ref="refs/tags/v1"))
        engine.submit.assert_not_called()

    async def test_unhandled_event(self, router, engine):
        event = GitHubEvent(delivery_id="d-x", event_type="issues", action="opened")
        await router.route_event(event)
        engine.submit.assert_not_called()
        engine.record_review.assert_not_awaited()


class TestReviews:
    async def test_approval_recorded(self, router, engine):
        await router.route_event(review_event("APPROVED"))

        engine.record_review.assert_awaited_once_with(
            42, "bob", ReviewState.APPROVED, commit_sha=SHA
        )

    async def test_changes_requested_recorded(self, router, engine):
        await router.route_event(review_event("CHANGES_REQUESTED"))
        assert engine.record_review.await_args.args[2] == ReviewState.CHANGES_REQUESTED

    async def test_dismissal_recorded(self, router, engine):
        await router.route_event(review_event("APPROVED", action="dismissed"))
        assert engine.record_review.await_args.args[2] == ReviewState.DISMISSED

    async def test_unknown_state_ignored(self, router, engine):
        await router.route_event(review_event("PENDING"))
        engine.record_review.assert_not_awaited()

    async def test_malformed_review_ignored(self, router, engine):
        event = GitHubEvent(
            delivery_id="d-bad",
            event_type="pull_request_review",
            action="submitted",
            payload={"review": {"state": "APPROVED"}},
        )
        await router.route_event(event)
        engine.record_review.assert_not_awaited()


class TestConsumerLoop:
    async def test_loop_routes_queued_events(self, engine, registry):
        queue: asyncio.Queue[GitHubEvent] = asyncio.Queue()
        router = EventRouter(queue, engine, registry)
        await router.start()
        try:
            await queue.put(push_event("d-loop"))
            for _ in range(50):
                if engine.submit.called:
                    break
                await asyncio.sleep(0.01)
        finally:
            await router.stop()

        engine.submit.assert_called_once()

    async def test_routing_error_does_not_stop_loop(self, engine, registry):
        engine.submit.side_effect = [RuntimeError("boom"), None]
        queue: asyncio.Queue[GitHubEvent] = asyncio.Queue()
        router = EventRouter(queue, engine, registry)
        await router.start()
        try:
            await queue.put(push_event("d-1"))
            await queue.put(push_event("d-2"))
            for _ in range(50):
                if engine.submit.call_count == 2:
                    break
                await asyncio.sleep(0.01)
        finally:
            await router.stop()

        assert engine.submit.call_count == 2


class TestReviewsAgainstGate:
    @pytest.fixture
    def gate_engine(self, tmp_path, registry):
        config = CigateConfig(
            project=ProjectConfig(name="widgets", owner="acme", repo="widgets"),
            runtime=RuntimeConfig(data_dir=str(tmp_path / "data")),
        )
        return PipelineEngine(
            config,
            registry,
            ArtifactStore(tmp_path / "artifacts", registry),
            workspaces=MagicMock(),
        )

    async def test_follow_up_comment_keeps_approval(self, gate_engine, registry):
        await gate_engine.record_pull_request(
            PullRequestState(number=42, base_branch="main", head_branch="feature/x", head_sha=SHA)
        )
        await registry.set_status_check(
            StatusCheck(commit_sha=SHA, name="test", state=CheckState.SUCCESS)
        )
        router = EventRouter(asyncio.Queue(), gate_engine, registry)

        await router.route_event(review_event("APPROVED", delivery="d-approve"))
        assert (await gate_engine.evaluate_gate(42)).allowed

        await router.route_event(review_event("COMMENTED", delivery="d-comment"))

        decision = await gate_engine.evaluate_gate(42)
        assert decision.allowed, decision.reasons
        assert decision.approvals == 1

    async def test_changes_requested_still_revokes_approval(self, gate_engine, registry):
        await gate_engine.record_pull_request(
            PullRequestState(number=42, base_branch="main", head_branch="feature/x", head_sha=SHA)
        )
        await registry.set_status_check(
            StatusCheck(commit_sha=SHA, name="test", state=CheckState.SUCCESS)
        )
        router = EventRouter(asyncio.Queue(), gate_engine, registry)

        await router.route_event(review_event("APPROVED", delivery="d-approve"))
        await router.route_event(review_event("CHANGES_REQUESTED", delivery="d-block"))

        assert not (await gate_engine.evaluate_gate(42)).allowed
