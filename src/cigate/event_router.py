"""Event Router — consumes raw GitHub events and feeds the pipeline engine.

Runs as an async consumer loop. Handles:
- Webhook deduplication (X-GitHub-Delivery UUID)
- push / pull_request → trigger evaluation and a workflow run
- pull_request_review → review bookkeeping for the merge gate
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from cigate.models import GitHubEvent, TriggerEvent
from cigate.pipeline.models import ReviewState

if TYPE_CHECKING:
    from cigate.pipeline.engine import PipelineEngine
    from cigate.pipeline.registry import PipelineRegistry

logger = logging.getLogger(__name__)

# GitHub sends review states upper-case; "commented" carries no gate weight
REVIEW_STATE_MAP: dict[str, ReviewState] = {
    "approved": ReviewState.APPROVED,
    "changes_requested": ReviewState.CHANGES_REQUESTED,
    "commented": ReviewState.COMMENTED,
    "dismissed": ReviewState.DISMISSED,
}


class EventRouter:
    """Async consumer loop that routes GitHub events to the pipeline engine."""

    def __init__(
        self,
        event_queue: asyncio.Queue[GitHubEvent],
        engine: PipelineEngine,
        registry: PipelineRegistry,
    ):
        self.event_queue = event_queue
        self.engine = engine
        self.registry = registry

        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the event consumer loop."""
        self._running = True
        self._task = asyncio.create_task(self._consumer_loop(), name="event-router")
        logger.info("Event router started")

    async def stop(self) -> None:
        """Stop the event consumer loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Event router stopped")

    async def _consumer_loop(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self.event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                await self.route_event(event)
            except Exception:
                logger.exception("Error routing event %s", event.delivery_id)

    async def route_event(self, event: GitHubEvent) -> None:
        """Route a single GitHub event."""
        if await self.registry.has_seen_delivery(event.delivery_id):
            logger.debug("Duplicate event filtered: %s", event.delivery_id)
            return
        await self.registry.mark_delivery_seen(event.delivery_id, event.full_type)

        if event.event_type in ("push", "pull_request"):
            trigger = TriggerEvent.from_github(event)
            if trigger is None:
                logger.debug("Ignored event: %s", event.full_type)
                return
            if not trigger.commit_sha or not trigger.branch:
                logger.warning(
                    "Malformed %s payload (delivery=%s)", event.full_type, event.delivery_id
                )
                return
            self.engine.submit(trigger)
            return

        if event.full_type in ("pull_request_review.submitted", "pull_request_review.dismissed"):
            await self._handle_review(event)
            return

        logger.debug("Unhandled event type: %s", event.full_type)

    async def _handle_review(self, event: GitHubEvent) -> None:
        pr_number = (event.pull_request or {}).get("number")
        review = event.payload.get("review") or {}
        reviewer = (review.get("user") or {}).get("login")
        if not pr_number or not reviewer:
            logger.warning("Malformed review payload (delivery=%s)", event.delivery_id)
            return

        if event.action == "dismissed":
            state = ReviewState.DISMISSED
        else:
            state = REVIEW_STATE_MAP.get(str(review.get("state", "")).lower())
            if state is None:
                logger.debug("Ignored review state %r on PR #%s", review.get("state"), pr_number)
                return

        try:
            await self.engine.record_review(
                pr_number, reviewer, state, commit_sha=review.get("commit_id")
            )
        except ValueError as exc:
            logger.warning("Review not recorded: %s", exc)
