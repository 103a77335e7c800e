"""Webhook intake — the GitHub deliveries that can move the pipeline.

Only ``push``, ``pull_request`` and ``pull_request_review`` deliveries reach
the event queue. ``ping`` is answered directly, and any other event type is
acknowledged with 202 without being queued, so a hook subscribed to "send me
everything" does not fill the queue with work the router would throw away.

Checks, in order: delivery rate, signature, payload shape, repository scope.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastapi import APIRouter, Header, Request, Response

from cigate.models import GitHubEvent

if TYPE_CHECKING:
    import asyncio

    from cigate.github_client import GitHubClient

logger = logging.getLogger(__name__)

router = APIRouter()

ROUTED_EVENTS = frozenset({"push", "pull_request", "pull_request_review"})


class DeliveryRateLimiter:
    """Sliding-window cap on accepted deliveries. ``max_deliveries <= 0`` disables it."""

    def __init__(self, max_deliveries: int = 60, window: float = 60.0):
        self.max_deliveries = max_deliveries
        self.window = window
        self._accepted: list[float] = []

    def allow(self, now: float | None = None) -> bool:
        if self.max_deliveries <= 0:
            return True
        now = time.monotonic() if now is None else now
        self._accepted = [t for t in self._accepted if t > now - self.window]
        if len(self._accepted) >= self.max_deliveries:
            return False
        self._accepted.append(now)
        return True


# Set during server startup (see server.py)
_event_queue: asyncio.Queue[GitHubEvent] | None = None
_github_client: GitHubClient | None = None
_expected_repo_full_name: str | None = None
_limiter = DeliveryRateLimiter()


def configure(
    event_queue: asyncio.Queue[GitHubEvent],
    github_client: GitHubClient,
    *,
    expected_repo_full_name: str | None = None,
    rate_limit_max: int = 60,
) -> None:
    """Wire the endpoint to the event queue and the signature verifier.

    Args:
        event_queue: Queue consumed by the event router.
        github_client: Verifies ``X-Hub-Signature-256``.
        expected_repo_full_name: If set, deliveries for any other owner/repo get 403.
        rate_limit_max: Max accepted deliveries per minute (0 = unlimited).
    """
    global _event_queue, _github_client, _expected_repo_full_name, _limiter
    _event_queue = event_queue
    _github_client = github_client
    _expected_repo_full_name = expected_repo_full_name
    _limiter = DeliveryRateLimiter(rate_limit_max)


def describe_target(event: GitHubEvent) -> str:
    """Short human label for what a delivery is about, for logs."""
    payload = event.payload
    if event.event_type == "push":
        ref = payload.get("ref", "")
        if ref.startswith("refs/heads/"):
            return f"branch '{ref.removeprefix('refs/heads/')}'"
        return f"ref '{ref}'"

    pr = event.pull_request or {}
    number = pr.get("number")
    if event.event_type == "pull_request":
        base = (pr.get("base") or {}).get("ref")
        return f"PR #{number} into '{base}'"
    if event.event_type == "pull_request_review":
        reviewer = ((payload.get("review") or {}).get("user") or {}).get("login")
        return f"PR #{number} review by {reviewer}"
    return event.event_type


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    x_github_event: str = Header(...),
    x_github_delivery: str = Header(...),
    x_hub_signature_256: str = Header(default=""),
) -> Response:
    """Verify a delivery and queue it for the event router."""
    if not _limiter.allow():
        logger.warning("Webhook rate limit exceeded (delivery=%s)", x_github_delivery)
        return Response(status_code=429, content="Rate limit exceeded")

    body = await request.body()

    if _github_client and not _github_client.verify_webhook_signature(body, x_hub_signature_256):
        logger.warning("Invalid webhook signature for delivery %s", x_github_delivery)
        return Response(status_code=401, content="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        logger.warning("Webhook body is not a JSON object (delivery=%s)", x_github_delivery)
        return Response(status_code=400, content="Payload must be a JSON object")

    if _expected_repo_full_name:
        webhook_repo = (payload.get("repository") or {}).get("full_name", "")
        if webhook_repo and webhook_repo != _expected_repo_full_name:
            logger.warning(
                "Webhook for unexpected repo %s (expected %s, delivery=%s)",
                webhook_repo,
                _expected_repo_full_name,
                x_github_delivery,
            )
            return Response(status_code=403, content="Unknown repository")

    if x_github_event == "ping":
        logger.info("Webhook ping (hook_id=%s)", payload.get("hook_id"))
        return Response(status_code=200, content="pong")

    if x_github_event not in ROUTED_EVENTS:
        logger.debug("Not queuing %s delivery %s", x_github_event, x_github_delivery)
        return Response(status_code=202, content="Event type not used by cigate")

    event = GitHubEvent(
        delivery_id=x_github_delivery,
        event_type=x_github_event,
        action=payload.get("action"),
        payload=payload,
    )
    logger.info(
        "Webhook %s for %s (delivery=%s, sender=%s)",
        event.full_type,
        describe_target(event),
        x_github_delivery,
        event.sender,
    )

    if _event_queue is None:
        logger.error("Event queue not configured, dropping delivery %s", x_github_delivery)
        return Response(status_code=503, content="Not ready")

    await _event_queue.put(event)
    return Response(status_code=200, content="ok")
