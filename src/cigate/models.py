"""Core event models for cigate."""

from __future__ import annotations

import enum

from pydantic import BaseModel, Field

# Sha GitHub sends as `after` when a branch is deleted
NULL_SHA = "0" * 40


class EventKind(str, enum.Enum):
    """Event kinds that can start a workflow run."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"


# ── GitHub Events ────────────────────────────────────────────────────────────


class GitHubEvent(BaseModel):
    """Raw GitHub webhook event."""

    delivery_id: str = Field(description="X-GitHub-Delivery UUID")
    event_type: str = Field(description="X-GitHub-Event header value")
    action: str | None = Field(default=None, description="Event action (e.g. 'opened', 'closed')")
    payload: dict = Field(default_factory=dict, description="Full webhook payload")

    @property
    def full_type(self) -> str:
        """e.g. 'push', 'pull_request.synchronize'."""
        if self.action:
            return f"{self.event_type}.{self.action}"
        return self.event_type

    @property
    def sender(self) -> str | None:
        sender = self.payload.get("sender")
        if sender:
            return sender.get("login")
        return None

    @property
    def pull_request(self) -> dict | None:
        return self.payload.get("pull_request")


# ── Normalized trigger input ─────────────────────────────────────────────────


class TriggerEvent(BaseModel):
    """What the trigger evaluator and pipeline engine see.

    ``branch`` is the pushed branch for push events and the target (base)
    branch for pull_request events.
    """

    kind: EventKind
    branch: str
    commit_sha: str
    pr_number: int | None = None
    head_branch: str | None = None
    sender: str | None = None
    delivery_id: str | None = None

    @classmethod
    def from_github(cls, event: GitHubEvent) -> TriggerEvent | None:
        """Normalize a push / pull_request webhook.

        Returns None for events that can never start a run: tag pushes,
        branch deletions, and pull_request actions other than
        opened/reopened/synchronize.
        """
        payload = event.payload
        if event.event_type == "push":
            ref = payload.get("ref", "")
            if not ref.startswith("refs/heads/"):
                return None
            if payload.get("deleted") or payload.get("after") == NULL_SHA:
                return None
            return cls(
                kind=EventKind.PUSH,
                branch=ref.removeprefix("refs/heads/"),
                commit_sha=payload.get("after", ""),
                sender=event.sender,
                delivery_id=event.delivery_id,
            )

        if event.event_type == "pull_request" and event.action in (
            "opened",
            "reopened",
            "synchronize",
        ):
            pr = event.pull_request or {}
            return cls(
                kind=EventKind.PULL_REQUEST,
                branch=(pr.get("base") or {}).get("ref", ""),
                commit_sha=(pr.get("head") or {}).get("sha", ""),
                pr_number=pr.get("number"),
                head_branch=(pr.get("head") or {}).get("ref"),
                sender=event.sender,
                delivery_id=event.delivery_id,
            )

        return None
