"""Trigger evaluation — decides whether an event starts a workflow run.

Push events match any branch allowed by the push filter (every branch by
default). Pull-request events match only when the target branch is the
protected branch, unless the pull_request filter lists other patterns.
"""

from __future__ import annotations

import fnmatch
import logging

from cigate.config import TriggersConfig
from cigate.errors import TriggerMismatch
from cigate.models import EventKind

logger = logging.getLogger(__name__)


class TriggerEvaluator:
    """Stateless matcher over the configured trigger filters."""

    def __init__(self, triggers: TriggersConfig, protected_branch: str):
        self._triggers = triggers
        self._protected_branch = protected_branch

    def matches(self, kind: EventKind | str, branch: str) -> bool:
        """Check if an event kind on a branch starts a run."""
        kind = EventKind(kind)
        if not branch:
            return False

        if kind == EventKind.PUSH:
            push = self._triggers.push
            return push.enabled and _any_match(branch, push.branches)

        pr = self._triggers.pull_request
        if not pr.enabled:
            return False
        if pr.branches is None:
            return branch == self._protected_branch
        return _any_match(branch, pr.branches)

    def check(self, kind: EventKind | str, branch: str) -> None:
        """Like :meth:`matches` but raises ``TriggerMismatch`` on no match."""
        if not self.matches(kind, branch):
            raise TriggerMismatch(EventKind(kind).value, branch)


def _any_match(branch: str, patterns: list[str]) -> bool:
    # fnmatch's "*" also matches "/", so "*" covers "feature/x"
    return any(fnmatch.fnmatchcase(branch, pattern) for pattern in patterns)
