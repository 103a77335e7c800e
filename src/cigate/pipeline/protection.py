"""Push restrictions for the protected branch."""

from __future__ import annotations

import logging

from cigate.config import BranchRestrictionsConfig
from cigate.pipeline.models import PushDecision

logger = logging.getLogger(__name__)


def check_push(
    restrictions: BranchRestrictionsConfig,
    protected_branch: str,
    *,
    branch: str,
    pusher: str,
    forced: bool = False,
    deleted: bool = False,
) -> PushDecision:
    """Decide whether *pusher* may update (or delete) *branch*.

    Branches other than the protected one are never restricted.
    """
    if branch != protected_branch:
        return PushDecision(allowed=True)

    is_admin = pusher in restrictions.admins

    if deleted and not restrictions.allow_deletions:
        return _deny(branch, pusher, "Branch deletion is not allowed")
    if forced and not restrictions.allow_force_pushes:
        return _deny(branch, pusher, "Force pushes are not allowed")
    if restrictions.restrict_pushes_to_admins and not is_admin:
        return _deny(branch, pusher, "Pushes are restricted to admins")
    if restrictions.push_allowlist and not is_admin and pusher not in restrictions.push_allowlist:
        return _deny(branch, pusher, f"'{pusher}' is not in the push allowlist")

    return PushDecision(allowed=True)


def _deny(branch: str, pusher: str, reason: str) -> PushDecision:
    logger.info("Push to '%s' by %s denied: %s", branch, pusher, reason)
    return PushDecision(allowed=False, reason=reason)
