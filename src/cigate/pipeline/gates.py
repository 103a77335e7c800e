"""Merge gate — pluggable gate checks combined into an allow/deny decision.

Provides a registry of named gate check functions and the :class:`MergeGate`
that evaluates the branch protection rules through it.

Built-in checks:
    - ``required_status_checks`` — every named check reports success on the head commit
    - ``approvals_met``          — enough approvals (only on the head commit when
                                   stale approvals are dismissed)
    - ``code_owner_approved``    — at least one effective approval from a code owner

Each gate function receives a :class:`GateCheckContext` and returns a
:class:`GateCheckResult`.  Functions can be synchronous or async.

The decision is a conjunction of all checks, so adding a required check can
only turn an allow into a deny, never the reverse.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import BaseModel

from cigate.config import BranchProtectionConfig
from cigate.pipeline.models import CheckState, GateDecision, Review, ReviewState

logger = logging.getLogger(__name__)


class GateCheckResult(BaseModel):
    """Result of a single gate check evaluation."""

    check_type: str
    passed: bool
    error_message: str | None = None
    result_data: dict[str, Any] = {}


# ── Gate Check Context ────────────────────────────────────────────────────────


@dataclass
class GateCheckContext:
    """Runtime context passed to each gate check function.

    Holds the pull request's head commit, the latest status-check states on
    that commit and the latest review of every reviewer.
    """

    # Check configuration
    params: dict[str, Any] = field(default_factory=dict)

    pr_number: int | None = None
    head_sha: str = ""
    statuses: dict[str, CheckState] = field(default_factory=dict)
    reviews: list[Review] = field(default_factory=list)


# ── Gate Check Registry ───────────────────────────────────────────────────────


class GateCheckRegistry:
    """Registry mapping check names to gate check functions.

    Usage::

        registry = GateCheckRegistry()

        @registry.register("my_check")
        def my_check(ctx: GateCheckContext) -> GateCheckResult:
            ...

    Built-in checks are pre-registered at construction time.
    """

    def __init__(self) -> None:
        self._checks: dict[str, Callable] = {}
        self._register_builtin_checks()

    # ── Registration ──────────────────────────────────────────────────────────

    def register(self, name: str) -> Callable[[Callable], Callable]:
        """Decorator to register a gate check function.

        Args:
            name: The check name (e.g. ``approvals_met``).

        Returns:
            Decorator that registers the function and returns it unchanged.
        """

        def decorator(fn: Callable) -> Callable:
            self._checks[name] = fn
            logger.debug("Registered gate check: %s", name)
            return fn

        return decorator

    def register_fn(self, name: str, fn: Callable) -> None:
        """Directly register a gate check function by name."""
        self._checks[name] = fn

    def get(self, name: str) -> Callable | None:
        return self._checks.get(name)

    def list_checks(self) -> list[str]:
        return sorted(self._checks.keys())

    # ── Evaluation ────────────────────────────────────────────────────────────

    async def evaluate(self, check_name: str, ctx: GateCheckContext) -> GateCheckResult:
        """Evaluate a named gate check.

        Unknown checks and checks that raise are reported as failed, so a
        broken check can never open the gate.
        """
        fn = self._checks.get(check_name)
        if fn is None:
            return GateCheckResult(
                check_type=check_name,
                passed=False,
                error_message=f"Unknown gate check: '{check_name}'. "
                f"Available: {self.list_checks()}",
            )

        try:
            if asyncio.iscoroutinefunction(fn):
                return await fn(ctx)
            return fn(ctx)
        except Exception as exc:
            logger.exception("Gate check '%s' raised an exception", check_name)
            return GateCheckResult(
                check_type=check_name,
                passed=False,
                error_message=f"Gate check error: {exc}",
            )

    # ── Built-in Checks ───────────────────────────────────────────────────────

    def _register_builtin_checks(self) -> None:
        self.register_fn("required_status_checks", _check_required_status_checks)
        self.register_fn("approvals_met", _check_approvals_met)
        self.register_fn("code_owner_approved", _check_code_owner_approved)


# ── Built-in Gate Check Implementations ──────────────────────────────────────


def effective_approvals(
    reviews: list[Review], head_sha: str, *, dismiss_stale: bool
) -> list[Review]:
    """Approvals that count toward the gate.

    Only each reviewer's latest approving, blocking or dismissed review
    counts; a later comment leaves it in place. With ``dismiss_stale`` an
    approval counts only if it was given on the current head commit.
    """
    latest: dict[str, Review] = {}
    for review in sorted(reviews, key=lambda r: r.submitted_at):
        if review.state == ReviewState.COMMENTED:
            continue
        latest[review.reviewer] = review

    return [
        r
        for r in latest.values()
        if r.state == ReviewState.APPROVED and (not dismiss_stale or r.commit_sha == head_sha)
    ]


def _check_required_status_checks(ctx: GateCheckContext) -> GateCheckResult:
    """Params:
    checks: Names of status checks that must report success.
    """
    required: list[str] = ctx.params.get("checks", [])
    states = {name: ctx.statuses.get(name) for name in required}
    failing = [name for name, state in states.items() if state != CheckState.SUCCESS]
    passed = not failing
    return GateCheckResult(
        check_type="required_status_checks",
        passed=passed,
        result_data={
            "required": required,
            "states": {n: (s.value if s else "missing") for n, s in states.items()},
        },
        error_message=None if passed else f"Required checks not successful: {failing}",
    )


def _check_approvals_met(ctx: GateCheckContext) -> GateCheckResult:
    """Params:
    count: Required number of approvals (default: 1).
    dismiss_stale: Count only approvals on the head commit (default: true).
    """
    required = ctx.params.get("count", 1)
    approvals = effective_approvals(
        ctx.reviews, ctx.head_sha, dismiss_stale=ctx.params.get("dismiss_stale", True)
    )
    count = len(approvals)
    passed = count >= required
    return GateCheckResult(
        check_type="approvals_met",
        passed=passed,
        result_data={
            "required": required,
            "actual": count,
            "reviewers": [r.reviewer for r in approvals],
        },
        error_message=None if passed else (
            f"PR #{ctx.pr_number} has {count}/{required} required approvals"
        ),
    )


def _check_code_owner_approved(ctx: GateCheckContext) -> GateCheckResult:
    """Params:
    code_owners: Logins whose approval satisfies the code-owner rule.
    dismiss_stale: As for ``approvals_met``.
    """
    owners = set(ctx.params.get("code_owners", []))
    approvals = effective_approvals(
        ctx.reviews, ctx.head_sha, dismiss_stale=ctx.params.get("dismiss_stale", True)
    )
    owner_approvals = [r.reviewer for r in approvals if r.reviewer in owners]
    passed = bool(owner_approvals)
    return GateCheckResult(
        check_type="code_owner_approved",
        passed=passed,
        result_data={"code_owners": sorted(owners), "approved_by": owner_approvals},
        error_message=None if passed else "No approving review from a code owner",
    )


# ── Merge Gate ────────────────────────────────────────────────────────────────


class MergeGate:
    """Branch protection rules evaluated as a conjunction of gate checks.

    Holds configuration only; every evaluation is independent.
    """

    def __init__(
        self,
        protection: BranchProtectionConfig,
        registry: GateCheckRegistry | None = None,
    ):
        self.protection = protection
        self._registry = registry or default_gate_registry

    @property
    def required_checks(self) -> list[str]:
        return list(self.protection.required_status_checks)

    @property
    def required_approvals(self) -> int:
        return self.protection.reviews.required_approving_review_count

    def conditions(self) -> list[tuple[str, dict[str, Any]]]:
        """The (check name, params) pairs the protection rules expand to."""
        reviews = self.protection.reviews
        conditions: list[tuple[str, dict[str, Any]]] = [
            ("required_status_checks", {"checks": self.required_checks}),
            (
                "approvals_met",
                {
                    "count": reviews.required_approving_review_count,
                    "dismiss_stale": reviews.dismiss_stale_reviews,
                },
            ),
        ]
        if reviews.require_code_owner_reviews:
            conditions.append(
                (
                    "code_owner_approved",
                    {
                        "code_owners": reviews.code_owners,
                        "dismiss_stale": reviews.dismiss_stale_reviews,
                    },
                )
            )
        return conditions

    async def evaluate(
        self,
        *,
        pr_number: int | None,
        head_sha: str,
        statuses: dict[str, CheckState],
        reviews: list[Review],
    ) -> GateDecision:
        """Allow iff every condition passes."""
        results: list[GateCheckResult] = []
        for check_name, params in self.conditions():
            ctx = GateCheckContext(
                params=params,
                pr_number=pr_number,
                head_sha=head_sha,
                statuses=statuses,
                reviews=reviews,
            )
            results.append(await self._registry.evaluate(check_name, ctx))

        allowed = all(r.passed for r in results)
        approvals = effective_approvals(
            reviews, head_sha, dismiss_stale=self.protection.reviews.dismiss_stale_reviews
        )
        decision = GateDecision(
            allowed=allowed,
            reasons=[r.error_message or r.check_type for r in results if not r.passed],
            checks={
                name: (statuses[name].value if name in statuses else "missing")
                for name in self.required_checks
            },
            approvals=len(approvals),
            required_approvals=self.required_approvals,
            head_sha=head_sha,
            data={r.check_type: r.result_data for r in results},
        )
        logger.info(
            "Gate for PR #%s at %s: %s%s",
            pr_number,
            head_sha[:12],
            "allow" if allowed else "deny",
            "" if allowed else f" ({'; '.join(decision.reasons)})",
        )
        return decision


# ── Default Registry Instance ─────────────────────────────────────────────────

#: Module-level default registry — import and use directly for simple cases.
default_gate_registry = GateCheckRegistry()
