"""Tests for trigger evaluation."""

import pytest

from cigate.config import PullRequestTriggerConfig, PushTriggerConfig, TriggersConfig
from cigate.errors import TriggerMismatch
from cigate.models import EventKind
from cigate.pipeline.triggers import TriggerEvaluator


@pytest.fixture
def evaluator():
    return TriggerEvaluator(TriggersConfig(), protected_branch="main")


class TestDefaultTriggers:
    @pytest.mark.parametrize("branch", ["main", "feature/x", "fix-1", "release/2.0"])
    def test_push_matches_every_branch(self, evaluator, branch):
        assert evaluator.matches(EventKind.PUSH, branch)

    def test_pull_request_matches_protected_base_only(self, evaluator):
        assert evaluator.matches(EventKind.PULL_REQUEST, "main")
        assert not evaluator.matches(EventKind.PULL_REQUEST, "develop")
        assert not evaluator.matches(EventKind.PULL_REQUEST, "feature/x")

    def test_accepts_string_kind(self, evaluator):
        assert evaluator.matches("push", "main")
        assert evaluator.matches("pull_request", "main")

    def test_empty_branch_never_matches(self, evaluator):
        assert not evaluator.matches(EventKind.PUSH, "")
        assert not evaluator.matches(EventKind.PULL_REQUEST, "")


class TestConfiguredTriggers:
    def test_push_branch_filter(self):
        evaluator = TriggerEvaluator(
            TriggersConfig(push=PushTriggerConfig(branches=["main", "release/*"])),
            protected_branch="main",
        )
        assert evaluator.matches(EventKind.PUSH, "main")
        assert evaluator.matches(EventKind.PUSH, "release/1.2")
        assert not evaluator.matches(EventKind.PUSH, "feature/x")

    def test_disabled_triggers(self):
        evaluator = TriggerEvaluator(
            TriggersConfig(
                push=PushTriggerConfig(enabled=False),
                pull_request=PullRequestTriggerConfig(enabled=False),
            ),
            protected_branch="main",
        )
        assert not evaluator.matches(EventKind.PUSH, "main")
        assert not evaluator.matches(EventKind.PULL_REQUEST, "main")

    def test_pull_request_branch_patterns(self):
        evaluator = TriggerEvaluator(
            TriggersConfig(pull_request=PullRequestTriggerConfig(branches=["main", "release/*"])),
            protected_branch="main",
        )
        assert evaluator.matches(EventKind.PULL_REQUEST, "release/3.0")
        assert not evaluator.matches(EventKind.PULL_REQUEST, "develop")

    def test_protected_branch_follows_configuration(self):
        evaluator = TriggerEvaluator(TriggersConfig(), protected_branch="trunk")
        assert evaluator.matches(EventKind.PULL_REQUEST, "trunk")
        assert not evaluator.matches(EventKind.PULL_REQUEST, "main")


class TestCheck:
    def test_check_passes_on_match(self, evaluator):
        evaluator.check(EventKind.PUSH, "feature/x")

    def test_check_raises_trigger_mismatch(self, evaluator):
        with pytest.raises(TriggerMismatch) as exc_info:
            evaluator.check(EventKind.PULL_REQUEST, "develop")
        assert exc_info.value.code == "TRIGGER_MISMATCH"
        assert exc_info.value.branch == "develop"
        assert "pull_request" in exc_info.value.message
