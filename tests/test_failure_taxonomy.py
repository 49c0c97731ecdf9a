"""Tests for failure kinds and their actions."""

from __future__ import annotations

import pytest

from claude_workflow.failure_taxonomy import (
    DEFAULT_FAILURE_ACTIONS,
    FailureAction,
    FailureType,
    resolve_failure_action,
)


class TestResolveFailureAction:
    def test_every_kind_has_a_default(self):
        assert set(DEFAULT_FAILURE_ACTIONS) == set(FailureType)

    @pytest.mark.parametrize("failure_type, expected", [
        (FailureType.PARSE_ERROR, FailureAction.AUTO_RETRY),
        (FailureType.TEST_REGRESSION, FailureAction.STOP_SHOW_DIFF),
        (FailureType.TEST_FLAKE, FailureAction.WARN_CONTINUE),
        (FailureType.TEST_PREEXISTING, FailureAction.IGNORE),
        (FailureType.TOOL_TIMEOUT, FailureAction.RETRY_THEN_ESCALATE),
        (FailureType.BUDGET_THRESHOLD, FailureAction.CHECKPOINT),
        (FailureType.REVIEW_MAX_RETRIES, FailureAction.ESCALATE),
    ])
    def test_defaults(self, failure_type, expected):
        assert resolve_failure_action(failure_type) == expected

    def test_override_wins(self):
        overrides = {FailureType.TEST_FLAKE: FailureAction.ESCALATE}
        assert resolve_failure_action(FailureType.TEST_FLAKE, overrides) == FailureAction.ESCALATE
        assert resolve_failure_action(FailureType.TOOL_TIMEOUT, overrides) == FailureAction.RETRY_THEN_ESCALATE
