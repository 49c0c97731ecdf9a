"""Failure kinds and the action each one is handled with."""

from __future__ import annotations

from enum import Enum


class FailureType(str, Enum):
    PARSE_ERROR = "parse-error"
    TEST_REGRESSION = "test-regression"
    TEST_FLAKE = "test-flake"
    TEST_PREEXISTING = "test-preexisting"
    TOOL_TIMEOUT = "tool-timeout"
    BUDGET_THRESHOLD = "budget-threshold"
    REVIEW_MAX_RETRIES = "review-max-retries"
    VALIDATION_FAILURE = "validation-failure"
    IMPL_CRASH = "impl-crash"


class FailureAction(str, Enum):
    AUTO_RETRY = "auto-retry"
    WARN_CONTINUE = "warn-continue"
    IGNORE = "ignore"
    STOP_SHOW_DIFF = "stop-show-diff"
    RETRY_THEN_ESCALATE = "retry-then-escalate"
    CHECKPOINT = "checkpoint"
    ESCALATE = "escalate"


DEFAULT_FAILURE_ACTIONS: dict[FailureType, FailureAction] = {
    FailureType.PARSE_ERROR: FailureAction.AUTO_RETRY,
    FailureType.TEST_REGRESSION: FailureAction.STOP_SHOW_DIFF,
    FailureType.TEST_FLAKE: FailureAction.WARN_CONTINUE,
    FailureType.TEST_PREEXISTING: FailureAction.IGNORE,
    FailureType.TOOL_TIMEOUT: FailureAction.RETRY_THEN_ESCALATE,
    FailureType.BUDGET_THRESHOLD: FailureAction.CHECKPOINT,
    FailureType.REVIEW_MAX_RETRIES: FailureAction.ESCALATE,
    FailureType.VALIDATION_FAILURE: FailureAction.RETRY_THEN_ESCALATE,
    FailureType.IMPL_CRASH: FailureAction.RETRY_THEN_ESCALATE,
}

# Automatic retries allowed per task and failure kind before escalating.
RETRY_LIMITS: dict[FailureAction, int] = {
    FailureAction.AUTO_RETRY: 3,
    FailureAction.RETRY_THEN_ESCALATE: 1,
}


def resolve_failure_action(
    failure_type: FailureType,
    overrides: dict[FailureType, FailureAction] | None = None,
) -> FailureAction:
    """Return the configured action for a failure kind, falling back to the default."""
    if overrides and failure_type in overrides:
        return overrides[failure_type]
    return DEFAULT_FAILURE_ACTIONS[failure_type]
