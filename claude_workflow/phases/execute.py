"""Execute phase: implement, gate, review and complete each planned task."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ..checkpoint import (
    CheckpointResolution,
    CheckpointTrigger,
    CheckpointTriggerType,
    compute_checkpoint_stats,
    evaluate_checkpoint_triggers,
    present_checkpoint,
    present_plan_revision,
)
from ..failure_taxonomy import RETRY_LIMITS, FailureAction, FailureType, resolve_failure_action
from ..git_utils import compute_changed_files, diff_stat, get_current_sha, reset_to_sha
from ..interaction import confirm_budget_override
from ..models import (
    ExecutionMode,
    Phase,
    ProgressEntry,
    ReviewMode,
    ReviewVerdict,
    TaskExecState,
    TaskStatus,
    TaskSummary,
    TestBaseline,
    WorkflowState,
    utcnow,
)
from ..plan_adjust import apply_plan_adjustment, first_open_index
from ..prompts import (
    build_failure_fix_prompt,
    build_fix_prompt,
    build_implement_prompt,
    build_review_prompt,
)
from ..review_parser import format_findings, has_critical_findings, parse_review_output
from ..state import StateManager
from ..test_baseline import capture_baseline
from ..validation import run_cross_task_validation, run_validation, should_run_validation

if TYPE_CHECKING:
    from ..context import ExecutionContext

logger = logging.getLogger("workflow")

ESCALATION_OPTIONS = ["Retry", "Rollback", "Skip", "Abort"]


class TaskOutcome(str, Enum):
    CONTINUE = "continue"    # proceed with the task
    RETRY = "retry"          # repeat the step that failed
    RESTART = "restart"      # run the task again from implementation
    SKIP = "skip"
    ESCALATED = "escalated"
    ADJUSTED = "adjusted"    # task list changed; re-select the active task
    PAUSED = "paused"        # waiting on a pending interaction
    ABORT = "abort"


@dataclass
class _TaskRun:
    """Observations carried from a task's gates to its completion."""

    next_baseline: TestBaseline | None = None
    validation_failed: bool = False
    # Failing tests the task leaves behind (tolerated, skipped or escalated)
    unresolved_failures: list[str] = field(default_factory=list)

    def advance_baseline(self, state: WorkflowState) -> None:
        """Adopt this run's baseline, counting unresolved failures as known."""
        if self.next_baseline is None:
            return
        known = self.next_baseline.known_failures
        known.extend(n for n in self.unresolved_failures if n not in known)
        state.test_baseline = self.next_baseline


# --- Failure routing ---


async def handle_failure(
    state: WorkflowState,
    ctx: ExecutionContext,
    task: TaskExecState,
    failure_type: FailureType,
    reason: str,
) -> TaskOutcome:
    """Apply the configured action for ``failure_type`` and report what the caller should do."""
    action = resolve_failure_action(failure_type, ctx.config.failure_actions)
    logger.info(f"{failure_type.value} -> {action.value}: {reason}", extra={"task_id": task.id})

    if action in (FailureAction.AUTO_RETRY, FailureAction.RETRY_THEN_ESCALATE):
        limit = RETRY_LIMITS[action]
        used = task.failure_retries.get(failure_type.value, 0)
        if used < limit:
            task.failure_retries[failure_type.value] = used + 1
            ctx.notify(f"{reason} (automatic retry {used + 1}/{limit})", "warning")
            ctx.save(state)
            return TaskOutcome.RETRY
        return await escalate(state, ctx, task, failure_type, reason)

    if action == FailureAction.WARN_CONTINUE:
        ctx.notify(reason, "warning")
        return TaskOutcome.CONTINUE

    if action == FailureAction.IGNORE:
        logger.debug(f"Ignoring {failure_type.value}: {reason}")
        return TaskOutcome.CONTINUE

    if action == FailureAction.STOP_SHOW_DIFF:
        stat = diff_stat(ctx.config.project_dir, task.git_sha_before_impl)
        ctx.notify(f"{reason}\n\nChanges since task start:\n{stat or '(no diff)'}", "warning")
        return await escalate(state, ctx, task, failure_type, reason)

    if action == FailureAction.CHECKPOINT:
        trigger = CheckpointTrigger(type=CheckpointTriggerType.FAILURE, message=reason)
        return await _resolve_checkpoint(state, ctx, [trigger])

    if action == FailureAction.ESCALATE:
        return await escalate(state, ctx, task, failure_type, reason)

    raise ValueError(f"Unhandled failure action: {action}")


async def escalate(
    state: WorkflowState,
    ctx: ExecutionContext,
    task: TaskExecState,
    failure_type: FailureType,
    reason: str,
) -> TaskOutcome:
    """Hand the task to the operator. Without an answer the task is marked escalated."""
    if ctx.ui is None:
        ctx.notify(f"Task #{task.id} escalated: {reason}", "warning")
        return TaskOutcome.ESCALATED

    choice = await ctx.ui.select(
        f'Task #{task.id} "{task.title}" needs attention: {reason}',
        ESCALATION_OPTIONS,
    )
    if choice == "Retry":
        task.failure_retries.pop(failure_type.value, None)
        return TaskOutcome.RETRY
    if choice == "Rollback":
        if task.git_sha_before_impl:
            cwd = ctx.config.project_dir
            files = compute_changed_files(cwd, task.git_sha_before_impl)
            ctx.notify(
                f"Rolling back task #{task.id}: reverting {len(files)} files "
                f"to {task.git_sha_before_impl[:7]}"
            )
            reset_to_sha(cwd, task.git_sha_before_impl)
        task.reviews_passed = []
        task.reviews_failed = []
        task.fix_attempts = 0
        task.failure_retries = {}
        return TaskOutcome.RESTART
    if choice == "Skip":
        return TaskOutcome.SKIP
    if choice == "Abort":
        return TaskOutcome.ABORT

    ctx.notify(f"Task #{task.id} escalated: {reason}", "warning")
    return TaskOutcome.ESCALATED


async def _resolve_checkpoint(
    state: WorkflowState,
    ctx: ExecutionContext,
    triggers: list[CheckpointTrigger],
) -> TaskOutcome:
    resolution = await present_checkpoint(triggers, compute_checkpoint_stats(state), ctx.ui)
    if resolution == CheckpointResolution.ABORT:
        return TaskOutcome.ABORT
    if resolution == CheckpointResolution.ADJUST:
        adjustment = await present_plan_revision(state.tasks, ctx.ui)
        if adjustment is not None:
            state.tasks = apply_plan_adjustment(state.tasks, adjustment)
            state.current_task_index = first_open_index(state.tasks)
            ctx.save(state)
            return TaskOutcome.ADJUSTED
    return TaskOutcome.CONTINUE


# --- Gates ---


async def _budget_gate(state: WorkflowState, ctx: ExecutionContext) -> TaskOutcome:
    limit = ctx.config.costs.hard_limit_usd
    if state.budget_acknowledged or state.total_cost_usd < limit:
        return TaskOutcome.CONTINUE

    reason = f"Spend ${state.total_cost_usd:.2f} reached the hard limit of ${limit:.2f}"
    action = resolve_failure_action(FailureType.BUDGET_THRESHOLD, ctx.config.failure_actions)

    if action in (FailureAction.WARN_CONTINUE, FailureAction.IGNORE):
        ctx.notify(reason, "warning")
        state.budget_acknowledged = True
        return TaskOutcome.CONTINUE

    if action == FailureAction.CHECKPOINT and ctx.ui is not None:
        trigger = CheckpointTrigger(type=CheckpointTriggerType.BUDGET_CRITICAL, message=reason)
        outcome = await _resolve_checkpoint(state, ctx, [trigger])
        if outcome != TaskOutcome.ABORT:
            state.budget_acknowledged = True
        return outcome

    # Everything else needs an explicit operator decision that survives restarts
    ctx.notify(reason, "warning")
    state.pending_interaction = confirm_budget_override(state.total_cost_usd, limit)
    return TaskOutcome.PAUSED


async def _implement(state: WorkflowState, ctx: ExecutionContext, task: TaskExecState) -> TaskOutcome:
    if task.git_sha_before_impl is None:
        task.git_sha_before_impl = get_current_sha(ctx.config.project_dir) or None

    while True:
        task.status = TaskStatus.IMPLEMENTING
        ctx.save(state)
        result = await ctx.dispatch(
            state, "implementer", build_implement_prompt(task, state.parent_context),
        )
        if result.ok:
            return TaskOutcome.CONTINUE

        if result.timed_out:
            failure = FailureType.TOOL_TIMEOUT
            reason = result.error_message or "Implementer stalled"
        else:
            failure = FailureType.IMPL_CRASH
            reason = result.error_message or f"Implementer exited with code {result.exit_code}"
        outcome = await handle_failure(state, ctx, task, failure, reason)
        if outcome != TaskOutcome.RETRY:
            return outcome


async def _validation_gate(state: WorkflowState, ctx: ExecutionContext, task: TaskExecState) -> TaskOutcome:
    command = ctx.config.validation_command
    if not command:
        return TaskOutcome.CONTINUE

    auto_fixed = False
    while True:
        outcome = await run_validation(command, ctx.config.project_dir, ctx.config.test_timeout_seconds)
        if outcome.success:
            return TaskOutcome.CONTINUE

        failure = f"`{command}` failed:\n{outcome.error}"
        if auto_fixed:
            result = await handle_failure(
                state, ctx, task, FailureType.VALIDATION_FAILURE,
                f"Validation still failing after auto-fix: {outcome.error}",
            )
            if result != TaskOutcome.RETRY:
                return result
        else:
            ctx.notify("Validation failed, attempting auto-fix", "warning")
            auto_fixed = True

        task.status = TaskStatus.FIXING
        ctx.save(state)
        await ctx.dispatch(state, "implementer", build_failure_fix_prompt(task, failure))


async def _regression_gate(
    state: WorkflowState,
    ctx: ExecutionContext,
    task: TaskExecState,
    run: _TaskRun,
) -> TaskOutcome:
    config = ctx.config
    if not config.test_command or state.test_baseline is None:
        return TaskOutcome.CONTINUE
    if not should_run_validation(
        config.validation_cadence, config.validation_interval, state.completed_count + 1,
    ):
        return TaskOutcome.CONTINUE

    while True:
        result = await run_cross_task_validation(
            config.test_command,
            state.test_baseline,
            config.project_dir,
            config.flake_policy,
            config.test_timeout_seconds,
        )
        run.next_baseline = result.next_baseline
        run.unresolved_failures = [r.name for r in result.blocking_failures]

        pre_existing = [r.name for r in result.classified.pre_existing]
        if pre_existing:
            outcome = await handle_failure(
                state, ctx, task, FailureType.TEST_PREEXISTING,
                f"{len(pre_existing)} pre-existing test failure(s): {', '.join(pre_existing)}",
            )
            if outcome == TaskOutcome.RETRY:
                continue
            if outcome != TaskOutcome.CONTINUE:
                return outcome

        if result.flaky_tests:
            outcome = await handle_failure(
                state, ctx, task, FailureType.TEST_FLAKE,
                f"Detected flaky tests: {', '.join(result.flaky_tests)}",
            )
            if outcome == TaskOutcome.RETRY:
                continue
            if outcome != TaskOutcome.CONTINUE:
                return outcome

        if result.passed:
            return TaskOutcome.CONTINUE

        outcome = await handle_failure(
            state, ctx, task, FailureType.TEST_REGRESSION,
            f"Task introduced test regression: {', '.join(run.unresolved_failures)}",
        )
        if outcome == TaskOutcome.CONTINUE:
            run.validation_failed = True
            return outcome
        if outcome != TaskOutcome.RETRY:
            return outcome

        details = "\n".join(
            f"- {r.name}" + (f": {r.output}" if r.output else "") for r in result.blocking_failures
        )
        task.status = TaskStatus.FIXING
        ctx.save(state)
        await ctx.dispatch(
            state, "implementer",
            build_failure_fix_prompt(task, f"These tests now fail:\n{details}"),
        )


def _available_reviewers(ctx: ExecutionContext, names: list[str], kind: str) -> list[str]:
    for name in names:
        if name not in ctx.agents:
            ctx.notify(f"{kind} reviewer {name} is not available; skipping it", "warning")
    return [name for name in names if name in ctx.agents]


async def _review_loop(state: WorkflowState, ctx: ExecutionContext, task: TaskExecState) -> TaskOutcome:
    """Required reviewers, one at a time. Each must pass before the next runs."""
    reviewers = _available_reviewers(ctx, ctx.config.review.required, "Required")
    if not reviewers:
        return TaskOutcome.CONTINUE

    iterative = state.config.review_mode != ReviewMode.SINGLE_PASS
    max_cycles = state.config.max_task_review_cycles
    cwd = ctx.config.project_dir

    for reviewer in reviewers:
        while True:
            task.status = TaskStatus.REVIEWING
            ctx.save(state)
            changed = compute_changed_files(cwd, task.git_sha_before_impl)
            result = await ctx.dispatch(state, reviewer, build_review_prompt(reviewer, task, changed))
            if result.write_attempted:
                ctx.notify(f"{reviewer} attempted to modify files; its verdict may be tainted", "warning")
            review = parse_review_output(result.final_output)

            if review.verdict == ReviewVerdict.PASS:
                task.record_review(reviewer, True)
                break

            if review.verdict == ReviewVerdict.INCONCLUSIVE:
                outcome = await handle_failure(
                    state, ctx, task, FailureType.PARSE_ERROR,
                    f"{reviewer} review inconclusive: {review.parse_error}",
                )
                if outcome == TaskOutcome.RETRY:
                    continue
                if outcome == TaskOutcome.CONTINUE:
                    break
                return outcome

            task.record_review(reviewer, False)
            findings = format_findings(review.findings)
            if not iterative:
                ctx.notify(f"{reviewer} findings for task #{task.id} (not fixed):\n{findings}", "warning")
                break

            if task.fix_attempts >= max_cycles:
                outcome = await handle_failure(
                    state, ctx, task, FailureType.REVIEW_MAX_RETRIES,
                    f"{reviewer} still failing after {task.fix_attempts} fix cycles",
                )
                if outcome == TaskOutcome.RETRY:
                    task.fix_attempts = 0
                    continue
                if outcome == TaskOutcome.CONTINUE:
                    break
                return outcome

            task.status = TaskStatus.FIXING
            task.fix_attempts += 1
            ctx.save(state)
            await ctx.dispatch(
                state, "implementer", build_fix_prompt(task, f"## {reviewer}\n{findings}"),
            )

    return TaskOutcome.CONTINUE


async def _optional_reviews(state: WorkflowState, ctx: ExecutionContext, task: TaskExecState) -> None:
    """Advisory reviewers: findings are reported, never gating."""
    reviewers = _available_reviewers(ctx, ctx.config.review.optional, "Optional")
    if not reviewers:
        return

    changed = compute_changed_files(ctx.config.project_dir, task.git_sha_before_impl)
    jobs = [(name, build_review_prompt(name, task, changed)) for name in reviewers]
    if ctx.config.review.parallel_optional:
        results = await ctx.dispatch_parallel(state, jobs)
    else:
        results = [await ctx.dispatch(state, name, prompt) for name, prompt in jobs]

    for name, result in zip(reviewers, results):
        review = parse_review_output(result.final_output)
        if review.verdict == ReviewVerdict.PASS:
            task.record_review(name, True)
        elif review.verdict == ReviewVerdict.FAIL:
            task.record_review(name, False)
            label = "critical findings" if has_critical_findings(review.findings) else "findings"
            ctx.notify(
                f"{name} {label} for task #{task.id} (advisory):\n{format_findings(review.findings)}",
                "warning",
            )
        else:
            logger.info(f"{name} review inconclusive for task #{task.id}: {review.parse_error}")


async def _run_task(
    state: WorkflowState,
    ctx: ExecutionContext,
    task: TaskExecState,
    run: _TaskRun,
) -> TaskOutcome:
    outcome = await _implement(state, ctx, task)
    if outcome != TaskOutcome.CONTINUE:
        return outcome
    outcome = await _validation_gate(state, ctx, task)
    if outcome != TaskOutcome.CONTINUE:
        return outcome
    outcome = await _regression_gate(state, ctx, task, run)
    if outcome != TaskOutcome.CONTINUE:
        return outcome
    outcome = await _review_loop(state, ctx, task)
    if outcome != TaskOutcome.CONTINUE:
        return outcome
    await _optional_reviews(state, ctx, task)
    return TaskOutcome.CONTINUE


# --- Task completion ---


def _finish_task(
    state: WorkflowState,
    ctx: ExecutionContext,
    task: TaskExecState,
    status: TaskStatus,
    cost_usd: float,
    error: str | None = None,
) -> None:
    changed = compute_changed_files(ctx.config.project_dir, task.git_sha_before_impl)
    task.status = status
    task.summary = TaskSummary(title=task.title, status=status.value, changed_files=changed)
    state.current_task_index += 1
    ctx.save(state)

    if status == TaskStatus.COMPLETE:
        summary = f"Completed after {task.fix_attempts} fix cycle(s)"
    else:
        summary = f"Task {status.value}"
    ctx.state_manager.append_progress(ProgressEntry(
        timestamp=utcnow(),
        task_id=task.id,
        task_title=task.title,
        status=status,
        summary=summary,
        cost_usd=cost_usd,
        changed_files=changed,
        error=error,
    ))
    ctx.notify(f"Task #{task.id} {status.value}. {StateManager.get_progress_summary(state)}")


def _should_pause(state: WorkflowState, ctx: ExecutionContext, completed_this_run: int) -> bool:
    if first_open_index(state.tasks) >= len(state.tasks):
        return False
    mode = state.config.execution_mode
    if mode == ExecutionMode.CHECKPOINT:
        # An interactive operator already saw the scheduled checkpoint
        return ctx.ui is None
    if mode == ExecutionMode.BATCH:
        return completed_this_run >= (state.config.batch_size or 3)
    return False


async def run_execute_phase(state: WorkflowState, ctx: ExecutionContext) -> WorkflowState:
    config = ctx.config
    if config.test_command and state.test_baseline is None:
        ctx.notify("Capturing test baseline...")
        state.test_baseline = await capture_baseline(
            config.test_command, config.project_dir, config.test_timeout_seconds,
        )
        ctx.save(state)

    completed_this_run = 0
    while state.current_task_index < len(state.tasks):
        task = state.tasks[state.current_task_index]
        if task.is_terminal:
            state.current_task_index += 1
            continue

        outcome = await _budget_gate(state, ctx)
        if outcome == TaskOutcome.PAUSED:
            return state
        if outcome == TaskOutcome.ABORT:
            state.error = "Aborted by operator at the budget checkpoint"
            return state
        if outcome == TaskOutcome.ADJUSTED:
            continue

        logger.info(
            f"Task {state.current_task_index + 1}/{len(state.tasks)}: {task.title}",
            extra={"task_id": task.id},
        )
        cost_before = state.total_cost_usd
        run = _TaskRun()
        outcome = await _run_task(state, ctx, task, run)
        task_cost = state.total_cost_usd - cost_before

        if outcome == TaskOutcome.ABORT:
            state.error = f"Aborted by operator during task #{task.id}"
            return state
        if outcome == TaskOutcome.ADJUSTED:
            continue
        if outcome in (TaskOutcome.RESTART, TaskOutcome.RETRY):
            task.status = TaskStatus.PENDING
            ctx.save(state)
            continue
        if outcome == TaskOutcome.SKIP:
            run.advance_baseline(state)
            _finish_task(state, ctx, task, TaskStatus.SKIPPED, task_cost)
            continue
        if outcome == TaskOutcome.ESCALATED:
            # Later tasks are judged against the tree this task left behind
            run.advance_baseline(state)
            _finish_task(state, ctx, task, TaskStatus.ESCALATED, task_cost, error="Escalated")
            continue
        if outcome == TaskOutcome.PAUSED:
            return state

        run.advance_baseline(state)
        _finish_task(state, ctx, task, TaskStatus.COMPLETE, task_cost)
        completed_this_run += 1

        triggers = evaluate_checkpoint_triggers(state, config.costs, run.validation_failed)
        if triggers:
            outcome = await _resolve_checkpoint(state, ctx, triggers)
            if outcome == TaskOutcome.ABORT:
                state.error = f"Aborted by operator at the checkpoint after task #{task.id}"
                return state

        if _should_pause(state, ctx, completed_this_run):
            ctx.notify(f"Pausing after {completed_this_run} task(s) ({state.config.execution_mode.value} mode)")
            return state

    if config.continue_queued_batches and len(ctx.queue) > 0:
        state.phase = Phase.PLAN_WRITE
    else:
        state.phase = Phase.FINALIZE
    return state
