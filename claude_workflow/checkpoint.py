"""Checkpoint evaluation: decide when to pause execution and what the operator may do."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel

from .models import ExecutionMode, TaskExecState, TaskStatus, WorkflowState
from .plan_adjust import PlanAdjustment, parse_adjustment

if TYPE_CHECKING:
    from .config import CostConfig
    from .interaction import UserInterface

CRITICAL_BUDGET_RATIO = 0.9


class CheckpointTriggerType(str, Enum):
    SCHEDULED = "scheduled"
    BUDGET_WARNING = "budget-warning"
    BUDGET_CRITICAL = "budget-critical"
    TEST_FAILURE = "test-failure"
    FAILURE = "failure"


class CheckpointTrigger(BaseModel):
    type: CheckpointTriggerType
    message: str


class CheckpointStats(BaseModel):
    tasks_completed: int
    tasks_total: int
    cost_usd: float
    estimated_remaining_usd: float


class CheckpointResolution(str, Enum):
    CONTINUE = "continue"
    ADJUST = "adjust"
    ABORT = "abort"


CHECKPOINT_OPTIONS = {
    "Continue": CheckpointResolution.CONTINUE,
    "Adjust plan": CheckpointResolution.ADJUST,
    "Abort": CheckpointResolution.ABORT,
}


def _has_open_tasks(state: WorkflowState) -> bool:
    return any(not t.is_terminal for t in state.tasks[state.current_task_index:])


def evaluate_checkpoint_triggers(
    state: WorkflowState,
    costs: CostConfig,
    validation_failed: bool = False,
) -> list[CheckpointTrigger]:
    """Triggers that fire after a task completes. Empty when no work remains."""
    if not _has_open_tasks(state):
        return []

    triggers: list[CheckpointTrigger] = []
    spent = state.total_cost_usd
    if spent >= costs.hard_limit_usd * CRITICAL_BUDGET_RATIO:
        triggers.append(CheckpointTrigger(
            type=CheckpointTriggerType.BUDGET_CRITICAL,
            message=f"Budget critical: ${spent:.2f} spent (hard limit: ${costs.hard_limit_usd:.2f})",
        ))
    elif spent >= costs.warn_at_usd:
        triggers.append(CheckpointTrigger(
            type=CheckpointTriggerType.BUDGET_WARNING,
            message=f"Budget warning: ${spent:.2f} spent (warn threshold: ${costs.warn_at_usd:.2f})",
        ))

    if state.config.execution_mode == ExecutionMode.CHECKPOINT:
        triggers.append(CheckpointTrigger(
            type=CheckpointTriggerType.SCHEDULED,
            message="Scheduled checkpoint after task completion",
        ))

    if validation_failed:
        triggers.append(CheckpointTrigger(
            type=CheckpointTriggerType.TEST_FAILURE,
            message="Cross-task validation reported failing tests",
        ))

    return triggers


def compute_checkpoint_stats(state: WorkflowState) -> CheckpointStats:
    completed = state.completed_count
    remaining = sum(1 for t in state.tasks if not t.is_terminal)
    average = state.total_cost_usd / completed if completed else 0.0
    return CheckpointStats(
        tasks_completed=completed,
        tasks_total=len(state.tasks),
        cost_usd=state.total_cost_usd,
        estimated_remaining_usd=average * remaining,
    )


def format_checkpoint_message(
    triggers: list[CheckpointTrigger],
    stats: CheckpointStats,
) -> str:
    header = (
        f"Checkpoint: {stats.tasks_completed}/{stats.tasks_total} tasks done | "
        f"${stats.cost_usd:.2f} spent | ~${stats.estimated_remaining_usd:.2f} remaining"
    )
    trigger_lines = "\n".join(f"  • {t.message}" for t in triggers)
    return f"{header}\nTrigger:\n{trigger_lines}"


async def present_checkpoint(
    triggers: list[CheckpointTrigger],
    stats: CheckpointStats,
    ui: UserInterface | None,
) -> CheckpointResolution:
    """Ask the operator how to proceed. No UI or no answer means continue."""
    if ui is None:
        return CheckpointResolution.CONTINUE
    choice = await ui.select(format_checkpoint_message(triggers, stats), list(CHECKPOINT_OPTIONS))
    return CHECKPOINT_OPTIONS.get(choice or "", CheckpointResolution.CONTINUE)


def format_task_list(tasks: list[TaskExecState]) -> str:
    lines = []
    for task in tasks:
        marker = "x" if task.status == TaskStatus.COMPLETE else " "
        suffix = "" if task.status in (TaskStatus.PENDING, TaskStatus.COMPLETE) else f" ({task.status.value})"
        lines.append(f"  [{marker}] #{task.id}: {task.title}{suffix}")
    return "\n".join(lines)


async def present_plan_revision(
    tasks: list[TaskExecState],
    ui: UserInterface | None,
) -> PlanAdjustment | None:
    """Collect drop/skip/reorder edits. None when the operator changes nothing."""
    if ui is None:
        return None
    ui.notify("Current plan:\n" + format_task_list(tasks))
    drop = await ui.input("Task ids to drop (comma-separated, blank for none)")
    skip = await ui.input("Task ids to skip (comma-separated, blank for none)")
    order = await ui.input("New task order by id (blank to keep)")
    adjustment = parse_adjustment(drop, skip, order)
    return None if adjustment.is_empty else adjustment
