"""Plan-write phase: plan the next queued batch once the current one is executed."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..models import BatchRecord, Phase, TaskStatus, WorkflowState
from ..prompts import build_planner_prompt
from .plan import adopt_plan, draft_plan

if TYPE_CHECKING:
    from ..context import ExecutionContext


def summarize_batch(state: WorkflowState) -> str:
    """Context handed to the next batch's planner."""
    lines = [f"Previous batch: {state.batch_description or state.user_description}"]
    for task in state.tasks:
        line = f"- #{task.id} {task.title} [{task.status.value}]"
        if task.status == TaskStatus.COMPLETE and task.summary and task.summary.changed_files:
            line += f" files: {', '.join(task.summary.changed_files)}"
        lines.append(line)
    return "\n".join(lines)


async def run_plan_write_phase(state: WorkflowState, ctx: ExecutionContext) -> WorkflowState:
    queued = ctx.queue.peek()
    if queued is None:
        state.phase = Phase.FINALIZE
        return state

    ctx.notify(f"Planning queued batch: {queued.title}")
    parent_context = queued.parent_context or summarize_batch(state)
    prompt = build_planner_prompt(queued.description, "", parent_context)

    drafted = await draft_plan(state, ctx, prompt)
    if drafted is None:
        # The batch stays queued so a resumed run can try again
        state.error = f"Planning queued batch '{queued.title}' failed: no parseable tasks"
        return state

    state.completed_batches.append(BatchRecord(
        description=state.batch_description or state.user_description,
        tasks=state.tasks,
    ))
    ctx.queue.dequeue()

    state.batch_description = queued.description
    state.parent_context = parent_context
    state.plan_path = None
    state.plan_review_cycles = 0
    # A budget override covers one batch
    state.budget_acknowledged = False
    adopt_plan(state, ctx, *drafted)
    state.phase = Phase.PLAN_REVIEW
    return state
