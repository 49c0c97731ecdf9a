"""Plan-draft phase: survey the codebase and have the planner write the task list."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from ..models import Phase, TaskExecState, WorkflowState, utcnow
from ..plan_parser import TASK_BLOCK_TAG, parse_plan
from ..prompts import build_plan_revision_prompt, build_planner_prompt, build_scout_prompt

if TYPE_CHECKING:
    from ..context import ExecutionContext

logger = logging.getLogger("workflow")

MAX_PLAN_ATTEMPTS = 2

_RETRY_REMINDER = (
    f"\n\nIMPORTANT: your previous reply had no parseable tasks. The plan MUST "
    f"contain a ```{TASK_BLOCK_TAG} YAML block with at least one task."
)


def _slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:40].rstrip("-") or "plan"


async def draft_plan(
    state: WorkflowState,
    ctx: ExecutionContext,
    prompt: str,
) -> tuple[list[TaskExecState], str] | None:
    """Dispatch the planner until its reply yields tasks. Returns (tasks, plan text) or None."""
    for attempt in range(MAX_PLAN_ATTEMPTS):
        task = prompt if attempt == 0 else prompt + _RETRY_REMINDER
        result = await ctx.dispatch(state, "planner", task)
        content = result.final_output
        tasks, source = parse_plan(content)
        if tasks:
            logger.info(f"Planner produced {len(tasks)} tasks ({source})")
            return tasks, content
        ctx.notify(f"No tasks found in plan (attempt {attempt + 1}/{MAX_PLAN_ATTEMPTS})", "warning")
    return None


def adopt_plan(
    state: WorkflowState,
    ctx: ExecutionContext,
    tasks: list[TaskExecState],
    content: str,
) -> None:
    """Write the plan under ``plans_dir`` and make its tasks the active task list."""
    if state.plan_path is None:
        title = state.batch_description or state.user_description
        name = f"{utcnow().strftime('%Y-%m-%d')}-{_slugify(title)}.md"
        state.plan_path = str(ctx.config.plans_dir / name)

    path = ctx.config.project_dir / state.plan_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)

    state.plan_content = content
    state.tasks = tasks
    state.current_task_index = 0
    ctx.notify(f"Plan written to {state.plan_path} with {len(tasks)} tasks")


async def run_plan_draft_phase(state: WorkflowState, ctx: ExecutionContext) -> WorkflowState:
    description = state.batch_description or state.user_description

    if state.revision_feedback and state.plan_content:
        prompt = build_plan_revision_prompt(description, state.plan_content, state.revision_feedback)
    else:
        scout_output = ""
        if "scout" in ctx.agents:
            ctx.notify("Surveying the codebase...")
            result = await ctx.dispatch(state, "scout", build_scout_prompt(description))
            scout_output = result.final_output
        prompt = build_planner_prompt(description, scout_output, state.parent_context)

    drafted = await draft_plan(state, ctx, prompt)
    if drafted is None:
        state.error = f"Planning failed: no parseable tasks after {MAX_PLAN_ATTEMPTS} attempts"
        return state

    adopt_plan(state, ctx, *drafted)
    state.revision_feedback = None
    state.phase = Phase.PLAN_REVIEW
    return state
