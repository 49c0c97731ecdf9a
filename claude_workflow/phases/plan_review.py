"""Plan-review phase: reviewers critique the plan, the planner revises, the operator approves."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..interaction import confirm_plan_approval
from ..models import ReviewResult, ReviewVerdict, WorkflowState
from ..prompts import build_plan_review_prompt, build_plan_revision_prompt
from ..review_parser import format_findings, parse_review_output
from .plan import adopt_plan, draft_plan

if TYPE_CHECKING:
    from ..context import ExecutionContext

logger = logging.getLogger("workflow")

PLAN_REVIEWERS = ("architect", "spec-reviewer")


def collect_findings(reviewers: list[str], reviews: list[ReviewResult]) -> str:
    parts = []
    for name, review in zip(reviewers, reviews):
        if review.verdict == ReviewVerdict.FAIL:
            parts.append(f"## {name}\n{format_findings(review.findings)}")
        elif review.verdict == ReviewVerdict.INCONCLUSIVE:
            parts.append(f"## {name}\nInconclusive review: {review.parse_error}")
    return "\n\n".join(parts)


async def run_plan_review_phase(state: WorkflowState, ctx: ExecutionContext) -> WorkflowState:
    reviewers = [name for name in PLAN_REVIEWERS if name in ctx.agents]
    if not reviewers:
        state.pending_interaction = confirm_plan_approval(state.tasks)
        return state

    description = state.batch_description or state.user_description
    max_cycles = state.config.max_plan_review_cycles

    while True:
        prompt = build_plan_review_prompt(description, state.plan_content or "")
        results = await ctx.dispatch_parallel(state, [(name, prompt) for name in reviewers])
        reviews = [parse_review_output(r.final_output) for r in results]

        if all(r.verdict == ReviewVerdict.PASS for r in reviews):
            logger.info(f"Plan passed review by {', '.join(reviewers)}")
            state.pending_interaction = confirm_plan_approval(state.tasks)
            return state

        findings = collect_findings(reviewers, reviews)
        if state.plan_review_cycles >= max_cycles:
            ctx.notify(f"Plan still has review findings after {max_cycles} revisions", "warning")
            state.pending_interaction = confirm_plan_approval(state.tasks, review_notes=findings)
            return state

        state.plan_review_cycles += 1
        ctx.notify(f"Plan review found issues; revising ({state.plan_review_cycles}/{max_cycles})")
        drafted = await draft_plan(
            state, ctx, build_plan_revision_prompt(description, state.plan_content or "", findings),
        )
        if drafted is None:
            state.error = "Plan revision failed: the planner returned no parseable tasks"
            return state
        adopt_plan(state, ctx, *drafted)
        ctx.save(state)
