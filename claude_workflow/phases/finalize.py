"""Finalize phase: whole-change quality review and the closing report."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..git_utils import compute_changed_files
from ..models import Phase, ReviewVerdict, TaskExecState, TaskStatus, WorkflowState
from ..prompts import build_final_review_prompt
from ..review_parser import format_findings, parse_review_output

if TYPE_CHECKING:
    from ..context import ExecutionContext

logger = logging.getLogger("workflow")

FINAL_REVIEWER = "quality-reviewer"


def _batches(state: WorkflowState) -> list[tuple[int, list[TaskExecState]]]:
    batches = [(i + 1, b.tasks) for i, b in enumerate(state.completed_batches)]
    batches.append((len(batches) + 1, state.tasks))
    return batches


def build_report(state: WorkflowState, review_summary: str, changed_files: list[str]) -> str:
    batches = _batches(state)
    multi = len(batches) > 1
    all_tasks = [t for _, tasks in batches for t in tasks]

    lines = [f"# Workflow report: {state.user_description}", ""]
    lines.append("| Batch | # | Task | Status | Files |" if multi else "| # | Task | Status | Files |")
    lines.append("|---|---|---|---|---|" if multi else "|---|---|---|---|")
    for number, tasks in batches:
        for t in tasks:
            files = len(t.summary.changed_files) if t.summary else 0
            row = f"| {t.id} | {t.title} | {t.status.value} | {files} |"
            lines.append(f"| {number} {row}" if multi else row)
    lines.append("")

    counts = {status: sum(1 for t in all_tasks if t.status == status) for status in TaskStatus}
    lines.append(
        f"Completed: {counts[TaskStatus.COMPLETE]}, "
        f"Skipped: {counts[TaskStatus.SKIPPED]}, "
        f"Escalated: {counts[TaskStatus.ESCALATED]}, "
        f"Not finished: {sum(1 for t in all_tasks if not t.is_terminal)}"
    )
    lines.append(f"Total cost: ${state.total_cost_usd:.2f}")
    lines.append("")
    lines.append("## Final review")
    lines.append(review_summary)
    lines.append("")
    lines.append("## Changed files")
    if changed_files:
        lines.extend(f"- {f}" for f in changed_files)
    else:
        lines.append("(none)")
    return "\n".join(lines)


async def run_finalize_phase(state: WorkflowState, ctx: ExecutionContext) -> WorkflowState:
    completed = [
        t for _, tasks in _batches(state) for t in tasks if t.status == TaskStatus.COMPLETE
    ]
    changed = compute_changed_files(ctx.config.project_dir, state.git.starting_sha)

    if not completed:
        review_summary = "Skipped: no completed tasks."
    elif FINAL_REVIEWER not in ctx.agents:
        review_summary = f"Skipped: {FINAL_REVIEWER} is not available."
    else:
        ctx.notify("Running final quality review...")
        result = await ctx.dispatch(
            state,
            FINAL_REVIEWER,
            build_final_review_prompt(state.user_description, completed, changed),
        )
        review = parse_review_output(result.final_output)
        if review.verdict == ReviewVerdict.PASS:
            review_summary = f"Passed. {review.findings.summary}".strip()
        elif review.verdict == ReviewVerdict.FAIL:
            review_summary = f"Findings:\n{format_findings(review.findings)}"
        else:
            review_summary = f"Inconclusive: {review.parse_error}"

    state.final_report = build_report(state, review_summary, changed)
    state.phase = Phase.DONE
    logger.info("Workflow complete")
    return state
