"""Configure phase: settle review and execution modes before any task runs."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..interaction import ask_batch_size, ask_execution_mode, ask_review_mode
from ..models import ExecutionMode, Phase, ReviewMode, WorkflowState

if TYPE_CHECKING:
    from ..context import ExecutionContext

DEFAULT_BATCH_SIZE = 3


async def run_configure_phase(state: WorkflowState, ctx: ExecutionContext) -> WorkflowState:
    """Ask one question per pass until every mode is known, then move to execute.

    Values from workflow.toml or the command line are taken without asking.
    Headless runs fall back to iterative review and auto execution.
    """
    settings = state.config
    config = ctx.config

    if settings.review_mode is None:
        settings.review_mode = config.review_mode
    if settings.execution_mode is None:
        settings.execution_mode = config.execution_mode
    if settings.batch_size is None:
        settings.batch_size = config.batch_size

    if config.headless:
        settings.review_mode = settings.review_mode or ReviewMode.ITERATIVE
        settings.execution_mode = settings.execution_mode or ExecutionMode.AUTO

    if settings.review_mode is None:
        state.pending_interaction = ask_review_mode()
        return state
    if settings.execution_mode is None:
        state.pending_interaction = ask_execution_mode()
        return state
    if settings.execution_mode == ExecutionMode.BATCH and settings.batch_size is None:
        if not config.headless:
            state.pending_interaction = ask_batch_size()
            return state

    settings.batch_size = settings.batch_size or DEFAULT_BATCH_SIZE
    settings.max_task_review_cycles = config.review.max_iterations
    settings.max_plan_review_cycles = config.max_plan_review_cycles
    state.phase = Phase.EXECUTE
    return state
