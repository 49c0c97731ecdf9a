"""Workflow driver: resume from state.json and advance phase by phase."""

from __future__ import annotations

import asyncio
import signal
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable

from pydantic import BaseModel

from . import plan_parser
from .context import Dispatcher, ExecutionContext
from .dispatch import AgentDispatcher, AgentProfile, discover_agents
from .errors import InteractionError, OrchestratorError, PlanParseError, WorkflowCancelledError
from .git_utils import get_current_branch, get_current_sha
from .interaction import ask_revision_feedback, format_interaction, parse_user_response
from .logging_config import setup_logger
from .models import (
    ExecutionMode,
    GitMetadata,
    Phase,
    ReviewMode,
    ToolEvent,
    WorkflowConfig,
    WorkflowState,
)
from .phases.configure import DEFAULT_BATCH_SIZE, run_configure_phase
from .phases.execute import run_execute_phase
from .phases.finalize import run_finalize_phase
from .phases.plan import run_plan_draft_phase
from .phases.plan_review import run_plan_review_phase
from .phases.plan_write import run_plan_write_phase
from .queue import WorkflowQueue
from .state import StateManager, create_initial_state

if TYPE_CHECKING:
    from .config import OrchestratorConfig
    from .interaction import UserInterface

PhaseHandler = Callable[[WorkflowState, ExecutionContext], Awaitable[WorkflowState]]

PHASE_HANDLERS: dict[Phase, PhaseHandler] = {
    Phase.PLAN_DRAFT: run_plan_draft_phase,
    Phase.PLAN_REVIEW: run_plan_review_phase,
    Phase.PLAN_WRITE: run_plan_write_phase,
    Phase.CONFIGURE: run_configure_phase,
    Phase.EXECUTE: run_execute_phase,
    Phase.FINALIZE: run_finalize_phase,
}


class RunStatus(str, Enum):
    RUNNING = "running"      # paused between tasks; run again to continue
    WAITING = "waiting"      # an operator answer is needed
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


class OrchestratorResult(BaseModel):
    status: RunStatus
    message: str
    state: WorkflowState | None = None


class Orchestrator:
    """Drives one workflow through its phases, persisting after every phase."""

    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        dispatcher: Dispatcher | None = None,
        ui: UserInterface | None = None,
        agents: dict[str, AgentProfile] | None = None,
        handle_signals: bool = True,
    ):
        self.config = config
        self.logger = setup_logger(config)
        self.state_manager = StateManager(
            state_path=config.project_dir / config.state_file,
            progress_path=config.project_dir / config.progress_file,
        )
        self.queue = WorkflowQueue(config.project_dir / config.queue_file)
        self.ui = ui
        self.dispatcher = dispatcher or AgentDispatcher(config, ui)
        self.agents = agents if agents is not None else discover_agents(config)
        self.handle_signals = handle_signals
        self._ctx: ExecutionContext | None = None

    # --- Entry points ---

    async def run(self, user_input: str | None = None) -> OrchestratorResult:
        """Start or resume the workflow.

        With no active workflow, ``user_input`` is the description of a new
        one. With a question pending, it is the operator's answer.
        """
        state = self.state_manager.load()

        if state is None or (state.phase == Phase.DONE and user_input):
            if not user_input:
                return OrchestratorResult(status=RunStatus.ERROR, message="No active workflow")
            state = self._create_state(user_input)
            self.state_manager.save(state)
            self.logger.info(f"Started workflow: {user_input}")
        elif state.pending_interaction is not None:
            if user_input is None:
                return OrchestratorResult(
                    status=RunStatus.WAITING,
                    message=format_interaction(state.pending_interaction),
                    state=state,
                )
            try:
                self._apply_response(state, user_input)
            except InteractionError as e:
                return OrchestratorResult(status=RunStatus.ERROR, message=str(e), state=state)
            self.state_manager.save(state)
            if state.pending_interaction is not None:
                return OrchestratorResult(
                    status=RunStatus.WAITING,
                    message=format_interaction(state.pending_interaction),
                    state=state,
                )
        elif user_input is not None:
            self.logger.warning("No question is pending; ignoring the supplied answer")

        if state.error:
            self.logger.info(f"Resuming {state.phase.value} after error: {state.error}")
            state.error = None

        ctx = self._new_context()
        loop = asyncio.get_running_loop()
        if self.handle_signals:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)
        try:
            return await self._drive(state, ctx)
        except WorkflowCancelledError:
            self.logger.info("Workflow cancelled; state remains at the last completed step")
            return OrchestratorResult(status=RunStatus.CANCELLED, message="Workflow cancelled", state=state)
        finally:
            if self.handle_signals:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(sig)
            self._ctx = None

    async def start_next(self) -> OrchestratorResult:
        """Start the next queued workflow once the current one is finished."""
        existing = self.state_manager.load()
        if existing is not None and existing.phase != Phase.DONE:
            return OrchestratorResult(
                status=RunStatus.ERROR,
                message="A workflow is already active; finish it or run `workflow reset`",
                state=existing,
            )
        queued = self.queue.dequeue()
        if queued is None:
            return OrchestratorResult(status=RunStatus.ERROR, message="The workflow queue is empty")

        state = self._create_state(queued.description, parent_context=queued.parent_context)
        self.state_manager.save(state)
        self.logger.info(f"Started queued workflow: {queued.title}")
        return await self.run()

    def load_plan(self, plan_file: Path, description: str | None = None) -> WorkflowState:
        """Start a workflow from an existing plan file, skipping planning and plan review."""
        existing = self.state_manager.load()
        if existing is not None and existing.phase != Phase.DONE:
            raise OrchestratorError("A workflow is already active; finish it or run `workflow reset`")

        tasks, source = plan_parser.load_plan(plan_file)
        if not tasks:
            raise PlanParseError(f"No tasks found in {plan_file}")

        state = self._create_state(description or f"Execute plan {plan_file.name}")
        state.tasks = tasks
        state.plan_path = str(plan_file)
        state.plan_content = plan_file.read_text()
        state.phase = Phase.CONFIGURE
        self.state_manager.save(state)
        self.logger.info(f"Loaded {len(tasks)} tasks from {plan_file} ({source})")
        return state

    # --- Internals ---

    def _create_state(self, description: str, parent_context: str | None = None) -> WorkflowState:
        settings = WorkflowConfig(
            max_plan_review_cycles=self.config.max_plan_review_cycles,
            max_task_review_cycles=self.config.review.max_iterations,
        )
        git = GitMetadata(
            starting_sha=get_current_sha(self.config.project_dir) or None,
            branch=get_current_branch(self.config.project_dir),
        )
        return create_initial_state(description, settings, git=git, parent_context=parent_context)

    def _new_context(self) -> ExecutionContext:
        self._ctx = ExecutionContext(
            config=self.config,
            state_manager=self.state_manager,
            dispatcher=self.dispatcher,
            agents=self.agents,
            queue=self.queue,
            ui=self.ui,
            on_event=self._on_tool_event,
        )
        return self._ctx

    def _apply_response(self, state: WorkflowState, raw: str) -> None:
        """Validate and apply an answer to the pending interaction.

        Raises InteractionError before touching ``state`` when the answer is invalid.
        """
        request = state.pending_interaction
        response = parse_user_response(request, raw)

        if request.id == "review-mode":
            state.config.review_mode = ReviewMode(response)
        elif request.id == "execution-mode":
            state.config.execution_mode = ExecutionMode(response)
        elif request.id == "batch-size":
            try:
                size = int(response)
            except ValueError:
                size = DEFAULT_BATCH_SIZE
            state.config.batch_size = max(1, size)
        elif request.id == "plan-approval":
            if response == "revise":
                state.pending_interaction = ask_revision_feedback()
                return
            state.phase = Phase.CONFIGURE
        elif request.id == "revision-feedback":
            state.revision_feedback = response
            state.plan_review_cycles = 0
            state.phase = Phase.PLAN_DRAFT
        elif request.id == "budget-override":
            if response == "yes":
                state.budget_acknowledged = True
            else:
                state.phase = Phase.FINALIZE
        else:
            self.logger.warning(f"Dropping answer to unknown interaction {request.id}")

        state.pending_interaction = None

    async def _drive(self, state: WorkflowState, ctx: ExecutionContext) -> OrchestratorResult:
        while True:
            if state.phase == Phase.DONE:
                return OrchestratorResult(
                    status=RunStatus.DONE,
                    message=state.final_report or "Workflow complete",
                    state=state,
                )

            phase = state.phase
            handler = PHASE_HANDLERS[phase]
            self.logger.info(f"=== Phase: {phase.value} ===", extra={"phase": phase.value})
            try:
                state = await handler(state, ctx)
            except WorkflowCancelledError:
                raise
            except OrchestratorError as e:
                state.error = str(e)
            self.state_manager.save(state)

            if state.error:
                self.logger.error(f"{phase.value} halted: {state.error}")
                return OrchestratorResult(status=RunStatus.ERROR, message=state.error, state=state)
            if state.pending_interaction is not None:
                return OrchestratorResult(
                    status=RunStatus.WAITING,
                    message=format_interaction(state.pending_interaction),
                    state=state,
                )
            if state.phase == phase:
                return OrchestratorResult(
                    status=RunStatus.RUNNING,
                    message=StateManager.get_progress_summary(state),
                    state=state,
                )

    def _on_tool_event(self, event: ToolEvent) -> None:
        self.logger.debug(f"  [{event.agent}] {event.detail}", extra={"agent": event.agent})

    def _handle_shutdown_signal(self, sig: signal.Signals) -> None:
        """First SIGINT/SIGTERM cancels the running agent; a second one force-exits."""
        sig_name = sig.name
        if self._ctx is None or self._ctx.cancel_event.is_set():
            self.logger.warning(f"Second {sig_name} received, force exiting")
            AgentDispatcher.kill_active_subprocesses()
            raise SystemExit(1)

        self.logger.info(f"{sig_name} received, cancelling the workflow...")
        self.logger.info("  (press Ctrl-C again to force-quit)")
        self._ctx.cancel_event.set()
