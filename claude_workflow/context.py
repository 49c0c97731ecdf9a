"""Per-run execution context handed to every phase."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Protocol

from .dispatch import AgentProfile, DispatchResult, get_agent

if TYPE_CHECKING:
    from .config import OrchestratorConfig
    from .interaction import UserInterface
    from .models import ToolEvent, WorkflowState
    from .queue import WorkflowQueue
    from .state import StateManager

logger = logging.getLogger("workflow")


class Dispatcher(Protocol):
    async def dispatch(
        self,
        agent: AgentProfile,
        task: str,
        *,
        cancel_event: asyncio.Event | None = None,
        on_event: Callable[[ToolEvent], None] | None = None,
    ) -> DispatchResult: ...


@dataclass
class ExecutionContext:
    """Configuration, collaborators and session spend for one run."""

    config: OrchestratorConfig
    state_manager: StateManager
    dispatcher: Dispatcher
    agents: dict[str, AgentProfile]
    queue: WorkflowQueue
    ui: UserInterface | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    on_event: Callable[[ToolEvent], None] | None = None
    session_cost_usd: float = 0.0

    @property
    def interactive(self) -> bool:
        return self.ui is not None

    def save(self, state: WorkflowState) -> None:
        self.state_manager.save(state)

    def notify(self, message: str, level: str = "info") -> None:
        log = logger.warning if level in ("warning", "error") else logger.info
        log(message)
        if self.ui is not None:
            self.ui.notify(message, level)

    def record_cost(self, state: WorkflowState, cost_usd: float | None) -> None:
        """Add a dispatch's cost to the run. Negative or missing costs count as zero."""
        cost = max(0.0, cost_usd or 0.0)
        state.total_cost_usd += cost
        self.session_cost_usd += cost

    async def dispatch(self, state: WorkflowState, agent_name: str, task: str) -> DispatchResult:
        agent = get_agent(self.agents, agent_name)
        result = await self.dispatcher.dispatch(
            agent,
            task,
            cancel_event=self.cancel_event,
            on_event=self.on_event,
        )
        self.record_cost(state, result.usage.cost_usd)
        return result

    async def dispatch_parallel(
        self,
        state: WorkflowState,
        jobs: list[tuple[str, str]],
    ) -> list[DispatchResult]:
        """Run ``(agent_name, task)`` jobs concurrently; results keep job order."""
        return list(await asyncio.gather(
            *(self.dispatch(state, name, task) for name, task in jobs)
        ))
