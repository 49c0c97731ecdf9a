"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Callable

import pytest

from claude_workflow.config import OrchestratorConfig
from claude_workflow.context import ExecutionContext
from claude_workflow.dispatch import BUILTIN_AGENTS, AgentProfile, DispatchResult, UsageStats
from claude_workflow.errors import WorkflowCancelledError
from claude_workflow.models import (
    ExecutionMode,
    Phase,
    ReviewMode,
    TaskExecState,
    ToolEvent,
    WorkflowConfig,
    WorkflowState,
)
from claude_workflow.queue import WorkflowQueue
from claude_workflow.state import StateManager

REVIEWER_NAMES = {"architect", "spec-reviewer", "quality-reviewer"}


def review_block(passed: bool, issue: str = "Missing tests", severity: str = "high") -> str:
    findings = [] if passed else [{"severity": severity, "file": "app.py", "line": 3, "issue": issue}]
    payload = {"passed": passed, "findings": findings, "summary": "ok" if passed else "needs work"}
    return f"Review done.\n\n```workflow-review\n{json.dumps(payload)}\n```"


class ScriptedDispatcher:
    """Fake dispatcher: answers from per-agent scripts and records every call.

    A script entry is either the agent's reply text or a full DispatchResult.
    Reviewers with no script left pass; other agents reply ``default_output``.
    """

    def __init__(self, cost_per_call: float = 0.5, default_output: str = "Done."):
        self.scripts: dict[str, list[str | DispatchResult]] = {}
        self.calls: list[tuple[str, str]] = []
        self.cost_per_call = cost_per_call
        self.default_output = default_output

    def script(self, agent_name: str, *replies: str | DispatchResult) -> None:
        self.scripts.setdefault(agent_name, []).extend(replies)

    def calls_to(self, agent_name: str) -> list[str]:
        return [task for name, task in self.calls if name == agent_name]

    async def dispatch(
        self,
        agent: AgentProfile,
        task: str,
        *,
        cancel_event: asyncio.Event | None = None,
        on_event: Callable[[ToolEvent], None] | None = None,
    ) -> DispatchResult:
        if cancel_event is not None and cancel_event.is_set():
            raise WorkflowCancelledError(f"{agent.name} cancelled")
        self.calls.append((agent.name, task))
        replies = self.scripts.get(agent.name)
        reply = replies.pop(0) if replies else None
        if isinstance(reply, DispatchResult):
            return reply
        if reply is None:
            reply = review_block(True) if agent.name in REVIEWER_NAMES else self.default_output
        return DispatchResult(
            agent=agent.name,
            task=task,
            messages=[reply],
            usage=UsageStats(cost_usd=self.cost_per_call),
        )


class FakeUI:
    """Operator stand-in: replays queued answers; None once they run out."""

    def __init__(self, selections: list[str | None] | None = None, inputs: list[str | None] | None = None):
        self.selections = list(selections or [])
        self.inputs = list(inputs or [])
        self.prompts: list[str] = []
        self.notifications: list[tuple[str, str]] = []

    async def select(self, prompt: str, options: list[str]) -> str | None:
        self.prompts.append(prompt)
        return self.selections.pop(0) if self.selections else None

    async def input(self, prompt: str, default: str | None = None) -> str | None:
        self.prompts.append(prompt)
        return self.inputs.pop(0) if self.inputs else default

    def notify(self, message: str, level: str = "info") -> None:
        self.notifications.append((level, message))


@pytest.fixture
def config(tmp_path: Path) -> OrchestratorConfig:
    """Headless config rooted in a tmp project (not a git repository)."""
    return OrchestratorConfig(project_dir=tmp_path, structured_log=False, headless=True)


@pytest.fixture
def dispatcher() -> ScriptedDispatcher:
    return ScriptedDispatcher()


@pytest.fixture
def state_manager(config: OrchestratorConfig) -> StateManager:
    return StateManager(
        state_path=config.project_dir / config.state_file,
        progress_path=config.project_dir / config.progress_file,
    )


@pytest.fixture
def make_ctx(config: OrchestratorConfig, dispatcher: ScriptedDispatcher, state_manager: StateManager):
    def _make(ui: FakeUI | None = None) -> ExecutionContext:
        return ExecutionContext(
            config=config,
            state_manager=state_manager,
            dispatcher=dispatcher,
            agents=dict(BUILTIN_AGENTS),
            queue=WorkflowQueue(config.project_dir / config.queue_file),
            ui=ui,
        )
    return _make


@pytest.fixture
def ctx(make_ctx) -> ExecutionContext:
    return make_ctx()


@pytest.fixture
def make_state():
    def _make(
        n_tasks: int = 3,
        phase: Phase = Phase.EXECUTE,
        execution_mode: ExecutionMode = ExecutionMode.AUTO,
        review_mode: ReviewMode = ReviewMode.ITERATIVE,
        **kwargs,
    ) -> WorkflowState:
        tasks = [
            TaskExecState(id=i + 1, title=f"Task {i + 1}", description=f"Build part {i + 1}")
            for i in range(n_tasks)
        ]
        return WorkflowState(
            user_description="Build a todo app",
            phase=phase,
            config=WorkflowConfig(review_mode=review_mode, execution_mode=execution_mode, batch_size=2),
            tasks=tasks,
            **kwargs,
        )
    return _make


@pytest.fixture
def review():
    """``review(passed, issue=..., severity=...)`` builds reviewer output text."""
    return review_block


@pytest.fixture
def make_ui():
    return FakeUI
