"""Operator interaction: pending questions, response parsing and the terminal UI."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from claude_agent_sdk.types import (
    PermissionResultAllow,
    PermissionResultDeny,
    ToolPermissionContext,
)

from .errors import InteractionError
from .models import (
    InteractionOption,
    InteractionType,
    PendingInteraction,
    TaskExecState,
)

logger = logging.getLogger("workflow")


class UserInterface(Protocol):
    """What phases need from an interactive operator."""

    async def select(self, prompt: str, options: list[str]) -> str | None: ...

    async def input(self, prompt: str, default: str | None = None) -> str | None: ...

    def notify(self, message: str, level: str = "info") -> None: ...


class TerminalUI:
    """stdin/stdout operator UI. Timeouts and EOF count as no answer."""

    def __init__(self, input_timeout: float = 600.0):
        self.input_timeout = input_timeout

    async def _read(self, prompt: str) -> str | None:
        try:
            return await asyncio.wait_for(_async_input(prompt), timeout=self.input_timeout)
        except asyncio.TimeoutError:
            print(f"\n  [TIMEOUT] No response after {self.input_timeout:.0f}s.")
            return None
        except EOFError:
            return None

    async def select(self, prompt: str, options: list[str]) -> str | None:
        print(f"\n{prompt}")
        for i, option in enumerate(options):
            print(f"  {i + 1}. {option}")
        response = await self._read("  Your choice: ")
        if response is None:
            return None
        response = response.strip()
        if response.isdigit() and 1 <= int(response) <= len(options):
            return options[int(response) - 1]
        for option in options:
            if option.lower() == response.lower():
                return option
        return None

    async def input(self, prompt: str, default: str | None = None) -> str | None:
        suffix = f" [{default}]" if default else ""
        response = await self._read(f"{prompt}{suffix}: ")
        if response is None:
            return default
        return response.strip() or default

    def notify(self, message: str, level: str = "info") -> None:
        prefix = "" if level == "info" else f"[{level.upper()}] "
        print(f"{prefix}{message}")


async def _async_input(prompt: str) -> str:
    """Non-blocking input that works with asyncio."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: input(prompt))


class AgentQuestionHandler:
    """can_use_tool callback that surfaces an agent's AskUserQuestion to the operator.

    Without a UI the first option of each question is answered. All other
    tools are allowed; write restrictions are enforced by hooks.
    """

    def __init__(self, ui: UserInterface | None):
        self.ui = ui

    async def can_use_tool(
        self,
        tool_name: str,
        input_data: dict[str, Any],
        context: ToolPermissionContext,
    ) -> PermissionResultAllow | PermissionResultDeny:
        if tool_name != "AskUserQuestion":
            return PermissionResultAllow(updated_input=input_data)

        questions = input_data.get("questions", [])
        answers: dict[str, str] = {}
        for q in questions:
            labels = [opt["label"] for opt in q.get("options", [])]
            answer: str | None = None
            if self.ui is not None:
                if labels:
                    answer = await self.ui.select(q["question"], labels)
                else:
                    answer = await self.ui.input(q["question"])
            if answer is None:
                answer = labels[0] if labels else "No response"
                logger.info(f"  Agent question answered with default: {answer}")
            answers[q["question"]] = answer

        return PermissionResultAllow(
            updated_input={"questions": questions, "answers": answers}
        )


# --- Pending interaction builders ---


def ask_review_mode() -> PendingInteraction:
    return PendingInteraction(
        id="review-mode",
        type=InteractionType.CHOICE,
        question="How should code reviews be handled?",
        options=[
            InteractionOption(
                key="single-pass",
                label="One round of reviews",
                description="Findings are reported as warnings",
            ),
            InteractionOption(
                key="iterative",
                label="Review-fix loop",
                description="Fix and re-review until reviewers pass",
            ),
        ],
    )


def ask_execution_mode() -> PendingInteraction:
    return PendingInteraction(
        id="execution-mode",
        type=InteractionType.CHOICE,
        question="How should tasks be executed?",
        options=[
            InteractionOption(key="auto", label="Auto", description="Run all tasks without pausing"),
            InteractionOption(key="checkpoint", label="Checkpoint", description="Pause after each task"),
            InteractionOption(key="batch", label="Batch", description="Run N tasks then pause"),
        ],
    )


def ask_batch_size() -> PendingInteraction:
    return PendingInteraction(
        id="batch-size",
        type=InteractionType.INPUT,
        question="How many tasks per batch?",
        default="3",
    )


def confirm_plan_approval(
    tasks: list[TaskExecState],
    review_notes: str | None = None,
) -> PendingInteraction:
    titles = "\n".join(f"  {i + 1}. {t.title}" for i, t in enumerate(tasks))
    question = f"The plan contains {len(tasks)} tasks:\n{titles}"
    if review_notes:
        question += f"\n\nReviewer notes:\n{review_notes}"
    question += "\n\nDo you approve this plan?"
    return PendingInteraction(
        id="plan-approval",
        type=InteractionType.CHOICE,
        question=question,
        options=[
            InteractionOption(key="approve", label="Approve", description="Proceed to execution"),
            InteractionOption(key="revise", label="Revise", description="Request revisions to the plan"),
        ],
    )


def ask_revision_feedback() -> PendingInteraction:
    return PendingInteraction(
        id="revision-feedback",
        type=InteractionType.INPUT,
        question="What should change in the plan?",
    )


def confirm_budget_override(spent: float, limit: float) -> PendingInteraction:
    return PendingInteraction(
        id="budget-override",
        type=InteractionType.CONFIRM,
        question=(
            f"Spend ${spent:.2f} has reached the hard limit of ${limit:.2f}. "
            "Continue executing tasks anyway?"
        ),
    )


def format_interaction(req: PendingInteraction) -> str:
    lines = [req.question, ""]
    if req.type == InteractionType.CHOICE:
        for i, opt in enumerate(req.options):
            line = f"  {i + 1}) {opt.label}"
            if opt.description:
                line += f": {opt.description}"
            lines.append(line)
    elif req.type == InteractionType.CONFIRM:
        lines.append("  Enter yes or no")
    elif req.default is not None:
        lines.append(f"  (default: {req.default})")
    return "\n".join(lines)


def parse_user_response(req: PendingInteraction, raw: str) -> str:
    """Normalise a raw operator answer. Raises InteractionError when it is invalid.

    Choices match by key, then 1-based number, then label (case-insensitive)
    and return the option key. Confirms return "yes" or "no". Inputs fall
    back to the default when blank.
    """
    text = raw.strip()
    lower = text.lower()

    if req.type == InteractionType.CHOICE:
        for opt in req.options:
            if opt.key.lower() == lower:
                return opt.key
        if text.isdigit() and 1 <= int(text) <= len(req.options):
            return req.options[int(text) - 1].key
        for opt in req.options:
            if opt.label.lower() == lower:
                return opt.key
        valid = ", ".join(opt.key for opt in req.options)
        raise InteractionError(
            req.id,
            f'Invalid choice: "{text}". Valid options: {valid} (or enter 1-{len(req.options)})',
        )

    if req.type == InteractionType.CONFIRM:
        if lower in ("y", "yes"):
            return "yes"
        if lower in ("n", "no"):
            return "no"
        raise InteractionError(req.id, f'Invalid response: "{text}". Enter yes/y or no/n.')

    if not text:
        if req.default is None:
            raise InteractionError(req.id, "A response is required.")
        return req.default
    return text
