"""Agent dispatch: run one agent profile on one task via ClaudeSDKClient."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Literal

import yaml
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    HookMatcher,
    ResultMessage,
    TextBlock,
    ToolUseBlock,
)
from pydantic import BaseModel, Field

from .errors import AgentNotFoundError, WorkflowCancelledError
from .hooks import DispatchHooks, format_tool_action
from .interaction import AgentQuestionHandler
from .models import ToolEvent

if TYPE_CHECKING:
    from .config import OrchestratorConfig
    from .interaction import UserInterface

logger = logging.getLogger("workflow")

DEFAULT_TOOLS = ["Read", "Write", "Edit", "Bash", "Glob", "Grep", "AskUserQuestion"]
READ_ONLY_TOOLS = ["Read", "Bash", "Glob", "Grep"]


class AgentProfile(BaseModel):
    """A named agent: system prompt, tool set and optional model."""

    name: str
    description: str
    system_prompt: str = ""
    tools: list[str] | None = None
    model: str | None = None
    read_only: bool = False
    source: Literal["builtin", "project"] = "builtin"
    file_path: Path | None = None


class UsageStats(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost_usd: float = 0.0
    turns: int = 0


class DispatchResult(BaseModel):
    """Everything observed while one agent worked on one task."""

    agent: str
    task: str
    exit_code: int = 0
    messages: list[str] = Field(default_factory=list)
    tool_calls: list[ToolEvent] = Field(default_factory=list)
    usage: UsageStats = Field(default_factory=UsageStats)
    model: str | None = None
    stop_reason: str | None = None
    error_message: str | None = None
    timed_out: bool = False
    write_attempted: bool = False

    @property
    def final_output(self) -> str:
        return self.messages[-1] if self.messages else ""

    @property
    def full_output(self) -> str:
        return "\n\n".join(self.messages)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def format_tokens(count: int) -> str:
    if count < 1000:
        return str(count)
    if count < 10_000:
        return f"{count / 1000:.1f}k"
    if count < 1_000_000:
        return f"{round(count / 1000)}k"
    return f"{count / 1_000_000:.1f}M"


def format_usage(usage: UsageStats, model: str | None = None) -> str:
    parts: list[str] = []
    if usage.turns:
        parts.append(f"{usage.turns} turn{'s' if usage.turns > 1 else ''}")
    if usage.input_tokens:
        parts.append(f"↑{format_tokens(usage.input_tokens)}")
    if usage.output_tokens:
        parts.append(f"↓{format_tokens(usage.output_tokens)}")
    if usage.cost_usd:
        parts.append(f"${usage.cost_usd:.4f}")
    if model:
        parts.append(model)
    return " ".join(parts)


# --- Agent profiles ---

_REVIEW_OUTPUT_RULE = (
    "Do not modify any files. End your reply with a ```workflow-review fenced "
    "JSON block as instructed in the task."
)

BUILTIN_AGENTS: dict[str, AgentProfile] = {
    "scout": AgentProfile(
        name="scout",
        description="Fast read-only survey of the codebase",
        system_prompt=(
            "You survey codebases. Report the layout, conventions, test commands "
            "and the files relevant to the request. Do not modify any files."
        ),
        tools=READ_ONLY_TOOLS,
        read_only=True,
    ),
    "planner": AgentProfile(
        name="planner",
        description="Breaks a request into an ordered implementation plan",
        system_prompt=(
            "You write implementation plans made of small, independently "
            "verifiable tasks. Do not modify any files."
        ),
        tools=READ_ONLY_TOOLS,
        read_only=True,
    ),
    "implementer": AgentProfile(
        name="implementer",
        description="Implements one planned task with tests",
        system_prompt=(
            "You implement exactly one task at a time. Write tests alongside the "
            "code, run them, and commit when they pass."
        ),
    ),
    "architect": AgentProfile(
        name="architect",
        description="Reviews plans for structure and feasibility",
        system_prompt="You review implementation plans for architecture and sequencing. " + _REVIEW_OUTPUT_RULE,
        tools=READ_ONLY_TOOLS,
        read_only=True,
    ),
    "spec-reviewer": AgentProfile(
        name="spec-reviewer",
        description="Checks work against the stated requirements",
        system_prompt="You check that work matches the stated requirements exactly. " + _REVIEW_OUTPUT_RULE,
        tools=READ_ONLY_TOOLS,
        read_only=True,
    ),
    "quality-reviewer": AgentProfile(
        name="quality-reviewer",
        description="Reviews code quality, tests and maintainability",
        system_prompt="You review code for correctness, tests and maintainability. " + _REVIEW_OUTPUT_RULE,
        tools=READ_ONLY_TOOLS,
        read_only=True,
    ),
}


def parse_agent_file(path: Path) -> AgentProfile | None:
    """Load an agent markdown file with YAML frontmatter.

    Files without a ``name`` and ``description`` in their frontmatter are skipped.
    """
    try:
        content = path.read_text()
    except OSError as e:
        logger.warning(f"Cannot read agent file {path}: {e}")
        return None
    if not content.startswith("---"):
        return None
    parts = content.split("---", 2)
    if len(parts) < 3:
        return None
    try:
        meta = yaml.safe_load(parts[1]) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Invalid frontmatter in {path}: {e}")
        return None
    if not isinstance(meta, dict) or not meta.get("name") or not meta.get("description"):
        return None

    tools = meta.get("tools")
    if isinstance(tools, str):
        tools = [t.strip() for t in tools.split(",") if t.strip()]
    return AgentProfile(
        name=str(meta["name"]),
        description=str(meta["description"]),
        system_prompt=parts[2].strip(),
        tools=tools or None,
        model=meta.get("model"),
        read_only=bool(meta.get("read_only", False)),
        source="project",
        file_path=path,
    )


def discover_agents(config: OrchestratorConfig) -> dict[str, AgentProfile]:
    """Built-in profiles, overridden or extended by ``*.md`` files in the agents dir."""
    agents = dict(BUILTIN_AGENTS)
    agents_dir = config.project_dir / config.agents_dir
    if agents_dir.is_dir():
        for path in sorted(agents_dir.glob("*.md")):
            profile = parse_agent_file(path)
            if profile is not None:
                agents[profile.name] = profile
                logger.debug(f"Loaded agent profile {profile.name} from {path}")
    return agents


def get_agent(agents: dict[str, AgentProfile], name: str) -> AgentProfile:
    try:
        return agents[name]
    except KeyError:
        raise AgentNotFoundError(name) from None


def _get_sdk_subprocess_pid(client: ClaudeSDKClient) -> int | None:
    """Extract the PID of the Claude Code subprocess from the SDK client.

    Navigates: client._transport._process.pid
    Returns None if any attribute is missing (SDK internals changed).
    """
    transport = getattr(client, "_transport", None)
    proc = getattr(transport, "_process", None)
    return getattr(proc, "pid", None)


class AgentDispatcher:
    """Runs agent profiles through the Claude Agent SDK."""

    # Class-level tracking of live subprocesses for signal-based cleanup
    _active_pids: set[int] = set()

    def __init__(
        self,
        config: OrchestratorConfig,
        ui: UserInterface | None = None,
        poll_interval: float = 5.0,
    ):
        self.config = config
        self.ui = ui
        self.poll_interval = poll_interval

    def _build_options(self, agent: AgentProfile, hooks: DispatchHooks) -> ClaudeAgentOptions:
        questions = AgentQuestionHandler(self.ui)
        return ClaudeAgentOptions(
            model=self.config.model_for(agent.name, agent.model),
            system_prompt=agent.system_prompt or None,
            permission_mode=self.config.permission_mode,
            allowed_tools=agent.tools or DEFAULT_TOOLS,
            cwd=str(self.config.project_dir),
            max_turns=self.config.max_turns_per_dispatch,
            can_use_tool=questions.can_use_tool,
            setting_sources=["project"],
            hooks={
                "PreToolUse": [
                    # Keepalive must come first (Python SDK requirement)
                    HookMatcher(matcher=None, hooks=[hooks.keepalive_hook]),
                    HookMatcher(matcher=None, hooks=[hooks.read_only_guard]),
                    HookMatcher(matcher=None, hooks=[hooks.activity_tracker]),
                ],
                "PostToolUse": [
                    HookMatcher(matcher=None, hooks=[hooks.post_tool_logger]),
                ],
                "Stop": [
                    HookMatcher(hooks=[hooks.stop_hook]),
                ],
            },
        )

    async def dispatch(
        self,
        agent: AgentProfile,
        task: str,
        *,
        cancel_event: asyncio.Event | None = None,
        on_event: Callable[[ToolEvent], None] | None = None,
    ) -> DispatchResult:
        """Run ``agent`` on ``task`` with stall detection.

        Raises WorkflowCancelledError when ``cancel_event`` is set before the
        agent finishes. Any other failure is reported in the result.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise WorkflowCancelledError(f"Cancelled before dispatching {agent.name}")

        start_time = time.monotonic()
        result = DispatchResult(agent=agent.name, task=task)

        def record(event: ToolEvent) -> None:
            result.tool_calls.append(event)
            if on_event is not None:
                on_event(event)

        hooks = DispatchHooks(
            agent.name,
            stall_timeout=self.config.stall_timeout_seconds,
            read_only=agent.read_only,
            on_event=record,
        )
        flags = {"cancelled": False, "stalled": False}
        got_result = False
        pid: int | None = None

        logger.info(f"Dispatching {agent.name}")
        try:
            async with ClaudeSDKClient(self._build_options(agent, hooks)) as client:
                await client.query(task)

                # Subprocess exists once query() has been sent
                pid = _get_sdk_subprocess_pid(client)
                if pid is not None:
                    AgentDispatcher._active_pids.add(pid)

                watchdog = asyncio.create_task(
                    self._watchdog(hooks, client, cancel_event, flags)
                )
                try:
                    async for message in client.receive_messages():
                        if isinstance(message, AssistantMessage):
                            result.model = result.model or message.model
                            for block in message.content:
                                if isinstance(block, TextBlock):
                                    result.messages.append(block.text)
                                    self._log_assistant_text(agent.name, block.text)
                                elif isinstance(block, ToolUseBlock):
                                    logger.info(
                                        f"  [{agent.name}] {block.name} "
                                        f"{format_tool_action(block.name, block.input)}"
                                    )

                        if isinstance(message, ResultMessage):
                            got_result = True
                            self._record_result(result, message)
                            break
                finally:
                    watchdog.cancel()
                    try:
                        await watchdog
                    except asyncio.CancelledError:
                        pass
                    if pid is not None:
                        AgentDispatcher._active_pids.discard(pid)

        except Exception as e:
            result.exit_code = 1
            result.error_message = f"{type(e).__name__}: {e}"
            logger.error(f"{agent.name} crashed: {result.error_message}")

        if flags["cancelled"]:
            raise WorkflowCancelledError(f"Cancelled while {agent.name} was running")

        if flags["stalled"]:
            result.timed_out = True
            result.exit_code = 1
            result.error_message = (
                f"Stalled for {self.config.stall_timeout_seconds:.0f}s without tool activity"
            )
        elif not got_result and result.exit_code == 0:
            result.exit_code = 1
            result.error_message = "Agent session ended without a result"

        result.write_attempted = hooks.write_attempted
        duration = time.monotonic() - start_time
        logger.info(
            f"{agent.name} finished in {duration:.0f}s "
            f"({format_usage(result.usage, result.model) or 'no usage reported'})"
        )
        return result

    @staticmethod
    def _record_result(result: DispatchResult, message: ResultMessage) -> None:
        result.stop_reason = message.subtype
        result.usage.turns = message.num_turns
        result.usage.cost_usd = message.total_cost_usd or 0.0
        usage = message.usage or {}
        result.usage.input_tokens = usage.get("input_tokens", 0) or 0
        result.usage.output_tokens = usage.get("output_tokens", 0) or 0
        result.usage.cache_read_tokens = usage.get("cache_read_input_tokens", 0) or 0
        result.usage.cache_write_tokens = usage.get("cache_creation_input_tokens", 0) or 0
        if message.is_error:
            result.exit_code = 1
            result.error_message = message.result or message.subtype

    async def _watchdog(
        self,
        hooks: DispatchHooks,
        client: ClaudeSDKClient,
        cancel_event: asyncio.Event | None,
        flags: dict[str, bool],
    ) -> None:
        """Background task that interrupts the client on cancellation or stall."""
        while True:
            if cancel_event is not None:
                try:
                    await asyncio.wait_for(cancel_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                else:
                    logger.info(f"  Cancellation requested; interrupting {hooks.agent_name}")
                    flags["cancelled"] = True
                    await client.interrupt()
                    return
            else:
                await asyncio.sleep(self.poll_interval)

            if hooks.is_stalled:
                logger.warning(
                    f"{hooks.agent_name}: stall detected "
                    f"({hooks.seconds_since_last_activity:.0f}s since last tool). Interrupting."
                )
                flags["stalled"] = True
                await client.interrupt()
                return

    @staticmethod
    def _log_assistant_text(agent_name: str, text: str) -> None:
        """Log the first meaningful line of assistant text as progress."""
        for line in text.split("\n"):
            line = line.strip()
            if line:
                if len(line) > 120:
                    line = line[:117] + "..."
                logger.info(f"  {agent_name}: {line}")
                break
        logger.debug(f"  [full text] {text[:500]}")

    @classmethod
    def kill_active_subprocesses(cls) -> None:
        """Terminate every live Claude Code subprocess (and its process group)."""
        pids = list(cls._active_pids)
        cls._active_pids.clear()
        for pid in pids:
            logger.info(f"  Terminating Claude Code subprocess (PID {pid})...")
            try:
                os.killpg(os.getpgid(pid), signal.SIGTERM)
            except OSError:
                # Not a group leader, or already gone
                try:
                    os.kill(pid, signal.SIGTERM)
                except OSError:
                    pass
