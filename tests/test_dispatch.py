"""Tests for agent profiles, dispatch and hook callbacks."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest
from claude_agent_sdk import AssistantMessage, ResultMessage, TextBlock

from claude_workflow.config import OrchestratorConfig
from claude_workflow.dispatch import (
    BUILTIN_AGENTS,
    READ_ONLY_TOOLS,
    AgentDispatcher,
    AgentProfile,
    DispatchResult,
    UsageStats,
    discover_agents,
    format_tokens,
    format_usage,
    get_agent,
    parse_agent_file,
)
from claude_workflow.errors import AgentNotFoundError, WorkflowCancelledError
from claude_workflow.git_utils import get_current_sha, reset_to_sha
from claude_workflow.hooks import DispatchHooks, format_tool_action

AGENT_FILE = """\
---
name: security-reviewer
description: Looks for injection and auth bugs
tools: Read, Grep, Glob
model: opus
read_only: true
---

You hunt for security bugs.
"""


def result_message(**overrides) -> ResultMessage:
    fields = {
        "subtype": "success",
        "duration_ms": 1200,
        "duration_api_ms": 1000,
        "is_error": False,
        "num_turns": 3,
        "session_id": "sess-1",
        "total_cost_usd": 0.25,
        "usage": {"input_tokens": 1200, "output_tokens": 300},
        "result": "done",
    }
    fields.update(overrides)
    return ResultMessage(**fields)


class FakeClient:
    """Stands in for ClaudeSDKClient: replays messages, or hangs until interrupted."""

    instances: list[FakeClient] = []
    messages: list = []
    hang = False
    fail_on_query: Exception | None = None

    def __init__(self, options):
        self.options = options
        self.interrupted = asyncio.Event()
        self.task: str | None = None
        FakeClient.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def query(self, task: str) -> None:
        if self.fail_on_query is not None:
            raise self.fail_on_query
        self.task = task

    async def receive_messages(self):
        if self.hang:
            await self.interrupted.wait()
            return
        for message in self.messages:
            yield message

    async def interrupt(self) -> None:
        self.interrupted.set()


@pytest.fixture
def fake_client():
    FakeClient.instances = []
    FakeClient.messages = []
    FakeClient.hang = False
    FakeClient.fail_on_query = None
    with patch("claude_workflow.dispatch.ClaudeSDKClient", FakeClient):
        yield FakeClient


class TestProfiles:
    def test_parse_agent_file(self, tmp_path: Path):
        path = tmp_path / "security.md"
        path.write_text(AGENT_FILE)

        profile = parse_agent_file(path)

        assert profile.name == "security-reviewer"
        assert profile.tools == ["Read", "Grep", "Glob"]
        assert profile.model == "opus"
        assert profile.read_only is True
        assert profile.system_prompt == "You hunt for security bugs."
        assert profile.source == "project"

    @pytest.mark.parametrize("content", [
        "No frontmatter at all",
        "---\nname: x\n---\nMissing description",
        "---\nname: [broken\n---\nBody",
        "---\n- a list\n---\nBody",
    ])
    def test_unusable_files_are_skipped(self, tmp_path: Path, content: str):
        path = tmp_path / "agent.md"
        path.write_text(content)
        assert parse_agent_file(path) is None

    def test_discover_overrides_builtins(self, config: OrchestratorConfig):
        agents_dir = config.project_dir / config.agents_dir
        agents_dir.mkdir(parents=True)
        (agents_dir / "security.md").write_text(AGENT_FILE)
        (agents_dir / "planner.md").write_text("---\nname: planner\ndescription: Custom planner\n---\nPlan.")
        (agents_dir / "notes.txt").write_text("ignored")

        agents = discover_agents(config)

        assert set(BUILTIN_AGENTS) < set(agents)
        assert agents["security-reviewer"].read_only is True
        assert agents["planner"].description == "Custom planner"
        assert BUILTIN_AGENTS["planner"].description != "Custom planner"

    def test_discover_without_agents_dir(self, config: OrchestratorConfig):
        assert discover_agents(config) == BUILTIN_AGENTS

    def test_get_agent(self):
        assert get_agent(BUILTIN_AGENTS, "scout").read_only is True
        with pytest.raises(AgentNotFoundError):
            get_agent(BUILTIN_AGENTS, "nobody")


class TestFormatting:
    @pytest.mark.parametrize("count, expected", [
        (999, "999"),
        (1234, "1.2k"),
        (45_678, "46k"),
        (2_500_000, "2.5M"),
    ])
    def test_format_tokens(self, count, expected):
        assert format_tokens(count) == expected

    def test_format_usage(self):
        usage = UsageStats(turns=3, input_tokens=1200, output_tokens=300, cost_usd=0.25)
        assert format_usage(usage, "sonnet") == "3 turns ↑1.2k ↓300 $0.2500 sonnet"
        assert format_usage(UsageStats()) == ""

    def test_result_properties(self):
        result = DispatchResult(agent="implementer", task="t", messages=["a", "b"])
        assert result.final_output == "b"
        assert result.full_output == "a\n\nb"
        assert result.ok
        assert not DispatchResult(agent="x", task="t", timed_out=True).ok
        assert DispatchResult(agent="x", task="t").final_output == ""


class TestAgentDispatcher:
    @pytest.mark.asyncio
    async def test_collects_output_and_usage(self, config: OrchestratorConfig, fake_client):
        fake_client.messages = [
            AssistantMessage(content=[TextBlock(text="Looking around")], model="claude-sonnet"),
            AssistantMessage(content=[TextBlock(text="All done")], model="claude-sonnet"),
            result_message(),
        ]
        dispatcher = AgentDispatcher(config, poll_interval=0.01)

        result = await dispatcher.dispatch(BUILTIN_AGENTS["implementer"], "Add a model")

        assert result.ok
        assert result.messages == ["Looking around", "All done"]
        assert result.final_output == "All done"
        assert result.model == "claude-sonnet"
        assert result.stop_reason == "success"
        assert result.usage.cost_usd == 0.25
        assert result.usage.input_tokens == 1200
        assert result.usage.turns == 3
        assert fake_client.instances[0].task == "Add a model"

    @pytest.mark.asyncio
    async def test_options_follow_profile(self, config: OrchestratorConfig, fake_client):
        config.model_overrides = {"spec-reviewer": "opus"}
        fake_client.messages = [result_message()]
        dispatcher = AgentDispatcher(config, poll_interval=0.01)

        await dispatcher.dispatch(BUILTIN_AGENTS["spec-reviewer"], "Review")

        options = fake_client.instances[0].options
        assert options.model == "opus"
        assert options.allowed_tools == READ_ONLY_TOOLS
        assert options.cwd == str(config.project_dir)

    @pytest.mark.asyncio
    async def test_error_result(self, config: OrchestratorConfig, fake_client):
        fake_client.messages = [result_message(is_error=True, subtype="error_max_turns", result=None)]

        result = await AgentDispatcher(config, poll_interval=0.01).dispatch(BUILTIN_AGENTS["implementer"], "t")

        assert result.exit_code == 1
        assert result.error_message == "error_max_turns"

    @pytest.mark.asyncio
    async def test_session_without_result(self, config: OrchestratorConfig, fake_client):
        fake_client.messages = [AssistantMessage(content=[TextBlock(text="Hmm")], model="claude-sonnet")]

        result = await AgentDispatcher(config, poll_interval=0.01).dispatch(BUILTIN_AGENTS["implementer"], "t")

        assert not result.ok
        assert result.error_message == "Agent session ended without a result"

    @pytest.mark.asyncio
    async def test_crash_is_reported(self, config: OrchestratorConfig, fake_client):
        fake_client.fail_on_query = RuntimeError("CLI not found")

        result = await AgentDispatcher(config, poll_interval=0.01).dispatch(BUILTIN_AGENTS["implementer"], "t")

        assert result.exit_code == 1
        assert result.error_message == "RuntimeError: CLI not found"

    @pytest.mark.asyncio
    async def test_stall_times_out(self, config: OrchestratorConfig, fake_client):
        config.stall_timeout_seconds = 0.0
        fake_client.hang = True

        result = await AgentDispatcher(config, poll_interval=0.01).dispatch(BUILTIN_AGENTS["implementer"], "t")

        assert result.timed_out is True
        assert not result.ok
        assert "Stalled" in result.error_message

    @pytest.mark.asyncio
    async def test_cancel_while_running(self, config: OrchestratorConfig, fake_client):
        fake_client.hang = True
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        with pytest.raises(WorkflowCancelledError):
            await AgentDispatcher(config, poll_interval=0.01).dispatch(
                BUILTIN_AGENTS["implementer"], "t", cancel_event=cancel,
            )
        assert fake_client.instances[0].interrupted.is_set()

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, config: OrchestratorConfig, fake_client):
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(WorkflowCancelledError):
            await AgentDispatcher(config).dispatch(BUILTIN_AGENTS["scout"], "t", cancel_event=cancel)
        assert fake_client.instances == []


class TestHooks:
    @pytest.mark.asyncio
    async def test_read_only_guard_denies_writes(self):
        hooks = DispatchHooks("spec-reviewer", read_only=True)
        event = {"hook_event_name": "PreToolUse", "tool_name": "Edit", "tool_input": {"file_path": "app.py"}}

        output = await hooks.read_only_guard(event, None, None)

        assert output["hookSpecificOutput"]["permissionDecision"] == "deny"
        assert hooks.write_attempted is True

    @pytest.mark.asyncio
    async def test_read_only_guard_allows_reads_and_writers(self):
        read = {"hook_event_name": "PreToolUse", "tool_name": "Read", "tool_input": {"file_path": "app.py"}}
        write = {"hook_event_name": "PreToolUse", "tool_name": "Write", "tool_input": {"file_path": "app.py"}}

        assert await DispatchHooks("spec-reviewer", read_only=True).read_only_guard(read, None, None) == {}
        writer = DispatchHooks("implementer", read_only=False)
        assert await writer.read_only_guard(write, None, None) == {}
        assert writer.write_attempted is False

    @pytest.mark.asyncio
    async def test_activity_tracker_streams_events(self):
        events = []
        hooks = DispatchHooks("implementer", on_event=events.append)

        await hooks.activity_tracker({"tool_name": "Bash", "tool_input": {"command": "pytest -q"}}, None, None)

        assert hooks.tool_count == 1
        assert events[0].agent == "implementer"
        assert events[0].detail == "$ pytest -q"
        assert not hooks.is_stalled

    def test_format_tool_action(self):
        assert format_tool_action("Read", {"file_path": "a.py"}) == "a.py"
        assert format_tool_action("Grep", {"pattern": "TODO"}) == "/TODO/"
        long_command = format_tool_action("Bash", {"command": "x" * 100})
        assert len(long_command) == 82
        assert long_command.endswith("...")
        assert format_tool_action("WebFetch", {}) == ""


class TestGitDegradesOutsideRepository:
    def test_helpers(self, tmp_path: Path):
        assert get_current_sha(tmp_path) == ""
        assert reset_to_sha(tmp_path, "") is False
