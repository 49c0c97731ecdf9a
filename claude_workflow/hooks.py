"""Hook callbacks for monitoring and constraining agent sessions."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from .models import ToolEvent

logger = logging.getLogger("workflow")

WRITE_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})


def format_tool_action(tool_name: str, tool_input: dict[str, Any]) -> str:
    """Concise one-line description of a tool call."""
    if tool_name in ("Read", "Write", "Edit", "MultiEdit"):
        return tool_input.get("file_path", "")
    if tool_name == "NotebookEdit":
        return tool_input.get("notebook_path", "")
    if tool_name == "Bash":
        cmd = tool_input.get("command", "")
        if len(cmd) > 80:
            cmd = cmd[:77] + "..."
        return f"$ {cmd}"
    if tool_name == "Glob":
        return tool_input.get("pattern", "")
    if tool_name == "Grep":
        return f"/{tool_input.get('pattern', '')}/"
    if tool_name == "Task":
        return f"[{tool_input.get('subagent_type', '')}]"
    return ""


class DispatchHooks:
    """Hook callbacks for one dispatch: activity tracking, tool events and the read-only guard."""

    def __init__(
        self,
        agent_name: str,
        stall_timeout: float = 300.0,
        read_only: bool = False,
        on_event: Callable[[ToolEvent], None] | None = None,
    ):
        self.agent_name = agent_name
        self.stall_timeout = stall_timeout
        self.read_only = read_only
        self.on_event = on_event
        self.write_attempted = False
        self._last_tool_time = time.monotonic()
        self._tool_count = 0

    # --- Required dummy hook for Python SDK can_use_tool workaround ---

    async def keepalive_hook(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        """Required PreToolUse hook to keep the stream open for can_use_tool."""
        return {"continue_": True}

    # --- Read-only guard for reviewer profiles ---

    async def read_only_guard(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        """Deny file-writing tools for agents that must not modify the tree."""
        if not self.read_only or input_data.get("hook_event_name") != "PreToolUse":
            return {}
        tool_name = input_data.get("tool_name", "")
        if tool_name not in WRITE_TOOLS:
            return {}

        self.write_attempted = True
        target = format_tool_action(tool_name, input_data.get("tool_input", {}))
        logger.warning(f"BLOCKED: {self.agent_name} attempted {tool_name} {target}")
        return {
            "hookSpecificOutput": {
                "hookEventName": "PreToolUse",
                "permissionDecision": "deny",
                "permissionDecisionReason": (
                    f"{self.agent_name} is a read-only agent and may not modify files"
                ),
            }
        }

    # --- Activity tracking for stall detection ---

    async def activity_tracker(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        """Track tool activity and stream a ToolEvent for each call."""
        self._last_tool_time = time.monotonic()
        self._tool_count += 1

        tool_name = input_data.get("tool_name", "unknown")
        detail = format_tool_action(tool_name, input_data.get("tool_input", {}))
        logger.debug(f"  Hook: {self.agent_name} tool #{self._tool_count}: {tool_name} {detail}")
        if self.on_event is not None:
            self.on_event(ToolEvent(agent=self.agent_name, tool_name=tool_name, detail=detail))
        return {}

    # --- Post-tool logging ---

    async def post_tool_logger(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        """Log tool results, highlighting errors."""
        tool_name = input_data.get("tool_name", "unknown")
        response = input_data.get("tool_response", "")
        if isinstance(response, dict) and response.get("is_error"):
            logger.warning(f"Tool {tool_name} error: {str(response)[:500]}")
        return {}

    # --- Stop hook ---

    async def stop_hook(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        logger.info(f"{self.agent_name} session stopping. Tools used: {self._tool_count}")
        return {}

    # --- Stall detection properties ---

    @property
    def tool_count(self) -> int:
        return self._tool_count

    @property
    def seconds_since_last_activity(self) -> float:
        return time.monotonic() - self._last_tool_time

    @property
    def is_stalled(self) -> bool:
        return self.seconds_since_last_activity > self.stall_timeout
