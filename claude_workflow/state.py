"""State management: state.json and progress.txt."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from .errors import StateCorruptionError
from .models import (
    GitMetadata,
    ProgressEntry,
    TaskStatus,
    WorkflowConfig,
    WorkflowState,
    utcnow,
)

logger = logging.getLogger("workflow")


class StateManager:
    """Persists the workflow state with atomic writes and keeps the progress log."""

    def __init__(self, state_path: Path, progress_path: Path):
        self.state_path = state_path
        self.progress_path = progress_path

    def read(self) -> WorkflowState:
        """Load state.json, raising StateCorruptionError if it cannot be used."""
        try:
            raw = json.loads(self.state_path.read_text())
        except ValueError as e:
            raise StateCorruptionError(f"{self.state_path}: invalid JSON ({e})") from e
        try:
            return WorkflowState.model_validate(raw)
        except ValidationError as e:
            raise StateCorruptionError(f"{self.state_path}: {e}") from e

    def load(self) -> WorkflowState | None:
        """Load the active workflow, or None if there is none or it is unreadable."""
        if not self.state_path.exists():
            return None
        try:
            return self.read()
        except (OSError, StateCorruptionError) as e:
            logger.warning(f"Ignoring unreadable workflow state: {e}")
            return None

    def save(self, state: WorkflowState) -> None:
        """Atomically write state.json (write to tmp, then replace)."""
        state.updated_at = utcnow()
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            f.write(state.model_dump_json(indent=2))
            f.write("\n")
        tmp_path.replace(self.state_path)

    def clear(self) -> bool:
        """Remove the state file. Returns False when there was nothing to remove."""
        if not self.state_path.exists():
            return False
        self.state_path.unlink()
        return True

    def append_progress(self, entry: ProgressEntry) -> None:
        """Append a task summary to the progress log."""
        self.progress_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.progress_path, "a") as f:
            header = (
                f"\n=== Task #{entry.task_id}: {entry.task_title} "
                f"-- {entry.status.value} -- "
                f"{entry.timestamp.strftime('%Y-%m-%d %H:%M')} ==="
            )
            f.write(f"{header}\n")
            f.write(f"{entry.summary}\n")
            if entry.changed_files:
                f.write(f"- Files: {', '.join(entry.changed_files)}\n")
            if entry.cost_usd is not None:
                f.write(f"- Cost: ${entry.cost_usd:.2f}\n")
            if entry.error:
                f.write(f"- Error: {entry.error}\n")
            f.write("\n")

    @staticmethod
    def get_progress_summary(state: WorkflowState) -> str:
        """Return completion stats for display."""
        total = len(state.tasks)
        complete = state.completed_count
        skipped = sum(1 for t in state.tasks if t.status == TaskStatus.SKIPPED)
        escalated = sum(1 for t in state.tasks if t.status == TaskStatus.ESCALATED)
        parts = [f"{complete}/{total} complete"]
        if skipped:
            parts.append(f"{skipped} skipped")
        if escalated:
            parts.append(f"{escalated} escalated")
        parts.append(f"${state.total_cost_usd:.2f} spent")
        return f"[{state.phase.value}] Progress: " + ", ".join(parts)


def create_initial_state(
    description: str,
    config: WorkflowConfig,
    git: GitMetadata | None = None,
    parent_context: str | None = None,
) -> WorkflowState:
    return WorkflowState(
        user_description=description,
        config=config,
        git=git or GitMetadata(),
        parent_context=parent_context,
        batch_description=description,
    )
