"""Tests for the workflow command line."""

from __future__ import annotations

from pathlib import Path

import pytest

from claude_workflow.cli import main
from claude_workflow.models import TaskStatus


def run_cli(tmp_path: Path, *args: str) -> int:
    return main([*args, "--project", str(tmp_path)])


class TestQueueCommands:
    def test_add_list_clear(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]):
        assert run_cli(tmp_path, "queue", "add", "Search", "Add todo search", "--context", "Use SQLite") == 0
        assert "Queued 'Search' (1 in queue)" in capsys.readouterr().out

        assert run_cli(tmp_path, "queue", "list") == 0
        assert "1. Search: Add todo search" in capsys.readouterr().out

        assert run_cli(tmp_path, "queue", "clear") == 0
        assert "Removed 1 queued workflow(s)" in capsys.readouterr().out

        run_cli(tmp_path, "queue", "list")
        assert "Queue is empty" in capsys.readouterr().out


class TestStatusAndReset:
    def test_no_workflow(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]):
        run_cli(tmp_path, "queue", "add", "Later", "Do it later")
        capsys.readouterr()

        assert run_cli(tmp_path, "status") == 0
        out = capsys.readouterr().out
        assert "No active workflow" in out
        assert "1 workflow(s) queued" in out

    def test_shows_tasks(self, tmp_path: Path, capsys, state_manager, make_state):
        state = make_state(2)
        state.tasks[0].status = TaskStatus.COMPLETE
        state.current_task_index = 1
        state_manager.save(state)

        assert run_cli(tmp_path, "status") == 0

        out = capsys.readouterr().out
        assert "Workflow: Build a todo app" in out
        assert "[DONE] #1: Task 1" in out
        assert "[----] #2: Task 2 <" in out

    def test_reset(self, tmp_path: Path, capsys, state_manager, make_state):
        state_manager.save(make_state(1))

        assert run_cli(tmp_path, "reset") == 0
        assert "Workflow state cleared" in capsys.readouterr().out
        assert state_manager.load() is None

        run_cli(tmp_path, "reset")
        assert "No active workflow" in capsys.readouterr().out


class TestArgumentErrors:
    def test_description_and_answer_conflict(self, tmp_path: Path, capsys):
        assert run_cli(tmp_path, "run", "Build it", "--answer", "approve") == 2
        assert "either a description or --answer" in capsys.readouterr().err

    def test_load_plan_without_tasks(self, tmp_path: Path, capsys):
        plan = tmp_path / "notes.md"
        plan.write_text("Nothing to do here.")

        assert run_cli(tmp_path, "load", str(plan), "--headless") == 1
        assert "No tasks found" in capsys.readouterr().err
