"""Tests for the workflow queue."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from claude_workflow.models import QueuedWorkflow
from claude_workflow.queue import WorkflowQueue


@pytest.fixture
def queue(tmp_path: Path) -> WorkflowQueue:
    return WorkflowQueue(tmp_path / ".claude-workflow" / "queue.json")


class TestWorkflowQueue:
    def test_fifo(self, queue: WorkflowQueue):
        assert queue.enqueue(QueuedWorkflow(title="A", description="first")) == 1
        assert queue.enqueue(QueuedWorkflow(title="B", description="second", parent_context="ctx")) == 2

        assert queue.peek().title == "A"
        assert len(queue) == 2
        assert queue.dequeue().title == "A"
        head = queue.dequeue()
        assert head.title == "B"
        assert head.parent_context == "ctx"
        assert queue.dequeue() is None

    def test_persists_as_json(self, queue: WorkflowQueue):
        queue.enqueue(QueuedWorkflow(title="A", description="first"))

        data = json.loads(queue.path.read_text())

        assert data == [{"title": "A", "description": "first", "parent_context": None}]
        assert not queue.path.with_suffix(".json.tmp").exists()

    def test_empty_queue(self, queue: WorkflowQueue):
        assert queue.peek() is None
        assert queue.entries() == []
        assert queue.clear() == 0

    def test_clear(self, queue: WorkflowQueue):
        queue.enqueue(QueuedWorkflow(title="A", description="first"))
        queue.enqueue(QueuedWorkflow(title="B", description="second"))

        assert queue.clear() == 2
        assert len(queue) == 0

    def test_unreadable_file_reads_as_empty(self, queue: WorkflowQueue):
        queue.path.parent.mkdir(parents=True)
        queue.path.write_text("{broken")
        assert queue.entries() == []
