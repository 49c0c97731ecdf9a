"""FIFO queue of workflows waiting to be planned after the current one."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from .models import QueuedWorkflow

logger = logging.getLogger("workflow")

_QUEUE_ADAPTER = TypeAdapter(list[QueuedWorkflow])


class WorkflowQueue:
    """queue.json-backed FIFO. An unreadable queue file reads as empty."""

    def __init__(self, path: Path):
        self.path = path

    def _read(self) -> list[QueuedWorkflow]:
        if not self.path.exists():
            return []
        try:
            return _QUEUE_ADAPTER.validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable workflow queue {self.path}: {e}")
            return []

    def _write(self, items: list[QueuedWorkflow]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump([item.model_dump() for item in items], f, indent=2)
            f.write("\n")
        tmp_path.replace(self.path)

    def enqueue(self, item: QueuedWorkflow) -> int:
        """Append to the tail. Returns the new queue length."""
        items = self._read()
        items.append(item)
        self._write(items)
        return len(items)

    def dequeue(self) -> QueuedWorkflow | None:
        items = self._read()
        if not items:
            return None
        head = items.pop(0)
        self._write(items)
        return head

    def peek(self) -> QueuedWorkflow | None:
        items = self._read()
        return items[0] if items else None

    def entries(self) -> list[QueuedWorkflow]:
        return self._read()

    def clear(self) -> int:
        """Empty the queue. Returns how many entries were dropped."""
        count = len(self._read())
        if self.path.exists():
            self.path.unlink()
        return count

    def __len__(self) -> int:
        return len(self._read())
