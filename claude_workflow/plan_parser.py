"""Extract the task list from plan markdown.

Plans carry their tasks in a fenced ``workflow-tasks`` YAML block::

    ```workflow-tasks
    - title: Add data models
      description: Pydantic models for orders
      files: [shop/models.py, tests/test_models.py]
    ```

Plans written by hand may instead use ``### Task N: Title`` headings.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Literal

import yaml

from .models import TaskExecState
from .parse_utils import extract_fenced_block

logger = logging.getLogger("workflow")

TASK_BLOCK_TAG = "workflow-tasks"

_HEADING_RE = re.compile(r"^###\s+Task\s+\d+:\s*(.+)$", re.MULTILINE)
_FILE_REF_RE = re.compile(r"`([\w./-]+\.\w+)`")

PlanSource = Literal["fenced", "headings", "empty"]


def _as_file_list(value: object) -> list[str]:
    if isinstance(value, str):
        return [f.strip() for f in value.split(",") if f.strip()]
    if isinstance(value, list):
        return [str(f) for f in value if f]
    return []


def parse_task_block(content: str) -> list[TaskExecState] | None:
    """Tasks from the ``workflow-tasks`` block, or None if absent or unreadable."""
    block = extract_fenced_block(content, TASK_BLOCK_TAG)
    if block is None:
        return None
    try:
        items = yaml.safe_load(block)
    except yaml.YAMLError as e:
        logger.warning(f"Task block is not valid YAML: {e}")
        return None
    if not isinstance(items, list):
        return None

    tasks: list[TaskExecState] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("title"):
            continue
        tasks.append(TaskExecState(
            id=len(tasks) + 1,
            title=str(item["title"]).strip(),
            description=str(item.get("description") or "").strip(),
            files=_as_file_list(item.get("files")),
        ))
    return tasks


def _extract_file_refs(body: str) -> list[str]:
    seen: dict[str, None] = {}
    for match in _FILE_REF_RE.finditer(body):
        seen.setdefault(match.group(1), None)
    return list(seen)


def parse_task_headings(content: str) -> list[TaskExecState]:
    """Fallback: one task per ``### Task N: Title`` heading."""
    matches = list(_HEADING_RE.finditer(content))
    tasks: list[TaskExecState] = []
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
        body = content[match.end():end].strip()
        tasks.append(TaskExecState(
            id=i + 1,
            title=match.group(1).strip(),
            description=body,
            files=_extract_file_refs(body),
        ))
    return tasks


def parse_plan(content: str) -> tuple[list[TaskExecState], PlanSource]:
    tasks = parse_task_block(content)
    if tasks:
        return tasks, "fenced"
    tasks = parse_task_headings(content)
    if tasks:
        return tasks, "headings"
    return [], "empty"


def load_plan(path: Path) -> tuple[list[TaskExecState], PlanSource]:
    try:
        content = path.read_text()
    except OSError as e:
        logger.warning(f"Cannot read plan {path}: {e}")
        return [], "empty"
    return parse_plan(content)
