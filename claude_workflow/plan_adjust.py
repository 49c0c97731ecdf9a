"""Operator edits to the live task list: drop, skip, reorder."""

from __future__ import annotations

from pydantic import BaseModel, Field

from .models import TaskExecState, TaskStatus


class PlanAdjustment(BaseModel):
    drop: list[int] = Field(default_factory=list)
    skip: list[int] = Field(default_factory=list)
    reorder: list[int] | None = None

    @property
    def is_empty(self) -> bool:
        return not self.drop and not self.skip and not self.reorder


def apply_plan_adjustment(
    tasks: list[TaskExecState],
    adjustment: PlanAdjustment,
) -> list[TaskExecState]:
    """Return an adjusted deep copy of ``tasks``. The input list is not modified.

    Terminal tasks are never dropped or skipped. A reorder lists task ids in
    the new order; unknown and repeated ids are ignored and tasks missing
    from the order keep their relative order at the end.
    """
    drop = set(adjustment.drop)
    skip = set(adjustment.skip)

    result: list[TaskExecState] = []
    for task in tasks:
        copy = task.model_copy(deep=True)
        if copy.id in drop and not copy.is_terminal:
            continue
        if copy.id in skip and not copy.is_terminal:
            copy.status = TaskStatus.SKIPPED
        result.append(copy)

    if adjustment.reorder:
        by_id = {t.id: t for t in result}
        ordered: list[TaskExecState] = []
        for task_id in adjustment.reorder:
            task = by_id.pop(task_id, None)
            if task is not None:
                ordered.append(task)
        ordered.extend(t for t in result if t.id in by_id)
        result = ordered

    return result


def first_open_index(tasks: list[TaskExecState]) -> int:
    """Index of the first non-terminal task, or ``len(tasks)`` when all are finished."""
    for i, task in enumerate(tasks):
        if not task.is_terminal:
            return i
    return len(tasks)


def _parse_ids(text: str | None) -> list[int]:
    if not text:
        return []
    ids: list[int] = []
    for part in text.replace(" ", ",").split(","):
        part = part.strip().lstrip("#")
        if part.isdigit():
            ids.append(int(part))
    return ids


def parse_adjustment(
    drop: str | None = None,
    skip: str | None = None,
    order: str | None = None,
) -> PlanAdjustment:
    """Build an adjustment from comma-separated task ids typed by the operator."""
    return PlanAdjustment(
        drop=_parse_ids(drop),
        skip=_parse_ids(skip),
        reorder=_parse_ids(order) or None,
    )
