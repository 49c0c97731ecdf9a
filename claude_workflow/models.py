"""Data models for the workflow control plane."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    StrictBool,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    PLAN_DRAFT = "plan-draft"
    PLAN_REVIEW = "plan-review"
    PLAN_WRITE = "plan-write"
    CONFIGURE = "configure"
    EXECUTE = "execute"
    FINALIZE = "finalize"
    DONE = "done"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IMPLEMENTING = "implementing"
    REVIEWING = "reviewing"
    FIXING = "fixing"
    COMPLETE = "complete"
    SKIPPED = "skipped"
    ESCALATED = "escalated"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETE, TaskStatus.SKIPPED, TaskStatus.ESCALATED})


class ReviewMode(str, Enum):
    SINGLE_PASS = "single-pass"
    ITERATIVE = "iterative"


class ExecutionMode(str, Enum):
    AUTO = "auto"
    CHECKPOINT = "checkpoint"
    BATCH = "batch"


class WorkflowConfig(BaseModel):
    """Per-run settings snapshot. Unset modes are asked for in the configure phase."""

    review_mode: ReviewMode | None = None
    execution_mode: ExecutionMode | None = None
    batch_size: int | None = None
    max_plan_review_cycles: int = 3
    max_task_review_cycles: int = 3


class TaskSummary(BaseModel):
    title: str
    status: str
    changed_files: list[str] = Field(default_factory=list)


class TaskExecState(BaseModel):
    """Execution state of one planned task."""

    id: int
    title: str
    description: str = ""
    files: list[str] = Field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    reviews_passed: list[str] = Field(default_factory=list)
    reviews_failed: list[str] = Field(default_factory=list)
    fix_attempts: int = 0
    failure_retries: dict[str, int] = Field(default_factory=dict)
    git_sha_before_impl: str | None = None
    summary: TaskSummary | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def record_review(self, review_type: str, passed: bool) -> None:
        """Tag a review outcome. A later pass clears an earlier failure."""
        if passed:
            if review_type not in self.reviews_passed:
                self.reviews_passed.append(review_type)
            self.reviews_failed = [r for r in self.reviews_failed if r != review_type]
        elif review_type not in self.reviews_failed:
            self.reviews_failed.append(review_type)


class InteractionType(str, Enum):
    CHOICE = "choice"
    CONFIRM = "confirm"
    INPUT = "input"


class InteractionOption(BaseModel):
    key: str
    label: str
    description: str | None = None


class PendingInteraction(BaseModel):
    """A question the workflow cannot continue without."""

    id: str
    type: InteractionType
    question: str
    options: list[InteractionOption] = Field(default_factory=list)
    default: str | None = None


# --- Review findings ---


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReviewFinding(BaseModel):
    severity: Severity = Severity.MEDIUM
    file: str = "unknown"
    line: int | None = None
    issue: str
    suggestion: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() in Severity._value2member_map_:
            return value.lower()
        return Severity.MEDIUM

    @field_validator("file", mode="before")
    @classmethod
    def _coerce_file(cls, value: Any) -> Any:
        return value if isinstance(value, str) and value else "unknown"

    @field_validator("line", mode="before")
    @classmethod
    def _coerce_line(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return None

    @field_validator("suggestion", mode="before")
    @classmethod
    def _coerce_suggestion(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None


class ReviewFindings(BaseModel):
    """Structured verdict emitted by a reviewer agent."""

    passed: StrictBool
    findings: list[ReviewFinding] = Field(default_factory=list)
    must_fix: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("mustFix", "must_fix"),
    )
    summary: str = ""

    @field_validator("findings", mode="before")
    @classmethod
    def _keep_valid_findings(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [
            f for f in value
            if isinstance(f, ReviewFinding) or (isinstance(f, dict) and isinstance(f.get("issue"), str))
        ]

    @field_validator("must_fix", mode="before")
    @classmethod
    def _keep_string_refs(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [ref for ref in value if isinstance(ref, str)]

    @field_validator("summary", mode="before")
    @classmethod
    def _coerce_summary(cls, value: Any) -> Any:
        return value if isinstance(value, str) else ""


class ReviewVerdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"


class ReviewResult(BaseModel):
    """Outcome of parsing one reviewer's output."""

    verdict: ReviewVerdict
    findings: ReviewFindings | None = None
    raw_output: str = ""
    parse_error: str | None = None


# --- Tests ---


class TestResult(BaseModel):
    __test__ = False

    name: str
    passed: bool
    duration_ms: float | None = None
    output: str | None = None


class TestBaseline(BaseModel):
    __test__ = False

    captured_at: datetime = Field(default_factory=utcnow)
    sha: str = ""
    command: str = ""
    results: list[TestResult] = Field(default_factory=list)
    known_failures: list[str] = Field(default_factory=list)


class ClassifiedResults(BaseModel):
    new_failures: list[TestResult] = Field(default_factory=list)
    pre_existing: list[TestResult] = Field(default_factory=list)
    flake_candidates: list[TestResult] = Field(default_factory=list)
    newly_fixed: list[TestResult] = Field(default_factory=list)


# --- Workflow ---


class GitMetadata(BaseModel):
    starting_sha: str | None = None
    branch: str | None = None


class QueuedWorkflow(BaseModel):
    title: str
    description: str
    parent_context: str | None = None


class BatchRecord(BaseModel):
    """Tasks of a batch that finished before the current one was planned."""

    description: str
    tasks: list[TaskExecState] = Field(default_factory=list)


class WorkflowState(BaseModel):
    """The single persisted aggregate for one workflow run."""

    phase: Phase = Phase.PLAN_DRAFT
    user_description: str
    config: WorkflowConfig = Field(default_factory=WorkflowConfig)
    tasks: list[TaskExecState] = Field(default_factory=list)
    current_task_index: int = 0
    plan_path: str | None = None
    plan_content: str | None = None
    plan_review_cycles: int = 0
    revision_feedback: str | None = None
    parent_context: str | None = None
    batch_description: str | None = None
    completed_batches: list[BatchRecord] = Field(default_factory=list)
    total_cost_usd: float = 0.0
    pending_interaction: PendingInteraction | None = None
    error: str | None = None
    git: GitMetadata = Field(default_factory=GitMetadata)
    test_baseline: TestBaseline | None = None
    budget_acknowledged: bool = False
    final_report: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_task_index(self) -> WorkflowState:
        if not 0 <= self.current_task_index <= len(self.tasks):
            raise ValueError(
                f"current_task_index {self.current_task_index} out of range "
                f"for {len(self.tasks)} tasks"
            )
        return self

    @property
    def completed_count(self) -> int:
        return sum(1 for t in self.tasks if t.status == TaskStatus.COMPLETE)

    @property
    def current_task(self) -> TaskExecState | None:
        if self.current_task_index < len(self.tasks):
            return self.tasks[self.current_task_index]
        return None


class ToolEvent(BaseModel):
    """A tool execution observed while an agent runs."""

    agent: str
    tool_name: str
    detail: str = ""


class ProgressEntry(BaseModel):
    """A single entry in the progress log."""

    timestamp: datetime
    task_id: int
    task_title: str
    status: TaskStatus
    summary: str
    cost_usd: float | None = None
    changed_files: list[str] = Field(default_factory=list)
    error: str | None = None
