"""Configuration loading: defaults → workflow.toml → CLI flags."""

from __future__ import annotations

import sys

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from .failure_taxonomy import FailureAction, FailureType
from .models import ExecutionMode, ReviewMode
from .test_baseline import FlakePolicy


class ReviewConfig(BaseModel):
    """Reviewer roster for the execute phase."""

    max_iterations: int = 3
    required: list[str] = Field(default_factory=lambda: ["spec-reviewer", "quality-reviewer"])
    optional: list[str] = Field(default_factory=list)
    parallel_optional: bool = True


class CostConfig(BaseModel):
    warn_at_usd: float = 5.0
    hard_limit_usd: float = 20.0


class OrchestratorConfig(BaseModel):
    """All workflow settings. Loaded from defaults, then workflow.toml, then CLI flags."""

    # Project paths
    project_dir: Path = Field(default_factory=lambda: Path.cwd())
    state_file: Path = Path(".claude-workflow/state.json")
    queue_file: Path = Path(".claude-workflow/queue.json")
    progress_file: Path = Path(".claude-workflow/progress.txt")
    plans_dir: Path = Path("docs/plans")
    agents_dir: Path = Path(".claude-workflow/agents")

    # Models
    model: str = "sonnet"
    planning_model: str = "opus"
    scout_model: str = "haiku"
    model_overrides: dict[str, str] = Field(default_factory=dict)

    # Dispatch
    max_turns_per_dispatch: int = 200
    stall_timeout_seconds: float = 300.0
    human_input_timeout_seconds: float = 600.0
    permission_mode: Literal["default", "acceptEdits", "bypassPermissions"] = "acceptEdits"
    headless: bool = False

    # Review and budget
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    costs: CostConfig = Field(default_factory=CostConfig)

    # Testing and validation
    test_command: str | None = None
    validation_command: str | None = None
    validation_cadence: Literal["every", "every-n", "on-demand"] = "every"
    validation_interval: int = 3
    test_timeout_seconds: float = 600.0
    flake_policy: FlakePolicy = FlakePolicy.FIRST_FAILURE

    # Workflow defaults (unset modes are asked for in the configure phase)
    failure_actions: dict[FailureType, FailureAction] = Field(default_factory=dict)
    review_mode: ReviewMode | None = None
    execution_mode: ExecutionMode | None = None
    batch_size: int | None = None
    max_plan_review_cycles: int = 3
    continue_queued_batches: bool = True

    # Logging
    log_level: str = "INFO"
    log_dir: Path = Path(".claude-workflow/logs")
    structured_log: bool = True

    def model_for(self, agent_name: str, default: str | None = None) -> str:
        """Model for an agent: explicit override, then the profile's default, then ``model``."""
        return self.model_overrides.get(agent_name) or default or self.model


def load_config(cli_args: dict[str, Any]) -> OrchestratorConfig:
    """Load config from defaults → workflow.toml → CLI args."""
    project_dir = Path(cli_args.get("project", ".")).resolve()
    toml_path = project_dir / "workflow.toml"

    # Start with defaults
    config_data: dict[str, Any] = {"project_dir": project_dir}

    # Layer in TOML if present
    if toml_path.exists():
        with open(toml_path, "rb") as f:
            toml_data = tomllib.load(f)
        config_data.update(toml_data)

    # Layer in CLI overrides (only non-None values)
    for key, value in cli_args.items():
        if value is not None and key != "project":
            config_data[key] = value

    # Ensure project_dir is always set
    config_data["project_dir"] = project_dir

    return OrchestratorConfig(**config_data)
