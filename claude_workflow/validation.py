"""Validation command and cross-task test regression checks."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from pydantic import BaseModel, Field

from .models import ClassifiedResults, TestBaseline, TestResult
from .test_baseline import FlakePolicy, capture_baseline, classify_failures

logger = logging.getLogger("workflow")


class ValidationOutcome(BaseModel):
    success: bool
    error: str | None = None


class CrossTaskValidationResult(BaseModel):
    passed: bool
    classified: ClassifiedResults
    flaky_tests: list[str] = Field(default_factory=list)
    blocking_failures: list[TestResult] = Field(default_factory=list)
    next_baseline: TestBaseline | None = None


def should_run_validation(cadence: str, interval: int, completed_count: int) -> bool:
    """Whether the test suite runs after the ``completed_count``-th finished task."""
    if cadence == "every":
        return True
    if cadence == "on-demand":
        return False
    return interval > 0 and completed_count > 0 and completed_count % interval == 0


async def run_validation(command: str, cwd: Path, timeout: float = 600.0) -> ValidationOutcome:
    """Run the project's validation command (lint, typecheck, build)."""
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.communicate()
        return ValidationOutcome(success=False, error=f"Validation timed out after {timeout:.0f}s")

    if proc.returncode == 0:
        return ValidationOutcome(success=True)
    output = stdout.decode(errors="replace").strip()
    return ValidationOutcome(
        success=False,
        error=output[:500] or f"Validation exited with code {proc.returncode}",
    )


async def run_cross_task_validation(
    command: str,
    baseline: TestBaseline,
    cwd: Path,
    policy: FlakePolicy = FlakePolicy.FIRST_FAILURE,
    timeout: float = 600.0,
) -> CrossTaskValidationResult:
    """Run the suite, classify it against ``baseline`` and re-run once to weed out flakes.

    ``next_baseline`` is the current run with known failures narrowed to the
    pre-existing tests that still fail.
    """
    current = await capture_baseline(command, cwd, timeout)
    classified = classify_failures(current.results, baseline, policy)
    next_baseline = current.model_copy(update={
        "known_failures": [r.name for r in classified.pre_existing],
    })

    if not classified.new_failures:
        return CrossTaskValidationResult(
            passed=True,
            classified=classified,
            next_baseline=next_baseline,
        )

    flaky: list[str] = []
    if classified.flake_candidates:
        logger.info(
            f"{len(classified.flake_candidates)} new test failure(s); re-running to check for flakes"
        )
        rerun = await capture_baseline(command, cwd, timeout)
        rerun_passed = {r.name: r.passed for r in rerun.results}
        flaky = [
            c.name for c in classified.flake_candidates if rerun_passed.get(c.name, False)
        ]

    blocking = [r for r in classified.new_failures if r.name not in flaky]
    return CrossTaskValidationResult(
        passed=not blocking,
        classified=classified,
        flaky_tests=flaky,
        blocking_failures=blocking,
        next_baseline=next_baseline,
    )
