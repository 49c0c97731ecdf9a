"""Turn reviewer agent output into a typed verdict."""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from .models import ReviewFindings, ReviewResult, ReviewVerdict, Severity
from .parse_utils import extract_fenced_block, extract_last_brace_block, sanitize_json_newlines

logger = logging.getLogger("workflow")

REVIEW_BLOCK_TAG = "workflow-review"


def _inconclusive(raw: str, error: str) -> ReviewResult:
    logger.debug(f"Review output inconclusive: {error}")
    return ReviewResult(
        verdict=ReviewVerdict.INCONCLUSIVE,
        raw_output=raw,
        parse_error=error,
    )


def parse_review_output(raw: str) -> ReviewResult:
    """Parse a reviewer's free-text output. Never raises.

    Looks first for a ```workflow-review fenced block, then for the last
    balanced JSON object anywhere in the text.
    """
    payload = extract_fenced_block(raw, REVIEW_BLOCK_TAG)
    if not payload:
        payload = extract_last_brace_block(raw)
    if payload is None:
        return _inconclusive(raw, "No JSON review block found in output")

    try:
        data = json.loads(sanitize_json_newlines(payload))
    except (ValueError, RecursionError) as e:
        return _inconclusive(raw, f"Invalid JSON in review block: {e}")

    if not isinstance(data, dict):
        return _inconclusive(raw, f"Review block is {type(data).__name__}, expected object")
    if not isinstance(data.get("passed"), bool):
        return _inconclusive(raw, "Review block is missing a boolean 'passed' field")

    try:
        findings = ReviewFindings.model_validate(data)
    except (ValidationError, RecursionError) as e:
        return _inconclusive(raw, f"Review block failed validation: {e}")

    return ReviewResult(
        verdict=ReviewVerdict.PASS if findings.passed else ReviewVerdict.FAIL,
        findings=findings,
        raw_output=raw,
    )


def has_critical_findings(findings: ReviewFindings) -> bool:
    return any(f.severity == Severity.CRITICAL for f in findings.findings)


def format_findings(findings: ReviewFindings) -> str:
    """Render findings as a bullet list for fix prompts and display."""
    lines: list[str] = []
    if findings.summary:
        lines.append(findings.summary)
    for f in findings.findings:
        location = f.file if f.line is None else f"{f.file}:{f.line}"
        line = f"- [{f.severity.value.upper()}] {location}: {f.issue}"
        if f.suggestion:
            line += f"\n  Suggestion: {f.suggestion}"
        lines.append(line)
    if findings.must_fix:
        lines.append("Must fix: " + ", ".join(findings.must_fix))
    return "\n".join(lines)
