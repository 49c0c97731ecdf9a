"""Git bookkeeping. Every helper degrades to an empty value when git fails."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger("workflow")


def _git(cwd: Path, *args: str, timeout: float = 10) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"git {' '.join(args)} failed: {e}")
        return None
    if result.returncode != 0:
        logger.debug(f"git {' '.join(args)} exited {result.returncode}: {result.stderr.strip()}")
        return None
    return result.stdout


def _lines(output: str | None) -> list[str]:
    if not output:
        return []
    return [line.strip() for line in output.splitlines() if line.strip()]


def get_current_sha(cwd: Path) -> str:
    """Full HEAD sha, or "" outside a repository."""
    return (_git(cwd, "rev-parse", "HEAD") or "").strip()


def get_current_branch(cwd: Path) -> str | None:
    branch = (_git(cwd, "rev-parse", "--abbrev-ref", "HEAD") or "").strip()
    return branch or None


def compute_changed_files(cwd: Path, base_sha: str | None = None) -> list[str]:
    """Files changed since ``base_sha`` (committed or not), or unstaged changes."""
    if base_sha:
        return _lines(_git(cwd, "diff", "--name-only", base_sha))
    return _lines(_git(cwd, "diff", "--name-only"))


def diff_stat(cwd: Path, base_sha: str | None = None) -> str:
    args = ["diff", "--stat"]
    if base_sha:
        args.append(base_sha)
    return (_git(cwd, *args) or "").strip()


def reset_to_sha(cwd: Path, sha: str) -> bool:
    """Hard-reset the working tree to ``sha``. Returns False if git refused."""
    if not sha:
        return False
    ok = _git(cwd, "reset", "--hard", sha) is not None
    if ok:
        logger.info(f"Rolled back working tree to {sha[:12]}")
    else:
        logger.warning(f"Rollback to {sha[:12]} failed")
    return ok
