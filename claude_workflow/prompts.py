"""Task-framing templates sent to agents."""

from __future__ import annotations

from .models import TaskExecState
from .plan_parser import TASK_BLOCK_TAG
from .review_parser import REVIEW_BLOCK_TAG

REVIEW_FORMAT_INSTRUCTIONS = f"""\
End your reply with exactly one fenced block in this format:

```{REVIEW_BLOCK_TAG}
{{
  "passed": true,
  "findings": [
    {{"severity": "high", "file": "path/to/file.py", "line": 42,
      "issue": "what is wrong", "suggestion": "how to fix it"}}
  ],
  "mustFix": ["path/to/file.py:42"],
  "summary": "one-sentence verdict"
}}
```

Severity is one of critical, high, medium, low. Set "passed" to false if
anything must change before the work is acceptable.
"""

SCOUT_PROMPT_TEMPLATE = """\
Survey this repository for the following request:

{description}

Report: the project layout, languages and frameworks, how tests are run, and
the files most relevant to the request. Keep it under 300 words.
"""

PLANNER_PROMPT_TEMPLATE = """\
Write an implementation plan for this request:

{description}
{context_section}
## Codebase survey
{scout_output}

Break the work into small tasks that can each be implemented and tested on
their own, in dependency order. Describe the approach in prose, then list the
tasks in a fenced block:

```{task_tag}
- title: Short task title
  description: What to build and how to verify it
  files: [path/one.py, tests/test_one.py]
```
"""

PLAN_REVISION_TEMPLATE = """\
Revise the implementation plan below.

## Request
{description}

## Current plan
{plan_content}

## Requested changes
{feedback}

Return the complete revised plan, keeping the ```{task_tag} block format.
"""

PLAN_REVIEW_TEMPLATE = """\
Review this implementation plan for the request below.

## Request
{description}

## Plan
{plan_content}

Check that the tasks cover the request, are correctly ordered, and are each
small enough to implement and test on their own.

{review_format}"""

IMPLEMENT_PROMPT_TEMPLATE = """\
Implement Task #{task_id}: {title}

{description}

Files likely involved: {files}
{context_section}
## Protocol

1. Read the relevant code first and follow the project's existing patterns.
2. Write or update tests for the behaviour you add.
3. Run the tests and make sure they pass.
4. Commit with message: `task #{task_id}: {title}`
5. Stop and print a short summary. Do not start other tasks.
"""

TASK_REVIEW_TEMPLATE = """\
You are the {reviewer}. Review the implementation of Task #{task_id}: {title}

## Task
{description}

## Changed files
{changed_files}

Review only the changes made for this task.

{review_format}"""

FIX_PROMPT_TEMPLATE = """\
Task #{task_id}: {title} did not pass review. Fix these findings:

{findings}

Re-run the tests after fixing, commit, and stop.
"""

FAILURE_FIX_TEMPLATE = """\
Task #{task_id}: {title} left the project in a failing state.

## Failure
{failure}

Fix the cause without weakening or deleting tests, re-run the check, commit,
and stop.
"""

FINAL_REVIEW_TEMPLATE = """\
Review the completed work for this request as a whole:

{description}

## Completed tasks
{task_list}

## Changed files
{changed_files}

Look for integration problems between tasks, missing tests, and leftover debris.

{review_format}"""


def _context_section(parent_context: str | None) -> str:
    if not parent_context:
        return ""
    return f"\n## Context from the previous batch\n{parent_context}\n"


def build_scout_prompt(description: str) -> str:
    return SCOUT_PROMPT_TEMPLATE.format(description=description)


def build_planner_prompt(
    description: str,
    scout_output: str,
    parent_context: str | None = None,
) -> str:
    return PLANNER_PROMPT_TEMPLATE.format(
        description=description,
        context_section=_context_section(parent_context),
        scout_output=scout_output or "(no survey available)",
        task_tag=TASK_BLOCK_TAG,
    )


def build_plan_revision_prompt(description: str, plan_content: str, feedback: str) -> str:
    return PLAN_REVISION_TEMPLATE.format(
        description=description,
        plan_content=plan_content,
        feedback=feedback,
        task_tag=TASK_BLOCK_TAG,
    )


def build_plan_review_prompt(description: str, plan_content: str) -> str:
    return PLAN_REVIEW_TEMPLATE.format(
        description=description,
        plan_content=plan_content,
        review_format=REVIEW_FORMAT_INSTRUCTIONS,
    )


def build_implement_prompt(task: TaskExecState, parent_context: str | None = None) -> str:
    return IMPLEMENT_PROMPT_TEMPLATE.format(
        task_id=task.id,
        title=task.title,
        description=task.description or task.title,
        files=", ".join(task.files) or "(not specified)",
        context_section=_context_section(parent_context),
    )


def build_review_prompt(reviewer: str, task: TaskExecState, changed_files: list[str]) -> str:
    return TASK_REVIEW_TEMPLATE.format(
        reviewer=reviewer,
        task_id=task.id,
        title=task.title,
        description=task.description or task.title,
        changed_files="\n".join(f"- {f}" for f in changed_files) or "(none detected)",
        review_format=REVIEW_FORMAT_INSTRUCTIONS,
    )


def build_fix_prompt(task: TaskExecState, findings: str) -> str:
    return FIX_PROMPT_TEMPLATE.format(task_id=task.id, title=task.title, findings=findings)


def build_failure_fix_prompt(task: TaskExecState, failure: str) -> str:
    return FAILURE_FIX_TEMPLATE.format(task_id=task.id, title=task.title, failure=failure)


def build_final_review_prompt(
    description: str,
    tasks: list[TaskExecState],
    changed_files: list[str],
) -> str:
    return FINAL_REVIEW_TEMPLATE.format(
        description=description,
        task_list="\n".join(f"- #{t.id} {t.title}" for t in tasks) or "(none)",
        changed_files="\n".join(f"- {f}" for f in changed_files) or "(none detected)",
        review_format=REVIEW_FORMAT_INSTRUCTIONS,
    )
