"""CLI entry point: workflow run|load|status|next|reset|queue."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import OrchestratorConfig
    from .interaction import UserInterface
    from .orchestrator import Orchestrator, OrchestratorResult


def _add_project_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project", "-p", type=str, default=".",
        help="Project directory (default: current dir)",
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="workflow",
        description="Plan, review and execute coding work with Claude agents",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Start or resume the workflow")
    run_parser.add_argument("description", nargs="?", help="What to build (starts a new workflow)")
    run_parser.add_argument("--answer", "-a", type=str, help="Answer to the pending question")
    run_parser.add_argument(
        "--headless", action="store_true",
        help="Never prompt; questions are answered with --answer on a later run",
    )
    run_parser.add_argument("--model", type=str, help="Model override for implementation agents")
    run_parser.add_argument("--test-command", dest="test_command", type=str, help="Test suite command")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    _add_project_arg(run_parser)

    # --- load ---
    load_parser = subparsers.add_parser("load", help="Start a workflow from an existing plan file")
    load_parser.add_argument("plan_file", type=str, help="Plan markdown with a workflow-tasks block")
    load_parser.add_argument("--description", "-d", type=str, help="Workflow description")
    load_parser.add_argument("--headless", action="store_true", help="Never prompt")
    _add_project_arg(load_parser)

    # --- status ---
    status_parser = subparsers.add_parser("status", help="Show workflow progress")
    _add_project_arg(status_parser)

    # --- next ---
    next_parser = subparsers.add_parser("next", help="Start the next queued workflow")
    next_parser.add_argument("--headless", action="store_true", help="Never prompt")
    _add_project_arg(next_parser)

    # --- reset ---
    reset_parser = subparsers.add_parser("reset", help="Discard the active workflow state")
    _add_project_arg(reset_parser)

    # --- queue ---
    queue_parser = subparsers.add_parser("queue", help="Manage queued workflows")
    queue_sub = queue_parser.add_subparsers(dest="queue_command", required=True)
    add_parser = queue_sub.add_parser("add", help="Queue a workflow")
    add_parser.add_argument("title", type=str)
    add_parser.add_argument("description", type=str)
    add_parser.add_argument("--context", type=str, help="Context handed to the planner")
    _add_project_arg(add_parser)
    list_parser = queue_sub.add_parser("list", help="List queued workflows")
    _add_project_arg(list_parser)
    clear_parser = queue_sub.add_parser("clear", help="Empty the queue")
    _add_project_arg(clear_parser)

    args = parser.parse_args(argv)

    if args.command == "run":
        return _run(args)
    elif args.command == "load":
        return _load(args)
    elif args.command == "status":
        return _status(args)
    elif args.command == "next":
        return _next(args)
    elif args.command == "reset":
        return _reset(args)
    elif args.command == "queue":
        return _queue(args)
    return 2


def _config(args: argparse.Namespace, **overrides: object) -> OrchestratorConfig:
    from .config import load_config

    cli_args = {"project": args.project}
    cli_args.update(overrides)
    return load_config(cli_args)


def _make_orchestrator(config: OrchestratorConfig) -> tuple[Orchestrator, UserInterface | None]:
    from .interaction import TerminalUI
    from .orchestrator import Orchestrator

    ui = None if config.headless else TerminalUI(config.human_input_timeout_seconds)
    return Orchestrator(config, ui=ui), ui


async def _drive(
    orchestrator: Orchestrator,
    ui: UserInterface | None,
    user_input: str | None = None,
    start_next: bool = False,
) -> OrchestratorResult:
    """Run the workflow, answering questions at the terminal when there is one."""
    from .interaction import format_interaction
    from .orchestrator import RunStatus

    if start_next:
        result = await orchestrator.start_next()
    else:
        result = await orchestrator.run(user_input)

    while ui is not None and result.status in (RunStatus.WAITING, RunStatus.ERROR):
        pending = result.state.pending_interaction if result.state else None
        if pending is None:
            break
        if result.status == RunStatus.ERROR:
            ui.notify(result.message, "error")
        answer = await ui.input(format_interaction(pending), pending.default)
        if answer is None:
            break
        result = await orchestrator.run(answer)
    return result


def _print_result(result: OrchestratorResult) -> int:
    from .orchestrator import RunStatus

    print()
    if result.status == RunStatus.DONE:
        print(result.message)
    elif result.status == RunStatus.WAITING:
        print(result.message)
        print("\nAnswer with: workflow run --answer <response>")
    elif result.status == RunStatus.RUNNING:
        print(result.message)
        print("Paused. Run `workflow run` to continue.")
    elif result.status == RunStatus.CANCELLED:
        print("Cancelled. Run `workflow run` to resume.")
    else:
        print(f"Error: {result.message}", file=sys.stderr)
        return 1
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.description and args.answer:
        print("Error: pass either a description or --answer, not both", file=sys.stderr)
        return 2

    config = _config(
        args,
        model=args.model,
        test_command=args.test_command,
        headless=True if args.headless else None,
    )
    if args.verbose:
        config.log_level = "DEBUG"

    orchestrator, ui = _make_orchestrator(config)
    try:
        result = asyncio.run(_drive(orchestrator, ui, args.answer or args.description))
    except KeyboardInterrupt:
        # Signal handler already cleaned up
        return 130
    return _print_result(result)


def _load(args: argparse.Namespace) -> int:
    from .errors import OrchestratorError

    config = _config(args, headless=True if args.headless else None)
    orchestrator, ui = _make_orchestrator(config)
    try:
        state = orchestrator.load_plan(Path(args.plan_file).resolve(), args.description)
    except OrchestratorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Loaded {len(state.tasks)} tasks from {args.plan_file}")
    try:
        result = asyncio.run(_drive(orchestrator, ui))
    except KeyboardInterrupt:
        return 130
    return _print_result(result)


def _next(args: argparse.Namespace) -> int:
    config = _config(args, headless=True if args.headless else None)
    orchestrator, ui = _make_orchestrator(config)
    try:
        result = asyncio.run(_drive(orchestrator, ui, start_next=True))
    except KeyboardInterrupt:
        return 130
    return _print_result(result)


def _status(args: argparse.Namespace) -> int:
    from .interaction import format_interaction
    from .models import TaskStatus
    from .queue import WorkflowQueue
    from .state import StateManager

    config = _config(args)
    manager = StateManager(
        state_path=config.project_dir / config.state_file,
        progress_path=config.project_dir / config.progress_file,
    )
    state = manager.load()
    queued = len(WorkflowQueue(config.project_dir / config.queue_file))
    if state is None:
        print("No active workflow")
        if queued:
            print(f"{queued} workflow(s) queued")
        return 0

    print(f"Workflow: {state.user_description}")
    print(StateManager.get_progress_summary(state))
    print()
    symbols = {
        TaskStatus.COMPLETE: "DONE",
        TaskStatus.SKIPPED: "SKIP",
        TaskStatus.ESCALATED: "ESC ",
        TaskStatus.PENDING: "----",
    }
    for i, task in enumerate(state.tasks):
        symbol = symbols.get(task.status, ">>>>")
        marker = " <" if i == state.current_task_index and not task.is_terminal else ""
        print(f"  [{symbol}] #{task.id}: {task.title}{marker}")
    if state.error:
        print(f"\nError: {state.error}")
    if state.pending_interaction is not None:
        print(f"\nWaiting for an answer:\n{format_interaction(state.pending_interaction)}")
    if queued:
        print(f"\n{queued} workflow(s) queued")
    return 0


def _reset(args: argparse.Namespace) -> int:
    from .state import StateManager

    config = _config(args)
    manager = StateManager(
        state_path=config.project_dir / config.state_file,
        progress_path=config.project_dir / config.progress_file,
    )
    if manager.clear():
        print("Workflow state cleared")
    else:
        print("No active workflow")
    return 0


def _queue(args: argparse.Namespace) -> int:
    from .models import QueuedWorkflow
    from .queue import WorkflowQueue

    config = _config(args)
    queue = WorkflowQueue(config.project_dir / config.queue_file)

    if args.queue_command == "add":
        size = queue.enqueue(QueuedWorkflow(
            title=args.title,
            description=args.description,
            parent_context=args.context,
        ))
        print(f"Queued '{args.title}' ({size} in queue)")
    elif args.queue_command == "list":
        entries = queue.entries()
        if not entries:
            print("Queue is empty")
        for i, item in enumerate(entries):
            print(f"  {i + 1}. {item.title}: {item.description}")
    elif args.queue_command == "clear":
        print(f"Removed {queue.clear()} queued workflow(s)")
    return 0


def cli_entry() -> None:
    """Entry point for pyproject.toml console_scripts."""
    sys.exit(main())
