"""Logging for workflow runs: a readable console stream and a JSON-lines run log."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import OrchestratorConfig

# Attributes callers may attach with ``extra=`` to tag a record.
CONTEXT_KEYS = ("phase", "task_id", "agent")


def _context(record: logging.LogRecord) -> dict[str, object]:
    return {
        key: getattr(record, key)
        for key in CONTEXT_KEYS
        if getattr(record, key, None) is not None
    }


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS [LEVEL] message``, with the task id when the record carries one."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        task_id = getattr(record, "task_id", None)
        if task_id is not None:
            line = line.replace(f"[{record.levelname}] ", f"[{record.levelname}] #{task_id} ", 1)
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per record, including any workflow context."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            **_context(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logger(config: OrchestratorConfig) -> logging.Logger:
    """Configure the "workflow" logger once per process; later calls only adjust the level."""
    logger = logging.getLogger("workflow")
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    if logger.handlers:
        return logger

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ConsoleFormatter())
    logger.addHandler(console)

    if config.structured_log:
        log_dir = config.project_dir / config.log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"run-{datetime.now().strftime('%Y%m%d-%H%M%S')}.jsonl"
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)
        logger.debug(f"Writing run log to {log_file}")

    return logger
