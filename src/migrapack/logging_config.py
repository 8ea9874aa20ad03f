"""
Centralized Logging Configuration with Structured Logging Support

Keeps run logs inside the project's state directory instead of the working
directory, and offers a JSON formatter that tags every record with the run id.

Default log directory: <project>/.migrapack/logs/

Usage:
    from migrapack.logging_config import configure_logging, run_id_var

    # Traditional logging
    configure_logging(run_id="mig-20260101-120000", project_path=Path("."))

    # Structured logging (for CI consumers), also `migrapack --log-format json`
    setup_structured_logging()
    run_id_var.set("mig-20260101-120000")

Environment Variables:
    MIGRAPACK_LOG_DIR - Override default log directory
    MIGRAPACK_LOG_LEVEL - Set log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import get_state_dir, settings

# Run id attached to structured log records
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

LOG_FORMATS = ("text", "json")

_STANDARD_ATTRS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "message",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter with run id for structured logging.

    Each log entry includes timestamp, level, logger name, message, run id,
    and any extra fields added to the log record.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": run_id_var.get(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_structured_logging(log_level: str = "INFO") -> None:
    """Configure structured JSON logging on the ``migrapack`` logger.

    Records go to stderr so they never mix with command output on stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger("migrapack")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())
    handler.setLevel(getattr(logging, log_level.upper()))
    logger.addHandler(handler)


def get_default_log_dir(project_path: Optional[Path] = None) -> Path:
    """
    Get the default log directory for a project.

    Args:
        project_path: Project root (defaults to current working directory)

    Returns:
        Default log directory path
    """
    if settings.log_dir:
        return Path(settings.log_dir)
    return get_state_dir(project_path or Path.cwd()) / "logs"


def configure_logging(
    run_id: Optional[str] = None,
    project_path: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    log_level: Optional[str] = None,
    log_to_console: bool = True,
    log_to_file: bool = True,
    log_format: str = "text",
) -> logging.Logger:
    """
    Configure logging for a migration run.

    Args:
        run_id: Run identifier (used in log filename)
        project_path: Project root (defaults to current working directory)
        log_dir: Log directory (overrides default)
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_to_console: Whether to log to console
        log_to_file: Whether to log to file
        log_format: "text" or "json" (one JSON object per record, tagged with the run id)

    Returns:
        Configured ``migrapack`` logger
    """
    if log_format not in LOG_FORMATS:
        raise ValueError(f"Unknown log format: {log_format}")
    structured = log_format == "json"
    if run_id:
        run_id_var.set(run_id)

    logger = logging.getLogger("migrapack")
    level = (log_level or settings.log_level).upper()

    if structured and log_to_console:
        setup_structured_logging(level)
    else:
        logger.handlers.clear()
        logger.setLevel(getattr(logging, level))

    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    if log_to_console and not structured:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, level))
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_to_file:
        if log_dir is None:
            log_dir = get_default_log_dir(project_path)
        log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_filename = f"{run_id}.log" if run_id else f"migrapack_{timestamp}.log"
        log_path = log_dir / log_filename

        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        logger.info(f"Logging to: {log_path}")

    return logger
