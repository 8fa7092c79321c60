"""Run ids and per-stage-run logging for the Conveyor workflow system."""

import logging
import os
import sys
import uuid
from logging import Handler
from logging.handlers import RotatingFileHandler
from typing import Optional

RUN_LOGGER_PREFIX = "conveyor.runs"


def make_run_id() -> str:
    """Generate a short 8-character UUID for tracking one stage run."""
    return str(uuid.uuid4())[:8]


def _get_log_level() -> int:
    """Get log level from CONVEYOR_LOG_LEVEL environment variable.

    Supports: DEBUG, INFO, WARNING, ERROR (case-insensitive).
    Defaults to INFO if not set or invalid.
    """
    level_str = os.environ.get("CONVEYOR_LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
    }
    return level_map.get(level_str, logging.INFO)


def get_logs_dir() -> str:
    return os.environ.get("CONVEYOR_LOG_DIR", os.path.join(os.getcwd(), ".conveyor/logs"))


def stage_log_path(item_id: str, stage: str, run_id: str) -> str:
    """``$CONVEYOR_LOG_DIR/items/{item_id}/{stage}/{run_id}.log``"""
    return os.path.join(get_logs_dir(), "items", item_id, stage, f"{run_id}.log")


def setup_stage_logger(
    item_id: str,
    stage: str,
    run_id: str,
    detached_mode: bool = True,
    use_rotating: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> logging.Logger:
    """Set up the logger for one agent run on one work item's stage.

    Every run of a stage gets its own DEBUG-level file beside the stage's
    earlier runs, so an item's history can be read stage by stage. Records
    still propagate to the root logger.

    Args:
        item_id: The work item being worked on
        stage: Status value of the stage (e.g., product_design, review)
        run_id: The stage run ID
        detached_mode: If False, also echo to stdout at CONVEYOR_LOG_LEVEL
        use_rotating: If True, use RotatingFileHandler instead of FileHandler
        max_bytes: Maximum file size before rotation (only if use_rotating=True)
        backup_count: Number of backup files to keep (only if use_rotating=True)

    Returns:
        Configured logger instance; release it with ``close_logger``.
    """
    log_file = stage_log_path(item_id, stage, run_id)
    os.makedirs(os.path.dirname(log_file), exist_ok=True, mode=0o755)

    logger = logging.getLogger(f"{RUN_LOGGER_PREFIX}.{item_id}.{stage}")
    logger.setLevel(logging.DEBUG)

    # A retried stage reuses the logger name; drop the previous run's handlers
    close_logger(logger)

    file_handler: Handler
    if use_rotating:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, mode="a"
        )
    else:
        file_handler = logging.FileHandler(log_file, mode="a")

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )
    )
    logger.addHandler(file_handler)

    if not detached_mode:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(_get_log_level())
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(console_handler)

    logger.debug(f"Run {run_id} of {stage} for work item {item_id}, log file: {log_file}")
    return logger


def close_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def log_workflow_event(
    logger: logging.Logger, step: str, status: str, details: Optional[str] = None
) -> None:
    """Log a structured workflow event.

    Args:
        logger: Logger instance to use
        step: Workflow step name (e.g., "product_design", "merge_implementation_pr")
        status: Event status (e.g., "started", "completed", "failed")
        details: Optional additional details
    """
    message = f"[{step}] {status}"
    if details:
        message += f" - {details}"

    if status == "failed":
        logger.error(message)
    elif status in ("started", "completed", "stopped"):
        logger.info(message)
    else:
        logger.debug(message)
