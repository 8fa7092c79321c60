"""Tests for utility functions."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import Mock

import pytest

from conveyor.core.utils import (
    close_logger,
    log_workflow_event,
    make_run_id,
    setup_stage_logger,
    stage_log_path,
)


def test_make_run_id() -> None:
    """Test run ID generation."""
    run_id = make_run_id()
    assert len(run_id) == 8
    assert isinstance(run_id, str)


def test_make_run_id_unique() -> None:
    """Test that run IDs are unique."""
    assert make_run_id() != make_run_id()


def test_stage_log_path(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("CONVEYOR_LOG_DIR", str(tmp_path))

    path = stage_log_path("item-1", "tech_design", "run12345")

    assert Path(path) == tmp_path / "items" / "item-1" / "tech_design" / "run12345.log"


def test_setup_stage_logger(tmp_path: Path, monkeypatch) -> None:
    """Test logger setup with temp directory."""
    monkeypatch.setenv("CONVEYOR_LOG_DIR", str(tmp_path))
    logger = setup_stage_logger("item-1", "product_design", "test1234")

    assert logger.name == "conveyor.runs.item-1.product_design"
    assert logger.level == logging.DEBUG
    assert (tmp_path / "items" / "item-1" / "product_design" / "test1234.log").exists()
    assert len(logger.handlers) == 1

    close_logger(logger)
    assert logger.handlers == []


def test_stage_logger_file_handler(tmp_path: Path, monkeypatch) -> None:
    """Test logger file handler writes correctly."""
    monkeypatch.setenv("CONVEYOR_LOG_DIR", str(tmp_path))
    logger = setup_stage_logger("item-1", "review", "test5678")
    logger.debug("Debug message")
    logger.info("Info message")
    close_logger(logger)

    content = (tmp_path / "items" / "item-1" / "review" / "test5678.log").read_text()
    assert "Debug message" in content
    assert "Info message" in content


def test_each_run_gets_its_own_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("CONVEYOR_LOG_DIR", str(tmp_path))
    first = setup_stage_logger("item-1", "implementation", "run00001")
    first.info("first run")
    second = setup_stage_logger("item-1", "implementation", "run00002")
    second.info("second run")

    assert first is second
    assert len(second.handlers) == 1
    close_logger(second)

    stage_dir = tmp_path / "items" / "item-1" / "implementation"
    assert "second run" not in (stage_dir / "run00001.log").read_text()
    assert "first run" not in (stage_dir / "run00002.log").read_text()


def test_attached_rotating_logger(tmp_path: Path, monkeypatch) -> None:
    """Attached loggers add a console handler beside the rotating file."""
    monkeypatch.setenv("CONVEYOR_LOG_DIR", str(tmp_path))
    logger = setup_stage_logger(
        "item-1", "review", "test0001", detached_mode=False, use_rotating=True
    )

    assert len(logger.handlers) == 2
    assert isinstance(logger.handlers[0], RotatingFileHandler)

    close_logger(logger)


@pytest.mark.parametrize(
    "level,expected",
    [("debug", logging.DEBUG), ("ERROR", logging.ERROR), ("bogus", logging.INFO)],
)
def test_console_level_from_env(tmp_path: Path, monkeypatch, level, expected) -> None:
    monkeypatch.setenv("CONVEYOR_LOG_DIR", str(tmp_path))
    monkeypatch.setenv("CONVEYOR_LOG_LEVEL", level)
    logger = setup_stage_logger("item-1", "review", "test0003", detached_mode=False)

    console = [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]
    assert console[0].level == expected

    close_logger(logger)


@pytest.mark.parametrize(
    "status,method",
    [("failed", "error"), ("started", "info"), ("completed", "info"), ("retrying", "debug")],
)
def test_log_workflow_event(status, method) -> None:
    """Test event level follows the status."""
    logger = Mock()

    log_workflow_event(logger, "tech_design", status, "attempt 2")

    getattr(logger, method).assert_called_once_with(f"[tech_design] {status} - attempt 2")


def test_log_workflow_event_without_details() -> None:
    logger = Mock()
    log_workflow_event(logger, "merge_implementation_pr", "completed")
    logger.info.assert_called_once_with("[merge_implementation_pr] completed")
