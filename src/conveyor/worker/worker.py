#!/usr/bin/env python3
"""
Conveyor Worker Daemon

A standalone daemon that polls the work-item store for items whose current
stage is waiting on its agent and runs that stage. Each poll it also pushes
items whose board mirror fell behind and expires stale clarification links.

Usage:
    python -m conveyor.worker --worker-id <worker_id> [--poll-interval <seconds>] [--log-level <level>]

Example:
    python -m conveyor.worker --worker-id alleycat-1 --poll-interval 10 --log-level INFO
"""

import logging
import os
import signal
import time
from pathlib import Path
from typing import Optional

from conveyor.core.config import load_config
from conveyor.core.database import reset_client
from conveyor.core.errors import ConflictingUpdate, ExternalSyncFailed, WorkflowError
from conveyor.core.factory import build_pipeline, build_service
from conveyor.core.utils import make_run_id
from conveyor.core.workflow.pipeline import StagePipeline

from .config import WorkerConfig


class WorkItemWorker:
    """Worker daemon that advances due work items through their agent stages."""

    def __init__(self, config: WorkerConfig, pipeline: Optional[StagePipeline] = None):
        """
        Initialize the worker.

        Args:
            config: WorkerConfig instance with worker settings
            pipeline: Stage pipeline to drive; built from the environment when omitted
        """
        self.config = config
        self.running = True
        self._working_dir_note = None
        if self.config.working_dir is not None:
            os.chdir(self.config.working_dir)
            self._working_dir_note = f"Working directory set to {self.config.working_dir}"

        self.logger = self.setup_logging()
        if self._working_dir_note:
            self.logger.info(self._working_dir_note)

        if pipeline is None:
            app_config = load_config(dotenv_path=self.config.env_file)
            pipeline = build_pipeline(app_config, build_service(app_config))
        self.pipeline = pipeline
        self.service = pipeline.service

        # Register signal handlers for graceful shutdown
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        self.logger.info(f"Worker {self.config.worker_id} initialized")
        self.logger.info(f"Poll interval: {self.config.poll_interval} seconds")

    def setup_logging(self) -> logging.Logger:
        """
        Configure logging for the worker.

        Sets up both file and console handlers with appropriate formatting.

        Returns:
            Configured logger instance
        """
        logger = logging.getLogger(f"conveyor_worker_{self.config.worker_id}")
        logger.setLevel(getattr(logging, self.config.log_level))
        if logger.handlers:
            return logger

        # Create logs directory if it doesn't exist
        log_dir = Path(os.environ.get("CONVEYOR_LOG_DIR", Path.cwd() / ".conveyor" / "logs"))
        log_dir = log_dir / "workers"
        log_dir.mkdir(parents=True, exist_ok=True)

        # File handler
        log_file = log_dir / f"worker_{self.config.worker_id}.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)

        # Console handler
        console_handler = logging.StreamHandler()
        console_handler.setLevel(getattr(logging, self.config.log_level))

        # Formatter
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        file_handler.setFormatter(formatter)
        console_handler.setFormatter(formatter)

        logger.addHandler(file_handler)
        logger.addHandler(console_handler)

        return logger

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signals gracefully."""
        self.logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.running = False

    def run_due_items(self) -> int:
        """
        Run the agent stage of each due work item.

        Returns:
            Number of stage runs that completed
        """
        completed = 0
        due = self.pipeline.due_items()[: self.config.max_items_per_poll]
        for item in due:
            if not self.running:
                break
            run_id = make_run_id()
            self.logger.info(
                f"Running {item.status.value} stage for work item {item.id} (run {run_id})"
            )
            try:
                self.pipeline.run_stage(item.id, run_id=run_id)
                completed += 1
            except ConflictingUpdate as e:
                # Someone else moved the item; it is picked up again if still due
                self.logger.info(f"Skipped work item {item.id}: {e}")
            except WorkflowError as e:
                self.logger.error(f"Stage run failed for work item {item.id}: {e}")
        return completed

    def reconcile_pending(self) -> int:
        """
        Push work items whose board mirror failed earlier.

        Returns:
            Number of items reconciled
        """
        reconciled = 0
        for item in self.service.store.list_items(sync_pending=True):
            try:
                self.service.reconcile(item.id)
                reconciled += 1
            except ExternalSyncFailed as e:
                self.logger.warning(f"Work item {item.id} still out of sync: {e}")
        return reconciled

    def expire_clarifications(self) -> int:
        if self.service.clarifications is None:
            return 0
        expired = self.service.clarifications.expire_stale()
        for clarification in expired:
            self.logger.info(
                f"Clarification {clarification.id} for work item "
                f"{clarification.work_item_id} expired unanswered"
            )
        return len(expired)

    def poll_once(self) -> int:
        """
        Perform one poll: run due stages, reconcile, expire clarifications.

        Returns:
            Number of stage runs that completed
        """
        completed = self.run_due_items()
        self.reconcile_pending()
        self.expire_clarifications()
        return completed

    def run(self) -> None:
        """
        Main worker loop.

        Continuously polls for due work items and runs their stages.
        Sleeps for the configured poll interval when nothing was done.
        """
        self.logger.info(f"Worker {self.config.worker_id} starting main loop")

        while self.running:
            try:
                if self.poll_once() == 0:
                    self.logger.debug(
                        f"No due work items, sleeping for {self.config.poll_interval} seconds"
                    )
                    time.sleep(self.config.poll_interval)

            except KeyboardInterrupt:
                self.logger.info("Received keyboard interrupt, shutting down...")
                self.running = False

            except Exception as e:
                self.logger.error(f"Unexpected error in main loop: {e}")
                time.sleep(self.config.poll_interval)

        if self.service.dispatcher is not None:
            self.service.dispatcher.shutdown(wait=True)
        # Drop the cached Supabase client so a restarted worker reconnects
        reset_client()
        self.logger.info(f"Worker {self.config.worker_id} stopped")
