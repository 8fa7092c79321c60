"""Polling worker that runs agent stages for due work items."""

from conveyor.worker.config import WorkerConfig
from conveyor.worker.worker import WorkItemWorker

__all__ = ["WorkerConfig", "WorkItemWorker"]
