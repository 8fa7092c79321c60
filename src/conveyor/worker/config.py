"""Configuration management for the Conveyor worker."""

from dataclasses import dataclass
from typing import Optional

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass
class WorkerConfig:
    """Configuration for the Conveyor worker.

    Attributes:
        worker_id: Unique identifier for this worker instance
        poll_interval: Number of seconds to wait between polls
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        max_items_per_poll: Upper bound on stage runs started per poll
        working_dir: Optional directory to run worker from
        env_file: Optional .env file to load instead of the default lookup
    """

    worker_id: str
    poll_interval: int = 10
    log_level: str = "INFO"
    max_items_per_poll: int = 5
    working_dir: Optional[str] = None
    env_file: Optional[str] = None

    def __post_init__(self):
        """Validate configuration values."""
        if not self.worker_id:
            raise ValueError("worker_id cannot be empty")

        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        if self.max_items_per_poll <= 0:
            raise ValueError("max_items_per_poll must be positive")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}")

        # Normalize log level to uppercase
        self.log_level = self.log_level.upper()
