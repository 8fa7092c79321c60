"""Command-line interface for the Conveyor worker."""

import argparse
import os

from .config import VALID_LOG_LEVELS, WorkerConfig
from .worker import WorkItemWorker


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Conveyor Work Item Worker Daemon",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  conveyor-worker --worker-id alleycat-1
  python -m conveyor.worker --worker-id tydirium-1 --poll-interval 5 --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--worker-id",
        required=True,
        help="Unique identifier for this worker instance (e.g., 'alleycat-1')",
    )

    parser.add_argument(
        "--poll-interval",
        type=int,
        default=10,
        help="Number of seconds to wait between polls (default: 10)",
    )

    default_log_level = os.environ.get("CONVEYOR_LOG_LEVEL", "INFO").upper()
    if default_log_level not in VALID_LOG_LEVELS:
        default_log_level = "INFO"

    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=VALID_LOG_LEVELS,
        help=f"Logging level (default: {default_log_level})",
    )

    parser.add_argument(
        "--max-items",
        type=int,
        default=5,
        help="Maximum stage runs started per poll (default: 5)",
    )

    parser.add_argument(
        "--working-dir",
        default=None,
        help="Directory to run the worker from (agents run in this checkout)",
    )

    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a .env file to load (default: .env lookup from the working directory)",
    )

    return parser


def main(argv=None):
    """Parse command line arguments and start the worker."""
    args = build_parser().parse_args(argv)

    # Create configuration
    config = WorkerConfig(
        worker_id=args.worker_id,
        poll_interval=args.poll_interval,
        log_level=args.log_level,
        max_items_per_poll=args.max_items,
        working_dir=args.working_dir,
        env_file=args.env_file,
    )

    # Create and start the worker
    worker = WorkItemWorker(config)
    worker.run()
