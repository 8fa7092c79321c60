"""Comment utilities for work-item progress notes.

This module provides a best-effort helper for posting agent comments on the
work item's GitHub issue.

Example:
    from conveyor.core.notifications import post_progress_comment

    status, msg = post_progress_comment(adapter, item, "Design ready for review")
    logger.debug(msg) if status == "success" else logger.error(msg)
"""

from conveyor.core.errors import ExternalSyncFailed
from conveyor.core.models import WorkItem
from conveyor.core.project.base import ProjectAdapter


def post_progress_comment(adapter: ProjectAdapter, item: WorkItem, text: str) -> tuple[str, str]:
    """Post a progress comment on the work item's issue.

    Best-effort helper that returns a status tuple, allowing callers to
    decide how to handle logging. Never raises on external failures, so a
    stage run continues even if GitHub is unavailable.

    Args:
        adapter: Project adapter used to reach the issue tracker.
        item: The work item to comment on.
        text: Comment body (markdown).

    Returns:
        A tuple of (status, message) where status is "success", "skipped" or
        "error" and message contains details about the operation result.
    """
    if not text.strip():
        return ("skipped", f"Empty comment for work item {item.id} not posted")
    if item.issue_number is None:
        return ("skipped", f"Work item {item.id} has no linked issue, comment not posted")
    try:
        adapter.post_comment(item, text)
        return ("success", f"Comment posted on issue #{item.issue_number}")
    except ExternalSyncFailed as exc:
        return ("error", f"Failed to post comment on issue #{item.issue_number}: {exc}")
