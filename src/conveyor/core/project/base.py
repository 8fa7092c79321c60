"""Project-management adapter interface.

The workflow service talks to the external system of record (a GitHub
Projects V2 board plus the repository's issues and pull requests) only through
this interface. Every method raises ``ExternalSyncFailed`` when the external
system rejects or cannot be reached.
"""

from abc import ABC, abstractmethod
from typing import Optional, Set

from conveyor.core.models import ReviewStatus, WorkItem, WorkItemStatus


class ProjectAdapter(ABC):
    """Mirror of work-item state in an external project-management system."""

    @abstractmethod
    def set_status(self, item: WorkItem, status: WorkItemStatus) -> None:
        """Move the item's board card to the column for ``status``."""

    @abstractmethod
    def set_review_status(self, item: WorkItem, review_status: Optional[ReviewStatus]) -> None:
        """Set (or clear) the item's review-status field."""

    @abstractmethod
    def read_status(self, item: WorkItem) -> Optional[WorkItemStatus]:
        """Return the status the board currently shows, or None if unmapped."""

    @abstractmethod
    def post_comment(self, item: WorkItem, text: str) -> None:
        """Post a comment on the item's issue."""

    @abstractmethod
    def get_status_options(self) -> Set[str]:
        """Return the column names the board's status field offers."""

    @abstractmethod
    def merge_pull_request(self, pr_number: int, title: str, body: str) -> str:
        """Squash-merge a pull request and return the merge commit SHA."""

    @abstractmethod
    def create_revert_pr(self, pr_number: int, merge_sha: str) -> int:
        """Open a pull request reverting ``merge_sha`` and return its number."""

    def ensure_project_item(self, item: WorkItem) -> Optional[str]:
        """Add the item's issue to the board if needed and return the board item id.

        Adapters without a board concept return the item's existing id.
        """
        return item.project_item_id

    def publish_design(self, item: WorkItem, section: str, design: str) -> None:
        """Embed ``design`` in the item's issue body under its ``section`` markers.

        Adapters without issue bodies ignore it.
        """
