"""Unit tests for comment notification utilities."""

from unittest.mock import Mock

from conveyor.core.errors import ExternalSyncFailed
from conveyor.core.models import WorkItem
from conveyor.core.notifications.comments import post_progress_comment


class TestPostProgressComment:
    """Tests for post_progress_comment helper function."""

    def test_posts_on_linked_issue(self):
        adapter = Mock()
        item = WorkItem(title="Add dark mode", issue_number=12)

        status, message = post_progress_comment(adapter, item, "Design ready")

        assert status == "success"
        assert "#12" in message
        adapter.post_comment.assert_called_once_with(item, "Design ready")

    def test_skips_item_without_issue(self):
        adapter = Mock()
        item = WorkItem(title="Add dark mode")

        status, message = post_progress_comment(adapter, item, "Design ready")

        assert status == "skipped"
        assert "no linked issue" in message
        adapter.post_comment.assert_not_called()

    def test_skips_empty_text(self):
        adapter = Mock()
        item = WorkItem(title="Add dark mode", issue_number=12)

        status, _ = post_progress_comment(adapter, item, "   ")

        assert status == "skipped"
        adapter.post_comment.assert_not_called()

    def test_reports_external_failure(self):
        adapter = Mock()
        adapter.post_comment.side_effect = ExternalSyncFailed("502 Bad Gateway")
        item = WorkItem(title="Add dark mode", issue_number=12)

        status, message = post_progress_comment(adapter, item, "Design ready")

        assert status == "error"
        assert "502 Bad Gateway" in message
