"""Fire-and-forget notification dispatch.

The dispatcher is called after a state change has committed. Sends run on a
small thread pool so a slow or failing messaging API never delays or aborts a
workflow transition; failures are logged and swallowed.
"""

import html
import logging
import re
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from conveyor.core.config import GitHubConfig
from conveyor.core.models import WorkItem, WorkItemStatus
from conveyor.core.notifications.base import ADMIN_CHANNEL, INFO_CHANNEL, Notifier

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    WorkItemStatus.BACKLOG: "Backlog",
    WorkItemStatus.PRODUCT_DESIGN: "Product Design",
    WorkItemStatus.TECH_DESIGN: "Technical Design",
    WorkItemStatus.IMPLEMENTATION: "Implementation",
    WorkItemStatus.REVIEW: "PR Review",
    WorkItemStatus.DONE: "Done",
    WorkItemStatus.REVERTED: "Reverted",
}

MAX_ERROR_LENGTH = 500

# Room left for the heading, links and markup under Telegram's 4096 limit
MAX_BODY_LENGTH = 3000

_PARTIAL_ENTITY = re.compile(r"&[#\w]*$")


def escape_body(text: str, limit: int = MAX_BODY_LENGTH) -> str:
    """HTML-escape free text and clip it to ``limit`` characters.

    Clipping happens after escaping and never splits an entity, so the result
    can be embedded in markup as-is.
    """
    escaped = html.escape(text)
    if len(escaped) <= limit:
        return escaped
    clipped = _PARTIAL_ENTITY.sub("", escaped[: limit - 1])
    return clipped + "…"


class NotificationDispatcher:
    """Formats workflow events and hands them to a Notifier without blocking.

    Args:
        notifier: Delivery backend (Telegram in production).
        github: Optional GitHub settings used to add issue and PR links.
        synchronous: Deliver inline instead of on the thread pool (CLI runs).
        max_workers: Size of the delivery thread pool.
    """

    def __init__(
        self,
        notifier: Notifier,
        github: Optional[GitHubConfig] = None,
        synchronous: bool = False,
        max_workers: int = 2,
    ):
        self.notifier = notifier
        self.github = github
        self.synchronous = synchronous
        self._executor: Optional[ThreadPoolExecutor] = (
            None if synchronous else ThreadPoolExecutor(max_workers=max_workers)
        )

    def dispatch(self, channel: str, text: str) -> Optional[Future]:
        """Send ``text`` without waiting; returns the pending Future if async."""
        if self._executor is None:
            self._deliver(channel, text)
            return None
        try:
            return self._executor.submit(self._deliver, channel, text)
        except RuntimeError as e:
            # Executor already shut down during process exit
            logger.warning(f"Notification dropped ({channel}): {e}")
            return None

    def _deliver(self, channel: str, text: str) -> bool:
        try:
            delivered = self.notifier.send_message(channel, text)
        except Exception as e:
            logger.error(f"Notifier raised while sending to {channel}: {e}")
            return False
        if not delivered:
            logger.warning(f"Notification to {channel} was not delivered")
        return delivered

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    # ============================================================
    # Message builders
    # ============================================================

    def _heading(self, item: WorkItem) -> str:
        title = html.escape(item.title)
        if item.issue_number is not None and self.github and self.github.enabled:
            url = self.github.issue_url(item.issue_number)
            return f'<b><a href="{url}">#{item.issue_number}</a> {title}</b>'
        if item.issue_number is not None:
            return f"<b>#{item.issue_number} {title}</b>"
        return f"<b>{title}</b>"

    def _pr_ref(self, pr_number: int) -> str:
        if self.github and self.github.enabled:
            return f'<a href="{self.github.pr_url(pr_number)}">PR #{pr_number}</a>'
        return f"PR #{pr_number}"

    def notify_routed(self, item: WorkItem) -> None:
        self.dispatch(
            INFO_CHANNEL,
            f"📋 {self._heading(item)}\nRouted to <b>{STATUS_LABELS[item.status]}</b>",
        )

    def notify_status_changed(self, item: WorkItem, previous: WorkItemStatus) -> None:
        text = (
            f"➡️ {self._heading(item)}\n"
            f"{STATUS_LABELS[previous]} → <b>{STATUS_LABELS[item.status]}</b>"
        )
        if self.github and self.github.enabled:
            text += f'\n<a href="{self.github.project_url()}">Project board</a>'
        self.dispatch(INFO_CHANNEL, text)

    def notify_design_ready(self, item: WorkItem, summary: str = "") -> None:
        stage = STATUS_LABELS[item.status]
        text = f"📝 {self._heading(item)}\n{stage} ready for review"
        if summary:
            text += f"\n\n{escape_body(summary)}"
        self.dispatch(ADMIN_CHANNEL, text)

    def notify_pr_ready(self, item: WorkItem, pr_number: int, summary: str = "") -> None:
        text = f"🔀 {self._heading(item)}\n{self._pr_ref(pr_number)} ready for review"
        if summary:
            text += f"\n\n{escape_body(summary)}"
        self.dispatch(ADMIN_CHANNEL, text)

    def notify_review_complete(self, item: WorkItem, approved: bool, review: str = "") -> None:
        verdict = "✅ Approved" if approved else "🔄 Changes requested"
        text = f"👀 {self._heading(item)}\nPR review: <b>{verdict}</b>"
        if review:
            text += f"\n\n{escape_body(review, MAX_ERROR_LENGTH)}"
        self.dispatch(ADMIN_CHANNEL, text)

    def notify_clarification_needed(self, item: WorkItem, question: str, answer_url: str) -> None:
        self.dispatch(
            ADMIN_CHANNEL,
            f"❓ {self._heading(item)}\nAgent needs clarification:\n\n"
            f"{escape_body(question)}\n\n"
            f'<a href="{html.escape(answer_url, quote=True)}">Answer</a>',
        )

    def notify_agent_error(self, item: WorkItem, stage: str, error: str) -> None:
        self.dispatch(
            ADMIN_CHANNEL,
            f"⚠️ {self._heading(item)}\n{html.escape(stage)} agent failed:\n"
            f"<code>{escape_body(error, MAX_ERROR_LENGTH)}</code>",
        )

    def notify_merged(self, item: WorkItem, pr_number: int, sha: str) -> None:
        self.dispatch(
            INFO_CHANNEL,
            f"🎉 {self._heading(item)}\n{self._pr_ref(pr_number)} merged ({html.escape(sha[:7])})",
        )

    def notify_reverted(self, item: WorkItem, pr_number: int, revert_pr: int) -> None:
        self.dispatch(
            ADMIN_CHANNEL,
            f"↩️ {self._heading(item)}\nRevert of PR #{pr_number} opened: {self._pr_ref(revert_pr)}",
        )

    def notify_undo(self, item: WorkItem, previous: WorkItemStatus) -> None:
        self.dispatch(
            INFO_CHANNEL,
            f"⏪ {self._heading(item)}\nUndone: {STATUS_LABELS[previous]} → "
            f"<b>{STATUS_LABELS[item.status]}</b>",
        )
