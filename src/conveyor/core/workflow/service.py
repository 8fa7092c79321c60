"""Workflow service: the only way work-item status changes.

Every operation follows the same sequence:

1. Load the item and ask the state graph where the operation leads.
2. Check artifact and pointer preconditions.
3. Run any external precondition (merging a PR, opening a revert PR).
4. Commit the status change and its StatusTransition record through a
   compare-and-swap on the item's version.
5. Mirror the new status to the project board. A failure here is logged and
   flags the item ``sync_pending``; the committed state stands.
6. Dispatch a notification (fire-and-forget).

Failures in steps 1-4 raise and leave no trace in the store.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Set, Tuple

from conveyor.core.agents.commit_message import format_commit_message_comment
from conveyor.core.clarifications import (
    ClarificationService,
    format_answer_comment,
    format_question_markdown,
)
from conveyor.core.config import WorkflowConfig
from conveyor.core.errors import (
    ConflictingUpdate,
    ExternalSyncFailed,
    InvalidToken,
    InvalidTransition,
    MissingArtifact,
    StageMismatch,
    UndoWindowExpired,
)
from conveyor.core.models import (
    STAGE_FOR_KIND,
    Actor,
    Artifact,
    ArtifactKind,
    ClarificationQuestion,
    CommitMessage,
    ItemType,
    ReviewStatus,
    StatusTransition,
    WorkItem,
    WorkItemStatus,
)
from conveyor.core.notifications.comments import post_progress_comment
from conveyor.core.notifications.dispatcher import NotificationDispatcher
from conveyor.core.project.base import ProjectAdapter
from conveyor.core.store import WorkItemStore
from conveyor.core.workflow import fsm

logger = logging.getLogger(__name__)

DesignAction = Literal["approve", "changes", "reject"]

# Reloads allowed when resuming an answered clarification loses a compare-and-swap
RESUME_ATTEMPTS = 3

DESIGN_REVIEW_TRIGGERS: Dict[str, str] = {
    "approve": "approve_design",
    "changes": "request_design_changes",
    "reject": "reject_design",
}

# Artifact kinds that count as "the design" of each design stage
DESIGN_KINDS: Dict[WorkItemStatus, Tuple[str, ...]] = {
    WorkItemStatus.PRODUCT_DESIGN: ("product_design", "bug_investigation"),
    WorkItemStatus.TECH_DESIGN: ("tech_design",),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowService:
    """Applies legal status transitions to work items.

    Args:
        store: Persistence for items, audit log, artifacts and clarifications.
        adapter: Project-management mirror. ``None`` disables mirroring and
            the operations that need GitHub (merges and reverts).
        dispatcher: Notification dispatcher. ``None`` disables notifications.
        clarifications: Clarification token service, required for
            answering clarifications.
        config: Undo window and related settings.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        store: WorkItemStore,
        adapter: Optional[ProjectAdapter] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clarifications: Optional[ClarificationService] = None,
        config: Optional[WorkflowConfig] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.adapter = adapter
        self.dispatcher = dispatcher
        self.clarifications = clarifications
        self.config = config or WorkflowConfig()
        self.clock = clock

    # ============================================================
    # Internals
    # ============================================================

    def _commit(
        self,
        item: WorkItem,
        operation: str,
        to_status: WorkItemStatus,
        to_review_status: Optional[ReviewStatus],
        actor: Actor,
        reason: Optional[str],
        updates: Optional[Dict[str, Any]] = None,
        compensates: Optional[str] = None,
    ) -> WorkItem:
        transition = StatusTransition(
            work_item_id=item.id,
            operation=operation,
            from_status=item.status,
            to_status=to_status,
            from_review_status=item.review_status,
            to_review_status=to_review_status,
            actor=actor,
            reason=reason,
            compensates=compensates,
            created_at=self.clock(),
        )
        updated = self.store.apply_transition(item.id, item.version, transition, updates)
        logger.info(
            f"Work item {item.id}: {operation} {item.status.value} -> {to_status.value} "
            f"(review: {to_review_status.value if to_review_status else '-'}, actor: {actor})"
        )
        return self._mirror(updated, item)

    def _fire(
        self,
        item: WorkItem,
        trigger: str,
        actor: Actor,
        reason: Optional[str] = None,
        updates: Optional[Dict[str, Any]] = None,
    ) -> WorkItem:
        destination = self._destination(item, trigger)
        return self._commit(
            item, trigger, destination, fsm.REVIEW_STATUS_AFTER[trigger], actor, reason, updates
        )

    @staticmethod
    def _destination(item: WorkItem, trigger: str) -> WorkItemStatus:
        return fsm.WorkItemMachine(item).fire(trigger)

    def _mirror(self, updated: WorkItem, previous: Optional[WorkItem]) -> WorkItem:
        """Push a committed change to the board; never raises ExternalSyncFailed.

        Only changed fields are pushed, unless there is no previous state or
        an earlier push failed.
        """
        if self.adapter is None:
            return updated
        full_push = previous is None or updated.sync_pending
        status_changed = full_push or updated.status != previous.status
        review_changed = full_push or updated.review_status != previous.review_status
        try:
            updated = self._link(updated)
            if updated.project_item_id is None:
                logger.debug(f"Work item {updated.id} has no board item, mirror skipped")
                return updated
            if status_changed:
                self.adapter.set_status(updated, updated.status)
            if review_changed:
                self.adapter.set_review_status(updated, updated.review_status)
        except ExternalSyncFailed as e:
            logger.error(f"Mirror of work item {updated.id} failed, marked sync_pending: {e}")
            self.store.set_sync_pending(updated.id, True)
            return updated.model_copy(update={"sync_pending": True})

        if updated.sync_pending:
            self.store.set_sync_pending(updated.id, False)
            updated = updated.model_copy(update={"sync_pending": False})
        return updated

    def _link(self, item: WorkItem) -> WorkItem:
        assert self.adapter is not None
        if item.project_item_id:
            return item
        project_item_id = self.adapter.ensure_project_item(item)
        if project_item_id:
            self.store.link_project_item(item.id, project_item_id)
            return item.model_copy(update={"project_item_id": project_item_id})
        return item

    def _require_adapter(self, operation: str) -> ProjectAdapter:
        if self.adapter is None:
            raise ExternalSyncFailed(f"'{operation}' needs a project adapter, none is configured")
        return self.adapter

    def _design_artifact(self, item: WorkItem) -> Optional[Artifact]:
        kinds = DESIGN_KINDS.get(item.status, ())
        candidates = [
            a
            for a in self.store.list_artifacts(item.id)
            if a.kind in kinds and a.stage == item.status
        ]
        return candidates[-1] if candidates else None

    def _require_design(self, item: WorkItem, operation: str) -> Artifact:
        artifact = self._design_artifact(item)
        if artifact is None:
            kind = DESIGN_KINDS.get(item.status, ("design",))[0]
            raise MissingArtifact(item.id, kind, operation)
        return artifact

    def _comment(self, item: WorkItem, text: str) -> None:
        if self.adapter is None:
            return
        status, msg = post_progress_comment(self.adapter, item, text)
        if status == "success":
            logger.debug(msg)
        elif status == "skipped":
            logger.info(msg)
        else:
            logger.error(msg)

    def _publish_design(self, item: WorkItem, artifact: Artifact) -> None:
        if self.adapter is None or item.issue_number is None:
            return
        section = "tech" if artifact.kind == "tech_design" else "product"
        try:
            self.adapter.publish_design(item, section, artifact.content)
        except ExternalSyncFailed as e:
            logger.error(f"Failed to embed {artifact.kind} in issue #{item.issue_number}: {e}")

    def _notify_change(self, updated: WorkItem, previous: WorkItem) -> None:
        if self.dispatcher and updated.status != previous.status:
            self.dispatcher.notify_status_changed(updated, previous.status)

    # ============================================================
    # Creation and routing
    # ============================================================

    def create_item(
        self,
        title: str,
        description: str = "",
        item_type: ItemType = "feature",
        issue_number: Optional[int] = None,
    ) -> WorkItem:
        """Create a Backlog work item, optionally linked to a GitHub issue."""
        if issue_number is not None and self.store.find_by_issue_number(issue_number):
            raise ValueError(f"Issue #{issue_number} is already tracked by a work item")

        now = self.clock()
        item = self.store.create_item(
            WorkItem(
                title=title,
                description=description,
                item_type=item_type,
                issue_number=issue_number,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(f"Created work item {item.id}: {item.title}")
        return self._mirror(item, None)

    def get_item(self, item_id: str) -> WorkItem:
        return self.store.get_item(item_id)

    def route(
        self,
        item_id: str,
        destination: WorkItemStatus,
        actor: Actor = "human",
        reason: Optional[str] = None,
    ) -> WorkItem:
        """Move a Backlog item into its first working stage."""
        item = self.store.get_item(item_id)
        trigger = fsm.ROUTE_TRIGGERS.get(destination)
        if trigger is None:
            raise InvalidTransition(
                "route", item.status.value, item.id, f"cannot route to '{destination.value}'"
            )
        updated = self._fire(item, trigger, actor, reason)
        if self.dispatcher:
            self.dispatcher.notify_routed(updated)
        return updated

    # ============================================================
    # Artifacts and design stages
    # ============================================================

    def record_artifact(
        self,
        item_id: str,
        kind: ArtifactKind,
        content: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Artifact:
        """Store an artifact produced at the item's current stage.

        A new artifact supersedes the previous one of the same kind.

        Raises:
            StageMismatch: If ``kind`` does not belong to the item's status.
        """
        item = self.store.get_item(item_id)
        stage = STAGE_FOR_KIND[kind]
        if item.status != stage:
            raise StageMismatch(item.id, stage.value, item.status.value)

        previous = self.store.latest_artifact(item.id, kind)
        artifact = self.store.add_artifact(
            Artifact(
                work_item_id=item.id,
                stage=stage,
                kind=kind,
                content=content,
                data=data or {},
                supersedes=previous.id if previous else None,
                created_at=self.clock(),
            )
        )
        logger.info(f"Recorded {kind} artifact {artifact.id} for work item {item.id}")
        return artifact

    def complete_design(
        self,
        item_id: str,
        artifact_id: Optional[str] = None,
        actor: Actor = "agent",
    ) -> WorkItem:
        """Mark the current design ready for review.

        Uses ``artifact_id`` if given, else the latest design of the stage.
        """
        item = self.store.get_item(item_id)
        self._destination(item, "complete_design")
        if artifact_id is not None:
            artifact = self.store.get_artifact(artifact_id)
            kinds = DESIGN_KINDS.get(item.status, ())
            if artifact is None or artifact.work_item_id != item.id or artifact.kind not in kinds:
                raise MissingArtifact(item.id, kinds[0], "complete_design")
            if artifact.stage != item.status:
                raise StageMismatch(item.id, artifact.stage.value, item.status.value)
        else:
            artifact = self._require_design(item, "complete_design")

        updated = self._fire(
            item, "complete_design", actor, updates={"design_artifact_id": artifact.id}
        )
        self._publish_design(updated, artifact)
        if self.dispatcher:
            self.dispatcher.notify_design_ready(updated, str(artifact.data.get("comment", "")))
        return updated

    def review_design(
        self,
        item_id: str,
        action: DesignAction,
        actor: Actor = "human",
        reason: Optional[str] = None,
    ) -> WorkItem:
        """Approve, send back or reject the current stage's design.

        Approval advances the item one stage and needs a design artifact for
        the stage being left.
        """
        item = self.store.get_item(item_id)
        trigger = DESIGN_REVIEW_TRIGGERS.get(action)
        if trigger is None:
            raise InvalidTransition(
                "review_design", item.status.value, item.id, f"unknown action '{action}'"
            )
        self._destination(item, trigger)

        updates = None
        if action == "approve":
            updates = {"design_artifact_id": self._require_design(item, "review_design").id}

        updated = self._fire(item, trigger, actor, reason, updates)
        self._notify_change(updated, item)
        return updated

    def merge_design_pr(
        self,
        item_id: str,
        pr_number: int,
        actor: Actor = "human",
    ) -> WorkItem:
        """Merge the PR carrying the stage's design and advance one stage."""
        item = self.store.get_item(item_id)
        self._destination(item, "merge_design_pr")
        design = self._require_design(item, "merge_design_pr")
        adapter = self._require_adapter("merge_design_pr")

        stage = "product" if item.status == WorkItemStatus.PRODUCT_DESIGN else "technical"
        sha = adapter.merge_pull_request(
            pr_number, f"docs: {stage} design for {item.title}", design.content[:1000]
        )
        updated = self._fire(
            item,
            "merge_design_pr",
            actor,
            f"Merged design PR #{pr_number} ({sha[:7]})",
            {"design_artifact_id": design.id},
        )
        if self.dispatcher:
            self.dispatcher.notify_merged(updated, pr_number, sha)
        return updated

    # ============================================================
    # Implementation and PR review
    # ============================================================

    def submit_pr(self, item_id: str, pr_number: int, actor: Actor = "agent") -> WorkItem:
        """Hand an implementation PR to review."""
        item = self.store.get_item(item_id)
        self._destination(item, "submit_pr")
        artifact = self.store.latest_artifact(item.id, "implementation")
        if artifact is None:
            raise MissingArtifact(item.id, "implementation", "submit_pr")

        updated = self._fire(item, "submit_pr", actor, updates={"pr_number": pr_number})
        if self.dispatcher:
            self.dispatcher.notify_pr_ready(updated, pr_number, artifact.content)
        return updated

    def approve_pr(
        self,
        item_id: str,
        commit_message: CommitMessage,
        actor: Actor = "agent",
        review: str = "",
    ) -> WorkItem:
        """Approve the PR and store the commit message used at merge time."""
        item = self.store.get_item(item_id)
        self._destination(item, "approve_pr")
        artifact = self.record_artifact(
            item.id,
            "commit_message",
            f"{commit_message.title}\n\n{commit_message.body}".strip(),
            commit_message.model_dump(),
        )
        updated = self._fire(
            item, "approve_pr", actor, updates={"commit_message_artifact_id": artifact.id}
        )
        self._comment(updated, format_commit_message_comment(commit_message))
        if self.dispatcher:
            self.dispatcher.notify_review_complete(updated, True, review)
        return updated

    def request_changes_on_pr(
        self,
        item_id: str,
        actor: Actor = "agent",
        reason: Optional[str] = None,
    ) -> WorkItem:
        """Send the PR back to implementation."""
        item = self.store.get_item(item_id)
        updated = self._fire(item, "request_changes_on_pr", actor, reason)
        if self.dispatcher:
            self.dispatcher.notify_review_complete(updated, False, reason or "")
        return updated

    def merge_implementation_pr(
        self,
        item_id: str,
        pr_number: int,
        actor: Actor = "human",
    ) -> WorkItem:
        """Squash-merge the approved PR with its stored commit message.

        Raises:
            InvalidTransition: Wrong status, PR not approved, or PR number
                does not match the item's PR.
            MissingArtifact: No commit message has been recorded.
            ExternalSyncFailed: GitHub refused the merge; nothing committed.
        """
        item = self.store.get_item(item_id)
        self._destination(item, "merge_implementation_pr")
        if item.pr_number != pr_number:
            raise InvalidTransition(
                "merge_implementation_pr",
                item.status.value,
                item.id,
                f"PR #{pr_number} is not the item's PR (#{item.pr_number})",
            )
        if item.review_status != ReviewStatus.APPROVED:
            raise InvalidTransition(
                "merge_implementation_pr", item.status.value, item.id, "PR is not approved"
            )
        artifact = (
            self.store.get_artifact(item.commit_message_artifact_id)
            if item.commit_message_artifact_id
            else None
        )
        if artifact is None:
            raise MissingArtifact(item.id, "commit_message", "merge_implementation_pr")
        message = CommitMessage.model_validate(artifact.data)

        sha = self._require_adapter("merge_implementation_pr").merge_pull_request(
            pr_number, message.title, message.body
        )
        updated = self._fire(
            item,
            "merge_implementation_pr",
            actor,
            f"Merged PR #{pr_number} ({sha[:7]})",
            {"last_merged_pr": pr_number, "last_merge_sha": sha},
        )
        if self.dispatcher:
            self.dispatcher.notify_merged(updated, pr_number, sha)
        return updated

    def mark_done(
        self, item_id: str, actor: Actor = "human", reason: Optional[str] = None
    ) -> WorkItem:
        item = self.store.get_item(item_id)
        updated = self._fire(item, "mark_done", actor, reason)
        self._notify_change(updated, item)
        return updated

    # ============================================================
    # Reverting merged work
    # ============================================================

    def revert_merge(
        self,
        item_id: str,
        pr_number: int,
        short_sha: Optional[str] = None,
        actor: Actor = "human",
    ) -> WorkItem:
        """Open a PR reverting the item's last merge.

        ``short_sha`` (from a notification button) must be a prefix of the
        recorded merge SHA, so a stale button cannot revert a newer merge.
        """
        item = self.store.get_item(item_id)
        self._destination(item, "revert_merge")
        if item.last_merged_pr != pr_number or not item.last_merge_sha:
            raise InvalidTransition(
                "revert_merge", item.status.value, item.id, f"no recorded merge of PR #{pr_number}"
            )
        if short_sha and not item.last_merge_sha.lower().startswith(short_sha.strip().lower()):
            raise InvalidTransition(
                "revert_merge",
                item.status.value,
                item.id,
                f"SHA mismatch: {short_sha} is not {item.last_merge_sha[:7]}",
            )

        revert_pr = self._require_adapter("revert_merge").create_revert_pr(
            pr_number, item.last_merge_sha
        )
        updated = self._fire(
            item,
            "revert_merge",
            actor,
            f"Revert PR #{revert_pr} opened for #{pr_number}",
            {"revert_pr_number": revert_pr},
        )
        if self.dispatcher:
            self.dispatcher.notify_reverted(updated, pr_number, revert_pr)
        return updated

    def merge_revert_pr(self, item_id: str, pr_number: int, actor: Actor = "human") -> WorkItem:
        """Merge the revert PR and send the item back to implementation."""
        item = self.store.get_item(item_id)
        self._destination(item, "merge_revert_pr")
        if item.revert_pr_number != pr_number:
            raise InvalidTransition(
                "merge_revert_pr",
                item.status.value,
                item.id,
                f"PR #{pr_number} is not the item's revert PR (#{item.revert_pr_number})",
            )

        sha = self._require_adapter("merge_revert_pr").merge_pull_request(
            pr_number, f'Revert "{item.title}"', f"Reverts #{item.last_merged_pr}"
        )
        updated = self._fire(
            item, "merge_revert_pr", actor, f"Merged revert PR #{pr_number} ({sha[:7]})"
        )
        if self.dispatcher:
            self.dispatcher.notify_merged(updated, pr_number, sha)
        return updated

    # ============================================================
    # Clarifications
    # ============================================================

    def request_clarification(
        self,
        item_id: str,
        question: ClarificationQuestion,
        actor: Actor = "agent",
    ) -> WorkItem:
        """Pause the item until a human answers ``question``.

        Issues a single-use answer link when a clarification service is
        configured, posts the question on the issue and notifies the admin.
        """
        item = self.store.get_item(item_id)
        updated = self._fire(
            item, "request_clarification", actor, question.question[:200]
        )

        answer_url = ""
        if self.clarifications is not None:
            clarification, token = self.clarifications.issue(updated, question)
            answer_url = self.clarifications.answer_url(clarification, token)
        else:
            logger.warning(f"No clarification service configured, no answer link for {item.id}")

        self._comment(updated, "## ❓ Clarification Needed\n\n" + format_question_markdown(question))
        if self.dispatcher:
            self.dispatcher.notify_clarification_needed(updated, question.question, answer_url)
        return updated

    def mark_clarification_received(self, item_id: str, actor: Actor = "human") -> WorkItem:
        item = self.store.get_item(item_id)
        if item.review_status != ReviewStatus.WAITING_FOR_CLARIFICATION:
            raise InvalidTransition(
                "clarification_received",
                item.status.value,
                item.id,
                "no clarification is pending",
            )
        return self._fire(item, "clarification_received", actor)

    def answer_clarification(
        self,
        clarification_id: str,
        token: str,
        answer: str,
        actor: Actor = "human",
    ) -> WorkItem:
        """Redeem a clarification token and resume the item.

        Submitting an answered token again finishes the resume when the item
        is still waiting on that clarification; otherwise tokens are single-use.

        Raises:
            InvalidToken: Wrong, unknown or already used token.
            ExpiredToken: The token's time-to-live elapsed.
            InvalidTransition: The item is no longer waiting for an answer.
            ConflictingUpdate: The item kept changing underneath the resume.
        """
        if self.clarifications is None:
            raise ValueError("Clarification service is not configured")

        clarification = self.clarifications.verify(clarification_id, token, allow_answered=True)
        item = self.store.get_item(clarification.work_item_id)

        if clarification.status == "answered":
            if not self._awaiting_resume(item, clarification.id):
                raise InvalidToken(f"Clarification {clarification_id} was already answered")
            logger.warning(
                f"Clarification {clarification_id} was answered but work item {item.id} "
                f"never resumed, resuming now"
            )
            answered = clarification
        else:
            if item.review_status != ReviewStatus.WAITING_FOR_CLARIFICATION:
                raise InvalidTransition(
                    "clarification_received",
                    item.status.value,
                    item.id,
                    "no clarification is pending",
                )
            answered = self.clarifications.answer(clarification_id, token, answer)

        updated = self._resume_after_answer(item.id, actor)
        self._comment(updated, format_answer_comment(answered.question, answered.answer or ""))
        return updated

    def _awaiting_resume(self, item: WorkItem, clarification_id: str) -> bool:
        """True when ``item`` still waits and this is its most recent clarification."""
        if item.review_status != ReviewStatus.WAITING_FOR_CLARIFICATION:
            return False
        issued = self.store.list_clarifications(item_id=item.id)
        latest = max(issued, key=lambda c: c.created_at, default=None)
        return latest is not None and latest.id == clarification_id

    def _resume_after_answer(self, item_id: str, actor: Actor) -> WorkItem:
        # The answer is already stored; a lost compare-and-swap reloads and retries
        attempt = 1
        while True:
            try:
                return self.mark_clarification_received(item_id, actor)
            except ConflictingUpdate as e:
                if attempt >= RESUME_ATTEMPTS:
                    logger.error(
                        f"Resume of work item {item_id} lost {attempt} concurrent updates; "
                        f"re-submit the answer to finish"
                    )
                    raise
                logger.warning(f"{e}, retrying resume ({attempt}/{RESUME_ATTEMPTS})")
                attempt += 1

    # ============================================================
    # Undo
    # ============================================================

    def undo_status_change(
        self,
        item_id: str,
        transition_id: Optional[str] = None,
        actor: Actor = "human",
        now: Optional[datetime] = None,
    ) -> WorkItem:
        """Reverse a recent transition by appending a compensating record.

        Without ``transition_id`` the latest transition that has not been
        undone is reversed. The forward record is kept.

        Raises:
            UndoWindowExpired: The transition is older than the undo window.
            InvalidTransition: Nothing to undo, the transition cannot be
                undone, or the item has moved on since.
        """
        item = self.store.get_item(item_id)
        history = self.store.list_transitions(item.id)
        compensated: Set[str] = {t.compensates for t in history if t.compensates}

        if transition_id is not None:
            target = next((t for t in history if t.id == transition_id), None)
            if target is None:
                raise InvalidTransition(
                    fsm.UNDO_TRIGGER,
                    item.status.value,
                    item.id,
                    f"unknown transition {transition_id}",
                )
            if target.id in compensated or not fsm.can_undo(target):
                raise InvalidTransition(
                    fsm.UNDO_TRIGGER,
                    item.status.value,
                    item.id,
                    f"transition {target.id} ({target.operation}) cannot be undone",
                )
        else:
            target = next(
                (
                    t
                    for t in reversed(history)
                    if t.id not in compensated and t.operation != fsm.UNDO_TRIGGER
                ),
                None,
            )
            if target is None:
                raise InvalidTransition(
                    fsm.UNDO_TRIGGER, item.status.value, item.id, "nothing to undo"
                )
            if not fsm.can_undo(target):
                raise InvalidTransition(
                    fsm.UNDO_TRIGGER,
                    item.status.value,
                    item.id,
                    f"'{target.operation}' cannot be undone",
                )

        now = now or self.clock()
        window = self.config.undo_window_seconds
        if now - target.created_at > timedelta(seconds=window):
            raise UndoWindowExpired(item.id, target.id, window)

        if item.status != target.to_status or item.review_status != target.to_review_status:
            raise InvalidTransition(
                fsm.UNDO_TRIGGER,
                item.status.value,
                item.id,
                f"item has moved on since transition {target.id}",
            )

        updated = self._commit(
            item,
            fsm.UNDO_TRIGGER,
            target.from_status,
            target.from_review_status,
            actor,
            f"Undo {target.operation}",
            compensates=target.id,
        )
        if self.dispatcher:
            self.dispatcher.notify_undo(updated, item.status)
        return updated

    # ============================================================
    # Reconciliation and audit
    # ============================================================

    def reconcile(self, item_id: str) -> WorkItem:
        """Make the board match the internal status, which always wins.

        Raises:
            ExternalSyncFailed: The board is still unreachable; the item
                stays ``sync_pending``.
        """
        item = self.store.get_item(item_id)
        if self.adapter is None:
            return item

        try:
            item = self._link(item)
            if item.project_item_id is None:
                logger.debug(f"Work item {item.id} has no board item, nothing to reconcile")
                if item.sync_pending:
                    self.store.set_sync_pending(item.id, False)
                return self.store.get_item(item.id)

            external = self.adapter.read_status(item)
            if external != item.status:
                logger.warning(
                    f"Drift on work item {item.id}: board shows "
                    f"{external.value if external else 'nothing'}, internal is {item.status.value}"
                )
            if external != item.status or item.sync_pending:
                self.adapter.set_status(item, item.status)
                self.adapter.set_review_status(item, item.review_status)
                logger.info(f"Reconciled work item {item.id} to {item.status.value}")
        except ExternalSyncFailed:
            self.store.set_sync_pending(item.id, True)
            raise

        if item.sync_pending:
            self.store.set_sync_pending(item.id, False)
        return self.store.get_item(item.id)

    def history(self, item_id: str) -> List[StatusTransition]:
        """Return the item's audit log, oldest first."""
        self.store.get_item(item_id)
        return self.store.list_transitions(item_id)

    @staticmethod
    def replay(
        transitions: Iterable[StatusTransition],
    ) -> Tuple[WorkItemStatus, Optional[ReviewStatus]]:
        """Fold an audit log into the (status, review status) it produces."""
        return fsm.replay(transitions)
