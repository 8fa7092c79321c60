"""Work-item store interface and the in-process implementation.

``WorkItemStore`` is the only persistence seam the workflow service depends
on. ``SupabaseStore`` (``conveyor.core.database``) is the production backend;
``InMemoryStore`` backs local runs (``CONVEYOR_STORE=memory``) and tests.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from conveyor.core.errors import ConflictingUpdate, ItemNotFound
from conveyor.core.models import (
    Artifact,
    Clarification,
    ClarificationState,
    StatusTransition,
    WorkItem,
    WorkItemStatus,
)

logger = logging.getLogger(__name__)

# Pointer fields a transition may set alongside the status change
TRANSITION_FIELDS = frozenset(
    {
        "design_artifact_id",
        "pr_number",
        "commit_message_artifact_id",
        "last_merged_pr",
        "last_merge_sha",
        "revert_pr_number",
    }
)


def check_transition_fields(updates: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Reject updates to fields a transition is not allowed to touch."""
    updates = dict(updates or {})
    unknown = set(updates) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be set by a transition: {', '.join(sorted(unknown))}")
    return updates


class WorkItemStore(ABC):
    """Persistence for work items, their audit log, artifacts and clarifications."""

    @abstractmethod
    def create_item(self, item: WorkItem) -> WorkItem:
        """Persist a new work item and return the stored copy."""

    @abstractmethod
    def get_item(self, item_id: str) -> WorkItem:
        """Fetch a work item.

        Raises:
            ItemNotFound: If no item has this id.
        """

    @abstractmethod
    def find_by_issue_number(self, issue_number: int) -> Optional[WorkItem]:
        """Return the item linked to a GitHub issue number, if any."""

    @abstractmethod
    def list_items(
        self,
        statuses: Optional[Iterable[WorkItemStatus]] = None,
        sync_pending: Optional[bool] = None,
    ) -> List[WorkItem]:
        """List items ordered by creation time, optionally filtered."""

    @abstractmethod
    def apply_transition(
        self,
        item_id: str,
        expected_version: int,
        transition: StatusTransition,
        updates: Optional[Dict[str, Any]] = None,
    ) -> WorkItem:
        """Atomically move an item to ``transition.to_status`` and append the record.

        The write only happens if the stored version still equals
        ``expected_version``; the status, review status, pointer updates and
        the StatusTransition row commit together or not at all.

        Raises:
            ItemNotFound: If no item has this id.
            ConflictingUpdate: If the item changed since it was read.
        """

    @abstractmethod
    def set_sync_pending(self, item_id: str, pending: bool) -> None:
        """Flag or clear an item whose external mirror is behind."""

    @abstractmethod
    def link_project_item(self, item_id: str, project_item_id: str) -> None:
        """Record the external project-board item id for a work item."""

    @abstractmethod
    def list_transitions(self, item_id: str) -> List[StatusTransition]:
        """Return the item's audit log ordered by creation time."""

    @abstractmethod
    def add_artifact(self, artifact: Artifact) -> Artifact:
        """Persist an immutable artifact."""

    @abstractmethod
    def get_artifact(self, artifact_id: str) -> Optional[Artifact]:
        """Fetch an artifact by id."""

    @abstractmethod
    def list_artifacts(self, item_id: str, kind: Optional[str] = None) -> List[Artifact]:
        """Return artifacts for an item ordered by creation time."""

    def latest_artifact(self, item_id: str, kind: str) -> Optional[Artifact]:
        """Return the newest artifact of ``kind``, which supersedes older ones."""
        artifacts = self.list_artifacts(item_id, kind)
        return artifacts[-1] if artifacts else None

    @abstractmethod
    def create_clarification(self, clarification: Clarification) -> Clarification:
        """Persist a pending clarification."""

    @abstractmethod
    def get_clarification(self, clarification_id: str) -> Optional[Clarification]:
        """Fetch a clarification by id."""

    @abstractmethod
    def resolve_clarification(
        self,
        clarification_id: str,
        status: ClarificationState,
        resolved_at: datetime,
        answer: Optional[str] = None,
    ) -> Optional[Clarification]:
        """Move a pending clarification to ``status``.

        Returns:
            The updated clarification, or None if it was no longer pending.
        """

    @abstractmethod
    def list_clarifications(
        self, status: Optional[ClarificationState] = None, item_id: Optional[str] = None
    ) -> List[Clarification]:
        """List clarifications, optionally filtered by status or item."""


class InMemoryStore(WorkItemStore):
    """Thread-safe dictionary-backed store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: Dict[str, WorkItem] = {}
        self._transitions: List[StatusTransition] = []
        self._artifacts: List[Artifact] = []
        self._clarifications: Dict[str, Clarification] = {}

    def create_item(self, item: WorkItem) -> WorkItem:
        with self._lock:
            if item.id in self._items:
                raise ValueError(f"Work item {item.id} already exists")
            self._items[item.id] = item.model_copy(deep=True)
            return item.model_copy(deep=True)

    def get_item(self, item_id: str) -> WorkItem:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise ItemNotFound(item_id)
            return item.model_copy(deep=True)

    def find_by_issue_number(self, issue_number: int) -> Optional[WorkItem]:
        with self._lock:
            for item in self._items.values():
                if item.issue_number == issue_number:
                    return item.model_copy(deep=True)
        return None

    def list_items(
        self,
        statuses: Optional[Iterable[WorkItemStatus]] = None,
        sync_pending: Optional[bool] = None,
    ) -> List[WorkItem]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            items = [
                item.model_copy(deep=True)
                for item in self._items.values()
                if (wanted is None or item.status in wanted)
                and (sync_pending is None or item.sync_pending == sync_pending)
            ]
        return sorted(items, key=lambda i: i.created_at)

    def apply_transition(
        self,
        item_id: str,
        expected_version: int,
        transition: StatusTransition,
        updates: Optional[Dict[str, Any]] = None,
    ) -> WorkItem:
        updates = check_transition_fields(updates)
        with self._lock:
            current = self._items.get(item_id)
            if current is None:
                raise ItemNotFound(item_id)
            if current.version != expected_version:
                raise ConflictingUpdate(item_id, expected_version)

            updated = current.model_copy(
                update={
                    **updates,
                    "status": transition.to_status,
                    "review_status": transition.to_review_status,
                    "version": current.version + 1,
                    "updated_at": transition.created_at,
                },
                deep=True,
            )
            self._items[item_id] = updated
            self._transitions.append(transition)
            return updated.model_copy(deep=True)

    def set_sync_pending(self, item_id: str, pending: bool) -> None:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise ItemNotFound(item_id)
            self._items[item_id] = item.model_copy(update={"sync_pending": pending})

    def link_project_item(self, item_id: str, project_item_id: str) -> None:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise ItemNotFound(item_id)
            self._items[item_id] = item.model_copy(update={"project_item_id": project_item_id})

    def list_transitions(self, item_id: str) -> List[StatusTransition]:
        with self._lock:
            # Append order is commit order; sort is stable for equal timestamps
            records = [t for t in self._transitions if t.work_item_id == item_id]
        return sorted(records, key=lambda t: t.created_at)

    def add_artifact(self, artifact: Artifact) -> Artifact:
        with self._lock:
            if artifact.work_item_id not in self._items:
                raise ItemNotFound(artifact.work_item_id)
            self._artifacts.append(artifact)
        return artifact

    def get_artifact(self, artifact_id: str) -> Optional[Artifact]:
        with self._lock:
            for artifact in self._artifacts:
                if artifact.id == artifact_id:
                    return artifact
        return None

    def list_artifacts(self, item_id: str, kind: Optional[str] = None) -> List[Artifact]:
        with self._lock:
            return [
                a
                for a in self._artifacts
                if a.work_item_id == item_id and (kind is None or a.kind == kind)
            ]

    def create_clarification(self, clarification: Clarification) -> Clarification:
        with self._lock:
            self._clarifications[clarification.id] = clarification.model_copy(deep=True)
        return clarification

    def get_clarification(self, clarification_id: str) -> Optional[Clarification]:
        with self._lock:
            found = self._clarifications.get(clarification_id)
            return found.model_copy(deep=True) if found else None

    def resolve_clarification(
        self,
        clarification_id: str,
        status: ClarificationState,
        resolved_at: datetime,
        answer: Optional[str] = None,
    ) -> Optional[Clarification]:
        with self._lock:
            current = self._clarifications.get(clarification_id)
            if current is None or current.status != "pending":
                return None
            update: Dict[str, Any] = {"status": status}
            if status == "answered":
                update.update({"answer": answer, "answered_at": resolved_at})
            resolved = current.model_copy(update=update, deep=True)
            self._clarifications[clarification_id] = resolved
            return resolved.model_copy(deep=True)

    def list_clarifications(
        self, status: Optional[ClarificationState] = None, item_id: Optional[str] = None
    ) -> List[Clarification]:
        with self._lock:
            found = [
                c.model_copy(deep=True)
                for c in self._clarifications.values()
                if (status is None or c.status == status)
                and (item_id is None or c.work_item_id == item_id)
            ]
        return sorted(found, key=lambda c: c.created_at)
