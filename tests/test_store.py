"""Tests for the in-process work-item store."""

from datetime import datetime, timedelta, timezone

import pytest

from conveyor.core.errors import ConflictingUpdate, ItemNotFound
from conveyor.core.models import (
    Artifact,
    Clarification,
    ClarificationQuestion,
    ReviewStatus,
    StatusTransition,
    WorkItem,
    WorkItemStatus,
)
from conveyor.core.store import check_transition_fields

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def _transition(item, to_status, **kwargs):
    return StatusTransition(
        work_item_id=item.id,
        operation="route_to_implementation",
        from_status=item.status,
        to_status=to_status,
        **kwargs,
    )


@pytest.fixture
def item(store):
    return store.create_item(WorkItem(title="Add dark mode", issue_number=12, created_at=T0))


class TestItems:
    def test_create_and_get(self, store, item):
        assert store.get_item(item.id) == item

    def test_duplicate_id(self, store, item):
        with pytest.raises(ValueError, match="already exists"):
            store.create_item(item)

    def test_get_missing(self, store):
        with pytest.raises(ItemNotFound, match="Work item nope not found"):
            store.get_item("nope")

    def test_returned_copies_are_detached(self, store, item):
        fetched = store.get_item(item.id)
        fetched.title = "Changed"

        assert store.get_item(item.id).title == "Add dark mode"

    def test_find_by_issue_number(self, store, item):
        assert store.find_by_issue_number(12).id == item.id
        assert store.find_by_issue_number(13) is None

    def test_list_is_ordered_and_filtered(self, store, item):
        later = store.create_item(
            WorkItem(
                title="Fix login",
                status=WorkItemStatus.IMPLEMENTATION,
                created_at=T0 + timedelta(minutes=1),
            )
        )
        earlier = store.create_item(
            WorkItem(title="Old bug", created_at=T0 - timedelta(minutes=1))
        )

        assert [i.id for i in store.list_items()] == [earlier.id, item.id, later.id]
        assert [i.id for i in store.list_items([WorkItemStatus.IMPLEMENTATION])] == [later.id]

    def test_sync_pending_flag(self, store, item):
        store.set_sync_pending(item.id, True)

        assert [i.id for i in store.list_items(sync_pending=True)] == [item.id]
        assert store.list_items(sync_pending=False) == []

    def test_link_project_item(self, store, item):
        store.link_project_item(item.id, "PVTI_12")
        assert store.get_item(item.id).project_item_id == "PVTI_12"


class TestApplyTransition:
    def test_commits_status_and_record(self, store, item):
        record = _transition(item, WorkItemStatus.IMPLEMENTATION)

        updated = store.apply_transition(item.id, 1, record, {"pr_number": 42})

        assert updated.status == WorkItemStatus.IMPLEMENTATION
        assert updated.version == 2
        assert updated.pr_number == 42
        assert updated.updated_at == record.created_at
        assert store.list_transitions(item.id) == [record]

    def test_review_status_follows_record(self, store, item):
        record = _transition(
            item,
            WorkItemStatus.BACKLOG,
            to_review_status=ReviewStatus.WAITING_FOR_REVIEW,
        )

        updated = store.apply_transition(item.id, 1, record)

        assert updated.review_status == ReviewStatus.WAITING_FOR_REVIEW

    def test_stale_version_is_rejected(self, store, item):
        store.apply_transition(item.id, 1, _transition(item, WorkItemStatus.IMPLEMENTATION))

        with pytest.raises(ConflictingUpdate) as exc_info:
            store.apply_transition(item.id, 1, _transition(item, WorkItemStatus.TECH_DESIGN))

        assert exc_info.value.expected_version == 1
        assert store.get_item(item.id).status == WorkItemStatus.IMPLEMENTATION
        assert len(store.list_transitions(item.id)) == 1

    def test_missing_item(self, store, item):
        with pytest.raises(ItemNotFound):
            store.apply_transition("nope", 1, _transition(item, WorkItemStatus.DONE))

    def test_disallowed_fields(self, store, item):
        with pytest.raises(ValueError, match="status, title"):
            store.apply_transition(
                item.id,
                1,
                _transition(item, WorkItemStatus.DONE),
                {"title": "x", "status": "done"},
            )

        assert store.get_item(item.id).version == 1

    def test_check_transition_fields_copies(self):
        updates = {"pr_number": 1}
        checked = check_transition_fields(updates)
        checked["pr_number"] = 2

        assert updates == {"pr_number": 1}
        assert check_transition_fields(None) == {}


class TestArtifacts:
    def test_latest_supersedes(self, store, item):
        first = store.add_artifact(
            Artifact(work_item_id=item.id, stage=WorkItemStatus.TECH_DESIGN, kind="tech_design")
        )
        second = store.add_artifact(
            Artifact(
                work_item_id=item.id,
                stage=WorkItemStatus.TECH_DESIGN,
                kind="tech_design",
                supersedes=first.id,
            )
        )

        assert store.latest_artifact(item.id, "tech_design") == second
        assert store.list_artifacts(item.id) == [first, second]
        assert store.latest_artifact(item.id, "review") is None
        assert store.get_artifact(first.id) == first
        assert store.get_artifact("nope") is None

    def test_artifact_needs_item(self, store):
        with pytest.raises(ItemNotFound):
            store.add_artifact(
                Artifact(work_item_id="nope", stage=WorkItemStatus.REVIEW, kind="review")
            )


class TestClarifications:
    @pytest.fixture
    def pending(self, store, item):
        return store.create_clarification(
            Clarification(
                work_item_id=item.id,
                stage=WorkItemStatus.TECH_DESIGN,
                question=ClarificationQuestion(question="Which DB?"),
                token_hash="hash",
                expires_at=T0 + timedelta(hours=1),
            )
        )

    def test_answer(self, store, pending):
        resolved = store.resolve_clarification(pending.id, "answered", T0, "Postgres")

        assert resolved.status == "answered"
        assert resolved.answer == "Postgres"
        assert resolved.answered_at == T0

    def test_only_pending_resolves(self, store, pending):
        store.resolve_clarification(pending.id, "expired", T0)

        assert store.resolve_clarification(pending.id, "answered", T0, "late") is None
        stored = store.get_clarification(pending.id)
        assert stored.status == "expired"
        assert stored.answer is None

    def test_unknown_clarification(self, store):
        assert store.resolve_clarification("nope", "answered", T0, "x") is None
        assert store.get_clarification("nope") is None

    def test_list_filters(self, store, item, pending):
        store.resolve_clarification(pending.id, "answered", T0, "Postgres")

        assert store.list_clarifications(status="pending") == []
        assert [c.id for c in store.list_clarifications(item_id=item.id)] == [pending.id]
