"""Tests for the Supabase-backed store."""

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
from postgrest.exceptions import APIError

import conveyor.core.database
from conveyor.core.config import SupabaseConfig
from conveyor.core.database import SupabaseStore, get_client, reset_client
from conveyor.core.errors import ConflictingUpdate, ItemNotFound
from conveyor.core.models import StatusTransition, WorkItem, WorkItemStatus

ITEM_ROW = {
    "id": "item-1",
    "title": "Add dark mode",
    "description": "Users want a dark theme.",
    "item_type": "feature",
    "status": "implementation",
    "review_status": None,
    "issue_number": 12,
    "version": 2,
    "created_at": "2026-01-15T12:00:00+00:00",
    "updated_at": "2026-01-15T12:00:00+00:00",
}


def _api_error():
    return APIError({"message": "boom", "code": "500", "hint": None, "details": None})


def _response(data):
    response = Mock()
    response.data = data
    return response


@pytest.fixture
def client():
    return Mock()


@pytest.fixture
def store(client):
    return SupabaseStore(client)


@pytest.fixture(autouse=True)
def clear_client():
    reset_client()
    yield
    reset_client()


@patch("conveyor.core.database.create_client")
def test_get_client(mock_create_client):
    """Test get_client creates the client once and caches it."""
    mock_client = Mock()
    mock_create_client.return_value = mock_client
    config = SupabaseConfig(url="https://test.supabase.co", service_role_key="test_key")

    assert get_client(config) is mock_client
    assert get_client() is mock_client
    mock_create_client.assert_called_once()
    assert mock_create_client.call_args[0][:2] == ("https://test.supabase.co", "test_key")


@patch("conveyor.core.database.create_client")
def test_get_client_validates(mock_create_client):
    with pytest.raises(ValueError, match="SUPABASE_SERVICE_ROLE_KEY"):
        get_client(SupabaseConfig(url="https://test.supabase.co"))

    mock_create_client.assert_not_called()
    assert conveyor.core.database._client is None


def test_create_item_success(store, client):
    """Test successful work item creation."""
    client.table.return_value.insert.return_value.execute.return_value = _response([ITEM_ROW])

    item = store.create_item(WorkItem(id="item-1", title="Add dark mode"))

    assert item.id == "item-1"
    assert item.status == WorkItemStatus.IMPLEMENTATION
    client.table.assert_called_with("work_items")
    inserted = client.table.return_value.insert.call_args[0][0]
    assert inserted["status"] == "backlog"
    assert isinstance(inserted["created_at"], str)


def test_create_item_no_data(store, client):
    client.table.return_value.insert.return_value.execute.return_value = _response([])

    with pytest.raises(ValueError, match="No data returned"):
        store.create_item(WorkItem(title="Add dark mode"))


def test_create_item_api_error(store, client):
    client.table.return_value.insert.return_value.execute.side_effect = _api_error()

    with pytest.raises(ValueError, match="Failed to create work item"):
        store.create_item(WorkItem(title="Add dark mode"))


def test_get_item_success(store, client):
    """Test successful work item fetch."""
    chain = client.table.return_value.select.return_value.eq.return_value.maybe_single
    chain.return_value.execute.return_value = _response(ITEM_ROW)

    item = store.get_item("item-1")

    assert item.title == "Add dark mode"
    client.table.return_value.select.return_value.eq.assert_called_once_with("id", "item-1")


@pytest.mark.parametrize("response", [None, _response(None)])
def test_get_item_not_found(store, client, response):
    """maybe_single may return None or an empty response for a missing row."""
    chain = client.table.return_value.select.return_value.eq.return_value.maybe_single
    chain.return_value.execute.return_value = response

    with pytest.raises(ItemNotFound):
        store.get_item("nope")


def test_list_items_filters(store, client):
    query = client.table.return_value.select.return_value
    query.in_.return_value = query
    query.eq.return_value = query
    query.order.return_value.execute.return_value = _response([ITEM_ROW])

    items = store.list_items([WorkItemStatus.IMPLEMENTATION], sync_pending=False)

    assert [i.id for i in items] == ["item-1"]
    query.in_.assert_called_once_with("status", ["implementation"])
    query.eq.assert_called_once_with("sync_pending", False)
    query.order.assert_called_once_with("created_at")


def test_find_by_issue_number(store, client):
    query = client.table.return_value.select.return_value.eq.return_value.limit.return_value
    query.execute.return_value = _response([])

    assert store.find_by_issue_number(12) is None


class TestApplyTransition:
    @pytest.fixture
    def transition(self):
        return StatusTransition(
            work_item_id="item-1",
            operation="submit_pr",
            from_status=WorkItemStatus.IMPLEMENTATION,
            to_status=WorkItemStatus.REVIEW,
            created_at=datetime(2026, 1, 15, 12, 5, tzinfo=timezone.utc),
        )

    def test_calls_rpc(self, store, client, transition):
        row = {**ITEM_ROW, "status": "review", "version": 3, "pr_number": 42}
        client.rpc.return_value.execute.return_value = _response([row])

        updated = store.apply_transition("item-1", 2, transition, {"pr_number": 42})

        assert updated.status == WorkItemStatus.REVIEW
        assert updated.version == 3
        name, params = client.rpc.call_args[0]
        assert name == "apply_status_transition"
        assert params["p_item_id"] == "item-1"
        assert params["p_expected_version"] == 2
        assert params["p_updates"] == {"pr_number": 42}
        assert params["p_transition"]["to_status"] == "review"
        assert params["p_transition"]["created_at"] == "2026-01-15T12:05:00Z"

    def test_lost_compare_and_swap(self, store, client, transition):
        client.rpc.return_value.execute.return_value = _response([])
        chain = client.table.return_value.select.return_value.eq.return_value.maybe_single
        chain.return_value.execute.return_value = _response(ITEM_ROW)

        with pytest.raises(ConflictingUpdate):
            store.apply_transition("item-1", 1, transition)

    def test_missing_item(self, store, client, transition):
        client.rpc.return_value.execute.return_value = _response([])
        chain = client.table.return_value.select.return_value.eq.return_value.maybe_single
        chain.return_value.execute.return_value = None

        with pytest.raises(ItemNotFound):
            store.apply_transition("nope", 1, transition)

    def test_api_error(self, store, client, transition):
        client.rpc.return_value.execute.side_effect = _api_error()

        with pytest.raises(ValueError, match="Failed to apply transition"):
            store.apply_transition("item-1", 2, transition)

    def test_disallowed_fields_never_reach_database(self, store, client, transition):
        with pytest.raises(ValueError, match="version"):
            store.apply_transition("item-1", 2, transition, {"version": 9})

        client.rpc.assert_not_called()


def test_set_sync_pending_missing_item(store, client):
    client.table.return_value.update.return_value.eq.return_value.execute.return_value = (
        _response([])
    )

    with pytest.raises(ItemNotFound):
        store.set_sync_pending("nope", True)

    client.table.return_value.update.assert_called_once_with({"sync_pending": True})


def test_resolve_clarification_only_pending(store, client):
    update = client.table.return_value.update
    update.return_value.eq.return_value.eq.return_value.execute.return_value = _response([])
    answered_at = datetime(2026, 1, 15, 13, 0, tzinfo=timezone.utc)

    assert store.resolve_clarification("c1", "answered", answered_at, "Postgres") is None

    update.assert_called_once_with(
        {"status": "answered", "answer": "Postgres", "answered_at": answered_at.isoformat()}
    )
    update.return_value.eq.return_value.eq.assert_called_once_with("status", "pending")


def test_list_transitions_order(store, client):
    query = client.table.return_value.select.return_value.eq.return_value
    query.order.return_value.order.return_value.execute.return_value = _response([])

    assert store.list_transitions("item-1") == []
    query.order.assert_called_once_with("created_at")
    query.order.return_value.order.assert_called_once_with("seq")
