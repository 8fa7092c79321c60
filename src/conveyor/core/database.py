"""Supabase client and the Supabase-backed work-item store."""

import logging
import os
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, cast

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client
from supabase.lib.client_options import SyncClientOptions

from conveyor.core.config import SupabaseConfig
from conveyor.core.errors import ConflictingUpdate, ItemNotFound
from conveyor.core.models import (
    Artifact,
    Clarification,
    ClarificationState,
    StatusTransition,
    WorkItem,
    WorkItemStatus,
)
from conveyor.core.store import WorkItemStore, check_transition_fields

logger = logging.getLogger(__name__)

SupabaseRow = Dict[str, Any]
SupabaseRows = List[SupabaseRow]

# ============================================================================
# Client Singleton
# ============================================================================

_client: Optional[Client] = None


def _build_http_client(config: SupabaseConfig) -> httpx.Client:
    """Build an httpx client configured for Supabase interactions."""
    return httpx.Client(timeout=config.http_timeout, verify=config.http_verify)


def get_client(config: Optional[SupabaseConfig] = None) -> Client:
    """Get or create the process-wide Supabase client instance.

    Args:
        config: Connection settings; read from the environment when omitted.
    """
    global _client

    if _client is None:
        config = config or SupabaseConfig.from_env(os.environ)
        config.validate()

        assert config.url is not None
        assert config.service_role_key is not None

        client_options = SyncClientOptions(httpx_client=_build_http_client(config))
        _client = create_client(config.url, config.service_role_key, client_options)
        logger.info("Supabase client initialized")

    return _client


def reset_client() -> None:
    """Drop the cached client so the next call reconnects."""
    global _client
    _client = None


def _row(model: Any, exclude: Optional[set] = None) -> SupabaseRow:
    return cast(SupabaseRow, model.model_dump(mode="json", exclude=exclude))


# ============================================================================
# Store
# ============================================================================


class SupabaseStore(WorkItemStore):
    """Work-item store backed by the tables in ``migrations/``.

    Status changes go through the ``apply_status_transition`` database
    function, which performs the version compare-and-swap and inserts the
    StatusTransition row in a single transaction.
    """

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_client()
        return self._client

    # -- work items ---------------------------------------------------------

    def create_item(self, item: WorkItem) -> WorkItem:
        try:
            response = self.client.table("work_items").insert(_row(item)).execute()
            rows = cast(Optional[SupabaseRows], response.data)
            if not rows:
                raise ValueError("No data returned from work item creation")
            logger.info(f"Created work item {item.id}: {item.title}")
            return WorkItem.from_supabase(rows[0])
        except APIError as e:
            logger.error(f"Database error creating work item: {e}")
            raise ValueError(f"Failed to create work item: {e}") from e

    def get_item(self, item_id: str) -> WorkItem:
        try:
            response = (
                self.client.table("work_items")
                .select("*")
                .eq("id", item_id)
                .maybe_single()
                .execute()
            )
        except APIError as e:
            logger.error(f"Database error fetching work item {item_id}: {e}")
            raise ValueError(f"Failed to fetch work item {item_id}: {e}") from e

        row = cast(Optional[SupabaseRow], response.data) if response is not None else None
        if row is None:
            raise ItemNotFound(item_id)
        return WorkItem.from_supabase(row)

    def find_by_issue_number(self, issue_number: int) -> Optional[WorkItem]:
        try:
            response = (
                self.client.table("work_items")
                .select("*")
                .eq("issue_number", issue_number)
                .limit(1)
                .execute()
            )
        except APIError as e:
            logger.error(f"Database error looking up issue #{issue_number}: {e}")
            raise ValueError(f"Failed to look up issue #{issue_number}: {e}") from e

        rows = cast(Optional[SupabaseRows], response.data)
        return WorkItem.from_supabase(rows[0]) if rows else None

    def list_items(
        self,
        statuses: Optional[Iterable[WorkItemStatus]] = None,
        sync_pending: Optional[bool] = None,
    ) -> List[WorkItem]:
        try:
            query = self.client.table("work_items").select("*")
            if statuses is not None:
                query = query.in_("status", [WorkItemStatus(s).value for s in statuses])
            if sync_pending is not None:
                query = query.eq("sync_pending", sync_pending)
            response = query.order("created_at").execute()
        except APIError as e:
            logger.error(f"Database error listing work items: {e}")
            raise ValueError(f"Failed to list work items: {e}") from e

        rows = cast(Optional[SupabaseRows], response.data)
        return [WorkItem.from_supabase(row) for row in rows or []]

    def apply_transition(
        self,
        item_id: str,
        expected_version: int,
        transition: StatusTransition,
        updates: Optional[Dict[str, Any]] = None,
    ) -> WorkItem:
        updates = check_transition_fields(updates)
        try:
            response = self.client.rpc(
                "apply_status_transition",
                {
                    "p_item_id": item_id,
                    "p_expected_version": expected_version,
                    "p_transition": _row(transition),
                    "p_updates": updates,
                },
            ).execute()
        except APIError as e:
            logger.error(f"Database error applying {transition.operation} to {item_id}: {e}")
            raise ValueError(f"Failed to apply transition to work item {item_id}: {e}") from e

        rows = cast(Optional[SupabaseRows], response.data)
        if not rows:
            # Distinguish a missing item from a lost compare-and-swap
            self.get_item(item_id)
            raise ConflictingUpdate(item_id, expected_version)

        logger.debug(
            f"Work item {item_id}: {transition.from_status.value} -> "
            f"{transition.to_status.value} ({transition.operation})"
        )
        return WorkItem.from_supabase(rows[0])

    def set_sync_pending(self, item_id: str, pending: bool) -> None:
        self._update_item(item_id, {"sync_pending": pending})

    def link_project_item(self, item_id: str, project_item_id: str) -> None:
        self._update_item(item_id, {"project_item_id": project_item_id})

    def _update_item(self, item_id: str, fields: SupabaseRow) -> None:
        try:
            response = self.client.table("work_items").update(fields).eq("id", item_id).execute()
        except APIError as e:
            logger.error(f"Database error updating work item {item_id}: {e}")
            raise ValueError(f"Failed to update work item {item_id}: {e}") from e
        if not response.data:
            raise ItemNotFound(item_id)

    # -- transitions ---------------------------------------------------------

    def list_transitions(self, item_id: str) -> List[StatusTransition]:
        try:
            response = (
                self.client.table("status_transitions")
                .select("*")
                .eq("work_item_id", item_id)
                .order("created_at")
                .order("seq")
                .execute()
            )
        except APIError as e:
            logger.error(f"Database error fetching transitions for {item_id}: {e}")
            raise ValueError(f"Failed to fetch transitions for work item {item_id}: {e}") from e

        rows = cast(Optional[SupabaseRows], response.data)
        return [StatusTransition.from_supabase(row) for row in rows or []]

    # -- artifacts -----------------------------------------------------------

    def add_artifact(self, artifact: Artifact) -> Artifact:
        try:
            response = self.client.table("artifacts").insert(_row(artifact)).execute()
        except APIError as e:
            logger.error(f"Database error storing {artifact.kind} artifact: {e}")
            raise ValueError(f"Failed to store artifact: {e}") from e

        rows = cast(Optional[SupabaseRows], response.data)
        if not rows:
            raise ValueError("No data returned from artifact creation")
        return Artifact.from_supabase(rows[0])

    def get_artifact(self, artifact_id: str) -> Optional[Artifact]:
        try:
            response = (
                self.client.table("artifacts")
                .select("*")
                .eq("id", artifact_id)
                .maybe_single()
                .execute()
            )
        except APIError as e:
            logger.error(f"Database error fetching artifact {artifact_id}: {e}")
            raise ValueError(f"Failed to fetch artifact {artifact_id}: {e}") from e

        row = cast(Optional[SupabaseRow], response.data) if response is not None else None
        return Artifact.from_supabase(row) if row else None

    def list_artifacts(self, item_id: str, kind: Optional[str] = None) -> List[Artifact]:
        try:
            query = self.client.table("artifacts").select("*").eq("work_item_id", item_id)
            if kind is not None:
                query = query.eq("kind", kind)
            response = query.order("created_at").execute()
        except APIError as e:
            logger.error(f"Database error listing artifacts for {item_id}: {e}")
            raise ValueError(f"Failed to list artifacts for work item {item_id}: {e}") from e

        rows = cast(Optional[SupabaseRows], response.data)
        return [Artifact.from_supabase(row) for row in rows or []]

    # -- clarifications ------------------------------------------------------

    def create_clarification(self, clarification: Clarification) -> Clarification:
        try:
            response = self.client.table("clarifications").insert(_row(clarification)).execute()
        except APIError as e:
            logger.error(f"Database error creating clarification: {e}")
            raise ValueError(f"Failed to create clarification: {e}") from e

        rows = cast(Optional[SupabaseRows], response.data)
        if not rows:
            raise ValueError("No data returned from clarification creation")
        return Clarification.from_supabase(rows[0])

    def get_clarification(self, clarification_id: str) -> Optional[Clarification]:
        try:
            response = (
                self.client.table("clarifications")
                .select("*")
                .eq("id", clarification_id)
                .maybe_single()
                .execute()
            )
        except APIError as e:
            logger.error(f"Database error fetching clarification {clarification_id}: {e}")
            raise ValueError(f"Failed to fetch clarification {clarification_id}: {e}") from e

        row = cast(Optional[SupabaseRow], response.data) if response is not None else None
        return Clarification.from_supabase(row) if row else None

    def resolve_clarification(
        self,
        clarification_id: str,
        status: ClarificationState,
        resolved_at: datetime,
        answer: Optional[str] = None,
    ) -> Optional[Clarification]:
        fields: SupabaseRow = {"status": status}
        if status == "answered":
            fields.update({"answer": answer, "answered_at": resolved_at.isoformat()})
        try:
            response = (
                self.client.table("clarifications")
                .update(fields)
                .eq("id", clarification_id)
                .eq("status", "pending")
                .execute()
            )
        except APIError as e:
            logger.error(f"Database error resolving clarification {clarification_id}: {e}")
            raise ValueError(f"Failed to resolve clarification {clarification_id}: {e}") from e

        rows = cast(Optional[SupabaseRows], response.data)
        return Clarification.from_supabase(rows[0]) if rows else None

    def list_clarifications(
        self, status: Optional[ClarificationState] = None, item_id: Optional[str] = None
    ) -> List[Clarification]:
        try:
            query = self.client.table("clarifications").select("*")
            if status is not None:
                query = query.eq("status", status)
            if item_id is not None:
                query = query.eq("work_item_id", item_id)
            response = query.order("created_at").execute()
        except APIError as e:
            logger.error(f"Database error listing clarifications: {e}")
            raise ValueError(f"Failed to list clarifications: {e}") from e

        rows = cast(Optional[SupabaseRows], response.data)
        return [Clarification.from_supabase(row) for row in rows or []]
