"""Data types for the Conveyor work-item pipeline.

Models mirror the Supabase schema in ``migrations/`` and are shared by the
store implementations, the workflow service and the agent runners.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now() -> datetime:
    """Return current UTC time in a timezone-aware manner."""
    return datetime.now(timezone.utc)


def make_id() -> str:
    """Generate a new identifier for stored records."""
    return str(uuid.uuid4())


class WorkItemStatus(str, Enum):
    """Pipeline stage a work item currently sits in."""

    BACKLOG = "backlog"
    PRODUCT_DESIGN = "product_design"
    TECH_DESIGN = "tech_design"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    DONE = "done"
    REVERTED = "reverted"


class ReviewStatus(str, Enum):
    """Sub-state of a work item within its current stage."""

    WAITING_FOR_REVIEW = "waiting_for_review"
    APPROVED = "approved"
    REQUEST_CHANGES = "request_changes"
    REJECTED = "rejected"
    WAITING_FOR_CLARIFICATION = "waiting_for_clarification"
    CLARIFICATION_RECEIVED = "clarification_received"


ItemType = Literal["feature", "bug"]
Actor = Literal["agent", "human"]

ArtifactKind = Literal[
    "product_design",
    "tech_design",
    "bug_investigation",
    "implementation",
    "review",
    "commit_message",
]

# Stage each artifact kind is produced in
STAGE_FOR_KIND: Dict[str, WorkItemStatus] = {
    "product_design": WorkItemStatus.PRODUCT_DESIGN,
    "bug_investigation": WorkItemStatus.PRODUCT_DESIGN,
    "tech_design": WorkItemStatus.TECH_DESIGN,
    "implementation": WorkItemStatus.IMPLEMENTATION,
    "review": WorkItemStatus.REVIEW,
    "commit_message": WorkItemStatus.REVIEW,
}


class WorkItem(BaseModel):
    """Work item model matching the ``work_items`` table."""

    id: str = Field(default_factory=make_id)
    title: str = Field(..., min_length=1)
    description: str = ""
    item_type: ItemType = "feature"
    status: WorkItemStatus = WorkItemStatus.BACKLOG
    review_status: Optional[ReviewStatus] = None
    issue_number: Optional[int] = None
    project_item_id: Optional[str] = None
    design_artifact_id: Optional[str] = None
    pr_number: Optional[int] = None
    commit_message_artifact_id: Optional[str] = None
    last_merged_pr: Optional[int] = None
    last_merge_sha: Optional[str] = None
    revert_pr_number: Optional[int] = None
    sync_pending: bool = False
    version: int = 1
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @field_validator("title")
    @classmethod
    def trim_title(cls, v: str) -> str:
        """Trim whitespace from title."""
        v = v.strip()
        if not v:
            raise ValueError("Title cannot be empty")
        return v

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v):
        """Default a missing description to an empty string."""
        return v.strip() if v else ""

    @classmethod
    def from_supabase(cls, row: dict) -> "WorkItem":
        """Create WorkItem from Supabase row."""
        return cls(**row)


class StatusTransition(BaseModel):
    """Append-only audit record of one status mutation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=make_id)
    work_item_id: str
    operation: str
    from_status: WorkItemStatus
    to_status: WorkItemStatus
    from_review_status: Optional[ReviewStatus] = None
    to_review_status: Optional[ReviewStatus] = None
    actor: Actor = "agent"
    reason: Optional[str] = None
    compensates: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)

    @classmethod
    def from_supabase(cls, row: dict) -> "StatusTransition":
        """Create StatusTransition from Supabase row."""
        return cls(**row)


class Artifact(BaseModel):
    """Immutable output of an agent stage.

    Attributes:
        work_item_id: The work item this artifact belongs to
        stage: The item status the artifact was produced in
        kind: The artifact kind identifier
        content: Human-readable text (markdown design, PR summary, review)
        data: Structured payload parsed from the agent output
        supersedes: Id of the earlier artifact of the same kind, if any
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=make_id)
    work_item_id: str
    stage: WorkItemStatus
    kind: ArtifactKind
    content: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    supersedes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)

    @classmethod
    def from_supabase(cls, row: dict) -> "Artifact":
        """Create Artifact from Supabase row."""
        return cls(**row)


class ClarificationOption(BaseModel):
    """One answer option offered to the human."""

    label: str
    details: List[str] = Field(default_factory=list)
    recommended: bool = False


class ClarificationQuestion(BaseModel):
    """Question an agent raises when it needs human input."""

    question: str = Field(..., min_length=1)
    context: str = ""
    options: List[ClarificationOption] = Field(default_factory=list)
    recommendation: str = ""


ClarificationState = Literal["pending", "answered", "expired"]


class Clarification(BaseModel):
    """Persisted clarification request with its single-use token hash."""

    id: str = Field(default_factory=make_id)
    work_item_id: str
    stage: WorkItemStatus
    question: ClarificationQuestion
    token_hash: str
    status: ClarificationState = "pending"
    answer: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)
    expires_at: datetime
    answered_at: Optional[datetime] = None

    @classmethod
    def from_supabase(cls, row: dict) -> "Clarification":
        """Create Clarification from Supabase row."""
        return cls(**row)


class CommitMessage(BaseModel):
    """Squash-merge commit message for an implementation PR."""

    title: str = Field(..., min_length=1)
    body: str = ""
