"""Error taxonomy for the Conveyor workflow core.

Every failure the orchestration core reports derives from ``WorkflowError`` so
callers (CLI, worker) can catch the whole family in one place while still
branching on the specific condition.
"""

from typing import Optional


class WorkflowError(Exception):
    """Base class for all workflow-domain errors."""


class ItemNotFound(WorkflowError):
    """Raised when a work item id does not resolve to a stored item."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Work item {item_id} not found")


class InvalidTransition(WorkflowError):
    """Raised when an operation is not legal from the item's current status.

    No state change and no StatusTransition record are produced.
    """

    def __init__(
        self,
        operation: str,
        from_status: str,
        item_id: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        self.operation = operation
        self.from_status = from_status
        self.item_id = item_id
        self.detail = detail
        message = f"Operation '{operation}' is not allowed from status '{from_status}'"
        if item_id:
            message += f" (item {item_id})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class UndoWindowExpired(InvalidTransition):
    """Raised when an undo is requested after the undo window has closed."""

    def __init__(self, item_id: str, transition_id: str, window_seconds: int):
        self.transition_id = transition_id
        self.window_seconds = window_seconds
        super().__init__(
            "undo_status_change",
            "-",
            item_id,
            f"transition {transition_id} is older than the {window_seconds}s undo window",
        )


class MissingArtifact(WorkflowError):
    """Raised when an operation's required upstream artifact is absent."""

    def __init__(self, item_id: str, kind: str, operation: Optional[str] = None):
        self.item_id = item_id
        self.kind = kind
        self.operation = operation
        message = f"Work item {item_id} has no '{kind}' artifact"
        if operation:
            message += f" required by '{operation}'"
        super().__init__(message)


class StageMismatch(WorkflowError):
    """Raised when an artifact's stage differs from the item's current status."""

    def __init__(self, item_id: str, stage: str, status: str):
        self.item_id = item_id
        self.stage = stage
        self.status = status
        super().__init__(
            f"Artifact stage '{stage}' does not match status '{status}' of work item {item_id}"
        )


class ConflictingUpdate(WorkflowError):
    """Raised when a concurrent transition committed first (compare-and-swap lost).

    Callers should reload the item and retry if the operation is still wanted.
    """

    def __init__(self, item_id: str, expected_version: int):
        self.item_id = item_id
        self.expected_version = expected_version
        super().__init__(
            f"Work item {item_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


class ExternalSyncFailed(WorkflowError):
    """Raised when the external project-management system rejects a call."""


class LLMUnavailable(WorkflowError):
    """Raised when the LLM cannot be reached or times out."""


class UnparsableOutput(WorkflowError):
    """Raised when agent output does not match the stage's expected structure."""

    def __init__(self, stage: str, reason: str, raw_excerpt: str = ""):
        self.stage = stage
        self.reason = reason
        self.raw_excerpt = raw_excerpt
        super().__init__(f"Unparsable {stage} output: {reason}")


class InvalidToken(WorkflowError):
    """Raised when a clarification token is wrong, unknown, or already used."""


class ExpiredToken(WorkflowError):
    """Raised when a clarification token's time-to-live has elapsed."""
