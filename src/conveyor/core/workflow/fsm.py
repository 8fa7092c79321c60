"""Work-item state graph using the transitions library.

The graph is the single definition of which operation may move a work item
from which status to which status. ``WorkItemMachine`` loads an item's current
status, fires the named trigger and reports the destination; it never
persists anything itself. The workflow service commits the result.

Usage:
    machine = WorkItemMachine(item)
    dest = machine.fire("merge_implementation_pr")  # -> WorkItemStatus.DONE
"""

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from transitions import Machine, MachineError

from conveyor.core.errors import InvalidTransition
from conveyor.core.models import ReviewStatus, StatusTransition, WorkItem, WorkItemStatus

logger = logging.getLogger(__name__)

S = WorkItemStatus

STATES = [status.value for status in WorkItemStatus]

# Statuses an agent works in; clarification requests are legal only here
AGENT_STAGES = [S.PRODUCT_DESIGN, S.TECH_DESIGN, S.IMPLEMENTATION, S.REVIEW]
DESIGN_STAGES = [S.PRODUCT_DESIGN, S.TECH_DESIGN]


def _t(trigger: str, source: WorkItemStatus, dest: WorkItemStatus) -> Dict[str, str]:
    return {"trigger": trigger, "source": source.value, "dest": dest.value}


def _self_loops(trigger: str, sources: Iterable[WorkItemStatus]) -> List[Dict[str, str]]:
    return [_t(trigger, s, s) for s in sources]


TRANSITIONS = [
    # Routing out of the backlog
    _t("route_to_product_design", S.BACKLOG, S.PRODUCT_DESIGN),
    _t("route_to_tech_design", S.BACKLOG, S.TECH_DESIGN),
    _t("route_to_implementation", S.BACKLOG, S.IMPLEMENTATION),
    # Design stages
    *_self_loops("complete_design", DESIGN_STAGES),
    _t("approve_design", S.PRODUCT_DESIGN, S.TECH_DESIGN),
    _t("approve_design", S.TECH_DESIGN, S.IMPLEMENTATION),
    *_self_loops("request_design_changes", DESIGN_STAGES),
    *_self_loops("reject_design", DESIGN_STAGES),
    _t("merge_design_pr", S.PRODUCT_DESIGN, S.TECH_DESIGN),
    _t("merge_design_pr", S.TECH_DESIGN, S.IMPLEMENTATION),
    # Implementation and PR review
    _t("submit_pr", S.IMPLEMENTATION, S.REVIEW),
    *_self_loops("approve_pr", [S.REVIEW]),
    _t("request_changes_on_pr", S.REVIEW, S.IMPLEMENTATION),
    _t("merge_implementation_pr", S.REVIEW, S.DONE),
    _t("mark_done", S.IMPLEMENTATION, S.DONE),
    _t("mark_done", S.REVIEW, S.DONE),
    # Reverting a merged change
    _t("revert_merge", S.DONE, S.REVERTED),
    _t("merge_revert_pr", S.REVERTED, S.IMPLEMENTATION),
    # Human-in-the-loop clarification
    *_self_loops("request_clarification", AGENT_STAGES),
    *_self_loops("clarification_received", AGENT_STAGES),
]

# Review status each trigger leaves the item in
REVIEW_STATUS_AFTER: Dict[str, Optional[ReviewStatus]] = {
    "route_to_product_design": None,
    "route_to_tech_design": None,
    "route_to_implementation": None,
    "complete_design": ReviewStatus.WAITING_FOR_REVIEW,
    "approve_design": None,
    "request_design_changes": ReviewStatus.REQUEST_CHANGES,
    "reject_design": ReviewStatus.REJECTED,
    "merge_design_pr": None,
    "submit_pr": ReviewStatus.WAITING_FOR_REVIEW,
    "approve_pr": ReviewStatus.APPROVED,
    "request_changes_on_pr": ReviewStatus.REQUEST_CHANGES,
    "merge_implementation_pr": None,
    "mark_done": None,
    "revert_merge": None,
    "merge_revert_pr": ReviewStatus.REQUEST_CHANGES,
    "request_clarification": ReviewStatus.WAITING_FOR_CLARIFICATION,
    "clarification_received": ReviewStatus.CLARIFICATION_RECEIVED,
}

ROUTE_TRIGGERS: Dict[WorkItemStatus, str] = {
    S.PRODUCT_DESIGN: "route_to_product_design",
    S.TECH_DESIGN: "route_to_tech_design",
    S.IMPLEMENTATION: "route_to_implementation",
}

UNDO_TRIGGER = "undo_status_change"

# Triggers with an external side effect (a merge or a revert PR); the revert
# flow reverses these instead of undo
IRREVERSIBLE_TRIGGERS = frozenset(
    {"merge_design_pr", "merge_implementation_pr", "revert_merge", "merge_revert_pr"}
)


def _build_edges() -> Set[Tuple[str, str]]:
    """Build the set of (source, dest) pairs reachable by a forward trigger."""
    return {(t["source"], t["dest"]) for t in TRANSITIONS}


EDGES = _build_edges()


def can_undo(transition: StatusTransition) -> bool:
    """Whether a recorded transition may be compensated by reversing it.

    Only forward edges of the graph without an external side effect are
    reversible; undo records themselves are not undone again.
    """
    if transition.operation == UNDO_TRIGGER or transition.compensates:
        return False
    if transition.operation in IRREVERSIBLE_TRIGGERS:
        return False
    return (transition.from_status.value, transition.to_status.value) in EDGES


def triggers_from(status: WorkItemStatus) -> List[str]:
    """List trigger names that are legal from ``status``."""
    return sorted({t["trigger"] for t in TRANSITIONS if t["source"] == status.value})


class WorkItemMachine:
    """Transient state machine positioned at a work item's current status."""

    def __init__(self, item: WorkItem):
        self.item_id = item.id
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=item.status.value,
            auto_transitions=False,  # Only explicit transitions
        )

    @property
    def status(self) -> WorkItemStatus:
        return WorkItemStatus(self.state)

    def fire(self, trigger: str) -> WorkItemStatus:
        """Fire ``trigger`` and return the resulting status.

        Raises:
            InvalidTransition: If the trigger is unknown or not allowed
                from the current status.
        """
        from_status = self.state
        event = getattr(self, trigger, None)
        if event is None or trigger not in REVIEW_STATUS_AFTER:
            raise InvalidTransition(trigger, from_status, self.item_id, "unknown operation")
        try:
            event()
        except MachineError as e:
            allowed = triggers_from(WorkItemStatus(from_status))
            detail = f"allowed: {', '.join(allowed)}" if allowed else "no operations allowed"
            raise InvalidTransition(trigger, from_status, self.item_id, detail) from e
        logger.debug(f"[FSM] {self.item_id}: {from_status} -> {self.state} via {trigger}")
        return self.status


def replay(
    transitions: Iterable[StatusTransition],
    initial: WorkItemStatus = WorkItemStatus.BACKLOG,
) -> Tuple[WorkItemStatus, Optional[ReviewStatus]]:
    """Fold an audit log into the (status, review status) it produces.

    Each record must start where the previous one ended; a gap means the log
    does not describe a single path through the graph.

    Raises:
        ValueError: If consecutive records do not chain.
    """
    status: WorkItemStatus = initial
    review: Optional[ReviewStatus] = None
    for record in transitions:
        if record.from_status != status:
            raise ValueError(
                f"Transition {record.id} starts at {record.from_status.value}, "
                f"expected {status.value}"
            )
        status = record.to_status
        review = record.to_review_status
    return status, review
