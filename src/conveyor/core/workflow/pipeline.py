"""Stage pipeline: runs one agent stage for one work item.

The pipeline is the glue between the pure agent runners and the workflow
service. It gathers the item's prior artifacts, runs the stage's agent with
retries on transport failures, records what the agent produced and fires the
stage-completion operation.
"""

import logging
import time
from typing import Callable, Dict, FrozenSet, List, Optional

from conveyor.core.agents.commit_message import PullRequestInfo, generate_commit_message
from conveyor.core.agents.llm import LLMClient
from conveyor.core.agents.outcomes import (
    ArtifactDraft,
    ClarificationNeeded,
    Parsed,
    ParseOutcome,
)
from conveyor.core.agents.runners import AgentRunner, runner_for
from conveyor.core.config import AgentConfig
from conveyor.core.errors import InvalidTransition, LLMUnavailable, UnparsableOutput
from conveyor.core.models import CommitMessage, ReviewStatus, WorkItem, WorkItemStatus
from conveyor.core.notifications.comments import post_progress_comment
from conveyor.core.store import WorkItemStore
from conveyor.core.utils import close_logger, log_workflow_event, make_run_id, setup_stage_logger
from conveyor.core.workflow.service import WorkflowService

logger = logging.getLogger(__name__)

_AGENT_TURN = frozenset(
    {None, ReviewStatus.REQUEST_CHANGES, ReviewStatus.CLARIFICATION_RECEIVED}
)

# Review statuses in which each stage's agent has work to do
DUE_REVIEW_STATUSES: Dict[WorkItemStatus, FrozenSet[Optional[ReviewStatus]]] = {
    WorkItemStatus.PRODUCT_DESIGN: _AGENT_TURN,
    WorkItemStatus.TECH_DESIGN: _AGENT_TURN,
    WorkItemStatus.IMPLEMENTATION: _AGENT_TURN,
    WorkItemStatus.REVIEW: _AGENT_TURN | {ReviewStatus.WAITING_FOR_REVIEW},
}


class StagePipeline:
    """Runs the agent for a work item's current stage.

    Args:
        service: Workflow service used to record artifacts and transitions.
        llm: LLM client handed to the stage runners.
        config: Retry settings for LLM transport failures.
        sleep: Sleep function between retries (injectable for tests).
        console_logs: Echo each run's stage log to stdout (interactive runs).
    """

    def __init__(
        self,
        service: WorkflowService,
        llm: LLMClient,
        config: Optional[AgentConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        console_logs: bool = False,
    ):
        self.service = service
        self.llm = llm
        self.config = config or AgentConfig()
        self._sleep = sleep
        self.console_logs = console_logs

    @property
    def store(self) -> WorkItemStore:
        return self.service.store

    def due_items(self) -> List[WorkItem]:
        """Items whose current stage is waiting on its agent."""
        items = self.store.list_items(statuses=list(DUE_REVIEW_STATUSES))
        return [i for i in items if i.review_status in DUE_REVIEW_STATUSES[i.status]]

    def run_stage(self, item_id: str, run_id: Optional[str] = None) -> ParseOutcome:
        """Run the agent for the item's current stage and apply the result.

        The run's events are written to the item's per-stage log
        (see ``setup_stage_logger``).

        Returns:
            The runner's outcome (Parsed or ClarificationNeeded).

        Raises:
            InvalidTransition: No agent works in the item's status.
            LLMUnavailable: All attempts to reach the LLM failed.
            UnparsableOutput: The agent's reply did not match the stage schema.
        """
        item = self.store.get_item(item_id)
        try:
            runner = runner_for(item, self.llm)
        except ValueError as e:
            raise InvalidTransition("run_stage", item.status.value, item.id, str(e)) from e

        run_id = run_id or make_run_id()
        run_logger = setup_stage_logger(
            item.id, item.status.value, run_id, detached_mode=not self.console_logs
        )
        try:
            return self._run(item, runner, run_id, run_logger)
        finally:
            close_logger(run_logger)

    def _run(
        self, item: WorkItem, runner: AgentRunner, run_id: str, run_logger: logging.Logger
    ) -> ParseOutcome:
        step = runner.agent_name
        log_workflow_event(run_logger, step, "started", f"work item {item.id} (run {run_id})")

        artifacts = self.store.list_artifacts(item.id)
        clarifications = self.store.list_clarifications(status="answered", item_id=item.id)
        outcome = self._run_with_retries(
            runner, item, artifacts, clarifications, run_id, run_logger
        )

        if isinstance(outcome, Parsed):
            self._apply(item, runner, outcome.artifact)
            log_workflow_event(run_logger, step, "completed", outcome.artifact.kind)
        elif isinstance(outcome, ClarificationNeeded):
            self.service.request_clarification(item.id, outcome.question)
            log_workflow_event(run_logger, step, "completed", "clarification requested")
        else:
            log_workflow_event(run_logger, step, "failed", outcome.reason)
            if self.service.dispatcher:
                self.service.dispatcher.notify_agent_error(item, step, outcome.reason)
            raise UnparsableOutput(step, outcome.reason, outcome.raw_excerpt)
        return outcome

    def _run_with_retries(
        self, runner: AgentRunner, item, artifacts, clarifications, run_id, run_logger
    ):
        attempts = max(1, self.config.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return runner.run(item, artifacts, clarifications, run_id=run_id)
            except LLMUnavailable as e:
                log_workflow_event(
                    run_logger,
                    runner.agent_name,
                    "retrying",
                    f"attempt {attempt}/{attempts}: {e}",
                )
                if attempt == attempts:
                    log_workflow_event(run_logger, runner.agent_name, "failed", str(e))
                    if self.service.dispatcher:
                        self.service.dispatcher.notify_agent_error(item, runner.agent_name, str(e))
                    raise
                self._sleep(self.config.retry_delay)
        raise AssertionError("unreachable")

    def _apply(self, item: WorkItem, runner: AgentRunner, draft: ArtifactDraft) -> WorkItem:
        artifact = self.service.record_artifact(item.id, draft.kind, draft.content, draft.data)

        if runner.stage in (WorkItemStatus.PRODUCT_DESIGN, WorkItemStatus.TECH_DESIGN):
            updated = self.service.complete_design(item.id, artifact.id)
        elif runner.stage == WorkItemStatus.IMPLEMENTATION:
            updated = self.service.submit_pr(item.id, int(draft.data["pr_number"]))
        elif draft.data.get("decision") == "approved":
            message = self._commit_message(item, draft)
            updated = self.service.approve_pr(item.id, message, review=draft.content)
        else:
            updated = self.service.request_changes_on_pr(item.id, reason=draft.content[:500])

        if self.service.adapter is not None:
            status, msg = post_progress_comment(self.service.adapter, updated, draft.comment)
            if status == "success":
                logger.debug(msg)
            elif status == "error":
                logger.error(msg)
        return updated

    def _commit_message(self, item: WorkItem, draft: ArtifactDraft) -> CommitMessage:
        """Use the reviewer's proposed message, filling gaps from the PR summary."""
        summary = self.store.latest_artifact(item.id, "implementation")
        generated = generate_commit_message(
            PullRequestInfo(title=item.title, body=summary.content if summary else ""),
            issue_body=item.description,
            issue_number=item.issue_number,
        )
        title = (draft.data.get("commit_title") or "").strip()
        if not title:
            return generated
        body = (draft.data.get("commit_body") or "").strip()
        return CommitMessage(title=title, body=body or generated.body)
