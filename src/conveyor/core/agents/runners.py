"""Stage agent runners.

A runner turns a work item and its prior artifacts into a prompt, calls the
LLM and parses the reply into a ``ParseOutcome``. Runners never persist
anything; the pipeline decides what to record and which transition to fire.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence

from conveyor.core.agents.llm import AgentContext, LLMClient
from conveyor.core.agents.outcomes import ArtifactDraft, Parsed, ParseError, ParseOutcome
from conveyor.core.agents.parsing import (
    extract_markdown,
    extract_review,
    parse_agent_output,
    parse_review_decision,
)
from conveyor.core.agents.schemas import (
    BugInvestigationOutput,
    DesignOutput,
    ImplementationOutput,
    ReviewOutput,
)
from conveyor.core.models import Artifact, ArtifactKind, Clarification, WorkItem, WorkItemStatus

logger = logging.getLogger(__name__)

CLARIFICATION_INSTRUCTIONS = """If you cannot proceed without a decision from a human, reply with only:
{"needs_clarification": true, "clarification": {"context": "...", "question": "...",
 "options": [{"label": "...", "details": ["..."], "recommended": true}], "recommendation": "..."}}"""

DESIGN_OUTPUT_FORMAT = """Reply with a single JSON object:
{"design": "<full design document in markdown>", "comment": "<one-paragraph summary for the issue thread>"}"""

IMPLEMENTATION_OUTPUT_FORMAT = """Open a pull request with your changes, then reply with a single JSON object:
{"prSummary": "<PR description in markdown>", "comment": "<short note for the issue thread>", "prNumber": <number of the PR you opened>}"""

REVIEW_OUTPUT_FORMAT = """Reply with a single JSON object:
{"decision": "approved" | "request_changes", "review": "<review in markdown>",
 "commitTitle": "<optional squash commit title>", "commitBody": "<optional squash commit body>"}"""

BUG_OUTPUT_FORMAT = """Reply with a single JSON object:
{"rootCauseFound": true | false, "confidence": "low" | "medium" | "high",
 "rootCauseAnalysis": "<analysis in markdown>",
 "fixOptions": [{"title": "...", "description": "...", "complexity": "S" | "M" | "L" | "XL", "recommended": true}],
 "comment": "<short note for the issue thread>"}"""


def _latest(artifacts: Iterable[Artifact], kind: str) -> Optional[Artifact]:
    matching = [a for a in artifacts if a.kind == kind]
    return matching[-1] if matching else None


class AgentRunner(ABC):
    """Abstract base class for a stage's agent.

    Subclasses declare the stage they run in, the artifact kind they produce
    and how to build the prompt and parse the reply.
    """

    stage: WorkItemStatus
    artifact_kind: ArtifactKind
    agent_name: str

    def __init__(self, llm: LLMClient):
        self.llm = llm

    @abstractmethod
    def build_prompt(
        self,
        item: WorkItem,
        artifacts: Sequence[Artifact],
        clarifications: Sequence[Clarification] = (),
    ) -> str:
        """Render the prompt for ``item`` given its prior artifacts."""

    @abstractmethod
    def parse(self, text: str) -> ParseOutcome:
        """Parse the agent's reply into a tagged outcome."""

    def _header(self, item: WorkItem) -> List[str]:
        lines = [f"# {item.title}", ""]
        if item.issue_number is not None:
            lines += [f"GitHub issue: #{item.issue_number}", ""]
        if item.description:
            lines += ["## Description", "", item.description, ""]
        return lines

    def _feedback(self, clarifications: Sequence[Clarification]) -> List[str]:
        lines: List[str] = []
        answered = [c for c in clarifications if c.status == "answered"]
        if answered:
            lines += ["## Clarifications from the admin", ""]
            for clarification in answered:
                lines += [
                    f"**Q:** {clarification.question.question}",
                    f"**A:** {clarification.answer}",
                    "",
                ]
        return lines

    def run(
        self,
        item: WorkItem,
        artifacts: Sequence[Artifact],
        clarifications: Sequence[Clarification] = (),
        run_id: Optional[str] = None,
    ) -> ParseOutcome:
        """Build the prompt, call the LLM and parse the reply.

        Raises:
            LLMUnavailable: Propagated from the LLM client.
        """
        prompt = self.build_prompt(item, artifacts, clarifications)
        context = AgentContext(
            work_item_id=item.id,
            stage=self.stage.value,
            agent_name=self.agent_name,
            run_id=run_id,
        )
        output = self.llm.run_agent(prompt, context)
        outcome = self.parse(output)
        logger.info(f"[{self.agent_name}] Work item {item.id}: {outcome.outcome}")
        return outcome


class ProductDesignRunner(AgentRunner):
    stage = WorkItemStatus.PRODUCT_DESIGN
    artifact_kind: ArtifactKind = "product_design"
    agent_name = "product_design"

    def build_prompt(self, item, artifacts, clarifications=()):
        lines = [
            "You are the product design agent. Write a product design for the feature below:",
            "user-facing behaviour, scope, acceptance criteria and open risks.",
            "",
            *self._header(item),
        ]
        previous = _latest(artifacts, self.artifact_kind)
        if previous:
            lines += ["## Previous product design (revise it)", "", previous.content, ""]
        lines += self._feedback(clarifications)
        lines += [DESIGN_OUTPUT_FORMAT, "", CLARIFICATION_INSTRUCTIONS]
        return "\n".join(lines)

    def parse(self, text):
        return parse_agent_output(
            text,
            DesignOutput,
            lambda out: ArtifactDraft(
                kind=self.artifact_kind,
                content=extract_markdown(out.design),
                data=out.model_dump(),
                comment=out.comment,
            ),
            logger,
            self.agent_name,
        )


class TechDesignRunner(AgentRunner):
    stage = WorkItemStatus.TECH_DESIGN
    artifact_kind: ArtifactKind = "tech_design"
    agent_name = "tech_design"

    def build_prompt(self, item, artifacts, clarifications=()):
        lines = [
            "You are the technical design agent. Explore the codebase and write a technical",
            "design: affected modules, data changes, implementation steps and test plan.",
            "",
            *self._header(item),
        ]
        upstream = _latest(artifacts, "product_design") or _latest(artifacts, "bug_investigation")
        if upstream:
            lines += [f"## Approved {upstream.kind.replace('_', ' ')}", "", upstream.content, ""]
        previous = _latest(artifacts, self.artifact_kind)
        if previous:
            lines += ["## Previous technical design (revise it)", "", previous.content, ""]
        lines += self._feedback(clarifications)
        lines += [DESIGN_OUTPUT_FORMAT, "", CLARIFICATION_INSTRUCTIONS]
        return "\n".join(lines)

    def parse(self, text):
        return parse_agent_output(
            text,
            DesignOutput,
            lambda out: ArtifactDraft(
                kind=self.artifact_kind,
                content=extract_markdown(out.design),
                data=out.model_dump(),
                comment=out.comment,
            ),
            logger,
            self.agent_name,
        )


class ImplementationRunner(AgentRunner):
    stage = WorkItemStatus.IMPLEMENTATION
    artifact_kind: ArtifactKind = "implementation"
    agent_name = "implementor"

    def build_prompt(self, item, artifacts, clarifications=()):
        lines = [
            "You are the implementation agent. Implement the work item below on a new",
            "branch, run the tests and open a pull request.",
            "",
            *self._header(item),
        ]
        for kind, heading in (
            ("product_design", "Product design"),
            ("bug_investigation", "Bug investigation"),
            ("tech_design", "Technical design"),
        ):
            artifact = _latest(artifacts, kind)
            if artifact:
                lines += [f"## {heading}", "", artifact.content, ""]
        review = _latest(artifacts, "review")
        if review and review.data.get("decision") == "request_changes":
            lines += ["## Review feedback to address", "", review.content, ""]
            if item.pr_number is not None:
                lines += [f"Push your fixes to the existing PR #{item.pr_number}.", ""]
        lines += self._feedback(clarifications)
        lines += [IMPLEMENTATION_OUTPUT_FORMAT, "", CLARIFICATION_INSTRUCTIONS]
        return "\n".join(lines)

    def parse(self, text):
        return parse_agent_output(
            text,
            ImplementationOutput,
            lambda out: ArtifactDraft(
                kind=self.artifact_kind,
                content=out.pr_summary,
                data=out.model_dump(),
                comment=out.comment,
            ),
            logger,
            self.agent_name,
        )


class PRReviewRunner(AgentRunner):
    stage = WorkItemStatus.REVIEW
    artifact_kind: ArtifactKind = "review"
    agent_name = "pr_reviewer"

    def build_prompt(self, item, artifacts, clarifications=()):
        lines = [
            f"You are the PR review agent. Review pull request #{item.pr_number} against",
            "the designs below. Approve only if it is correct, tested and in scope.",
            "",
            *self._header(item),
        ]
        for kind, heading in (
            ("tech_design", "Technical design"),
            ("implementation", "PR summary"),
        ):
            artifact = _latest(artifacts, kind)
            if artifact:
                lines += [f"## {heading}", "", artifact.content, ""]
        lines += self._feedback(clarifications)
        lines += [REVIEW_OUTPUT_FORMAT, "", CLARIFICATION_INSTRUCTIONS]
        return "\n".join(lines)

    def _draft(self, out: ReviewOutput) -> ArtifactDraft:
        return ArtifactDraft(
            kind=self.artifact_kind,
            content=out.review,
            data=out.model_dump(),
            comment=out.review,
        )

    def parse(self, text):
        outcome = parse_agent_output(text, ReviewOutput, self._draft, logger, self.agent_name)
        if not isinstance(outcome, ParseError):
            return outcome

        # Free-text reviews carry a DECISION: line instead of JSON
        review = extract_review(text or "")
        decision = parse_review_decision(review or "")
        if review and decision:
            logger.info(f"[{self.agent_name}] Parsed free-text review decision: {decision}")
            return Parsed(artifact=self._draft(ReviewOutput(decision=decision, review=review)))
        return outcome


class BugInvestigationRunner(AgentRunner):
    stage = WorkItemStatus.PRODUCT_DESIGN
    artifact_kind: ArtifactKind = "bug_investigation"
    agent_name = "bug_investigator"

    def build_prompt(self, item, artifacts, clarifications=()):
        lines = [
            "You are the bug investigation agent. Reproduce the bug below, find its root",
            "cause and propose fix options ordered by preference.",
            "",
            *self._header(item),
        ]
        previous = _latest(artifacts, self.artifact_kind)
        if previous:
            lines += ["## Previous investigation (extend it)", "", previous.content, ""]
        lines += self._feedback(clarifications)
        lines += [BUG_OUTPUT_FORMAT, "", CLARIFICATION_INSTRUCTIONS]
        return "\n".join(lines)

    @staticmethod
    def _render(out: BugInvestigationOutput) -> str:
        found = "Root cause found" if out.root_cause_found else "Root cause not confirmed"
        lines = [
            "## Root Cause Analysis",
            "",
            f"**{found}** (confidence: {out.confidence})",
            "",
            out.root_cause_analysis.strip(),
        ]
        if out.fix_options:
            lines += ["", "## Fix Options", ""]
            for index, option in enumerate(out.fix_options, start=1):
                mark = " (recommended)" if option.recommended else ""
                lines.append(f"{index}. **{option.title}** [{option.complexity}]{mark}")
                if option.description:
                    lines.append(f"   {option.description}")
        return "\n".join(lines)

    def parse(self, text):
        return parse_agent_output(
            text,
            BugInvestigationOutput,
            lambda out: ArtifactDraft(
                kind=self.artifact_kind,
                content=self._render(out),
                data=out.model_dump(),
                comment=out.comment,
            ),
            logger,
            self.agent_name,
        )


def runner_for(item: WorkItem, llm: LLMClient) -> AgentRunner:
    """Pick the runner for an item's current stage.

    Bug items are investigated rather than product-designed.

    Raises:
        ValueError: If no agent works in the item's status.
    """
    if item.status == WorkItemStatus.PRODUCT_DESIGN:
        if item.item_type == "bug":
            return BugInvestigationRunner(llm)
        return ProductDesignRunner(llm)
    if item.status == WorkItemStatus.TECH_DESIGN:
        return TechDesignRunner(llm)
    if item.status == WorkItemStatus.IMPLEMENTATION:
        return ImplementationRunner(llm)
    if item.status == WorkItemStatus.REVIEW:
        return PRReviewRunner(llm)
    raise ValueError(f"No agent runs in status '{item.status.value}'")
