"""Stage agents: LLM boundary, output schemas, parsing and runners.

Example:
    from conveyor.core.agents import ClaudeCodeClient, runner_for

    runner = runner_for(item, ClaudeCodeClient(config.agent))
    outcome = runner.run(item, artifacts)
"""

from conveyor.core.agents.llm import AgentContext, ClaudeCodeClient, LLMClient
from conveyor.core.agents.outcomes import (
    ArtifactDraft,
    ClarificationNeeded,
    Parsed,
    ParseError,
    ParseOutcome,
)
from conveyor.core.agents.runners import (
    AgentRunner,
    BugInvestigationRunner,
    ImplementationRunner,
    PRReviewRunner,
    ProductDesignRunner,
    TechDesignRunner,
    runner_for,
)

__all__ = [
    "AgentContext",
    "AgentRunner",
    "ArtifactDraft",
    "BugInvestigationRunner",
    "ClarificationNeeded",
    "ClaudeCodeClient",
    "ImplementationRunner",
    "LLMClient",
    "PRReviewRunner",
    "ParseError",
    "ParseOutcome",
    "Parsed",
    "ProductDesignRunner",
    "TechDesignRunner",
    "runner_for",
]
