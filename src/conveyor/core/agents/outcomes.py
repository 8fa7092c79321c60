"""Tagged results of parsing an agent's output.

A runner's ``parse`` step returns exactly one of ``Parsed``,
``ClarificationNeeded`` or ``ParseError``; the ``outcome`` field discriminates
between them so callers can branch with ``isinstance`` or on the tag.
"""

from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, Field

from conveyor.core.models import ArtifactKind, ClarificationQuestion


class ArtifactDraft(BaseModel):
    """Artifact content produced by a runner, not yet persisted.

    Attributes:
        kind: Artifact kind the draft will be stored as
        content: Human-readable body (design markdown, PR summary, review)
        data: Full validated payload from the agent
        comment: Short note for the issue thread
    """

    kind: ArtifactKind
    content: str
    data: Dict[str, Any] = Field(default_factory=dict)
    comment: str = ""


class Parsed(BaseModel):
    outcome: Literal["parsed"] = "parsed"
    artifact: ArtifactDraft


class ClarificationNeeded(BaseModel):
    outcome: Literal["clarification_needed"] = "clarification_needed"
    question: ClarificationQuestion


class ParseError(BaseModel):
    outcome: Literal["parse_error"] = "parse_error"
    reason: str
    raw_excerpt: str = ""


ParseOutcome = Annotated[
    Union[Parsed, ClarificationNeeded, ParseError], Field(discriminator="outcome")
]
