"""Structured output schemas for each agent stage.

Agents answer with a JSON object; these models validate it. Camel-case keys
(``prSummary``) are accepted alongside snake-case ones.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DesignOutput(BaseModel):
    """Product or technical design produced by a design agent."""

    design: str = Field(..., min_length=1)
    comment: str = ""


class ImplementationOutput(BaseModel):
    """Result of an implementation run that opened a pull request."""

    model_config = ConfigDict(populate_by_name=True)

    pr_summary: str = Field(..., min_length=1, alias="prSummary")
    comment: str = ""
    pr_number: int = Field(..., gt=0, alias="prNumber")


class ReviewOutput(BaseModel):
    """PR review verdict with an optional proposed commit message."""

    model_config = ConfigDict(populate_by_name=True)

    decision: Literal["approved", "request_changes"]
    review: str = Field(..., min_length=1)
    commit_title: Optional[str] = Field(default=None, alias="commitTitle")
    commit_body: Optional[str] = Field(default=None, alias="commitBody")

    @field_validator("decision", mode="before")
    @classmethod
    def normalize_decision(cls, v):
        """Accept APPROVED / REQUEST_CHANGES / "request changes" spellings."""
        if isinstance(v, str):
            cleaned = v.strip().lower().replace(" ", "_")
            if cleaned in ("approve", "approved"):
                return "approved"
            if cleaned in ("request_changes", "request_change", "requestchanges", "changes"):
                return "request_changes"
        return v


class FixOption(BaseModel):
    title: str
    description: str = ""
    complexity: Literal["S", "M", "L", "XL"] = "M"
    recommended: bool = False


class BugInvestigationOutput(BaseModel):
    """Root-cause analysis of a bug report."""

    model_config = ConfigDict(populate_by_name=True)

    root_cause_found: bool = Field(..., alias="rootCauseFound")
    confidence: Literal["low", "medium", "high"]
    root_cause_analysis: str = Field(..., min_length=1, alias="rootCauseAnalysis")
    fix_options: List[FixOption] = Field(default_factory=list, alias="fixOptions")
    comment: str = ""
