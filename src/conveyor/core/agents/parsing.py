"""Shared parsing helpers for agent outputs.

This module provides consistent JSON extraction and schema validation for
every agent stage, plus the markdown helpers used for reviews and for
embedding designs in an issue body.
"""

import json
import re
from logging import Logger
from typing import Any, Callable, Dict, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from conveyor.core.agents.outcomes import (
    ArtifactDraft,
    ClarificationNeeded,
    Parsed,
    ParseError,
    ParseOutcome,
)
from conveyor.core.clarifications import parse_clarification_markdown
from conveyor.core.models import ClarificationQuestion

M = TypeVar("M", bound=BaseModel)

# Regex pattern to match Markdown code fences wrapping JSON
# Matches: ```json\n...\n``` or ```\n...\n``` anywhere in the string
_MARKDOWN_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)

_MARKDOWN_BLOCK_PATTERN = re.compile(r"```(?:markdown|md)\s*\n(.*?)\n```", re.DOTALL)
_REVIEW_BLOCK_PATTERN = re.compile(r"```review\s*\n(.*?)\n```", re.DOTALL)
_BOLD_PATTERN = re.compile(r"\*{1,2}([^*]+)\*{1,2}")
_APPROVED_PATTERN = re.compile(r"DECISION:\s*APPROVED?", re.IGNORECASE)
_REQUEST_CHANGES_PATTERN = re.compile(r"DECISION:\s*REQUEST[\s_]?CHANGES?", re.IGNORECASE)

EXCERPT_LENGTH = 200

DESIGN_MARKERS = {
    "product": ("<!-- AUTO-GENERATED: PRODUCT DESIGN -->", "<!-- END PRODUCT DESIGN -->"),
    "tech": ("<!-- AUTO-GENERATED: TECHNICAL DESIGN -->", "<!-- END TECHNICAL DESIGN -->"),
}

DesignSection = Literal["product", "tech"]


def sanitize_json_output(output: str) -> str:
    """Strip Markdown code fences and surrounding prose from JSON output.

    LLM outputs may wrap JSON in Markdown code fences (e.g., ```json ... ```)
    or include leading/trailing prose before/after the JSON object.
    This helper extracts the raw JSON content.

    Args:
        output: Raw output string that may contain Markdown fences or prose

    Returns:
        The extracted JSON content
    """
    stripped = output.strip()

    # First try to match markdown fences anywhere in the string
    match = _MARKDOWN_FENCE_PATTERN.search(stripped)
    if match:
        return match.group(1).strip()

    # If no fences, try to extract JSON object by finding { and }
    # This handles cases where prose surrounds the JSON
    first_brace = stripped.find("{")
    last_brace = stripped.rfind("}")

    if first_brace != -1 and last_brace != -1 and last_brace > first_brace:
        return stripped[first_brace : last_brace + 1]

    return stripped


def _clarification_from_payload(payload: Dict[str, Any]) -> Optional[ClarificationQuestion]:
    raw = payload.get("clarification")
    if isinstance(raw, str):
        return parse_clarification_markdown(raw)
    if isinstance(raw, dict):
        try:
            return ClarificationQuestion.model_validate(raw)
        except ValidationError:
            return None
    return None


def parse_agent_output(
    output: Optional[str],
    schema: Type[M],
    build_draft: Callable[[M], ArtifactDraft],
    logger: Logger,
    step_name: Optional[str] = None,
) -> ParseOutcome:
    """Parse and validate JSON output from an agent response.

    Sanitizes the output (strips markdown fences, trims prose), parses JSON,
    checks for a clarification request and otherwise validates the payload
    against ``schema``.

    Args:
        output: Raw output string from agent
        schema: Pydantic model describing the stage's expected payload
        build_draft: Turns the validated payload into an artifact draft
        logger: Logger instance for debugging
        step_name: Optional step name for log messages

    Returns:
        Parsed, ClarificationNeeded or ParseError
    """
    step_prefix = f"[{step_name}] " if step_name else ""
    raw_output = output.strip() if output else ""
    excerpt = raw_output[:EXCERPT_LENGTH]

    if not raw_output:
        logger.error(f"{step_prefix}Empty output received")
        return ParseError(reason="Empty output received")

    sanitized_output = sanitize_json_output(raw_output)
    logger.debug(f"{step_prefix}Sanitized output: {sanitized_output[:200]}...")

    try:
        parsed_data = json.loads(sanitized_output)
    except json.JSONDecodeError as exc:
        logger.error(f"{step_prefix}JSON decode failed: {exc} | raw={excerpt}...")
        return ParseError(reason=f"Invalid JSON: {exc}", raw_excerpt=excerpt)

    if not isinstance(parsed_data, dict):
        logger.error(f"{step_prefix}Expected dict, got {type(parsed_data).__name__}")
        return ParseError(
            reason=f"Expected JSON object, got {type(parsed_data).__name__}",
            raw_excerpt=excerpt,
        )

    if parsed_data.get("needs_clarification") is True:
        question = _clarification_from_payload(parsed_data)
        if question is None:
            logger.error(f"{step_prefix}Clarification requested without a usable question")
            return ParseError(
                reason="Clarification requested without a usable question",
                raw_excerpt=excerpt,
            )
        logger.info(f"{step_prefix}Agent requested clarification")
        return ClarificationNeeded(question=question)

    try:
        validated = schema.model_validate(parsed_data)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        logger.error(f"{step_prefix}Schema validation failed: {errors}")
        return ParseError(reason=f"Schema validation failed: {errors}", raw_excerpt=excerpt)

    logger.debug(f"{step_prefix}JSON parsed and validated successfully")
    return Parsed(artifact=build_draft(validated))


def extract_markdown(text: str) -> str:
    """Return the body of a ```markdown fence, or the trimmed text if there is none."""
    if not text:
        return ""
    match = _MARKDOWN_BLOCK_PATTERN.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def extract_review(text: str) -> Optional[str]:
    """Extract review content from a ```review fence or a free-text review."""
    if not text:
        return None
    match = _REVIEW_BLOCK_PATTERN.search(text)
    if match:
        return match.group(1).strip()
    if "## Review Decision" in text or "DECISION:" in _BOLD_PATTERN.sub(r"\1", text):
        return text.strip()
    return None


def parse_review_decision(review: str) -> Optional[str]:
    """Find a ``DECISION: APPROVED`` / ``DECISION: REQUEST_CHANGES`` line.

    Markdown bold and italics are ignored, so ``**DECISION:** APPROVED``
    matches as well.

    Returns:
        "approved", "request_changes" or None
    """
    if not review:
        return None
    cleaned = _BOLD_PATTERN.sub(r"\1", review)
    if _APPROVED_PATTERN.search(cleaned):
        return "approved"
    if _REQUEST_CHANGES_PATTERN.search(cleaned):
        return "request_changes"
    return None


# ============================================================
# Design document helpers
# ============================================================


def wrap_design(section: DesignSection, design: str) -> str:
    """Surround a design with its auto-generated markers."""
    start, end = DESIGN_MARKERS[section]
    return f"{start}\n{design.strip()}\n{end}"


def extract_design(issue_body: str, section: DesignSection) -> Optional[str]:
    """Pull the product or technical design out of an issue body."""
    start, end = DESIGN_MARKERS[section]
    start_idx = issue_body.find(start)
    end_idx = issue_body.find(end)
    if start_idx != -1 and end_idx > start_idx:
        return issue_body[start_idx + len(start) : end_idx].strip()
    return None


def extract_original_description(issue_body: str) -> str:
    """Return the part of an issue body that precedes any embedded design."""
    end_idx = len(issue_body)
    for start, _ in DESIGN_MARKERS.values():
        idx = issue_body.find(start)
        if idx != -1 and idx < end_idx:
            end_idx = idx
    return issue_body[:end_idx].strip()
