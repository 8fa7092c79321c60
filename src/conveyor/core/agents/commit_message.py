"""Squash-merge commit messages for implementation PRs.

The PR review stage generates the message deterministically from the PR
description and the issue body when it approves; the admin merge later uses
the stored message as-is.
"""

import re
from typing import List, Optional

from pydantic import BaseModel

from conveyor.core.models import CommitMessage

COMMIT_MESSAGE_MARKER = "<!-- COMMIT_MESSAGE -->"

MAX_WHAT_LINES = 4
MAX_WHY_LENGTH = 100

_SECTION_SPLIT = re.compile(r"---|\n## Test [Pp]lan|\n## Changes")
_WHY_SECTION = re.compile(
    r"## (?:Why|Problem|Motivation|Background)\s*\n(.*?)(?=\n##|\Z)", re.IGNORECASE | re.DOTALL
)
_SUMMARY_SECTION = re.compile(r"## Summary\s*\n(.*?)(?=\n##|\Z)", re.IGNORECASE | re.DOTALL)
_TITLE_BLOCK = re.compile(r"\*\*Title:\*\*\s*```\s*(.*?)```", re.DOTALL)
_BODY_BLOCK = re.compile(r"\*\*Body:\*\*\s*```\s*(.*?)```", re.DOTALL)


class PullRequestInfo(BaseModel):
    """What the commit message generator needs to know about a PR.

    Line statistics are optional; the stats line is omitted without them.
    """

    title: str
    body: str = ""
    additions: Optional[int] = None
    deletions: Optional[int] = None
    changed_files: Optional[int] = None


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3].strip() + "..."


def _what_summary(pr_body: str) -> str:
    if not pr_body:
        return ""

    summary = _SECTION_SPLIT.split(pr_body)[0].strip()
    summary = re.sub(r"^## (?:Summary|What)\s*", "", summary, flags=re.IGNORECASE).strip()

    bullets: List[str] = []
    for line in summary.splitlines()[:MAX_WHAT_LINES]:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith(("-", "*", "•")):
            bullets.append(stripped)
        else:
            bullets.append(f"- {stripped}")
    return "\n".join(bullets)


def _why_rationale(issue_body: Optional[str]) -> str:
    if not issue_body:
        return ""

    for pattern in (_WHY_SECTION, _SUMMARY_SECTION):
        match = pattern.search(issue_body)
        if match:
            first_line = match.group(1).strip().split("\n")[0].strip()
            if len(first_line) > 10:
                return _truncate(first_line, MAX_WHY_LENGTH)

    for line in issue_body.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith(("#", "|")) and len(stripped) > 10:
            return _truncate(stripped, MAX_WHY_LENGTH)
    return ""


def _stats_line(pr: PullRequestInfo) -> str:
    if pr.additions is None or pr.deletions is None or pr.changed_files is None:
        return ""
    return f"+{pr.additions}/-{pr.deletions} | {pr.changed_files} files"


def generate_commit_message(
    pr: PullRequestInfo,
    issue_body: Optional[str] = None,
    issue_number: Optional[int] = None,
) -> CommitMessage:
    """Build a commit message from PR info without calling an agent.

    Body layout: what-bullets, ``Why:`` line, stats line and a
    ``Part of #N`` reference, each block separated by a blank line.
    """
    blocks: List[str] = []

    what = _what_summary(pr.body)
    if what:
        blocks.append(what)

    why = _why_rationale(issue_body)
    if why:
        blocks.append(f"Why: {why}")

    stats = _stats_line(pr)
    if stats:
        blocks.append(stats)

    # Always "Part of": a PR may be one phase of a larger issue
    if issue_number is not None:
        blocks.append(f"Part of #{issue_number}")

    return CommitMessage(title=pr.title.strip(), body="\n\n".join(blocks))


def format_commit_message_comment(message: CommitMessage) -> str:
    """Format a commit message as a PR comment carrying the marker."""
    return "\n".join(
        [
            COMMIT_MESSAGE_MARKER,
            "## Commit Message",
            "",
            "This commit message will be used when merging this PR:",
            "",
            "**Title:**",
            "```",
            message.title,
            "```",
            "",
            "**Body:**",
            "```",
            message.body,
            "```",
            "",
            "---",
            "*Generated by the PR review agent. Used verbatim when the PR is merged.*",
        ]
    )


def parse_commit_message_comment(comment: str) -> Optional[CommitMessage]:
    """Read a commit message back out of a comment written by the formatter."""
    if COMMIT_MESSAGE_MARKER not in comment:
        return None

    title = _TITLE_BLOCK.search(comment)
    body = _BODY_BLOCK.search(comment)
    if not title or not body or not title.group(1).strip():
        return None

    return CommitMessage(title=title.group(1).strip(), body=body.group(1).strip())
