"""
Clarification requests raised by agents and answered by humans.

A clarification is pending until it is answered through the web form (which
presents the single-use token from the notification link) or until its
time-to-live elapses. Only an HMAC of the token is stored.
"""

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple
from urllib.parse import quote

from conveyor.core.config import ClarificationConfig
from conveyor.core.errors import ExpiredToken, InvalidToken
from conveyor.core.models import (
    Clarification,
    ClarificationOption,
    ClarificationQuestion,
    WorkItem,
    make_id,
)
from conveyor.core.store import WorkItemStore

logger = logging.getLogger(__name__)

RECOMMENDED_MARK = "✅"
ALTERNATIVE_MARK = "⚠️"

_SECTION_PATTERN = r"## {name}\s*(.*?)(?=\n## |\Z)"
_OPTION_HEADER = re.compile(r"^(✅|⚠️)\s*(?:Option\s*\d+:\s*)?(.+)$")
_BULLET = re.compile(r"^\s*-\s+(.+)$")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_token(secret: str, clarification_id: str, token: str) -> str:
    """HMAC-SHA256 of the token bound to its clarification id."""
    message = f"{clarification_id}:{token}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class ClarificationService:
    """Issues and redeems clarification tokens.

    Args:
        store: Persistence for clarification records.
        config: Secret, time-to-live and answer-link base URL.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        store: WorkItemStore,
        config: ClarificationConfig,
        clock: Callable[[], datetime] = _utc_now,
    ):
        if not config.secret:
            raise ValueError("Clarification secret is not configured")
        self.store = store
        self.config = config
        self.clock = clock

    def issue(self, item: WorkItem, question: ClarificationQuestion) -> Tuple[Clarification, str]:
        """Create a pending clarification for ``item`` at its current stage.

        Returns:
            The stored clarification and the plaintext token. The token is
            not recoverable later; send it to the human immediately.
        """
        now = self.clock()
        token = secrets.token_urlsafe(32)
        clarification_id = make_id()
        assert self.config.secret is not None
        clarification = Clarification(
            id=clarification_id,
            work_item_id=item.id,
            stage=item.status,
            question=question,
            token_hash=hash_token(self.config.secret, clarification_id, token),
            created_at=now,
            expires_at=now + timedelta(seconds=self.config.ttl_seconds),
        )
        stored = self.store.create_clarification(clarification)
        logger.info(
            f"Clarification {stored.id} issued for work item {item.id} "
            f"(expires {stored.expires_at.isoformat()})"
        )
        return stored, token

    def answer_url(self, clarification: Clarification, token: str) -> str:
        return f"{self.config.base_url}/clarify/{clarification.id}?token={quote(token)}"

    def verify(
        self, clarification_id: str, token: str, allow_answered: bool = False
    ) -> Clarification:
        """Check a token without consuming it.

        With ``allow_answered`` an already answered clarification is returned
        instead of rejected, so a caller can finish resuming its item.

        Raises:
            InvalidToken: Unknown id, wrong token, or already answered.
            ExpiredToken: The time-to-live has elapsed.
        """
        clarification = self.store.get_clarification(clarification_id)
        if clarification is None:
            raise InvalidToken(f"Unknown clarification {clarification_id}")

        assert self.config.secret is not None
        expected = hash_token(self.config.secret, clarification_id, token)
        if not hmac.compare_digest(expected, clarification.token_hash):
            raise InvalidToken(f"Invalid token for clarification {clarification_id}")

        if clarification.status == "answered":
            if allow_answered:
                return clarification
            raise InvalidToken(f"Clarification {clarification_id} was already answered")
        if clarification.status == "expired":
            raise ExpiredToken(f"Clarification {clarification_id} has expired")

        now = self.clock()
        if now >= clarification.expires_at:
            self.store.resolve_clarification(clarification_id, "expired", now)
            logger.info(f"Clarification {clarification_id} expired on answer attempt")
            raise ExpiredToken(f"Clarification {clarification_id} has expired")

        return clarification

    def answer(self, clarification_id: str, token: str, answer: str) -> Clarification:
        """Record the human's answer and consume the token.

        Raises:
            InvalidToken: Unknown id, wrong token, already answered, or empty answer.
            ExpiredToken: The time-to-live has elapsed.
        """
        if not answer.strip():
            raise InvalidToken("Answer must not be empty")

        self.verify(clarification_id, token)
        resolved = self.store.resolve_clarification(
            clarification_id, "answered", self.clock(), answer=answer.strip()
        )
        if resolved is None:
            # Lost the race to another submission with the same token
            raise InvalidToken(f"Clarification {clarification_id} was already answered")

        logger.info(f"Clarification {clarification_id} answered")
        return resolved

    def expire_stale(self, now: Optional[datetime] = None) -> List[Clarification]:
        """Expire every pending clarification whose time-to-live has elapsed."""
        now = now or self.clock()
        expired = []
        for clarification in self.store.list_clarifications(status="pending"):
            if now < clarification.expires_at:
                continue
            resolved = self.store.resolve_clarification(clarification.id, "expired", now)
            if resolved is not None:
                expired.append(resolved)
        if expired:
            logger.info(f"Expired {len(expired)} stale clarification(s)")
        return expired


# ============================================================
# Markdown helpers
# ============================================================


def _section(content: str, name: str) -> str:
    match = re.search(_SECTION_PATTERN.format(name=name), content, re.DOTALL)
    return match.group(1).strip() if match else ""


def parse_clarification_markdown(content: str) -> Optional[ClarificationQuestion]:
    """Parse an agent's ``## Context / ## Question / ## Options`` block.

    Options start with ✅ (recommended) or ⚠️ and may carry ``- `` bullet lines.
    Returns None when no question or no options can be found.
    """
    question = _section(content, "Question")
    options_block = _section(content, "Options")

    options: List[ClarificationOption] = []
    for line in options_block.splitlines():
        header = _OPTION_HEADER.match(line.strip())
        if header:
            options.append(
                ClarificationOption(
                    label=header.group(2).strip(),
                    recommended=header.group(1) == RECOMMENDED_MARK,
                )
            )
            continue
        bullet = _BULLET.match(line)
        if bullet and options:
            options[-1].details.append(bullet.group(1).strip())

    if not question or not options:
        return None

    return ClarificationQuestion(
        question=question,
        context=_section(content, "Context"),
        options=options,
        recommendation=_section(content, "Recommendation"),
    )


def format_question_markdown(question: ClarificationQuestion) -> str:
    """Render a question in the same layout ``parse_clarification_markdown`` reads."""
    lines = []
    if question.context:
        lines += ["## Context", "", question.context, ""]
    lines += ["## Question", "", question.question, ""]
    if question.options:
        lines += ["## Options", ""]
        for index, option in enumerate(question.options, start=1):
            mark = RECOMMENDED_MARK if option.recommended else ALTERNATIVE_MARK
            lines.append(f"{mark} Option {index}: {option.label}")
            lines += [f"   - {detail}" for detail in option.details]
            lines.append("")
    if question.recommendation:
        lines += ["## Recommendation", "", question.recommendation, ""]
    return "\n".join(lines).rstrip() + "\n"


def format_answer_comment(question: ClarificationQuestion, answer: str) -> str:
    """Format an answered clarification for posting on the GitHub issue."""
    return "\n".join(
        [
            "## ✅ Clarification Provided",
            "",
            f"**Q:** {question.question}",
            "",
            f"**A:** {answer}",
            "",
            "---",
            "_Clarification received. The agent will continue on its next run._",
        ]
    )
